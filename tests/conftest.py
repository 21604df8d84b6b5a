"""Shared fixtures for harness unit tests. No live cluster is needed."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from meshharness.deployment.config import HarnessConfig
from meshharness.deployment.environment import Environment
from meshharness.infra.k8s import CommandResult
from meshharness.infra.registry import ClusterAccess


@pytest.fixture(autouse=True)
def _clear_image_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep $HUB/$TAG from the developer's shell out of config defaults."""
    monkeypatch.delenv("HUB", raising=False)
    monkeypatch.delenv("TAG", raising=False)


def make_client() -> MagicMock:
    """A cluster client whose mutating calls all succeed."""
    client = MagicMock()
    ok = CommandResult(success=True)
    client.create_namespace.return_value = ok
    client.delete_namespace.return_value = ok
    client.apply_manifest.return_value = ok
    client.delete_manifest.return_value = ok
    client.create_tls_secret.return_value = ok
    client.delete_cluster_resource.return_value = ok
    client.list_cluster_resources.return_value = []
    client.get_deployments.return_value = []
    client.namespace_exists.return_value = False
    return client


@pytest.fixture
def primary_client() -> MagicMock:
    return make_client()


@pytest.fixture
def release_dir(tmp_path: Path) -> Path:
    """A minimal release tree with every manifest setup reads."""
    root = tmp_path / "release"
    install = root / "install" / "kubernetes"
    (install / "addons").mkdir(parents=True)
    for name in (
        "istio.yaml",
        "istio-auth.yaml",
        "istio-one-namespace.yaml",
        "istio-one-namespace-auth.yaml",
        "istio-sidecar-injector.yaml",
    ):
        (install / name).write_text(
            "metadata:\n  namespace: istio-system\n", encoding="utf-8"
        )
    (install / "addons" / "zipkin.yaml").write_text(
        "namespace: istio-system\n", encoding="utf-8"
    )
    return root


@pytest.fixture
def make_env(tmp_path: Path, release_dir: Path, primary_client: MagicMock):
    """Build an Environment bound to mock cluster clients."""

    def _make(
        config: HarnessConfig | None = None,
        *,
        namespace: str = "t1",
        remote_client: MagicMock | None = None,
    ) -> Environment:
        config = config or HarnessConfig(release_dir=release_dir)
        primary = ClusterAccess("primary", tmp_path / "primary.kubeconfig", primary_client)
        remote = None
        if remote_client is not None:
            remote = ClusterAccess("remote", tmp_path / "remote.kubeconfig", remote_client)
        return Environment.from_config(
            config,
            namespace=namespace,
            tmp_dir=tmp_path / "work",
            primary=primary,
            remote=remote,
        )

    return _make
