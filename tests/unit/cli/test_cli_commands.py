"""Unit tests for the meshharness CLI."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from meshharness.cli import app
from meshharness.deployment.errors import DeploymentError, SetupPhase, TeardownError
from meshharness.infra.k8s import KubernetesError

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's ./harness.yaml out of the tests."""
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def mock_env():
    with patch("meshharness.cli.commands.MeshEnvironment") as env_cls:
        env = MagicMock()
        env.namespace = "t1"
        env.adopt_existing.return_value = True
        env_cls.create.return_value = env
        yield env_cls, env


class TestRenderCommand:
    """Tests for `render`, which needs no cluster."""

    def test_render_writes_manifests(self, release_dir: Path, tmp_path: Path) -> None:
        out = tmp_path / "out"

        result = runner.invoke(
            app, ["--release-dir", str(release_dir), "-n", "t1", "render", "-o", str(out)]
        )

        assert result.exit_code == 0, result.output
        assert sorted(p.name for p in out.iterdir()) == [
            "istio-one-namespace.yaml",
            "zipkin.yaml",
        ]
        assert "istio-system" not in (out / "istio-one-namespace.yaml").read_text()

    def test_render_with_injector(self, release_dir: Path, tmp_path: Path) -> None:
        out = tmp_path / "out"

        result = runner.invoke(
            app,
            [
                "--release-dir", str(release_dir), "-n", "t1", "--auth", "--auto-inject",
                "render", "-o", str(out),
            ],
        )

        assert result.exit_code == 0, result.output
        assert (out / "istio-one-namespace-auth.yaml").exists()
        assert (out / "istio-sidecar-injector.yaml").exists()

    def test_render_reads_config_file(self, release_dir: Path, tmp_path: Path) -> None:
        config_file = tmp_path / "mesh.yaml"
        config_file.write_text(
            f"harness:\n  namespace: t9\n  cluster_wide: true\n  release_dir: {release_dir}\n"
        )
        out = tmp_path / "out"

        result = runner.invoke(app, ["--config", str(config_file), "render", "-o", str(out)])

        assert result.exit_code == 0, result.output
        assert (out / "istio.yaml").exists()

    def test_missing_release_tree_fails(self, tmp_path: Path) -> None:
        result = runner.invoke(
            app, ["--release-dir", str(tmp_path / "none"), "render", "-o", str(tmp_path)]
        )
        assert result.exit_code == 1


class TestEnvironmentCommands:
    """Tests for commands that talk to a cluster through MeshEnvironment."""

    def test_up(self, mock_env) -> None:
        env_cls, env = mock_env

        result = runner.invoke(app, ["-n", "t1", "--backend", "kubectl", "up"])

        assert result.exit_code == 0, result.output
        config = env_cls.create.call_args.args[0]
        assert config.namespace == "t1"
        assert config.backend == "kubectl"
        env.setup.assert_called_once()

    def test_up_failure_exits_non_zero(self, mock_env) -> None:
        _, env = mock_env
        env.setup.side_effect = DeploymentError(SetupPhase.ROLLOUT_CONFIRMED, "timeout")

        result = runner.invoke(app, ["up"])

        assert result.exit_code == 1

    def test_down_adopts_and_tears_down(self, mock_env) -> None:
        _, env = mock_env

        result = runner.invoke(app, ["-n", "t1", "down", "-y"])

        assert result.exit_code == 0, result.output
        env.adopt_existing.assert_called_once()
        env.teardown.assert_called_once()

    def test_down_missing_namespace(self, mock_env) -> None:
        _, env = mock_env
        env.adopt_existing.return_value = False

        result = runner.invoke(app, ["-n", "t1", "down", "-y"])

        assert result.exit_code == 0
        env.teardown.assert_not_called()

    def test_down_cluster_unreachable(self, mock_env) -> None:
        _, env = mock_env
        env.adopt_existing.side_effect = KubernetesError("Unable to connect to the server")

        result = runner.invoke(app, ["-n", "t1", "down", "-y"])

        assert result.exit_code == 1
        assert "does not exist" not in result.output
        env.teardown.assert_not_called()

    def test_down_requires_namespace(self, mock_env) -> None:
        env_cls, _ = mock_env

        result = runner.invoke(app, ["down", "-y"])

        assert result.exit_code == 1
        env_cls.create.assert_not_called()

    def test_down_teardown_failure(self, mock_env) -> None:
        _, env = mock_env
        env.teardown.side_effect = TeardownError(["Failed to delete clusterrole x"])

        result = runner.invoke(app, ["-n", "t1", "down", "-y"])

        assert result.exit_code == 1

    def test_ingress(self, mock_env) -> None:
        _, env = mock_env
        env.ingress.return_value = "http://35.1.2.3"

        result = runner.invoke(app, ["-n", "t1", "ingress"])

        assert result.exit_code == 0
        assert "http://35.1.2.3" in result.output

    def test_pods(self, mock_env) -> None:
        _, env = mock_env
        env.get_app_pods.return_value = {"productpage": ["productpage-1"]}

        result = runner.invoke(app, ["-n", "t1", "pods"])

        assert result.exit_code == 0
        assert "productpage-1" in result.output

    @pytest.mark.parametrize("command", ["ingress", "pods"])
    def test_queries_require_namespace(self, mock_env, command: str) -> None:
        env_cls, env = mock_env

        result = runner.invoke(app, [command])

        assert result.exit_code == 1
        env_cls.create.assert_not_called()
        env.ingress.assert_not_called()
        env.get_app_pods.assert_not_called()

    def test_cluster_wide_queries_use_system_namespace(self, mock_env) -> None:
        env_cls, env = mock_env
        env.ingress.return_value = "http://35.1.2.3"

        result = runner.invoke(app, ["--cluster-wide", "ingress"])

        assert result.exit_code == 0, result.output
        env_cls.create.assert_called_once()
