"""Harness constants and release-tree paths.

This module centralizes the magic strings, file names and timeouts used
while installing the mesh and cleaning it up again.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class HarnessConstants:
    """Constants for mesh installation and teardown.

    This class provides a centralized location for all harness-related
    constants, making them easy to find, update, and test.

    All attributes are class-level and immutable.
    """

    # Namespaces and well-known resource names
    ISTIO_SYSTEM: str = "istio-system"
    INGRESS_SERVICE_NAME: str = "istio-ingress"
    INGRESS_POD_LABEL: str = "istio=ingress"
    INGRESS_CERTS_NAME: str = "istio-ingress-certs"
    MIXER_VALIDATOR_SERVICE: str = "istio-mixer-validator"

    # Core install manifests (namespaced/non-namespaced x auth/non-auth)
    NON_AUTH_INSTALL_FILE: str = "istio.yaml"
    AUTH_INSTALL_FILE: str = "istio-auth.yaml"
    NON_AUTH_INSTALL_FILE_NAMESPACE: str = "istio-one-namespace.yaml"
    AUTH_INSTALL_FILE_NAMESPACE: str = "istio-one-namespace-auth.yaml"

    # Optional manifests
    DEFAULT_SIDECAR_INJECTOR_FILE: str = "istio-sidecar-injector.yaml"
    MIXER_VALIDATOR_FILE: str = "istio-mixer-validator.yaml"
    WEBHOOK_CERT_SCRIPT: str = "webhook-create-signed-cert.sh"

    # Addons applied after the core install, in order
    ADDONS: tuple[str, ...] = ("zipkin",)

    # Timeouts (seconds)
    MAX_DEPLOYMENT_ROLLOUT_TIME: float = 240.0
    ROLLOUT_POLL_INTERVAL: float = 5.0
    NAMESPACE_DELETE_MAX_ATTEMPTS: int = 120
    NAMESPACE_DELETE_POLL_INTERVAL: float = 1.0
    INGRESS_WAIT_TIMEOUT: float = 300.0
    INGRESS_POLL_INTERVAL: float = 5.0

    # Sidecar admin endpoint queried for routes
    PROXY_ROUTES_URL: str = "http://localhost:15000/routes"

    # Cluster-scoped RBAC kinds that outlive namespace deletion
    CLUSTER_RBAC_KINDS: tuple[str, ...] = ("clusterrolebinding", "clusterrole")

    MTLS_EXCLUDED_SERVICES_PATTERN: re.Pattern[str] = re.compile(
        r"mtlsExcludedServices:\s*\[(.*)\]"
    )


class ReleasePaths:
    """Path resolver for files inside a mesh release tree.

    Base manifests are only ever selected from the fixed file-name table in
    HarnessConstants, never from caller-supplied paths.
    """

    def __init__(self, release_dir: Path) -> None:
        """Initialize release paths.

        Args:
            release_dir: Root of the release tree
        """
        self._release_dir = release_dir
        self._constants = DEFAULT_CONSTANTS

        # Build derived paths
        self.install_dir = release_dir / "install" / "kubernetes"
        self.addons_dir = self.install_dir / "addons"
        self.certs_dir = release_dir / "tests" / "testdata" / "certs"

    @property
    def release_dir(self) -> Path:
        """Get path to the release root."""
        return self._release_dir

    def core_manifest(self, *, cluster_wide: bool, auth_enabled: bool) -> Path:
        """Get the core install manifest for an install mode."""
        return self.install_dir / core_manifest_name(
            cluster_wide=cluster_wide, auth_enabled=auth_enabled
        )

    @property
    def mixer_validator(self) -> Path:
        """Get path to the mixer validator manifest."""
        return self.install_dir / self._constants.MIXER_VALIDATOR_FILE

    @property
    def webhook_cert_script(self) -> Path:
        """Get path to the webhook certificate generation script."""
        return self.install_dir / self._constants.WEBHOOK_CERT_SCRIPT

    def sidecar_injector(self, file_name: str) -> Path:
        """Get path to a sidecar injector manifest."""
        return self.install_dir / file_name

    def addon(self, name: str) -> Path:
        """Get path to an addon manifest."""
        return self.addons_dir / f"{name}.yaml"

    @property
    def ingress_cert(self) -> Path:
        """Get path to the ingress TLS certificate."""
        return self.certs_dir / "cert.crt"

    @property
    def ingress_key(self) -> Path:
        """Get path to the ingress TLS key."""
        return self.certs_dir / "cert.key"


def core_manifest_name(*, cluster_wide: bool, auth_enabled: bool) -> str:
    """Pick the core install manifest from the {cluster-wide, auth} table."""
    c = DEFAULT_CONSTANTS
    if cluster_wide:
        return c.AUTH_INSTALL_FILE if auth_enabled else c.NON_AUTH_INSTALL_FILE
    return (
        c.AUTH_INSTALL_FILE_NAMESPACE
        if auth_enabled
        else c.NON_AUTH_INSTALL_FILE_NAMESPACE
    )


DEFAULT_CONSTANTS = HarnessConstants()
