"""State of one mesh test environment."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from meshharness.deployment.config import HarnessConfig
from meshharness.infra.constants import DEFAULT_CONSTANTS, ReleasePaths
from meshharness.infra.registry import ClusterAccess


def resolve_namespace(config: HarnessConfig, run_id: str) -> str:
    """Pick the test namespace: explicit, then system (cluster-wide), then run id."""
    if config.namespace:
        return config.namespace
    if config.cluster_wide:
        return DEFAULT_CONSTANTS.ISTIO_SYSTEM
    return run_id


@dataclass
class Environment:
    """One test run's namespace, install options and cluster access.

    Only setup flips `namespace_created` on; teardown flips it off once the
    namespace is gone.
    """

    namespace: str
    release_dir: Path
    tmp_dir: Path
    primary: ClusterAccess
    remote: ClusterAccess | None = None
    auth_enabled: bool = False
    rbac_enabled: bool = True
    cluster_wide: bool = False
    local_cluster: bool = False
    mtls_excluded_services: tuple[str, ...] = ()
    base_version: str = ""
    namespace_created: bool = field(default=False, init=False)

    @classmethod
    def from_config(
        cls,
        config: HarnessConfig,
        *,
        namespace: str,
        tmp_dir: Path,
        primary: ClusterAccess,
        remote: ClusterAccess | None = None,
    ) -> Environment:
        """Build the environment state from the harness configuration."""
        return cls(
            namespace=namespace,
            release_dir=config.release_dir,
            tmp_dir=tmp_dir,
            primary=primary,
            remote=remote,
            auth_enabled=config.auth_enable,
            rbac_enabled=config.rbac_enable,
            cluster_wide=config.cluster_wide,
            local_cluster=config.use_local_cluster,
            mtls_excluded_services=tuple(config.mtls_excluded_services),
            base_version=config.base_version,
        )

    @property
    def yaml_dir(self) -> Path:
        """Directory receiving generated manifests."""
        return self.tmp_dir / "yaml"

    @property
    def release(self) -> ReleasePaths:
        """Paths into the release tree."""
        return ReleasePaths(self.release_dir)

    @property
    def system_namespace(self) -> str:
        """Namespace holding the mesh control plane."""
        if self.cluster_wide:
            return DEFAULT_CONSTANTS.ISTIO_SYSTEM
        return self.namespace

    @property
    def clusters(self) -> list[ClusterAccess]:
        """The primary cluster followed by the remote cluster, if any."""
        return [self.primary] if self.remote is None else [self.primary, self.remote]
