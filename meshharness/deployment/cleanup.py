"""Teardown of a mesh test environment.

Removes what setup installed: the sidecar injector, then either the
cluster-wide core install or the test namespace together with the
cluster-scoped RBAC objects that namespace deletion leaves behind.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path

from loguru import logger

from meshharness.deployment.config import HarnessConfig
from meshharness.deployment.environment import Environment
from meshharness.deployment.errors import TeardownError
from meshharness.infra.constants import DEFAULT_CONSTANTS, HarnessConstants
from meshharness.infra.k8s import KubernetesError


class CleanupManager:
    """Manages teardown of a test environment.

    Handles:
    - Deleting the sidecar injector
    - Deleting the namespace (or the cluster-wide install)
    - Deleting leftover ClusterRoles and ClusterRoleBindings
    - Waiting for the namespace to disappear
    """

    def __init__(
        self,
        env: Environment,
        config: HarnessConfig,
        *,
        constants: HarnessConstants | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the cleanup manager.

        Args:
            env: Environment to tear down
            config: Harness configuration
            constants: Optional harness constants
            sleep: Sleep function used between namespace checks
        """
        self.env = env
        self.config = config
        self.constants = constants or DEFAULT_CONSTANTS
        self._sleep = sleep

    @property
    def client(self):  # type: ignore[no-untyped-def]
        return self.env.primary.client

    def teardown(self) -> None:
        """Remove everything setup created.

        Every step is attempted even when an earlier one fails.

        Raises:
            TeardownError: Listing every step that failed
        """
        if self.config.skip_setup or self.config.skip_cleanup:
            logger.info("Skipping teardown (skip_setup or skip_cleanup is set)")
            return
        if not self.env.namespace_created:
            logger.info(f"Namespace {self.env.namespace} was not created; nothing to tear down")
            return

        logger.info(f"Tearing down mesh environment {self.env.namespace}")
        failures: list[str] = []

        if self.config.use_automatic_injection:
            self._delete_sidecar_injector(failures)

        if self.env.cluster_wide:
            self._delete_core_manifest(failures)
            deletion_requested = True
        else:
            deletion_requested = self._delete_namespaces(failures)
            self._delete_cluster_rbac(failures)

        if deletion_requested:
            self.wait_for_namespace_deletion()
            self.env.namespace_created = False

        if failures:
            for failure in failures:
                logger.error(failure)
            raise TeardownError(failures)

        logger.info(f"Mesh environment {self.env.namespace} torn down")

    # =========================================================================
    # Steps
    # =========================================================================

    def _generated(self, template: Path) -> Path:
        return self.env.yaml_dir / template.name

    def _delete_sidecar_injector(self, failures: list[str]) -> None:
        manifest = self._generated(
            self.env.release.sidecar_injector(self.config.sidecar_injector_file)
        )
        result = self.client.delete_manifest(manifest, self.env.namespace)
        if not result.success:
            failures.append(
                f"Failed to delete sidecar injector {manifest}: {result.stderr.strip()}"
            )

    def _delete_core_manifest(self, failures: list[str]) -> None:
        manifest = self._generated(
            self.env.release.core_manifest(
                cluster_wide=True, auth_enabled=self.env.auth_enabled
            )
        )
        result = self.client.delete_manifest(manifest)
        if result.not_found:
            # Some objects are usually already gone by the time their turn comes.
            logger.info(f"Delete of {manifest.name}: resources already absent")
        elif not result.success:
            failures.append(
                f"Failed to delete {manifest.name}: {result.stderr.strip()}"
            )

    def _delete_namespaces(self, failures: list[str]) -> bool:
        """Request namespace deletion on every cluster.

        Returns whether the primary cluster accepted the request.
        """
        namespace = self.env.namespace
        requested = True
        for cluster in self.env.clusters:
            result = cluster.client.delete_namespace(namespace)
            if result.success:
                logger.info(f"Deletion of namespace {namespace} requested on {cluster.name}")
                continue
            failures.append(
                f"Failed to delete namespace {namespace} on cluster {cluster.name}: "
                f"{result.stderr.strip()}"
            )
            if cluster is self.env.primary:
                requested = False
        return requested

    def _delete_cluster_rbac(self, failures: list[str]) -> None:
        """Delete cluster-scoped RBAC objects whose name mentions the namespace."""
        namespace = self.env.namespace
        for kind in self.constants.CLUSTER_RBAC_KINDS:
            try:
                names = self.client.list_cluster_resources(kind)
            except KubernetesError as e:
                failures.append(f"Failed to list {kind}s: {e}")
                continue

            for name in names:
                if namespace not in name:
                    continue
                result = self.client.delete_cluster_resource(kind, name)
                if not result.success:
                    failures.append(
                        f"Failed to delete {kind} {name}: {result.stderr.strip()}"
                    )

    def wait_for_namespace_deletion(self) -> bool:
        """Poll until the namespace is gone.

        Returns:
            True if the namespace disappeared, False if it was still present
            after the last attempt. A poll the API cannot answer counts as
            still present.
        """
        namespace = self.env.namespace
        attempts = self.constants.NAMESPACE_DELETE_MAX_ATTEMPTS
        for attempt in range(attempts):
            try:
                gone = not self.client.namespace_exists(namespace)
            except KubernetesError as e:
                logger.warning(f"Namespace {namespace} status unknown, still waiting: {e}")
                gone = False
            if gone:
                logger.info(f"Namespace {namespace} deleted")
                return True
            if attempt < attempts - 1:
                self._sleep(self.constants.NAMESPACE_DELETE_POLL_INTERVAL)

        logger.error(
            f"Failed to delete namespace {namespace} after "
            f"{attempts * self.constants.NAMESPACE_DELETE_POLL_INTERVAL:.0f} seconds"
        )
        return False
