"""Entry point for test suites: one mesh environment per test run."""

from __future__ import annotations

import tempfile
import time
import uuid
from collections.abc import Callable
from functools import partial
from pathlib import Path

from loguru import logger

from meshharness.deployment.cleanup import CleanupManager
from meshharness.deployment.config import HarnessConfig
from meshharness.deployment.deployer import DeploymentOrchestrator
from meshharness.deployment.environment import Environment, resolve_namespace
from meshharness.deployment.manifests import ManifestGenerator, ManifestOptions
from meshharness.deployment.runtime_cache import AppPodIndex, RuntimeQueryCache
from meshharness.infra.constants import DEFAULT_CONSTANTS
from meshharness.infra.k8s import create_cluster_client
from meshharness.infra.registry import ClientFactory, resolve_clusters


def generate_run_id() -> str:
    """Namespace-safe identifier for an unnamed test run."""
    return f"istio-test-{uuid.uuid4().hex[:10]}"


class MeshEnvironment:
    """A provisioned (or to-be-provisioned) mesh test environment.

    Typical use from a test session fixture:

        env = MeshEnvironment.create(load_config())
        env.setup()
        try:
            ...  # run tests against env.ingress(), env.get_app_pods()
        finally:
            env.teardown()
    """

    def __init__(
        self,
        env: Environment,
        config: HarnessConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.env = env
        self.config = config
        self.generator = ManifestGenerator(
            ManifestOptions.from_config(
                config, env.namespace, local_cluster=env.local_cluster
            ),
            env.yaml_dir,
        )
        self.orchestrator = DeploymentOrchestrator(
            env, config, self.generator, sleep=sleep, clock=clock
        )
        self.cleanup = CleanupManager(env, config, sleep=sleep)
        self.queries = RuntimeQueryCache(
            env.primary.client,
            namespace=env.namespace,
            system_namespace=env.system_namespace,
            local_cluster=env.local_cluster,
            sleep=sleep,
            clock=clock,
        )

    @classmethod
    def create(
        cls,
        config: HarnessConfig,
        run_id: str | None = None,
        *,
        client_factory: ClientFactory | None = None,
    ) -> MeshEnvironment:
        """Resolve clusters and build the environment for a configuration.

        Args:
            config: Harness configuration
            run_id: Namespace used when none is configured (generated if omitted)
            client_factory: Builds a cluster client from a kubeconfig path

        Raises:
            RegistryError: If the clusters cannot be resolved
        """
        namespace = resolve_namespace(config, run_id or generate_run_id())
        tmp_dir = config.tmp_dir or Path(tempfile.mkdtemp(prefix=f"{namespace}-"))
        tmp_dir.mkdir(parents=True, exist_ok=True)

        clusters = resolve_clusters(
            config.cluster_registry_dir,
            tmp_dir=tmp_dir,
            namespace=namespace,
            client_factory=client_factory
            or partial(create_cluster_client, backend=config.backend),
        )
        env = Environment.from_config(
            config,
            namespace=namespace,
            tmp_dir=tmp_dir,
            primary=clusters.primary,
            remote=clusters.remote,
        )
        logger.info(f"Mesh environment {namespace} using working directory {tmp_dir}")
        return cls(env, config)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def setup(self) -> None:
        self.orchestrator.setup()

    def teardown(self) -> None:
        self.cleanup.teardown()

    def adopt_existing(self) -> bool:
        """Mark an already-existing namespace as owned so teardown removes it.

        Returns:
            True if the namespace exists on the primary cluster

        Raises:
            KubernetesError: If the primary cluster cannot be queried
        """
        exists = self.env.primary.client.namespace_exists(self.env.namespace)
        self.env.namespace_created = exists
        return exists

    # =========================================================================
    # Queries
    # =========================================================================

    def ingress(self) -> str:
        return self.queries.ingress()

    def get_app_pods(self) -> AppPodIndex:
        return self.queries.get_app_pods()

    def get_routes(self, app: str) -> str:
        return self.queries.get_routes(app)

    @property
    def namespace(self) -> str:
        return self.env.namespace

    @property
    def system_namespace(self) -> str:
        return self.env.system_namespace

    @property
    def ingress_service(self) -> str:
        return DEFAULT_CONSTANTS.INGRESS_SERVICE_NAME

    def hub(self, component: str) -> str:
        """Image registry configured for a mesh component (mixer, pilot, proxy, ca)."""
        return self.config.image(component)[0]

    def tag(self, component: str) -> str:
        """Image tag configured for a mesh component (mixer, pilot, proxy, ca)."""
        return self.config.image(component)[1]

    @property
    def image_pull_policy(self) -> str:
        return self.config.image_pull_policy
