"""Mesh installation for a test environment.

Setup is a fixed sequence of phases that stops at the first failure:

    namespace -> core manifest -> [mixer validator] -> [sidecar injector]
              -> addons -> rollout

Nothing is rolled back when a phase fails; removing what was created is
the job of CleanupManager.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path

from loguru import logger

from meshharness.deployment.config import HarnessConfig
from meshharness.deployment.environment import Environment
from meshharness.deployment.errors import DeploymentError, ManifestError, SetupPhase
from meshharness.deployment.manifests import ManifestGenerator
from meshharness.deployment.runner import CommandRunner
from meshharness.infra.constants import DEFAULT_CONSTANTS, HarnessConstants
from meshharness.infra.k8s import KubernetesError


class DeploymentOrchestrator:
    """Installs the mesh into an Environment and waits for it to roll out."""

    def __init__(
        self,
        env: Environment,
        config: HarnessConfig,
        generator: ManifestGenerator,
        *,
        runner: CommandRunner | None = None,
        constants: HarnessConstants | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            env: Environment being installed
            config: Harness configuration
            generator: Manifest generator writing into the environment's yaml dir
            runner: Runner for release helper scripts
            constants: Optional harness constants
            sleep: Sleep function used between rollout polls
            clock: Monotonic clock used for the rollout deadline
        """
        self.env = env
        self.config = config
        self.generator = generator
        self.constants = constants or DEFAULT_CONSTANTS
        self.runner = runner or CommandRunner(
            env.release_dir, env={"KUBECONFIG": str(env.primary.kubeconfig)}
        )
        self._sleep = sleep
        self._clock = clock

    @property
    def client(self):  # type: ignore[no-untyped-def]
        return self.env.primary.client

    def setup(self) -> None:
        """Run every setup phase in order.

        Raises:
            DeploymentError: Naming the phase that failed
        """
        logger.info(
            f"Setting up mesh environment {self.env.namespace} "
            f"(skip_setup={self.config.skip_setup})"
        )
        try:
            self.env.yaml_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DeploymentError(
                SetupPhase.NAMESPACE_ENSURED,
                f"Cannot create working directory {self.env.yaml_dir}: {e}",
            ) from e

        if self.config.skip_setup:
            return

        self.ensure_namespaces()
        self.apply_core()
        if self.config.with_mixer_validator:
            self.apply_mixer_validator()
        if self.config.use_automatic_injection:
            self.apply_sidecar_injector()
        self.apply_addons()
        self.create_ingress_secret()
        self.confirm_rollout()
        logger.info(f"Mesh environment {self.env.namespace} is ready")

    # =========================================================================
    # Phases
    # =========================================================================

    def ensure_namespaces(self) -> None:
        """Create the namespace on the primary and the remote cluster."""
        namespace = self.env.namespace
        for cluster in self.env.clusters:
            result = cluster.client.create_namespace(namespace)
            if result.already_exists:
                logger.warning(
                    f"Namespace {namespace} already exists on cluster {cluster.name}"
                )
            elif not result.success:
                logger.error(
                    f"Unable to create namespace {namespace} on cluster "
                    f"{cluster.name}: {result.stderr.strip()}"
                )
                raise DeploymentError(
                    SetupPhase.NAMESPACE_ENSURED,
                    f"Unable to create namespace {namespace} on cluster {cluster.name}",
                )
            if cluster is self.env.primary:
                self.env.namespace_created = True

    def core_manifest(self) -> Path:
        """Base core manifest for the configured install mode."""
        return self.env.release.core_manifest(
            cluster_wide=self.env.cluster_wide, auth_enabled=self.env.auth_enabled
        )

    def apply_core(self) -> Path:
        """Generate and apply the core install manifest."""
        phase = SetupPhase.CORE_MANIFEST_APPLIED
        manifest = self._generate(phase, self.generator.generate_core, self.core_manifest())
        self._apply(phase, manifest)
        return manifest

    def apply_mixer_validator(self) -> Path | None:
        """Generate and apply the mixer validator, then provision its certificate.

        Returns None when the release predates the validator.
        """
        phase = SetupPhase.VALIDATOR_APPLIED
        template = self.env.release.mixer_validator
        if not template.exists():
            logger.warning(
                f"{template.name} does not exist in install dir {template.parent}"
            )
            return None

        manifest = self._generate(phase, self.generator.generate_core, template)
        self._apply(phase, manifest)

        service = self.constants.MIXER_VALIDATOR_SERVICE
        result = self.runner.run_script(
            self.env.release.webhook_cert_script,
            [
                "--service",
                service,
                "--secret",
                service,
                "--namespace",
                self.env.namespace,
            ],
        )
        if not result.success:
            logger.error(f"Webhook certificate setup failed: {result.stderr.strip()}")
            raise DeploymentError(phase, "Webhook certificate setup failed")
        return manifest

    def apply_sidecar_injector(self) -> Path:
        """Generate and apply the sidecar injector manifest."""
        phase = SetupPhase.INJECTOR_APPLIED
        template = self.env.release.sidecar_injector(self.config.sidecar_injector_file)
        manifest = self._generate(
            phase, self.generator.generate_sidecar_injector, template
        )
        self._apply(phase, manifest)
        return manifest

    def apply_addons(self) -> list[Path]:
        """Generate and apply each addon, one at a time, in order."""
        phase = SetupPhase.ADDONS_APPLIED
        manifests = []
        for addon in self.constants.ADDONS:
            manifest = self._generate(
                phase, self.generator.generate_addon, self.env.release.addon(addon)
            )
            self._apply(phase, manifest)
            manifests.append(manifest)
        return manifests

    def create_ingress_secret(self) -> None:
        """Create the ingress TLS secret; an existing secret is fine."""
        release = self.env.release
        result = self.client.create_tls_secret(
            self.constants.INGRESS_CERTS_NAME,
            self.env.system_namespace,
            release.ingress_key,
            release.ingress_cert,
        )
        if result.already_exists:
            logger.warning("Secret already exists")
        elif not result.success:
            logger.warning(
                f"Could not create secret {self.constants.INGRESS_CERTS_NAME}: "
                f"{result.stderr.strip()}"
            )

    def confirm_rollout(self) -> None:
        """Poll deployments until all are ready or the rollout ceiling passes."""
        namespace = self.env.system_namespace
        deadline = self._clock() + self.constants.MAX_DEPLOYMENT_ROLLOUT_TIME
        pending: list[str] = []

        while True:
            try:
                deployments = self.client.get_deployments(namespace)
                pending = [d.name for d in deployments if not d.is_ready]
                if not pending:
                    logger.info(f"All deployments in {namespace} are ready")
                    return
            except KubernetesError as e:
                logger.warning(f"Cannot read deployment status: {e}")
                pending = ["<unknown>"]

            if self._clock() >= deadline:
                break
            self._sleep(self.constants.ROLLOUT_POLL_INTERVAL)

        raise DeploymentError(
            SetupPhase.ROLLOUT_CONFIRMED,
            f"Deployments not ready after "
            f"{self.constants.MAX_DEPLOYMENT_ROLLOUT_TIME:.0f}s: {', '.join(pending)}",
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _generate(self, phase: SetupPhase, generate, template: Path) -> Path:  # type: ignore[no-untyped-def]
        try:
            return generate(template)
        except ManifestError as e:
            logger.error(f"Generating yaml from {template} failed")
            raise DeploymentError(phase, str(e)) from e

    def _apply(self, phase: SetupPhase, manifest: Path) -> None:
        result = self.client.apply_manifest(manifest, self.env.namespace)
        if not result.success:
            logger.error(f"Kubectl apply {manifest} failed: {result.stderr.strip()}")
            raise DeploymentError(phase, f"Applying {manifest.name} failed")
