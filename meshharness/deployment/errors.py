"""Exceptions raised by the mesh test harness."""

from __future__ import annotations

from enum import Enum
from pathlib import Path


class SetupPhase(Enum):
    """Phases of environment setup, in execution order."""

    NAMESPACE_ENSURED = "namespace"
    CORE_MANIFEST_APPLIED = "core manifest"
    VALIDATOR_APPLIED = "mixer validator"
    INJECTOR_APPLIED = "sidecar injector"
    ADDONS_APPLIED = "addons"
    ROLLOUT_CONFIRMED = "rollout"


class HarnessError(Exception):
    """Base class for harness failures."""


class RegistryError(HarnessError):
    """A cluster registry could not be resolved into cluster clients."""

    def __init__(self, message: str, path: Path | None = None) -> None:
        super().__init__(f"{message}: {path}" if path else message)
        self.path = path


class ManifestError(HarnessError):
    """A manifest could not be read, transformed or written."""

    def __init__(self, message: str, path: Path | None = None) -> None:
        super().__init__(f"{message}: {path}" if path else message)
        self.path = path


class DeploymentError(HarnessError):
    """Setup stopped in a specific phase."""

    def __init__(self, phase: SetupPhase, message: str) -> None:
        super().__init__(f"[{phase.value}] {message}")
        self.phase = phase


class TeardownError(HarnessError):
    """One or more cleanup actions failed."""

    def __init__(self, failures: list[str]) -> None:
        super().__init__("Teardown failed: " + "; ".join(failures))
        self.failures = list(failures)


class IngressError(HarnessError):
    """The ingress entry point could not be discovered."""
