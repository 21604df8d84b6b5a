"""Provisioning, teardown and runtime queries for mesh test environments.

Import MeshEnvironment from meshharness.deployment.harness; this package
only re-exports the error types so infra modules can use them freely.
"""

from .errors import (
    DeploymentError,
    HarnessError,
    IngressError,
    ManifestError,
    RegistryError,
    SetupPhase,
    TeardownError,
)

__all__ = [
    "DeploymentError",
    "HarnessError",
    "IngressError",
    "ManifestError",
    "RegistryError",
    "SetupPhase",
    "TeardownError",
]
