"""Cluster client contract shared by the kubectl and kr8s backends.

Also holds the plain result records both backends return, each built from
the raw API object through its `from_object` constructor.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .utils import run_sync

# =============================================================================
# Data Types
# =============================================================================


class KubernetesError(Exception):
    """Raised when a cluster query fails in a way callers must distinguish
    from an empty answer."""


@dataclass
class CommandResult:
    """Result of a command execution."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0

    @property
    def already_exists(self) -> bool:
        """Whether the failure reports a resource that already exists."""
        return not self.success and "AlreadyExists" in self.stderr

    @property
    def not_found(self) -> bool:
        """Whether the failure reports a resource that does not exist."""
        return not self.success and (
            "NotFound" in self.stderr or "not found" in self.stderr
        )


@dataclass
class PodInfo:
    """Information about a Kubernetes pod."""

    name: str
    status: str
    labels: dict[str, str] = field(default_factory=dict)
    restarts: int = 0
    ip: str = ""
    host_ip: str = ""
    node: str = ""

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> PodInfo:
        """Build from a Pod API object; a waiting container's reason wins over the phase."""
        metadata = obj.get("metadata", {})
        status = obj.get("status", {})
        phase = status.get("phase", "Unknown")
        restarts = 0
        for container in status.get("containerStatuses", []):
            restarts += container.get("restartCount", 0)
            waiting = container.get("state", {}).get("waiting") or {}
            phase = waiting.get("reason") or phase

        return cls(
            name=metadata.get("name", ""),
            status=phase,
            labels=dict(metadata.get("labels") or {}),
            restarts=restarts,
            ip=status.get("podIP", ""),
            host_ip=status.get("hostIP", ""),
            node=obj.get("spec", {}).get("nodeName", ""),
        )


@dataclass
class DeploymentInfo:
    """Rollout state of a Kubernetes Deployment."""

    name: str
    replicas: int
    ready_replicas: int = 0
    updated_replicas: int = 0
    available_replicas: int = 0

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> DeploymentInfo:
        """Build from a Deployment API object."""
        status = obj.get("status", {})
        return cls(
            name=obj.get("metadata", {}).get("name", ""),
            replicas=obj.get("spec", {}).get("replicas", 1),
            ready_replicas=status.get("readyReplicas", 0),
            updated_replicas=status.get("updatedReplicas", 0),
            available_replicas=status.get("availableReplicas", 0),
        )

    @property
    def is_ready(self) -> bool:
        """Check whether every desired replica is updated, ready and available."""
        return (
            self.ready_replicas >= self.replicas
            and self.updated_replicas >= self.replicas
            and self.available_replicas >= self.replicas
        )


@dataclass
class ServiceInfo:
    """Information about a Kubernetes Service."""

    name: str
    type: str
    cluster_ip: str
    external_ip: str = ""
    ports: str = ""
    node_ports: dict[int, int] = field(default_factory=dict)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ServiceInfo:
        """Build from a Service API object.

        The external address is the first load-balancer ingress (IP, else
        hostname); `node_ports` maps each service port to its node port.
        """
        spec = obj.get("spec", {})
        lb = (obj.get("status", {}).get("loadBalancer", {}).get("ingress") or [{}])[0]
        ports = spec.get("ports", [])
        return cls(
            name=obj.get("metadata", {}).get("name", ""),
            type=spec.get("type", ""),
            cluster_ip=spec.get("clusterIP", ""),
            external_ip=lb.get("ip") or lb.get("hostname", ""),
            ports=",".join(_port_label(p) for p in ports),
            node_ports={
                int(p["port"]): int(p["nodePort"]) for p in ports if p.get("nodePort")
            },
        )


def _port_label(port: dict[str, Any]) -> str:
    label = str(port.get("port"))
    if port.get("targetPort"):
        label += f":{port['targetPort']}"
    if port.get("protocol"):
        label += f"/{port['protocol']}"
    return label


class KubernetesController(ABC):
    """Cluster operations used by the harness, bound to one kubeconfig.

    Backends implement these as coroutines. Blocking callers go through
    `KubernetesControllerSync`.

    Mutating operations report failure through `CommandResult` so callers can
    tell AlreadyExists and NotFound apart. List queries that must not be
    confused with an empty answer raise `KubernetesError`.
    """

    def __init__(self, kubeconfig: Path | None = None) -> None:
        self.kubeconfig = kubeconfig

    # Namespaces

    @abstractmethod
    async def namespace_exists(self, namespace: str) -> bool:
        """False only when the API server reports NotFound.

        Raises:
            KubernetesError: When the API cannot answer
        """

    @abstractmethod
    async def create_namespace(self, namespace: str) -> CommandResult: ...

    @abstractmethod
    async def delete_namespace(self, namespace: str) -> CommandResult:
        """Request deletion; returns as soon as the API server accepts it."""

    # Manifests

    @abstractmethod
    async def apply_manifest(
        self, manifest_path: Path, namespace: str | None = None
    ) -> CommandResult:
        """Apply every document in `manifest_path`.

        `namespace` is the default for namespaced objects that do not name one.
        """

    @abstractmethod
    async def delete_manifest(
        self, manifest_path: Path, namespace: str | None = None
    ) -> CommandResult: ...

    # Workloads

    @abstractmethod
    async def get_deployments(self, namespace: str) -> list[DeploymentInfo]:
        """Raises KubernetesError when the listing fails."""

    @abstractmethod
    async def get_pods(
        self, namespace: str, label_selector: str | None = None
    ) -> list[PodInfo]:
        """Best effort: a failed listing yields an empty list."""

    @abstractmethod
    async def get_app_pods(self, namespace: str) -> dict[str, list[str]]:
        """Pod names grouped by their `app` label.

        Raises:
            KubernetesError: When the listing fails
        """

    @abstractmethod
    async def exec_in_pod(
        self,
        namespace: str,
        pod: str,
        command: list[str],
        *,
        container: str | None = None,
    ) -> CommandResult: ...

    # Services and secrets

    @abstractmethod
    async def get_services(self, namespace: str) -> list[ServiceInfo]:
        """Best effort: a failed listing yields an empty list."""

    @abstractmethod
    async def create_tls_secret(
        self,
        name: str,
        namespace: str,
        key_file: Path,
        cert_file: Path,
    ) -> CommandResult:
        """Create a `kubernetes.io/tls` secret from PEM key and certificate files."""

    # Cluster-scoped objects

    @abstractmethod
    async def list_cluster_resources(self, kind: str) -> list[str]:
        """Names of every object of `kind` ("clusterrole", "clusterrolebinding").

        Raises:
            KubernetesError: When the listing fails
        """

    @abstractmethod
    async def delete_cluster_resource(self, kind: str, name: str) -> CommandResult: ...


class KubernetesControllerSync:
    """Blocking facade: each method drives one controller coroutine to completion."""

    def __init__(self, controller: KubernetesController) -> None:
        self._controller = controller

    @property
    def kubeconfig(self) -> Path | None:
        return self._controller.kubeconfig

    def namespace_exists(self, namespace: str) -> bool:
        return run_sync(self._controller.namespace_exists(namespace))

    def create_namespace(self, namespace: str) -> CommandResult:
        return run_sync(self._controller.create_namespace(namespace))

    def delete_namespace(self, namespace: str) -> CommandResult:
        return run_sync(self._controller.delete_namespace(namespace))

    def apply_manifest(
        self, manifest_path: Path, namespace: str | None = None
    ) -> CommandResult:
        return run_sync(self._controller.apply_manifest(manifest_path, namespace))

    def delete_manifest(
        self, manifest_path: Path, namespace: str | None = None
    ) -> CommandResult:
        return run_sync(self._controller.delete_manifest(manifest_path, namespace))

    def get_deployments(self, namespace: str) -> list[DeploymentInfo]:
        return run_sync(self._controller.get_deployments(namespace))

    def get_pods(
        self, namespace: str, label_selector: str | None = None
    ) -> list[PodInfo]:
        return run_sync(self._controller.get_pods(namespace, label_selector))

    def get_app_pods(self, namespace: str) -> dict[str, list[str]]:
        return run_sync(self._controller.get_app_pods(namespace))

    def exec_in_pod(
        self,
        namespace: str,
        pod: str,
        command: list[str],
        *,
        container: str | None = None,
    ) -> CommandResult:
        return run_sync(
            self._controller.exec_in_pod(namespace, pod, command, container=container)
        )

    def get_services(self, namespace: str) -> list[ServiceInfo]:
        return run_sync(self._controller.get_services(namespace))

    def create_tls_secret(
        self,
        name: str,
        namespace: str,
        key_file: Path,
        cert_file: Path,
    ) -> CommandResult:
        return run_sync(
            self._controller.create_tls_secret(name, namespace, key_file, cert_file)
        )

    def list_cluster_resources(self, kind: str) -> list[str]:
        return run_sync(self._controller.list_cluster_resources(kind))

    def delete_cluster_resource(self, kind: str, name: str) -> CommandResult:
        return run_sync(self._controller.delete_cluster_resource(kind, name))
