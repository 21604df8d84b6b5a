"""KubernetesController backed by the kr8s async client.

Typed objects are fetched through kr8s and converted with the shared
`from_object` constructors. Multi-document manifests still go through
kubectl because kr8s has no `apply -f`.
"""

from __future__ import annotations

import base64
from pathlib import Path
from typing import Any

import kr8s
from kr8s.asyncio.objects import (
    ClusterRole,
    ClusterRoleBinding,
    Deployment,
    Namespace,
    Pod,
    Secret,
    Service,
)

from .controller import (
    CommandResult,
    DeploymentInfo,
    KubernetesController,
    KubernetesError,
    PodInfo,
    ServiceInfo,
)
from .kubectl_controller import KubectlController

_CLUSTER_KINDS: dict[str, Any] = {
    "clusterrole": ClusterRole,
    "clusterrolebinding": ClusterRoleBinding,
}


def _failed(message: str) -> CommandResult:
    return CommandResult(success=False, stderr=message, returncode=1)


class Kr8sController(KubernetesController):
    """Native async controller.

    A fresh kr8s API handle is opened per call. `run_sync` gives every call its
    own event loop and a handle cannot outlive the loop it was created on.
    """

    def __init__(self, kubeconfig: Path | None = None) -> None:
        super().__init__(kubeconfig)
        self._kubectl = KubectlController(kubeconfig)

    async def _api(self) -> Any:
        if self.kubeconfig is None:
            return await kr8s.asyncio.api()
        return await kr8s.asyncio.api(kubeconfig=str(self.kubeconfig))

    async def _create(self, obj_cls: Any, body: dict[str, Any], label: str) -> CommandResult:
        try:
            await obj_cls(body, api=await self._api()).create()
        except kr8s.ServerError as e:
            return _server_error_result(e)
        except Exception as e:
            return _failed(str(e))
        return CommandResult(success=True, stdout=f"{label} created")

    async def _delete(self, obj_cls: Any, name: str, label: str) -> CommandResult:
        try:
            obj = await obj_cls.get(name, api=await self._api())
            await obj.delete()
        except kr8s.NotFoundError:
            return _failed(f'{label} "{name}" not found')
        except Exception as e:
            return _failed(str(e))
        return CommandResult(success=True, stdout=f'{label} "{name}" deleted')

    # Namespaces

    async def namespace_exists(self, namespace: str) -> bool:
        try:
            return await Namespace.get(namespace, api=await self._api()) is not None
        except kr8s.NotFoundError:
            return False
        except Exception as e:
            raise KubernetesError(f"Cannot check namespace {namespace}: {e}") from e

    async def create_namespace(self, namespace: str) -> CommandResult:
        body = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": namespace}}
        return await self._create(Namespace, body, f"namespace/{namespace}")

    async def delete_namespace(self, namespace: str) -> CommandResult:
        return await self._delete(Namespace, namespace, "namespace")

    # Manifests

    async def apply_manifest(
        self, manifest_path: Path, namespace: str | None = None
    ) -> CommandResult:
        return await self._kubectl.apply_manifest(manifest_path, namespace)

    async def delete_manifest(
        self, manifest_path: Path, namespace: str | None = None
    ) -> CommandResult:
        return await self._kubectl.delete_manifest(manifest_path, namespace)

    # Workloads

    async def get_deployments(self, namespace: str) -> list[DeploymentInfo]:
        try:
            api = await self._api()
            return [
                DeploymentInfo.from_object(d.raw)
                async for d in Deployment.list(namespace=namespace, api=api)
            ]
        except Exception as e:
            raise KubernetesError(f"Failed to list deployments in {namespace}: {e}") from e

    async def get_pods(
        self, namespace: str, label_selector: str | None = None
    ) -> list[PodInfo]:
        """List pods, optionally filtered by `label_selector`; errors yield []."""
        selector: dict[str, Any] = {"label_selector": label_selector} if label_selector else {}
        try:
            api = await self._api()
            return [
                PodInfo.from_object(pod.raw)
                async for pod in Pod.list(namespace=namespace, api=api, **selector)
            ]
        except Exception:
            return []

    async def get_app_pods(self, namespace: str) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = {}
        try:
            api = await self._api()
            async for pod in Pod.list(namespace=namespace, label_selector="app", api=api):
                info = PodInfo.from_object(pod.raw)
                if app := info.labels.get("app"):
                    grouped.setdefault(app, []).append(info.name)
        except Exception as e:
            raise KubernetesError(f"Failed to list pods in {namespace}: {e}") from e
        return grouped

    async def exec_in_pod(
        self,
        namespace: str,
        pod: str,
        command: list[str],
        *,
        container: str | None = None,
    ) -> CommandResult:
        try:
            target = await Pod.get(pod, namespace=namespace, api=await self._api())
            proc = await target.exec(command, container=container, check=False)
        except kr8s.NotFoundError:
            return _failed(f'pod "{pod}" not found')
        except Exception as e:
            return _failed(str(e))
        return CommandResult(
            success=proc.returncode == 0,
            stdout=_decode(proc.stdout),
            stderr=_decode(proc.stderr),
            returncode=proc.returncode,
        )

    # Services and secrets

    async def get_services(self, namespace: str) -> list[ServiceInfo]:
        try:
            api = await self._api()
            return [
                ServiceInfo.from_object(svc.raw)
                async for svc in Service.list(namespace=namespace, api=api)
            ]
        except Exception:
            return []

    async def create_tls_secret(
        self,
        name: str,
        namespace: str,
        key_file: Path,
        cert_file: Path,
    ) -> CommandResult:
        try:
            pem = {"tls.crt": cert_file.read_bytes(), "tls.key": key_file.read_bytes()}
        except OSError as e:
            return _failed(str(e))
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": name, "namespace": namespace},
            "type": "kubernetes.io/tls",
            "data": {k: base64.b64encode(v).decode() for k, v in pem.items()},
        }
        return await self._create(Secret, body, f"secret/{name}")

    # Cluster-scoped objects

    async def list_cluster_resources(self, kind: str) -> list[str]:
        obj_cls = _cluster_kind(kind)
        try:
            api = await self._api()
            return [obj.name async for obj in obj_cls.list(api=api)]
        except Exception as e:
            raise KubernetesError(f"Failed to list {kind}: {e}") from e

    async def delete_cluster_resource(self, kind: str, name: str) -> CommandResult:
        return await self._delete(_cluster_kind(kind), name, kind)


def _cluster_kind(kind: str) -> Any:
    try:
        return _CLUSTER_KINDS[kind.lower()]
    except KeyError:
        raise KubernetesError(f"Unsupported cluster-scoped kind: {kind}") from None


def _server_error_result(error: kr8s.ServerError) -> CommandResult:
    """Translate a kr8s ServerError, tagging HTTP 409 as AlreadyExists."""
    stderr = str(error)
    status = getattr(getattr(error, "response", None), "status_code", None)
    if status == 409 and "AlreadyExists" not in stderr:
        stderr = f"AlreadyExists: {stderr}"
    return _failed(stderr)


def _decode(output: bytes | str | None) -> str:
    if isinstance(output, bytes):
        return output.decode(errors="replace")
    return output or ""
