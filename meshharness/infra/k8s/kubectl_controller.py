"""KubernetesController backed by the kubectl binary.

Each call shells out once; the blocking subprocess runs on a worker thread
so the coroutine interface stays non-blocking.
"""

from __future__ import annotations

import asyncio
import json
import subprocess
from pathlib import Path

from .controller import (
    CommandResult,
    DeploymentInfo,
    KubernetesController,
    KubernetesError,
    PodInfo,
    ServiceInfo,
)


def _scoped(args: list[str], namespace: str | None) -> list[str]:
    return [*args, "-n", namespace] if namespace else args


class KubectlController(KubernetesController):
    """Drives one cluster through `kubectl`, adding `--kubeconfig` when bound."""

    def _command(self, args: list[str]) -> list[str]:
        prefix = ["kubectl"]
        if self.kubeconfig is not None:
            prefix.append(f"--kubeconfig={self.kubeconfig}")
        return prefix + args

    async def _kubectl(self, *args: str, stdin: str | None = None) -> CommandResult:
        """Run kubectl with `args` on a worker thread and capture its output."""
        cmd = self._command(list(args))

        def _invoke() -> CommandResult:
            proc = subprocess.run(cmd, capture_output=True, text=True, input=stdin)
            return CommandResult(
                success=proc.returncode == 0,
                stdout=proc.stdout or "",
                stderr=proc.stderr or "",
                returncode=proc.returncode,
            )

        return await asyncio.to_thread(_invoke)

    async def _items(self, *args: str) -> list[dict]:
        """Return the `items` of a `kubectl get ... -o json` listing.

        Raises:
            KubernetesError: When kubectl exits non-zero or the output is not JSON
        """
        what = " ".join(args)
        result = await self._kubectl(*args, "-o", "json")
        if not result.success:
            raise KubernetesError(f"kubectl {what} failed: {result.stderr.strip()}")
        try:
            payload = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise KubernetesError(f"kubectl {what}: invalid JSON") from e
        return payload.get("items", [])

    # Namespaces

    async def namespace_exists(self, namespace: str) -> bool:
        result = await self._kubectl("get", "namespace", namespace)
        if result.success:
            return True
        if result.not_found:
            return False
        raise KubernetesError(
            f"Cannot check namespace {namespace}: {result.stderr.strip()}"
        )

    async def create_namespace(self, namespace: str) -> CommandResult:
        return await self._kubectl("create", "namespace", namespace)

    async def delete_namespace(self, namespace: str) -> CommandResult:
        return await self._kubectl("delete", "namespace", namespace, "--wait=false")

    # Manifests

    async def apply_manifest(
        self, manifest_path: Path, namespace: str | None = None
    ) -> CommandResult:
        return await self._kubectl(*_scoped(["apply", "-f", str(manifest_path)], namespace))

    async def delete_manifest(
        self, manifest_path: Path, namespace: str | None = None
    ) -> CommandResult:
        return await self._kubectl(*_scoped(["delete", "-f", str(manifest_path)], namespace))

    # Workloads

    async def get_deployments(self, namespace: str) -> list[DeploymentInfo]:
        items = await self._items("get", "deployments", "-n", namespace)
        return [DeploymentInfo.from_object(item) for item in items]

    async def get_pods(
        self, namespace: str, label_selector: str | None = None
    ) -> list[PodInfo]:
        """List pods, optionally filtered by `label_selector`; errors yield []."""
        args = ["get", "pods", "-n", namespace]
        if label_selector:
            args += ["-l", label_selector]
        try:
            items = await self._items(*args)
        except KubernetesError:
            return []
        return [PodInfo.from_object(item) for item in items]

    async def get_app_pods(self, namespace: str) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = {}
        for item in await self._items("get", "pods", "-n", namespace, "-l", "app"):
            pod = PodInfo.from_object(item)
            if app := pod.labels.get("app"):
                grouped.setdefault(app, []).append(pod.name)
        return grouped

    async def exec_in_pod(
        self,
        namespace: str,
        pod: str,
        command: list[str],
        *,
        container: str | None = None,
    ) -> CommandResult:
        args = ["exec", pod, "-n", namespace]
        if container:
            args += ["-c", container]
        return await self._kubectl(*args, "--", *command)

    # Services and secrets

    async def get_services(self, namespace: str) -> list[ServiceInfo]:
        try:
            items = await self._items("get", "services", "-n", namespace)
        except KubernetesError:
            return []
        return [ServiceInfo.from_object(item) for item in items]

    async def create_tls_secret(
        self,
        name: str,
        namespace: str,
        key_file: Path,
        cert_file: Path,
    ) -> CommandResult:
        return await self._kubectl(
            "create", "secret", "tls", name,
            "-n", namespace,
            f"--key={key_file}",
            f"--cert={cert_file}",
        )

    # Cluster-scoped objects

    async def list_cluster_resources(self, kind: str) -> list[str]:
        result = await self._kubectl(
            "get", kind, "-o", "jsonpath={.items[*].metadata.name}"
        )
        if not result.success:
            raise KubernetesError(f"Failed to list {kind}: {result.stderr.strip()}")
        return result.stdout.split()

    async def delete_cluster_resource(self, kind: str, name: str) -> CommandResult:
        return await self._kubectl("delete", kind, name)
