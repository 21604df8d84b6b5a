from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from cachetools.func import lru_cache  # type: ignore

from meshharness.infra.k8s.controller import (
    KubernetesController,
    KubernetesControllerSync,
    KubernetesError,
)

Backend = Literal["kr8s", "kubectl"]


def check_kubeconfig(kubeconfig: Path) -> None:
    """Verify that a kubeconfig file is readable and describes a cluster.

    Raises:
        KubernetesError: If the file is missing, unparseable or has no clusters
    """
    try:
        content = kubeconfig.read_text(encoding="utf-8")
    except OSError as e:
        raise KubernetesError(f"Cannot read kubeconfig {kubeconfig}: {e}") from e

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise KubernetesError(f"Cannot parse kubeconfig {kubeconfig}: {e}") from e

    if not isinstance(data, dict) or not data.get("clusters"):
        raise KubernetesError(f"Kubeconfig {kubeconfig} defines no clusters")


@lru_cache(maxsize=8)
def get_k8s_controller(
    kubeconfig: Path | None = None, backend: Backend = "kr8s"
) -> KubernetesController:
    """Get a KubernetesController bound to a kubeconfig.

    Returns:
        A Kr8sController, or a KubectlController when backend is "kubectl"
    """
    if backend == "kubectl":
        from meshharness.infra.k8s.kubectl_controller import KubectlController

        return KubectlController(kubeconfig)

    from meshharness.infra.k8s.kr8s_controller import Kr8sController

    return Kr8sController(kubeconfig)


def create_cluster_client(
    kubeconfig: Path, backend: Backend = "kr8s"
) -> KubernetesControllerSync:
    """Build a live, blocking cluster client for a kubeconfig.

    Raises:
        KubernetesError: If the kubeconfig is unusable
    """
    check_kubeconfig(kubeconfig)
    return KubernetesControllerSync(get_k8s_controller(kubeconfig, backend))
