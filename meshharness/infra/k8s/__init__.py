"""Kubernetes infrastructure abstraction layer.

This module provides a clean abstraction over the cluster operations the
harness needs, supporting multiple backends (kubectl subprocess, kr8s library).

Example:
    from meshharness.infra.k8s import create_cluster_client

    client = create_cluster_client(Path("/tmp/t1_kubeconfig"))
    if not client.namespace_exists("t1"):
        client.create_namespace("t1")
"""

from .controller import (
    CommandResult,
    DeploymentInfo,
    KubernetesController,
    KubernetesControllerSync,
    KubernetesError,
    PodInfo,
    ServiceInfo,
)
from .helpers import check_kubeconfig, create_cluster_client, get_k8s_controller
from .kr8s_controller import Kr8sController
from .kubectl_controller import KubectlController
from .utils import run_sync

__all__ = [
    # Controller classes
    "KubernetesController",
    "KubernetesControllerSync",
    "KubectlController",
    "Kr8sController",
    # Data classes
    "CommandResult",
    "DeploymentInfo",
    "PodInfo",
    "ServiceInfo",
    # Errors
    "KubernetesError",
    # Utilities
    "check_kubeconfig",
    "create_cluster_client",
    "get_k8s_controller",
    "run_sync",
]
