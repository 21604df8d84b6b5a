"""Cluster registry resolution.

A cluster registry directory holds `Cluster` descriptors (cluster-registry
API objects) whose annotations name the kubeconfig file for each cluster.
The cluster flagged as the pilot config store is the primary cluster; every
other descriptor describes a remote cluster.

When no registry directory is configured, the ambient kubeconfig is copied
into the working directory and used as the only cluster.
"""

from __future__ import annotations

import os
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from meshharness.deployment.errors import RegistryError
from meshharness.infra.k8s import KubernetesControllerSync, KubernetesError

ACCESS_CONFIG_ANNOTATION = "config.istio.io/accessConfigFile"
PILOT_CFG_STORE_ANNOTATION = "config.istio.io/pilotCfgStore"
PILOT_ENDPOINT_ANNOTATION = "config.istio.io/pilotEndpoint"
PLATFORM_ANNOTATION = "config.istio.io/platform"

ClientFactory = Callable[[Path], KubernetesControllerSync]


@dataclass(frozen=True)
class ClusterDescriptor:
    """One `Cluster` entry parsed from a registry file."""

    name: str
    access_config: str
    pilot_cfg_store: bool = False
    pilot_endpoint: str = ""
    platform: str = ""
    source: Path | None = None


@dataclass(frozen=True)
class ClusterAccess:
    """Access configuration and live client for one cluster."""

    name: str
    kubeconfig: Path
    client: KubernetesControllerSync


@dataclass(frozen=True)
class ClusterSet:
    """The primary cluster and the optional remote cluster."""

    primary: ClusterAccess
    remote: ClusterAccess | None = None


def read_cluster_descriptors(registry_dir: Path) -> list[ClusterDescriptor]:
    """Parse every cluster descriptor in a registry directory.

    Files are read in name order so "last parsed" is deterministic.

    Raises:
        RegistryError: If the directory or any descriptor file is unreadable
    """
    try:
        files = sorted(
            p for p in registry_dir.iterdir() if p.suffix in (".yaml", ".yml")
        )
    except OSError as e:
        raise RegistryError("Cannot read cluster registry directory", registry_dir) from e

    descriptors: list[ClusterDescriptor] = []
    for path in files:
        try:
            documents = list(yaml.safe_load_all(path.read_text(encoding="utf-8")))
        except (OSError, yaml.YAMLError) as e:
            raise RegistryError("Cannot parse cluster descriptor", path) from e

        for doc in documents:
            if isinstance(doc, dict) and doc.get("kind") == "Cluster":
                descriptors.append(_parse_descriptor(doc, path))

    return descriptors


def _parse_descriptor(doc: dict[str, Any], path: Path) -> ClusterDescriptor:
    metadata = doc.get("metadata") or {}
    annotations = metadata.get("annotations") or {}
    name = metadata.get("name")
    access_config = annotations.get(ACCESS_CONFIG_ANNOTATION)

    if not name:
        raise RegistryError("Cluster descriptor has no metadata.name", path)
    if not access_config:
        raise RegistryError(
            f"Cluster {name} has no {ACCESS_CONFIG_ANNOTATION} annotation", path
        )

    return ClusterDescriptor(
        name=name,
        access_config=access_config,
        pilot_cfg_store=str(annotations.get(PILOT_CFG_STORE_ANNOTATION, "")).lower()
        == "true",
        pilot_endpoint=annotations.get(PILOT_ENDPOINT_ANNOTATION, ""),
        platform=annotations.get(PLATFORM_ANNOTATION, ""),
        source=path,
    )


def ambient_kubeconfig() -> Path:
    """Locate the kubeconfig of the ambient single-cluster context."""
    env_value = os.environ.get("KUBECONFIG", "")
    if env_value:
        return Path(env_value.split(os.pathsep)[0]).expanduser()
    return Path.home() / ".kube" / "config"


def resolve_clusters(
    registry_dir: Path | None,
    *,
    tmp_dir: Path,
    namespace: str,
    client_factory: ClientFactory,
) -> ClusterSet:
    """Resolve the primary and optional remote cluster.

    Args:
        registry_dir: Cluster registry directory, or None for the ambient context
        tmp_dir: Working directory for the copied ambient kubeconfig
        namespace: Test namespace, used to name the copied kubeconfig
        client_factory: Builds a live client from a kubeconfig path

    Returns:
        ClusterSet with a primary cluster and at most one remote cluster

    Raises:
        RegistryError: If any descriptor or client cannot be resolved
    """
    if registry_dir is None:
        source = ambient_kubeconfig()
        kubeconfig = tmp_dir / f"{namespace}_kubeconfig"
        try:
            shutil.copyfile(source, kubeconfig)
        except OSError as e:
            raise RegistryError("Cannot copy ambient kubeconfig", source) from e
        logger.info(f"Using ambient kubeconfig {source} (copied to {kubeconfig})")
        return ClusterSet(primary=_connect("ambient", kubeconfig, client_factory))

    descriptors = read_cluster_descriptors(registry_dir)
    pilot = [d for d in descriptors if d.pilot_cfg_store]
    if not pilot:
        raise RegistryError("No pilot config store cluster in registry", registry_dir)

    primary_desc = pilot[0]
    primary = _connect(
        primary_desc.name, registry_dir / primary_desc.access_config, client_factory
    )

    remotes = [d for d in descriptors if d is not primary_desc]
    remote: ClusterAccess | None = None
    for desc in remotes:
        kubeconfig = registry_dir / desc.access_config
        logger.info(f"Cluster name: {desc.name}, AccessConfigFile: {kubeconfig}")
        # Only one remote cluster is supported; the last one parsed is kept.
        remote = _connect(desc.name, kubeconfig, client_factory)

    if len(remotes) > 1:
        ignored = ", ".join(d.name for d in remotes[:-1])
        logger.warning(
            f"{len(remotes)} remote clusters defined; using {remotes[-1].name}, "
            f"ignoring {ignored}"
        )

    return ClusterSet(primary=primary, remote=remote)


def _connect(name: str, kubeconfig: Path, client_factory: ClientFactory) -> ClusterAccess:
    try:
        client = client_factory(kubeconfig)
    except KubernetesError as e:
        raise RegistryError(f"Cannot create client for cluster {name}", kubeconfig) from e
    return ClusterAccess(name=name, kubeconfig=kubeconfig, client=client)
