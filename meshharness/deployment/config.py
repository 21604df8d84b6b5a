"""Harness configuration model and loader.

The whole configuration surface is one immutable object passed explicitly to
every component, so several environments can live in one process.
"""

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from meshharness.deployment.config_utils import substitute_env_vars
from meshharness.infra.constants import DEFAULT_CONSTANTS

CONFIG_PATH = Path("harness.yaml")

COMPONENTS = ("mixer", "pilot", "proxy", "ca")


def _env(name: str) -> Any:
    return lambda: os.environ.get(name, "")


class HarnessConfig(BaseModel):
    """Startup options for one mesh test environment."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    namespace: str = ""

    mixer_hub: str = Field(default_factory=_env("HUB"))
    mixer_tag: str = Field(default_factory=_env("TAG"))
    pilot_hub: str = Field(default_factory=_env("HUB"))
    pilot_tag: str = Field(default_factory=_env("TAG"))
    proxy_hub: str = Field(default_factory=_env("HUB"))
    proxy_tag: str = Field(default_factory=_env("TAG"))
    ca_hub: str = Field(default_factory=_env("HUB"))
    ca_tag: str = Field(default_factory=_env("TAG"))

    auth_enable: bool = False
    rbac_enable: bool = True
    use_local_cluster: bool = False
    skip_setup: bool = False
    skip_cleanup: bool = False
    cluster_wide: bool = False
    use_automatic_injection: bool = False
    sidecar_injector_file: str = DEFAULT_CONSTANTS.DEFAULT_SIDECAR_INJECTOR_FILE
    with_mixer_validator: bool = False
    image_pull_policy: str = ""

    cluster_registry_dir: Path | None = None
    release_dir: Path = Path(".")
    tmp_dir: Path | None = None
    base_version: str = ""
    mtls_excluded_services: tuple[str, ...] = ()

    backend: Literal["kr8s", "kubectl"] = "kr8s"

    def image(self, component: str) -> tuple[str, str]:
        """Return the (hub, tag) pair configured for a mesh component."""
        if component not in COMPONENTS:
            raise ValueError(f"Unknown mesh component: {component}")
        return getattr(self, f"{component}_hub"), getattr(self, f"{component}_tag")

    @property
    def multi_cluster(self) -> bool:
        """Whether clusters come from a registry directory."""
        return self.cluster_registry_dir is not None


def load_config(file_path: Path = CONFIG_PATH, **overrides: Any) -> HarnessConfig:
    """
    Load a harness YAML file with environment variable substitution.

    Args:
        file_path: Path to the YAML file (default: harness.yaml)
        **overrides: Values that take precedence over the file (e.g. CLI flags)

    Returns:
        Validated HarnessConfig

    Raises:
        ValueError: If required environment variables are missing, validation fails,
                   or YAML structure is invalid (missing 'harness' key)
        FileNotFoundError: If the YAML file doesn't exist

    YAML Structure Requirements:
        The YAML file must have a top-level 'harness:' key containing the options.
    """
    with open(file_path) as f:
        content = f.read()

    content = substitute_env_vars(content)

    try:
        loaded: dict[str, Any] = yaml.safe_load(content)
        if not loaded:
            raise ValueError("Failed to parse YAML")
    except yaml.YAMLError as e:
        raise ValueError(f"Error parsing YAML: {e}") from e

    if "harness" not in loaded:
        raise ValueError("Invalid YAML structure: missing 'harness' key")

    options = dict(loaded["harness"] or {})
    options.update(overrides)
    logger.info(f"Loaded harness configuration from {file_path}")
    logger.debug(f"Configuration keys: {sorted(options)}")

    try:
        return HarnessConfig(**options)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e
