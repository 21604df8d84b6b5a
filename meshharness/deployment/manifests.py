"""Instance-specific manifest generation.

Base manifests from the release tree are turned into manifests for one test
environment by a fixed, ordered list of text transformations. Each
transformation is a plain function taking and returning manifest text, so it
can be tested on its own; the pipelines below compose them in order.
"""

from __future__ import annotations

import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlencode

from loguru import logger

from meshharness.deployment.config import HarnessConfig
from meshharness.deployment.errors import ManifestError
from meshharness.infra.constants import DEFAULT_CONSTANTS

# Long delays in the stock manifests and the short values used for tests.
TIMEOUT_REPLACEMENTS: tuple[tuple[str, str], ...] = (
    ("connectTimeout: 10s", "connectTimeout: 1s"),
    ("drainDuration: 45s", "drainDuration: 2s"),
    ("parentShutdownDuration: 1m0s", "parentShutdownDuration: 3s"),
    ("discoveryRefreshDelay: 30s", "discoveryRefreshDelay: 1s"),
    # Annotated values in the ingress pod spec
    ("'30s' #discoveryRefreshDelay", "'1s' #discoveryRefreshDelay"),
    ("'10s' #connectTimeout", "'1s' #connectTimeout"),
    ("'45s' #drainDuration", "'2s' #drainDuration"),
    ("'1m0s' #parentShutdownDuration", "'3s' #parentShutdownDuration"),
)

# Component -> image module name in the manifests
IMAGE_MODULES: dict[str, str] = {
    "mixer": "mixer",
    "pilot": "pilot",
    "proxy": "proxy",
    # Needs updating if the CA image is ever renamed
    "ca": "istio-ca",
}

CONFIG_STORE_URL = "--configStoreURL=k8s://"


# =============================================================================
# Transformations
# =============================================================================


def replace_namespace(content: str, namespace: str) -> str:
    """Replace every occurrence of the system namespace with `namespace`."""
    return content.replace(DEFAULT_CONSTANTS.ISTIO_SYSTEM, namespace)


def restrict_config_store(content: str, namespace: str) -> str:
    """Limit mixer's config store to watching resources in `namespace`."""
    query = urlencode({"ns": namespace})
    return content.replace(CONFIG_STORE_URL, f"{CONFIG_STORE_URL}?{query}")


def append_mtls_excluded_services(content: str, services: list[str] | tuple[str, ...]) -> str:
    """Add service names to the mesh config's `mtlsExcludedServices` list.

    Entries already in the list are kept and not duplicated.

    Raises:
        ManifestError: If the manifest has no mtlsExcludedServices list
    """
    pattern = DEFAULT_CONSTANTS.MTLS_EXCLUDED_SERVICES_PATTERN
    match = pattern.search(content)
    if match is None:
        raise ManifestError(
            "failed to locate the mtlsExcludedServices section of the mesh config"
        )

    values = [v.strip() for v in match.group(1).split(",") if v.strip()]
    for service in services:
        quoted = f'"{service}"'
        if quoted not in values:
            values.append(quoted)

    new_value = f"mtlsExcludedServices: [{','.join(values)}]"
    return pattern.sub(lambda _: new_value, content)


def compress_timeouts(content: str) -> str:
    """Replace long refresh and shutdown delays with short ones."""
    for old, new in TIMEOUT_REPLACEMENTS:
        content = content.replace(old, new)
    return content


def update_image(content: str, module: str, hub: str, tag: str) -> str:
    """Point every `image:` line for `module` at `hub/module:tag`.

    The module name must be followed by the tag separator, so `proxy` does
    not match `proxy_init`.
    """
    image = f"image: {hub}/{module}:{tag}"
    pattern = re.compile(rf"image: .*(/{re.escape(module)}):.*")
    return pattern.sub(lambda _: image, content)


def update_inject_image(content: str, name: str, module: str, hub: str, tag: str) -> str:
    """Rewrite an injector template image field such as `proxyImage:`."""
    image = f"{name}: {hub}/{module}:{tag}"
    pattern = re.compile(rf"{re.escape(name)}: .*(/{re.escape(module)}):.*")
    return pattern.sub(lambda _: image, content)


def update_inject_version(content: str, version: str) -> str:
    """Rewrite the injector template's `version:` lines."""
    line = f"version: {version}"
    return re.sub(r"version: .*", lambda _: line, content)


def update_image_pull_policy(content: str, policy: str) -> str:
    """Set every `imagePullPolicy:` line to `policy`."""
    line = f"imagePullPolicy: {policy}"
    return re.sub(r"imagePullPolicy:.*", lambda _: line, content)


def use_node_port(content: str) -> str:
    """Switch the first LoadBalancer service to NodePort for local clusters."""
    return content.replace("LoadBalancer", "NodePort", 1)


# =============================================================================
# Pipelines
# =============================================================================


@dataclass(frozen=True)
class ManifestOptions:
    """Environment-specific inputs to the transformation pipelines."""

    namespace: str
    cluster_wide: bool = False
    auth_enabled: bool = False
    local_cluster: bool = False
    mtls_excluded_services: tuple[str, ...] = ()
    images: tuple[tuple[str, str, str], ...] = ()
    image_pull_policy: str = ""
    injector_images: tuple[tuple[str, str], tuple[str, str]] | None = None

    @classmethod
    def from_config(
        cls,
        config: HarnessConfig,
        namespace: str,
        *,
        local_cluster: bool | None = None,
    ) -> ManifestOptions:
        """Derive pipeline inputs from the harness configuration."""
        images: list[tuple[str, str, str]] = []
        if not config.base_version:
            for component, module in IMAGE_MODULES.items():
                hub, tag = config.image(component)
                if hub and tag:
                    images.append((module, hub, tag))

        injector_images = None
        if config.pilot_hub and config.pilot_tag:
            injector_images = (
                (config.pilot_hub, config.pilot_tag),
                (config.proxy_hub, config.proxy_tag),
            )

        return cls(
            namespace=namespace,
            cluster_wide=config.cluster_wide,
            auth_enabled=config.auth_enable,
            local_cluster=(
                config.use_local_cluster if local_cluster is None else local_cluster
            ),
            mtls_excluded_services=tuple(config.mtls_excluded_services),
            images=tuple(images),
            image_pull_policy=config.image_pull_policy,
            injector_images=injector_images,
        )


def render_core(content: str, options: ManifestOptions) -> str:
    """Apply the core install pipeline to base manifest text."""
    if not options.cluster_wide:
        content = replace_namespace(content, options.namespace)
        content = restrict_config_store(content, options.namespace)

    if options.auth_enabled and options.mtls_excluded_services:
        content = append_mtls_excluded_services(
            content, options.mtls_excluded_services
        )

    content = compress_timeouts(content)

    for module, hub, tag in options.images:
        content = update_image(content, module, hub, tag)

    if options.image_pull_policy:
        content = update_image_pull_policy(content, options.image_pull_policy)

    if options.local_cluster:
        content = use_node_port(content)

    return content


def render_sidecar_injector(content: str, options: ManifestOptions) -> str:
    """Apply the sidecar injector pipeline to base manifest text."""
    if not options.cluster_wide:
        content = replace_namespace(content, options.namespace)

    if options.injector_images is not None:
        (pilot_hub, pilot_tag), (proxy_hub, proxy_tag) = options.injector_images
        content = update_image(content, "sidecar_injector", pilot_hub, pilot_tag)
        content = update_inject_version(content, pilot_tag)
        content = update_inject_image(
            content, "initImage", "proxy_init", proxy_hub, proxy_tag
        )
        content = update_inject_image(
            content, "proxyImage", "proxy", proxy_hub, proxy_tag
        )

    return content


def render_addon(content: str, options: ManifestOptions) -> str:
    """Apply the addon pipeline to base manifest text."""
    if not options.cluster_wide:
        content = replace_namespace(content, options.namespace)
    return content


# =============================================================================
# Generator
# =============================================================================


def write_atomic(path: Path, content: str) -> None:
    """Write a file so readers see either the full content or nothing.

    Raises:
        ManifestError: If the file cannot be written
    """
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(tmp_name, 0o600)
        Path(tmp_name).replace(path)
    except OSError as e:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)
        logger.error(f"Cannot write into generated yaml file {path}")
        raise ManifestError("Cannot write manifest", path) from e


class ManifestGenerator:
    """Produces instance-specific manifests in a working directory."""

    def __init__(self, options: ManifestOptions, output_dir: Path) -> None:
        """Initialize the generator.

        Args:
            options: Pipeline inputs for this environment
            output_dir: Directory receiving generated manifests
        """
        self.options = options
        self.output_dir = output_dir

    def output_path(self, template: Path) -> Path:
        """Get the generated manifest path for a base template."""
        return self.output_dir / template.name

    def generate_core(self, template: Path) -> Path:
        """Generate a core (or validator) manifest from its template."""
        return self._generate(template, render_core)

    def generate_sidecar_injector(self, template: Path) -> Path:
        """Generate the sidecar injector manifest from its template."""
        return self._generate(template, render_sidecar_injector)

    def generate_addon(self, template: Path) -> Path:
        """Generate an addon manifest from its template."""
        return self._generate(template, render_addon)

    def _generate(self, template: Path, render) -> Path:  # type: ignore[no-untyped-def]
        try:
            content = template.read_text(encoding="utf-8")
        except OSError as e:
            logger.error(f"Cannot read original yaml file {template}")
            raise ManifestError("Cannot read manifest template", template) from e

        try:
            content = render(content, self.options)
        except ManifestError as e:
            logger.error(f"Failed to transform {template}: {e}")
            raise ManifestError(str(e), template) from e

        destination = self.output_path(template)
        write_atomic(destination, content)
        logger.debug(f"Generated {destination} from {template}")
        return destination
