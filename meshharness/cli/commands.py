"""Mesh test environment commands.

These commands drive the same MeshEnvironment that test suites use, so an
environment can be brought up, inspected and torn down by hand.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.table import Table

from meshharness.deployment.config import CONFIG_PATH, HarnessConfig, load_config
from meshharness.deployment.environment import resolve_namespace
from meshharness.deployment.harness import MeshEnvironment, generate_run_id
from meshharness.deployment.manifests import ManifestGenerator, ManifestOptions
from meshharness.infra.constants import DEFAULT_CONSTANTS, ReleasePaths

from .console import console, with_error_handling


@dataclass
class CLIOptions:
    """Options shared by every command, collected by the app callback."""

    config_file: Path | None = None
    overrides: dict[str, Any] = field(default_factory=dict)

    def load(self, **extra: Any) -> HarnessConfig:
        """Build the harness configuration: file (if any), then CLI flags."""
        overrides = {k: v for k, v in {**self.overrides, **extra}.items() if v is not None}
        if self.config_file is not None:
            return load_config(self.config_file, **overrides)
        if CONFIG_PATH.exists():
            return load_config(CONFIG_PATH, **overrides)
        return HarnessConfig(**overrides)


def _options(ctx: typer.Context) -> CLIOptions:
    if isinstance(ctx.obj, CLIOptions):
        return ctx.obj
    return CLIOptions()


def _existing_config(ctx: typer.Context) -> HarnessConfig:
    """Configuration for commands that act on an environment created earlier.

    These need a namespace that already exists, so a generated run id is
    never acceptable.
    """
    config = _options(ctx).load()
    if not config.namespace and not config.cluster_wide:
        console.handle_error("A namespace is required (--namespace)")
    return config


# ---------------------------------------------------------------------------
# Typer App
# ---------------------------------------------------------------------------

app = typer.Typer(
    help="🕸️  Mesh E2E Harness - provision and tear down mesh test environments",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


@app.callback()
def common_options(
    ctx: typer.Context,
    config_file: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Harness YAML file (default: ./harness.yaml)"),
    ] = None,
    namespace: Annotated[
        str | None,
        typer.Option("--namespace", "-n", help="Test namespace"),
    ] = None,
    release_dir: Annotated[
        Path | None,
        typer.Option("--release-dir", help="Root of the mesh release tree"),
    ] = None,
    cluster_registry_dir: Annotated[
        Path | None,
        typer.Option("--cluster-registry-dir", help="Directory of Cluster descriptors"),
    ] = None,
    tmp_dir: Annotated[
        Path | None,
        typer.Option("--tmp-dir", help="Working directory for generated files"),
    ] = None,
    backend: Annotated[
        str | None,
        typer.Option("--backend", help="Cluster client backend: kr8s or kubectl"),
    ] = None,
    auth: Annotated[
        bool | None,
        typer.Option("--auth/--no-auth", help="Install with mutual TLS enabled"),
    ] = None,
    cluster_wide: Annotated[
        bool | None,
        typer.Option("--cluster-wide/--namespaced", help="Install into istio-system"),
    ] = None,
    local: Annotated[
        bool | None,
        typer.Option("--local/--no-local", help="Target a local cluster (NodePort ingress)"),
    ] = None,
    auto_inject: Annotated[
        bool | None,
        typer.Option("--auto-inject/--no-auto-inject", help="Install the sidecar injector"),
    ] = None,
    mixer_validator: Annotated[
        bool | None,
        typer.Option("--mixer-validator/--no-mixer-validator", help="Install the mixer validator"),
    ] = None,
) -> None:
    """Options shared by every command; they override the harness file."""
    ctx.obj = CLIOptions(
        config_file=config_file,
        overrides={
            "namespace": namespace,
            "release_dir": release_dir,
            "cluster_registry_dir": cluster_registry_dir,
            "tmp_dir": tmp_dir,
            "backend": backend,
            "auth_enable": auth,
            "cluster_wide": cluster_wide,
            "use_local_cluster": local,
            "use_automatic_injection": auto_inject,
            "with_mixer_validator": mixer_validator,
        },
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
@with_error_handling
def up(ctx: typer.Context) -> None:
    """Install the mesh into a fresh test namespace.

    Examples:
        meshharness-cli --release-dir ./istio-0.8.0 up
        meshharness-cli -n t1 --auth --local up
    """
    console.print_header("Setting up mesh environment")
    config = _options(ctx).load()
    env = MeshEnvironment.create(config)

    with console.status(f"Installing into namespace {env.namespace}..."):
        env.setup()

    console.ok(f"Mesh environment ready in namespace [bold]{env.namespace}[/bold]")
    console.info(f"Generated manifests: {env.env.yaml_dir}")
    console.info(f"Tear down with: meshharness-cli -n {env.namespace} down")


@app.command()
@with_error_handling
def down(
    ctx: typer.Context,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt"),
    ] = False,
) -> None:
    """Tear down an existing test namespace.

    Examples:
        meshharness-cli -n t1 down
        meshharness-cli -n t1 down -y
    """
    console.print_header("Tearing down mesh environment")
    env = MeshEnvironment.create(_existing_config(ctx))

    if not yes and not console.confirm_action(
        f"Tear down {env.namespace}",
        f"This will delete namespace '{env.namespace}' and the cluster roles "
        f"and bindings whose names contain it.",
    ):
        console.print("[dim]Operation cancelled[/dim]")
        raise typer.Exit(0)

    if not env.adopt_existing():
        console.warn(f"Namespace {env.namespace} does not exist")
        raise typer.Exit(0)

    with console.status(f"Deleting namespace {env.namespace}..."):
        env.teardown()
    console.ok(f"Mesh environment {env.namespace} removed")


@app.command()
@with_error_handling
def render(
    ctx: typer.Context,
    output_dir: Annotated[
        Path,
        typer.Option("--output-dir", "-o", help="Directory for generated manifests"),
    ] = Path("yaml"),
) -> None:
    """Generate the instance manifests without touching a cluster."""
    config = _options(ctx).load()
    namespace = resolve_namespace(config, generate_run_id())
    generator = ManifestGenerator(ManifestOptions.from_config(config, namespace), output_dir)
    release = ReleasePaths(config.release_dir)

    generated = [
        generator.generate_core(
            release.core_manifest(
                cluster_wide=config.cluster_wide, auth_enabled=config.auth_enable
            )
        )
    ]
    if config.with_mixer_validator and release.mixer_validator.exists():
        generated.append(generator.generate_core(release.mixer_validator))
    if config.use_automatic_injection:
        generated.append(
            generator.generate_sidecar_injector(
                release.sidecar_injector(config.sidecar_injector_file)
            )
        )
    for addon in DEFAULT_CONSTANTS.ADDONS:
        generated.append(generator.generate_addon(release.addon(addon)))

    for path in generated:
        console.ok(str(path))
    console.info(f"Rendered for namespace [bold]{namespace}[/bold]")


@app.command()
@with_error_handling
def ingress(ctx: typer.Context) -> None:
    """Print the ingress URL of a running environment."""
    env = MeshEnvironment.create(_existing_config(ctx))
    with console.status("Discovering ingress..."):
        address = env.ingress()
    console.print(address)


@app.command()
@with_error_handling
def pods(ctx: typer.Context) -> None:
    """List application pods in a running environment, grouped by app."""
    env = MeshEnvironment.create(_existing_config(ctx))
    index = env.get_app_pods()
    if not index:
        console.warn(f"No app pods found in namespace {env.namespace}")
        return

    table = Table(title=f"Pods in {env.namespace}")
    table.add_column("App", style="cyan")
    table.add_column("Pods")
    for app_name in sorted(index):
        table.add_row(app_name, "\n".join(index[app_name]))
    console.print(table)
