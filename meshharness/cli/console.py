"""Rich output helpers shared by the CLI commands."""

from collections.abc import Callable
from functools import wraps

import typer
from rich.console import Console, ConsoleRenderable
from rich.panel import Panel
from rich.status import Status

from meshharness.deployment.errors import HarnessError
from meshharness.infra.k8s import KubernetesError


class CLIConsole:
    """Thin Rich wrapper giving every command the same message markers."""

    def __init__(self) -> None:
        self.console = Console()

    def print(self, msg: ConsoleRenderable | str | None = None) -> None:
        self.console.print(msg)

    def status(self, status: str) -> Status:
        return self.console.status(status)

    def _mark(self, marker: str, msg: str) -> None:
        self.console.print(f"{marker} {msg}")

    def info(self, msg: str) -> None:
        self._mark("[cyan]ℹ[/cyan] ", msg)

    def ok(self, msg: str) -> None:
        self._mark("[green]✅[/green]", msg)

    def error(self, msg: str) -> None:
        self._mark("[red]❌[/red]", msg)

    def warn(self, msg: str) -> None:
        self._mark("[yellow]⚠️[/yellow] ", msg)

    def confirm_action(self, action: str, details: str | None = None) -> bool:
        """Show `action` in a red panel and ask for a y/N answer.

        An interrupted prompt counts as "no".
        """
        body = f"[bold red]⚠️  {action}[/bold red]"
        if details:
            body += f"\n\n{details}"
        self.console.print(Panel(body, title="Confirmation Required", border_style="red"))

        try:
            answer = self.console.input("\n[bold]Proceed?[/bold] \\[y/N]: ")
        except (KeyboardInterrupt, EOFError):
            self.console.print("\n[dim]Cancelled.[/dim]")
            return False
        return answer.strip().lower() in {"y", "yes"}

    def handle_error(
        self, message: str, details: str | None = None, exit_code: int = 1
    ) -> None:
        """Report `message` (and optional details) then exit with `exit_code`."""
        self.error(f"[bold red]{message}[/bold red]")
        if details:
            self.console.print(Panel(details, title="Details", border_style="red"))
        raise typer.Exit(exit_code)

    def print_header(self, title: str, style: str = "blue") -> None:
        self.console.print(
            Panel.fit(f"[bold {style}]{title}[/bold {style}]", border_style=style)
        )


def with_error_handling(func: Callable[..., None]) -> Callable[..., None]:
    """Turn harness and configuration errors into a reported non-zero exit."""

    @wraps(func)
    def wrapper(*args: object, **kwargs: object) -> None:
        try:
            func(*args, **kwargs)
        except HarnessError as e:
            console.handle_error(type(e).__name__, str(e))
        except KubernetesError as e:
            console.handle_error("Cluster unavailable", str(e))
        except (ValueError, FileNotFoundError) as e:
            console.handle_error("Invalid configuration", str(e))
        except KeyboardInterrupt:
            console.print("\n[dim]Interrupted.[/dim]")
            raise typer.Exit(130) from None

    return wrapper


console = CLIConsole()
