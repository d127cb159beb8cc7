"""Wiring shared by the CLI apps. Tests patch these factories."""

from rich.console import Console
from rich.markup import escape
import typer

from lms_deploy.config import Settings, get_settings
from lms_deploy.errors import ProvisioningError, ValidationError
from lms_deploy.host import Host, LocalHost
from lms_deploy.models import ResourceProfile
from lms_deploy.resources import SystemInspector

console = Console()

__all__ = ["console", "fail", "get_host", "get_resources", "get_settings"]


def get_host(settings: Settings) -> Host:
    return LocalHost(default_timeout=settings.command_timeout)


def get_resources() -> ResourceProfile:
    return SystemInspector().collect()


def fail(error: ProvisioningError) -> typer.Exit:
    """Print a provisioning error and return the exit to raise."""
    if isinstance(error, ValidationError):
        console.print("[bold red]Error:[/bold red] Configuration validation failed")
        for field, message in error.field_errors.items():
            console.print(f"  ✗ {field}: {escape(message)}")
        return typer.Exit(code=1)

    console.print(f"[bold red]Error:[/bold red] {escape(str(error))}")
    if error.step:
        console.print(f"  Failed step: [bold]{error.step}[/bold]")
    output = getattr(error, "output", "")
    if output:
        console.print(output, markup=False, highlight=False)
    return typer.Exit(code=1)
