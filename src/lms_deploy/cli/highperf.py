from rich.table import Table
import typer

from lms_deploy.cli import common
from lms_deploy.cli.common import console
from lms_deploy.errors import ProvisioningError
from lms_deploy.mode_switch import ModeSwitch, SwitchResult
from lms_deploy.models import DeploymentMode

app = typer.Typer(invoke_without_command=True)

USAGE = """Usage: lms highperf <up|down|status>

  up      Switch to high-performance mode
  down    Switch back to standard mode
  status  Show the current mode"""


@app.callback()
def highperf(ctx: typer.Context):
    """Switch between standard and high-performance mode."""
    if ctx.invoked_subcommand is None:
        console.print(USAGE)
        raise typer.Exit(code=1)


def _switch(assume_yes: bool = False, measure: bool = False) -> ModeSwitch:
    settings = common.get_settings()

    def confirm(prompt: str) -> bool:
        return assume_yes or typer.confirm(prompt, default=False)

    return ModeSwitch(
        common.get_host(settings),
        settings,
        common.get_resources() if measure else None,
        confirm=confirm,
    )


def _print_health(result: SwitchResult) -> None:
    if not result.health:
        return
    table = Table(title="Containers")
    table.add_column("Service", style="cyan")
    table.add_column("Healthy")
    for service, healthy in result.health.items():
        table.add_row(service, "[green]yes[/green]" if healthy else "[red]no[/red]")
    console.print(table)


@app.command()
def up(yes: bool = typer.Option(False, "--yes", "-y", help="Skip the resource confirmation")):
    """Switch to high-performance mode."""
    try:
        result = _switch(assume_yes=yes, measure=True).enable_highperf()
    except ProvisioningError as e:
        raise common.fail(e) from e
    if result.changed:
        console.print("[green]✓[/green] HIGH PERFORMANCE mode activated")
    elif result.mode is DeploymentMode.HIGHPERF:
        console.print("Already running in high-performance mode")
    else:
        console.print("Cancelled. Mode unchanged.")
    _print_health(result)


@app.command()
def down():
    """Switch back to standard mode."""
    try:
        result = _switch().disable_highperf()
    except ProvisioningError as e:
        raise common.fail(e) from e
    if result.changed:
        console.print("[green]✓[/green] STANDARD mode activated")
    else:
        console.print("Already running in standard mode")
    _print_health(result)


@app.command()
def status():
    """Show the current mode from the running containers."""
    result = _switch().status()
    if result.mode is None:
        console.print("[yellow]No LMS containers are running[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"Currently running in [bold]{result.mode.value}[/bold] mode")
    _print_health(result)
