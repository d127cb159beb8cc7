from pathlib import Path

import typer

from lms_deploy.cli import common, highperf
from lms_deploy.cli.common import console
from lms_deploy.errors import PreconditionError, ProvisioningError
from lms_deploy.logging_config import setup_logging
from lms_deploy.management import StackManager

app = typer.Typer(
    name="lms",
    help="Manage the installed LMS stack",
    add_completion=False,
    no_args_is_help=True,
)

app.add_typer(highperf.app, name="highperf", help="Switch between standard and high-performance mode")


@app.callback()
def main() -> None:
    """Manage the installed LMS stack."""
    settings = common.get_settings()
    setup_logging(settings.log_format, settings.log_level)


def _manager() -> StackManager:
    settings = common.get_settings()
    return StackManager(common.get_host(settings), settings)


@app.command()
def status():
    """Show container status."""
    try:
        manager = _manager()
        console.print(f"Mode: [cyan]{manager.mode.value}[/cyan]")
        console.print(manager.status(), markup=False, highlight=False)
    except ProvisioningError as e:
        raise common.fail(e) from e


@app.command()
def logs(service: str | None = typer.Argument(None, help="app, mysql, redis, queue or scheduler")):
    """Follow container logs."""
    code = _manager().logs(service)
    if code != 0:
        raise typer.Exit(code=code)


@app.command()
def restart():
    """Restart all containers."""
    try:
        _manager().restart()
    except ProvisioningError as e:
        raise common.fail(e) from e
    console.print("[green]✓[/green] Containers restarted")


@app.command()
def stop():
    """Stop all containers."""
    try:
        _manager().stop()
    except ProvisioningError as e:
        raise common.fail(e) from e
    console.print("[green]✓[/green] Containers stopped")


@app.command()
def start():
    """Start all containers."""
    try:
        _manager().start()
    except ProvisioningError as e:
        raise common.fail(e) from e
    console.print("[green]✓[/green] Containers started")


@app.command()
def update():
    """Pull the latest image, restart and rebuild caches."""
    try:
        _manager().update()
    except ProvisioningError as e:
        raise common.fail(e) from e
    console.print("[green]✓[/green] Update complete")


@app.command()
def backup():
    """Create a compressed database backup, keeping the newest ones."""
    try:
        path = _manager().backup()
    except ProvisioningError as e:
        raise common.fail(e) from e
    console.print(f"[green]✓[/green] Backup created: {path}")


@app.command()
def restore(backup_file: Path = typer.Argument(..., help="Path to a backup_*.sql.gz file")):
    """Restore the database from a backup file."""
    try:
        _manager().restore(backup_file)
    except ProvisioningError as e:
        raise common.fail(e) from e
    console.print(f"[green]✓[/green] Restored from {backup_file}")


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def artisan(ctx: typer.Context):
    """Run an artisan command inside the app container."""
    if not ctx.args:
        console.print("[bold red]Error:[/bold red] Usage: lms artisan <command> [args...]")
        raise typer.Exit(code=1)
    result = _manager().artisan(list(ctx.args))
    if result.stdout:
        typer.echo(result.stdout, nl=False)
    if result.stderr:
        typer.echo(result.stderr, nl=False, err=True)
    if not result.ok:
        raise typer.Exit(code=result.returncode)


@app.command()
def shell():
    """Open a shell in the app container."""
    code = _manager().shell()
    if code != 0:
        raise typer.Exit(code=code)


@app.command()
def mysql():
    """Open a MySQL shell."""
    code = _manager().mysql()
    if code != 0:
        raise typer.Exit(code=code)


@app.command()
def reset(yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt")):
    """Delete all data and configuration (local installations only)."""
    manager = _manager()
    try:
        if not manager.is_local():
            raise PreconditionError(
                "reset is only available for local installations", subject="reset"
            )
        if not yes and not typer.confirm("This will DELETE all data. Are you sure?", default=False):
            console.print("Cancelled.")
            return
        manager.reset()
    except ProvisioningError as e:
        raise common.fail(e) from e
    console.print("[green]✓[/green] Reset complete. Run lms-install again to reinstall.")
