"""``lms-install``: provision the stack on this host."""

from pathlib import Path

from rich.table import Table
import typer

from lms_deploy.cli import common
from lms_deploy.cli.common import console
from lms_deploy.config import Settings
from lms_deploy.credentials import redact
from lms_deploy.errors import ProvisioningError, ValidationError
from lms_deploy.input_config import DEFAULT_CONFIG_FILE, load_config_file, prompt_config, sample_config
from lms_deploy.logging_config import setup_logging
from lms_deploy.models import DeployProfile, InstallationConfig
from lms_deploy.pipeline import Orchestrator, ProvisioningResult

app = typer.Typer(
    name="lms-install",
    help="Provision the containerized LMS stack",
    add_completion=False,
    no_args_is_help=True,
)

MANAGEMENT_COMMANDS = (
    ("lms status", "Show container status"),
    ("lms logs", "Show live logs"),
    ("lms restart", "Restart containers"),
    ("lms update", "Update to the latest version"),
    ("lms backup", "Create a database backup"),
    ("lms artisan", "Run artisan commands"),
    ("lms highperf", "Switch to/from high-performance mode"),
)


def _ask(question: str, default: str, hide: bool) -> str:
    return typer.prompt(
        question,
        default=default,
        hide_input=hide,
        show_default=bool(default) and not hide,
    )


def _report_field(key: str, message: str) -> None:
    console.print(f"[red]✗ {key}:[/red] {message}")


def _print_summary(config: InstallationConfig, orchestrator: Orchestrator) -> None:
    creds = orchestrator.credentials
    table = Table(title="Configuration summary", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value", style="cyan")
    table.add_row("Domain", config.domain)
    table.add_row("Admin Username", config.admin_username)
    table.add_row("Admin Email", config.admin_email)
    table.add_row("School Name", config.school_name)
    table.add_row("School Level", config.school_level.value)
    table.add_row("DB Password", redact(creds.db_password))
    table.add_row("Admin Password", redact(creds.admin_password))
    table.add_row("Timezone", config.timezone)
    table.add_row("Performance", f"{orchestrator.tier.value} ({orchestrator.params.workers} workers)")
    console.print(table)


def _print_completion(
    result: ProvisioningResult,
    config: InstallationConfig,
    settings: Settings,
    profile: DeployProfile,
) -> None:
    creds = result.credentials
    # Secrets are shown in full only on the run that generated them
    show = (lambda s: s) if result.credentials_new else redact

    console.print("\n[bold green]✅ INSTALLATION COMPLETED SUCCESSFULLY[/bold green]\n")
    table = Table(show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("URL", result.url)
    table.add_row("Admin Username", config.admin_username)
    table.add_row("Admin Email", config.admin_email)
    table.add_row("Admin Password", show(creds.admin_password))
    table.add_row("DB Password", show(creds.db_password))
    table.add_row("App Location", str(settings.app_dir))
    table.add_row("Backups", str(settings.backup_dir))
    table.add_row("Credentials", str(settings.credentials_file))
    console.print(table)

    if result.report.warnings:
        console.print("\n[yellow]Completed with warnings:[/yellow]")
        for outcome in result.report.warnings:
            console.print(f"  [yellow]⚠[/yellow] {outcome.name}: {outcome.message}")

    commands = Table(title="Management commands", show_header=False)
    commands.add_column("Command", style="cyan")
    commands.add_column("Description")
    for command, description in MANAGEMENT_COMMANDS:
        commands.add_row(command, description)
    console.print(commands)

    if profile is DeployProfile.CLOUD:
        user = settings.operator_user
        console.print(
            f"\n[cyan]User '{user}' has passwordless sudo, root's SSH keys and docker access.[/cyan]\n"
            f"  ssh {user}@<your-server-ip>\n\n"
            "[yellow]Consider disabling root SSH login:[/yellow]\n"
            "  1. Edit /etc/ssh/sshd_config\n"
            "  2. Set: PermitRootLogin no\n"
            "  3. Restart SSH: systemctl restart sshd"
        )


@app.command()
def run(
    profile: DeployProfile = typer.Option(
        DeployProfile.PRODUCTION, "--profile", "-p", case_sensitive=False, help="Deployment profile"
    ),
    config_file: Path = typer.Option(
        DEFAULT_CONFIG_FILE, "--config", "-c", help="KEY=VALUE configuration file"
    ),
    reset_credentials: bool = typer.Option(
        False, "--reset-credentials", help="Generate new secrets instead of reusing saved ones"
    ),
    log_format: str | None = typer.Option(None, "--log-format", help="console or json"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Install or re-apply the LMS stack. Safe to re-run."""
    settings = common.get_settings()
    setup_logging(log_format or settings.log_format, settings.log_level, settings.log_file)
    host = common.get_host(settings)

    try:
        resources = common.get_resources()
        interactive = not config_file.exists()
        if interactive:
            console.print(
                f"[yellow]No {config_file} found.[/yellow] Starting interactive setup. "
                "Tip: run 'lms-install sample-config' to create one."
            )
            config = prompt_config(profile, ask=_ask, on_error=_report_field)
        else:
            config = load_config_file(config_file, profile)

        orchestrator = Orchestrator(
            host,
            settings,
            config,
            profile,
            resources,
            console=console,
            reset_credentials=reset_credentials,
        )
        orchestrator.preflight()
        _print_summary(config, orchestrator)
        if interactive and not yes and not typer.confirm("Proceed with installation?", default=True):
            console.print("Installation cancelled.")
            return
        result = orchestrator.run()
    except ValidationError as e:
        exit_ = common.fail(e)
        console.print("\nSample configuration ([bold]lms-install sample-config[/bold]):")
        console.print(sample_config(profile), markup=False, highlight=False)
        raise exit_ from e
    except ProvisioningError as e:
        raise common.fail(e) from e

    _print_completion(result, config, settings, profile)


@app.command("sample-config")
def sample_config_command(
    profile: DeployProfile = typer.Option(
        DeployProfile.PRODUCTION, "--profile", "-p", case_sensitive=False
    ),
):
    """Print a sample initial.config."""
    typer.echo(sample_config(profile), nl=False)
