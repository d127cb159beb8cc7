"""Unit tests for the provisioning Orchestrator."""

from pathlib import Path

import pytest
from rich.console import Console

from lms_deploy.compose import MYSQL_PING
from lms_deploy.errors import (
    PreconditionError,
    ReadinessTimeoutError,
    StepExecutionError,
    ValidationError,
)
from lms_deploy.host import CommandResult
from lms_deploy.models import (
    DeployProfile,
    InstallationConfig,
    PerformanceTier,
    ResourceProfile,
    ValidationProfile,
)
from lms_deploy.pipeline import (
    DEPLOYED_MARKER,
    OS_RELEASE,
    ROOT_AUTHORIZED_KEYS,
    SEED_MARKER,
    Orchestrator,
    check_os,
    detect_operator_user,
    ensure_cron_line,
)

PUBLIC_IP = "203.0.113.10"
CERT = Path("/etc/letsencrypt/live/lms.example.sch.id/fullchain.pem")
SERVER_PROGRAMS = {"curl", "git", "openssl", "crontab", "unzip", "ufw", "docker", "nginx", "certbot"}

# Commands that change host or stack state
DESTRUCTIVE = [
    ("apt-get",),
    ("useradd",),
    ("usermod",),
    ("ufw", "allow"),
    ("ufw", "--force", "enable"),
    ("certbot",),
    ("pull",),
    ("up", "-d"),
    ("down",),
    ("migrate", "--force"),
    ("db:seed",),
    ("ln", "-sf"),
    ("crontab", "-"),
]

TLS_STEPS = {"install_nginx", "install_certbot", "configure_firewall", "configure_proxy", "issue_certificate"}


def _ufw_status(host, cmd, input):
    if host.ran("ufw", "--force", "enable"):
        return CommandResult(0, stdout="Status: active\n22/tcp ALLOW\n80/tcp ALLOW\n443/tcp ALLOW\n")
    return CommandResult(0, stdout="Status: inactive\n")


def _migrate_status(host, cmd, input):
    if host.ran("migrate", "--force"):
        return CommandResult(0, stdout="Ran  2024_01_01_000000_create_users_table\n")
    return CommandResult(0, stdout="Pending  2024_01_01_000000_create_users_table\n")


def _certbot(host, cmd, input):
    host.files[CERT] = b"-----BEGIN CERTIFICATE-----\n"
    return CommandResult(0)


@pytest.fixture
def server(fake_host):
    """An Ubuntu 22.04 host with the base tooling installed and DNS pointing at it."""
    fake_host.files[OS_RELEASE] = b'NAME="Ubuntu"\nID=ubuntu\nVERSION_ID="22.04"\n'
    fake_host.programs |= SERVER_PROGRAMS
    fake_host.script("ufw", "status", handler=_ufw_status)
    fake_host.script("migrate:status", handler=_migrate_status)
    fake_host.script("certbot", handler=_certbot)
    fake_host.script("curl", "-s", "ifconfig.me", stdout=f"{PUBLIC_IP}\n")
    fake_host.script("dig", "+short", stdout=f"{PUBLIC_IP}\n")
    fake_host.script("id", "-nG", stdout="ubuntu sudo docker\n")
    return fake_host


def _orchestrator(host, settings, config, profile=DeployProfile.PRODUCTION, resources=None, **kwargs):
    kwargs.setdefault("environ", {"SUDO_USER": "ubuntu"})
    kwargs.setdefault("euid", 0)
    return Orchestrator(
        host,
        settings,
        config,
        profile,
        resources or ResourceProfile(ram_mb=8000, cpu_cores=4, disk_free_gb=50),
        console=Console(quiet=True),
        sleep=lambda seconds: None,
        **kwargs,
    )


class TestPreflight:
    """Checks that run before any side effect."""

    def test_non_root_rejected_without_side_effects(self, server, settings, config):
        orchestrator = _orchestrator(server, settings, config, euid=1000)

        with pytest.raises(PreconditionError) as exc_info:
            orchestrator.run()

        assert exc_info.value.subject == "root"
        assert server.commands == []
        assert server.writes == []

    def test_non_ubuntu_rejected(self, server, settings, config):
        server.files[OS_RELEASE] = b"ID=debian\nVERSION_ID=12\n"

        with pytest.raises(PreconditionError) as exc_info:
            _orchestrator(server, settings, config).preflight()

        assert exc_info.value.subject == "os"

    def test_old_ubuntu_rejected(self, server):
        server.files[OS_RELEASE] = b"ID=ubuntu\nVERSION_ID=18.04\n"

        with pytest.raises(PreconditionError):
            check_os(server)

    def test_low_ram_rejected_before_any_command(self, server, settings, config):
        orchestrator = _orchestrator(server, settings, config, resources=ResourceProfile(1024, 1, 50))

        with pytest.raises(PreconditionError) as exc_info:
            orchestrator.run()

        assert exc_info.value.subject == "ram"
        assert server.commands == []

    def test_unsafe_operator_user_rejected(self, server, settings, config):
        settings = settings.model_copy(update={"operator_user": "bad user;id"})

        with pytest.raises(ValidationError):
            _orchestrator(server, settings, config, profile=DeployProfile.CLOUD).preflight()

    def test_preflight_selects_tier(self, server, settings, config):
        orchestrator = _orchestrator(server, settings, config, resources=ResourceProfile(16000, 8, 100))

        orchestrator.preflight()

        assert orchestrator.tier is PerformanceTier.LARGE
        assert orchestrator.params.workers == 100


class TestProductionRun:
    """A full production install against the fake host."""

    def test_first_run_provisions_everything(self, server, settings, config):
        result = _orchestrator(server, settings, config).run()

        assert result.report.warnings == []
        assert result.credentials_new is True
        assert result.url == "https://lms.example.sch.id"
        assert set(result.report.completed) >= {
            "render_configs",
            "configure_proxy",
            "start_containers",
            "run_migrations",
            "seed_database",
            "issue_certificate",
            "install_management",
        }
        assert server.ran("up", "-d")
        assert server.ran("-e", "SCHOOL_LEVEL=SMK", "app", "php", "artisan", "db:seed", "--force")
        assert server.file_exists(settings.app_dir / SEED_MARKER)
        assert "certbot renew" in server.crontab
        assert f"{settings.cli_path} backup" in server.crontab

    def test_containers_start_before_migrations(self, server, settings, config):
        _orchestrator(server, settings, config).run()

        commands = [" ".join(cmd) for cmd in server.commands]
        up = next(i for i, c in enumerate(commands) if "up -d" in c)
        migrate = next(i for i, c in enumerate(commands) if "migrate --force" in c)
        assert up < migrate

    def test_secret_files_are_private(self, server, settings, config):
        _orchestrator(server, settings, config).run()

        assert server.modes[settings.env_file] == 0o600
        assert server.modes[settings.credentials_file] == 0o600
        assert server.modes[settings.cli_path] == 0o755

    def test_secrets_never_in_argv(self, server, settings, config):
        result = _orchestrator(server, settings, config).run()

        argv = [" ".join(cmd) for cmd in server.commands]
        for secret in (result.credentials.db_password, result.credentials.admin_password):
            assert not any(secret in line for line in argv)
        # The admin password travels over stdin to tinker
        assert any(i and config.admin_password in i for i in server.inputs)

    def test_second_run_is_non_destructive(self, server, settings, config):
        first = _orchestrator(server, settings, config).run()
        command_mark = len(server.commands)
        write_mark = len(server.writes)

        second = _orchestrator(server, settings, config).run()

        for tokens in DESTRUCTIVE:
            assert not server.ran(*tokens, since=command_mark), f"re-run executed {tokens}"
        assert server.writes[write_mark:] == []
        assert second.credentials == first.credentials
        assert second.credentials_new is False
        assert set(second.report.completed) == {"wait_for_database", "optimize", "fix_ownership"}

    def test_changed_config_rerenders_and_restarts(self, server, settings, config, config_values):
        _orchestrator(server, settings, config).run()
        renamed = InstallationConfig.from_values({**config_values, "SCHOOL_NAME": "SMK Renamed"})

        result = _orchestrator(server, settings, renamed).run()

        assert "render_configs" in result.report.completed
        assert "start_containers" in result.report.completed
        assert "SMK Renamed" in server.read_file(settings.env_file)

    def test_failed_start_is_retried_on_next_run(self, server, settings, config, config_values):
        _orchestrator(server, settings, config).run()
        renamed = InstallationConfig.from_values({**config_values, "SCHOOL_NAME": "SMK Renamed"})
        server.script("pull", returncode=1, stderr="registry unavailable")

        with pytest.raises(StepExecutionError) as exc_info:
            _orchestrator(server, settings, renamed).run()
        assert exc_info.value.step == "start_containers"

        server.script("pull", returncode=0)
        mark = len(server.commands)
        result = _orchestrator(server, settings, renamed).run()

        assert "render_configs" in result.report.skipped
        assert "start_containers" in result.report.completed
        assert server.ran("up", "-d", since=mark)

    def test_running_stack_without_start_record_is_restarted(self, server, settings, config):
        _orchestrator(server, settings, config).run()
        server.remove_file(settings.app_dir / DEPLOYED_MARKER)
        mark = len(server.commands)

        result = _orchestrator(server, settings, config).run()

        assert "start_containers" in result.report.completed
        assert server.ran("up", "-d", since=mark)
        assert server.file_exists(settings.app_dir / DEPLOYED_MARKER)

    def test_dns_mismatch_is_a_warning(self, server, settings, config):
        server.script("dig", "+short", stdout="198.51.100.7\n")

        result = _orchestrator(server, settings, config).run()

        assert [w.name for w in result.report.warnings] == ["issue_certificate"]
        assert "198.51.100.7" in result.report.warnings[0].message
        assert not server.ran("certbot")
        assert "install_management" in result.report.completed

    def test_migration_failure_is_fatal(self, server, settings, config):
        server.script("migrate", "--force", returncode=1, stderr="SQLSTATE[HY000] connection refused")

        with pytest.raises(StepExecutionError) as exc_info:
            _orchestrator(server, settings, config).run()

        assert exc_info.value.step == "run_migrations"
        assert "connection refused" in exc_info.value.output
        assert not server.ran("db:seed")

    def test_database_timeout(self, server, settings, config):
        settings = settings.model_copy(update={"probe_max_attempts": 3})
        server.script(MYSQL_PING, returncode=1)

        with pytest.raises(ReadinessTimeoutError) as exc_info:
            _orchestrator(server, settings, config).run()

        assert exc_info.value.attempts == 3
        assert exc_info.value.step == "wait_for_database"
        assert server.count(MYSQL_PING) == 3

    def test_admin_update_failure_does_not_abort(self, server, settings, config):
        server.script("tinker", returncode=1, stderr="PHP Fatal error")

        result = _orchestrator(server, settings, config).run()

        assert "seed_database" in result.report.completed

    def test_installs_missing_tooling(self, server, settings, config):
        server.programs.clear()

        result = _orchestrator(server, settings, config).run()

        assert "install_dependencies" in result.report.completed
        assert server.ran("apt-get", "install", "-y", "-qq", "apt-transport-https")
        assert server.ran("sh", "-c", "curl -fsSL https://get.docker.com | sh")
        assert server.ran("ufw", "--force", "enable")


class TestLocalProfile:
    """Local installs skip the public-facing pieces."""

    @pytest.fixture
    def local_config(self, config_values):
        return InstallationConfig.from_values(
            {**config_values, "DOMAIN": "localhost", "ADMIN_EMAIL": "admin@localhost"},
            ValidationProfile.RELAXED,
        )

    def test_no_proxy_certificate_or_firewall(self, server, settings, local_config):
        orchestrator = _orchestrator(server, settings, local_config, profile=DeployProfile.LOCAL)

        result = orchestrator.run()

        names = {step.name for step in orchestrator.build_steps()}
        assert names.isdisjoint(TLS_STEPS)
        assert not any(cmd[0] in {"ufw", "certbot", "nginx"} for cmd in server.commands)
        assert result.url == "http://localhost:8080"
        assert "optimize" in result.report.completed


class TestCloudProfile:
    """Cloud installs bootstrap an operator account first."""

    def test_step_order(self, server, settings, config):
        orchestrator = _orchestrator(server, settings, config, profile=DeployProfile.CLOUD)
        orchestrator.preflight()

        names = [step.name for step in orchestrator.build_steps()]

        assert names[:3] == ["ensure_operator_user", "configure_sudo", "copy_ssh_keys"]
        assert names[-1] == "operator_docker_group"

    def test_creates_operator_with_sudo_and_keys(self, server, settings, config):
        server.script(
            "id",
            "ubuntu",
            handler=lambda host, cmd, input: CommandResult(0 if host.ran("useradd") else 1),
        )
        server.files[ROOT_AUTHORIZED_KEYS] = b"ssh-ed25519 AAAA root@laptop\n"

        result = _orchestrator(server, settings, config, profile=DeployProfile.CLOUD).run()

        sudoers = Path("/etc/sudoers.d/ubuntu")
        keys = Path("/home/ubuntu/.ssh/authorized_keys")
        assert server.ran("useradd", "-m", "-s", "/bin/bash", "ubuntu")
        assert server.read_file(sudoers) == "ubuntu ALL=(ALL) NOPASSWD:ALL\n"
        assert server.modes[sudoers] == 0o440
        assert server.ran("visudo", "-c", "-f", str(sudoers))
        assert server.files[keys] == server.files[ROOT_AUTHORIZED_KEYS]
        assert result.report.warnings == []

    def test_missing_root_keys_is_a_warning(self, server, settings, config):
        result = _orchestrator(server, settings, config, profile=DeployProfile.CLOUD).run()

        assert [w.name for w in result.report.warnings] == ["copy_ssh_keys"]

    def test_invalid_sudoers_is_removed(self, server, settings, config):
        server.script("id", "ubuntu", returncode=0)
        server.script("visudo", returncode=1, stderr="syntax error")

        with pytest.raises(StepExecutionError) as exc_info:
            _orchestrator(server, settings, config, profile=DeployProfile.CLOUD).run()

        assert exc_info.value.step == "configure_sudo"
        assert not server.file_exists(Path("/etc/sudoers.d/ubuntu"))


class TestHelpers:
    """Tests for module-level helpers."""

    def test_ensure_cron_line_is_idempotent(self, fake_host):
        assert ensure_cron_line(fake_host, "0 2 * * * backup") is True
        assert ensure_cron_line(fake_host, "0 2 * * * backup") is False
        assert fake_host.crontab == "0 2 * * * backup\n"

    def test_ensure_cron_line_appends(self, fake_host):
        fake_host.crontab = "0 1 * * * other\n"

        ensure_cron_line(fake_host, "0 2 * * * backup")

        assert fake_host.crontab == "0 1 * * * other\n0 2 * * * backup\n"

    def test_operator_from_sudo_user(self, fake_host):
        assert detect_operator_user(fake_host, {"SUDO_USER": "alice"}) == "alice"

    def test_operator_falls_back_to_first_regular_account(self, fake_host):
        fake_host.script("id", "ubuntu", returncode=1)
        fake_host.script(
            "getent", "passwd", stdout="root:x:0:0::/root:/bin/bash\nbob:x:1000:1000::/home/bob:/bin/bash\n"
        )

        assert detect_operator_user(fake_host, {"SUDO_USER": "root"}) == "bob"

    def test_no_operator_found(self, fake_host):
        fake_host.script("id", "ubuntu", returncode=1)

        assert detect_operator_user(fake_host, {}) is None
