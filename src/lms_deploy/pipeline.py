"""Provisioning pipeline: preflight checks and the ordered step list per profile.

Every step pairs an action with a precondition that detects whether its goal
state already holds, so re-running the whole pipeline on a provisioned host
is a sequence of skips plus a few non-destructive refreshes.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
import hashlib
import os
from pathlib import Path
import sys
import time

from rich.console import Console

from lms_deploy import validation
from lms_deploy.compose import (
    APP_SERVICE,
    MYSQL_PING,
    artisan_command,
    compose_command,
    detect_mode,
    exec_command,
    mode_is_running,
    mysql_shell_command,
)
from lms_deploy.composer import ENV_FILE, ConfigComposer, RenderContext
from lms_deploy.config import Settings
from lms_deploy.credentials import CredentialStore, Credentials, parse_env
from lms_deploy.errors import (
    PreconditionError,
    ReadinessTimeoutError,
    Severity,
    StepExecutionError,
)
from lms_deploy.host import CommandResult, Host
from lms_deploy.logging_config import get_logger
from lms_deploy.models import (
    DeploymentMode,
    DeployProfile,
    InstallationConfig,
    PerformanceTier,
    ResourceProfile,
    TierParameters,
    ValidationProfile,
)
from lms_deploy.probe import ReadinessProbe, RetryPolicy, ServiceEndpoint
from lms_deploy.resources import classify
from lms_deploy.steps import RunReport, Step, StepRunner, require_ok

logger = get_logger(__name__)

BASE_PACKAGES = (
    "apt-transport-https",
    "ca-certificates",
    "curl",
    "gnupg",
    "lsb-release",
    "software-properties-common",
    "unzip",
    "git",
    "openssl",
    "cron",
)
SERVER_PACKAGES = ("ufw", "fail2ban", "htop", "ncdu")
REQUIRED_COMMANDS = ("curl", "git", "openssl", "crontab", "unzip")

DOCKER_GROUP_CANDIDATES = ("ubuntu", "vagrant", "admin", "deploy")
FIREWALL_PORTS = ("22/tcp", "80/tcp", "443/tcp")

APP_SUBDIRS = (
    "storage/logs",
    "storage/app/public",
    "storage/framework/cache",
    "storage/framework/sessions",
    "storage/framework/views",
    "public/storages",
    "docker/php",
    "docker/nginx",
)

CONTAINER_STORAGE_DIRS = (
    "/var/www/html/public/storages/assets/images/users",
    "/var/www/html/public/storages/assets/images/teachers",
    "/var/www/html/public/storages/assets/images/students",
    "/var/www/html/public/storages/course-thumbnails",
)
CONTAINER_WRITABLE_DIRS = ("/var/www/html/storage", "/var/www/html/public/storages")

OS_RELEASE = Path("/etc/os-release")
MIN_UBUNTU_MAJOR = 20
SUDOERS_DIR = Path("/etc/sudoers.d")
ROOT_AUTHORIZED_KEYS = Path("/root/.ssh/authorized_keys")
HOME_ROOT = Path("/home")
CERTBOT_WEBROOT = Path("/var/www/certbot")
SEED_MARKER = ".seeded"
DEPLOYED_MARKER = ".deployed"

RENEW_CRON = "0 3 * * * certbot renew --quiet --post-hook 'systemctl reload nginx'"

ADMIN_UPDATE_SNIPPET = """\
$user = \\App\\Models\\User::where('email', 'root@gmail.com')->first();
if ($user) {{
    $user->update([
        'username' => '{username}',
        'email' => '{email}',
        'password' => bcrypt('{password}'),
    ]);
}}
"""


def check_root(euid: int) -> None:
    if euid != 0:
        raise PreconditionError("This installer must be run as root", subject="root")


def check_os(host: Host) -> str:
    """Require Ubuntu 20.04 or newer. Returns the detected VERSION_ID."""
    if not host.file_exists(OS_RELEASE):
        raise PreconditionError("Cannot detect OS. Ubuntu 20.04+ is required", subject="os")
    release = parse_env(host.read_file(OS_RELEASE))
    os_id = release.get("ID", "")
    version = release.get("VERSION_ID", "")
    if os_id != "ubuntu":
        raise PreconditionError(f"Ubuntu is required. Detected: {os_id or 'unknown'}", subject="os")
    major = version.split(".", 1)[0]
    if not major.isdigit() or int(major) < MIN_UBUNTU_MAJOR:
        raise PreconditionError(f"Ubuntu 20.04+ is required. Detected: {version}", subject="os")
    logger.info("os_detected", os=os_id, version=version)
    return version


def has_cron_line(host: Host, line: str) -> bool:
    result = host.run_command(["crontab", "-l"], timeout=30)
    return result.ok and line in result.stdout.splitlines()


def ensure_cron_line(host: Host, line: str) -> bool:
    """Append ``line`` to root's crontab unless it is already there."""
    current = host.run_command(["crontab", "-l"], timeout=30)
    existing = current.stdout if current.ok else ""
    if line in existing.splitlines():
        return False
    content = (existing.rstrip("\n") + "\n" if existing.strip() else "") + line + "\n"
    require_ok(host.run_command(["crontab", "-"], input=content, timeout=30), "crontab install")
    logger.info("cron_line_installed", line=line)
    return True


def detect_operator_user(host: Host, environ: Mapping[str, str]) -> str | None:
    """SUDO_USER, else ubuntu, else the first regular account."""
    sudo_user = environ.get("SUDO_USER")
    if sudo_user and sudo_user != "root":
        return sudo_user
    if host.run_command(["id", "ubuntu"], timeout=30).ok:
        return "ubuntu"
    passwd = host.run_command(["getent", "passwd"], timeout=30)
    for line in passwd.stdout.splitlines():
        fields = line.split(":")
        if len(fields) > 2 and fields[2].isdigit() and 1000 <= int(fields[2]) < 65534:
            return fields[0]
    return None


@dataclass(frozen=True)
class ProvisioningResult:
    report: RunReport
    credentials: Credentials
    credentials_new: bool
    url: str
    tier: PerformanceTier
    params: TierParameters


class Orchestrator:
    """Builds and runs the provisioning pipeline for one deploy profile."""

    def __init__(
        self,
        host: Host,
        settings: Settings,
        config: InstallationConfig,
        profile: DeployProfile,
        resources: ResourceProfile,
        *,
        console: Console | None = None,
        probe: ReadinessProbe | None = None,
        sleep: Callable[[float], None] = time.sleep,
        reset_credentials: bool = False,
        environ: Mapping[str, str] | None = None,
        euid: int | None = None,
    ):
        self.host = host
        self.settings = settings
        self.config = config
        self.profile = profile
        self.resources = resources
        self.console = console or Console()
        self.probe = probe or ReadinessProbe(sleep=sleep)
        self._sleep = sleep
        self.reset_credentials = reset_credentials
        self.environ = os.environ if environ is None else environ
        self.euid = os.geteuid() if euid is None else euid

        self.app_dir = settings.app_dir
        self.store = CredentialStore(host, settings.credentials_file, env_path=settings.env_file)
        self._prepared = False

    # === Preflight ===

    def preflight(self) -> None:
        """Checks that must pass before any side effect.

        Raises:
            PreconditionError: not root, unsupported OS or too few resources
            ValidationError: an interpolated field failed its character check
        """
        check_root(self.euid)
        check_os(self.host)
        self.tier, self.params = classify(self.resources, self.profile.validation)
        validation.ensure_safe("operator_user", self.settings.operator_user, validation.LINUX_USER)
        self.credentials, self.credentials_new = self.store.resolve(
            self.config, reset=self.reset_credentials
        )
        self.context = RenderContext(
            config=self.config,
            profile=self.profile,
            tier=self.tier,
            params=self.params,
            credentials=self.credentials,
            docker_image=self.settings.docker_image,
            app_port=self.settings.app_port,
            letsencrypt_dir=self.settings.letsencrypt_dir,
        )
        self.composer = ConfigComposer(self.context)
        self._prepared = True

    def run(self) -> ProvisioningResult:
        if not self._prepared:
            self.preflight()
        logger.info("provisioning_started", profile=self.profile.value, tier=self.tier.value)
        report = StepRunner(self.build_steps(), console=self.console).run()
        return ProvisioningResult(
            report=report,
            credentials=self.credentials,
            credentials_new=self.credentials_new,
            url=self.context.url,
            tier=self.tier,
            params=self.params,
        )

    # === Step list ===

    def build_steps(self) -> list[Step]:
        tls = self.profile.uses_tls
        steps: list[Step] = []
        if self.profile is DeployProfile.CLOUD:
            steps += [
                Step(
                    "ensure_operator_user",
                    f"Creating operator account '{self.settings.operator_user}'",
                    self._create_operator_user,
                    self._operator_user_exists,
                ),
                Step(
                    "configure_sudo",
                    "Configuring passwordless sudo",
                    self._configure_sudo,
                    self._sudo_configured,
                ),
                Step(
                    "copy_ssh_keys",
                    "Copying root's SSH keys to the operator account",
                    self._copy_ssh_keys,
                    self._ssh_keys_copied,
                    Severity.WARN,
                ),
            ]
        steps += [
            Step(
                "install_dependencies",
                "Installing system dependencies",
                self._install_dependencies,
                self._dependencies_present,
            ),
            Step("install_docker", "Installing Docker", self._install_docker, self._docker_present),
            Step(
                "docker_group",
                "Adding local accounts to the docker group",
                self._add_docker_group_members,
                lambda: not self._pending_docker_members(),
                Severity.WARN,
            ),
        ]
        if tls:
            steps += [
                Step("install_nginx", "Installing Nginx", self._install_nginx, self._nginx_present),
                Step(
                    "install_certbot",
                    "Installing Certbot",
                    self._install_certbot,
                    lambda: self.host.has_command("certbot"),
                ),
                Step(
                    "configure_firewall",
                    "Configuring firewall",
                    self._configure_firewall,
                    self._firewall_configured,
                ),
            ]
        steps += [
            Step(
                "create_app_structure",
                "Creating application directories",
                self._create_app_structure,
                self._app_structure_present,
            ),
            Step(
                "render_configs",
                "Rendering configuration for both modes",
                self._render_configs,
                self._configs_current,
            ),
        ]
        if tls:
            steps.append(
                Step(
                    "configure_proxy",
                    "Configuring the reverse proxy",
                    self._configure_proxy,
                    self._proxy_configured,
                )
            )
        steps += [
            Step(
                "start_containers",
                "Pulling images and starting containers",
                self._start_containers,
                self._containers_running,
            ),
            Step("wait_for_database", "Waiting for the database", self._wait_for_database),
            Step(
                "run_migrations",
                "Running database migrations",
                self._run_migrations,
                self._migrations_current,
            ),
            Step(
                "seed_database",
                "Seeding the database",
                self._seed_database,
                lambda: self.host.file_exists(self.app_dir / SEED_MARKER),
            ),
        ]
        if tls:
            steps.append(
                Step(
                    "issue_certificate",
                    "Issuing the TLS certificate",
                    self._issue_certificate,
                    self._certificate_active,
                    Severity.WARN,
                )
            )
        steps += [
            Step("optimize", "Warming application caches", self._optimize, policy=Severity.WARN),
            Step(
                "install_management",
                "Installing management tooling",
                self._install_management,
                self._management_installed,
            ),
            Step(
                "fix_ownership",
                "Handing the app directory to the operator",
                self._fix_ownership,
                policy=Severity.WARN,
            ),
        ]
        if self.profile is DeployProfile.CLOUD:
            steps.append(
                Step(
                    "operator_docker_group",
                    "Adding the operator to the docker group",
                    self._add_operator_to_docker,
                    self._operator_in_docker_group,
                    Severity.WARN,
                )
            )
        return steps

    # === Helpers ===

    def _run(self, cmd: list[str], what: str, **kwargs) -> CommandResult:
        return require_ok(self.host.run_command(cmd, **kwargs), what)

    def _mode(self) -> DeploymentMode:
        return detect_mode(self.host) or DeploymentMode.STANDARD

    def _compose(self, *args: str) -> list[str]:
        return compose_command(self.app_dir, self._mode(), *args)

    def _artisan(self, *args: str) -> list[str]:
        return artisan_command(self.app_dir, self._mode(), *args)

    def _app_exec(self, *args: str) -> list[str]:
        return exec_command(self.app_dir, self._mode(), APP_SERVICE, *args)

    def _file_matches(self, path: Path, content: str) -> bool:
        return self.host.file_exists(path) and self.host.read_file(path) == content

    def _apt_install(self, *packages: str) -> None:
        env = {"DEBIAN_FRONTEND": "noninteractive"}
        self._run(["apt-get", "update", "-qq"], "apt-get update", env=env)
        self._run(["apt-get", "install", "-y", "-qq", *packages], "apt-get install", env=env)

    def _in_group(self, user: str, group: str) -> bool:
        result = self.host.run_command(["id", "-nG", user], timeout=30)
        return result.ok and group in result.stdout.split()

    # === Cloud bootstrap ===

    @property
    def _operator(self) -> str:
        return self.settings.operator_user

    def _operator_user_exists(self) -> bool:
        return self.host.run_command(["id", self._operator], timeout=30).ok

    def _create_operator_user(self) -> None:
        self._run(["useradd", "-m", "-s", "/bin/bash", self._operator], "useradd")
        self._run(["usermod", "-aG", "sudo", self._operator], "usermod sudo")
        logger.info("operator_user_created", user=self._operator)

    def _sudoers_line(self) -> str:
        return f"{self._operator} ALL=(ALL) NOPASSWD:ALL\n"

    def _sudo_configured(self) -> bool:
        return self._file_matches(SUDOERS_DIR / self._operator, self._sudoers_line())

    def _configure_sudo(self) -> None:
        path = SUDOERS_DIR / self._operator
        self.host.write_file(path, self._sudoers_line(), mode=0o440)
        check = self.host.run_command(["visudo", "-c", "-f", str(path)], timeout=30)
        if not check.ok:
            self.host.remove_file(path)
            raise StepExecutionError("sudoers file failed validation", output=check.diagnostic)
        logger.info("passwordless_sudo_configured", user=self._operator)

    def _operator_keys_path(self) -> Path:
        return HOME_ROOT / self._operator / ".ssh" / "authorized_keys"

    def _ssh_keys_copied(self) -> bool:
        dest = self._operator_keys_path()
        return (
            self.host.file_exists(ROOT_AUTHORIZED_KEYS)
            and self.host.file_exists(dest)
            and self.host.read_bytes(dest) == self.host.read_bytes(ROOT_AUTHORIZED_KEYS)
        )

    def _copy_ssh_keys(self) -> None:
        if not self.host.file_exists(ROOT_AUTHORIZED_KEYS):
            raise StepExecutionError(
                f"No authorized_keys found in /root/.ssh/; configure SSH access for "
                f"'{self._operator}' manually",
                severity=Severity.WARN,
            )
        keys = self.host.read_bytes(ROOT_AUTHORIZED_KEYS)
        dest = self._operator_keys_path()
        self.host.make_dirs(dest.parent)
        self._run(["chmod", "700", str(dest.parent)], "chmod .ssh")
        self.host.write_bytes(dest, keys, mode=0o600)
        self._run(
            ["chown", "-R", f"{self._operator}:{self._operator}", str(dest.parent)], "chown .ssh"
        )
        logger.info("ssh_keys_copied", user=self._operator, key_count=len(keys.splitlines()))

    def _operator_in_docker_group(self) -> bool:
        return self._in_group(self._operator, "docker")

    def _add_operator_to_docker(self) -> None:
        self._run(["usermod", "-aG", "docker", self._operator], "usermod docker")

    # === Host packages ===

    def _packages(self) -> tuple[str, ...]:
        if self.profile is DeployProfile.LOCAL:
            return BASE_PACKAGES
        return BASE_PACKAGES + SERVER_PACKAGES

    def _dependencies_present(self) -> bool:
        commands = REQUIRED_COMMANDS
        if self.profile is not DeployProfile.LOCAL:
            commands += ("ufw",)
        return all(self.host.has_command(c) for c in commands)

    def _install_dependencies(self) -> None:
        self._apt_install(*self._packages())

    def _compose_available(self) -> bool:
        return self.host.run_command(["docker", "compose", "version"], timeout=60).ok

    def _docker_present(self) -> bool:
        return self.host.has_command("docker") and self._compose_available()

    def _install_docker(self) -> None:
        if not self.host.has_command("docker"):
            self._run(["sh", "-c", "curl -fsSL https://get.docker.com | sh"], "docker install")
            self._run(["systemctl", "enable", "--now", "docker"], "enable docker")
        if not self._compose_available():
            self._apt_install("docker-compose-plugin")
        version = self.host.run_command(["docker", "--version"], timeout=30)
        logger.info("docker_installed", version=version.stdout.strip())

    def _pending_docker_members(self) -> list[str]:
        return [
            user
            for user in DOCKER_GROUP_CANDIDATES
            if self.host.run_command(["id", user], timeout=30).ok
            and not self._in_group(user, "docker")
        ]

    def _add_docker_group_members(self) -> None:
        failed = []
        for user in self._pending_docker_members():
            if self.host.run_command(["usermod", "-aG", "docker", user], timeout=30).ok:
                logger.info("docker_group_member_added", user=user)
            else:
                failed.append(user)
        if failed:
            raise StepExecutionError(
                f"could not add {', '.join(failed)} to the docker group", severity=Severity.WARN
            )

    def _nginx_present(self) -> bool:
        return self.host.has_command("nginx")

    def _install_nginx(self) -> None:
        self._apt_install("nginx")
        self._run(["systemctl", "enable", "nginx"], "enable nginx")

    def _install_certbot(self) -> None:
        self._apt_install("certbot", "python3-certbot-nginx")

    def _firewall_configured(self) -> bool:
        status = self.host.run_command(["ufw", "status"], timeout=30)
        return (
            status.ok
            and "Status: active" in status.stdout
            and all(port in status.stdout for port in FIREWALL_PORTS)
        )

    def _configure_firewall(self) -> None:
        self._run(["ufw", "default", "deny", "incoming"], "ufw default incoming")
        self._run(["ufw", "default", "allow", "outgoing"], "ufw default outgoing")
        for port in FIREWALL_PORTS:
            self._run(["ufw", "allow", port], f"ufw allow {port}")
        self._run(["ufw", "--force", "enable"], "ufw enable")
        logger.info("firewall_configured", ports=list(FIREWALL_PORTS))

    # === App directory and configs ===

    def _app_dirs(self) -> list[Path]:
        return [self.app_dir, *(self.app_dir / sub for sub in APP_SUBDIRS), self.settings.backup_dir]

    def _app_structure_present(self) -> bool:
        return all(self.host.file_exists(d) for d in self._app_dirs())

    def _create_app_structure(self) -> None:
        for directory in self._app_dirs():
            self.host.make_dirs(directory)

    def _configs_current(self) -> bool:
        if self.credentials_new or not self.store.exists():
            return False
        return all(
            self._file_matches(self.app_dir / rel, content)
            for rel, content in self.composer.render_all().items()
        )

    def _render_configs(self) -> None:
        for rel, content in self.composer.render_all().items():
            path = self.app_dir / rel
            if self._file_matches(path, content):
                logger.debug("config_unchanged", path=rel)
                continue
            mode = 0o600 if rel == ENV_FILE else 0o644
            self.host.write_file(path, content, mode=mode)
            logger.info("config_written", path=rel)
        if self.credentials_new or not self.store.exists():
            self.store.save(self.credentials, self.config, self.context.url)

    # === Reverse proxy and certificate ===

    @property
    def _site_paths(self) -> tuple[Path, Path, Path]:
        domain = self.config.domain
        available = self.settings.nginx_dir / "sites-available"
        enabled = self.settings.nginx_dir / "sites-enabled" / domain
        return available / domain, available / f"{domain}-temp", enabled

    def _certificate_present(self) -> bool:
        return self.host.file_exists(self.context.cert_dir / "fullchain.pem")

    def _proxy_configured(self) -> bool:
        full, temp, enabled = self._site_paths
        default_site = self.settings.nginx_dir / "sites-enabled" / "default"
        return (
            self._file_matches(full, self.composer.render_site())
            and self.host.file_exists(enabled)
            and not self.host.file_exists(default_site)
            and (self._certificate_present() or self._file_matches(temp, self.composer.render_site_temp()))
        )

    def _reload_nginx(self) -> None:
        self._run(["nginx", "-t"], "nginx config test")
        self._run(["systemctl", "reload", "nginx"], "nginx reload")

    def _configure_proxy(self) -> None:
        full, temp, enabled = self._site_paths
        self.host.write_file(full, self.composer.render_site())
        target = full
        if not self._certificate_present():
            # Serve plain HTTP until a certificate exists
            self.host.write_file(temp, self.composer.render_site_temp())
            target = temp
        self.host.make_dirs(CERTBOT_WEBROOT)
        self.host.make_dirs(enabled.parent)
        self._run(["ln", "-sf", str(target), str(enabled)], "enable site")
        self.host.remove_file(self.settings.nginx_dir / "sites-enabled" / "default")
        self._reload_nginx()
        logger.info("proxy_configured", site=str(target))

    def _certificate_active(self) -> bool:
        _, temp, _ = self._site_paths
        return self._certificate_present() and not self.host.file_exists(temp)

    def _issue_certificate(self) -> None:
        domain = self.config.domain
        full, temp, enabled = self._site_paths
        if not self._certificate_present():
            public_ip = self.host.run_command(["curl", "-s", "ifconfig.me"], timeout=30).stdout.strip()
            lookup = self.host.run_command(["dig", "+short", domain], timeout=30).stdout.splitlines()
            domain_ip = lookup[0].strip() if lookup else ""
            if not public_ip or public_ip != domain_ip:
                raise StepExecutionError(
                    f"Domain {domain} resolves to {domain_ip or 'nothing'}, not this server "
                    f"({public_ip or 'unknown'}). Run 'certbot --nginx -d {domain}' after DNS "
                    "propagation",
                    severity=Severity.WARN,
                )
            require_ok(
                self.host.run_command(
                    [
                        "certbot",
                        "certonly",
                        "--nginx",
                        "-d",
                        domain,
                        "--non-interactive",
                        "--agree-tos",
                        "-m",
                        self.config.admin_email,
                    ]
                ),
                "certbot",
                severity=Severity.WARN,
            )
        self._run(["ln", "-sf", str(full), str(enabled)], "enable TLS site")
        self.host.remove_file(temp)
        self._reload_nginx()
        ensure_cron_line(self.host, RENEW_CRON)
        logger.info("certificate_configured", domain=domain)

    # === Containers and application ===

    def _config_digest(self) -> str:
        """Fingerprint of every rendered file the containers are started from."""
        digest = hashlib.sha256()
        for rel, content in sorted(self.composer.render_all().items()):
            digest.update(f"{rel}\0{content}\0".encode())
        return digest.hexdigest()

    def _containers_running(self) -> bool:
        # Written only after a successful up, so a failed start is retried on the next run
        if not self._file_matches(self.app_dir / DEPLOYED_MARKER, f"{self._config_digest()}\n"):
            return False
        mode = detect_mode(self.host)
        return mode is not None and mode_is_running(self.host, mode)

    def _start_containers(self) -> None:
        self._run(self._compose("pull"), "docker compose pull")
        self._run(self._compose("up", "-d"), "docker compose up")
        self.host.write_file(self.app_dir / DEPLOYED_MARKER, f"{self._config_digest()}\n")
        logger.info("containers_settling", seconds=self.settings.start_settle_seconds)
        self._sleep(self.settings.start_settle_seconds)
        status = self.host.run_command(self._compose("ps"), timeout=60)
        logger.info("containers_started", status=status.stdout[-1000:])

    def _wait_for_database(self) -> None:
        mode = self._mode()
        ping = mysql_shell_command(self.app_dir, mode, MYSQL_PING)
        endpoint = ServiceEndpoint(
            name="mysql",
            is_live=lambda: self.host.run_command(ping, timeout=30).ok,
            retry=RetryPolicy(
                interval=self.settings.probe_interval,
                max_attempts=self.settings.probe_max_attempts,
            ),
        )
        result = self.probe.probe(endpoint)
        if not result.ready:
            raise ReadinessTimeoutError("mysql", result.attempts)

    def _migrations_current(self) -> bool:
        status = self.host.run_command(self._artisan("migrate:status"), timeout=120)
        return status.ok and "Pending" not in status.stdout

    def _run_migrations(self) -> None:
        self._run(self._artisan("migrate", "--force"), "migrate")

    def _fix_storage_permissions(self) -> None:
        self._run(self._app_exec("mkdir", "-p", *CONTAINER_STORAGE_DIRS), "create storage dirs")
        for directory in CONTAINER_WRITABLE_DIRS:
            self._run(self._app_exec("chown", "-R", "www-data:www-data", directory), "chown storage")
            self._run(self._app_exec("chmod", "-R", "2775", directory), "chmod storage")

    def _admin_update_snippet(self) -> str:
        email_pattern = (
            validation.EMAIL
            if self.profile.validation is ValidationProfile.STRICT
            else validation.RELAXED_EMAIL
        )
        return ADMIN_UPDATE_SNIPPET.format(
            username=validation.ensure_safe(
                "ADMIN_USERNAME", self.config.admin_username, validation.USERNAME
            ),
            email=validation.ensure_safe("ADMIN_EMAIL", self.config.admin_email, email_pattern),
            password=validation.ensure_safe(
                "ADMIN_PASSWORD", self.credentials.admin_password, validation.SECRET
            ),
        )

    def _seed_database(self) -> None:
        seed = exec_command(
            self.app_dir,
            self._mode(),
            APP_SERVICE,
            "php",
            "artisan",
            "db:seed",
            "--force",
            env={"SCHOOL_LEVEL": self.config.school_level.value},
        )
        self._run(seed, "db:seed")

        if self.credentials.admin_password:
            # Fed over stdin so the password stays out of the process list
            update = self.host.run_command(
                self._artisan("tinker"), input=self._admin_update_snippet(), timeout=300
            )
            if not update.ok:
                logger.warning("admin_update_failed", output=update.diagnostic)
        self._fix_storage_permissions()
        self.host.write_file(self.app_dir / SEED_MARKER, f"{self.config.school_level.value}\n")

    def _optimize(self) -> None:
        for command in ("optimize:clear", "config:cache", "route:cache", "view:cache"):
            self._run(self._artisan(command), command)
        self._fix_storage_permissions()

    # === Management tooling and ownership ===

    def _wrapper_script(self) -> str:
        return (
            "#!/bin/sh\n"
            f'export LMS_APP_DIR="{self.app_dir}"\n'
            f'export LMS_BACKUP_DIR="{self.settings.backup_dir}"\n'
            f'exec "{sys.executable}" -m lms_deploy "$@"\n'
        )

    def _backup_cron(self) -> str:
        return f"0 2 * * * {self.settings.cli_path} backup >> /var/log/lms-backup.log 2>&1"

    def _management_installed(self) -> bool:
        return self._file_matches(self.settings.cli_path, self._wrapper_script()) and has_cron_line(
            self.host, self._backup_cron()
        )

    def _install_management(self) -> None:
        self.host.write_file(self.settings.cli_path, self._wrapper_script(), mode=0o755)
        ensure_cron_line(self.host, self._backup_cron())

    def _fix_ownership(self) -> None:
        user = detect_operator_user(self.host, self.environ)
        if user is None:
            raise StepExecutionError(
                "Could not detect a non-root user, keeping root ownership", severity=Severity.WARN
            )
        for directory in (self.app_dir, self.settings.backup_dir):
            self._run(["chown", "-R", f"{user}:{user}", str(directory)], "chown")
        for secret in (self.settings.env_file, self.settings.credentials_file):
            if self.host.file_exists(secret):
                self._run(["chmod", "600", str(secret)], "chmod secret")
        logger.info("ownership_fixed", user=user)
