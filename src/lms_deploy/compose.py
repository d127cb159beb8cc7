"""Compose naming conventions and running-container inspection."""

from pathlib import Path

from lms_deploy.host import Host
from lms_deploy.logging_config import get_logger
from lms_deploy.models import DeploymentMode

logger = get_logger(__name__)

PROJECT_NAME = "lms"

COMPOSE_FILES = {
    DeploymentMode.STANDARD: "docker-compose.yml",
    DeploymentMode.HIGHPERF: "docker-compose.highperf.yml",
}

# Both modes mount these, so switching never loses data
VOLUMES = {
    "mysql_data": "lms_mysql_data",
    "redis_data": "lms_redis_data",
    "app_storage": "lms_app_storage",
    "app_public": "lms_app_public",
}

NETWORK = "lms_network"

DB_SERVICE = "mysql"
APP_SERVICE = "app"


def container_name(service: str, mode: DeploymentMode) -> str:
    """Container names encode the mode so it can be read back from ``docker ps``."""
    if mode is DeploymentMode.HIGHPERF:
        return f"lms-{service}-hp"
    return f"lms-{service}"


def compose_file(app_dir: Path, mode: DeploymentMode) -> Path:
    return app_dir / COMPOSE_FILES[mode]


def compose_command(app_dir: Path, mode: DeploymentMode, *args: str) -> list[str]:
    return [
        "docker",
        "compose",
        "-p",
        PROJECT_NAME,
        "--project-directory",
        str(app_dir),
        "-f",
        str(compose_file(app_dir, mode)),
        *args,
    ]


def exec_command(
    app_dir: Path,
    mode: DeploymentMode,
    service: str,
    *args: str,
    env: dict[str, str] | None = None,
) -> list[str]:
    """``docker compose exec -T`` into a service, optionally with extra env vars."""
    env_args: list[str] = []
    for key, value in (env or {}).items():
        env_args.extend(["-e", f"{key}={value}"])
    return compose_command(app_dir, mode, "exec", "-T", *env_args, service, *args)


def artisan_command(app_dir: Path, mode: DeploymentMode, *args: str) -> list[str]:
    return exec_command(app_dir, mode, APP_SERVICE, "php", "artisan", *args)


def mysql_shell_command(app_dir: Path, mode: DeploymentMode, statement: str) -> list[str]:
    """Run a mysql client program inside the db container.

    The root password is read from the container's own environment so it
    never appears in the host's process list.
    """
    return exec_command(app_dir, mode, DB_SERVICE, "sh", "-c", statement)


MYSQL_PING = 'mysqladmin ping -h localhost -u root -p"$MYSQL_ROOT_PASSWORD" --silent'
MYSQL_DUMP = 'mysqldump -u root -p"$MYSQL_ROOT_PASSWORD" "$MYSQL_DATABASE"'
MYSQL_RESTORE = 'mysql -u root -p"$MYSQL_ROOT_PASSWORD" "$MYSQL_DATABASE"'


CORE_SERVICES = (DB_SERVICE, "redis", APP_SERVICE)


def running_containers(host: Host) -> set[str]:
    result = host.run_command(["docker", "ps", "--format", "{{.Names}}"], timeout=30)
    if not result.ok:
        logger.warning("docker_ps_failed", error=result.diagnostic)
        return set()
    return {line.strip() for line in result.stdout.splitlines() if line.strip()}


def detect_mode(host: Host) -> DeploymentMode | None:
    """Derive the active mode from the running container names, or None when stopped."""
    names = running_containers(host)
    for mode in (DeploymentMode.HIGHPERF, DeploymentMode.STANDARD):
        if container_name(APP_SERVICE, mode) in names:
            return mode
    return None


def mode_is_running(host: Host, mode: DeploymentMode) -> bool:
    names = running_containers(host)
    return all(container_name(service, mode) in names for service in CORE_SERVICES)
