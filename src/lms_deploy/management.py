"""Post-install operations behind the ``lms`` command."""

from collections.abc import Callable
from datetime import datetime
import gzip
from pathlib import Path
import zlib

from lms_deploy.compose import (
    APP_SERVICE,
    DB_SERVICE,
    MYSQL_DUMP,
    MYSQL_RESTORE,
    artisan_command,
    compose_command,
    detect_mode,
    mysql_shell_command,
)
from lms_deploy.config import Settings
from lms_deploy.credentials import parse_env
from lms_deploy.errors import PreconditionError
from lms_deploy.host import CommandResult, Host
from lms_deploy.logging_config import get_logger
from lms_deploy.models import DeploymentMode
from lms_deploy.steps import require_ok

logger = get_logger(__name__)

BACKUP_PATTERN = "backup_*.sql.gz"
BACKUP_NAME_FORMAT = "backup_%Y%m%d_%H%M%S"
BACKUP_SUFFIX = ".sql.gz"
CACHE_COMMANDS = ("optimize:clear", "config:cache", "route:cache", "view:cache")


class StackManager:
    """Thin wrappers over docker compose for the currently active mode."""

    def __init__(
        self,
        host: Host,
        settings: Settings,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.host = host
        self.settings = settings
        self.app_dir = settings.app_dir
        self._clock = clock

    @property
    def mode(self) -> DeploymentMode:
        return detect_mode(self.host) or DeploymentMode.STANDARD

    def _compose(self, *args: str) -> list[str]:
        return compose_command(self.app_dir, self.mode, *args)

    def _check(self, cmd: list[str], what: str, **kwargs) -> CommandResult:
        return require_ok(self.host.run_command(cmd, **kwargs), what)

    def is_local(self) -> bool:
        env_file = self.settings.env_file
        if not self.host.file_exists(env_file):
            return False
        return parse_env(self.host.read_file(env_file)).get("APP_ENV") == "local"

    # === Lifecycle ===

    def status(self) -> str:
        return self._check(self._compose("ps"), "docker compose ps").stdout

    def logs(self, service: str | None = None) -> int:
        cmd = self._compose("logs", "-f", "--tail=100")
        if service:
            cmd.append(service)
        return self.host.run_interactive(cmd)

    def restart(self) -> None:
        self._check(self._compose("restart"), "docker compose restart")

    def stop(self) -> None:
        self._check(self._compose("down"), "docker compose down")

    def start(self) -> None:
        self._check(self._compose("up", "-d"), "docker compose up")

    def update(self) -> None:
        """Pull the latest image, recreate the containers and rebuild caches."""
        mode = self.mode
        self._check(compose_command(self.app_dir, mode, "pull"), "docker compose pull")
        self._check(compose_command(self.app_dir, mode, "up", "-d"), "docker compose up")
        for command in CACHE_COMMANDS:
            self._check(artisan_command(self.app_dir, mode, command), command)
        logger.info("stack_updated", mode=mode.value)

    # === Backups ===

    def list_backups(self) -> list[Path]:
        # Names embed the timestamp, so lexical order is chronological
        return sorted(self.host.list_files(self.settings.backup_dir, BACKUP_PATTERN))

    def _backup_target(self) -> Path:
        """Timestamped name; a numeric suffix keeps same-second backups apart."""
        stem = self._clock().strftime(BACKUP_NAME_FORMAT)
        target = self.settings.backup_dir / f"{stem}{BACKUP_SUFFIX}"
        counter = 1
        while self.host.file_exists(target):
            target = self.settings.backup_dir / f"{stem}_{counter}{BACKUP_SUFFIX}"
            counter += 1
        return target

    def backup(self) -> Path:
        """Dump the database, gzip it and prune old dumps."""
        dump = require_ok(
            self.host.run_binary(mysql_shell_command(self.app_dir, self.mode, MYSQL_DUMP)),
            "mysqldump",
        )
        self.host.make_dirs(self.settings.backup_dir)
        target = self._backup_target()
        self.host.write_bytes(target, gzip.compress(dump.data), mode=0o600)
        logger.info("backup_created", path=str(target), size_bytes=len(dump.data))
        self.prune_backups()
        return target

    def prune_backups(self) -> list[Path]:
        backups = self.list_backups()
        excess = backups[: max(0, len(backups) - self.settings.backup_retention)]
        for path in excess:
            self.host.remove_file(path)
            logger.info("backup_pruned", path=str(path))
        return excess

    def restore(self, backup_file: Path) -> None:
        """Load a gzipped dump into the database.

        Raises:
            PreconditionError: backup file does not exist or is not a gzip archive
        """
        if not self.host.file_exists(backup_file):
            raise PreconditionError(f"Backup file not found: {backup_file}", subject="restore")
        try:
            sql = gzip.decompress(self.host.read_bytes(backup_file))
        except (OSError, EOFError, zlib.error) as e:
            raise PreconditionError(
                f"Not a readable gzip backup: {backup_file} ({e})", subject="restore"
            ) from e
        require_ok(
            self.host.run_binary(
                mysql_shell_command(self.app_dir, self.mode, MYSQL_RESTORE), input=sql
            ),
            "mysql restore",
        )
        logger.info("backup_restored", path=str(backup_file))

    # === Interactive access ===

    def artisan(self, args: list[str]) -> CommandResult:
        return self.host.run_command(artisan_command(self.app_dir, self.mode, *args))

    def shell(self) -> int:
        return self.host.run_interactive(self._compose("exec", APP_SERVICE, "sh"))

    def mysql(self) -> int:
        return self.host.run_interactive(
            self._compose(
                "exec",
                DB_SERVICE,
                "sh",
                "-c",
                'mysql -u root -p"$MYSQL_ROOT_PASSWORD" "$MYSQL_DATABASE"',
            )
        )

    # === Reset ===

    def reset(self) -> None:
        """Destroy containers, volumes and the app directory. Local installs only.

        Raises:
            PreconditionError: the installation is not a local one
        """
        if not self.is_local():
            raise PreconditionError("reset is only available for local installations", subject="reset")
        self._check(self._compose("down", "-v"), "docker compose down -v")
        self._check(
            ["find", str(self.app_dir), "-mindepth", "1", "-delete"], "clear app directory"
        )
        logger.warning("installation_reset", app_dir=str(self.app_dir))
