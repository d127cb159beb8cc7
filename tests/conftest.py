"""Shared fixtures: an in-memory Host plus ready-made settings and config."""

from collections.abc import Callable, Sequence
import fnmatch
from pathlib import Path

import pytest

from lms_deploy.compose import COMPOSE_FILES, container_name
from lms_deploy.config import Settings
from lms_deploy.host import CommandResult
from lms_deploy.models import (
    DeploymentMode,
    InstallationConfig,
    ResourceProfile,
    ValidationProfile,
)

STACK_SERVICES = ("mysql", "redis", "app", "queue", "scheduler")

Responder = CommandResult | Callable[["FakeHost", list[str], str | None], CommandResult]


def contains(cmd: Sequence[str], tokens: Sequence[str]) -> bool:
    """True when ``tokens`` appear contiguously in ``cmd``."""
    n = len(tokens)
    return any(list(cmd[i : i + n]) == list(tokens) for i in range(len(cmd) - n + 1))


class FakeHost:
    """Host double: in-memory files, recorded commands, scripted results.

    Besides scripted rules it simulates just enough of the real tools for
    idempotency checks: symlinks, root's crontab and compose up/down.
    """

    def __init__(self):
        self.files: dict[Path, bytes] = {}
        self.modes: dict[Path, int | None] = {}
        self.dirs: set[Path] = set()
        self.writes: list[Path] = []
        self.removed: list[Path] = []
        self.commands: list[list[str]] = []
        self.inputs: list[str | bytes | None] = []
        self.interactive: list[list[str]] = []
        self.programs: set[str] = set()
        self.running: set[str] = set()
        self.crontab = ""
        self._rules: list[tuple[tuple[str, ...], Responder]] = []

    # === Scripting ===

    def script(
        self,
        *tokens: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        data: bytes = b"",
        handler: Callable[["FakeHost", list[str], str | None], CommandResult] | None = None,
    ) -> None:
        """Answer commands containing ``tokens``. Later rules win."""
        responder: Responder = handler or CommandResult(returncode, stdout, stderr, data)
        self._rules.insert(0, (tokens, responder))

    def ran(self, *tokens: str, since: int = 0) -> bool:
        return any(contains(cmd, tokens) for cmd in self.commands[since:])

    def count(self, *tokens: str) -> int:
        return sum(1 for cmd in self.commands if contains(cmd, tokens))

    def start_mode(self, mode: DeploymentMode) -> None:
        self.running |= {container_name(s, mode) for s in STACK_SERVICES}

    # === Host interface ===

    def run_command(self, cmd, *, input=None, env=None, timeout=None) -> CommandResult:
        cmd = list(cmd)
        self.commands.append(cmd)
        self.inputs.append(input)
        for tokens, responder in self._rules:
            if contains(cmd, tokens):
                return responder(self, cmd, input) if callable(responder) else responder
        return self._builtin(cmd, input)

    def run_binary(self, cmd, *, input=None, timeout=None) -> CommandResult:
        """Scripted stdout text is handed back as raw bytes unless ``data`` is set."""
        result = self.run_command(cmd, timeout=timeout)
        self.inputs[-1] = input
        if result.data:
            return result
        return CommandResult(result.returncode, stderr=result.stderr, data=result.stdout.encode())

    def _builtin(self, cmd: list[str], input: str | None) -> CommandResult:
        if cmd[:2] == ["ln", "-sf"]:
            self.files[Path(cmd[3])] = self.files.get(Path(cmd[2]), b"")
            return CommandResult(0)
        if cmd == ["crontab", "-l"]:
            if not self.crontab:
                return CommandResult(1, stderr="no crontab for root")
            return CommandResult(0, stdout=self.crontab)
        if cmd == ["crontab", "-"]:
            self.crontab = input or ""
            return CommandResult(0)
        if cmd[:2] == ["docker", "ps"]:
            return CommandResult(0, stdout="\n".join(sorted(self.running)) + "\n")
        if cmd[:2] == ["docker", "compose"] and "-f" in cmd:
            index = cmd.index("-f")
            mode = (
                DeploymentMode.HIGHPERF
                if cmd[index + 1].endswith(COMPOSE_FILES[DeploymentMode.HIGHPERF])
                else DeploymentMode.STANDARD
            )
            args = cmd[index + 2 :]
            if args[:2] == ["up", "-d"]:
                self.start_mode(mode)
            elif args[:1] == ["down"]:
                self.running -= {container_name(s, mode) for s in STACK_SERVICES}
        return CommandResult(0)

    def run_interactive(self, cmd) -> int:
        self.interactive.append(list(cmd))
        return 0

    def has_command(self, program: str) -> bool:
        return program in self.programs

    def file_exists(self, path: Path) -> bool:
        path = Path(path)
        return path in self.files or path in self.dirs

    def read_file(self, path: Path) -> str:
        return self.read_bytes(path).decode("utf-8")

    def read_bytes(self, path: Path) -> bytes:
        try:
            return self.files[Path(path)]
        except KeyError as e:
            raise FileNotFoundError(str(path)) from e

    def write_file(self, path: Path, content: str, mode: int | None = None) -> None:
        self.write_bytes(path, content.encode("utf-8"), mode=mode)

    def write_bytes(self, path: Path, data: bytes, mode: int | None = None) -> None:
        path = Path(path)
        self.files[path] = data
        self.modes[path] = mode
        self.writes.append(path)

    def make_dirs(self, path: Path) -> None:
        path = Path(path)
        self.dirs.add(path)
        self.dirs.update(path.parents)

    def remove_file(self, path: Path) -> None:
        path = Path(path)
        if self.files.pop(path, None) is not None:
            self.removed.append(path)

    def list_files(self, directory: Path, pattern: str) -> list[Path]:
        directory = Path(directory)
        return sorted(
            p for p in self.files if p.parent == directory and fnmatch.fnmatch(p.name, pattern)
        )

    def service_healthy(self, container: str) -> bool:
        return container in self.running


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        app_dir=Path("/opt/lms-app"),
        backup_dir=Path("/opt/lms-backups"),
        log_file=tmp_path / "install.log",
        probe_interval=0,
        start_settle_seconds=0,
        settle_seconds=0,
    )


@pytest.fixture
def config_values() -> dict[str, str]:
    return {
        "DOMAIN": "lms.example.sch.id",
        "ADMIN_USERNAME": "admin",
        "ADMIN_EMAIL": "admin@example.sch.id",
        "ADMIN_PASSWORD": "SecretPass123",
        "SCHOOL_NAME": "SMK Example School",
        "SCHOOL_LEVEL": "SMK",
        "DB_PASSWORD": "",
        "TIMEZONE": "Asia/Jakarta",
    }


@pytest.fixture
def config(config_values) -> InstallationConfig:
    return InstallationConfig.from_values(config_values, ValidationProfile.STRICT)


@pytest.fixture
def resources() -> ResourceProfile:
    return ResourceProfile(ram_mb=8000, cpu_cores=4, disk_free_gb=50)
