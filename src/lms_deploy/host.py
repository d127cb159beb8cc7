"""Host capability interface.

Steps, probes and management commands never touch the OS directly. They go
through a :class:`Host`, so tests can substitute an in-memory fake and the
real implementation stays a thin subprocess/filesystem wrapper.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import fnmatch
import os
from pathlib import Path
import shutil
import subprocess
import time
from typing import Protocol

from lms_deploy.logging_config import get_logger

logger = get_logger(__name__)

MAX_LOG_LENGTH = 1000


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""
    # Undecoded stdout, filled only by run_binary
    data: bytes = b""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def diagnostic(self) -> str:
        """Last part of stderr (or stdout when stderr is empty) for error reports."""
        text = self.stderr.strip() or self.stdout.strip()
        if len(text) > MAX_LOG_LENGTH:
            return "..." + text[-MAX_LOG_LENGTH:]
        return text


class Host(Protocol):
    """Side-effect surface used by the provisioning engine."""

    def run_command(
        self,
        cmd: Sequence[str],
        *,
        input: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: int | None = None,
    ) -> CommandResult: ...

    def run_binary(
        self,
        cmd: Sequence[str],
        *,
        input: bytes | None = None,
        timeout: int | None = None,
    ) -> CommandResult: ...

    def run_interactive(self, cmd: Sequence[str]) -> int: ...

    def has_command(self, program: str) -> bool: ...

    def file_exists(self, path: Path) -> bool: ...

    def read_file(self, path: Path) -> str: ...

    def read_bytes(self, path: Path) -> bytes: ...

    def write_file(self, path: Path, content: str, mode: int | None = None) -> None: ...

    def write_bytes(self, path: Path, data: bytes, mode: int | None = None) -> None: ...

    def make_dirs(self, path: Path) -> None: ...

    def remove_file(self, path: Path) -> None: ...

    def list_files(self, directory: Path, pattern: str) -> list[Path]: ...

    def service_healthy(self, container: str) -> bool: ...


class LocalHost:
    """Host implementation backed by subprocess and the local filesystem."""

    def __init__(self, default_timeout: int = 1800):
        self.default_timeout = default_timeout

    def run_command(
        self,
        cmd: Sequence[str],
        *,
        input: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        result = self._execute(
            cmd, input.encode("utf-8") if input is not None else None, env, timeout
        )
        return CommandResult(
            result.returncode, result.data.decode("utf-8", errors="replace"), result.stderr
        )

    def run_binary(
        self,
        cmd: Sequence[str],
        *,
        input: bytes | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        """Like run_command, but stdin and stdout stay raw bytes (database dumps)."""
        return self._execute(cmd, input, None, timeout)

    def _execute(
        self,
        cmd: Sequence[str],
        input: bytes | None,
        env: Mapping[str, str] | None,
        timeout: int | None,
    ) -> CommandResult:
        timeout = timeout or self.default_timeout
        run_env = {**os.environ, **env} if env else None
        # Secrets never travel in argv, but keep the preview short anyway
        preview = " ".join(cmd[:4])
        start = time.time()
        try:
            process = subprocess.run(  # noqa: S603
                list(cmd),
                input=input,
                capture_output=True,
                env=run_env,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            logger.warning("command_not_found", command=preview, error=str(e))
            return CommandResult(returncode=127, stderr=str(e))
        except subprocess.TimeoutExpired:
            logger.error("command_timeout", command=preview, timeout=timeout)
            return CommandResult(returncode=124, stderr=f"timed out after {timeout}s")

        duration = time.time() - start
        stderr = process.stderr.decode("utf-8", errors="replace")
        logger.debug(
            "command_complete",
            command=preview,
            exit_code=process.returncode,
            duration_sec=round(duration, 2),
        )
        if process.returncode != 0 and stderr:
            logger.debug("command_stderr", command=preview, output=stderr[:MAX_LOG_LENGTH])
        return CommandResult(process.returncode, stderr=stderr, data=process.stdout)

    def run_interactive(self, cmd: Sequence[str]) -> int:
        """Run with the caller's terminal attached (shells, log following)."""
        return subprocess.run(list(cmd)).returncode  # noqa: S603

    def has_command(self, program: str) -> bool:
        return shutil.which(program) is not None

    def file_exists(self, path: Path) -> bool:
        return os.path.lexists(path)

    def read_file(self, path: Path) -> str:
        return Path(path).read_text(encoding="utf-8")

    def read_bytes(self, path: Path) -> bytes:
        return Path(path).read_bytes()

    def write_file(self, path: Path, content: str, mode: int | None = None) -> None:
        self.write_bytes(path, content.encode("utf-8"), mode=mode)

    def write_bytes(self, path: Path, data: bytes, mode: int | None = None) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Create with restricted permissions up front so secrets are never world-readable
        flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
        fd = os.open(path, flags, mode if mode is not None else 0o644)
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        if mode is not None:
            os.chmod(path, mode)

    def make_dirs(self, path: Path) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)

    def remove_file(self, path: Path) -> None:
        Path(path).unlink(missing_ok=True)

    def list_files(self, directory: Path, pattern: str) -> list[Path]:
        directory = Path(directory)
        if not directory.is_dir():
            return []
        return sorted(p for p in directory.iterdir() if fnmatch.fnmatch(p.name, pattern))

    def service_healthy(self, container: str) -> bool:
        """A container is healthy when its healthcheck says so, or running if it has none."""
        result = self.run_command(
            [
                "docker",
                "inspect",
                "--format",
                "{{if .State.Health}}{{.State.Health.Status}}{{else}}{{.State.Status}}{{end}}",
                container,
            ],
            timeout=30,
        )
        return result.ok and result.stdout.strip() in {"healthy", "running"}
