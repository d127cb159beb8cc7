"""Declarative provisioning steps and the sequential runner that executes them."""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
import time

from rich.console import Console
import structlog

from lms_deploy.errors import ProvisioningError, Severity, StepExecutionError
from lms_deploy.host import CommandResult
from lms_deploy.logging_config import get_logger

logger = get_logger(__name__)


class StepStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    WARNED = "warned"


@dataclass(frozen=True)
class Step:
    """One idempotent unit of provisioning work.

    ``precondition`` returns True when the step's goal state already holds,
    in which case ``action`` is not called.
    """

    name: str
    description: str
    action: Callable[[], None]
    precondition: Callable[[], bool] | None = None
    policy: Severity = Severity.FATAL


@dataclass(frozen=True)
class StepOutcome:
    name: str
    status: StepStatus
    message: str = ""


@dataclass
class RunReport:
    outcomes: list[StepOutcome] = field(default_factory=list)

    def _names(self, status: StepStatus) -> list[str]:
        return [o.name for o in self.outcomes if o.status is status]

    @property
    def completed(self) -> list[str]:
        return self._names(StepStatus.COMPLETED)

    @property
    def skipped(self) -> list[str]:
        return self._names(StepStatus.SKIPPED)

    @property
    def warnings(self) -> list[StepOutcome]:
        return [o for o in self.outcomes if o.status is StepStatus.WARNED]


def require_ok(result: CommandResult, what: str, *, severity: Severity | None = None) -> CommandResult:
    """Turn a failed command into a :class:`StepExecutionError`."""
    if not result.ok:
        raise StepExecutionError(
            f"{what} failed (exit {result.returncode})",
            severity=severity,
            output=result.diagnostic,
        )
    return result


class StepRunner:
    """Runs steps strictly in order, one at a time.

    A FATAL failure stops the run and propagates; side effects of completed
    steps are left in place. A WARN failure is reported and the run goes on.
    """

    def __init__(self, steps: Sequence[Step], console: Console | None = None):
        self.steps = list(steps)
        self.console = console or Console()

    def run(self) -> RunReport:
        report = RunReport()
        total = len(self.steps)
        for index, step in enumerate(self.steps, start=1):
            structlog.contextvars.bind_contextvars(step=step.name)
            try:
                self.console.print(f"[bold blue][{index}/{total}][/bold blue] {step.description}")
                report.outcomes.append(self._run_step(step))
            finally:
                structlog.contextvars.unbind_contextvars("step")
        logger.info(
            "pipeline_complete",
            completed=len(report.completed),
            skipped=len(report.skipped),
            warnings=len(report.warnings),
        )
        return report

    def _run_step(self, step: Step) -> StepOutcome:
        start = time.time()
        try:
            if step.precondition is not None and step.precondition():
                logger.info("step_skipped", reason="already satisfied")
                self.console.print("  [dim]already satisfied, skipping[/dim]")
                return StepOutcome(step.name, StepStatus.SKIPPED)
            step.action()
        except (ProvisioningError, OSError) as e:
            return self._handle_failure(step, e)

        logger.info("step_complete", duration_ms=round((time.time() - start) * 1000, 2))
        self.console.print("  [green]✓[/green] done")
        return StepOutcome(step.name, StepStatus.COMPLETED)

    def _handle_failure(self, step: Step, original: Exception) -> StepOutcome:
        error = original
        if not isinstance(error, ProvisioningError):
            error = StepExecutionError(str(error), output=str(error))
        error.step = step.name
        if error.subject is None:
            error.subject = step.name

        if step.policy is Severity.WARN or error.severity is Severity.WARN:
            error.severity = Severity.WARN
            logger.warning("step_warning", error=error.message)
            self.console.print(f"  [yellow]⚠ Warning:[/yellow] {error.message}")
            return StepOutcome(step.name, StepStatus.WARNED, error.message)

        logger.error(
            "step_failed",
            error=error.message,
            error_type=type(error).__name__,
            output=getattr(error, "output", ""),
        )
        if error is original:
            raise error
        raise error from original
