"""Error taxonomy for provisioning runs.

Every error carries a severity and the name of the step or input field it
concerns, so the CLI can report it without inspecting the exception type.
"""

from enum import Enum


class Severity(str, Enum):
    """How the pipeline reacts to an error."""

    FATAL = "fatal"
    WARN = "warn"


class ProvisioningError(Exception):
    """Base class for all provisioning failures."""

    default_severity = Severity.FATAL

    def __init__(
        self,
        message: str,
        *,
        subject: str | None = None,
        severity: Severity | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.subject = subject
        self.severity = severity or self.default_severity
        # Set by the step runner when the error escapes a step
        self.step: str | None = None

    def __str__(self) -> str:
        prefix = f"[{self.severity.value.upper()}]"
        if self.subject:
            return f"{prefix} {self.subject}: {self.message}"
        return f"{prefix} {self.message}"


class ValidationError(ProvisioningError):
    """Malformed input configuration, reported per offending field."""

    def __init__(self, field_errors: dict[str, str]):
        self.field_errors = dict(field_errors)
        fields = ", ".join(self.field_errors)
        super().__init__(
            f"invalid configuration ({len(self.field_errors)} field(s))",
            subject=fields,
        )

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls({field: message})


class PreconditionError(ProvisioningError):
    """Host does not meet a requirement; raised before any side effect."""


class StepExecutionError(ProvisioningError):
    """An external tool invocation failed inside a step."""

    def __init__(
        self,
        message: str,
        *,
        subject: str | None = None,
        severity: Severity | None = None,
        output: str = "",
    ):
        super().__init__(message, subject=subject, severity=severity)
        self.output = output


class ReadinessTimeoutError(ProvisioningError):
    """A dependency never became healthy within its retry budget."""

    def __init__(self, endpoint: str, attempts: int, *, subject: str | None = None):
        super().__init__(
            f"{endpoint} not ready after {attempts} attempts",
            subject=subject or endpoint,
        )
        self.endpoint = endpoint
        self.attempts = attempts
