"""Bounded-retry readiness polling."""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
import time

from lms_deploy.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-interval retry policy for readiness checks."""

    interval: float = 5.0
    max_attempts: int = 30


class ProbeOutcome(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ServiceEndpoint:
    """A dependency with a liveness predicate."""

    name: str
    is_live: Callable[[], bool]
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass(frozen=True)
class ProbeResult:
    outcome: ProbeOutcome
    attempts: int

    @property
    def ready(self) -> bool:
        return self.outcome is ProbeOutcome.READY


class ReadinessProbe:
    """Polls an endpoint until it is live or the attempt ceiling is reached.

    Exactly ``k`` checks are made when the endpoint becomes live on attempt
    ``k``, and exactly ``max_attempts`` when it never does. There is no sleep
    after the final attempt.
    """

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self._sleep = sleep

    def probe(
        self,
        endpoint: ServiceEndpoint,
        interval: float | None = None,
        max_attempts: int | None = None,
    ) -> ProbeResult:
        interval = endpoint.retry.interval if interval is None else interval
        max_attempts = endpoint.retry.max_attempts if max_attempts is None else max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        for attempt in range(1, max_attempts + 1):
            if self._check(endpoint):
                logger.info("endpoint_ready", endpoint=endpoint.name, attempts=attempt)
                return ProbeResult(ProbeOutcome.READY, attempt)
            logger.debug(
                "endpoint_not_ready",
                endpoint=endpoint.name,
                attempt=attempt,
                max_attempts=max_attempts,
            )
            if attempt < max_attempts:
                self._sleep(interval)

        logger.warning("endpoint_timed_out", endpoint=endpoint.name, attempts=max_attempts)
        return ProbeResult(ProbeOutcome.TIMED_OUT, max_attempts)

    @staticmethod
    def _check(endpoint: ServiceEndpoint) -> bool:
        # A predicate that raises counts as "not ready yet"
        try:
            return bool(endpoint.is_live())
        except Exception as e:
            logger.debug("endpoint_check_error", endpoint=endpoint.name, error=str(e))
            return False
