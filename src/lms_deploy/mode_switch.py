"""Runtime switch between the standard and high-performance compositions.

The active mode is never stored. It is read back from the names of the
running containers, so a manual ``docker compose`` call cannot make the
recorded state and the real one diverge.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
import time

from lms_deploy.compose import (
    CORE_SERVICES,
    compose_command,
    compose_file,
    container_name,
    detect_mode,
)
from lms_deploy.config import Settings
from lms_deploy.errors import PreconditionError
from lms_deploy.host import Host
from lms_deploy.logging_config import get_logger
from lms_deploy.models import DeploymentMode, ResourceProfile
from lms_deploy.resources import SystemInspector
from lms_deploy.steps import require_ok

logger = get_logger(__name__)

# (RAM in MB, CPU cores)
HIGHPERF_HARD_MINIMUM = (4000, 2)
HIGHPERF_RECOMMENDED = (8000, 4)


class GateDecision(str, Enum):
    ALLOW = "allow"
    CONFIRM = "confirm"
    REJECT = "reject"


def highperf_gate(resources: ResourceProfile) -> GateDecision:
    hard_ram, hard_cores = HIGHPERF_HARD_MINIMUM
    if resources.ram_mb < hard_ram or resources.cpu_cores < hard_cores:
        return GateDecision.REJECT
    rec_ram, rec_cores = HIGHPERF_RECOMMENDED
    if resources.ram_mb < rec_ram or resources.cpu_cores < rec_cores:
        return GateDecision.CONFIRM
    return GateDecision.ALLOW


@dataclass(frozen=True)
class SwitchResult:
    mode: DeploymentMode | None
    changed: bool
    health: dict[str, bool] = field(default_factory=dict)


class ModeSwitch:
    """Stops one composition and starts the other over the same volumes."""

    def __init__(
        self,
        host: Host,
        settings: Settings,
        resources: ResourceProfile | None,
        confirm: Callable[[str], bool],
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.host = host
        self.settings = settings
        self.resources = resources
        self.confirm = confirm
        self._sleep = sleep

    def current_mode(self) -> DeploymentMode | None:
        return detect_mode(self.host)

    def health(self, mode: DeploymentMode) -> dict[str, bool]:
        return {
            service: self.host.service_healthy(container_name(service, mode))
            for service in CORE_SERVICES
        }

    def status(self) -> SwitchResult:
        mode = self.current_mode()
        return SwitchResult(mode, changed=False, health=self.health(mode) if mode else {})

    def enable_highperf(self) -> SwitchResult:
        """Switch to high-performance mode, subject to the resource gate.

        Raises:
            PreconditionError: host is below the hard minimum
        """
        current = self.current_mode()
        if current is DeploymentMode.HIGHPERF:
            logger.info("mode_unchanged", mode=current.value)
            return SwitchResult(current, changed=False, health=self.health(current))

        if self.resources is None:
            self.resources = SystemInspector().collect()
        decision = highperf_gate(self.resources)
        logger.info(
            "highperf_gate_checked",
            decision=decision.value,
            ram_mb=self.resources.ram_mb,
            cpu_cores=self.resources.cpu_cores,
        )
        if decision is GateDecision.REJECT:
            ram, cores = HIGHPERF_HARD_MINIMUM
            raise PreconditionError(
                f"High-performance mode needs at least {ram}MB RAM and {cores} cores. "
                f"Available: {self.resources.ram_mb}MB, {self.resources.cpu_cores} cores",
                subject="highperf",
            )
        if decision is GateDecision.CONFIRM:
            ram, cores = HIGHPERF_RECOMMENDED
            prompt = (
                f"Recommended for high-performance mode: {ram}MB RAM and {cores} cores "
                f"(available: {self.resources.ram_mb}MB, {self.resources.cpu_cores} cores). Continue?"
            )
            if not self.confirm(prompt):
                logger.info("highperf_declined")
                return SwitchResult(current, changed=False)

        return self._switch(current, DeploymentMode.HIGHPERF)

    def disable_highperf(self) -> SwitchResult:
        current = self.current_mode()
        if current is DeploymentMode.STANDARD:
            logger.info("mode_unchanged", mode=current.value)
            return SwitchResult(current, changed=False, health=self.health(current))
        return self._switch(current, DeploymentMode.STANDARD)

    def _switch(self, current: DeploymentMode | None, target: DeploymentMode) -> SwitchResult:
        app_dir = self.settings.app_dir
        if not self.host.file_exists(compose_file(app_dir, target)):
            raise PreconditionError(
                f"{compose_file(app_dir, target)} not found. Run the installer first",
                subject="highperf",
            )
        logger.info("mode_switch_started", source=current.value if current else None, target=target.value)
        if current is not None:
            # No -v: volumes are shared with the target mode
            require_ok(self.host.run_command(compose_command(app_dir, current, "down")), "compose down")
        require_ok(self.host.run_command(compose_command(app_dir, target, "up", "-d")), "compose up")
        self._sleep(self.settings.settle_seconds)
        health = self.health(target)
        logger.info("mode_switch_complete", mode=target.value, health=health)
        return SwitchResult(target, changed=True, health=health)
