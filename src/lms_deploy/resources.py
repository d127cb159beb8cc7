"""Host resource measurement and performance tier classification."""

import os
from pathlib import Path
import shutil

from lms_deploy.errors import PreconditionError
from lms_deploy.logging_config import get_logger
from lms_deploy.models import (
    PerformanceTier,
    ResourceProfile,
    TierParameters,
    ValidationProfile,
)

logger = get_logger(__name__)

# Ordered from largest to smallest; the first threshold the RAM reaches wins
TIER_THRESHOLDS: tuple[tuple[int, PerformanceTier], ...] = (
    (14000, PerformanceTier.LARGE),
    (6000, PerformanceTier.MEDIUM),
)

TIER_PARAMETERS: dict[ValidationProfile, dict[PerformanceTier, TierParameters]] = {
    ValidationProfile.STRICT: {
        PerformanceTier.LARGE: TierParameters(workers=100, db_buffer="2G", cache_memory="1gb"),
        PerformanceTier.MEDIUM: TierParameters(workers=50, db_buffer="1G", cache_memory="512mb"),
        PerformanceTier.SMALL: TierParameters(workers=20, db_buffer="512M", cache_memory="256mb"),
    },
    # Local installs share the host with other dev tooling, so every tier is one size smaller
    ValidationProfile.RELAXED: {
        PerformanceTier.LARGE: TierParameters(workers=50, db_buffer="1G", cache_memory="512mb"),
        PerformanceTier.MEDIUM: TierParameters(workers=20, db_buffer="512M", cache_memory="256mb"),
        PerformanceTier.SMALL: TierParameters(workers=10, db_buffer="256M", cache_memory="128mb"),
    },
}

# (minimum RAM in MB, minimum free disk in GB)
HARD_MINIMUMS: dict[ValidationProfile, tuple[int, int]] = {
    ValidationProfile.STRICT: (1800, 10),
    ValidationProfile.RELAXED: (1500, 5),
}


def classify_tier(ram_mb: int) -> PerformanceTier:
    """Map RAM to a tier. Total and monotonic in ``ram_mb``."""
    for threshold, tier in TIER_THRESHOLDS:
        if ram_mb >= threshold:
            return tier
    return PerformanceTier.SMALL


def tier_parameters(
    tier: PerformanceTier, profile: ValidationProfile = ValidationProfile.STRICT
) -> TierParameters:
    return TIER_PARAMETERS[profile][tier]


def check_minimums(resources: ResourceProfile, profile: ValidationProfile) -> None:
    """Abort when the host is below the hard RAM or disk minimum.

    Raises:
        PreconditionError: naming the insufficient resource
    """
    min_ram, min_disk = HARD_MINIMUMS[profile]
    if resources.ram_mb < min_ram:
        raise PreconditionError(
            f"Minimum {min_ram}MB RAM required. Available: {resources.ram_mb}MB",
            subject="ram",
        )
    if resources.disk_free_gb < min_disk:
        raise PreconditionError(
            f"Minimum {min_disk}GB free disk space required. "
            f"Available: {resources.disk_free_gb}GB",
            subject="disk",
        )


def classify(
    resources: ResourceProfile, profile: ValidationProfile = ValidationProfile.STRICT
) -> tuple[PerformanceTier, TierParameters]:
    """Gate on hard minimums, then derive the tier and its parameters."""
    check_minimums(resources, profile)
    tier = classify_tier(resources.ram_mb)
    params = tier_parameters(tier, profile)
    logger.info(
        "performance_tier_selected",
        tier=tier.value,
        ram_mb=resources.ram_mb,
        cpu_cores=resources.cpu_cores,
        disk_free_gb=resources.disk_free_gb,
        workers=params.workers,
        db_buffer=params.db_buffer,
        cache_memory=params.cache_memory,
    )
    return tier, params


class SystemInspector:
    """Collects host resources from procfs and the filesystem."""

    MEMINFO_PATH = Path("/proc/meminfo")

    def __init__(self, disk_path: Path = Path("/")):
        self.disk_path = disk_path

    def collect(self) -> ResourceProfile:
        mem_total_kb = self._read_meminfo().get("MemTotal", 0)
        disk = shutil.disk_usage(self.disk_path)
        resources = ResourceProfile(
            ram_mb=mem_total_kb // 1024,
            cpu_cores=os.cpu_count() or 1,
            disk_free_gb=disk.free // (1024**3),
        )
        logger.debug(
            "system_resources_collected",
            ram_mb=resources.ram_mb,
            cpu_cores=resources.cpu_cores,
            disk_free_gb=resources.disk_free_gb,
        )
        return resources

    def _read_meminfo(self) -> dict[str, int]:
        data: dict[str, int] = {}
        try:
            with self.MEMINFO_PATH.open("r", encoding="utf-8") as fh:
                for line in fh:
                    if ":" not in line:
                        continue
                    key, value = line.split(":", 1)
                    fields = value.strip().split()
                    if fields:
                        data[key] = int(fields[0])
        except FileNotFoundError as e:
            raise PreconditionError(
                "/proc/meminfo is not available on this platform", subject="ram"
            ) from e
        return data
