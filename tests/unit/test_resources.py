"""Unit tests for resource classification."""

from unittest.mock import patch

import pytest

from lms_deploy.errors import PreconditionError
from lms_deploy.models import PerformanceTier, ResourceProfile, ValidationProfile
from lms_deploy.resources import (
    HARD_MINIMUMS,
    SystemInspector,
    check_minimums,
    classify,
    classify_tier,
    tier_parameters,
)

TIER_ORDER = [PerformanceTier.SMALL, PerformanceTier.MEDIUM, PerformanceTier.LARGE]


class TestClassifyTier:
    """Tests for the RAM to tier mapping."""

    @pytest.mark.parametrize(
        "ram_mb,expected",
        [
            (0, PerformanceTier.SMALL),
            (5999, PerformanceTier.SMALL),
            (6000, PerformanceTier.MEDIUM),
            (13999, PerformanceTier.MEDIUM),
            (14000, PerformanceTier.LARGE),
            (64000, PerformanceTier.LARGE),
        ],
    )
    def test_boundaries(self, ram_mb, expected):
        """Thresholds are inclusive lower bounds."""
        assert classify_tier(ram_mb) is expected

    def test_monotonic_in_ram(self):
        """More RAM never yields a smaller tier."""
        previous = 0
        for ram_mb in range(0, 20000, 250):
            rank = TIER_ORDER.index(classify_tier(ram_mb))
            assert rank >= previous
            previous = rank

    def test_workers_grow_with_tier(self):
        """Each larger tier gets more workers in both profiles."""
        for profile in ValidationProfile:
            workers = [tier_parameters(t, profile).workers for t in TIER_ORDER]
            assert workers == sorted(workers)
            assert len(set(workers)) == len(workers)


class TestTierParameters:
    """Tests for the per-profile parameter tables."""

    def test_strict_tuples(self):
        """Strict profile parameters."""
        small = tier_parameters(PerformanceTier.SMALL, ValidationProfile.STRICT)
        large = tier_parameters(PerformanceTier.LARGE, ValidationProfile.STRICT)

        assert (small.workers, small.db_buffer, small.cache_memory) == (20, "512M", "256mb")
        assert (large.workers, large.db_buffer, large.cache_memory) == (100, "2G", "1gb")

    def test_relaxed_tuples_are_one_size_smaller(self):
        """Relaxed medium equals strict small."""
        relaxed_medium = tier_parameters(PerformanceTier.MEDIUM, ValidationProfile.RELAXED)
        strict_small = tier_parameters(PerformanceTier.SMALL, ValidationProfile.STRICT)

        assert relaxed_medium == strict_small
        assert tier_parameters(PerformanceTier.SMALL, ValidationProfile.RELAXED).workers == 10


class TestCheckMinimums:
    """Tests for the hard resource gate."""

    def test_below_ram_minimum_names_ram(self):
        """Insufficient RAM is reported with subject 'ram'."""
        with pytest.raises(PreconditionError) as exc_info:
            check_minimums(ResourceProfile(1000, 2, 50), ValidationProfile.STRICT)

        assert exc_info.value.subject == "ram"
        assert "1800MB" in exc_info.value.message

    def test_below_disk_minimum_names_disk(self):
        """Insufficient disk is reported with subject 'disk'."""
        with pytest.raises(PreconditionError) as exc_info:
            check_minimums(ResourceProfile(4000, 2, 5), ValidationProfile.STRICT)

        assert exc_info.value.subject == "disk"

    def test_relaxed_profile_has_lower_floor(self):
        """1600MB and 6GB pass relaxed but not strict."""
        resources = ResourceProfile(1600, 2, 6)

        check_minimums(resources, ValidationProfile.RELAXED)
        with pytest.raises(PreconditionError):
            check_minimums(resources, ValidationProfile.STRICT)

    def test_exact_minimum_passes(self):
        """The minimum itself is sufficient."""
        ram, disk = HARD_MINIMUMS[ValidationProfile.STRICT]
        check_minimums(ResourceProfile(ram, 1, disk), ValidationProfile.STRICT)


def test_classify_returns_tier_and_parameters():
    """classify gates and then maps."""
    tier, params = classify(ResourceProfile(8000, 4, 40), ValidationProfile.STRICT)

    assert tier is PerformanceTier.MEDIUM
    assert params.workers == 50


def test_classify_raises_before_mapping():
    """A host below the minimum never gets a tier."""
    with pytest.raises(PreconditionError):
        classify(ResourceProfile(512, 1, 100))


class TestSystemInspector:
    """Tests for host measurement."""

    def test_collect_reads_meminfo(self, tmp_path):
        """MemTotal is converted from kB to MB."""
        meminfo = tmp_path / "meminfo"
        meminfo.write_text("MemTotal:        8192000 kB\nMemFree:  100 kB\n")

        with (
            patch.object(SystemInspector, "MEMINFO_PATH", meminfo),
            patch("lms_deploy.resources.os.cpu_count", return_value=6),
        ):
            resources = SystemInspector(disk_path=tmp_path).collect()

        assert resources.ram_mb == 8000
        assert resources.cpu_cores == 6
        assert resources.disk_free_gb >= 0

    def test_missing_meminfo_is_precondition_error(self, tmp_path):
        """Platforms without procfs fail cleanly."""
        with patch.object(SystemInspector, "MEMINFO_PATH", tmp_path / "absent"):
            with pytest.raises(PreconditionError):
                SystemInspector(disk_path=tmp_path).collect()
