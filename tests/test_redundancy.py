"""Tests for core/redundancy.py — safety classification and waste."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from backup_sentinel.core.devices import DeviceRegistry, PathVolumeIdentity
from backup_sentinel.core.index import LocationIndex
from backup_sentinel.core.models import FileLocation, ScanMode, utc_now
from backup_sentinel.core.redundancy import RedundancyAnalyzer, is_safe
from backup_sentinel.core.store import Database

if TYPE_CHECKING:
    from collections.abc import Iterator

HASH_A = "a" * 64
HASH_B = "b" * 64
HASH_C = "c" * 64


class Env:
    """Registry, index and analyzer over one database."""

    def __init__(self, db: Database, root: Path) -> None:
        self.db = db
        self.registry = DeviceRegistry(db, PathVolumeIdentity())
        self.index = LocationIndex(db)
        self.analyzer = RedundancyAnalyzer(db, self.index)
        self.registry.register(root / "hot", device_id="hot-1", device_type="hot")
        self.registry.register(root / "hot2", device_id="hot-2", device_type="hot")
        self.registry.register(root / "cold", device_id="cold-1", device_type="cold")
        self.registry.register(root / "misc", device_id="unknown-1")

    def add(
        self,
        content_hash: str,
        device_id: str,
        path: str,
        size: int = 100,
        mode: ScanMode = ScanMode.FULL,
    ) -> None:
        self.index.upsert(
            FileLocation(
                content_hash=content_hash,
                device_id=device_id,
                file_path=path,
                file_name=Path(path).name,
                file_size=size,
                modified_at=None,
                last_verified=utc_now(),
                scan_mode=mode,
            )
        )


@pytest.fixture
def env(tmp_path: Path) -> Iterator[Env]:
    db = Database(tmp_path / "redundancy.db")
    yield Env(db, tmp_path)
    db.close()


class TestIsSafe:
    """Tests for the safety rule itself."""

    @pytest.mark.parametrize(
        ("total", "cold", "expected"),
        [
            (1, 0, False),
            (1, 1, False),
            (2, 0, False),
            (2, 1, True),
            (3, 3, True),
        ],
    )
    def test_rule(self, total: int, cold: int, expected: bool) -> None:
        """Safe means at least one cold copy and at least two copies."""
        assert is_safe(total, cold) is expected

    def test_require_full(self) -> None:
        """Strict policy also needs every copy fully hashed."""
        assert is_safe(2, 1, 1, require_full=True) is False
        assert is_safe(2, 1, 2, require_full=True) is True


class TestSafety:
    """Tests for per-fingerprint classification."""

    def test_hot_plus_cold_is_safe(self, env: Env) -> None:
        """One hot and one cold copy should be safe."""
        env.add(HASH_A, "hot-1", "photos/a.jpg")
        env.add(HASH_A, "cold-1", "backup/a.jpg")

        safety = env.analyzer.safety_of(HASH_A)

        assert safety is not None
        assert safety.is_safe is True
        assert (safety.total_copies, safety.hot_copies, safety.cold_copies) == (2, 1, 1)
        assert len(safety.locations) == 2

    def test_hot_only_is_unsafe(self, env: Env) -> None:
        """Copies spread across hot drives only should be unsafe."""
        env.add(HASH_A, "hot-1", "a.jpg")
        env.add(HASH_A, "hot-2", "a.jpg")

        safety = env.analyzer.safety_of(HASH_A)

        assert safety is not None
        assert safety.is_safe is False

    def test_single_cold_copy_is_unsafe(self, env: Env) -> None:
        """A lone cold copy is still one failure away from loss."""
        env.add(HASH_A, "cold-1", "a.jpg")

        safety = env.analyzer.safety_of(HASH_A)

        assert safety is not None
        assert safety.is_safe is False

    def test_unknown_devices_count_as_neither(self, env: Env) -> None:
        """Copies on unknown or unregistered devices count only in the total."""
        env.add(HASH_A, "unknown-1", "a.jpg")
        env.add(HASH_A, "vanished-device", "a.jpg")
        env.add(HASH_A, "hot-1", "a.jpg")

        safety = env.analyzer.safety_of(HASH_A)

        assert safety is not None
        assert safety.total_copies == 3
        assert safety.hot_copies == 1
        assert safety.cold_copies == 0
        assert safety.unknown_copies == 2
        assert safety.hot_copies + safety.cold_copies <= safety.total_copies

    def test_reclassification_applies_immediately(self, env: Env) -> None:
        """Changing a device type should change safety on the next query."""
        env.add(HASH_A, "hot-1", "a.jpg")
        env.add(HASH_A, "hot-2", "a.jpg")

        env.registry.set_device_type("hot-2", "cold")

        safety = env.analyzer.safety_of(HASH_A)
        assert safety is not None
        assert safety.is_safe is True

    def test_missing_fingerprint(self, env: Env) -> None:
        """Unknown fingerprints have no classification."""
        assert env.analyzer.safety_of(HASH_C) is None

    def test_representative_is_first_path(self, env: Env) -> None:
        """The representative name comes from the smallest path."""
        env.add(HASH_A, "hot-1", "z/zebra.jpg")
        env.add(HASH_A, "cold-1", "a/apple.jpg")

        safety = env.analyzer.safety_of(HASH_A)

        assert safety is not None
        assert safety.representative_name == "apple.jpg"
        assert [loc.file_path for loc in safety.locations] == ["a/apple.jpg", "z/zebra.jpg"]

    def test_strict_policy(self, env: Env) -> None:
        """With full verification required, quick-only copies are not safe."""
        env.add(HASH_A, "hot-1", "a.jpg", mode=ScanMode.QUICK)
        env.add(HASH_A, "cold-1", "a.jpg")
        env.analyzer.require_full_verification = True

        safety = env.analyzer.safety_of(HASH_A)

        assert safety is not None
        assert safety.full_copies == 1
        assert safety.is_safe is False


class TestUnsafeFiles:
    """Tests for unsafe_files."""

    def test_only_unsafe_largest_first(self, env: Env) -> None:
        """Safe content is left out; the rest is sorted by size."""
        env.add(HASH_A, "hot-1", "small.txt", size=10)
        env.add(HASH_B, "hot-1", "big.bin", size=5000)
        env.add(HASH_C, "hot-1", "safe.doc", size=99999)
        env.add(HASH_C, "cold-1", "safe.doc", size=99999)

        unsafe = env.analyzer.unsafe_files()

        assert [s.content_hash for s in unsafe] == [HASH_B, HASH_A]


class TestWaste:
    """Tests for waste candidates."""

    def test_two_copies_on_one_drive(self, env: Env) -> None:
        """Duplicates on one hot drive waste one file size and are unsafe."""
        env.add(HASH_A, "hot-1", "a/report.pdf", size=4096)
        env.add(HASH_A, "hot-1", "b/report.pdf", size=4096)

        [candidate] = env.analyzer.waste_candidates()

        assert candidate.content_hash == HASH_A
        assert candidate.total_copies == 2
        assert candidate.wasted_bytes == 4096
        assert env.analyzer.total_wasted_bytes() == 4096
        assert [s.content_hash for s in env.analyzer.unsafe_files()] == [HASH_A]

    def test_ordering_and_ties(self, env: Env) -> None:
        """Ordered by wasted bytes desc, then hash asc."""
        env.add(HASH_B, "hot-1", "b1", size=100)
        env.add(HASH_B, "hot-2", "b2", size=100)
        env.add(HASH_A, "hot-1", "a1", size=100)
        env.add(HASH_A, "cold-1", "a2", size=100)
        env.add(HASH_C, "hot-1", "c1", size=10)
        env.add(HASH_C, "hot-2", "c2", size=10)
        env.add(HASH_C, "cold-1", "c3", size=10)

        candidates = env.analyzer.waste_candidates()

        assert [c.content_hash for c in candidates] == [HASH_A, HASH_B, HASH_C]
        assert [c.wasted_bytes for c in candidates] == [100, 100, 20]

    def test_threshold(self, env: Env) -> None:
        """The threshold drops groups wasting less than it."""
        env.add(HASH_A, "hot-1", "a1", size=1000)
        env.add(HASH_A, "hot-2", "a2", size=1000)
        env.add(HASH_B, "hot-1", "b1", size=10)
        env.add(HASH_B, "hot-2", "b2", size=10)

        assert [c.content_hash for c in env.analyzer.waste_candidates(threshold_bytes=1000)] == [HASH_A]
        assert env.analyzer.waste_candidates(threshold_bytes=10**9) == []

    def test_single_copies_are_not_waste(self, env: Env) -> None:
        """A file stored once wastes nothing."""
        env.add(HASH_A, "hot-1", "a", size=1000)

        assert env.analyzer.waste_candidates() == []
        assert env.analyzer.total_wasted_bytes() == 0


class TestDashboard:
    """Tests for dashboard_stats."""

    def test_empty(self, env: Env) -> None:
        """An empty index reports zeros but still counts devices."""
        stats = env.analyzer.dashboard_stats()

        assert stats.total_files == 0
        assert stats.total_locations == 0
        assert stats.total_devices == 4

    def test_sizes_counted_once_per_fingerprint(self, env: Env) -> None:
        """Sizes are summed per distinct content, not per copy."""
        env.add(HASH_A, "hot-1", "a", size=100)
        env.add(HASH_A, "cold-1", "a", size=100)
        env.add(HASH_B, "hot-1", "b", size=50)

        stats = env.analyzer.dashboard_stats()

        assert stats.total_files == 2
        assert stats.total_locations == 3
        assert stats.unsafe_files == 1
        assert stats.total_size_bytes == 150
