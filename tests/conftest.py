"""Shared fixtures: a tracker on a temporary database and two fake drives."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from backup_sentinel.core.devices import PathVolumeIdentity
from backup_sentinel.core.settings import Settings
from backup_sentinel.core.tracker import BackupTracker

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from backup_sentinel.core.scanner import ScanEvent


@pytest.fixture
def settings() -> Settings:
    """In-memory settings tuned for small test trees."""
    return Settings(None, hash_workers=2, progress_every=1)


@pytest.fixture
def tracker(tmp_path: Path, settings: Settings) -> Iterator[BackupTracker]:
    """Tracker backed by a database under tmp_path/state."""
    t = BackupTracker(settings, db_path=tmp_path / "state" / "sentinel.db", identity=PathVolumeIdentity())
    yield t
    t.close()


@pytest.fixture
def drive_a(tmp_path: Path, tracker: BackupTracker) -> Path:
    """Mount point of a hot device called DriveA."""
    mount = tmp_path / "DriveA"
    mount.mkdir()
    tracker.register_device(mount, device_id="drive-a", label="DriveA", device_type="hot")
    return mount.resolve()


@pytest.fixture
def drive_b(tmp_path: Path, tracker: BackupTracker) -> Path:
    """Mount point of a cold device called DriveB."""
    mount = tmp_path / "DriveB"
    mount.mkdir()
    tracker.register_device(mount, device_id="drive-b", label="DriveB", device_type="cold")
    return mount.resolve()


@pytest.fixture
def scan(tracker: BackupTracker) -> Callable[..., list[ScanEvent]]:
    """Run a scan to completion and return its events."""

    def _scan(target: Path, mode: str = "full") -> list[ScanEvent]:
        handle = tracker.start_scan(target, mode)
        events = list(handle.events(timeout=30))
        assert handle.wait(timeout=30)
        return events

    return _scan
