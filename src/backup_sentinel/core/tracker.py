"""Engine facade used by the presentation layer.

Wires the store, registry, index, scan engine and analyzer together and
exposes the request/response calls a UI needs.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from backup_sentinel.core.browse import browse_directory
from backup_sentinel.core.devices import DeviceRegistry
from backup_sentinel.core.index import LocationIndex
from backup_sentinel.core.models import ScanMode
from backup_sentinel.core.redundancy import RedundancyAnalyzer
from backup_sentinel.core.scanner import ScanEngine
from backup_sentinel.core.settings import Settings
from backup_sentinel.core.store import Database

if TYPE_CHECKING:
    from backup_sentinel.core.devices import DetectionFailure, VolumeIdentityProvider
    from backup_sentinel.core.models import (
        DashboardStats,
        Device,
        DeviceType,
        DirEntry,
        FileLocation,
        FileSafety,
        ScanRun,
        WasteCandidate,
    )
    from backup_sentinel.core.scanner import ScanHandle

logger = logging.getLogger(__name__)


class BackupTracker:
    """Entry point of the engine.

    Example:
        tracker = BackupTracker()
        tracker.detect_devices()
        handle = tracker.start_scan("/Volumes/Archive", "full")
        for event in handle.events():
            print(event.to_dict())
        print(tracker.dashboard_stats())
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db_path: Path | str | None = None,
        identity: VolumeIdentityProvider | None = None,
    ) -> None:
        """Open the tracker.

        Args:
            settings: Engine settings; loaded from the user's settings file when None.
            db_path: Database file; ``database_path`` setting when None.
            identity: Volume identity provider; platform default when None.
        """
        self.settings = settings if settings is not None else Settings()
        self.db = Database(Path(db_path or self.settings.get("database_path")).expanduser())
        self.registry = DeviceRegistry(self.db, identity)
        self.index = LocationIndex(self.db)
        self.analyzer = RedundancyAnalyzer(
            self.db,
            self.index,
            require_full_verification=self.settings.get("require_full_verification"),
        )
        self.engine = ScanEngine(self.db, self.registry, self.index, self.settings)
        self.last_detection_failures: list[DetectionFailure] = []
        self._devices_cache: list[Device] | None = None
        # Scan that was running when the cache was filled; it refreshes last_seen when it ends
        self._cached_during: ScanHandle | None = None

    # Devices

    def detect_devices(self) -> list[Device]:
        """Detect attached devices and return every known device.

        Per-volume failures are logged and kept in ``last_detection_failures``.
        """
        result = self.registry.detect()
        self.last_detection_failures = result.failures
        for failure in result.failures:
            logger.warning(f"Device detection failed for {failure.mount_point}: {failure.message}")
        self._devices_cache = None
        return self.list_devices()

    def list_devices(self) -> list[Device]:
        """Known devices (cached until the registry changes or a scan ends)."""
        if self._cached_during is not None and self._cached_during.wait(timeout=0):
            self._devices_cache = None
        if self._devices_cache is None:
            self._devices_cache = self.registry.list_devices()
            handle = self.engine.current
            self._cached_during = handle if handle is not None and not handle.wait(timeout=0) else None
        return list(self._devices_cache)

    def register_device(
        self,
        mount_point: Path | str,
        *,
        device_id: str | None = None,
        label: str | None = None,
        device_type: DeviceType | str | None = None,
        is_removable: bool = False,
    ) -> Device:
        """Register a device by hand (network shares, external tooling)."""
        device = self.registry.register(
            mount_point,
            device_id=device_id,
            label=label,
            device_type=device_type,
            is_removable=is_removable,
        )
        self._devices_cache = None
        return device

    def set_device_type(self, device_id: str, device_type: DeviceType | str) -> None:
        """Classify a device as hot, cold or unknown."""
        self.registry.set_device_type(device_id, device_type)
        self._devices_cache = None

    # Scanning

    def start_scan(self, target: Path | str, mode: ScanMode | str = ScanMode.FULL) -> ScanHandle:
        """Start a background scan; see ``ScanEngine.start``."""
        handle = self.engine.start(target, mode)
        # The scan refreshes the device's last_seen
        self._devices_cache = None
        return handle

    def cancel_scan(self) -> None:
        """Cancel the running scan; no-op when idle."""
        self.engine.cancel()

    def scan_history(self, limit: int = 20) -> list[ScanRun]:
        return self.engine.journal.history(limit)

    # Queries

    def files_on_device(self, device_id: str) -> list[FileLocation]:
        return self.index.by_device(device_id)

    def file_locations(self, content_hash: str) -> list[FileLocation]:
        return self.index.by_hash(content_hash)

    def file_safety(self, content_hash: str) -> FileSafety | None:
        return self.analyzer.safety_of(content_hash)

    def unsafe_files(self) -> list[FileSafety]:
        return self.analyzer.unsafe_files()

    def waste_candidates(self, threshold: int | None = None) -> list[WasteCandidate]:
        return self.analyzer.waste_candidates(threshold)

    def dashboard_stats(self) -> DashboardStats:
        return self.analyzer.dashboard_stats()

    def browse_directory(self, path: Path | str) -> list[DirEntry]:
        return browse_directory(path)

    # Lifecycle

    def close(self) -> None:
        """Cancel any running scan and close the database."""
        handle = self.engine.current
        if handle is not None and not handle.wait(timeout=0):
            handle.cancel()
            handle.drain(timeout=30)
        self.db.close()

    def __enter__(self) -> BackupTracker:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
