"""Domain records shared by the registry, index, scanner and analyzer.

All records are plain dataclasses. The presentation layer receives them
through ``to_dict()`` so it never has to know about enums or paths.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string (sortable)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def timestamp_to_iso(timestamp: float) -> str:
    """Convert a POSIX timestamp to the same ISO-8601 UTC format."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat(timespec="microseconds")


class DeviceType(str, Enum):
    """Role of a storage device in the backup strategy."""

    HOT = "hot"
    COLD = "cold"
    UNKNOWN = "unknown"


class ScanMode(str, Enum):
    """What the content fingerprint covers."""

    QUICK = "quick"
    FULL = "full"


@dataclass
class Device:
    """A storage device known to the registry.

    Attributes:
        id: Stable volume identity (survives remounts).
        label: Human readable volume name.
        mount_point: Where the volume was last seen mounted.
        device_type: hot, cold or unknown.
        total_bytes: Capacity at last detection.
        available_bytes: Free space at last detection.
        is_removable: True for USB/external media.
        first_seen: When the device was first registered.
        last_seen: Last detection or scan touching the device.
    """

    id: str
    label: str
    mount_point: str
    device_type: DeviceType = DeviceType.UNKNOWN
    total_bytes: int = 0
    available_bytes: int = 0
    is_removable: bool = False
    first_seen: str = ""
    last_seen: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["device_type"] = self.device_type.value
        return data


@dataclass(frozen=True)
class FileLocation:
    """One observed copy of some content at a path on a device.

    ``file_path`` is relative to the device mount point, with POSIX
    separators. ``id`` is None until the row has been stored.
    """

    content_hash: str
    device_id: str
    file_path: str
    file_name: str
    file_size: int
    modified_at: str | None
    last_verified: str
    scan_mode: ScanMode
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["scan_mode"] = self.scan_mode.value
        return data


@dataclass
class FileSafety:
    """Redundancy classification of one content fingerprint.

    Attributes:
        content_hash: The fingerprint.
        file_size: Size of the content in bytes.
        representative_name: File name of the first location in path order.
        total_copies: Number of locations holding the content.
        hot_copies: Locations on hot devices.
        cold_copies: Locations on cold devices.
        full_copies: Locations fingerprinted in full mode.
        is_safe: At least one cold copy and at least two copies overall.
        locations: All locations, ordered by (file_path, device_id).
    """

    content_hash: str
    file_size: int
    representative_name: str
    total_copies: int
    hot_copies: int
    cold_copies: int
    full_copies: int
    is_safe: bool
    locations: list[FileLocation] = field(default_factory=list)

    @property
    def unknown_copies(self) -> int:
        """Locations on devices that are neither hot nor cold."""
        return self.total_copies - self.hot_copies - self.cold_copies

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["locations"] = [loc.to_dict() for loc in self.locations]
        return data


@dataclass(frozen=True)
class WasteCandidate:
    """Content stored more than once."""

    content_hash: str
    file_size: int
    representative_name: str
    total_copies: int
    wasted_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DashboardStats:
    """Global index figures."""

    total_files: int
    total_locations: int
    unsafe_files: int
    total_devices: int
    total_size_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DirEntry:
    """One entry of a directory listing."""

    name: str
    is_dir: bool
    size: int
    modified: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ScanRun:
    """Journal entry for one scan."""

    id: int
    target: str
    device_id: str
    scan_mode: ScanMode
    state: str
    started_at: str
    finished_at: str | None
    scanned: int
    hashed: int
    added: int
    removed: int

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["scan_mode"] = self.scan_mode.value
        return data
