"""Device registry — known storage devices and their hot/cold role.

Devices are identified by volume identity (filesystem UUID), not by mount
path, because mount points are reused by different drives over time. How
the identity is looked up depends on the host, so it is delegated to a
``VolumeIdentityProvider``.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import psutil
from blake3 import blake3

from backup_sentinel.core.errors import NoDeviceFoundError, UnknownDeviceError
from backup_sentinel.core.models import Device, DeviceType, utc_now

if TYPE_CHECKING:
    import sqlite3

    from backup_sentinel.core.store import Database

logger = logging.getLogger(__name__)

# macOS system volumes that are never user storage
EXCLUDED_MOUNT_PREFIXES_DARWIN: tuple[str, ...] = (
    "/System", "/Library", "/private", "/dev", "/home", "/cores",
)
EXCLUDED_MOUNT_PATTERNS_DARWIN: tuple[str, ...] = (
    "Preboot", "Recovery", "VM", "Update", "xarts", "iSCPreboot", "Hardware",
)

# Linux pseudo and boot filesystems. /run/media holds udisks2 user mounts, so
# only the runtime directories below /run are listed.
EXCLUDED_MOUNT_PREFIXES_LINUX: tuple[str, ...] = (
    "/boot", "/snap", "/proc", "/sys", "/dev",
    "/run/user", "/run/lock", "/run/snapd", "/run/credentials", "/run/systemd", "/run/docker",
)
EXCLUDED_MOUNTS_LINUX: tuple[str, ...] = ("/run",)

_DISKUTIL_TIMEOUT = 10  # seconds


@dataclass(frozen=True)
class Volume:
    """A mounted volume as reported by the operating system."""

    device: str
    mount_point: str
    fstype: str = ""
    opts: str = ""


@dataclass(frozen=True)
class DetectionFailure:
    """A volume that could not be registered during detection."""

    mount_point: str
    message: str


@dataclass
class DetectionResult:
    """Outcome of a detection pass.

    Attributes:
        devices: Devices detected and upserted in this pass.
        failures: Volumes skipped because of an error.
    """

    devices: list[Device] = field(default_factory=list)
    failures: list[DetectionFailure] = field(default_factory=list)


class VolumeIdentityProvider(Protocol):
    """Host capability resolving stable identity and traits of a volume."""

    def volume_id(self, volume: Volume) -> str | None: ...

    def label(self, volume: Volume) -> str | None: ...

    def is_removable(self, volume: Volume) -> bool: ...


class PathVolumeIdentity:
    """Fallback identity derived from device node and mount point.

    Not stable across remounts; used only when the host offers nothing better.
    """

    def volume_id(self, volume: Volume) -> str | None:
        digest = blake3(f"{volume.device}|{volume.mount_point}".encode()).hexdigest()
        return f"path-{digest[:16]}"

    def label(self, volume: Volume) -> str | None:
        return None

    def is_removable(self, volume: Volume) -> bool:
        return "removable" in volume.opts.split(",")


class LinuxVolumeIdentity:
    """Identity from /dev/disk/by-uuid, labels from /dev/disk/by-label."""

    def __init__(self, disk_root: Path = Path("/dev/disk"), sys_block: Path = Path("/sys/class/block")) -> None:
        self._disk_root = disk_root
        self._sys_block = sys_block

    def _lookup(self, kind: str, device: str) -> str | None:
        directory = self._disk_root / kind
        if not device or not directory.is_dir():
            return None
        target = os.path.realpath(device)
        for link in directory.iterdir():
            if os.path.realpath(link) == target:
                return link.name
        return None

    def volume_id(self, volume: Volume) -> str | None:
        return self._lookup("by-uuid", volume.device)

    def label(self, volume: Volume) -> str | None:
        name = self._lookup("by-label", volume.device)
        # udev escapes spaces in label links
        return name.replace("\\x20", " ") if name else None

    def is_removable(self, volume: Volume) -> bool:
        if not volume.device:
            return False
        node = self._sys_block / Path(volume.device).name
        if not node.exists():
            return False
        resolved = node.resolve()
        # Partitions carry the flag on their parent disk
        for candidate in (resolved / "removable", resolved.parent / "removable"):
            if candidate.is_file():
                return candidate.read_text(encoding="utf-8").strip() == "1"
        return False


class MacVolumeIdentity:
    """Identity and label from ``diskutil info``."""

    def _info(self, mount_point: str) -> dict[str, str]:
        output = subprocess.run(
            ["diskutil", "info", mount_point],
            capture_output=True,
            text=True,
            timeout=_DISKUTIL_TIMEOUT,
            check=False,
        ).stdout
        info: dict[str, str] = {}
        for line in output.splitlines():
            key, sep, value = line.strip().partition(":")
            if sep:
                info[key.strip()] = value.strip()
        return info

    def volume_id(self, volume: Volume) -> str | None:
        info = self._info(volume.mount_point)
        return info.get("Volume UUID") or info.get("Disk / Partition UUID") or None

    def label(self, volume: Volume) -> str | None:
        return self._info(volume.mount_point).get("Volume Name") or None

    def is_removable(self, volume: Volume) -> bool:
        return volume.mount_point.startswith("/Volumes/")


def default_identity_provider() -> VolumeIdentityProvider:
    """Pick the identity provider for the current platform."""
    if sys.platform.startswith("linux"):
        return LinuxVolumeIdentity()
    if sys.platform == "darwin":
        return MacVolumeIdentity()
    return PathVolumeIdentity()


def is_excluded_mount(mount_point: str, platform: str = sys.platform) -> bool:
    """Check whether a mount point is a system volume to ignore."""
    if platform == "darwin":
        if any(mount_point.startswith(prefix) for prefix in EXCLUDED_MOUNT_PREFIXES_DARWIN):
            return True
        return any(pattern in mount_point for pattern in EXCLUDED_MOUNT_PATTERNS_DARWIN)
    if platform.startswith("linux"):
        if mount_point in EXCLUDED_MOUNTS_LINUX:
            return True
        return any(
            mount_point == prefix or mount_point.startswith(prefix + "/")
            for prefix in EXCLUDED_MOUNT_PREFIXES_LINUX
        )
    return False


def _row_to_device(row: sqlite3.Row) -> Device:
    return Device(
        id=row["id"],
        label=row["label"],
        mount_point=row["mount_point"],
        device_type=DeviceType(row["device_type"]),
        total_bytes=row["total_bytes"],
        available_bytes=row["available_bytes"],
        is_removable=bool(row["is_removable"]),
        first_seen=row["first_seen"],
        last_seen=row["last_seen"],
    )


def _default_label(mount_point: str) -> str:
    return Path(mount_point).name or "Unknown"


class DeviceRegistry:
    """Persistent registry of storage devices."""

    def __init__(self, db: Database, identity: VolumeIdentityProvider | None = None) -> None:
        """Initialize the registry.

        Args:
            db: Shared database.
            identity: Volume identity lookup; platform default when None.
        """
        self._db = db
        self._identity = identity if identity is not None else default_identity_provider()

    def _upsert(
        self,
        device_id: str,
        label: str,
        mount_point: str,
        total_bytes: int,
        available_bytes: int,
        is_removable: bool,
    ) -> None:
        now = utc_now()
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO devices
                    (id, label, mount_point, total_bytes, available_bytes, is_removable, first_seen, last_seen)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    label = excluded.label,
                    mount_point = excluded.mount_point,
                    total_bytes = excluded.total_bytes,
                    available_bytes = excluded.available_bytes,
                    is_removable = excluded.is_removable,
                    last_seen = excluded.last_seen
                """,
                (device_id, label, mount_point, total_bytes, available_bytes, int(is_removable), now, now),
            )

    def detect(self) -> DetectionResult:
        """Enumerate attached volumes and upsert them.

        A volume that fails (unreadable usage, missing identity) is reported
        in ``failures``; the other volumes are still registered.

        Returns:
            DetectionResult with the upserted devices and the failures.
        """
        result = DetectionResult()
        seen_mounts: set[str] = set()

        for part in psutil.disk_partitions(all=False):
            mount = part.mountpoint
            if is_excluded_mount(mount) or mount in seen_mounts:
                continue
            seen_mounts.add(mount)
            volume = Volume(device=part.device, mount_point=mount, fstype=part.fstype, opts=part.opts)

            try:
                device_id = self._identity.volume_id(volume)
                if not device_id:
                    result.failures.append(DetectionFailure(mount, "No stable volume identity"))
                    continue
                usage = psutil.disk_usage(mount)
                self._upsert(
                    device_id,
                    self._identity.label(volume) or _default_label(mount),
                    mount,
                    usage.total,
                    usage.free,
                    self._identity.is_removable(volume),
                )
            except (OSError, psutil.Error, subprocess.SubprocessError) as e:
                logger.warning(f"Failed to detect volume at {mount}: {e}")
                result.failures.append(DetectionFailure(mount, str(e)))
                continue

            device = self.get(device_id)
            if device is not None:
                result.devices.append(device)

        logger.info(f"Detected {len(result.devices)} device(s), {len(result.failures)} failure(s)")
        return result

    def register(
        self,
        mount_point: Path | str,
        *,
        device_id: str | None = None,
        label: str | None = None,
        device_type: DeviceType | str | None = None,
        is_removable: bool = False,
    ) -> Device:
        """Register a device by mount point (network shares, manual setup).

        Args:
            mount_point: Directory where the device is mounted.
            device_id: Known volume identity; asked of the identity provider
                (then derived from the path) when omitted.
            label: Display name; defaults to the mount directory name.
            device_type: Optional initial classification.
            is_removable: Whether the device is removable media.

        Returns:
            The stored Device.
        """
        mount = str(Path(mount_point).resolve())
        volume = Volume(device="", mount_point=mount)
        if device_id is None:
            device_id = self._identity.volume_id(volume) or PathVolumeIdentity().volume_id(volume)

        try:
            usage = psutil.disk_usage(mount)
            total, free = usage.total, usage.free
        except OSError as e:
            logger.warning(f"Could not read disk usage for {mount}: {e}")
            total, free = 0, 0

        self._upsert(device_id, label or _default_label(mount), mount, total, free, is_removable)
        if device_type is not None:
            self.set_device_type(device_id, device_type)

        device = self.get(device_id)
        if device is None:
            raise UnknownDeviceError(f"Device vanished while registering: {device_id}")
        return device

    def set_device_type(self, device_id: str, device_type: DeviceType | str) -> None:
        """Classify a device as hot, cold or unknown.

        Raises:
            ValueError: If the type is not a valid DeviceType.
            UnknownDeviceError: If the device is not registered.
        """
        kind = DeviceType(device_type)
        with self._db.transaction() as conn:
            cur = conn.execute("UPDATE devices SET device_type = ? WHERE id = ?", (kind.value, device_id))
        if cur.rowcount == 0:
            raise UnknownDeviceError(f"Device not registered: {device_id}")

    def touch(self, device_id: str) -> None:
        """Refresh last_seen of a device."""
        with self._db.transaction() as conn:
            conn.execute("UPDATE devices SET last_seen = ? WHERE id = ?", (utc_now(), device_id))

    def get(self, device_id: str) -> Device | None:
        """Return a device by id."""
        row = self._db.query_one("SELECT * FROM devices WHERE id = ?", (device_id,))
        return _row_to_device(row) if row is not None else None

    def list_devices(self) -> list[Device]:
        """All registered devices, most recently seen first."""
        rows = self._db.query("SELECT * FROM devices ORDER BY last_seen DESC, id")
        return [_row_to_device(row) for row in rows]

    def count(self) -> int:
        row = self._db.query_one("SELECT COUNT(*) AS n FROM devices")
        return row["n"] if row is not None else 0

    def resolve_device(self, path: Path | str) -> Device:
        """Find the device whose mount point is the longest prefix of a path.

        Prefixes match whole path components. When two devices share a
        mount point, the most recently seen one wins.

        Raises:
            NoDeviceFoundError: If no registered mount point contains the path.
        """
        target = Path(path).resolve()
        best: Device | None = None
        best_depth = -1

        for device in self.list_devices():
            mount = Path(device.mount_point)
            if not target.is_relative_to(mount):
                continue
            depth = len(mount.parts)
            if depth > best_depth:
                best, best_depth = device, depth

        if best is None:
            raise NoDeviceFoundError(f"No device found for path: {target}")
        return best


def relative_path(device: Device, path: Path) -> str:
    """Path of a file relative to its device mount point, POSIX style.

    The mount point itself maps to "".
    """
    rel = Path(path).relative_to(device.mount_point).as_posix()
    return "" if rel == "." else rel
