"""Tests for core/devices.py — device registry and volume identity."""

from __future__ import annotations

import os
from pathlib import Path
from types import SimpleNamespace
from typing import TYPE_CHECKING

import psutil
import pytest

from backup_sentinel.core.devices import (
    DeviceRegistry,
    LinuxVolumeIdentity,
    PathVolumeIdentity,
    Volume,
    is_excluded_mount,
    relative_path,
)
from backup_sentinel.core.errors import NoDeviceFoundError, UnknownDeviceError
from backup_sentinel.core.models import DeviceType
from backup_sentinel.core.store import Database

if TYPE_CHECKING:
    from collections.abc import Iterator


class FakeIdentity:
    """Identity provider backed by a dict of mount point -> volume id."""

    def __init__(self, ids: dict[str, str | None], removable: set[str] | None = None) -> None:
        self.ids = ids
        self.removable = removable or set()

    def volume_id(self, volume: Volume) -> str | None:
        return self.ids.get(volume.mount_point)

    def label(self, volume: Volume) -> str | None:
        return f"Label of {volume.mount_point}"

    def is_removable(self, volume: Volume) -> bool:
        return volume.mount_point in self.removable


@pytest.fixture
def db(tmp_path: Path) -> Iterator[Database]:
    database = Database(tmp_path / "devices.db")
    yield database
    database.close()


@pytest.fixture
def registry(db: Database) -> DeviceRegistry:
    return DeviceRegistry(db, PathVolumeIdentity())


def fake_partitions(*mounts: str) -> list[SimpleNamespace]:
    return [
        SimpleNamespace(device=f"/dev/fake{i}", mountpoint=mount, fstype="ext4", opts="rw")
        for i, mount in enumerate(mounts)
    ]


class TestRegister:
    """Tests for manual registration."""

    def test_register_defaults(self, registry: DeviceRegistry, tmp_path: Path) -> None:
        """A new device should start as unknown, labelled by its directory."""
        mount = tmp_path / "Archive"
        mount.mkdir()

        device = registry.register(mount)

        assert device.device_type is DeviceType.UNKNOWN
        assert device.label == "Archive"
        assert device.mount_point == str(mount.resolve())
        assert device.id.startswith("path-")
        assert device.first_seen == device.last_seen

    def test_register_is_upsert(self, registry: DeviceRegistry, tmp_path: Path) -> None:
        """Registering the same id twice should keep one device and its type."""
        mount = tmp_path / "Archive"
        mount.mkdir()
        registry.register(mount, device_id="vol-1", device_type="cold")

        device = registry.register(mount, device_id="vol-1", label="Renamed")

        assert registry.count() == 1
        assert device.label == "Renamed"
        assert device.device_type is DeviceType.COLD

    def test_register_missing_mount(self, registry: DeviceRegistry, tmp_path: Path) -> None:
        """An unreachable mount should register with zero sizes."""
        device = registry.register(tmp_path / "offline", device_id="vol-x")

        assert device.total_bytes == 0
        assert device.available_bytes == 0


class TestDeviceType:
    """Tests for set_device_type."""

    def test_set_type(self, registry: DeviceRegistry, tmp_path: Path) -> None:
        """The new type should be stored."""
        registry.register(tmp_path, device_id="vol-1")

        registry.set_device_type("vol-1", DeviceType.HOT)

        device = registry.get("vol-1")
        assert device is not None
        assert device.device_type is DeviceType.HOT

    def test_unknown_device(self, registry: DeviceRegistry) -> None:
        """Classifying an unregistered id should raise."""
        with pytest.raises(UnknownDeviceError):
            registry.set_device_type("ghost", "cold")

    def test_invalid_type(self, registry: DeviceRegistry, tmp_path: Path) -> None:
        """Types outside hot/cold/unknown should be rejected."""
        registry.register(tmp_path, device_id="vol-1")

        with pytest.raises(ValueError):
            registry.set_device_type("vol-1", "lukewarm")


class TestResolveDevice:
    """Tests for mapping paths to devices."""

    def test_longest_prefix_wins(self, registry: DeviceRegistry, tmp_path: Path) -> None:
        """A nested mount should win over its parent."""
        inner = tmp_path / "outer" / "inner"
        inner.mkdir(parents=True)
        registry.register(tmp_path / "outer", device_id="outer")
        registry.register(inner, device_id="inner")

        assert registry.resolve_device(inner / "file.txt").id == "inner"
        assert registry.resolve_device(tmp_path / "outer" / "other.txt").id == "outer"

    def test_component_boundary(self, registry: DeviceRegistry, tmp_path: Path) -> None:
        """/x/Drive must not match /x/Drive2."""
        (tmp_path / "Drive").mkdir()
        (tmp_path / "Drive2").mkdir()
        registry.register(tmp_path / "Drive", device_id="drive")

        with pytest.raises(NoDeviceFoundError):
            registry.resolve_device(tmp_path / "Drive2" / "a.txt")

    def test_tie_goes_to_most_recent(self, registry: DeviceRegistry, tmp_path: Path) -> None:
        """Two devices on one mount: the last seen wins."""
        registry.register(tmp_path, device_id="old")
        registry.register(tmp_path, device_id="new")
        registry.touch("new")

        assert registry.resolve_device(tmp_path / "a.txt").id == "new"

    def test_relative_path(self, registry: DeviceRegistry, tmp_path: Path) -> None:
        """Paths should be stored relative to the mount, POSIX style."""
        device = registry.register(tmp_path, device_id="vol-1")
        root = Path(device.mount_point)

        assert relative_path(device, root / "a" / "b.txt") == "a/b.txt"
        assert relative_path(device, root) == ""


class TestDetect:
    """Tests for detection through psutil."""

    def test_detect_upserts_and_reports_failures(
        self, db: Database, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Good volumes are stored; bad ones are reported without aborting."""
        monkeypatch.setattr(
            psutil,
            "disk_partitions",
            lambda all=False: fake_partitions("/media/usb", "/media/noid", "/media/broken", "/media/usb"),
        )

        def fake_usage(path: str) -> SimpleNamespace:
            if path == "/media/broken":
                raise PermissionError("denied")
            return SimpleNamespace(total=1000, used=400, free=600, percent=40.0)

        monkeypatch.setattr(psutil, "disk_usage", fake_usage)
        identity = FakeIdentity(
            {"/media/usb": "uuid-usb", "/media/noid": None, "/media/broken": "uuid-broken"},
            removable={"/media/usb"},
        )
        registry = DeviceRegistry(db, identity)

        result = registry.detect()

        assert [d.id for d in result.devices] == ["uuid-usb"]
        device = result.devices[0]
        assert device.label == "Label of /media/usb"
        assert device.total_bytes == 1000
        assert device.available_bytes == 600
        assert device.is_removable is True
        assert {f.mount_point for f in result.failures} == {"/media/noid", "/media/broken"}
        assert registry.count() == 1

    def test_detect_keeps_type(self, db: Database, monkeypatch: pytest.MonkeyPatch) -> None:
        """Re-detection must not reset a user's hot/cold choice."""
        monkeypatch.setattr(psutil, "disk_partitions", lambda all=False: fake_partitions("/media/usb"))
        monkeypatch.setattr(
            psutil, "disk_usage", lambda path: SimpleNamespace(total=10, used=0, free=10, percent=0.0)
        )
        registry = DeviceRegistry(db, FakeIdentity({"/media/usb": "uuid-usb"}))
        registry.detect()
        registry.set_device_type("uuid-usb", "cold")

        result = registry.detect()

        assert result.devices[0].device_type is DeviceType.COLD


class TestIdentityProviders:
    """Tests for the host identity lookups."""

    def test_path_identity_stable(self) -> None:
        """The fallback id depends only on device node and mount point."""
        identity = PathVolumeIdentity()
        volume = Volume(device="/dev/sdb1", mount_point="/media/a")

        assert identity.volume_id(volume) == identity.volume_id(Volume("/dev/sdb1", "/media/a"))
        assert identity.volume_id(volume) != identity.volume_id(Volume("/dev/sdb1", "/media/b"))
        assert identity.is_removable(Volume("/dev/sdb1", "/media/a", opts="rw,removable"))

    def test_linux_identity(self, tmp_path: Path) -> None:
        """UUID, label and removable flag come from the udev and sysfs trees."""
        node = tmp_path / "dev" / "sdb1"
        node.parent.mkdir()
        node.write_bytes(b"")
        by_uuid = tmp_path / "disk" / "by-uuid"
        by_label = tmp_path / "disk" / "by-label"
        by_uuid.mkdir(parents=True)
        by_label.mkdir()
        os.symlink(node, by_uuid / "1234-ABCD")
        os.symlink(node, by_label / "My\\x20Backup")

        sys_disk = tmp_path / "sys" / "devices" / "sdb"
        (sys_disk / "sdb1").mkdir(parents=True)
        (sys_disk / "removable").write_text("1\n", encoding="utf-8")
        sys_block = tmp_path / "sys" / "class" / "block"
        sys_block.mkdir(parents=True)
        os.symlink(sys_disk / "sdb1", sys_block / "sdb1")

        identity = LinuxVolumeIdentity(disk_root=tmp_path / "disk", sys_block=sys_block)
        volume = Volume(device=str(node), mount_point="/media/backup")

        assert identity.volume_id(volume) == "1234-ABCD"
        assert identity.label(volume) == "My Backup"
        assert identity.is_removable(volume) is True

    def test_linux_identity_unknown_device(self, tmp_path: Path) -> None:
        """Devices absent from the trees have no identity."""
        identity = LinuxVolumeIdentity(disk_root=tmp_path / "disk", sys_block=tmp_path / "block")
        volume = Volume(device="/dev/nothing", mount_point="/mnt")

        assert identity.volume_id(volume) is None
        assert identity.label(volume) is None
        assert identity.is_removable(volume) is False


class TestExcludedMounts:
    """Tests for system volume filtering."""

    @pytest.mark.parametrize(
        ("mount", "platform", "expected"),
        [
            ("/System/Volumes/Data", "darwin", True),
            ("/Volumes/Recovery", "darwin", True),
            ("/Volumes/Archive", "darwin", False),
            ("/boot/efi", "linux", True),
            ("/run/user/1000", "linux", True),
            ("/run", "linux", True),
            ("/run/media/alice/Backup", "linux", False),
            ("/bootstrap", "linux", False),
            ("/media/usb", "linux", False),
            ("C:\\", "win32", False),
        ],
    )
    def test_is_excluded_mount(self, mount: str, platform: str, expected: bool) -> None:
        """System and boot volumes should be ignored per platform."""
        assert is_excluded_mount(mount, platform) is expected
