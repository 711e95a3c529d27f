"""Core engine for Backup Sentinel."""

from backup_sentinel.core.browse import browse_directory
from backup_sentinel.core.devices import (
    DetectionFailure,
    DetectionResult,
    DeviceRegistry,
    LinuxVolumeIdentity,
    MacVolumeIdentity,
    PathVolumeIdentity,
    Volume,
    VolumeIdentityProvider,
    default_identity_provider,
)
from backup_sentinel.core.errors import (
    IndexWriteError,
    NoDeviceFoundError,
    ScanAlreadyRunningError,
    SentinelError,
    TargetUnreadableError,
    UnknownDeviceError,
)
from backup_sentinel.core.hasher import hash_file, hash_full, hash_quick, hash_stream
from backup_sentinel.core.index import LocationIndex
from backup_sentinel.core.models import (
    DashboardStats,
    Device,
    DeviceType,
    DirEntry,
    FileLocation,
    FileSafety,
    ScanMode,
    ScanRun,
    WasteCandidate,
)
from backup_sentinel.core.redundancy import RedundancyAnalyzer, is_safe
from backup_sentinel.core.scanner import (
    FileHashed,
    ScanCancelled,
    ScanEngine,
    ScanError,
    ScanEvent,
    ScanFailed,
    ScanFinished,
    ScanHandle,
    ScanProgress,
    ScanStarted,
    ScanState,
    ScanSummary,
)
from backup_sentinel.core.settings import Settings
from backup_sentinel.core.store import Database
from backup_sentinel.core.tracker import BackupTracker

__all__ = [
    # browse
    "browse_directory",
    # devices
    "DetectionFailure",
    "DetectionResult",
    "DeviceRegistry",
    "LinuxVolumeIdentity",
    "MacVolumeIdentity",
    "PathVolumeIdentity",
    "Volume",
    "VolumeIdentityProvider",
    "default_identity_provider",
    # errors
    "IndexWriteError",
    "NoDeviceFoundError",
    "ScanAlreadyRunningError",
    "SentinelError",
    "TargetUnreadableError",
    "UnknownDeviceError",
    # hasher
    "hash_file",
    "hash_full",
    "hash_quick",
    "hash_stream",
    # index
    "LocationIndex",
    # models
    "DashboardStats",
    "Device",
    "DeviceType",
    "DirEntry",
    "FileLocation",
    "FileSafety",
    "ScanMode",
    "ScanRun",
    "WasteCandidate",
    # redundancy
    "RedundancyAnalyzer",
    "is_safe",
    # scanner
    "FileHashed",
    "ScanCancelled",
    "ScanEngine",
    "ScanError",
    "ScanEvent",
    "ScanFailed",
    "ScanFinished",
    "ScanHandle",
    "ScanProgress",
    "ScanStarted",
    "ScanState",
    "ScanSummary",
    # settings
    "Settings",
    # store
    "Database",
    # tracker
    "BackupTracker",
]
