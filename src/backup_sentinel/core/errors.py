"""Exceptions raised across the engine boundary.

Per-file problems during a scan are never raised: they travel in the event
stream as ``ScanError`` events.
"""

from __future__ import annotations


class SentinelError(Exception):
    """Base exception for engine errors."""


class NoDeviceFoundError(SentinelError):
    """Raised when a path is not under any registered device."""


class UnknownDeviceError(SentinelError):
    """Raised when a device id is not registered."""


class ScanAlreadyRunningError(SentinelError):
    """Raised when a scan is started while another one is active."""


class TargetUnreadableError(SentinelError):
    """Raised when the scan target cannot be opened."""


class IndexWriteError(SentinelError):
    """Raised when the location index cannot persist a change."""
