"""Engine settings — JSON-based local configuration merged over defaults.

Usage:
    from backup_sentinel.core.settings import Settings

    settings = Settings()
    if settings.get("reconcile_removed"):
        # Delete index rows for files that vanished
        ...
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_SETTINGS_DIR = Path.home() / ".backup-sentinel"
_SETTINGS_FILE = _SETTINGS_DIR / "settings.json"

# A saved value only overrides a default of the same type
_DEFAULT_SETTINGS: dict[str, Any] = {
    # Storage
    "database_path": str(_SETTINGS_DIR / "sentinel.db"),
    # Hashing
    "hash_chunk_bytes": 1024 * 1024,
    "quick_sample_bytes": 64 * 1024,
    "hash_workers": 4,
    # Scan events
    "progress_every": 50,
    "event_queue_size": 256,
    # Policies
    "reconcile_removed": False,
    "require_full_verification": False,
    "skip_hidden": False,
}


class Settings:
    """Manages engine settings with JSON persistence.

    Passing ``settings_file=None`` gives an in-memory instance that never
    touches disk, which is what tests use.
    """

    def __init__(self, settings_file: Path | None = _SETTINGS_FILE, **overrides: Any) -> None:
        self._settings_file = settings_file
        self._values: dict[str, Any] = dict(_DEFAULT_SETTINGS)
        self._load()
        for key, value in overrides.items():
            self._apply(key, value)

    def _load(self) -> None:
        """Load settings from disk, merging with defaults."""
        if self._settings_file is None or not self._settings_file.exists():
            return
        try:
            with open(self._settings_file, encoding="utf-8") as f:
                saved: dict[str, Any] = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable settings file {self._settings_file}: {e}")
            return
        if not isinstance(saved, dict):
            return
        for key, value in saved.items():
            if key in self._values and _same_type(value, self._values[key]):
                self._values[key] = value

    def _save(self) -> None:
        """Persist current settings to disk."""
        if self._settings_file is None:
            return
        self._settings_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self._settings_file, "w", encoding="utf-8") as f:
            json.dump(self._values, f, indent=2)

    def _apply(self, key: str, value: Any) -> None:
        if key not in _DEFAULT_SETTINGS:
            raise KeyError(f"Unknown setting: {key}")
        if not _same_type(value, _DEFAULT_SETTINGS[key]):
            raise TypeError(
                f"Setting {key} expects {type(_DEFAULT_SETTINGS[key]).__name__}, "
                f"got {type(value).__name__}"
            )
        self._values[key] = value

    def get(self, key: str) -> Any:
        """Return the current value of a setting."""
        return self._values[key]

    def set(self, key: str, value: Any) -> None:
        """Change a setting and persist it."""
        self._apply(key, value)
        self._save()

    def all_settings(self) -> dict[str, Any]:
        """Return a copy of all settings."""
        return dict(self._values)

    def reset(self) -> None:
        """Reset all settings to defaults."""
        self._values = dict(_DEFAULT_SETTINGS)
        self._save()


def _same_type(value: Any, default: Any) -> bool:
    # bool is a subclass of int; keep them apart
    if isinstance(default, bool) or isinstance(value, bool):
        return isinstance(value, bool) and isinstance(default, bool)
    return isinstance(value, type(default))
