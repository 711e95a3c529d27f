"""Location index — where every piece of content has been seen.

Maps content fingerprints to the (device, path) locations holding them.
Rows are keyed by (device_id, file_path): observing a path again updates its
row instead of adding one.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from backup_sentinel.core.models import FileLocation, ScanMode

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Iterable

    from backup_sentinel.core.store import Database

logger = logging.getLogger(__name__)

_UPSERT_SQL = """
INSERT INTO file_locations
    (content_hash, device_id, file_path, file_name, file_size, modified_at, last_verified, scan_mode)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (device_id, file_path) DO UPDATE SET
    content_hash = excluded.content_hash,
    file_name = excluded.file_name,
    file_size = excluded.file_size,
    modified_at = excluded.modified_at,
    last_verified = excluded.last_verified,
    scan_mode = excluded.scan_mode
"""

# SQLite's default limit on bound parameters is 999 on older builds
_DELETE_CHUNK = 500


def row_to_location(row: sqlite3.Row) -> FileLocation:
    """Build a FileLocation from a file_locations row."""
    return FileLocation(
        id=row["id"],
        content_hash=row["content_hash"],
        device_id=row["device_id"],
        file_path=row["file_path"],
        file_name=row["file_name"],
        file_size=row["file_size"],
        modified_at=row["modified_at"],
        last_verified=row["last_verified"],
        scan_mode=ScanMode(row["scan_mode"]),
    )


class LocationIndex:
    """Durable mapping from content fingerprint to file locations."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def upsert(self, location: FileLocation) -> bool:
        """Insert or update the row for (device_id, file_path).

        Args:
            location: The observed location; its ``id`` is ignored.

        Returns:
            True if a new row was created, False if an existing row was updated.

        Raises:
            IndexWriteError: If the write fails.
        """
        with self._db.transaction() as conn:
            existing = conn.execute(
                "SELECT id FROM file_locations WHERE device_id = ? AND file_path = ?",
                (location.device_id, location.file_path),
            ).fetchone()
            conn.execute(
                _UPSERT_SQL,
                (
                    location.content_hash,
                    location.device_id,
                    location.file_path,
                    location.file_name,
                    location.file_size,
                    location.modified_at,
                    location.last_verified,
                    location.scan_mode.value,
                ),
            )
        return existing is None

    def touch(self, device_id: str, file_path: str, verified_at: str) -> bool:
        """Advance last_verified of an unchanged location.

        Returns:
            True if the location exists.
        """
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE file_locations SET last_verified = ? WHERE device_id = ? AND file_path = ?",
                (verified_at, device_id, file_path),
            )
        return cur.rowcount > 0

    def get(self, device_id: str, file_path: str) -> FileLocation | None:
        """Return the location stored for a path on a device."""
        row = self._db.query_one(
            "SELECT * FROM file_locations WHERE device_id = ? AND file_path = ?",
            (device_id, file_path),
        )
        return row_to_location(row) if row is not None else None

    def by_hash(self, content_hash: str) -> list[FileLocation]:
        """All locations holding the given content, in path order."""
        rows = self._db.query(
            "SELECT * FROM file_locations WHERE content_hash = ? ORDER BY file_path, device_id",
            (content_hash,),
        )
        return [row_to_location(row) for row in rows]

    def by_device(self, device_id: str) -> list[FileLocation]:
        """All locations on a device, in path order."""
        rows = self._db.query(
            "SELECT * FROM file_locations WHERE device_id = ? ORDER BY file_path",
            (device_id,),
        )
        return [row_to_location(row) for row in rows]

    def paths_under(self, device_id: str, prefix: str) -> set[str]:
        """Indexed paths on a device at or below a relative directory.

        Args:
            device_id: Device to look at.
            prefix: Relative path of the directory (or file); "" means the
                whole device.
        """
        if not prefix:
            rows = self._db.query(
                "SELECT file_path FROM file_locations WHERE device_id = ?",
                (device_id,),
            )
        else:
            directory = prefix.rstrip("/") + "/"
            rows = self._db.query(
                "SELECT file_path FROM file_locations WHERE device_id = ? "
                "AND (file_path = ? OR substr(file_path, 1, ?) = ?)",
                (device_id, prefix, len(directory), directory),
            )
        return {row["file_path"] for row in rows}

    def remove(self, device_id: str, file_paths: Iterable[str]) -> int:
        """Delete locations by path.

        Returns:
            Number of rows deleted.
        """
        paths = list(file_paths)
        deleted = 0
        with self._db.transaction() as conn:
            for start in range(0, len(paths), _DELETE_CHUNK):
                chunk = paths[start:start + _DELETE_CHUNK]
                placeholders = ",".join("?" for _ in chunk)
                cur = conn.execute(
                    f"DELETE FROM file_locations WHERE device_id = ? AND file_path IN ({placeholders})",
                    (device_id, *chunk),
                )
                deleted += cur.rowcount
        logger.debug(f"Removed {deleted} stale location(s) from device {device_id}")
        return deleted

    def count(self) -> int:
        """Total number of stored locations."""
        row = self._db.query_one("SELECT COUNT(*) AS n FROM file_locations")
        return row["n"] if row is not None else 0
