"""Redundancy analysis over the location index.

A redundancy group is every location sharing a content fingerprint. Content
is safe when at least one copy sits on a cold device and there are at least
two copies in total: duplication across working drives alone does not
protect against one failure taking out every copy.

Waste is every copy beyond the first: file_size * (total_copies - 1).

Nothing here is cached; every figure is computed from the committed state
of the index when asked, so it reflects the latest upsert.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from backup_sentinel.core.models import DashboardStats, FileSafety, WasteCandidate

if TYPE_CHECKING:
    import sqlite3

    from backup_sentinel.core.index import LocationIndex
    from backup_sentinel.core.store import Database

logger = logging.getLogger(__name__)

# One row per content hash. The representative is the location with the
# smallest (file_path, device_id); unknown or missing devices count as
# neither hot nor cold.
_GROUPS_SQL = """
SELECT
    fl.content_hash AS content_hash,
    COUNT(*) AS total_copies,
    COALESCE(SUM(CASE WHEN d.device_type = 'hot' THEN 1 ELSE 0 END), 0) AS hot_copies,
    COALESCE(SUM(CASE WHEN d.device_type = 'cold' THEN 1 ELSE 0 END), 0) AS cold_copies,
    COALESCE(SUM(CASE WHEN fl.scan_mode = 'full' THEN 1 ELSE 0 END), 0) AS full_copies,
    MAX(fl.file_size) AS file_size,
    (
        SELECT r.file_name FROM file_locations r
        WHERE r.content_hash = fl.content_hash
        ORDER BY r.file_path, r.device_id
        LIMIT 1
    ) AS representative_name
FROM file_locations fl
LEFT JOIN devices d ON d.id = fl.device_id
{where}
GROUP BY fl.content_hash
"""


@dataclass(frozen=True)
class GroupSummary:
    """Aggregate counts of one redundancy group."""

    content_hash: str
    file_size: int
    representative_name: str
    total_copies: int
    hot_copies: int
    cold_copies: int
    full_copies: int

    @property
    def wasted_bytes(self) -> int:
        return self.file_size * max(self.total_copies - 1, 0)


def is_safe(total_copies: int, cold_copies: int, full_copies: int | None = None, *, require_full: bool = False) -> bool:
    """Apply the safety rule to a group's counts.

    Args:
        total_copies: Locations holding the content.
        cold_copies: Locations on cold devices.
        full_copies: Locations fingerprinted in full mode.
        require_full: Also demand that every location was fully hashed.
    """
    if cold_copies < 1 or total_copies < 2:
        return False
    if require_full:
        return full_copies is not None and full_copies == total_copies
    return True


def _row_to_summary(row: sqlite3.Row) -> GroupSummary:
    return GroupSummary(
        content_hash=row["content_hash"],
        file_size=row["file_size"],
        representative_name=row["representative_name"],
        total_copies=row["total_copies"],
        hot_copies=row["hot_copies"],
        cold_copies=row["cold_copies"],
        full_copies=row["full_copies"],
    )


class RedundancyAnalyzer:
    """Computes safety and waste figures from the index and device roles."""

    def __init__(self, db: Database, index: LocationIndex, *, require_full_verification: bool = False) -> None:
        """Initialize the analyzer.

        Args:
            db: Shared database.
            index: Location index (used to load group members).
            require_full_verification: When True, content only counts as safe
                if every copy was fingerprinted in full mode.
        """
        self._db = db
        self._index = index
        self.require_full_verification = require_full_verification

    def _groups(self, content_hash: str | None = None) -> list[GroupSummary]:
        if content_hash is None:
            rows = self._db.query(_GROUPS_SQL.format(where=""))
        else:
            rows = self._db.query(_GROUPS_SQL.format(where="WHERE fl.content_hash = ?"), (content_hash,))
        return [_row_to_summary(row) for row in rows]

    def _is_safe(self, group: GroupSummary) -> bool:
        return is_safe(
            group.total_copies,
            group.cold_copies,
            group.full_copies,
            require_full=self.require_full_verification,
        )

    def _to_safety(self, group: GroupSummary) -> FileSafety:
        return FileSafety(
            content_hash=group.content_hash,
            file_size=group.file_size,
            representative_name=group.representative_name,
            total_copies=group.total_copies,
            hot_copies=group.hot_copies,
            cold_copies=group.cold_copies,
            full_copies=group.full_copies,
            is_safe=self._is_safe(group),
            locations=self._index.by_hash(group.content_hash),
        )

    def safety_of(self, content_hash: str) -> FileSafety | None:
        """Classify one fingerprint.

        Returns:
            FileSafety, or None if the fingerprint has no location.
        """
        groups = self._groups(content_hash)
        if not groups:
            return None
        return self._to_safety(groups[0])

    def unsafe_files(self) -> list[FileSafety]:
        """All fingerprints that are not safe, largest first."""
        unsafe = [group for group in self._groups() if not self._is_safe(group)]
        unsafe.sort(key=lambda g: (-g.file_size, g.content_hash))
        return [self._to_safety(group) for group in unsafe]

    def waste_candidates(self, threshold_bytes: int | None = None) -> list[WasteCandidate]:
        """Fingerprints stored more than once.

        Args:
            threshold_bytes: Only keep groups wasting at least this many bytes.

        Returns:
            Candidates ordered by wasted bytes (desc), then hash (asc).
        """
        candidates = [
            WasteCandidate(
                content_hash=group.content_hash,
                file_size=group.file_size,
                representative_name=group.representative_name,
                total_copies=group.total_copies,
                wasted_bytes=group.wasted_bytes,
            )
            for group in self._groups()
            if group.total_copies >= 2
        ]
        if threshold_bytes is not None:
            candidates = [c for c in candidates if c.wasted_bytes >= threshold_bytes]
        candidates.sort(key=lambda c: (-c.wasted_bytes, c.content_hash))
        return candidates

    def total_wasted_bytes(self) -> int:
        """Sum of wasted bytes over every group."""
        return sum(group.wasted_bytes for group in self._groups())

    def dashboard_stats(self) -> DashboardStats:
        """Global figures; sizes are counted once per distinct fingerprint."""
        groups = self._groups()
        devices = self._db.query_one("SELECT COUNT(*) AS n FROM devices")
        return DashboardStats(
            total_files=len(groups),
            total_locations=sum(group.total_copies for group in groups),
            unsafe_files=sum(1 for group in groups if not self._is_safe(group)),
            total_devices=devices["n"] if devices is not None else 0,
            total_size_bytes=sum(group.file_size for group in groups),
        )
