"""Durable SQLite store shared by the device registry and the location index.

Single-writer discipline: every write goes through one connection guarded by
a lock and runs as one transaction. Readers get their own connection per
thread; with WAL journaling they see the last committed state and never wait
for a running scan.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from backup_sentinel.core.errors import IndexWriteError
from backup_sentinel.core.models import utc_now

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS devices (
    id TEXT PRIMARY KEY,
    label TEXT NOT NULL,
    mount_point TEXT NOT NULL,
    device_type TEXT NOT NULL DEFAULT 'unknown'
        CHECK (device_type IN ('hot', 'cold', 'unknown')),
    total_bytes INTEGER NOT NULL DEFAULT 0,
    available_bytes INTEGER NOT NULL DEFAULT 0,
    is_removable INTEGER NOT NULL DEFAULT 0,
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_devices_mount ON devices(mount_point);

CREATE TABLE IF NOT EXISTS file_locations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content_hash TEXT NOT NULL,
    device_id TEXT NOT NULL,
    file_path TEXT NOT NULL,
    file_name TEXT NOT NULL,
    file_size INTEGER NOT NULL,
    modified_at TEXT,
    last_verified TEXT NOT NULL,
    scan_mode TEXT NOT NULL CHECK (scan_mode IN ('quick', 'full')),
    UNIQUE (device_id, file_path)
);
CREATE INDEX IF NOT EXISTS idx_locations_hash ON file_locations(content_hash);
CREATE INDEX IF NOT EXISTS idx_locations_device ON file_locations(device_id);

CREATE TABLE IF NOT EXISTS scan_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    target TEXT NOT NULL,
    device_id TEXT NOT NULL,
    scan_mode TEXT NOT NULL,
    state TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    scanned INTEGER NOT NULL DEFAULT 0,
    hashed INTEGER NOT NULL DEFAULT 0,
    added INTEGER NOT NULL DEFAULT 0,
    removed INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class Database:
    """SQLite database holding devices, file locations and the scan journal.

    Attributes:
        path: Location of the database file.
    """

    def __init__(self, path: Path, *, busy_timeout: float = 5.0) -> None:
        """Open (and create if needed) the database.

        Args:
            path: Database file path; parent directories are created.
            busy_timeout: Seconds to wait on a locked database.
        """
        self.path = Path(path)
        if self.path.is_dir():
            raise ValueError(f"Database path is a directory: {self.path}")
        self.path.parent.mkdir(parents=True, exist_ok=True)

        self._busy_timeout = busy_timeout
        self._write_lock = threading.RLock()
        self._local = threading.local()
        self._readers: list[sqlite3.Connection] = []
        self._readers_lock = threading.Lock()
        self._closed = False

        logger.info(f"Opening database at {self.path}")
        self._writer = self._connect()
        self._writer.execute("PRAGMA journal_mode=WAL")
        self._writer.executescript(SCHEMA)
        self._writer.execute(
            "INSERT OR IGNORE INTO metadata (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )
        self._recover_interrupted_runs()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.path),
            timeout=self._busy_timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _recover_interrupted_runs(self) -> None:
        """Mark runs left 'running' by a crashed process as interrupted."""
        cur = self._writer.execute(
            "UPDATE scan_runs SET state = 'interrupted', finished_at = ? WHERE state = 'running'",
            (utc_now(),),
        )
        if cur.rowcount:
            logger.warning(f"Marked {cur.rowcount} interrupted scan run(s) from a previous session")

    def _reader(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            with self._readers_lock:
                self._readers.append(conn)
        return conn

    def release_reader(self) -> None:
        """Close the calling thread's reader connection, if it has one.

        Short-lived threads (scan and hashing workers) call this before they
        exit; the connection is reopened on the thread's next query.
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        self._local.conn = None
        with self._readers_lock:
            if conn in self._readers:
                self._readers.remove(conn)
        conn.close()

    @property
    def reader_count(self) -> int:
        """Number of reader connections currently open."""
        with self._readers_lock:
            return len(self._readers)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of writes as one atomic transaction.

        Raises:
            IndexWriteError: If SQLite rejects the write; nothing is committed.
        """
        if self._closed:
            raise IndexWriteError(f"Database is closed: {self.path}")
        with self._write_lock:
            try:
                self._writer.execute("BEGIN IMMEDIATE")
                yield self._writer
                self._writer.commit()
            except sqlite3.Error as e:
                self._writer.rollback()
                raise IndexWriteError(f"Write to {self.path} failed: {e}") from e
            except BaseException:
                self._writer.rollback()
                raise

    def query(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> list[sqlite3.Row]:
        """Run a read-only query on this thread's reader connection."""
        return self._reader().execute(sql, params).fetchall()

    def query_one(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> sqlite3.Row | None:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def close(self) -> None:
        """Close every connection opened by this instance."""
        if self._closed:
            return
        self._closed = True
        with self._readers_lock:
            for conn in self._readers:
                conn.close()
            self._readers.clear()
        with self._write_lock:
            self._writer.close()
        logger.debug(f"Closed database {self.path}")

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
