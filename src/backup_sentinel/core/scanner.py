"""Scan engine — walks a target path and records every file it finds.

A scan runs in a background thread and goes through three stages:
1. Enumeration: walk the target once to count files (emits ``ScanStarted``).
2. Inspection: a thread pool stats and fingerprints files, a bounded number
   at a time.
3. Recording: the scan thread alone writes results to the location index,
   in walk order.

Events reach the caller through a bounded queue owned by the ``ScanHandle``.
Only one scan may run per process.
"""

from __future__ import annotations

import logging
import os
import stat
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, replace
from enum import Enum
from pathlib import Path
from queue import Empty, Full, Queue
from typing import TYPE_CHECKING, Any, ClassVar

from backup_sentinel.core.devices import relative_path
from backup_sentinel.core.errors import (
    ScanAlreadyRunningError,
    SentinelError,
    TargetUnreadableError,
)
from backup_sentinel.core.hasher import hash_file
from backup_sentinel.core.models import FileLocation, ScanMode, ScanRun, timestamp_to_iso, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from backup_sentinel.core.devices import DeviceRegistry
    from backup_sentinel.core.index import LocationIndex
    from backup_sentinel.core.models import Device
    from backup_sentinel.core.settings import Settings
    from backup_sentinel.core.store import Database

logger = logging.getLogger(__name__)

# Held for the whole life of a scan, process-wide
_ACTIVE_SCAN = threading.Lock()


class ScanState(str, Enum):
    """Lifecycle of a scan."""

    IDLE = "idle"
    RUNNING = "running"
    FINISHED = "finished"
    CANCELLED = "cancelled"
    FAILED = "failed"


# --- Events -----------------------------------------------------------------


@dataclass(frozen=True)
class ScanEvent:
    """Base class of everything sent on a scan's event stream."""

    kind: ClassVar[str] = "event"
    terminal: ClassVar[bool] = False

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.kind, **asdict(self)}


@dataclass(frozen=True)
class ScanStarted(ScanEvent):
    """Enumeration is done; hashing starts.

    Attributes:
        total_files: Files found below the target.
    """

    kind: ClassVar[str] = "started"
    total_files: int


@dataclass(frozen=True)
class ScanProgress(ScanEvent):
    """Periodic counters; may be dropped when the consumer lags.

    Attributes:
        scanned: Files processed so far.
        total: Files found during enumeration.
    """

    kind: ClassVar[str] = "progress"
    scanned: int
    total: int


@dataclass(frozen=True)
class FileHashed(ScanEvent):
    """A file was fingerprinted and recorded in the index.

    Attributes:
        path: Absolute path of the file.
        hash: Its content fingerprint.
    """

    kind: ClassVar[str] = "file_hashed"
    path: str
    hash: str


@dataclass(frozen=True)
class ScanError(ScanEvent):
    """A single file or directory could not be read; the scan goes on."""

    kind: ClassVar[str] = "error"
    message: str
    path: str | None = None


@dataclass(frozen=True)
class ScanFinished(ScanEvent):
    """The scan walked the whole target.

    Attributes:
        scanned: Files processed, errors included.
        hashed: Files fingerprinted in this pass.
        added: Index rows created.
        removed: Indexed paths below the target that were not found.
    """

    kind: ClassVar[str] = "finished"
    terminal: ClassVar[bool] = True
    scanned: int
    hashed: int
    added: int
    removed: int


@dataclass(frozen=True)
class ScanCancelled(ScanEvent):
    """The scan stopped on request; work recorded so far is kept.

    Attributes:
        scanned: Files processed before stopping.
        total: Files found during enumeration.
    """

    kind: ClassVar[str] = "cancelled"
    terminal: ClassVar[bool] = True
    scanned: int
    total: int


@dataclass(frozen=True)
class ScanFailed(ScanEvent):
    """The scan could not run, e.g. its target is unreadable."""

    kind: ClassVar[str] = "failed"
    terminal: ClassVar[bool] = True
    message: str


@dataclass
class ScanSummary:
    """Counters of a scan, final once the scan reached a terminal state."""

    state: ScanState = ScanState.IDLE
    total: int = 0
    scanned: int = 0
    hashed: int = 0
    added: int = 0
    removed: int = 0
    errors: int = 0


# --- Journal ----------------------------------------------------------------


class ScanJournal:
    """Records each scan run in the scan_runs table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def start(self, target: Path, device_id: str, mode: ScanMode) -> int:
        with self._db.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO scan_runs (target, device_id, scan_mode, state, started_at) "
                "VALUES (?, ?, ?, 'running', ?)",
                (str(target), device_id, mode.value, utc_now()),
            )
        return int(cur.lastrowid)

    def finish(self, run_id: int, summary: ScanSummary) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE scan_runs SET state = ?, finished_at = ?, scanned = ?, hashed = ?, added = ?, removed = ? "
                "WHERE id = ?",
                (
                    summary.state.value,
                    utc_now(),
                    summary.scanned,
                    summary.hashed,
                    summary.added,
                    summary.removed,
                    run_id,
                ),
            )

    def history(self, limit: int = 20) -> list[ScanRun]:
        """Most recent runs first."""
        rows = self._db.query("SELECT * FROM scan_runs ORDER BY id DESC LIMIT ?", (limit,))
        return [
            ScanRun(
                id=row["id"],
                target=row["target"],
                device_id=row["device_id"],
                scan_mode=ScanMode(row["scan_mode"]),
                state=row["state"],
                started_at=row["started_at"],
                finished_at=row["finished_at"],
                scanned=row["scanned"],
                hashed=row["hashed"],
                added=row["added"],
                removed=row["removed"],
            )
            for row in rows
        ]


# --- Walking ----------------------------------------------------------------


def iter_files(
    root: Path,
    *,
    skip_hidden: bool = False,
    errors: list[tuple[Path, OSError]] | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> Iterator[Path]:
    """Iterate regular files below root, depth first.

    Within a directory, files come first in name order, then each
    subdirectory in name order.

    Symlinks are not followed and not reported. Directories that cannot be
    listed are appended to ``errors`` and skipped.

    Args:
        root: Directory (or single file) to walk.
        skip_hidden: Skip entries whose name starts with a dot.
        errors: Collects (path, error) for unreadable entries.
        should_stop: Checked before each directory; stops the walk when True.

    Yields:
        Paths of regular files.
    """
    if root.is_file() and not root.is_symlink():
        yield root
        return

    stack = [root]
    while stack:
        if should_stop is not None and should_stop():
            return
        directory = stack.pop()
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            if errors is not None:
                errors.append((directory, e))
            continue

        subdirs: list[Path] = []
        for entry in entries:
            if skip_hidden and entry.name.startswith("."):
                continue
            try:
                if entry.is_dir(follow_symlinks=False):
                    subdirs.append(Path(entry.path))
                elif entry.is_file(follow_symlinks=False):
                    yield Path(entry.path)
            except OSError as e:
                if errors is not None:
                    errors.append((Path(entry.path), e))
        stack.extend(reversed(subdirs))


def check_target(target: Path) -> None:
    """Make sure the scan target exists and can be read.

    Raises:
        TargetUnreadableError: If it cannot.
    """
    try:
        st = target.stat()
    except OSError as e:
        raise TargetUnreadableError(f"Cannot open scan target {target}: {e}") from e

    if stat.S_ISDIR(st.st_mode):
        try:
            with os.scandir(target) as it:
                next(it, None)
        except OSError as e:
            raise TargetUnreadableError(f"Cannot list scan target {target}: {e}") from e
    elif stat.S_ISREG(st.st_mode):
        if not os.access(target, os.R_OK):
            raise TargetUnreadableError(f"Cannot read scan target {target}")
    else:
        raise TargetUnreadableError(f"Scan target is not a file or directory: {target}")


# --- Handle -----------------------------------------------------------------


@dataclass
class _Outcome:
    """Result of inspecting one file in a worker thread."""

    path: Path
    rel: str | None
    location: FileLocation | None = None
    unchanged: bool = False
    error: str | None = None


@dataclass
class _ScanOptions:
    chunk_bytes: int
    sample_bytes: int
    workers: int
    progress_every: int
    queue_size: int
    reconcile_removed: bool
    skip_hidden: bool

    @classmethod
    def from_settings(cls, settings: Settings) -> _ScanOptions:
        return cls(
            chunk_bytes=max(1, settings.get("hash_chunk_bytes")),
            sample_bytes=max(0, settings.get("quick_sample_bytes")),
            workers=max(1, settings.get("hash_workers")),
            progress_every=max(1, settings.get("progress_every")),
            queue_size=max(1, settings.get("event_queue_size")),
            reconcile_removed=settings.get("reconcile_removed"),
            skip_hidden=settings.get("skip_hidden"),
        )


class ScanHandle:
    """A running (or finished) scan: its event stream and cancellation token.

    The event stream has a single consumer. ``FileHashed``, ``ScanError`` and
    terminal events wait for room in the queue; ``ScanProgress`` events are
    dropped when the queue is full, since the next one carries the same
    counters. The consumer must keep reading ``events()`` until it ends.
    """

    def __init__(self, target: Path, mode: ScanMode, device: Device, queue_size: int) -> None:
        self.target = target
        self.mode = mode
        self.device = device
        self.summary = ScanSummary(state=ScanState.RUNNING)
        self.error: SentinelError | None = None
        self._queue: Queue[ScanEvent] = Queue(maxsize=queue_size)
        self._cancel = threading.Event()
        self._done = threading.Event()

    @property
    def state(self) -> ScanState:
        return self.summary.state

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Ask the scan to stop at its next checkpoint."""
        self._cancel.set()

    def events(self, timeout: float | None = None) -> Iterator[ScanEvent]:
        """Yield events in order until the terminal event.

        Args:
            timeout: Max seconds to wait for each event.

        Raises:
            TimeoutError: If no event arrives within ``timeout``.
        """
        while True:
            try:
                event = self._queue.get(timeout=timeout)
            except Empty:
                raise TimeoutError(f"No scan event within {timeout}s") from None
            yield event
            if event.terminal:
                return

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the scan thread is done. Returns False on timeout."""
        return self._done.wait(timeout)

    def drain(self, timeout: float = 30.0) -> None:
        """Discard pending events until the scan thread is done.

        For callers that stop listening early, such as shutdown; the scan
        thread would otherwise block on a full queue.
        """
        deadline = time.monotonic() + timeout
        while not self._done.is_set() and time.monotonic() < deadline:
            try:
                self._queue.get(timeout=0.1)
            except Empty:
                continue

    def result(self) -> ScanSummary:
        """Final counters of the scan.

        Raises:
            SentinelError: The error that made the scan fail.
        """
        if self.error is not None:
            raise self.error
        return self.summary

    # Producer side, used by the scan thread

    def _emit(self, event: ScanEvent) -> None:
        self._queue.put(event)

    def _emit_progress(self, event: ScanProgress) -> None:
        try:
            self._queue.put_nowait(event)
        except Full:
            pass

    def _mark_done(self) -> None:
        self._done.set()


# --- Engine -----------------------------------------------------------------


class ScanEngine:
    """Starts scans and owns the single-scan rule."""

    def __init__(
        self,
        db: Database,
        registry: DeviceRegistry,
        index: LocationIndex,
        settings: Settings,
    ) -> None:
        self._db = db
        self._registry = registry
        self._index = index
        self._settings = settings
        self._journal = ScanJournal(db)
        self._current: ScanHandle | None = None

    @property
    def current(self) -> ScanHandle | None:
        """The most recently started scan, if any."""
        return self._current

    @property
    def journal(self) -> ScanJournal:
        return self._journal

    def start(self, target: Path | str, mode: ScanMode | str = ScanMode.FULL) -> ScanHandle:
        """Start scanning a path in the background.

        Args:
            target: Directory or file to scan.
            mode: quick or full.

        Returns:
            ScanHandle streaming the scan's events.

        Raises:
            ScanAlreadyRunningError: If another scan is active.
            NoDeviceFoundError: If the target is on no registered device.
            ValueError: If the mode is invalid.
        """
        scan_mode = ScanMode(mode)
        if not _ACTIVE_SCAN.acquire(blocking=False):
            raise ScanAlreadyRunningError("A scan is already running")

        try:
            target_path = Path(target).resolve()
            device = self._registry.resolve_device(target_path)
            options = _ScanOptions.from_settings(self._settings)
            handle = ScanHandle(target_path, scan_mode, device, options.queue_size)
            worker = _ScanRun(handle, self._db, self._registry, self._index, self._journal, options)
            thread = threading.Thread(target=worker.run, name="sentinel-scan", daemon=True)
            thread.start()
        except BaseException:
            _ACTIVE_SCAN.release()
            raise

        self._current = handle
        logger.info(f"Started {scan_mode.value} scan of {target_path} on device {device.id}")
        return handle

    def cancel(self) -> bool:
        """Cancel the active scan. Returns False if nothing is running."""
        handle = self._current
        if handle is None or handle.state is not ScanState.RUNNING:
            return False
        handle.cancel()
        return True


class _ScanRun:
    """Body of one scan thread."""

    def __init__(
        self,
        handle: ScanHandle,
        db: Database,
        registry: DeviceRegistry,
        index: LocationIndex,
        journal: ScanJournal,
        options: _ScanOptions,
    ) -> None:
        self._handle = handle
        self._db = db
        self._registry = registry
        self._index = index
        self._journal = journal
        self._opts = options
        self._device = handle.device
        self._summary = handle.summary
        self._seen: set[str] = set()
        self._run_id: int | None = None
        self._target_ok = False
        self._released = False

    def run(self) -> None:
        try:
            self._execute()
        except SentinelError as e:
            self._fail(e)
        except Exception as e:
            logger.exception(f"Scan of {self._handle.target} crashed")
            self._fail(SentinelError(f"Scan crashed: {e}"))
        finally:
            self._release()
            self._db.release_reader()
            self._handle._mark_done()

    def _release(self) -> None:
        if not self._released:
            self._released = True
            _ACTIVE_SCAN.release()

    def _finish(self, state: ScanState, event: ScanEvent) -> None:
        self._summary.state = state
        if self._run_id is not None:
            try:
                self._journal.finish(self._run_id, self._summary)
            except SentinelError as e:
                logger.warning(f"Could not journal end of scan {self._run_id}: {e}")
        if self._target_ok:
            try:
                self._registry.touch(self._device.id)
            except SentinelError as e:
                logger.warning(f"Could not refresh last_seen of device {self._device.id}: {e}")
        # Free the slot before the terminal event so the consumer can start the next scan
        self._release()
        self._handle._emit(event)

    def _fail(self, error: SentinelError) -> None:
        logger.error(f"Scan of {self._handle.target} failed: {error}")
        self._handle.error = error
        self._finish(ScanState.FAILED, ScanFailed(message=str(error)))

    def _execute(self) -> None:
        handle = self._handle
        self._run_id = self._journal.start(handle.target, self._device.id, handle.mode)
        check_target(handle.target)
        self._target_ok = True

        walk_errors: list[tuple[Path, OSError]] = []
        files = list(
            iter_files(
                handle.target,
                skip_hidden=self._opts.skip_hidden,
                errors=walk_errors,
                should_stop=lambda: handle.cancel_requested,
            )
        )
        self._summary.total = len(files)
        handle._emit(ScanStarted(total_files=len(files)))

        for path, error in walk_errors:
            self._summary.errors += 1
            logger.warning(f"Cannot read {path}: {error}")
            handle._emit(ScanError(message=f"{path}: {error}", path=str(path)))

        if not handle.cancel_requested:
            self._process(files)

        if handle.cancel_requested:
            logger.info(f"Scan of {handle.target} cancelled after {self._summary.scanned} file(s)")
            self._finish(
                ScanState.CANCELLED,
                ScanCancelled(scanned=self._summary.scanned, total=self._summary.total),
            )
            return

        self._reconcile([path for path, _ in walk_errors])
        logger.info(
            f"Scan of {handle.target} finished: {self._summary.scanned} scanned, "
            f"{self._summary.hashed} hashed, {self._summary.added} added, {self._summary.removed} removed"
        )
        self._finish(
            ScanState.FINISHED,
            ScanFinished(
                scanned=self._summary.scanned,
                hashed=self._summary.hashed,
                added=self._summary.added,
                removed=self._summary.removed,
            ),
        )

    def _process(self, files: list[Path]) -> None:
        handle = self._handle
        window = self._opts.workers * 2
        pending: deque[Future[_Outcome]] = deque()
        remaining = iter(files)
        exhausted = False

        with ThreadPoolExecutor(max_workers=self._opts.workers, thread_name_prefix="sentinel-hash") as pool:
            try:
                while True:
                    while not exhausted and not handle.cancel_requested and len(pending) < window:
                        path = next(remaining, None)
                        if path is None:
                            exhausted = True
                            break
                        pending.append(pool.submit(self._inspect, path, self._known(path)))

                    if handle.cancel_requested:
                        # Drop work that has not started; finished work is still recorded
                        pending = deque(f for f in pending if not f.cancel())
                    if not pending:
                        break

                    self._record(pending.popleft().result())
            finally:
                for future in pending:
                    future.cancel()

    def _known(self, path: Path) -> FileLocation | None:
        """Stored location of a file, looked up on the scan thread for quick mode.

        Hashing workers never query the database.
        """
        if self._handle.mode is not ScanMode.QUICK:
            return None
        try:
            rel = relative_path(self._device, path)
        except ValueError:
            return None
        return self._index.get(self._device.id, rel)

    def _inspect(self, path: Path, existing: FileLocation | None) -> _Outcome:
        """Stat and fingerprint one file (worker thread).

        ``existing`` is the stored location of the file in quick mode.
        """
        try:
            rel = relative_path(self._device, path)
        except ValueError:
            return _Outcome(path=path, rel=None, error=f"{path}: outside of device mount point")

        mode = self._handle.mode
        try:
            st = os.stat(path, follow_symlinks=False)
            if not stat.S_ISREG(st.st_mode):
                return _Outcome(path=path, rel=rel, error=f"{path}: not a regular file")
            modified_at = timestamp_to_iso(st.st_mtime)

            if (
                mode is ScanMode.QUICK
                and existing is not None
                and existing.file_size == st.st_size
                and existing.modified_at == modified_at
            ):
                return _Outcome(path=path, rel=rel, location=existing, unchanged=True)

            digest = hash_file(
                path,
                mode,
                size=st.st_size,
                mtime_ns=st.st_mtime_ns,
                sample_bytes=self._opts.sample_bytes,
                chunk_bytes=self._opts.chunk_bytes,
            )
        except OSError as e:
            return _Outcome(path=path, rel=rel, error=f"{path}: {e}")

        location = FileLocation(
            content_hash=digest,
            device_id=self._device.id,
            file_path=rel,
            file_name=path.name,
            file_size=st.st_size,
            modified_at=modified_at,
            last_verified="",
            scan_mode=mode,
        )
        return _Outcome(path=path, rel=rel, location=location)

    def _record(self, outcome: _Outcome) -> None:
        """Write one outcome to the index and the event stream (scan thread only)."""
        handle = self._handle
        summary = self._summary
        summary.scanned += 1
        if outcome.rel is not None:
            self._seen.add(outcome.rel)

        location = outcome.location
        if outcome.error is not None or location is None:
            message = outcome.error or f"{outcome.path}: no result"
            summary.errors += 1
            logger.warning(f"Skipping {message}")
            handle._emit(ScanError(message=message, path=str(outcome.path)))
        elif outcome.unchanged:
            self._index.touch(self._device.id, location.file_path, utc_now())
        else:
            location = replace(location, last_verified=utc_now())
            if self._index.upsert(location):
                summary.added += 1
            summary.hashed += 1
            handle._emit(FileHashed(path=str(outcome.path), hash=location.content_hash))

        if summary.scanned % self._opts.progress_every == 0 or summary.scanned == summary.total:
            handle._emit_progress(ScanProgress(scanned=summary.scanned, total=summary.total))

    def _reconcile(self, unreadable: list[Path]) -> None:
        """Count (and optionally delete) indexed paths not seen in this pass.

        Paths at or below an entry that could not be read are left alone:
        their files may still exist.
        """
        prefix = relative_path(self._device, self._handle.target)
        stale = self._index.paths_under(self._device.id, prefix) - self._seen

        skipped = [relative_path(self._device, path) for path in unreadable]
        if skipped:
            stale = {
                rel for rel in stale
                if not any(skip == "" or rel == skip or rel.startswith(skip + "/") for skip in skipped)
            }

        self._summary.removed = len(stale)
        if stale and self._opts.reconcile_removed:
            self._index.remove(self._device.id, sorted(stale))
            logger.info(f"Removed {len(stale)} vanished location(s) under {self._handle.target}")
