"""Directory listing passthrough for the presentation layer.

Plain filesystem read, no index involved.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from backup_sentinel.core.models import DirEntry, timestamp_to_iso

logger = logging.getLogger(__name__)


def browse_directory(path: Path | str, *, show_hidden: bool = False) -> list[DirEntry]:
    """List the entries of a directory.

    Args:
        path: Directory to list.
        show_hidden: Include entries whose name starts with a dot.

    Returns:
        Entries with directories first, then files, each sorted by name.

    Raises:
        OSError: If the directory cannot be listed.
    """
    entries: list[DirEntry] = []

    with os.scandir(Path(path)) as it:
        for entry in it:
            if not show_hidden and entry.name.startswith("."):
                continue
            try:
                st = entry.stat()
            except OSError as e:
                # Dangling symlink or entry removed while listing
                logger.warning(f"Cannot stat {entry.path}: {e}")
                continue
            is_dir = entry.is_dir()
            entries.append(
                DirEntry(
                    name=entry.name,
                    is_dir=is_dir,
                    size=0 if is_dir else st.st_size,
                    modified=timestamp_to_iso(st.st_mtime),
                )
            )

    entries.sort(key=lambda e: (not e.is_dir, e.name))
    return entries
