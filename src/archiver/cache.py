"""Persisted per-root metadata cache.

One CSV file in each root's top-level directory maps a file's inode to the
size, modification time and hash it had when last scanned. The scanner adopts
a cached hash only when inode, size and modification time all match.
"""

import csv
import io
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable

from loguru import logger

from archiver.exceptions import CacheError, FileOperationError
from archiver.file_utils import write_file_atomic
from archiver.models import Hash, Name
from archiver.utils import normalize_name

HEADER = ["Inode", "Path", "Name", "Size", "ModTime", "Hash"]


@dataclass(frozen=True)
class CacheEntry:
    inode: int
    name: Name
    size: int
    mod_time: datetime
    hash: Hash

    def matches(self, size: int, mod_time: datetime) -> bool:
        return self.size == size and self.mod_time == mod_time


def read_cache(path: Path) -> Dict[int, CacheEntry]:
    """Load cache entries keyed by inode.

    A missing or unreadable file yields an empty cache, and rows that fail to
    parse or carry no hash are skipped, so the worst case is a full re-hash.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Ignoring unreadable cache {path}: {e}")
        return {}

    reader = csv.reader(io.StringIO(text))
    try:
        header = next(reader, None)
    except csv.Error as e:
        logger.warning(f"Ignoring corrupt cache {path}: {e}")
        return {}
    if header != HEADER:
        logger.warning(f"Ignoring cache {path} with unexpected header {header}")
        return {}

    entries = {}
    skipped = 0
    while True:
        try:
            row = next(reader)
        except StopIteration:
            break
        except csv.Error:
            skipped += 1
            continue
        try:
            inode, dir_path, base, size, mod_time, hash = row
            if not hash:
                continue
            entry = CacheEntry(
                inode=int(inode),
                name=Name(normalize_name(dir_path), normalize_name(base)),
                size=int(size),
                mod_time=datetime.fromisoformat(mod_time).astimezone(timezone.utc),
                hash=hash,
            )
        except ValueError:
            skipped += 1
            continue
        entries[entry.inode] = entry

    if skipped:
        logger.warning(f"Skipped {skipped} malformed rows in {path}")
    logger.debug(f"Loaded {len(entries)} cache entries from {path}")
    return entries


def write_cache(path: Path, entries: Iterable[CacheEntry]) -> int:
    """Replace the cache file atomically. Returns the number of rows written.

    Raises:
        CacheError: If the file cannot be written
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(HEADER)
    count = 0
    for entry in sorted(entries, key=lambda e: e.name):
        writer.writerow(
            [
                entry.inode,
                normalize_name(entry.name.path),
                normalize_name(entry.name.base),
                entry.size,
                entry.mod_time.astimezone(timezone.utc).isoformat(),
                entry.hash,
            ]
        )
        count += 1

    try:
        write_file_atomic(path, buffer.getvalue())
    except FileOperationError as e:
        raise CacheError(str(e)) from e
    logger.debug(f"Wrote {count} cache entries to {path}")
    return count
