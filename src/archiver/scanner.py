"""Incremental content-hashing scanner for one root."""

import asyncio
import base64
import hashlib
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import aiofiles
from loguru import logger

from archiver import events as ev
from archiver.cache import CacheEntry, read_cache, write_cache
from archiver.config import ArchiverConfig
from archiver.exceptions import CacheError
from archiver.models import EPOCH, Hash, Id, Meta, Name, Root
from archiver.utils import normalize_name


@dataclass
class WalkedFile:
    """A regular file found by the directory walk, hash not yet known."""

    inode: int
    name: Name
    size: int
    mod_time: datetime
    hash: Hash = ""


@dataclass
class ScanResult:
    """Result of scanning a root."""

    metas: List[Meta] = field(default_factory=list)
    # relative path -> error message
    errors: Dict[str, str] = field(default_factory=dict)
    cached: int = 0
    hashed: int = 0
    hashed_bytes: int = 0
    # every byte read while hashing, including files that failed partway
    read_bytes: int = 0
    cancelled: bool = False


def mod_time_from_stat(st: os.stat_result) -> datetime:
    """UTC modification time at microsecond precision, exact across cache round trips."""
    return EPOCH + timedelta(microseconds=st.st_mtime_ns // 1000)


def encode_hash(digest: bytes) -> Hash:
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class ArchiveScanner:
    """
    Scans one root and streams events to the reconciler.

    Features:
    - Stable identity by inode, persisted in a per-root cache
    - Re-hashes only files whose size or modification time changed
    - Progress after every chunk, cooperative stop between chunks
    - Per-file errors reported as events, never raised
    """

    def __init__(
        self,
        root: Root,
        events: "asyncio.Queue[ev.Event]",
        config: ArchiverConfig,
        stop: Optional[asyncio.Event] = None,
    ):
        self.root = root
        self.events = events
        self.config = config
        self.stop = stop or asyncio.Event()

    @property
    def cache_path(self) -> Path:
        return self.root / self.config.cache_file_name

    def walk(self) -> Tuple[List[WalkedFile], Dict[str, str]]:
        """Collect every regular, non-dot file below the root.

        Symlinks and other irregular entries are skipped silently; entries that
        cannot be listed or statted are returned as errors.
        """
        files: List[WalkedFile] = []
        errors: Dict[str, str] = {}
        pending = [""]
        while pending:
            rel_dir = pending.pop()
            directory = self.root / rel_dir if rel_dir else self.root
            try:
                entries = list(os.scandir(directory))
            except OSError as e:
                logger.warning(f"Cannot list {directory}: {e}")
                errors[rel_dir] = str(e)
                continue

            for entry in entries:
                name = normalize_name(entry.name)
                rel_path = f"{rel_dir}/{name}" if rel_dir else name
                try:
                    if entry.is_dir(follow_symlinks=False):
                        pending.append(rel_path)
                        continue
                    if not entry.is_file(follow_symlinks=False):
                        continue
                    if name.startswith(".") or name == self.config.cache_file_name:
                        continue
                    st = entry.stat(follow_symlinks=False)
                except OSError as e:
                    logger.warning(f"Cannot stat {entry.path}: {e}")
                    errors[rel_path] = str(e)
                    continue
                files.append(
                    WalkedFile(
                        inode=st.st_ino,
                        name=Name(rel_dir, name),
                        size=st.st_size,
                        mod_time=mod_time_from_stat(st),
                    )
                )
        return files, errors

    async def emit(self, event: ev.Event) -> None:
        # Bounded queue: blocks while the reconciler is behind
        await self.events.put(event)

    def meta(self, file: WalkedFile) -> Meta:
        return Meta(
            id=Id(self.root, file.name),
            size=file.size,
            mod_time=file.mod_time,
            hash=file.hash,
        )

    async def hash_file(self, file: WalkedFile, result: ScanResult) -> Optional[Hash]:
        """Stream-hash one file. Returns None if the stop signal interrupted it.

        Raises:
            OSError: If the file cannot be opened or read
        """
        sha = hashlib.sha256()
        hashed = 0
        path = self.root / str(file.name)
        async with aiofiles.open(path, "rb") as f:
            while True:
                if self.stop.is_set():
                    return None
                chunk = await f.read(self.config.hash_chunk_size)
                if not chunk:
                    break
                sha.update(chunk)
                hashed += len(chunk)
                result.read_bytes += len(chunk)
                await self.emit(
                    ev.HashingProgress(
                        root=self.root,
                        name=file.name,
                        hashed=hashed,
                        total_hashed=result.read_bytes,
                    )
                )
        return encode_hash(sha.digest())

    async def scan(self) -> ScanResult:
        """Scan the root, ending with an ArchiveScanned event.

        Returns:
            ScanResult with every file whose hash is known
        """
        logger.info(f"Scanning {self.root}")
        result = ScanResult()

        files, errors = await asyncio.to_thread(self.walk)
        for rel_path, error in errors.items():
            result.errors[rel_path] = error
            await self.emit(ev.Error(id=Id(self.root, Name.parse(rel_path)), error=error))

        cache = await asyncio.to_thread(read_cache, self.cache_path)
        to_hash = []
        for file in files:
            cached = cache.get(file.inode)
            if cached is not None and cached.matches(file.size, file.mod_time):
                file.hash = cached.hash
            else:
                to_hash.append(file)
        to_hash.sort(key=lambda f: (f.size, f.name))

        await self.emit(ev.TotalSize(root=self.root, size=sum(f.size for f in to_hash)))

        for file in files:
            if file.hash:
                result.cached += 1
                meta = self.meta(file)
                result.metas.append(meta)
                await self.emit(ev.FileScanned(meta=meta))

        for file in to_hash:
            if self.stop.is_set():
                result.cancelled = True
                break
            try:
                hash = await self.hash_file(file, result)
            except OSError as e:
                logger.warning(f"Cannot hash {self.root / str(file.name)}: {e}")
                result.errors[str(file.name)] = str(e)
                await self.emit(ev.Error(id=Id(self.root, file.name), error=str(e)))
                continue
            if hash is None:
                result.cancelled = True
                break
            file.hash = hash
            result.hashed += 1
            result.hashed_bytes += file.size
            meta = self.meta(file)
            result.metas.append(meta)
            await self.emit(ev.FileScanned(meta=meta))

        await self.store(files, result)

        if result.cancelled:
            logger.info(f"Scan of {self.root} stopped after hashing {result.hashed} files")
        else:
            logger.info(
                f"Scanned {self.root}: {len(result.metas)} files, "
                f"{result.cached} from cache, {result.hashed} hashed"
            )
        await self.emit(ev.ArchiveScanned(root=self.root, metas=tuple(result.metas)))
        return result

    async def store(self, files: List[WalkedFile], result: ScanResult) -> None:
        """Persist the current metadata set; unhashed files are stored without a hash."""
        entries = [
            CacheEntry(
                inode=f.inode, name=f.name, size=f.size, mod_time=f.mod_time, hash=f.hash
            )
            for f in files
        ]
        try:
            await asyncio.to_thread(write_cache, self.cache_path, entries)
        except CacheError as e:
            logger.error(f"Failed to store cache for {self.root}: {e}")
            result.errors[self.config.cache_file_name] = str(e)
            await self.emit(
                ev.Error(id=Id(self.root, Name("", self.config.cache_file_name)), error=str(e))
            )
