"""Per-root worker that scans and mutates one root on command."""

import asyncio
import os
from pathlib import Path
from typing import Dict, Optional

import aiofiles
from loguru import logger

from archiver import events as ev
from archiver.config import ArchiverConfig
from archiver.exceptions import FileOperationError
from archiver.file_utils import ensure_directory, remove_empty_parents
from archiver.models import Id, Root
from archiver.scanner import ArchiveScanner, ScanResult

# Marks the end of the source stream for copy writers
_EOF = b""


class FileExecutor:
    """
    Executes scan, delete, rename and fan-out copy commands for one root.

    Commands are processed strictly in order from a queue owned by this
    executor. A scan ends with ArchiveScanned; every file command produces
    exactly one terminal event: FileDeleted, FileRenamed, FileCopied or Error.
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
        self.scanner = ArchiveScanner(root, events, config, stop)
        self.scan_task: Optional["asyncio.Task[ScanResult]"] = None
        self.commands: "asyncio.Queue[ev.Command]" = asyncio.Queue()

    @property
    def scan_result(self) -> Optional[ScanResult]:
        task = self.scan_task
        if task is None or not task.done() or task.cancelled() or task.exception() is not None:
            return None
        return task.result()

    @property
    def scanning(self) -> bool:
        return self.scan_task is not None and not self.scan_task.done()

    def send(self, command: ev.Command) -> None:
        self.commands.put_nowait(command)

    async def run(self) -> None:
        """Process commands until cancelled."""
        while True:
            command = await self.commands.get()
            try:
                await self.handle(command)
            finally:
                self.commands.task_done()

    async def handle(self, command: ev.Command) -> None:
        logger.info(f"{self.root}: executing {command}")
        if isinstance(command, ev.ScanArchive):
            # Shielded: cancelling the worker must not keep the scan from storing its cache
            self.scan_task = asyncio.create_task(self.scanner.scan())
            await asyncio.shield(self.scan_task)
        elif isinstance(command, ev.DeleteFile):
            await self.delete_file(command)
        elif isinstance(command, ev.RenameFile):
            await self.rename_file(command)
        elif isinstance(command, ev.CopyFile):
            await self.copy_file(command)
        else:
            raise TypeError(f"unhandled command: {command!r}")

    async def delete_file(self, command: ev.DeleteFile) -> None:
        path = command.id.abs_path
        try:
            await asyncio.to_thread(path.unlink)
        except OSError as e:
            logger.error(f"Failed to delete {path}: {e}")
            await self.events.put(ev.Error(id=command.id, error=str(e), command=command))
            return

        try:
            await asyncio.to_thread(remove_empty_parents, path, command.id.root)
        except OSError as e:
            # The file itself is gone; a directory that cannot be pruned is only logged
            logger.warning(f"Failed to remove empty directories above {path}: {e}")

        await self.events.put(ev.FileDeleted(id=command.id, hash=command.hash))

    async def rename_file(self, command: ev.RenameFile) -> None:
        source = command.from_id.abs_path
        target = command.to_id.abs_path
        try:
            await asyncio.to_thread(self._rename, source, target)
        except (OSError, FileOperationError) as e:
            logger.error(f"Failed to rename {source} to {target}: {e}")
            await self.events.put(
                ev.Error(id=command.from_id, error=str(e), command=command)
            )
            return
        await self.events.put(
            ev.FileRenamed(from_id=command.from_id, to_id=command.to_id, hash=command.hash)
        )

    @staticmethod
    def _rename(source: Path, target: Path) -> None:
        if target.exists():
            raise FileOperationError(f"destination exists: {target}")
        ensure_directory(target.parent)
        os.rename(source, target)

    async def copy_file(self, command: ev.CopyFile) -> None:
        """
        Copy one source file to the same name in every target root.

        A single reader streams chunks to one writer task per target. Each
        writer queue holds one chunk, so the reader only reads ahead once every
        writer accepted the previous chunk. Progress is the minimum written
        across live targets, and a failing target does not stop the others.
        """
        source = command.from_id.abs_path
        try:
            st = await asyncio.to_thread(os.stat, source)
        except OSError as e:
            logger.error(f"Failed to stat copy source {source}: {e}")
            await self.events.put(ev.Error(id=command.from_id, error=str(e), command=command))
            return

        writers = [
            _TargetWriter(Id(root, command.from_id.name), st.st_atime_ns, st.st_mtime_ns)
            for root in command.to
        ]
        tasks = [asyncio.create_task(w.run()) for w in writers]
        reported = 0
        read_error: Optional[str] = None

        try:
            async with aiofiles.open(source, "rb") as f:
                while True:
                    chunk = await f.read(self.config.copy_chunk_size)
                    for w in writers:
                        await w.queue.put(chunk)
                    live = [w.written for w in writers if w.error is None]
                    if live and min(live) > reported:
                        reported = min(live)
                        await self.events.put(ev.CopyingProgress(root=self.root, copied=reported))
                    if not chunk:
                        break
        except OSError as e:
            logger.error(f"Failed to read copy source {source}: {e}")
            read_error = str(e)
            for w in writers:
                w.aborted = True
                await w.queue.put(_EOF)

        await asyncio.gather(*tasks)

        live = [w.written for w in writers if w.error is None]
        if read_error is None and live and min(live) > reported:
            await self.events.put(ev.CopyingProgress(root=self.root, copied=min(live)))

        if read_error is not None:
            await self.events.put(
                ev.Error(id=command.from_id, error=read_error, command=command)
            )
            return

        failures: Dict[Root, str] = {w.id.root: w.error for w in writers if w.error is not None}
        if failures:
            message = "; ".join(f"{root}: {error}" for root, error in failures.items())
            await self.events.put(
                ev.Error(id=command.from_id, error=f"copy failed for {message}", command=command)
            )
            return

        await self.events.put(
            ev.FileCopied(from_id=command.from_id, to=command.to, hash=command.hash)
        )


class _TargetWriter:
    """Writes one copy target from chunks handed over by the reader."""

    def __init__(self, id: Id, atime_ns: int, mtime_ns: int):
        self.id = id
        self.atime_ns = atime_ns
        self.mtime_ns = mtime_ns
        self.queue: "asyncio.Queue[bytes]" = asyncio.Queue(maxsize=1)
        self.written = 0
        self.error: Optional[str] = None
        self.aborted = False
        self.created = False

    def fail(self, e: Exception) -> None:
        logger.error(f"Failed to write copy target {self.id}: {e}")
        self.error = str(e)

    async def run(self) -> None:
        path = self.id.abs_path
        f = None
        try:
            if await asyncio.to_thread(path.exists):
                raise FileOperationError(f"destination exists: {path}")
            await asyncio.to_thread(ensure_directory, path.parent)
            f = await aiofiles.open(path, "wb")
            self.created = True
        except (OSError, FileOperationError) as e:
            self.fail(e)

        # Always drain the queue so a failed target never blocks the reader
        while True:
            chunk = await self.queue.get()
            if not chunk:
                break
            if self.error is None:
                try:
                    await f.write(chunk)
                    self.written += len(chunk)
                except OSError as e:
                    self.fail(e)

        if f is not None:
            try:
                await f.close()
                if self.error is None and not self.aborted:
                    await asyncio.to_thread(os.utime, path, ns=(self.atime_ns, self.mtime_ns))
            except OSError as e:
                self.fail(e)

        if self.created and (self.error is not None or self.aborted):
            try:
                await asyncio.to_thread(path.unlink, missing_ok=True)
                await asyncio.to_thread(remove_empty_parents, path, self.id.root)
            except OSError as e:
                logger.warning(f"Failed to clean up partial copy {path}: {e}")
