"""Cross-root reconciliation engine.

The reconciler is the sole owner of the file index. It is driven one event at
a time from the session loop, never locks, and talks to the per-root executors
only by sending them commands.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from loguru import logger

from archiver import events as ev
from archiver.exceptions import IndexCorruptionError
from archiver.models import Entry, File, Folder, Hash, Id, Meta, Name, Root, State
from archiver.resolver import unique_name


class CommandSink(Protocol):
    def send(self, command: ev.Command) -> None: ...


@dataclass
class ArchiveState:
    """Scan bookkeeping for one root."""

    root: Root
    scanned: bool = False
    total_size: int = 0
    total_hashed: int = 0
    file_hashed: int = 0


@dataclass
class DeferredKeep:
    """A keep waiting for its canonical name to be vacated in some root."""

    source_root: Root
    name: Name


class Reconciler:
    """
    Indexes files by hash across roots and turns keep/delete decisions into
    rename, copy and delete commands.

    The index changes only when the scanner reports files or an executor
    confirms a command. Until then the affected hash is Pending, and no second
    batch of commands is issued for it.
    """

    def __init__(
        self,
        roots: Sequence[Root],
        executors: Mapping[Root, CommandSink],
        auto_resolve: bool = True,
    ):
        if not roots:
            raise ValueError("at least one root is required")
        self.roots = list(roots)
        self.executors = executors
        self.auto_resolve_enabled = auto_resolve

        self.files: Dict[Id, File] = {}
        self.by_hash: Dict[Hash, Dict[Id, File]] = {}
        self.archives = {root: ArchiveState(root) for root in self.roots}
        self.errors: List[ev.Error] = []
        self.ready = False
        self.quit = False

        # outstanding command count per hash
        self.pending: Dict[Hash, int] = Counter()
        # hashes whose last command failed; shown as Pending until retried
        self.failed: Set[Hash] = set()
        self.deferred: Dict[Hash, DeferredKeep] = {}
        # hash of a file being moved away -> deferred keeps waiting for it
        self.vacating: Dict[Hash, Set[Hash]] = defaultdict(set)
        # hashes auto-resolution skipped while busy, rechecked once they settle
        self.resolving: Set[Hash] = set()
        # destinations of renames/copies in flight, and sources being moved away
        self.incoming: Dict[Id, Hash] = {}
        self.outgoing: Set[Id] = set()

        self.renamings: Dict[Tuple[str, Hash], Name] = {}
        self.dir_renamings: Dict[Tuple[str, Hash], Name] = {}

        self.copy_size = 0
        self.total_copied = 0
        self.copied_bytes = 0
        self.copies: Dict[Tuple[Id, Hash], int] = {}

        # confirmed operations: "renamed", "deleted", "copied"
        self.stats: Dict[str, int] = Counter()

        self.frames = 0
        self.fps = 0.0
        self.last_tick: Optional[datetime] = None

    @property
    def origin(self) -> Root:
        return self.roots[0]

    def start(self) -> None:
        """Ask every root's worker to scan its tree."""
        for root in self.roots:
            self.executors[root].send(ev.ScanArchive())

    # Event dispatch

    def handle_event(self, event: ev.Event) -> None:
        if isinstance(event, ev.TotalSize):
            archive = self.archive(event.root)
            archive.total_size = event.size
            archive.total_hashed = 0
        elif isinstance(event, ev.FileScanned):
            self.file_scanned(event.meta)
        elif isinstance(event, ev.HashingProgress):
            archive = self.archive(event.root)
            archive.total_hashed = event.total_hashed
            archive.file_hashed = event.hashed
        elif isinstance(event, ev.ArchiveScanned):
            self.archive_scanned(event)
        elif isinstance(event, ev.FileRenamed):
            self.file_renamed(event)
        elif isinstance(event, ev.FileDeleted):
            self.file_deleted(event)
        elif isinstance(event, ev.FileCopied):
            self.file_copied(event)
        elif isinstance(event, ev.CopyingProgress):
            self.archive(event.root)
            self.copied_bytes = event.copied
        elif isinstance(event, ev.Error):
            self.error(event)
        elif isinstance(event, ev.Tick):
            self.tick(event)
        elif isinstance(event, ev.AutoResolve):
            self.auto_resolve()
        elif isinstance(event, ev.Quit):
            self.quit = True
        else:
            raise TypeError(f"unhandled event: {event!r}")

    def archive(self, root: Root) -> ArchiveState:
        archive = self.archives.get(root)
        if archive is None:
            raise IndexCorruptionError(f"event for unknown root {root}")
        return archive

    # Scanning

    def file_scanned(self, meta: Meta) -> None:
        self.archive(meta.root)
        if not meta.hash:
            raise IndexCorruptionError(f"scanned file without hash: {meta.id}")
        existing = self.files.get(meta.id)
        if existing is not None:
            if existing.hash == meta.hash:
                return
            self.remove(existing)
        self.add(File.from_meta(meta))

    def archive_scanned(self, event: ev.ArchiveScanned) -> None:
        archive = self.archive(event.root)
        for meta in event.metas:
            if meta.id not in self.files:
                self.file_scanned(meta)
        archive.scanned = True
        archive.total_hashed = archive.total_size
        archive.file_hashed = 0
        logger.info(f"Archive {event.root} scanned, {len(event.metas)} files")

        if not self.ready and all(a.scanned for a in self.archives.values()):
            self.ready = True
            self.refresh_all()
            logger.info(f"All {len(self.roots)} archives scanned, {len(self.by_hash)} hashes")
            if self.auto_resolve_enabled:
                self.auto_resolve()

    # Index

    def add(self, file: File) -> None:
        self.files[file.id] = file
        self.by_hash.setdefault(file.hash, {})[file.id] = file
        self.refresh(file.hash)

    def remove(self, file: File) -> None:
        del self.files[file.id]
        group = self.by_hash[file.hash]
        del group[file.id]
        if not group:
            del self.by_hash[file.hash]
        else:
            self.refresh(file.hash)

    def lookup(self, id: Id) -> File:
        file = self.files.get(id)
        if file is None:
            raise IndexCorruptionError(f"unknown file {id}")
        return file

    def group(self, hash: Hash) -> List[File]:
        return sorted(self.by_hash.get(hash, {}).values(), key=lambda f: (f.name, f.root))

    def all_names(self) -> Set[str]:
        """Every name and directory prefix in use or about to be, across all roots."""
        names = set()
        ids: Iterable[Id] = list(self.files) + list(self.incoming)
        for id in ids:
            names.add(str(id.name))
            names.update(id.name.ancestors())
        return names

    # State

    def busy(self, hash: Hash) -> bool:
        """True while commands for hash are outstanding or a keep is deferred."""
        return bool(self.pending.get(hash)) or hash in self.deferred

    def membership_state(self, hash: Hash) -> State:
        """State from the group's membership alone, ignoring work in flight."""
        files = self.by_hash.get(hash, {}).values()
        per_root = Counter(f.root for f in files)
        if any(count > 1 for count in per_root.values()):
            return State.DUPLICATE
        names = {f.name for f in files}
        if len(names) == 1 and all(per_root.get(root) == 1 for root in self.roots):
            return State.RESOLVED
        return State.ABSENT

    def state(self, hash: Hash) -> State:
        if self.busy(hash) or hash in self.failed:
            return State.PENDING
        return self.membership_state(hash)

    def refresh(self, hash: Hash) -> None:
        state = self.state(hash)
        for file in self.by_hash.get(hash, {}).values():
            file.state = state

    def refresh_all(self) -> None:
        for hash in self.by_hash:
            self.refresh(hash)

    def counts(self) -> Dict[State, int]:
        """Number of hash-groups in each state."""
        return Counter(self.state(hash) for hash in self.by_hash)

    # Commands

    def issue(self, root: Root, command: ev.FileCommand) -> None:
        if root not in self.executors:
            raise IndexCorruptionError(f"no executor for root {root}")
        self.pending[command.hash] += 1
        if isinstance(command, ev.RenameFile):
            self.outgoing.add(command.from_id)
            self.incoming[command.to_id] = command.hash
        elif isinstance(command, ev.DeleteFile):
            self.outgoing.add(command.id)
        elif isinstance(command, ev.CopyFile):
            for target in command.to:
                self.incoming[Id(target, command.from_id.name)] = command.hash
        logger.debug(f"Issuing {command}")
        self.executors[root].send(command)
        self.refresh(command.hash)

    def settle(self, command: ev.FileCommand) -> None:
        """Forget a command's bookkeeping once its terminal event arrived."""
        hash = command.hash
        if not self.pending.get(hash):
            raise IndexCorruptionError(f"completion for hash {hash} with nothing pending")
        self.pending[hash] -= 1
        if not self.pending[hash]:
            del self.pending[hash]
            self.vacating.pop(hash, None)
        if isinstance(command, ev.RenameFile):
            self.outgoing.discard(command.from_id)
            self.incoming.pop(command.to_id, None)
        elif isinstance(command, ev.DeleteFile):
            self.outgoing.discard(command.id)
        elif isinstance(command, ev.CopyFile):
            for target in command.to:
                self.incoming.pop(Id(target, command.from_id.name), None)
            self.copies.pop((command.from_id, hash), None)
            if not self.copies:
                self.copy_size = self.total_copied = self.copied_bytes = 0
        self.refresh(hash)
        self.retry_deferred()
        if hash in self.resolving and not self.busy(hash) and hash not in self.failed:
            self.resolving.discard(hash)
            self.auto_keep(hash)

    def retry_deferred(self) -> None:
        for hash, keep in list(self.deferred.items()):
            if self.pending.get(hash):
                continue
            del self.deferred[hash]
            if hash not in self.by_hash:
                self.refresh(hash)
                continue
            self.keep_hash(hash, keep.source_root, keep.name)

    # Completion events

    def file_renamed(self, event: ev.FileRenamed) -> None:
        file = self.lookup(event.from_id)
        if event.to_id.root != event.from_id.root:
            raise IndexCorruptionError(f"rename across roots: {event.from_id} -> {event.to_id}")
        if event.to_id in self.files:
            raise IndexCorruptionError(f"rename onto indexed file {event.to_id}")
        self.remove(file)
        file.id = event.to_id
        self.add(file)
        self.stats["renamed"] += 1
        self.settle(ev.RenameFile(event.from_id, event.to_id, event.hash))

    def file_deleted(self, event: ev.FileDeleted) -> None:
        self.remove(self.lookup(event.id))
        self.stats["deleted"] += 1
        self.settle(ev.DeleteFile(event.id, event.hash))

    def file_copied(self, event: ev.FileCopied) -> None:
        source = self.lookup(event.from_id)
        for root in event.to:
            self.archive(root)
            target = Id(root, event.from_id.name)
            if target in self.files:
                raise IndexCorruptionError(f"copy onto indexed file {target}")
            self.add(
                File(
                    id=target,
                    size=source.size,
                    mod_time=source.mod_time,
                    hash=event.hash,
                )
            )
        self.stats["copied"] += len(event.to)
        self.total_copied += self.copies.get((event.from_id, event.hash), 0)
        self.copied_bytes = 0
        self.settle(ev.CopyFile(event.from_id, event.to, event.hash))

    def error(self, event: ev.Error) -> None:
        logger.error(f"Error: {event}")
        self.errors.append(event)
        command = event.command
        if isinstance(command, (ev.RenameFile, ev.DeleteFile, ev.CopyFile)):
            if isinstance(command, ev.CopyFile):
                # The failed copy no longer counts towards copy progress
                self.copy_size -= self.copies.get((command.from_id, command.hash), 0)
                self.copied_bytes = 0
            self.failed.add(command.hash)
            # Keeps waiting for this file to move away will not get their name
            for waiting in self.vacating.pop(command.hash, set()):
                if self.deferred.pop(waiting, None) is not None:
                    logger.warning(f"Keep of hash {waiting} failed: {command} did not succeed")
                    self.failed.add(waiting)
                    self.refresh(waiting)
            self.settle(command)

    def tick(self, event: ev.Tick) -> None:
        if self.last_tick is not None:
            elapsed = (event.time - self.last_tick).total_seconds()
            if elapsed > 0:
                self.fps = self.frames / elapsed
        self.frames = 0
        self.last_tick = event.time

    # Keep and delete

    def keep(self, file: File) -> bool:
        """Make file's name canonical for its hash in every root.

        Returns False when the request was refused.
        """
        if self.lookup(file.id) is not file:
            raise IndexCorruptionError(f"stale file {file.id}")
        if not self.ready:
            logger.warning(f"Cannot keep {file.id} before all archives are scanned")
            return False
        if self.busy(file.hash):
            logger.warning(f"Cannot keep {file.id}: hash {file.hash} is pending")
            return False
        self.failed.discard(file.hash)
        logger.info(f"Keep {file.id}")
        self.keep_hash(file.hash, file.root, file.name)
        self.refresh(file.hash)
        return True

    def candidates(self, hash: Hash, name: Name) -> Dict[Root, File]:
        """Pick, per root, the file that will carry the canonical name.

        Preference: exact name, then same directory, then same base name,
        then the first file in name order.
        """

        def rank(f: File) -> int:
            if f.name == name:
                return 0
            if f.name.path == name.path:
                return 1
            if f.name.base == name.base:
                return 2
            return 3

        result: Dict[Root, File] = {}
        for f in self.group(hash):
            prev = result.get(f.root)
            if prev is None or rank(f) < rank(prev):
                result[f.root] = f
        return result

    def vacate(self, target: Id, hash: Hash) -> bool:
        """Make sure target can receive a file with hash.

        Renames away whatever occupies target's name in its root, including
        files below a directory of that name and a file named like one of
        target's directories. Returns True if the name is free now,
        False if the caller has to wait.
        """
        free = True
        # A file where target needs a directory
        for prefix in target.name.ancestors():
            blocker = self.files.get(Id(target.root, Name.parse(prefix)))
            if blocker is not None:
                new_name = unique_name(self.all_names(), self.renamings, blocker.name, blocker.hash)
                self.move_away(blocker, new_name, hash)
                free = False

        # A directory where target needs a file
        folder = str(target.name)
        below = [
            f for f in self.files.values() if f.root == target.root and f.name.in_folder(folder)
        ]
        if below:
            new_dir = str(unique_name(self.all_names(), self.dir_renamings, target.name, ""))
            for f in below:
                self.move_away(f, Name.parse(new_dir + str(f.name)[len(folder) :]), hash)
            free = False

        arriving = self.incoming.get(target)
        if arriving is not None:
            return free and arriving == hash
        occupant = self.files.get(target)
        if occupant is None or occupant.hash == hash:
            return free
        new_name = unique_name(self.all_names(), self.renamings, occupant.name, occupant.hash)
        self.move_away(occupant, new_name, hash)
        return False

    def move_away(self, file: File, new_name: Name, hash: Hash) -> None:
        """Rename file out of the way of a keep of hash.

        Nothing is issued while file is already moving or otherwise busy. A
        file whose own last command failed is not retried; the keep fails too.
        """
        if file.hash in self.failed:
            logger.warning(f"Cannot move {file.id} out of the way: its last command failed")
            self.failed.add(hash)
            return
        self.vacating[file.hash].add(hash)
        if file.id in self.outgoing or self.pending.get(file.hash):
            return
        logger.info(f"Moving {file.id} out of the way to {new_name}")
        self.issue(file.root, ev.RenameFile(file.id, Id(file.root, new_name), file.hash))

    def keep_hash(self, hash: Hash, source_root: Root, name: Name) -> None:
        keep_files = self.candidates(hash, name)
        if source_root not in keep_files:
            logger.warning(f"Dropping keep of {name}: no file with its hash left in {source_root}")
            return

        free = True
        for root in self.roots:
            kept = keep_files.get(root)
            if kept is None or kept.name != name:
                free = self.vacate(Id(root, name), hash) and free
        if hash in self.failed:
            logger.warning(f"Keep of {name} failed: its name cannot be vacated")
            self.refresh(hash)
            return
        if not free:
            logger.info(f"Keep of {name} deferred until its name is free")
            self.deferred[hash] = DeferredKeep(source_root, name)
            self.refresh(hash)
            return

        copy_targets = []
        for root in self.roots:
            kept = keep_files.get(root)
            if kept is None:
                copy_targets.append(root)
                continue
            if kept.name != name:
                self.issue(root, ev.RenameFile(kept.id, Id(root, name), hash))
            for f in self.group(hash):
                if f.root == root and f is not kept:
                    self.issue(root, ev.DeleteFile(f.id, hash))

        if copy_targets:
            # Sent after any rename in the source root, so the executor sees the
            # file at its canonical name by the time it copies
            source_id = Id(source_root, name)
            size = keep_files[source_root].size
            self.copies[(source_id, hash)] = size
            self.copy_size += size
            self.issue(source_root, ev.CopyFile(source_id, tuple(copy_targets), hash))

    def deletable(self, hash: Hash) -> bool:
        """Only extraneous groups, absent from origin and not in flight, may be deleted."""
        if self.busy(hash):
            return False
        if any(f.root == self.origin for f in self.by_hash.get(hash, {}).values()):
            return False
        return self.membership_state(hash) == State.ABSENT

    def delete(self, entry: Entry) -> bool:
        """Delete a file's whole hash-group, or every deletable group below a folder."""
        if not self.ready:
            logger.warning("Cannot delete before all archives are scanned")
            return False
        if isinstance(entry, Folder):
            hashes = {
                f.hash
                for f in self.files.values()
                if f.name.in_folder(entry.path) and self.deletable(f.hash)
            }
        else:
            self.lookup(entry.id)
            hashes = {entry.hash} if self.deletable(entry.hash) else set()

        if not hashes:
            logger.warning(f"Nothing to delete for {entry.name}")
            return False
        for hash in sorted(hashes):
            self.failed.discard(hash)
            for f in self.group(hash):
                self.issue(f.root, ev.DeleteFile(f.id, hash))
        return True

    # Auto-resolution

    def auto_resolve(self) -> None:
        """
        Fix name collisions with origin, then keep every hash with exactly
        one origin file whose copies are missing or misnamed.
        """
        if not self.ready:
            return
        logger.info("Auto-resolving")
        origin_files: Dict[str, Hash] = {}
        origin_dirs: Set[str] = set()
        for file in self.files.values():
            if file.root == self.origin:
                origin_files[str(file.name)] = file.hash
                origin_dirs.update(file.name.ancestors())

        all_names = self.all_names()
        renames: Dict[Hash, List[ev.RenameFile]] = defaultdict(list)
        for file in sorted(self.files.values(), key=lambda f: (f.root, f.name)):
            if file.root == self.origin or file.id in self.outgoing:
                continue
            new_name = self.collision_free_name(file, origin_files, origin_dirs, all_names)
            if new_name is not None:
                renames[file.hash].append(
                    ev.RenameFile(file.id, Id(file.root, new_name), file.hash)
                )

        for hash, commands in renames.items():
            if self.busy(hash):
                continue
            for command in commands:
                self.issue(command.from_id.root, command)

        for hash in sorted(self.by_hash):
            if hash in self.failed:
                continue
            if self.busy(hash):
                self.resolving.add(hash)
                continue
            self.auto_keep(hash)

    def auto_keep(self, hash: Hash) -> None:
        """Keep the single origin file of hash if its copies are missing or misnamed."""
        in_origin = [f for f in self.by_hash.get(hash, {}).values() if f.root == self.origin]
        if len(in_origin) != 1:
            return
        if self.membership_state(hash) == State.RESOLVED:
            return
        self.keep_hash(hash, self.origin, in_origin[0].name)
        self.refresh(hash)

    def collision_free_name(
        self,
        file: File,
        origin_files: Dict[str, Hash],
        origin_dirs: Set[str],
        all_names: Set[str],
    ) -> Optional[Name]:
        """New name for a copy file that collides with origin, or None."""
        name = str(file.name)
        other = origin_files.get(name)
        if (other is not None and other != file.hash) or name in origin_dirs:
            return unique_name(all_names, self.renamings, file.name, file.hash)

        # An ancestor directory that is a file in origin: move the directory
        for prefix in file.name.ancestors():
            if prefix in origin_files:
                new_dir = unique_name(all_names, self.dir_renamings, Name.parse(prefix), "")
                rest = name[len(prefix) :]
                return Name.parse(str(new_dir) + rest)
        return None
