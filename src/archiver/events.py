"""Messages exchanged between scanner, executor, reconciler and the UI.

Commands flow from the reconciler to per-root workers, events flow back on the
shared event queue, and intents are injected by the UI (or a scripted driver).
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple, Union, get_args

from archiver.models import Hash, Id, Meta, Name, Root


# Commands


@dataclass(frozen=True)
class ScanArchive:
    pass


@dataclass(frozen=True)
class RenameFile:
    from_id: Id
    to_id: Id
    hash: Hash


@dataclass(frozen=True)
class DeleteFile:
    id: Id
    hash: Hash


@dataclass(frozen=True)
class CopyFile:
    """Copy one file to the same name in each of several other roots."""

    from_id: Id
    to: Tuple[Root, ...]
    hash: Hash


FileCommand = Union[RenameFile, DeleteFile, CopyFile]
Command = Union[ScanArchive, RenameFile, DeleteFile, CopyFile]


# Events


@dataclass(frozen=True)
class TotalSize:
    """Bytes the scanner of root still has to hash."""

    root: Root
    size: int


@dataclass(frozen=True)
class FileScanned:
    meta: Meta


@dataclass(frozen=True)
class HashingProgress:
    root: Root
    name: Name
    hashed: int
    total_hashed: int


@dataclass(frozen=True)
class ArchiveScanned:
    root: Root
    metas: Tuple[Meta, ...] = ()


@dataclass(frozen=True)
class FileRenamed:
    from_id: Id
    to_id: Id
    hash: Hash


@dataclass(frozen=True)
class FileDeleted:
    id: Id
    hash: Hash


@dataclass(frozen=True)
class FileCopied:
    from_id: Id
    to: Tuple[Root, ...]
    hash: Hash


@dataclass(frozen=True)
class CopyingProgress:
    """Bytes of the current file that every copy target has written."""

    root: Root
    copied: int


@dataclass(frozen=True)
class Error:
    id: Optional[Id]
    error: str
    command: Optional[Command] = None

    @property
    def hash(self) -> Optional[Hash]:
        return getattr(self.command, "hash", None)

    def __str__(self) -> str:
        if self.id is None:
            return self.error
        return f"{self.id}: {self.error}"


@dataclass(frozen=True)
class Tick:
    time: datetime


# UI intents


class SortColumn(str, Enum):
    NAME = "name"
    STATE = "state"
    TIME = "time"
    SIZE = "size"


@dataclass(frozen=True)
class ScreenSize:
    width: int
    height: int


@dataclass(frozen=True)
class SelectFile:
    name: Name


@dataclass(frozen=True)
class SelectFolder:
    path: str


@dataclass(frozen=True)
class SortBy:
    column: SortColumn


@dataclass(frozen=True)
class MoveSelection:
    lines: int


@dataclass(frozen=True)
class SelectFirst:
    pass


@dataclass(frozen=True)
class SelectLast:
    pass


@dataclass(frozen=True)
class Scroll:
    lines: int


@dataclass(frozen=True)
class PageUp:
    pass


@dataclass(frozen=True)
class PageDown:
    pass


@dataclass(frozen=True)
class Enter:
    pass


@dataclass(frozen=True)
class Exit:
    pass


@dataclass(frozen=True)
class KeepOne:
    pass


@dataclass(frozen=True)
class DeleteSelected:
    pass


@dataclass(frozen=True)
class Tab:
    pass


@dataclass(frozen=True)
class RevealInFileManager:
    pass


@dataclass(frozen=True)
class AutoResolve:
    pass


@dataclass(frozen=True)
class Quit:
    pass


Intent = Union[
    ScreenSize,
    SelectFile,
    SelectFolder,
    SortBy,
    MoveSelection,
    SelectFirst,
    SelectLast,
    Scroll,
    PageUp,
    PageDown,
    Enter,
    Exit,
    KeepOne,
    DeleteSelected,
    Tab,
    RevealInFileManager,
    AutoResolve,
    Quit,
]

Event = Union[
    TotalSize,
    FileScanned,
    HashingProgress,
    ArchiveScanned,
    FileRenamed,
    FileDeleted,
    FileCopied,
    CopyingProgress,
    Error,
    Tick,
    Intent,
]

INTENTS = get_args(Intent)
