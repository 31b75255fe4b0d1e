"""Core data model shared by scanner, executor and reconciler."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Tuple, Union

# A root is the local path of one tracked file tree
Root = Path

# Content fingerprint, sha256 encoded as unpadded base64url
Hash = str

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True, order=True)
class Name:
    """A file name relative to its root: slash separated directory path and base name."""

    path: str
    base: str

    @classmethod
    def parse(cls, value: str) -> "Name":
        path, _, base = value.rpartition("/")
        return cls(path=path, base=base)

    def __str__(self) -> str:
        if self.path:
            return f"{self.path}/{self.base}"
        return self.base

    @property
    def parts(self) -> Tuple[str, ...]:
        return tuple(str(self).split("/"))

    def ancestors(self) -> Tuple[str, ...]:
        """Directory prefixes of this name, outermost first: "a/b/c" -> ("a", "a/b")."""
        parts = self.parts
        return tuple("/".join(parts[:i]) for i in range(1, len(parts)))

    def in_folder(self, folder: str) -> bool:
        """True if this name lives anywhere below folder ("" is the tree root)."""
        if not folder:
            return True
        return self.path == folder or self.path.startswith(folder + "/")


@dataclass(frozen=True, order=True)
class Id:
    """Addresses one file within one root at a point in time."""

    root: Root
    name: Name

    @property
    def abs_path(self) -> Path:
        return self.root / str(self.name)

    def __str__(self) -> str:
        return str(self.abs_path)


@dataclass(frozen=True)
class Meta:
    """File metadata as produced by the scanner."""

    id: Id
    size: int
    mod_time: datetime
    hash: Hash = ""

    @property
    def root(self) -> Root:
        return self.id.root

    @property
    def name(self) -> Name:
        return self.id.name


class State(str, Enum):
    """Reconciliation state of a hash-group, ordered by severity."""

    RESOLVED = "resolved"
    PENDING = "pending"
    ABSENT = "absent"
    DUPLICATE = "duplicate"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    def merge(self, other: "State") -> "State":
        """The more severe of two states; used to roll file states up into folders."""
        if other.severity > self.severity:
            return other
        return self


_SEVERITY = {
    State.RESOLVED: 0,
    State.PENDING: 1,
    State.ABSENT: 2,
    State.DUPLICATE: 3,
}


@dataclass
class File:
    """A regular file owned by the reconciler index."""

    id: Id
    size: int
    mod_time: datetime
    hash: Hash
    state: State = State.RESOLVED

    @classmethod
    def from_meta(cls, meta: Meta) -> "File":
        return cls(id=meta.id, size=meta.size, mod_time=meta.mod_time, hash=meta.hash)

    @property
    def root(self) -> Root:
        return self.id.root

    @property
    def name(self) -> Name:
        return self.id.name


@dataclass
class Folder:
    """A directory aggregated from the files below it."""

    name: Name
    size: int = 0
    mod_time: datetime = EPOCH
    state: State = State.RESOLVED

    @property
    def path(self) -> str:
        """The folder's own path relative to the root."""
        return str(self.name)

    def add(self, size: int, mod_time: datetime, state: State) -> None:
        self.size += size
        if mod_time > self.mod_time:
            self.mod_time = mod_time
        self.state = self.state.merge(state)


# Tagged variant used by the presentation layer and the delete intent
Entry = Union[File, Folder]
