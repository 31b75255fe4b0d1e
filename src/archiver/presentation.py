"""Read-only projection of reconciler state for a UI, and handling of UI intents.

Nothing here is authoritative: folder listings are rebuilt from the reconciler
index on every snapshot, and only the per-folder cursor, scroll offset and sort
order are remembered between renders.
"""

import subprocess
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Literal, Optional, Tuple

from loguru import logger
from pydantic import BaseModel

from archiver import events as ev
from archiver.models import Entry, File, Folder, Name, State
from archiver.reconciler import Reconciler
from archiver.utils import format_size

# Lines of a screen not available to the file list: header, column titles, stats
RESERVED_LINES = 6
DEFAULT_TREE_LINES = 20

EntryKey = Tuple[str, ...]


def entry_key(entry: Entry) -> EntryKey:
    if isinstance(entry, Folder):
        return ("folder", entry.path)
    return ("file", str(entry.name), entry.hash)


def entry_label(entry: Entry) -> str:
    return entry.name.base


@dataclass
class FolderView:
    """Per-folder UI state."""

    selected: Optional[EntryKey] = None
    line_offset: int = 0
    sort_column: ev.SortColumn = ev.SortColumn.NAME
    sort_ascending: Dict[ev.SortColumn, bool] = field(
        default_factory=lambda: {
            ev.SortColumn.NAME: True,
            ev.SortColumn.STATE: False,
            ev.SortColumn.TIME: False,
            ev.SortColumn.SIZE: False,
        }
    )


class EntryView(BaseModel):
    kind: Literal["file", "folder"]
    name: str
    size: int
    size_text: str
    mod_time: datetime
    state: State
    selected: bool = False


class RootProgress(BaseModel):
    root: str
    scanned: bool
    total_size: int
    total_hashed: int
    hashing_percent: float


class Snapshot(BaseModel):
    """Everything a renderer needs for one frame."""

    path: str
    breadcrumbs: List[str]
    entries: List[EntryView]
    total_entries: int
    line_offset: int
    sort_column: ev.SortColumn
    sort_ascending: bool
    roots: List[RootProgress]
    copy_size: int
    copied: int
    copying_percent: float
    pending: int
    duplicate: int
    absent: int
    errors: List[str]
    ready: bool
    fps: float


def sort_entries(entries: List[Entry], column: ev.SortColumn, ascending: bool) -> List[Entry]:
    def name(e: Entry) -> str:
        return e.name.base.lower()

    if column == ev.SortColumn.NAME:
        result = sorted(entries, key=lambda e: (name(e), e.state.severity, e.mod_time))
    elif column == ev.SortColumn.STATE:
        # Within one state names run in reverse order
        result = sorted(entries, key=name, reverse=True)
        result.sort(key=lambda e: e.state.severity)
    elif column == ev.SortColumn.TIME:
        result = sorted(entries, key=lambda e: (e.mod_time, name(e)))
    else:
        result = sorted(entries, key=lambda e: (e.size, name(e)))
    if not ascending:
        result.reverse()
    return result


def reveal_command(path: Path) -> List[str]:
    if sys.platform == "darwin":
        return ["open", "-R", str(path)]
    if sys.platform == "win32":
        return ["explorer", f"/select,{path}"]
    return ["xdg-open", str(path.parent)]


def open_command(path: Path) -> List[str]:
    if sys.platform == "darwin":
        return ["open", str(path)]
    if sys.platform == "win32":
        return ["explorer", str(path)]
    return ["xdg-open", str(path)]


class Presentation:
    """Folder navigation over a reconciler, driven by UI intents."""

    def __init__(self, reconciler: Reconciler):
        self.reconciler = reconciler
        self.current_path = ""
        self.folders: Dict[str, FolderView] = {}
        self.tree_lines = DEFAULT_TREE_LINES

    @property
    def folder(self) -> FolderView:
        return self.folders.setdefault(self.current_path, FolderView())

    def entries(self, path: Optional[str] = None) -> List[Entry]:
        """Sorted listing of a folder: one entry per distinct (name, hash), plus sub-folders."""
        if path is None:
            path = self.current_path
        origin = self.reconciler.origin
        files: Dict[Tuple[Name, str], File] = {}
        folders: Dict[str, Folder] = {}
        seen: Dict[str, set] = {}

        for file in self.reconciler.files.values():
            if not file.name.in_folder(path):
                continue
            key = (file.name, file.hash)
            if file.name.path == path:
                prev = files.get(key)
                if prev is None or (file.root == origin and prev.root != origin):
                    files[key] = file
                continue
            # Below a sub-folder: count each distinct (name, hash) once
            rest = file.name.path[len(path) + 1 :] if path else file.name.path
            child = rest.split("/", 1)[0]
            child_path = f"{path}/{child}" if path else child
            folder = folders.get(child_path)
            if folder is None:
                folder = folders[child_path] = Folder(Name(path, child))
                seen[child_path] = set()
            if key in seen[child_path]:
                folder.state = folder.state.merge(file.state)
                continue
            seen[child_path].add(key)
            folder.add(file.size, file.mod_time, file.state)

        listing: List[Entry] = list(files.values()) + list(folders.values())
        view = self.folders.get(path) or FolderView()
        return sort_entries(listing, view.sort_column, view.sort_ascending[view.sort_column])

    def selected(self) -> Optional[Entry]:
        key = self.folder.selected
        if key is None:
            return None
        for entry in self.entries():
            if entry_key(entry) == key:
                return entry
        return None

    def selected_index(self, entries: List[Entry]) -> Optional[int]:
        key = self.folder.selected
        for i, entry in enumerate(entries):
            if entry_key(entry) == key:
                return i
        return None

    # Intents

    def handle_intent(self, intent: ev.Intent) -> None:
        if isinstance(intent, ev.ScreenSize):
            self.tree_lines = max(1, intent.height - RESERVED_LINES)
        elif isinstance(intent, ev.SelectFile):
            self.select_file(intent.name)
        elif isinstance(intent, ev.SelectFolder):
            self.current_path = intent.path
        elif isinstance(intent, ev.SortBy):
            self.sort_by(intent.column)
        elif isinstance(intent, ev.MoveSelection):
            self.move_selection(intent.lines)
            self.make_selected_visible()
        elif isinstance(intent, ev.SelectFirst):
            self.select_edge(first=True)
            self.make_selected_visible()
        elif isinstance(intent, ev.SelectLast):
            self.select_edge(first=False)
            self.make_selected_visible()
        elif isinstance(intent, ev.Scroll):
            self.shift_offset(intent.lines)
        elif isinstance(intent, ev.PageUp):
            self.shift_offset(-self.tree_lines)
            self.move_selection(-self.tree_lines)
        elif isinstance(intent, ev.PageDown):
            self.shift_offset(self.tree_lines)
            self.move_selection(self.tree_lines)
        elif isinstance(intent, ev.Enter):
            self.enter()
        elif isinstance(intent, ev.Exit):
            self.exit()
        elif isinstance(intent, ev.KeepOne):
            selected = self.selected()
            if isinstance(selected, File):
                self.reconciler.keep(selected)
        elif isinstance(intent, ev.DeleteSelected):
            selected = self.selected()
            if selected is not None:
                self.reconciler.delete(selected)
        elif isinstance(intent, ev.Tab):
            self.tab()
        elif isinstance(intent, ev.RevealInFileManager):
            selected = self.selected()
            if isinstance(selected, File):
                self.run(reveal_command(selected.id.abs_path))
        else:
            raise TypeError(f"unhandled intent: {intent!r}")

    def select_file(self, name: Name) -> None:
        for entry in self.entries():
            if isinstance(entry, File) and entry.name == name:
                self.folder.selected = entry_key(entry)
                self.make_selected_visible()
                return

    def sort_by(self, column: ev.SortColumn) -> None:
        folder = self.folder
        if folder.sort_column == column:
            folder.sort_ascending[column] = not folder.sort_ascending[column]
        else:
            folder.sort_column = column

    def select_edge(self, first: bool) -> None:
        entries = self.entries()
        if entries:
            self.folder.selected = entry_key(entries[0] if first else entries[-1])

    def move_selection(self, lines: int) -> None:
        entries = self.entries()
        if not entries:
            return
        idx = self.selected_index(entries)
        if idx is None:
            if lines > 0:
                self.folder.selected = entry_key(entries[0])
            elif lines < 0:
                self.folder.selected = entry_key(entries[-1])
            return
        idx = min(max(idx + lines, 0), len(entries) - 1)
        self.folder.selected = entry_key(entries[idx])

    def shift_offset(self, lines: int) -> None:
        folder = self.folder
        n_entries = len(self.entries())
        folder.line_offset = min(max(folder.line_offset + lines, 0), max(n_entries - 1, 0))

    def make_selected_visible(self) -> None:
        entries = self.entries()
        idx = self.selected_index(entries)
        if idx is None:
            return
        folder = self.folder
        if folder.line_offset > idx:
            folder.line_offset = idx
        if folder.line_offset < idx + 1 - self.tree_lines:
            folder.line_offset = idx + 1 - self.tree_lines

    def enter(self) -> None:
        selected = self.selected()
        if isinstance(selected, Folder):
            self.current_path = selected.path
        elif isinstance(selected, File):
            self.run(open_command(selected.id.abs_path))

    def exit(self) -> None:
        if self.current_path:
            self.current_path = self.current_path.rpartition("/")[0]

    def tab(self) -> None:
        """Jump to the next name, in name order, under which the selected content exists."""
        selected = self.selected()
        if not isinstance(selected, File):
            return
        names = sorted({f.name for f in self.reconciler.by_hash.get(selected.hash, {}).values()})
        if not names:
            return
        idx = names.index(selected.name) if selected.name in names else -1
        name = names[(idx + 1) % len(names)]
        self.current_path = name.path
        self.folder.selected = ("file", str(name), selected.hash)
        self.make_selected_visible()

    @staticmethod
    def run(command: List[str]) -> None:
        logger.debug(f"Running {command}")
        try:
            subprocess.Popen(command)
        except OSError as e:
            logger.warning(f"Failed to run {command[0]}: {e}")

    # Snapshot

    def snapshot(self) -> Snapshot:
        r = self.reconciler
        entries = self.entries()
        folder = self.folder
        visible = entries[folder.line_offset : folder.line_offset + self.tree_lines]
        counts = r.counts()

        roots = []
        for archive in r.archives.values():
            if archive.scanned or archive.total_size == 0:
                percent = 100.0 if archive.scanned else 0.0
            else:
                percent = archive.total_hashed * 100 / archive.total_size
            roots.append(
                RootProgress(
                    root=str(archive.root),
                    scanned=archive.scanned,
                    total_size=archive.total_size,
                    total_hashed=archive.total_hashed,
                    hashing_percent=percent,
                )
            )

        copied = r.total_copied + r.copied_bytes
        breadcrumbs = self.current_path.split("/") if self.current_path else []
        return Snapshot(
            path=self.current_path,
            breadcrumbs=breadcrumbs,
            entries=[
                EntryView(
                    kind="folder" if isinstance(e, Folder) else "file",
                    name=entry_label(e),
                    size=e.size,
                    size_text=format_size(e.size),
                    mod_time=e.mod_time,
                    state=e.state,
                    selected=entry_key(e) == folder.selected,
                )
                for e in visible
            ],
            total_entries=len(entries),
            line_offset=folder.line_offset,
            sort_column=folder.sort_column,
            sort_ascending=folder.sort_ascending[folder.sort_column],
            roots=roots,
            copy_size=r.copy_size,
            copied=copied,
            copying_percent=copied * 100 / r.copy_size if r.copy_size else 0.0,
            pending=counts.get(State.PENDING, 0),
            duplicate=counts.get(State.DUPLICATE, 0),
            absent=counts.get(State.ABSENT, 0),
            errors=[str(e) for e in r.errors],
            ready=r.ready,
            fps=r.fps,
        )
