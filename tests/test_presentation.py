"""Tests for folder navigation, sorting and snapshots."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from archiver import events as ev
from archiver.models import File, Folder, Id, Name, State
from archiver.presentation import (
    RESERVED_LINES,
    Presentation,
    entry_label,
    open_command,
    reveal_command,
)
from conftest import scan_event


def labels(entries):
    return [entry_label(e) for e in entries]


@pytest.fixture
def presentation(reconciler, roots) -> Presentation:
    origin, copy1, copy2 = roots
    trees = {
        origin: {"b.txt": "bb", "a.txt": "aaaa", "docs/x": "xxx", "docs/y": "yyyyy"},
        copy1: {"b.txt": "bb", "docs/x": "xxx", "old.txt": "aaaa"},
        copy2: {"b.txt": "bb", "docs/x": "xxx", "docs/y": "yyyyy", "a.txt": "aaaa"},
    }
    for root, files in trees.items():
        reconciler.handle_event(scan_event(root, files))
    return Presentation(reconciler)


def test_listing(presentation, roots):
    entries = presentation.entries()
    assert labels(entries) == ["a.txt", "b.txt", "docs", "old.txt"]

    a_txt = entries[0]
    assert isinstance(a_txt, File)
    assert a_txt.root == roots[0]

    docs = entries[2]
    assert isinstance(docs, Folder)
    assert docs.path == "docs"
    # Each distinct (name, hash) below the folder counts once
    assert docs.size == 3 + 5
    assert docs.state == State.ABSENT

    assert labels(presentation.entries("docs")) == ["x", "y"]


def test_sort_by_size_toggles(presentation):
    presentation.handle_intent(ev.SortBy(ev.SortColumn.SIZE))
    assert labels(presentation.entries()) == ["docs", "old.txt", "a.txt", "b.txt"]

    presentation.handle_intent(ev.SortBy(ev.SortColumn.SIZE))
    assert labels(presentation.entries()) == ["b.txt", "a.txt", "old.txt", "docs"]

    presentation.handle_intent(ev.SortBy(ev.SortColumn.NAME))
    assert labels(presentation.entries()) == ["a.txt", "b.txt", "docs", "old.txt"]


def test_sort_by_state(presentation):
    presentation.handle_intent(ev.SortBy(ev.SortColumn.STATE))
    assert labels(presentation.entries()) == ["a.txt", "docs", "old.txt", "b.txt"]


def test_sort_order_is_per_folder(presentation):
    presentation.handle_intent(ev.SortBy(ev.SortColumn.SIZE))
    presentation.handle_intent(ev.SelectFolder("docs"))
    assert labels(presentation.entries()) == ["x", "y"]


def test_selection_moves_and_clamps(presentation):
    presentation.handle_intent(ev.SelectFirst())
    assert entry_label(presentation.selected()) == "a.txt"

    presentation.handle_intent(ev.MoveSelection(2))
    assert entry_label(presentation.selected()) == "docs"

    presentation.handle_intent(ev.MoveSelection(10))
    assert entry_label(presentation.selected()) == "old.txt"

    presentation.handle_intent(ev.MoveSelection(-100))
    assert entry_label(presentation.selected()) == "a.txt"

    presentation.handle_intent(ev.SelectLast())
    assert entry_label(presentation.selected()) == "old.txt"


def test_move_without_selection(presentation):
    presentation.handle_intent(ev.MoveSelection(-1))
    assert entry_label(presentation.selected()) == "old.txt"


def test_select_file(presentation):
    presentation.handle_intent(ev.SelectFolder("docs"))
    presentation.handle_intent(ev.SelectFile(Name("docs", "y")))
    assert presentation.selected().name == Name("docs", "y")


def test_paging_and_scrolling(presentation):
    presentation.handle_intent(ev.ScreenSize(width=80, height=RESERVED_LINES + 2))
    assert presentation.tree_lines == 2

    presentation.handle_intent(ev.SelectFirst())
    presentation.handle_intent(ev.PageDown())
    assert presentation.folder.line_offset == 2
    assert entry_label(presentation.selected()) == "docs"
    assert [e.name for e in presentation.snapshot().entries] == ["docs", "old.txt"]

    presentation.handle_intent(ev.PageUp())
    assert presentation.folder.line_offset == 0
    assert entry_label(presentation.selected()) == "a.txt"

    presentation.handle_intent(ev.MoveSelection(3))
    assert presentation.folder.line_offset == 2

    presentation.handle_intent(ev.Scroll(-1))
    assert presentation.folder.line_offset == 1
    presentation.handle_intent(ev.Scroll(100))
    assert presentation.folder.line_offset == 3


def test_enter_and_exit(presentation):
    presentation.handle_intent(ev.SelectFirst())
    presentation.handle_intent(ev.MoveSelection(2))
    presentation.handle_intent(ev.Enter())
    assert presentation.current_path == "docs"
    assert presentation.snapshot().breadcrumbs == ["docs"]

    presentation.handle_intent(ev.Exit())
    assert presentation.current_path == ""
    # The folder remembers its cursor
    assert entry_label(presentation.selected()) == "docs"

    presentation.handle_intent(ev.Exit())
    assert presentation.current_path == ""


def test_enter_opens_files(presentation):
    presentation.handle_intent(ev.SelectFirst())
    with patch("archiver.presentation.subprocess.Popen") as popen:
        presentation.handle_intent(ev.Enter())
    popen.assert_called_once_with(open_command(Path("/origin/a.txt")))
    assert presentation.current_path == ""


def test_reveal_in_file_manager(presentation):
    presentation.handle_intent(ev.SelectFile(Name("", "old.txt")))
    with patch("archiver.presentation.subprocess.Popen") as popen:
        presentation.handle_intent(ev.RevealInFileManager())
    popen.assert_called_once_with(reveal_command(Path("/copy1/old.txt")))


def test_reveal_failure_is_not_fatal(presentation):
    presentation.handle_intent(ev.SelectFirst())
    with patch("archiver.presentation.subprocess.Popen", side_effect=FileNotFoundError("nope")):
        presentation.handle_intent(ev.RevealInFileManager())


def test_tab_cycles_names_of_same_content(presentation):
    presentation.handle_intent(ev.SelectFirst())
    presentation.handle_intent(ev.Tab())
    assert entry_label(presentation.selected()) == "old.txt"
    presentation.handle_intent(ev.Tab())
    assert entry_label(presentation.selected()) == "a.txt"


def test_keep_selected(presentation, sinks, roots):
    origin, copy1, _ = roots
    presentation.handle_intent(ev.SelectFirst())
    presentation.handle_intent(ev.KeepOne())
    assert sinks[copy1].commands == [
        ev.RenameFile(Id(copy1, Name("", "old.txt")), Id(copy1, Name("", "a.txt")), "aaaa")
    ]
    assert presentation.selected().state == State.PENDING

    # Folders cannot be kept
    presentation.handle_intent(ev.MoveSelection(2))
    presentation.handle_intent(ev.KeepOne())
    assert len(sinks[copy1].commands) == 1


def test_delete_selected_folder(reconciler, roots, sinks):
    origin, copy1, copy2 = roots
    reconciler.handle_event(scan_event(origin, {"a": "h1"}))
    reconciler.handle_event(scan_event(copy1, {"a": "h1", "junk/z": "zz"}))
    reconciler.handle_event(scan_event(copy2, {"a": "h1", "junk/z": "zz"}))
    presentation = Presentation(reconciler)

    presentation.handle_intent(ev.SelectLast())
    assert isinstance(presentation.selected(), Folder)
    presentation.handle_intent(ev.DeleteSelected())
    assert sinks[copy1].commands == [ev.DeleteFile(Id(copy1, Name("junk", "z")), "zz")]
    assert sinks[copy2].commands == [ev.DeleteFile(Id(copy2, Name("junk", "z")), "zz")]
    assert presentation.selected().state == State.PENDING


def test_snapshot(presentation, roots, reconciler):
    origin, copy1, _ = roots
    presentation.handle_intent(ev.SelectFolder("docs"))
    presentation.handle_intent(ev.SelectFile(Name("docs", "y")))
    presentation.handle_intent(ev.KeepOne())
    reconciler.handle_event(ev.CopyingProgress(origin, 2))

    snapshot = presentation.snapshot()
    assert snapshot.path == "docs"
    assert [e.name for e in snapshot.entries] == ["x", "y"]
    assert [e.selected for e in snapshot.entries] == [False, True]
    assert snapshot.entries[1].state == State.PENDING
    assert snapshot.copy_size == 5
    assert snapshot.copied == 2
    assert snapshot.copying_percent == 40.0
    assert snapshot.pending == 1
    assert snapshot.absent == 1
    assert snapshot.duplicate == 0
    assert snapshot.ready
    assert all(root.hashing_percent == 100.0 for root in snapshot.roots)

    data = json.loads(snapshot.model_dump_json())
    assert data["sort_column"] == "name"
    assert data["sort_ascending"] is True
    assert data["entries"][1]["kind"] == "file"


def test_snapshot_while_hashing(reconciler, roots):
    origin = roots[0]
    reconciler.handle_event(ev.TotalSize(origin, 200))
    reconciler.handle_event(ev.HashingProgress(origin, Name("", "big"), 50, 50))

    snapshot = Presentation(reconciler).snapshot()
    assert not snapshot.ready
    assert snapshot.roots[0].hashing_percent == 25.0
    assert snapshot.roots[1].hashing_percent == 0.0
    assert snapshot.entries == []


def test_unknown_intent(presentation):
    with pytest.raises(TypeError):
        presentation.handle_intent(ev.Quit())
