"""Common test fixtures."""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

import pytest

from archiver import events as ev
from archiver.config import ArchiverConfig
from archiver.models import Id, Meta, Name
from archiver.reconciler import Reconciler

MOD_TIME = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


class RecordingSink:
    """Stands in for an executor: records the commands it is sent."""

    def __init__(self):
        self.commands: List[ev.Command] = []

    def send(self, command: ev.Command) -> None:
        self.commands.append(command)


def write_tree(root: Path, files: Dict[str, str]) -> None:
    """Create files below root from a {relative path: content} mapping."""
    root.mkdir(parents=True, exist_ok=True)
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


def read_tree(root: Path) -> Dict[str, str]:
    """Contents of every non-dot file below root."""
    return {
        path.relative_to(root).as_posix(): path.read_text()
        for path in sorted(root.rglob("*"))
        if path.is_file() and not path.name.startswith(".")
    }


def drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


def scan_event(root: Path, files: Dict[str, str]) -> ev.ArchiveScanned:
    """An ArchiveScanned event for {name: hash}; sizes are the hash lengths."""
    metas = tuple(
        Meta(id=Id(root, Name.parse(name)), size=len(hash), mod_time=MOD_TIME, hash=hash)
        for name, hash in files.items()
    )
    return ev.ArchiveScanned(root=root, metas=metas)


def confirm_all(reconciler: Reconciler, sinks: Dict[Path, RecordingSink]) -> List[ev.Command]:
    """Acknowledge every recorded command as successful, until none are left."""
    confirmed = []
    while any(sink.commands for sink in sinks.values()):
        for sink in sinks.values():
            while sink.commands:
                command = sink.commands.pop(0)
                confirmed.append(command)
                if isinstance(command, ev.RenameFile):
                    reconciler.handle_event(
                        ev.FileRenamed(command.from_id, command.to_id, command.hash)
                    )
                elif isinstance(command, ev.DeleteFile):
                    reconciler.handle_event(ev.FileDeleted(command.id, command.hash))
                else:
                    reconciler.handle_event(
                        ev.FileCopied(command.from_id, command.to, command.hash)
                    )
    return confirmed


@pytest.fixture
def app_config(tmp_path) -> ArchiverConfig:
    """Config with tiny buffers so small test files span several chunks."""
    return ArchiverConfig(
        home=tmp_path / "home",
        hash_chunk_size=4,
        copy_chunk_size=4,
        event_queue_size=64,
        tick_interval=0.05,
    )


@pytest.fixture
def roots() -> List[Path]:
    return [Path("/origin"), Path("/copy1"), Path("/copy2")]


@pytest.fixture
def sinks(roots) -> Dict[Path, RecordingSink]:
    return {root: RecordingSink() for root in roots}


@pytest.fixture
def reconciler(roots, sinks) -> Reconciler:
    return Reconciler(roots, sinks, auto_resolve=False)


@pytest.fixture
def events() -> asyncio.Queue:
    return asyncio.Queue()
