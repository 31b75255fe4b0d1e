"""Rich progress rendering of session snapshots."""

from pathlib import Path
from typing import Dict

from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TextColumn

from archiver.presentation import Snapshot


class SessionProgress:
    """Renders hashing progress per root and overall copying progress."""

    def __init__(self, console: Console):
        self.progress = Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>5.1f}%"),
            console=console,
            transient=True,
        )
        self.hashing: Dict[str, TaskID] = {}
        self.copying = None

    def __enter__(self) -> "SessionProgress":
        self.progress.start()
        return self

    def __exit__(self, *exc) -> None:
        self.progress.stop()

    def __call__(self, snapshot: Snapshot) -> None:
        for root in snapshot.roots:
            task = self.hashing.get(root.root)
            if task is None:
                task = self.hashing[root.root] = self.progress.add_task(
                    f"Hashing {Path(root.root).name}", total=100.0
                )
            self.progress.update(task, completed=root.hashing_percent)

        if snapshot.copy_size:
            if self.copying is None:
                self.copying = self.progress.add_task("Copying", total=100.0)
            self.progress.update(self.copying, completed=snapshot.copying_percent)
