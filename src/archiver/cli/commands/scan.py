"""Scan command for archiver CLI."""

import asyncio
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn
from rich.tree import Tree

from archiver import events as ev
from archiver.cli.app import app
from archiver.config import ArchiverConfig, config
from archiver.scanner import ArchiveScanner, ScanResult
from archiver.utils import format_size

console = Console()


def display_scan_result(root: Path, result: ScanResult) -> None:
    """Display a scan summary."""
    tree = Tree(f"[bold]{root}[/bold]")
    total = sum(meta.size for meta in result.metas)
    tree.add(f"{len(result.metas)} files, {format_size(total)} bytes")
    tree.add(f"[green]{result.cached} unchanged[/green] (hash reused from cache)")
    tree.add(f"[yellow]{result.hashed} hashed[/yellow] ({format_size(result.hashed_bytes)} bytes)")
    if result.cancelled:
        tree.add("[red]Scan was interrupted[/red]")
    if result.errors:
        errors = tree.add(f"[red]{len(result.errors)} errors[/red]")
        for path, error in sorted(result.errors.items()):
            errors.add(f"[red]{path}[/red]: {error}")
    console.print(Panel(tree, expand=False))


async def run_scan(root: Path, app_config: ArchiverConfig) -> ScanResult:
    """Scan one root, refreshing its cache, with a progress bar."""
    events: "asyncio.Queue[ev.Event]" = asyncio.Queue(maxsize=app_config.event_queue_size)
    scanner = ArchiveScanner(root, events, app_config)

    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Hashing", total=None)

        async def show_progress() -> None:
            while True:
                event = await events.get()
                if isinstance(event, ev.TotalSize):
                    progress.update(task, total=event.size)
                elif isinstance(event, ev.HashingProgress):
                    progress.update(task, completed=event.total_hashed)

        consumer = asyncio.create_task(show_progress())
        try:
            return await scanner.scan()
        finally:
            consumer.cancel()


@app.command()
def scan(
    root: Path = typer.Argument(..., help="Directory to scan"),
):
    """Hash a directory tree and refresh its metadata cache."""
    try:
        root = root.expanduser().resolve()
        if not root.is_dir():
            raise typer.BadParameter(f"not a directory: {root}")
        result = asyncio.run(run_scan(root, config))
        display_scan_result(root, result)
    except typer.BadParameter:
        raise
    except Exception as e:
        logger.error(f"Error scanning {root}: {e}")
        typer.echo(f"Error scanning {root}: {e}", err=True)
        raise typer.Exit(1)
