"""Command module for archiver sync operations."""

import asyncio
from pathlib import Path
from typing import List

import typer
from loguru import logger
from rich.console import Console

from archiver.cli.app import app
from archiver.cli.commands.status import display_errors, display_status
from archiver.cli.progress import SessionProgress
from archiver.config import ArchiverConfig, config
from archiver.reconciler import Reconciler
from archiver.session import ArchiveSession

console = Console()


def display_sync_summary(reconciler: Reconciler) -> None:
    """Display a one-line summary of executed operations."""
    stats = reconciler.stats
    total = sum(stats.values())
    if total == 0:
        console.print("[green]Nothing to do[/green]")
        return

    changes = []
    if stats["copied"]:
        changes.append(f"[green]{stats['copied']} copied[/green]")
    if stats["renamed"]:
        changes.append(f"[blue]{stats['renamed']} renamed[/blue]")
    if stats["deleted"]:
        changes.append(f"[red]{stats['deleted']} deleted[/red]")
    console.print(f"Applied {total} operations ({', '.join(changes)})")


async def run_sync(roots: List[Path], app_config: ArchiverConfig, auto: bool = True) -> Reconciler:
    """Scan, auto-resolve and wait until every issued operation is confirmed."""
    session_config = app_config.model_copy(update={"auto_resolve": auto})
    with SessionProgress(console) as progress:
        session = ArchiveSession(roots, session_config, render=progress)
        return await session.run_until(session.idle)


@app.command()
def sync(
    origin: Path = typer.Argument(..., help="Origin directory, the source of truth"),
    copies: List[Path] = typer.Argument(..., help="Copy directories to bring in line"),
    auto: bool = typer.Option(True, "--auto/--no-auto", help="Run auto-resolution"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="List remaining files"),
):
    """Bring copies into agreement with the origin."""
    try:
        reconciler = asyncio.run(run_sync([origin, *copies], config, auto))
    except Exception as e:
        logger.error(f"Error during sync: {e}")
        typer.echo(f"Error during sync: {e}", err=True)
        raise typer.Exit(1)

    display_sync_summary(reconciler)
    display_status(reconciler, verbose)
    display_errors(reconciler.errors)
    if reconciler.errors:
        raise typer.Exit(1)
