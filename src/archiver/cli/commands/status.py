"""Status command for archiver CLI."""

import asyncio
from collections import defaultdict
from pathlib import Path
from typing import Dict, List

import typer
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.tree import Tree

from archiver import events as ev
from archiver.cli.app import app
from archiver.cli.progress import SessionProgress
from archiver.config import ArchiverConfig, config
from archiver.models import File, State
from archiver.reconciler import Reconciler
from archiver.session import ArchiveSession

# Create rich console
console = Console()

STATE_STYLES = {
    State.DUPLICATE: "magenta",
    State.ABSENT: "yellow",
    State.PENDING: "cyan",
    State.RESOLVED: "green",
}


def unresolved_groups(reconciler: Reconciler) -> Dict[State, List[List[File]]]:
    """Hash-groups that are not resolved, by state, each group sorted by name."""
    groups: Dict[State, List[List[File]]] = defaultdict(list)
    for hash in sorted(reconciler.by_hash):
        state = reconciler.state(hash)
        if state != State.RESOLVED:
            groups[state].append(reconciler.group(hash))
    return groups


def display_status(reconciler: Reconciler, verbose: bool = False) -> None:
    """Display unresolved hash-groups using Rich."""
    origin = reconciler.origin
    tree = Tree(f"[bold]{origin}[/bold] and {len(reconciler.roots) - 1} copies")
    groups = unresolved_groups(reconciler)

    if not groups:
        tree.add("[green]All copies agree with origin[/green]")
        console.print(Panel(tree, expand=False))
        return

    for state in (State.DUPLICATE, State.ABSENT, State.PENDING):
        if state not in groups:
            continue
        style = STATE_STYLES[state]
        branch = tree.add(f"[{style}]{len(groups[state])} {state.value}[/{style}]")
        if not verbose:
            continue
        for files in groups[state]:
            group = branch.add(f"[dim]{files[0].hash[:8]}[/dim]")
            for file in files:
                where = "origin" if file.root == origin else file.root.name
                group.add(f"[{style}]{file.name}[/{style}] ({where})")

    console.print(Panel(tree, expand=False))


def display_errors(errors: List[ev.Error]) -> None:
    if not errors:
        return
    tree = Tree(f"[red bold]{len(errors)} errors[/red bold]")
    for error in errors:
        tree.add(f"[red]{error}[/red]")
    console.print(Panel(tree, expand=False))


async def run_status(roots: List[Path], app_config: ArchiverConfig) -> Reconciler:
    """Scan every root and return the reconciler without touching any file."""
    session_config = app_config.model_copy(update={"auto_resolve": False})
    with SessionProgress(console) as progress:
        session = ArchiveSession(roots, session_config, render=progress)
        return await session.run_until(session.ready)


@app.command()
def status(
    origin: Path = typer.Argument(..., help="Origin directory, the source of truth"),
    copies: List[Path] = typer.Argument(..., help="Copy directories"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="List every file"),
):
    """Show how the copies differ from the origin."""
    try:
        reconciler = asyncio.run(run_status([origin, *copies], config))
        display_status(reconciler, verbose)
        display_errors(reconciler.errors)
    except Exception as e:
        logger.error(f"Error checking status: {e}")
        typer.echo(f"Error checking status: {e}", err=True)
        raise typer.Exit(1)
