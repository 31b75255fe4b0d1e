from typing import Optional

import typer

from archiver.config import config


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:  # pragma: no cover
        import archiver

        typer.echo(f"archiver version: {archiver.__version__}")
        typer.echo(f"Log file: {config.log_path}")
        raise typer.Exit()


app = typer.Typer(name="archiver")


@app.callback()
def app_callback(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """archiver - keep copies of a file tree in agreement with their origin."""
