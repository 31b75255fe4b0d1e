"""Main CLI entry point for archiver."""  # pragma: no cover

from archiver.cli.app import app  # pragma: no cover
from archiver.config import config  # pragma: no cover
from archiver.utils import setup_logging  # pragma: no cover

# Register commands
from archiver.cli.commands import scan, status, sync  # pragma: no cover

__all__ = ["app", "scan", "status", "sync"]  # pragma: no cover


# Set up logging when module is imported
setup_logging(
    log_file=config.log_path, level=config.log_level, console=config.log_to_console
)  # pragma: no cover

if __name__ == "__main__":  # pragma: no cover
    app()
