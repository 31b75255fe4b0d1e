"""CLI commands for archiver."""

from . import scan, status, sync

__all__ = ["scan", "status", "sync"]
