"""Utility functions for archiver."""

import sys
import unicodedata
from pathlib import Path
from typing import Optional

from loguru import logger


def setup_logging(
    log_file: Optional[Path] = None,
    level: str = "INFO",
    console: bool = False,
) -> None:
    """
    Configure loguru sinks for archiver.

    - File sink: rotated, written when log_file is given.
    - Console sink: stderr, only when console=True so it does not fight with
      rich progress output.
    """
    logger.remove()

    if console:
        logger.add(sys.stderr, level=level, backtrace=False, diagnose=False)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_file),
            level=level,
            rotation="10 MB",
            retention=10,
            encoding="utf-8",
            backtrace=False,
            diagnose=False,
        )


def normalize_name(name: str) -> str:
    """Normalize a file name to NFC so names compare equal across filesystems."""
    return unicodedata.normalize("NFC", name)


def format_size(size: int) -> str:
    """Format a byte count with thousands separators, e.g. 1,234,567."""
    return f"{size:,}"

