"""Utilities for file operations."""

import os
from pathlib import Path

from loguru import logger

from archiver.exceptions import FileOperationError

# Files macOS leaves behind that do not make a directory "non-empty"
IGNORABLE_NAMES = {".DS_Store"}
IGNORABLE_PREFIX = "._"


def is_ignorable(name: str) -> bool:
    return name in IGNORABLE_NAMES or name.startswith(IGNORABLE_PREFIX)


def ensure_directory(path: Path) -> None:
    """
    Ensure directory exists, creating if necessary.

    Args:
        path: Directory path to ensure

    Raises:
        FileOperationError: If directory creation fails
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Failed to create directory: {path}: {e}")
        raise FileOperationError(f"Failed to create directory {path}: {e}")


def write_file_atomic(path: Path, content: str) -> None:
    """
    Write file with atomic operation using temporary file.

    Args:
        path: Target file path
        content: Content to write

    Raises:
        FileOperationError: If write operation fails
    """
    temp_path = path.with_name(path.name + ".tmp")
    try:
        temp_path.write_text(content, encoding="utf-8")
        temp_path.replace(path)
    except OSError as e:
        temp_path.unlink(missing_ok=True)
        logger.error(f"Failed to write file: {path}: {e}")
        raise FileOperationError(f"Failed to write file {path}: {e}")


def remove_empty_parents(path: Path, stop: Path) -> None:
    """
    Remove path's parent directories while they are empty, up to (not including) stop.

    A directory holding only ignorable files counts as empty; those files are
    removed with it.
    """
    directory = path.parent
    while directory != stop and stop in directory.parents:
        try:
            entries = list(os.scandir(directory))
        except FileNotFoundError:
            directory = directory.parent
            continue
        if any(not (is_ignorable(entry.name) and entry.is_file()) for entry in entries):
            return
        for entry in entries:
            os.remove(entry.path)
        logger.debug(f"Removing empty directory {directory}")
        directory.rmdir()
        directory = directory.parent
