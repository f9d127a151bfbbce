"""Filesystem helpers shared by the upload and download handlers."""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


def path_is_directory_and_writable(path: Path) -> bool:
    """Check that a path is an existing, writable directory.

    Logs an error naming the problem when the check fails.
    """
    if not path.exists():
        logger.error("'%s' does not exist", path)
        return False
    if not path.is_dir():
        logger.error("'%s' is not a directory", path)
        return False
    if not os.access(path, os.W_OK | os.X_OK):
        logger.error("'%s' is not writable", path)
        return False
    return True


def with_suffix_replaced(file: Path, suffix: str) -> Path:
    """Get the sibling path with the last extension replaced.

    Args:
        file: Original path, e.g. ``doc.xml``.
        suffix: New extension including the dot, e.g. ``.upload``.
    """
    return file.with_name(file.stem + suffix)


def move_file(source: Path, target: Path) -> Path:
    """Move a file, falling back to copy and delete across filesystems.

    Raises:
        FileExistsError: If the target already exists.
    """
    if target.exists():
        raise FileExistsError(f"Target already exists: {target}")
    try:
        os.replace(source, target)
    except OSError:
        shutil.move(str(source), str(target))
    return target


def replace_file(source: Path, target: Path) -> Path:
    """Move a file, overwriting an existing target."""
    try:
        os.replace(source, target)
    except OSError:
        shutil.move(str(source), str(target))
    return target
