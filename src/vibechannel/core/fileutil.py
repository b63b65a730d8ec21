"""File system utilities: atomic writes, safe names, permissions."""

from __future__ import annotations

import contextlib
import logging
import os
import platform
import re
import tempfile
from pathlib import Path

log = logging.getLogger(__name__)

FILE_MODE = 0o600
DIR_MODE = 0o700

_IS_WINDOWS = platform.system() == "Windows"


def safe_channel_name(name: str, max_length: int = 100) -> str:
    """Convert a display name to a channel directory name.

    Strips path traversal and special characters, lowercases, and limits
    length. Leading dots are removed so a channel is never a hidden folder.
    """
    name = name.strip()
    # Remove path traversal
    name = name.replace("..", "").replace("/", "-").replace("\\", "-")
    # Keep only safe chars: alphanumeric, hyphen, underscore, space
    name = re.sub(r"[^\w\s\-]", "", name)
    # Collapse whitespace / hyphens
    name = re.sub(r"\s+", "-", name)
    name = re.sub(r"-+", "-", name)
    name = name.strip("-_").lower()
    if len(name) > max_length:
        name = name[:max_length].rstrip("-")
    if not name:
        raise ValueError("Channel name is empty after normalization")
    return name


def ensure_dir(path: Path) -> Path:
    """Create directory with secure permissions if it doesn't exist."""
    path.mkdir(parents=True, exist_ok=True)
    if not _IS_WINDOWS:
        path.chmod(DIR_MODE)
    return path


def ensure_file_permissions(path: Path) -> None:
    """Set file permissions to owner-only read/write."""
    if not _IS_WINDOWS and path.exists():
        path.chmod(FILE_MODE)


def atomic_write(path: Path, content: str, encoding: str = "utf-8") -> None:
    """Write content to file atomically via temp file + rename.

    Ensures the file is never partially written on crash.
    """
    ensure_dir(path.parent)

    # Same directory so the rename stays on one file system
    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=".tmp_",
        suffix=path.suffix,
    )
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise

    ensure_file_permissions(path)
