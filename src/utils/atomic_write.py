"""
Atomic file operations for r8-lifecycle.

Ensures writes are atomic - either complete successfully or no change.
Uses write-to-temp-then-rename pattern for POSIX atomicity guarantees,
for single files (metadata, run state) and whole bundle directories.
"""

from __future__ import annotations

import json
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Optional, Union


def _fsync_dir(directory: Path) -> None:
    """Sync a directory so a rename inside it is persisted."""
    try:
        dir_fd = os.open(str(directory), os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except (OSError, AttributeError):
        # O_DIRECTORY not available on all platforms
        pass


def atomic_write_text(path: Union[str, Path], content: str, mode: int = 0o644) -> None:
    """
    Write text content to file atomically.

    Uses write-to-temp-then-rename pattern to ensure atomicity.
    On POSIX systems, rename() is atomic within the same filesystem.

    Args:
        path: Destination file path
        content: Text content to write
        mode: File permissions (default 0o644)
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Same directory keeps the rename on one filesystem
    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp"
    )

    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.chmod(temp_path, mode)
        os.replace(temp_path, path)
        _fsync_dir(path.parent)

    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def atomic_write_json(
    path: Union[str, Path],
    data: Any,
    indent: int = 2,
    mode: int = 0o644,
) -> None:
    """
    Write JSON data to file atomically.

    Args:
        path: Destination file path
        data: JSON-serializable data
        indent: JSON indentation (default 2)
        mode: File permissions (default 0o644)
    """
    content = json.dumps(data, indent=indent, ensure_ascii=False, default=str)
    atomic_write_text(path, content + '\n', mode)


def create_exclusive(path: Union[str, Path], content: str, mode: int = 0o644) -> bool:
    """
    Create a file with full content, failing if it already exists.

    The content is written to a temp file first and hard-linked into place,
    so other processes never observe the file empty or half-written.

    Returns:
        True if the file was created, False if it already existed.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp"
    )
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temp_path, mode)
        try:
            os.link(temp_path, path)
        except FileExistsError:
            return False
        _fsync_dir(path.parent)
        return True
    finally:
        try:
            os.unlink(temp_path)
        except OSError:
            pass


def promote_directory(staging: Union[str, Path], target: Union[str, Path]) -> Path:
    """
    Atomically move a fully written staging directory into place.

    Args:
        staging: Directory holding the finished content
        target: Final location (must not exist)

    Returns:
        The target path

    Raises:
        FileExistsError: If the target already exists
    """
    staging = Path(staging)
    target = Path(target)
    if target.exists():
        raise FileExistsError(f"Refusing to overwrite {target}")
    target.parent.mkdir(parents=True, exist_ok=True)
    os.rename(staging, target)
    _fsync_dir(target.parent)
    return target


def move_aside(path: Union[str, Path], stamp: Optional[int] = None) -> Optional[Path]:
    """
    Rename live data to a timestamped sidecar instead of deleting it.

    Args:
        path: File or directory to move aside
        stamp: Epoch seconds used in the suffix (default: now)

    Returns:
        The sidecar path, or None if ``path`` did not exist
    """
    path = Path(path)
    if not path.exists():
        return None
    stamp = stamp if stamp is not None else int(time.time())
    sidecar = path.with_name(f"{path.name}.backup.{stamp}")
    counter = 1
    while sidecar.exists():
        sidecar = path.with_name(f"{path.name}.backup.{stamp}.{counter}")
        counter += 1
    os.rename(path, sidecar)
    return sidecar
