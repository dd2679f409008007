"""
Atomic replacement of host configuration files.

Bootloader and container configs are written through a temp file in the
same directory followed by os.replace(), so a crash leaves either the old
or the new file and never a truncated one.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _fsync_dir(directory: Path) -> None:
    try:
        fd = os.open(str(directory), os.O_RDONLY | os.O_DIRECTORY)
    except (OSError, AttributeError):
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write_text(path: PathLike, content: str, mode: Optional[int] = None) -> None:
    """
    Replace ``path`` with ``content`` atomically.

    An existing file keeps its permission bits and, when the caller is
    allowed to set them, its owner and group. New files get ``mode`` or 0o644.
    """
    path = Path(path)
    existing = path.stat() if path.exists() else None
    if mode is None:
        mode = existing.st_mode & 0o777 if existing else 0o644

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp = Path(tmp_name)

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        if existing is not None:
            try:
                os.chown(tmp, existing.st_uid, existing.st_gid)
            except PermissionError:
                logger.debug(f"Cannot keep ownership of {path}; continuing as current user")
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise

    _fsync_dir(path.parent)


def safe_backup(path: PathLike, backup_suffix: str = ".bak") -> Path:
    """
    Copy ``path`` to ``path + backup_suffix`` if it exists.

    Returns:
        The backup path, whether or not a copy was made
    """
    path = Path(path)
    backup = path.with_name(path.name + backup_suffix)
    if path.exists():
        shutil.copy2(path, backup)
        logger.debug(f"Backed up {path} to {backup.name}")
    return backup


def update_file(path: PathLike, content: str, backup: bool = True,
                mode: Optional[int] = None) -> bool:
    """
    Write ``content`` only if it differs from what is on disk.

    Returns:
        True if the file was (re)written, False if it already matched

    Raises:
        OSError: Read, backup or write failed
    """
    path = Path(path)
    if path.exists() and path.read_text(encoding="utf-8") == content:
        return False
    if backup:
        safe_backup(path)
    atomic_write_text(path, content, mode=mode)
    return True
