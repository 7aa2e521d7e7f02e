"""File locking utilities for version markers and manifests."""
from __future__ import annotations

import fcntl
import json
import logging
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

log = logging.getLogger("utils.file_lock")


@contextmanager
def exclusive_file_lock(path: Path) -> Generator[None, None, None]:
    """Context manager for exclusive file locking.

    Usage:
        with exclusive_file_lock(Path("drops/.latest")):
            # Read, check, write
            pass
    """
    lock_path = path.with_suffix(path.suffix + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    with open(lock_path, "w") as lock_file:
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, text: str) -> None:
    """tmp + rename. Caller holds the lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(text)
    tmp_path.rename(path)


def safe_read_json(path: Path) -> dict[str, Any]:
    """Read JSON with file locking and recovery from .bak on corruption."""
    with exclusive_file_lock(path):
        if not path.exists():
            return {}

        try:
            return json.loads(path.read_text())
        except json.JSONDecodeError:
            backup_path = path.with_suffix(path.suffix + ".bak")
            if not backup_path.exists():
                raise
            log.warning("Corrupted JSON at %s, restoring from %s", path, backup_path)
            shutil.copy(backup_path, path)
            return json.loads(path.read_text())


def safe_write_json(path: Path, data: Any, indent: int = 2) -> None:
    """Write JSON with file locking and atomic tmp+rename.

    Keeps a .bak of the previous content.
    """
    with exclusive_file_lock(path):
        if path.exists():
            shutil.copy(path, path.with_suffix(path.suffix + ".bak"))
        atomic_write_text(path, json.dumps(data, indent=indent))
