"""Drop version bookkeeping.

Every generated drop carries a version byte in its tickets. Versions must
strictly increase so a reprint never reuses a version that is live.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from dropkit.errors import VersionConflictError, VersionStoreCorruptedError
from dropkit.utils.file_lock import atomic_write_text, exclusive_file_lock

log = logging.getLogger("drops.store")

MAX_VERSION = 255


def _check_range(version: int) -> None:
    if not 0 <= version <= MAX_VERSION:
        raise ValueError(f"Version must be 0..{MAX_VERSION}, got {version}")


class VersionStore(Protocol):
    def current(self) -> int: ...

    def validate(self, version: int) -> None: ...

    def write_next(self, version: int) -> None: ...


class MemoryVersionStore:
    def __init__(self, latest: int = 0):
        self._latest = latest

    def current(self) -> int:
        return self._latest

    def validate(self, version: int) -> None:
        _check_range(version)
        if version <= self._latest:
            raise VersionConflictError(version, self._latest)

    def write_next(self, version: int) -> None:
        self.validate(version)
        self._latest = version


class FileVersionStore:
    """Latest version as plain text in one file, guarded by an fcntl lock."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> int:
        if not self.path.exists():
            return 0
        text = self.path.read_text().strip()
        try:
            latest = int(text)
        except ValueError:
            raise VersionStoreCorruptedError(f"Version file {self.path} is corrupted: {text[:32]!r}") from None
        if latest < 0:
            raise VersionStoreCorruptedError(f"Version file {self.path} holds a negative version: {latest}")
        return latest

    def current(self) -> int:
        with exclusive_file_lock(self.path):
            return self._read()

    def validate(self, version: int) -> None:
        _check_range(version)
        latest = self.current()
        if version <= latest:
            raise VersionConflictError(version, latest)

    def write_next(self, version: int) -> None:
        _check_range(version)
        with exclusive_file_lock(self.path):
            latest = self._read()
            if version <= latest:
                raise VersionConflictError(version, latest)
            atomic_write_text(self.path, str(version))
        log.info("Drop version %s recorded in %s", version, self.path)
