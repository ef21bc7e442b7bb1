# Redfish BMC Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License

"""Key/value blob storage used to persist the connection registry.

The bridge only needs "get bytes by key" and "set bytes by key". FileStore
keeps one file per key under a data directory and writes atomically;
MemoryStore backs tests and ephemeral runs.
"""

import logging
import re
from pathlib import Path
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9._-]+$")


class PersistenceError(Exception):
    """Raised when a storage read or write fails."""


@runtime_checkable
class KeyValueStore(Protocol):
    """Protocol for byte-blob stores.

    Implementations: FileStore, MemoryStore.
    """

    def get(self, key: str) -> bytes | None:
        """Return the blob stored under *key*, or None if absent."""
        ...

    def set(self, key: str, value: bytes) -> None:
        """Replace the blob stored under *key*."""
        ...


class MemoryStore:
    """In-process store (nothing survives a restart)."""

    def __init__(self, initial: dict[str, bytes] | None = None):
        self._data: dict[str, bytes] = dict(initial or {})

    def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)


class FileStore:
    """One file per key under *directory*, replaced atomically on write."""

    def __init__(self, directory: str):
        self._dir = Path(directory)

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise PersistenceError(f"invalid storage key: {key!r}")
        return self._dir / f"{key}.json"

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"failed to read {path}: {e}") from e

    def set(self, key: str, value: bytes) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(value)
            tmp.replace(path)
        except OSError as e:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            raise PersistenceError(f"failed to write {path}: {e}") from e
        logger.debug("Wrote %d bytes to %s", len(value), path)
