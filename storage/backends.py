"""Key-value persistence backends for the local event store."""
import errno
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """A backend could not read or write a value."""


class StorageFullError(PersistenceError):
    """A backend ran out of space or quota."""


class PersistenceBackend:
    """Minimal string key-value store used by EventStore and CacheSynchronizer."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class InMemoryBackend(PersistenceBackend):
    """
    Process-local backend, mainly for tests.

    Args:
        max_bytes: Optional quota over the sum of stored value sizes;
            writes exceeding it raise StorageFullError
    """

    def __init__(self, max_bytes: Optional[int] = None):
        self.max_bytes = max_bytes
        self.values: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    def set(self, key: str, value: str) -> None:
        if self.max_bytes is not None:
            used = sum(
                len(v.encode('utf-8')) for k, v in self.values.items() if k != key
            )
            if used + len(value.encode('utf-8')) > self.max_bytes:
                raise StorageFullError(
                    f"Quota of {self.max_bytes} bytes exceeded writing '{key}'"
                )
        self.values[key] = value

    def delete(self, key: str) -> None:
        self.values.pop(key, None)


class FileBackend(PersistenceBackend):
    """
    Stores each key as a JSON file in a directory.

    Writes go through a temporary file and an atomic rename so a failed
    write never leaves a truncated value behind. Several client processes
    pointing at the same directory share the coordination timestamp.
    """

    QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, 'EDQUOT', errno.ENOSPC)}

    def __init__(self, directory: str):
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized FileBackend in {self.directory}")

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Error reading {path}: {e}") from e

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(
                'w', encoding='utf-8', dir=self.directory,
                prefix=f".{key}.", suffix='.tmp', delete=False
            ) as handle:
                tmp_name = handle.name
                handle.write(value)
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            if e.errno in self.QUOTA_ERRNOS:
                raise StorageFullError(f"No space left writing {path}") from e
            raise PersistenceError(f"Error writing {path}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise PersistenceError(f"Error deleting {self._path(key)}: {e}") from e
