"""In-memory key-value datastore with batched writes."""

from __future__ import annotations

import posixpath


class KeyNotFoundError(KeyError):
    """Raised when a datastore holds no value under the requested key."""

    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"datastore: key not found: {self.key}"


def _clean_key(key: str) -> str:
    """Normalize a key into a rooted, slash-separated path."""
    cleaned = posixpath.normpath("/" + key)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


class MapDatastore:
    """A datastore keeping every value in a dictionary."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str) -> bytes:
        """Return the value stored under ``key``."""
        try:
            return self._data[_clean_key(key)]
        except KeyError:
            raise KeyNotFoundError(_clean_key(key)) from None

    def put(self, key: str, value: bytes) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        self._data[_clean_key(key)] = bytes(value)

    def has(self, key: str) -> bool:
        """Report whether a value is stored under ``key``."""
        return _clean_key(key) in self._data

    def delete(self, key: str) -> None:
        """Remove the value under ``key``; missing keys are ignored."""
        self._data.pop(_clean_key(key), None)

    def batch(self) -> DatastoreBatch:
        """Start a batch of writes applied together on commit."""
        return DatastoreBatch(self)


class DatastoreBatch:
    """Writes collected for a datastore and applied at once on commit."""

    def __init__(self, target: MapDatastore) -> None:
        self._target = target
        self._ops: dict[str, bytes] = {}

    def put(self, key: str, value: bytes) -> None:
        """Queue ``value`` to be stored under ``key``."""
        self._ops[_clean_key(key)] = bytes(value)

    def commit(self) -> None:
        """Apply every queued write to the datastore."""
        for key, value in self._ops.items():
            self._target.put(key, value)
        self._ops.clear()