"""A contiguous run of headers awaiting a write to storage."""

from __future__ import annotations

from .interface import Header


class Batch:
    """Adjacent headers indexed by height, with a hash-to-height lookup."""

    def __init__(self) -> None:
        self._heights: dict[bytes, int] = {}
        self._headers: list[Header] = []

    def __len__(self) -> int:
        return len(self._headers)

    def get_all(self) -> list[Header]:
        """Return all headers in the batch, in order."""
        return list(self._headers)

    def get(self, hash: bytes) -> Header | None:
        """Return the header with the given hash, or None."""
        height = self._heights.get(bytes(hash))
        if height is None:
            return None
        return self.get_by_height(height)

    def get_by_height(self, height: int) -> Header | None:
        """Return the header at the given height, or None."""
        if not self._headers:
            return None
        head = self._headers[-1].height
        base = head - len(self._headers)
        if height > head or height <= base:
            return None
        return self._headers[height - base - 1]

    def append(self, *args: Header) -> None:
        """Append headers that continue the batch."""
        for header in args:
            self._headers.append(header)
            self._heights[bytes(header.hash())] = header.height

    def has(self, hash: bytes) -> bool:
        """Report whether a header with the given hash is in the batch."""
        return bytes(hash) in self._heights

    def reset(self) -> None:
        """Drop all batched headers."""
        self._headers.clear()
        self._heights.clear()