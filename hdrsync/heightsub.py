"""Waiting for a header at a height that is not yet available."""

from __future__ import annotations

import asyncio

from .interface import Header


class ElapsedHeightError(Exception):
    """Raised when the requested height was already published."""

    def __init__(self) -> None:
        super().__init__("elapsed height")


class HeightSub:
    """Tracks the latest published height and wakes waiters for new heights."""

    def __init__(self, height: int = 0) -> None:
        self.height = height
        self._waiters: dict[int, list[asyncio.Future[Header]]] = {}

    async def sub(self, height: int) -> Header:
        """Wait for the header at ``height``.

        Raise ElapsedHeightError if that height was already published, in
        which case the header must be fetched elsewhere.
        """
        if self.height >= height:
            raise ElapsedHeightError()
        future: asyncio.Future[Header] = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(height, []).append(future)
        try:
            return await future
        finally:
            waiting = self._waiters.get(height)
            if waiting and future in waiting:
                waiting.remove(future)
                if not waiting:
                    del self._waiters[height]

    def pub(self, *args: Header) -> None:
        """Publish contiguous headers following the current height and wake waiters."""
        if not args:
            return
        first, last = args[0].height, args[-1].height
        if self.height + 1 != first:
            raise ValueError("headers given to the height subscription are in the wrong order")
        self.height = last

        for height in [h for h in self._waiters if first <= h <= last]:
            header = args[height - first]
            for future in self._waiters.pop(height):
                if not future.done():
                    future.set_result(header)