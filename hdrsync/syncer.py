"""Synchronization of a local header store with the network."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from .interface import (
    Getter,
    Header,
    HeaderNotFoundError,
    NonAdjacentError,
    Store,
    Subscriber,
    ValidationResult,
    VerifyError,
)
from .ranges import Ranges

_log = logging.getLogger(__name__)

DEFAULT_REQUEST_SIZE = 512


@dataclass(frozen=True)
class SyncState:
    """Information about the current or the latest sync."""

    id: int = 0
    height: int = 0
    from_height: int = 0
    to_height: int = 0
    from_hash: bytes = b""
    to_hash: bytes = b""
    start: datetime | None = None
    end: datetime | None = None
    error: BaseException | None = None

    def finished(self) -> bool:
        """Report whether the sync is done."""
        return self.to_height <= self.height

    def duration(self) -> timedelta:
        """Return how long the sync took."""
        if self.start is None or self.end is None:
            return timedelta(0)
        return self.end - self.start


class Syncer:
    """Keeps a store synced up to the latest trusted header.

    A background loop syncs from the local head up to the latest known
    trusted header, taking headers from the exchange or from the cache of
    verified headers received from the network. Incoming headers are either
    appended directly, when adjacent to the head, or verified and cached so
    that the loop catches up to them.
    """

    def __init__(
        self,
        exchange: Getter,
        store: Store,
        sub: Subscriber,
        request_size: int = DEFAULT_REQUEST_SIZE,
    ) -> None:
        if request_size < 1:
            raise ValueError("syncer: request size must be positive")
        self._exchange = exchange
        self._store = store
        self._sub = sub
        self._request_size = request_size
        self._state = SyncState()
        self._pending = Ranges()
        self._trigger = asyncio.Event()
        self._sync_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> Ranges:
        """Verified headers waiting to be appended to the store."""
        return self._pending

    async def start(self) -> None:
        """Register the incoming-header validator and start the sync loop."""
        if self._task is not None:
            raise RuntimeError("syncer: already started")
        self._sub.add_validator(self.process_incoming)
        self._task = asyncio.create_task(self._sync_loop())
        self._want_sync()

    async def stop(self) -> None:
        """Stop the sync loop and the subscriber."""
        task, self._task = self._task, None
        if task is None:
            raise RuntimeError("syncer: not started")
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        await self._sub.stop()

    async def wait_sync(self) -> None:
        """Wait until the ongoing sync is done."""
        state = self.state()
        if state.finished():
            return
        await self._store.get_by_height(state.to_height)

    def state(self) -> SyncState:
        """Return the state of the current sync, or of the last one if finished."""
        return replace(self._state, height=self._store.height)

    async def sync(self) -> None:
        """Sync the store up to the latest trusted header."""
        async with self._sync_lock:
            try:
                trusted = await self._trusted_head()
            except Exception as err:
                _log.error("getting trusted head: %s", err)
                return
            await self._sync_to(trusted)

    async def process_incoming(self, maybe_head: Header) -> ValidationResult:
        """Validate a header from the network, then store or cache it."""
        try:
            await self._store.append(maybe_head)
            return ValidationResult.ACCEPT
        except NonAdjacentError:
            pass
        except VerifyError:
            return ValidationResult.REJECT
        except Exception as err:
            _log.error("appending header: height=%d err=%s", maybe_head.height, err)

        try:
            trusted = await self._trusted_head()
        except Exception as err:
            _log.error("getting trusted head: %s", err)
            return ValidationResult.IGNORE

        if maybe_head.height <= trusted.height:
            _log.warning("received known header: height=%d", maybe_head.height)
            return ValidationResult.IGNORE

        try:
            trusted.verify_non_adjacent(maybe_head)
        except VerifyError as err:
            _log.error(
                "invalid header: height_of_invalid=%d height_of_trusted=%d reason=%s",
                maybe_head.height,
                trusted.height,
                err.reason,
            )
            return ValidationResult.REJECT

        self._pending.add(maybe_head)
        self._want_sync()
        _log.info("pending head: height=%d", maybe_head.height)
        return ValidationResult.ACCEPT

    async def _trusted_head(self) -> Header:
        pending_head = self._pending.head()
        if pending_head is not None:
            return pending_head
        subjective = await self._store.head()
        if not subjective.is_expired():
            return subjective
        objective = await self._exchange.head()
        self._pending.add(objective)
        return objective

    def _want_sync(self) -> None:
        self._trigger.set()

    async def _sync_loop(self) -> None:
        while True:
            await self._trigger.wait()
            self._trigger.clear()
            await self.sync()

    async def _sync_to(self, new_head: Header) -> None:
        try:
            head = await self._store.head()
        except Exception as err:
            _log.error("getting head during sync: %s", err)
            return
        if head.height == new_head.height:
            return

        _log.info("syncing headers: from=%d to=%d", head.height, new_head.height)
        try:
            await self._do_sync(head, new_head)
        except Exception as err:
            _log.error(
                "syncing headers: from=%d to=%d err=%s", head.height, new_head.height, err
            )
            return
        _log.info(
            "finished syncing: from=%d to=%d elapsed=%s",
            head.height,
            new_head.height,
            self._state.duration(),
        )

    async def _do_sync(self, from_head: Header, to_head: Header) -> None:
        start, end = from_head.height + 1, to_head.height
        self._state = replace(
            self._state,
            id=self._state.id + 1,
            from_height=start,
            to_height=end,
            from_hash=bytes(from_head.hash()),
            to_hash=bytes(to_head.hash()),
            start=datetime.now(),
            end=None,
            error=None,
        )
        error: Exception | None = None
        try:
            while start <= end:
                processed = await self._process_headers(start, end)
                if processed == 0:
                    raise HeaderNotFoundError(f"header/sync: no headers found from height {start}")
                start += processed
        except Exception as err:
            error = err
        self._state = replace(self._state, end=datetime.now(), error=error)
        if error is not None:
            raise error

    async def _process_headers(self, start: int, end: int) -> int:
        headers = await self._find_headers(start, end)
        if not headers:
            return 0
        return await self._store.append(*headers)

    async def _find_headers(self, start: int, end: int) -> list[Header]:
        """Collect headers in ``[start, end]`` from the cache or the exchange."""
        end = min(end, start + self._request_size - 1)
        found: list[Header] = []
        while start <= end:
            cached_range = self._pending.first_range_within(start, end)
            if cached_range is None:
                found.extend(await self._exchange.get_range_by_height(start, end - start + 1))
                return found
            if cached_range.start > start:
                fetched = await self._exchange.get_range_by_height(
                    start, cached_range.start - start
                )
                found.extend(fetched)
                start += len(fetched)
            cached, count = cached_range.before(end)
            found.extend(cached)
            start += count
        return found