"""Header store over a key-value datastore, with batched background writes."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass

from cachetools import LRUCache

from .batch import Batch
from .datastore import DatastoreBatch, KeyNotFoundError, MapDatastore
from .heightsub import ElapsedHeightError, HeightSub
from .interface import (
    Getter,
    Header,
    HeaderNotFoundError,
    NoHeadError,
    Store,
    VerifyError,
)

_log = logging.getLogger(__name__)

_STORE_PREFIX = "/headers"
_HEAD_KEY = "/head"
_WRITE_QUEUE_SIZE = 16

Unmarshal = Callable[[bytes], Header]


def _height_key(height: int) -> str:
    return f"/{height}"


def _header_key(hash: bytes) -> str:
    return "/" + bytes(hash).hex().upper()


class StoppedStoreError(RuntimeError):
    """Raised for operations attempted on a stopped store."""

    def __init__(self) -> None:
        super().__init__("stopped store")


@dataclass(frozen=True)
class StoreParams:
    """Sizes of the store's caches and of its batched writes."""

    store_cache_size: int = 4096
    index_cache_size: int = 16384
    write_batch_size: int = 2048


class _NamespacedBatch:
    def __init__(self, inner: DatastoreBatch, prefix: str) -> None:
        self._inner = inner
        self._prefix = prefix

    def put(self, key: str, value: bytes) -> None:
        self._inner.put(self._prefix + key, value)

    def commit(self) -> None:
        self._inner.commit()


class _Namespace:
    """A view of a datastore with every key placed under a prefix."""

    def __init__(self, inner: MapDatastore, prefix: str) -> None:
        self._inner = inner
        self._prefix = prefix

    def get(self, key: str) -> bytes:
        return self._inner.get(self._prefix + key)

    def put(self, key: str, value: bytes) -> None:
        self._inner.put(self._prefix + key, value)

    def has(self, key: str) -> bool:
        return self._inner.has(self._prefix + key)

    def batch(self) -> _NamespacedBatch:
        return _NamespacedBatch(self._inner.batch(), self._prefix)


class HeightIndexer:
    """Stores and caches the mapping from header height to header hash."""

    def __init__(self, datastore, cache_size: int = StoreParams.index_cache_size) -> None:
        self._ds = datastore
        self._cache: LRUCache = LRUCache(maxsize=cache_size)

    def hash_by_height(self, height: int) -> bytes:
        """Return the hash of the header at ``height``; raise KeyNotFoundError if unknown."""
        cached = self._cache.get(height)
        if cached is not None:
            return cached
        value = self._ds.get(_height_key(height))
        self._cache[height] = value
        return value

    def index_to(self, batch, *args: Header) -> None:
        """Add height-to-hash entries for the given headers to ``batch``."""
        for header in args:
            batch.put(_height_key(header.height), bytes(header.hash()))


class HeaderStore(Store):
    """Store keeping headers in a datastore.

    Appended headers are verified, made readable at once, and written to the
    datastore in batches by a background task started with :meth:`start`.
    """

    def __init__(
        self,
        datastore: MapDatastore,
        unmarshal: Unmarshal,
        params: StoreParams | None = None,
    ) -> None:
        self._params = params or StoreParams()
        self._ds = _Namespace(datastore, _STORE_PREFIX)
        self._unmarshal = unmarshal
        self._cache: LRUCache = LRUCache(maxsize=self._params.store_cache_size)
        self._index = HeightIndexer(self._ds, self._params.index_cache_size)
        self._height_sub = HeightSub()
        self._write_lock = asyncio.Lock()
        self._writes: asyncio.Queue[list[Header] | None] = asyncio.Queue(maxsize=_WRITE_QUEUE_SIZE)
        self._done = asyncio.Event()
        self._write_head: Header | None = None
        self._pending = Batch()
        self._flush_task: asyncio.Task[None] | None = None

    @property
    def height(self) -> int:
        return self._height_sub.height

    async def init(self, initial: Header) -> None:
        """Trust ``initial`` as the head and write it to the datastore."""
        self._flush([initial])
        _log.info("initialized head: height=%d hash=%s", initial.height, bytes(initial.hash()).hex())

    async def start(self) -> None:
        """Start the background writer."""
        self._flush_task = asyncio.create_task(self._flush_loop())

    async def stop(self) -> None:
        """Refuse further writes, flush what is pending and clear the caches."""
        if self._done.is_set():
            raise StoppedStoreError()
        await self._writes.put(None)
        await self._done.wait()
        self._cache.clear()
        self._index._cache.clear()

    async def head(self) -> Header:
        try:
            return await self.get_by_height(self._height_sub.height)
        except (ValueError, LookupError):
            pass
        try:
            head = await self._read_head()
        except (KeyNotFoundError, HeaderNotFoundError):
            raise NoHeadError() from None
        self._height_sub.height = head.height
        _log.info("loaded head: height=%d hash=%s", head.height, bytes(head.hash()).hex())
        return head

    async def get(self, hash: bytes) -> Header:
        key = bytes(hash)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        pending = self._pending.get(key)
        if pending is not None:
            return pending
        try:
            data = self._ds.get(_header_key(key))
        except KeyNotFoundError:
            raise HeaderNotFoundError() from None
        header = self._unmarshal(data)
        self._cache[bytes(header.hash())] = header
        return header

    async def get_by_height(self, height: int) -> Header:
        """Return the header at ``height``, waiting for it if not yet appended."""
        if height == 0:
            raise ValueError("header/store: height must be bigger than zero")
        try:
            return await self._height_sub.sub(height)
        except ElapsedHeightError:
            pass
        pending = self._pending.get_by_height(height)
        if pending is not None:
            return pending
        try:
            hash = self._index.hash_by_height(height)
        except KeyNotFoundError:
            raise HeaderNotFoundError() from None
        return await self.get(hash)

    async def get_range_by_height(self, start: int, end: int) -> list[Header]:
        if end <= start:
            raise ValueError(f"header/store: empty height range [{start}:{end})")
        header = await self.get_by_height(end - 1)
        headers = [header]
        for _ in range(end - start - 1):
            header = await self.get(header.last_header())
            headers.append(header)
        headers.reverse()
        return headers

    async def has(self, hash: bytes) -> bool:
        key = bytes(hash)
        if key in self._cache or self._pending.has(key):
            return True
        return self._ds.has(_header_key(key))

    async def append(self, *args: Header) -> int:
        """Verify and queue headers that continue the chain.

        Raise if the first header fails verification. If a later one fails,
        the valid headers before it are applied and their count returned.
        """
        if not args:
            return 0
        async with self._write_lock:
            head = self._write_head
            if head is None:
                head = await self.head()

            verified: list[Header] = []
            failure: Exception | None = None
            for index, header in enumerate(args):
                try:
                    head.verify_adjacent(header)
                except Exception as err:
                    if isinstance(err, VerifyError):
                        _log.error(
                            "invalid header: height_of_head=%d height_of_invalid=%d reason=%s",
                            head.height,
                            header.height,
                            err.reason,
                        )
                    if index == 0:
                        raise
                    failure = err
                    break
                verified.append(header)
                head = header

            if self._done.is_set():
                raise StoppedStoreError()
            await self._writes.put(verified)
            self._write_head = verified[-1]
            _log.info(
                "new head: height=%d hash=%s",
                self._write_head.height,
                bytes(self._write_head.hash()).hex(),
            )
            if failure is not None:
                _log.warning("applied %d of %d headers: %s", len(verified), len(args), failure)
            return len(verified)

    async def _flush_loop(self) -> None:
        try:
            while True:
                headers = await self._writes.get()
                if headers:
                    self._pending.append(*headers)
                    self._height_sub.pub(*headers)
                if headers is not None and len(self._pending) < self._params.write_batch_size:
                    continue
                try:
                    self._flush(self._pending.get_all())
                except Exception:
                    _log.exception("writing header batch")
                    if headers is None:
                        return
                    continue
                self._pending.reset()
                if headers is None:
                    return
        finally:
            self._done.set()

    def _flush(self, headers: list[Header]) -> None:
        if not headers:
            return
        batch = self._ds.batch()
        for header in headers:
            batch.put(_header_key(header.hash()), header.marshal_binary())
        head_hash = bytes(headers[-1].hash()).hex().upper()
        batch.put(_HEAD_KEY, json.dumps(head_hash).encode())
        self._index.index_to(batch, *headers)
        batch.commit()

    async def _read_head(self) -> Header:
        data = self._ds.get(_HEAD_KEY)
        try:
            hash = bytes.fromhex(json.loads(data))
        except (ValueError, TypeError) as err:
            raise ValueError(f"header/store: malformed head record: {err}") from err
        return await self.get(hash)


async def new_store_with_head(
    datastore: MapDatastore,
    unmarshal: Unmarshal,
    head: Header,
    params: StoreParams | None = None,
) -> HeaderStore:
    """Create a store and force ``head`` as its trusted head."""
    store = HeaderStore(datastore, unmarshal, params)
    await store.init(head)
    return store


async def init_store(store: Store, exchange: Getter, hash: bytes) -> None:
    """Initialize ``store`` from the header with ``hash`` unless it already has a head."""
    try:
        await store.head()
    except NoHeadError:
        initial = await exchange.get(hash)
        await store.init(initial)