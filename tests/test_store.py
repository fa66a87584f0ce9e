import asyncio
import hashlib
import itertools
import json
import os
from dataclasses import dataclass

import pytest

from hdrsync.datastore import KeyNotFoundError, MapDatastore
from hdrsync.interface import (
    Header,
    HeaderNotFoundError,
    NoHeadError,
    NonAdjacentError,
    VerifyError,
)
from hdrsync.local import LocalExchange
from hdrsync.store import (
    HeaderStore,
    HeightIndexer,
    StoppedStoreError,
    StoreParams,
    init_store,
    new_store_with_head,
)

TIMEOUT = 5


@dataclass(frozen=True)
class FakeHeader(Header):
    height: int
    prev: bytes
    salt: bytes

    def hash(self) -> bytes:
        return hashlib.sha256(self.height.to_bytes(8, "big") + self.prev + self.salt).digest()

    def last_header(self) -> bytes:
        return self.prev

    def marshal_binary(self) -> bytes:
        return json.dumps(
            {"height": self.height, "prev": self.prev.hex(), "salt": self.salt.hex()}
        ).encode()

    def verify_adjacent(self, other) -> None:
        if other.height != self.height + 1:
            raise NonAdjacentError()
        if other.last_header() != self.hash():
            raise VerifyError("previous hash mismatch")

    def verify_non_adjacent(self, other) -> None:
        if other.height <= self.height:
            raise VerifyError("header behind trusted")

    def is_expired(self) -> bool:
        return False


def unmarshal(data: bytes) -> FakeHeader:
    fields = json.loads(data)
    return FakeHeader(fields["height"], bytes.fromhex(fields["prev"]), bytes.fromhex(fields["salt"]))


class Suite:
    def __init__(self) -> None:
        self._head = None
        self._counter = itertools.count()

    def head(self) -> FakeHeader:
        if self._head is None:
            self._next()
        return self._head

    def gen(self, amount: int) -> list:
        return [self._next() for _ in range(amount)]

    def _next(self) -> FakeHeader:
        salt = next(self._counter).to_bytes(8, "big")
        if self._head is None:
            self._head = FakeHeader(1, bytes(32), salt)
        else:
            self._head = FakeHeader(self._head.height + 1, self._head.hash(), salt)
        return self._head


async def started_store(ds, head, params=None) -> HeaderStore:
    store = await new_store_with_head(ds, unmarshal, head, params)
    await store.start()
    return store


@pytest.mark.asyncio
async def test_store():
    suite = Suite()
    ds = MapDatastore()
    store = await started_store(ds, suite.head())

    head = await store.head()
    assert head.hash() == suite.head().hash()

    headers = suite.gen(10)
    assert await store.append(*headers) == 10

    out = await asyncio.wait_for(store.get_range_by_height(2, 12), TIMEOUT)
    assert [h.hash() for h in out] == [h.hash() for h in headers]

    head = await store.head()
    assert head.hash() == out[-1].hash()

    assert await store.has(headers[5].hash()) is True
    assert await store.has(os.urandom(32)) is False

    appender = asyncio.create_task(store.append(*suite.gen(1)))
    got = await asyncio.wait_for(store.get_by_height(12), TIMEOUT)
    assert got.height == 12
    assert await appender == 1

    await asyncio.wait_for(store.stop(), TIMEOUT)

    store = HeaderStore(ds, unmarshal)
    await store.start()
    head = await store.head()
    assert head.hash() == suite.head().hash()

    out = await asyncio.wait_for(store.get_range_by_height(1, 13), TIMEOUT)
    assert len(out) == 12
    await asyncio.wait_for(store.stop(), TIMEOUT)


@pytest.mark.asyncio
async def test_store_pending_cache_miss():
    suite = Suite()
    params = StoreParams(store_cache_size=100, write_batch_size=100)
    store = await started_store(MapDatastore(), suite.head(), params)

    assert await store.append(*suite.gen(100)) == 100
    assert await store.append(*suite.gen(50)) == 50

    first = await asyncio.wait_for(store.get_range_by_height(1, 101), TIMEOUT)
    second = await asyncio.wait_for(store.get_range_by_height(101, 151), TIMEOUT)
    assert [h.height for h in first] == list(range(1, 101))
    assert [h.height for h in second] == list(range(101, 151))
    await asyncio.wait_for(store.stop(), TIMEOUT)


@pytest.mark.asyncio
async def test_init_store_no_reinit():
    suite = Suite()
    head = suite.head()
    remote = await started_store(MapDatastore(), head)
    exchange = LocalExchange(remote)

    ds = MapDatastore()
    store = HeaderStore(ds, unmarshal)
    await init_store(store, exchange, head.hash())
    await store.start()
    assert await store.append(*suite.gen(10)) == 10
    await asyncio.wait_for(store.stop(), TIMEOUT)

    reopened = HeaderStore(ds, unmarshal)
    await init_store(reopened, exchange, head.hash())
    await reopened.start()

    reopened_head = await reopened.head()
    assert reopened_head.height == suite.head().height
    assert reopened_head.height != head.height

    await asyncio.wait_for(reopened.stop(), TIMEOUT)
    await asyncio.wait_for(remote.stop(), TIMEOUT)


@pytest.mark.asyncio
async def test_init_store_uses_exchange_when_empty():
    suite = Suite()
    head = suite.head()
    remote = await started_store(MapDatastore(), head)
    store = HeaderStore(MapDatastore(), unmarshal)

    await init_store(store, LocalExchange(remote), head.hash())

    assert await store.head() == head
    await asyncio.wait_for(remote.stop(), TIMEOUT)


@pytest.mark.asyncio
async def test_head_of_empty_store_raises_no_head():
    store = HeaderStore(MapDatastore(), unmarshal)
    with pytest.raises(NoHeadError):
        await store.head()


@pytest.mark.asyncio
async def test_get_by_height_zero_rejected():
    suite = Suite()
    store = await new_store_with_head(MapDatastore(), unmarshal, suite.head())
    with pytest.raises(ValueError):
        await store.get_by_height(0)


@pytest.mark.asyncio
async def test_get_unknown_hash_raises_not_found():
    suite = Suite()
    store = await new_store_with_head(MapDatastore(), unmarshal, suite.head())
    with pytest.raises(HeaderNotFoundError):
        await store.get(os.urandom(32))


@pytest.mark.asyncio
async def test_get_reads_back_flushed_header():
    suite = Suite()
    head = suite.head()
    store = await new_store_with_head(MapDatastore(), unmarshal, head)
    assert await store.get(head.hash()) == head


@pytest.mark.asyncio
async def test_head_record_is_json_hex_of_head_hash():
    suite = Suite()
    ds = MapDatastore()
    head = suite.head()
    await new_store_with_head(ds, unmarshal, head)
    assert json.loads(ds.get("/headers/head")) == head.hash().hex().upper()
    assert ds.get("/headers/1") == head.hash()
    assert unmarshal(ds.get("/headers/" + head.hash().hex().upper())) == head


@pytest.mark.asyncio
async def test_append_nothing_returns_zero():
    suite = Suite()
    store = await started_store(MapDatastore(), suite.head())
    assert await store.append() == 0
    await asyncio.wait_for(store.stop(), TIMEOUT)


@pytest.mark.asyncio
async def test_append_non_adjacent_first_header_raises():
    suite = Suite()
    store = await started_store(MapDatastore(), suite.head())
    headers = suite.gen(3)
    with pytest.raises(NonAdjacentError):
        await store.append(headers[2])
    assert store.height == 1
    await asyncio.wait_for(store.stop(), TIMEOUT)


@pytest.mark.asyncio
async def test_append_forged_first_header_raises_verify_error():
    suite = Suite()
    store = await started_store(MapDatastore(), suite.head())
    forged = FakeHeader(2, bytes(32), b"forged")
    with pytest.raises(VerifyError):
        await store.append(forged)
    await asyncio.wait_for(store.stop(), TIMEOUT)


@pytest.mark.asyncio
async def test_append_applies_valid_prefix():
    suite = Suite()
    store = await started_store(MapDatastore(), suite.head())
    valid = suite.gen(2)
    forged = FakeHeader(4, bytes(32), b"forged")

    assert await store.append(*valid, forged) == 2

    got = await asyncio.wait_for(store.get_by_height(3), TIMEOUT)
    assert got == valid[1]
    assert store.height == 3
    with pytest.raises(VerifyError):
        await store.append(forged)
    await asyncio.wait_for(store.stop(), TIMEOUT)


@pytest.mark.asyncio
async def test_get_range_rejects_empty_range():
    suite = Suite()
    store = await new_store_with_head(MapDatastore(), unmarshal, suite.head())
    with pytest.raises(ValueError):
        await store.get_range_by_height(3, 3)


@pytest.mark.asyncio
async def test_stop_twice_raises():
    suite = Suite()
    store = await started_store(MapDatastore(), suite.head())
    await asyncio.wait_for(store.stop(), TIMEOUT)
    with pytest.raises(StoppedStoreError):
        await store.stop()


@pytest.mark.asyncio
async def test_append_after_stop_raises():
    suite = Suite()
    store = await started_store(MapDatastore(), suite.head())
    await store.head()
    await asyncio.wait_for(store.stop(), TIMEOUT)
    with pytest.raises(StoppedStoreError):
        await store.append(*suite.gen(1))


def test_height_indexer_round_trip():
    ds = MapDatastore()
    indexer = HeightIndexer(ds, cache_size=8)
    suite = Suite()
    headers = [suite.head(), *suite.gen(2)]
    batch = ds.batch()
    indexer.index_to(batch, *headers)
    batch.commit()
    assert [indexer.hash_by_height(h.height) for h in headers] == [h.hash() for h in headers]
    assert ds.get("/2") == headers[1].hash()


def test_height_indexer_missing_height_raises():
    indexer = HeightIndexer(MapDatastore())
    with pytest.raises(KeyNotFoundError):
        indexer.hash_by_height(7)


def test_height_indexer_serves_from_cache():
    ds = MapDatastore()
    indexer = HeightIndexer(ds, cache_size=8)
    header = Suite().head()
    batch = ds.batch()
    indexer.index_to(batch, header)
    batch.commit()
    assert indexer.hash_by_height(1) == header.hash()
    ds.delete("/1")
    assert indexer.hash_by_height(1) == header.hash()