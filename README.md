# hdrsync

`hdrsync` keeps a local, verified chain of block headers and brings it up
to date with a source of newer headers. Everything is built on `asyncio`.

## What is in the package

- `hdrsync.interface`: the `Header` contract, the abstract `Getter`,
  `Store`, `Subscriber` and `Subscription` classes, the `ValidationResult`
  enum and the shared errors.
- `hdrsync.store`: `HeaderStore`, a header store over a key-value
  datastore, with `StoreParams`, `HeightIndexer`, `new_store_with_head` and
  `init_store`.
- `hdrsync.syncer`: `Syncer`, which syncs a store up to the latest trusted
  header, and `SyncState`, which describes a sync.
- `hdrsync.local`: `LocalExchange`, which serves headers from another
  store, and `DummySubscriber`, which hands out a fixed list of headers.
- `hdrsync.request`: `ExtendedHeaderRequest` and its protobuf wire encoding
  (`marshal_extended_header_request`, `unmarshal_extended_header_request`).
- `hdrsync.datastore`: `MapDatastore`, an in-memory key-value datastore,
  and its `DatastoreBatch`.
- Building blocks: `Batch` (`hdrsync.batch`), `HeightSub`
  (`hdrsync.heightsub`), `Ranges` and `HeaderRange` (`hdrsync.ranges`).

## Installation

```
pip install hdrsync
```

## Header objects

The package does not define a concrete header type. The store and the
syncer work with any subclass of `hdrsync.interface.Header` that provides:

- an integer `height` attribute;
- `hash()` and `last_header()`, the latter being the previous header's hash;
- `marshal_binary()`;
- `verify_adjacent(other)` and `verify_non_adjacent(other)`, which raise
  when `other` does not follow from the header;
- `is_expired()`.

A `HeaderStore` is also given an `unmarshal` function that turns the bytes
from `marshal_binary()` back into a header. It uses this function when it
reads headers from the datastore.

## The store

`HeaderStore(datastore, unmarshal, params=None)` keeps headers under a
`/headers` prefix of the datastore. Each header is indexed by its hash and
by its height, and the record of the current head is stored with them.
Recent lookups go through LRU caches. `StoreParams` sets the size of the
header cache (4096), the size of the height-index cache (16384) and the
write batch size (2048).

- `append(*headers)` checks each header against the current write head with
  `verify_adjacent`. If the first header fails, its error is raised. If a
  later header fails, the headers before it are still applied. It returns
  how many headers were applied. Applied headers can be read at once. A
  background task started by `start()` writes them to the datastore once
  `write_batch_size` headers have built up, and again on `stop()`.
- `get_by_height(height)` waits until the header at that height has been
  appended. Height 0 raises `ValueError`.
- `get(hash)`, `has(hash)`, `head()` and `get_range_by_height(start, end)`
  cover the half-open range `[start, end)`. An empty range raises
  `ValueError`.
- `height` is the height of the current head.

`new_store_with_head(datastore, unmarshal, head, params=None)` is a
coroutine. It creates a store and writes `head` as its trusted head.
`init_store(store, exchange, hash)` does nothing when the store already has
a head. When it has none, it fetches the header with `hash` from the
exchange and makes it the head.

## Syncing

`Syncer(exchange, store, sub, request_size=512)` registers its
`process_incoming` validator with the subscriber and runs a background
loop. Each sync goes from the store's head up to the latest trusted header.
The trusted header is the highest pending header. If there is none, it is
the store's head, or the exchange's head when the store's head has expired.
Headers are taken from the pending ranges when they are there and are
otherwise requested from the exchange, at most `request_size` at a time.

`process_incoming(header)` handles one incoming header:

- If the store accepts it with `append`, the result is `ACCEPT`.
- If `append` raises `VerifyError`, the result is `REJECT`.
- If `append` raises `NonAdjacentError` or any other error, the header is
  checked against the trusted head. A header at or below the trusted head
  gives `IGNORE`. A header that fails `verify_non_adjacent` with
  `VerifyError` gives `REJECT`. Any other header is added to the pending
  ranges, a sync is triggered and the result is `ACCEPT`.

`state()` returns a `SyncState`. It carries the id of the sync, the current
store height, the heights and hashes it syncs between, the start and end
times and any error. `SyncState.finished()` and `SyncState.duration()`
report on it. `wait_sync()` waits until the ongoing sync reaches its
target height.

```python
from hdrsync.datastore import MapDatastore
from hdrsync.local import DummySubscriber, LocalExchange
from hdrsync.store import StoreParams, new_store_with_head
from hdrsync.syncer import Syncer


async def follow(genesis, unmarshal, remote_store):
    store = await new_store_with_head(MapDatastore(), unmarshal, genesis, StoreParams())
    await store.start()

    syncer = Syncer(LocalExchange(remote_store), store, DummySubscriber())
    await syncer.start()
    await syncer.wait_sync()

    state = syncer.state()
    print("synced", state.from_height, "->", state.to_height, "in", state.duration())

    await syncer.stop()
    await store.stop()
```

`LocalExchange.get_range_by_height(origin, amount)` takes a start height
and a count. It returns `amount` headers starting at `origin`.

## Errors

- `HeaderNotFoundError`: the header is not in the store.
- `NoHeadError`: the store holds no head, so it has not been initialised.
- `NonAdjacentError`: meant to be raised by header verification when a
  header does not follow the head. `Syncer` treats it as a header to verify
  and cache.
- `VerifyError`: raised by header verification. It carries a `reason`.
- `StoppedStoreError`: the store has already been stopped, either on a
  second `stop()` or on an `append` after stopping.
- `ElapsedHeightError`: `HeightSub.sub` was asked for a height that has
  already been published.
- `KeyNotFoundError`: `MapDatastore.get` found no value under the key.

## What the package does not do

- It has no network exchange and no network subscriber. The only exchange
  is `LocalExchange` and the only subscriber is `DummySubscriber`. To
  follow a real network, bring your own `Getter` and `Subscriber`.
- `ExtendedHeaderRequest` only encodes and decodes the request message. No
  code here sends the request or serves it.
- The only datastore is the in-memory `MapDatastore`, so nothing is kept
  across processes.
- It defines no concrete header type and does not check signatures itself.
  Verification is left to your `Header` implementation.
- It has no command-line program.

## Running the tests

```
pip install -e ".[test]"
pytest
```