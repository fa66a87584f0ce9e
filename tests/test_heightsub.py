import asyncio
from dataclasses import dataclass

import pytest

from hdrsync.heightsub import ElapsedHeightError, HeightSub


@dataclass
class _Header:
    height: int


@pytest.mark.asyncio
async def test_height_sub():
    hs = HeightSub()

    hs.height = 99
    hs.pub(_Header(100))
    with pytest.raises(ElapsedHeightError):
        await asyncio.wait_for(hs.sub(10), 5)

    async def publish():
        await asyncio.sleep(0.001)
        hs.pub(_Header(101), _Header(102))

    task = asyncio.create_task(publish())
    h = await asyncio.wait_for(hs.sub(101), 5)
    await task
    assert h.height == 101
    assert hs.height == 102


@pytest.mark.asyncio
async def test_current_height_is_elapsed():
    hs = HeightSub(height=5)
    with pytest.raises(ElapsedHeightError):
        await hs.sub(5)


@pytest.mark.asyncio
async def test_single_header_wakes_all_waiters():
    hs = HeightSub(height=1)
    waiters = [asyncio.create_task(hs.sub(2)) for _ in range(3)]
    await asyncio.sleep(0)
    header = _Header(2)
    hs.pub(header)
    results = await asyncio.wait_for(asyncio.gather(*waiters), 5)
    assert all(r is header for r in results)


@pytest.mark.asyncio
async def test_range_wakes_matching_heights_only():
    hs = HeightSub(height=0)
    inside = asyncio.create_task(hs.sub(3))
    beyond = asyncio.create_task(hs.sub(10))
    await asyncio.sleep(0)
    headers = [_Header(h) for h in range(1, 6)]
    hs.pub(*headers)
    assert await asyncio.wait_for(inside, 5) is headers[2]
    assert not beyond.done()
    beyond.cancel()
    with pytest.raises(asyncio.CancelledError):
        await beyond


@pytest.mark.asyncio
async def test_wrong_order_raises():
    hs = HeightSub(height=10)
    with pytest.raises(ValueError):
        hs.pub(_Header(12))
    assert hs.height == 10


@pytest.mark.asyncio
async def test_empty_pub_keeps_height():
    hs = HeightSub(height=4)
    hs.pub()
    assert hs.height == 4


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_break_pub():
    hs = HeightSub()
    task = asyncio.create_task(hs.sub(2))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    hs.pub(_Header(1), _Header(2))
    assert hs.height == 2
    with pytest.raises(ElapsedHeightError):
        await hs.sub(2)


@pytest.mark.asyncio
async def test_timeout_while_waiting():
    hs = HeightSub()
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(hs.sub(1), 0.01)
    header = _Header(1)
    waiter = asyncio.create_task(hs.sub(1))
    await asyncio.sleep(0)
    hs.pub(header)
    assert await asyncio.wait_for(waiter, 5) is header