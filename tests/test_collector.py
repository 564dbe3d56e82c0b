import asyncio

import pytest

from overseer.collector import Collector
from overseer.pmu import CounterSource, Event, Handle, HandleNotFoundError, UnknownEventsError
from overseer.replay import ReplayBackend, TraceFrame

TEST_FRAMES = [
    TraceFrame(core_id=0, counts={"INSTRUCTIONS": 1_000_000, "CYCLES": 800_000}),
    TraceFrame(core_id=1, counts={"INSTRUCTIONS": 900_000, "CYCLES": 750_000}),
]


class _FailingSource(CounterSource):
    def __init__(self):
        self.closed = []

    def open(self, core_ids, events):
        return Handle(1)

    def read(self, handle):
        raise RuntimeError("read failed")

    def close(self, handle):
        self.closed.append(handle)


async def _drain(col):
    return [batch async for batch in col.batches()]


@pytest.mark.asyncio
async def test_collector_emits_samples():
    frames = [TraceFrame(core_id=0, counts={"INSTRUCTIONS": 500_000, "CYCLES": 400_000})]
    src = ReplayBackend("sapphire_rapids", frames, 0)
    col = Collector(src, [0], [Event.INSTRUCTIONS, Event.CYCLES], 0.005, 8)
    task = asyncio.create_task(col.run())

    got = []
    async for batch in col.batches():
        got.append(batch)
        if len(got) >= 3:
            break
    task.cancel()
    await asyncio.wait_for(_drain(col), timeout=2)

    summary = [
        (len(b), b[0].core_id, b[0].counts[Event.INSTRUCTIONS], b[0].counts[Event.CYCLES])
        for b in got
    ]
    assert summary == [(1, 0, 500_000, 400_000)] * 3

    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_stream_ends_and_handle_closed_after_cancel():
    src = ReplayBackend("sapphire_rapids", TEST_FRAMES, 0)
    col = Collector(src, [0], [Event.CYCLES], 0.005, 4)
    task = asyncio.create_task(col.run())
    await asyncio.sleep(0)
    task.cancel()
    remaining = await asyncio.wait_for(_drain(col), timeout=2)
    assert len(remaining) <= 4
    with pytest.raises(asyncio.CancelledError):
        await task
    with pytest.raises(HandleNotFoundError):
        src.read(col.handle)


@pytest.mark.asyncio
async def test_read_error_stops_run():
    src = _FailingSource()
    col = Collector(src, [0], [Event.CYCLES], 0.001, 1)
    with pytest.raises(RuntimeError, match="read failed"):
        await asyncio.wait_for(col.run(), timeout=2)
    assert src.closed == [Handle(1)]
    assert await asyncio.wait_for(_drain(col), timeout=2) == []


@pytest.mark.asyncio
async def test_buffer_bounded_by_buf_size():
    src = ReplayBackend("sapphire_rapids", TEST_FRAMES, 0)
    col = Collector(src, [0, 1], [Event.INSTRUCTIONS], 0.001, 2)
    task = asyncio.create_task(col.run())
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    batches = await asyncio.wait_for(_drain(col), timeout=2)
    assert len(batches) == 2
    assert [s.counts[Event.INSTRUCTIONS] for s in batches[0]] == [1_000_000, 900_000]


def test_collector_open_error():
    src = ReplayBackend("unknown_uarch", TEST_FRAMES, 0)
    with pytest.raises(UnknownEventsError) as info:
        Collector(src, [0], [Event.INSTRUCTIONS, Event.CYCLES], 1.0, 1)
    assert info.value.uarch == "unknown_uarch"


def test_collector_rejects_non_positive_interval():
    src = ReplayBackend("sapphire_rapids", TEST_FRAMES, 0)
    with pytest.raises(ValueError):
        Collector(src, [0], [Event.CYCLES], 0, 1)