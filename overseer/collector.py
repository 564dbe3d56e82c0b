"""Periodic sampling of a counter source into a bounded stream of batches."""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from typing import AsyncIterator, Iterable

from overseer.pmu import CounterSource, EventName, Handle, HandleNotFoundError, RawSample


class Collector:
    """Reads a :class:`CounterSource` every ``interval`` seconds.

    The handle is opened on construction and closed when :meth:`run` exits.
    Batches are buffered up to ``buf_size`` deep; :meth:`batches` yields them
    and ends once :meth:`run` has finished and the buffer is drained.
    """

    def __init__(
        self,
        source: CounterSource,
        core_ids: Iterable[int],
        events: Iterable[EventName],
        interval: float,
        buf_size: int = 1,
    ) -> None:
        if interval <= 0:
            raise ValueError("collector interval must be positive")
        self._source = source
        self._interval = interval
        self._capacity = max(1, buf_size)
        self._buffer: deque[list[RawSample]] = deque()
        self._cond = asyncio.Condition()
        self._closed = False
        self._handle = source.open(core_ids, events)

    @property
    def handle(self) -> Handle:
        """The handle this collector holds on its source."""
        return self._handle

    async def run(self) -> None:
        """Sample until cancelled or a read fails, then close the handle and the stream."""
        try:
            loop = asyncio.get_running_loop()
            next_tick = loop.time() + self._interval
            while True:
                await asyncio.sleep(max(0.0, next_tick - loop.time()))
                samples = await asyncio.to_thread(self._source.read, self._handle)
                async with self._cond:
                    await self._cond.wait_for(lambda: len(self._buffer) < self._capacity)
                    self._buffer.append(samples)
                    self._cond.notify_all()
                next_tick += self._interval
                now = loop.time()
                if next_tick <= now:
                    # Ticks missed by a slow consumer are dropped, not bunched up.
                    next_tick = now + self._interval
        finally:
            with contextlib.suppress(HandleNotFoundError, OSError):
                self._source.close(self._handle)
            async with self._cond:
                self._closed = True
                self._cond.notify_all()

    async def batches(self) -> AsyncIterator[list[RawSample]]:
        """Yield sample batches until the collector has stopped and the buffer is empty."""
        while True:
            async with self._cond:
                await self._cond.wait_for(lambda: bool(self._buffer) or self._closed)
                if not self._buffer:
                    return
                batch = self._buffer.popleft()
                self._cond.notify_all()
            yield batch