"""Counter source that replays pre-recorded counter traces."""

from __future__ import annotations

import itertools
import json
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from overseer.pmu import (
    CounterSource,
    EventName,
    Handle,
    HandleNotFoundError,
    RawSample,
    lookup_encodings,
)


@dataclass
class TraceFrame:
    """One recorded counter snapshot, keyed by event name."""

    core_id: int = 0
    counts: dict[str, int] = field(default_factory=dict)


def _require_int(value: Any, what: str, *, unsigned: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{what}: expected an integer, got {value!r}")
    if unsigned and value < 0:
        raise ValueError(f"{what}: expected a non-negative integer, got {value}")
    return value


def _decode_frame(obj: Any) -> TraceFrame:
    if obj is None:
        return TraceFrame()
    if not isinstance(obj, dict):
        raise ValueError(f"expected a JSON object, got {obj!r}")
    core_id = obj.get("core_id")
    raw_counts = obj.get("counts")
    if raw_counts is not None and not isinstance(raw_counts, dict):
        raise ValueError(f"counts: expected a JSON object, got {raw_counts!r}")
    counts = {
        name: _require_int(value, f"counts[{name}]", unsigned=True)
        for name, value in (raw_counts or {}).items()
    }
    return TraceFrame(
        core_id=0 if core_id is None else _require_int(core_id, "core_id"),
        counts=counts,
    )


def load_trace_file(path: str | os.PathLike[str]) -> list[TraceFrame]:
    """Read a stream of JSON trace frames (normally one per line) from ``path``."""
    with open(path, encoding="utf-8") as fh:
        text = fh.read()
    decoder = json.JSONDecoder()
    frames: list[TraceFrame] = []
    pos = 0
    while True:
        while pos < len(text) and text[pos].isspace():
            pos += 1
        if pos >= len(text):
            return frames
        try:
            obj, pos = decoder.raw_decode(text, pos)
            frames.append(_decode_frame(obj))
        except ValueError as err:
            raise ValueError(f"pmu replay: decode {os.fspath(path)}: {err}") from err


class _ReplayState:
    def __init__(self, core_ids: list[int], events: list[EventName]) -> None:
        self.core_ids = core_ids
        self.events = events
        self.position = 0
        self.lock = threading.Lock()


class ReplayBackend(CounterSource):
    """Serves recorded frames round-robin, one frame per core per read.

    Events are validated against the same encoding table as the hardware
    backend, so unknown-event errors behave identically. With no frames every
    counter reads zero. ``cadence`` (seconds) delays each read.
    """

    def __init__(
        self,
        uarch: str,
        frames: Iterable[TraceFrame] | None = None,
        cadence: float = 0.0,
    ) -> None:
        self.uarch = uarch
        self._frames = list(frames or ())
        self._cadence = cadence
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._handles: dict[Handle, _ReplayState] = {}

    def open(self, core_ids: Iterable[int], events: Iterable[EventName]) -> Handle:
        requested = list(events)
        lookup_encodings(self.uarch, requested)
        state = _ReplayState(list(core_ids), requested)
        with self._lock:
            handle = Handle(next(self._ids))
            self._handles[handle] = state
        return handle

    def read(self, handle: Handle) -> list[RawSample]:
        with self._lock:
            state = self._handles.get(handle)
        if state is None:
            raise HandleNotFoundError()
        if self._cadence > 0:
            time.sleep(self._cadence)
        samples: list[RawSample] = []
        with state.lock:
            for core_id in state.core_ids:
                if self._frames:
                    frame = self._frames[state.position % len(self._frames)]
                    state.position += 1
                    counts = {ev: frame.counts.get(str(ev), 0) for ev in state.events}
                else:
                    counts = {ev: 0 for ev in state.events}
                samples.append(RawSample(core_id=core_id, counts=counts))
        return samples

    def close(self, handle: Handle) -> None:
        with self._lock:
            if self._handles.pop(handle, None) is None:
                raise HandleNotFoundError()