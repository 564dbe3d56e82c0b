"""Hardware performance counter abstractions.

Counter collection sits behind :class:`CounterSource` so that every other part
of the package can be exercised without real PMU hardware. Event names are
symbolic and are resolved to per-microarchitecture perf encodings through a
fixed table; asking for an event with no encoding is an error, never a
silent zero.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping, Union


class Event(str, Enum):
    """Symbolic hardware performance counter name."""

    INSTRUCTIONS = "INSTRUCTIONS"
    CYCLES = "CYCLES"
    L1_MISS = "L1_MISS"
    LLC_MISS = "LLC_MISS"
    DRAM_STALL = "DRAM_STALL"

    def __str__(self) -> str:
        return self.value


EventName = Union[Event, str]

# perf_event_attr type field values.
PERF_TYPE_HARDWARE = 0
PERF_TYPE_RAW = 4

# Config values for PERF_TYPE_HARDWARE.
PERF_HW_CPU_CYCLES = 0
PERF_HW_INSTRUCTIONS = 1


@dataclass(frozen=True)
class PerfEncoding:
    """The perf_event_attr type and config of one event on one microarchitecture."""

    event_type: int
    config: int


# Raw config layout: bits[7:0] event select, bits[15:8] umask, bits[31:24] cmask.
ENCODING_TABLE: Mapping[str, Mapping[str, PerfEncoding]] = MappingProxyType(
    {
        "sapphire_rapids": MappingProxyType(
            {
                Event.INSTRUCTIONS.value: PerfEncoding(PERF_TYPE_HARDWARE, PERF_HW_INSTRUCTIONS),
                Event.CYCLES.value: PerfEncoding(PERF_TYPE_HARDWARE, PERF_HW_CPU_CYCLES),
                # MEM_LOAD_RETIRED.L1_MISS  event=0xd1 umask=0x08
                Event.L1_MISS.value: PerfEncoding(PERF_TYPE_RAW, 0x0800D1),
                # MEM_LOAD_RETIRED.L3_MISS  event=0xd1 umask=0x20
                Event.LLC_MISS.value: PerfEncoding(PERF_TYPE_RAW, 0x2000D1),
                # CYCLE_ACTIVITY.STALLS_L3_MISS  event=0xa3 umask=0x06 cmask=0x06
                Event.DRAM_STALL.value: PerfEncoding(PERF_TYPE_RAW, 0x0600A3),
            }
        ),
    }
)


class UnknownEventsError(Exception):
    """One or more events have no encoding for the backend's microarchitecture."""

    def __init__(self, uarch: str, missing: Iterable[EventName]) -> None:
        self.uarch = uarch
        self.missing: list[EventName] = list(missing)
        names = ", ".join(str(ev) for ev in self.missing)
        super().__init__(f'pmu: uarch "{uarch}" has no encoding for: {names}')


class HandleNotFoundError(LookupError):
    """A handle passed to read or close is unknown to the backend."""

    def __init__(self) -> None:
        super().__init__("pmu: handle not found")

    def __str__(self) -> str:
        return "pmu: handle not found"


@dataclass(frozen=True)
class Handle:
    """Opaque token issued by :meth:`CounterSource.open`. Id 0 is never issued."""

    id: int


@dataclass
class RawSample:
    """One core's counter snapshot."""

    core_id: int
    counts: dict[EventName, int] = field(default_factory=dict)


class CounterSource(abc.ABC):
    """A source of per-core PMU counter values."""

    @abc.abstractmethod
    def open(self, core_ids: Iterable[int], events: Iterable[EventName]) -> Handle:
        """Arm the source for the given cores and events.

        Raises UnknownEventsError if an event lacks an encoding.
        """

    @abc.abstractmethod
    def read(self, handle: Handle) -> list[RawSample]:
        """Return the current counter values for every core of ``handle``."""

    @abc.abstractmethod
    def close(self, handle: Handle) -> None:
        """Release the resources held by ``handle``."""


def lookup_encodings(uarch: str, events: Iterable[EventName]) -> dict[EventName, PerfEncoding]:
    """Resolve symbolic events to the perf encodings of ``uarch``.

    Raises UnknownEventsError naming every event that cannot be resolved; for an
    unknown microarchitecture that is every requested event.
    """
    requested = list(events)
    table = ENCODING_TABLE.get(uarch)
    if table is None:
        raise UnknownEventsError(uarch, requested)
    resolved: dict[EventName, PerfEncoding] = {}
    missing: list[EventName] = []
    for ev in requested:
        encoding = table.get(str(ev))
        if encoding is None:
            missing.append(ev)
        else:
            resolved[ev] = encoding
    if missing:
        raise UnknownEventsError(uarch, missing)
    return resolved