"""Feature vectors derived from PMU counters, and the computation producing them.

A :class:`FeatureVector` is the per-window observation handed from the node
agent to the training pipeline and the regime classifier. Its JSON form is a
data contract shared between producers and consumers.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from overseer.pmu import Event, EventName

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_TIME_RE = re.compile(
    r"(?P<base>\d{4,}-\d\d-\d\dT\d\d:\d\d:\d\d)(?:\.(?P<frac>\d+))?(?P<zone>Z|[+-]\d\d:\d\d)"
)

_ONE_MICROSECOND = timedelta(microseconds=1)

_AGGREGATED = (
    Event.INSTRUCTIONS,
    Event.CYCLES,
    Event.L1_MISS,
    Event.LLC_MISS,
    Event.DRAM_STALL,
)


def _format_time(moment: datetime) -> str:
    """Render ``moment`` as an RFC 3339 timestamp, using ``Z`` for UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.replace(microsecond=0, tzinfo=None).isoformat()
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    offset = moment.utcoffset() or timedelta(0)
    if not offset:
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(offset) // timedelta(minutes=1)
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _parse_time(text: str) -> datetime:
    """Parse an RFC 3339 timestamp with up to nanosecond precision."""
    match = _TIME_RE.fullmatch(text)
    if match is None:
        raise ValueError(f"invalid timestamp {text!r}")
    frac = (match["frac"] or "")[:6].ljust(6, "0")
    zone = "+00:00" if match["zone"] == "Z" else match["zone"]
    return datetime.fromisoformat(f"{match['base']}.{frac}{zone}")


def _duration_to_ns(duration: timedelta) -> int:
    return (duration // _ONE_MICROSECOND) * 1000


def _duration_from_ns(nanoseconds: int) -> timedelta:
    return timedelta(microseconds=nanoseconds // 1000)


@dataclass
class CoreSample:
    """Counter deltas for one logical core over a window.

    ``time_enabled`` and ``time_running`` are the kernel's multiplexing
    metadata in nanoseconds; zero means it is unavailable.
    """

    core_id: int
    counts: dict[EventName, int] = field(default_factory=dict)
    time_enabled: int = 0
    time_running: int = 0

    @property
    def scale_factor(self) -> float:
        """Multiplexing scale factor; 1.0 when metadata is absent or the group ran throughout."""
        if self.time_running == 0 or self.time_running >= self.time_enabled:
            return 1.0
        return self.time_enabled / self.time_running


@dataclass
class WindowSamples:
    """Per-core counter deltas accumulated over one sampling window."""

    start: datetime
    duration: timedelta
    cores: list[CoreSample] = field(default_factory=list)


@dataclass
class FeatureVector:
    """PMU-derived measurements over one sampling window.

    ``effective_freq_ghz`` and ``raw_counters`` are diagnostic only; use
    :meth:`model_features` for the projection safe to feed a model.
    """

    window_start: datetime = _ZERO_TIME
    window_duration: timedelta = timedelta(0)
    llc_miss_rate: float = 0.0
    dram_stall_ratio: float = 0.0
    l1_replacements_per_ki: float = 0.0
    ipc: float = 0.0
    effective_freq_ghz: float = 0.0
    raw_counters: dict[str, int] | None = None

    def model_features(self) -> "FeatureVector":
        """Return a copy with the non-causal fields cleared; ``self`` is unchanged."""
        return replace(self, effective_freq_ghz=0.0, raw_counters=None)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "window_start": _format_time(self.window_start),
            "window_dur_ns": _duration_to_ns(self.window_duration),
            "llc_miss_rate": self.llc_miss_rate,
            "dram_stall_ratio": self.dram_stall_ratio,
            "l1_repl_per_ki": self.l1_replacements_per_ki,
            "ipc": self.ipc,
        }
        if self.effective_freq_ghz:
            data["effective_freq_ghz"] = self.effective_freq_ghz
        if self.raw_counters:
            data["raw_counters"] = dict(self.raw_counters)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FeatureVector":
        start = data.get("window_start")
        raw = data.get("raw_counters")
        return cls(
            window_start=_ZERO_TIME if start is None else _parse_time(start),
            window_duration=_duration_from_ns(int(data.get("window_dur_ns", 0))),
            llc_miss_rate=float(data.get("llc_miss_rate", 0.0)),
            dram_stall_ratio=float(data.get("dram_stall_ratio", 0.0)),
            l1_replacements_per_ki=float(data.get("l1_repl_per_ki", 0.0)),
            ipc=float(data.get("ipc", 0.0)),
            effective_freq_ghz=float(data.get("effective_freq_ghz", 0.0)),
            raw_counters=None if raw is None else {k: int(v) for k, v in raw.items()},
        )


def compute(window: WindowSamples) -> FeatureVector:
    """Derive a :class:`FeatureVector` from the per-core samples of ``window``.

    Counts are scaled for PMU multiplexing before aggregation, and every ratio
    with a zero denominator is 0 rather than NaN or infinity.
    """
    totals = dict.fromkeys(_AGGREGATED, 0.0)
    for core in window.cores:
        scale = core.scale_factor
        for event in _AGGREGATED:
            totals[event] += scale * core.counts.get(event, 0)

    instructions = totals[Event.INSTRUCTIONS]
    cycles = totals[Event.CYCLES]

    vector = FeatureVector(
        window_start=window.start,
        window_duration=window.duration,
        raw_counters={event.value: int(total) for event, total in totals.items()},
    )
    if instructions > 0:
        vector.llc_miss_rate = totals[Event.LLC_MISS] / instructions
        vector.l1_replacements_per_ki = totals[Event.L1_MISS] / instructions * 1000
    if cycles > 0:
        vector.dram_stall_ratio = totals[Event.DRAM_STALL] / cycles
        vector.ipc = instructions / cycles

    window_sec = window.duration.total_seconds()
    if window.cores and window_sec > 0:
        vector.effective_freq_ghz = cycles / len(window.cores) / window_sec / 1e9
    return vector