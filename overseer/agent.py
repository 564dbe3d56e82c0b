"""The collect, compute and publish loop of the node agent."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Iterable

from overseer.collector import Collector
from overseer.features import CoreSample, FeatureVector, WindowSamples, compute
from overseer.nodestate import CoreState, NodeState, SocketState
from overseer.pmu import CounterSource, Event, EventName, HandleNotFoundError, RawSample
from overseer.publisher import Publisher
from overseer.topology import CoreInfo, TopologySummary

_log = logging.getLogger(__name__)

# Conservative lower bounds for socket-level contention classification.
LLC_SATURATION_THRESHOLD = 0.05
DRAM_SATURATION_THRESHOLD = 0.20

DEFAULT_EVENTS: tuple[Event, ...] = (
    Event.INSTRUCTIONS,
    Event.CYCLES,
    Event.L1_MISS,
    Event.LLC_MISS,
    Event.DRAM_STALL,
)


@dataclass
class Config:
    """Agent tuning parameters; ``interval`` is in seconds."""

    node_name: str
    interval: float = 1.0
    events: list[EventName] = field(default_factory=lambda: list(DEFAULT_EVENTS))
    publishers: list[Publisher] = field(default_factory=list)


class Agent:
    """Samples PMU counters, derives features and publishes node state."""

    def __init__(self, config: Config, source: CounterSource, topology: TopologySummary) -> None:
        self.config = config
        self.source = source
        self.topology = topology

    async def run(self) -> None:
        """Sample every core of the topology until cancelled or the source fails."""
        core_ids = [core.logical_id for core in self.topology.cores]
        collector = Collector(
            self.source, core_ids, self.config.events, self.config.interval, 2
        )
        task = asyncio.create_task(collector.run())
        try:
            async for batch in collector.batches():
                ns = self.build_node_state(batch)
                for pub in self.config.publishers:
                    try:
                        await pub.publish(ns)
                    except Exception as err:  # noqa: BLE001 - one bad sink must not stop the loop
                        _log.warning("agent: publish: %s", err)
            await task
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            # The collector normally closes its handle; this covers a task cancelled before it ran.
            with contextlib.suppress(HandleNotFoundError, OSError):
                self.source.close(collector.handle)

    def build_node_state(self, batch: Iterable[RawSample]) -> NodeState:
        """Turn one batch of raw samples into a node state snapshot."""
        cores = [CoreSample(core_id=s.core_id, counts=dict(s.counts)) for s in batch]
        vector = compute(
            WindowSamples(
                start=datetime.now(timezone.utc),
                duration=timedelta(seconds=self.config.interval),
                cores=cores,
            )
        )
        return assemble_node_state(self.config.node_name, self.topology, vector)


def assemble_node_state(
    node_name: str, topo: TopologySummary, vector: FeatureVector
) -> NodeState:
    """Combine a feature vector with the topology into a node state.

    Socket contention flags come from node-wide averages; SMT sibling activity
    is not tracked and is always reported as idle.
    """
    by_socket: dict[int, list[CoreInfo]] = {}
    for core in topo.cores:
        by_socket.setdefault(core.socket_id, []).append(core)

    sockets = [
        SocketState(
            socket_id=socket_id,
            l3_contended=vector.llc_miss_rate > LLC_SATURATION_THRESHOLD,
            imc_bw_saturated=vector.dram_stall_ratio > DRAM_SATURATION_THRESHOLD,
            cores=[
                CoreState(core_id=core.logical_id, smt_sibling_busy=False)
                for core in by_socket[socket_id]
            ],
        )
        for socket_id in sorted(by_socket)
    ]

    return NodeState(
        node_name=node_name,
        timestamp=vector.window_start,
        topology=replace(topo.node_topology),
        sockets=sockets,
    )