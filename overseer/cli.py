"""Command-line entry point of the node agent."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import re
import signal
import socket
from typing import Sequence

from overseer.agent import DEFAULT_EVENTS, Agent, Config
from overseer.pmu import CounterSource
from overseer.publisher import CRDPublisher, HTTPPublisher, Publisher
from overseer.replay import ReplayBackend, load_trace_file
from overseer.topology import (
    CacheGroup,
    CoreInfo,
    IMCGroup,
    NodeTopology,
    TopologyError,
    TopologySummary,
    discover_from_sysfs,
)

_VERSION = "0.0.0-dev"

_log = logging.getLogger("overseer.agent")

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "\u00b5s": 1e-6,
    "\u03bcs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|\u00b5s|\u03bcs|ms|s|m|h)")


class _FatalError(Exception):
    pass


def _parse_duration(text: str) -> float:
    """Parse a duration such as ``"1s"``, ``"10ms"`` or ``"1m30s"`` into seconds."""
    body = text
    sign = 1.0
    if body and body[0] in "+-":
        sign = -1.0 if body[0] == "-" else 1.0
        body = body[1:]
    if body == "0":
        return 0.0
    if not body:
        raise argparse.ArgumentTypeError(f"invalid duration {text!r}")
    total = 0.0
    pos = 0
    while pos < len(body):
        match = _DURATION_PART.match(body, pos)
        if match is None:
            raise argparse.ArgumentTypeError(f"invalid duration {text!r}")
        total += float(match[1]) * _DURATION_UNITS[match[2]]
        pos = match.end()
    return sign * total


def default_node_name() -> str:
    """Return ``$NODE_NAME``, falling back to the host name."""
    return os.environ.get("NODE_NAME") or socket.gethostname()


def replay_topology() -> TopologySummary:
    """A minimal two-core, one-socket, one-NUMA-node topology for replay runs."""
    return TopologySummary(
        node_topology=NodeTopology(sockets=1, numa_nodes=1, cores_per_socket=2),
        cores=[
            CoreInfo(logical_id=0, physical_id=0, socket_id=0, numa_node_id=0, thread_siblings=[0, 1]),
            CoreInfo(logical_id=1, physical_id=0, socket_id=0, numa_node_id=0, thread_siblings=[0, 1]),
        ],
        l3_groups=[CacheGroup(id=0, cpus=[0, 1])],
        imc_groups=[IMCGroup(id=0, numa_node=0, cpus=[0, 1])],
    )


def new_perf_source(uarch: str) -> CounterSource:
    """Return a hardware counter source; none is available in this package."""
    raise RuntimeError(
        f"perf_event_open counter source for {uarch!r} is not available; use --source=replay"
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="overseer-agent", description="Node PMU contention agent.")
    parser.add_argument("--source", default="perf", help="counter source: perf or replay")
    parser.add_argument("--trace", default="", help="path to trace NDJSON file (--source=replay only)")
    parser.add_argument("--node", default=default_node_name(), help="kubernetes node name")
    parser.add_argument(
        "--interval", type=_parse_duration, default=1.0, help="PMU sampling interval, e.g. 1s or 500ms"
    )
    parser.add_argument("--uarch", default="sapphire_rapids", help="microarchitecture name")
    parser.add_argument("--addr", default=":9100", help="HTTP /state endpoint listen address")
    parser.add_argument("--version", action="version", version=_VERSION)
    return parser.parse_args(argv)


def _build_source(args: argparse.Namespace) -> tuple[CounterSource, TopologySummary]:
    if args.source == "replay":
        frames = []
        if args.trace:
            try:
                frames = load_trace_file(args.trace)
            except (OSError, ValueError) as err:
                raise _FatalError(f"agent: load trace: {err}") from err
        return ReplayBackend(args.uarch, frames, 0), replay_topology()
    if args.source == "perf":
        try:
            source = new_perf_source(args.uarch)
        except (RuntimeError, OSError) as err:
            raise _FatalError(f"agent: perf backend: {err}") from err
        try:
            topo = discover_from_sysfs()
        except TopologyError as err:
            raise _FatalError(f"agent: topology: {err}") from err
        return source, topo
    raise _FatalError(f'agent: unknown --source "{args.source}" (want perf or replay)')


async def _serve_http(pub: HTTPPublisher) -> None:
    try:
        await pub.listen_and_serve()
    except (OSError, ValueError) as err:
        _log.error("agent: HTTP server: %s", err)


async def _run(args: argparse.Namespace) -> int:
    try:
        source, topo = _build_source(args)
    except _FatalError as err:
        _log.error("%s", err)
        return 1

    http_pub = HTTPPublisher(args.addr)
    publishers: list[Publisher] = [http_pub]
    try:
        crd = CRDPublisher.from_environment()
    except (OSError, ValueError) as err:
        _log.warning("agent: CRD publisher init failed: %s", err)
    else:
        if crd is not None:
            publishers.append(crd)

    agent = Agent(
        Config(
            node_name=args.node,
            interval=args.interval,
            events=list(DEFAULT_EVENTS),
            publishers=publishers,
        ),
        source,
        topo,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
            loop.add_signal_handler(sig, stop.set)

    server_task = asyncio.create_task(_serve_http(http_pub))
    agent_task = asyncio.create_task(agent.run())
    stop_task = asyncio.create_task(stop.wait())
    try:
        await asyncio.wait({agent_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (agent_task, stop_task, server_task):
            task.cancel()
        await asyncio.gather(agent_task, stop_task, server_task, return_exceptions=True)

    if agent_task.done() and not agent_task.cancelled() and agent_task.exception() is not None:
        _log.error("agent: %s", agent_task.exception())
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Run the agent until interrupted; return the process exit status."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")
    args = parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 0