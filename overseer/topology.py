"""Discovery and modelling of a node's shared-resource CPU topology.

The layout is read from a sysfs tree so that the scheduler can reason about
cache, memory-controller and SMT pressure domains.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, TypeVar

_INT_RE = re.compile(r"[+-]?[0-9]+")

_T = TypeVar("_T")


class TopologyError(Exception):
    """Raised when the sysfs topology cannot be read or parsed."""


@dataclass
class NodeTopology:
    """Aggregate physical layout of a single node."""

    sockets: int = 0
    numa_nodes: int = 0
    cores_per_socket: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "sockets": self.sockets,
            "numa_nodes": self.numa_nodes,
            "cores_per_socket": self.cores_per_socket,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NodeTopology":
        return cls(
            sockets=int(data.get("sockets", 0)),
            numa_nodes=int(data.get("numa_nodes", 0)),
            cores_per_socket=int(data.get("cores_per_socket", 0)),
        )


@dataclass
class CoreInfo:
    """Physical placement of one logical CPU."""

    logical_id: int
    physical_id: int
    socket_id: int
    numa_node_id: int
    thread_siblings: list[int] = field(default_factory=list)


@dataclass
class CacheGroup:
    """A set of logical CPUs sharing one cache instance."""

    id: int
    cpus: list[int] = field(default_factory=list)


@dataclass
class IMCGroup:
    """The logical CPUs served by one integrated memory-controller domain."""

    id: int
    numa_node: int
    cpus: list[int] = field(default_factory=list)


@dataclass
class TopologySummary:
    """Full shared-resource layout produced by :func:`discover`."""

    node_topology: NodeTopology = field(default_factory=NodeTopology)
    cores: list[CoreInfo] = field(default_factory=list)
    l2_groups: list[CacheGroup] = field(default_factory=list)
    l3_groups: list[CacheGroup] = field(default_factory=list)
    imc_groups: list[IMCGroup] = field(default_factory=list)

    @property
    def sockets(self) -> int:
        return self.node_topology.sockets

    @property
    def numa_nodes(self) -> int:
        return self.node_topology.numa_nodes

    @property
    def cores_per_socket(self) -> int:
        return self.node_topology.cores_per_socket

    def cores_in_l3_with_core(self, cpu: int) -> list[int] | None:
        """Return the sorted CPUs sharing the L3 with ``cpu`` (itself included), or None."""
        for group in self.l3_groups:
            if cpu in group.cpus:
                return list(group.cpus)
        return None

    def smt_sibling_of(self, cpu: int) -> int | None:
        """Return the SMT peer of ``cpu``, or None if it has none or is unknown."""
        for core in self.cores:
            if core.logical_id != cpu:
                continue
            return next((sib for sib in core.thread_siblings if sib != cpu), None)
        return None

    def is_on_saturated_imc(self, cpu: int, saturated: Mapping[int, bool]) -> bool:
        """Report whether ``cpu`` is served by an IMC group marked true in ``saturated``."""
        for group in self.imc_groups:
            if cpu in group.cpus:
                return bool(saturated.get(group.id, False))
        return False


def _parse_int(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"invalid integer {text!r}")
    return int(text)


def parse_cpu_list(text: str) -> list[int]:
    """Parse a Linux cpulist such as ``"0-3,8-11"`` into a list of CPU ids."""
    cpus: list[int] = []
    for part in text.strip().split(","):
        part = part.strip()
        if not part:
            continue
        try:
            if "-" in part:
                lo_text, hi_text = part.split("-", 1)
                cpus.extend(range(_parse_int(lo_text), _parse_int(hi_text) + 1))
            else:
                cpus.append(_parse_int(part))
        except ValueError:
            raise TopologyError(f"invalid cpulist segment {part!r}") from None
    return cpus


def _read_str(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors="replace").strip()


def _read_int(path: Path) -> int:
    return _parse_int(_read_str(path))


def _read_cpu_list(path: Path) -> list[int]:
    return parse_cpu_list(_read_str(path))


def _read_required(label: str, path: Path, reader: Callable[[Path], _T]) -> _T:
    try:
        return reader(path)
    except (OSError, ValueError, TopologyError) as err:
        raise TopologyError(f"{label}: {err}") from err


def _discover_numa(
    node_dir: Path, online: list[int]
) -> tuple[dict[int, int], list[tuple[int, list[int]]]]:
    try:
        names = sorted(os.listdir(node_dir))
    except OSError:
        # No NUMA support in the kernel: every CPU belongs to node 0.
        return {}, [(0, sorted(online))]

    cpu_to_numa: dict[int, int] = {}
    nodes: list[tuple[int, list[int]]] = []
    for name in names:
        if not name.startswith("node"):
            continue
        try:
            node_id = _parse_int(name[4:])
        except ValueError:
            continue
        cpus = sorted(
            _read_required(f"NUMA node{node_id} cpulist", node_dir / name / "cpulist", _read_cpu_list)
        )
        nodes.append((node_id, cpus))
        for cpu in cpus:
            cpu_to_numa[cpu] = node_id
    nodes.sort(key=lambda entry: entry[0])
    return cpu_to_numa, nodes


def _discover_cache_groups(
    cpu_dir: Path, online: list[int]
) -> tuple[dict[str, list[int]], dict[str, list[int]]]:
    l2: dict[str, list[int]] = {}
    l3: dict[str, list[int]] = {}
    for cpu in online:
        cache_dir = cpu_dir / f"cpu{cpu}" / "cache"
        try:
            names = sorted(os.listdir(cache_dir))
        except OSError as err:
            raise TopologyError(f"cpu{cpu} cache dir: {err}") from err
        for name in names:
            if not name.startswith("index"):
                continue
            index_dir = cache_dir / name
            try:
                level = _read_int(index_dir / "level")
                cache_type = _read_str(index_dir / "type")
                shared = _read_cpu_list(index_dir / "shared_cpu_list")
            except (OSError, ValueError, TopologyError):
                continue
            key = ",".join(str(c) for c in sorted(shared))
            if level == 2 and cache_type == "Unified":
                l2[key] = shared
            elif level == 3:
                # Some kernels report the LLC as "Data" rather than "Unified".
                l3[key] = shared
    return l2, l3


def _build_cache_groups(raw: Mapping[str, list[int]]) -> list[CacheGroup]:
    sorted_sets = sorted(
        (sorted(cpus) for cpus in raw.values()),
        key=lambda cpus: (bool(cpus), cpus[0] if cpus else 0),
    )
    return [CacheGroup(id=i, cpus=cpus) for i, cpus in enumerate(sorted_sets)]


def discover(root: str | os.PathLike[str]) -> TopologySummary:
    """Read the CPU topology from a tree whose sysfs lives at ``root/sys/devices/system``."""
    base = Path(root)
    cpu_dir = base / "sys" / "devices" / "system" / "cpu"
    node_dir = base / "sys" / "devices" / "system" / "node"

    try:
        online_text = _read_str(cpu_dir / "online")
    except OSError as err:
        raise TopologyError(f"read online cpus: {err}") from err
    try:
        online = parse_cpu_list(online_text)
    except TopologyError as err:
        raise TopologyError(f"parse online cpulist: {err}") from err
    if not online:
        raise TopologyError("no online CPUs found")

    raw: dict[int, tuple[int, int, list[int]]] = {}
    for cpu in online:
        topo_dir = cpu_dir / f"cpu{cpu}" / "topology"
        socket_id = _read_required(
            f"cpu{cpu} physical_package_id", topo_dir / "physical_package_id", _read_int
        )
        physical_id = _read_required(f"cpu{cpu} core_id", topo_dir / "core_id", _read_int)
        siblings = _read_required(
            f"cpu{cpu} thread_siblings_list", topo_dir / "thread_siblings_list", _read_cpu_list
        )
        raw[cpu] = (socket_id, physical_id, siblings)

    cpu_to_numa, numa_nodes = _discover_numa(node_dir, online)
    l2_raw, l3_raw = _discover_cache_groups(cpu_dir, online)

    cores = [
        CoreInfo(
            logical_id=cpu,
            physical_id=raw[cpu][1],
            socket_id=raw[cpu][0],
            numa_node_id=cpu_to_numa.get(cpu, 0),
            thread_siblings=raw[cpu][2],
        )
        for cpu in sorted(online)
    ]

    imc_groups = [
        IMCGroup(id=i, numa_node=node_id, cpus=cpus)
        for i, (node_id, cpus) in enumerate(numa_nodes)
    ]

    phys_per_socket: dict[int, set[int]] = {}
    for core in cores:
        phys_per_socket.setdefault(core.socket_id, set()).add(core.physical_id)
    max_phys = max((len(p) for p in phys_per_socket.values()), default=0)

    return TopologySummary(
        node_topology=NodeTopology(
            sockets=len(phys_per_socket),
            numa_nodes=len(numa_nodes),
            cores_per_socket=max_phys,
        ),
        cores=cores,
        l2_groups=_build_cache_groups(l2_raw),
        l3_groups=_build_cache_groups(l3_raw),
        imc_groups=imc_groups,
    )


def discover_from_sysfs() -> TopologySummary:
    """Read the topology from the live ``/sys`` filesystem."""
    return discover("/")