"""Per-node contention snapshot exchanged between the agent and the scheduler.

The JSON form is a data contract shared by producer and consumer.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from overseer.features import _ZERO_TIME, _format_time, _parse_time
from overseer.regime import Label
from overseer.topology import NodeTopology


@dataclass
class CoreState:
    """Instantaneous state of one logical core."""

    core_id: int = 0
    smt_sibling_busy: bool = False
    workload_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"core_id": self.core_id, "smt_sibling_busy": self.smt_sibling_busy}
        if self.workload_id:
            data["workload_id"] = self.workload_id
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CoreState":
        return cls(
            core_id=int(data.get("core_id", 0)),
            smt_sibling_busy=bool(data.get("smt_sibling_busy", False)),
            workload_id=str(data.get("workload_id") or ""),
        )


@dataclass
class SocketState:
    """Contention pressure observed on one physical socket.

    ``cores`` is None when core-level detail is not collected.
    """

    socket_id: int = 0
    l3_contended: bool = False
    imc_bw_saturated: bool = False
    cores: list[CoreState] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "socket_id": self.socket_id,
            "l3_contended": self.l3_contended,
            "imc_bw_saturated": self.imc_bw_saturated,
        }
        if self.cores:
            data["cores"] = [core.to_dict() for core in self.cores]
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SocketState":
        cores = data.get("cores")
        return cls(
            socket_id=int(data.get("socket_id", 0)),
            l3_contended=bool(data.get("l3_contended", False)),
            imc_bw_saturated=bool(data.get("imc_bw_saturated", False)),
            cores=None if cores is None else [CoreState.from_dict(c) for c in cores],
        )


@dataclass
class NodeState:
    """The agent's view of one node's hardware contention at a point in time."""

    node_name: str = ""
    timestamp: datetime = _ZERO_TIME
    topology: NodeTopology = field(default_factory=NodeTopology)
    sockets: list[SocketState] | None = None
    workload_regimes: dict[str, Label] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_name": self.node_name,
            "timestamp": _format_time(self.timestamp),
            "topology": self.topology.to_dict(),
            "sockets": None if self.sockets is None else [s.to_dict() for s in self.sockets],
            "workload_regimes": (
                None
                if self.workload_regimes is None
                else {name: Label(label).value for name, label in self.workload_regimes.items()}
            ),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NodeState":
        timestamp = data.get("timestamp")
        topology = data.get("topology")
        sockets = data.get("sockets")
        regimes = data.get("workload_regimes")
        return cls(
            node_name=str(data.get("node_name") or ""),
            timestamp=_ZERO_TIME if timestamp is None else _parse_time(timestamp),
            topology=NodeTopology() if topology is None else NodeTopology.from_dict(topology),
            sockets=None if sockets is None else [SocketState.from_dict(s) for s in sockets],
            workload_regimes=(
                None if regimes is None else {name: Label(value) for name, value in regimes.items()}
            ),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str | bytes) -> "NodeState":
        return cls.from_dict(json.loads(text))