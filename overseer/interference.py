"""Predicted KPI impact of placing a workload on a node.

Combined hardware contention is non-additive and can change sign under
saturation, so degradation scores must never be summed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping


class SourceKind(str, Enum):
    """How a degradation score was derived."""

    SINGLE = "single"
    STACKED = "stacked"

    def __str__(self) -> str:
        return self.value


@dataclass
class DegradationScore:
    """Predicted multiplicative factor on a reference KPI for one workload.

    ``kpi_multiplier`` of 1.0 means no change; above 1.0 is degradation.
    ``conservative`` marks an upper-bound score from stacked sources.
    """

    workload_id: str = ""
    kpi_multiplier: float = 0.0
    conservative: bool = False
    source: SourceKind | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "workload_id": self.workload_id,
            "kpi_multiplier": self.kpi_multiplier,
            "conservative": self.conservative,
            "source": "" if self.source is None else self.source.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DegradationScore":
        source = data.get("source") or None
        return cls(
            workload_id=str(data.get("workload_id", "")),
            kpi_multiplier=float(data.get("kpi_multiplier", 0.0)),
            conservative=bool(data.get("conservative", False)),
            source=None if source is None else SourceKind(source),
        )