"""
Data models for storage layer.

Defines cached traffic snapshots and aggregated usage counters.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RoadType(str, Enum):
    """Road classification used to pick a cache freshness window."""
    HIGHWAY = "highway"
    URBAN = "urban"
    RURAL = "rural"


@dataclass(frozen=True)
class TrafficSnapshot:
    """Traffic payload for one grid cell.

    Snapshots are owned by the cache store and replaced wholesale when a
    cell is refreshed. A snapshot with ``error`` set stands in for a failed
    fetch and is never written to the cache.
    """
    cell_id: str
    flow: Dict[str, Any]
    incidents: List[Dict[str, Any]]
    captured_at: datetime
    road_type: RoadType
    ttl_seconds: int
    expires_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def has_flow(self) -> bool:
        """Whether the snapshot carries usable speed data."""
        return bool(self.flow) and self.error is None

    def payload(self) -> Dict[str, Any]:
        """Provider-shaped payload stored in the cache row."""
        return {
            "flow": dict(self.flow),
            "incidents": list(self.incidents),
            "timestamp": self.captured_at.isoformat(),
        }

    @classmethod
    def failed(cls, cell_id: str, message: str, captured_at: datetime) -> "TrafficSnapshot":
        """Build the empty snapshot that represents a failed fetch."""
        return cls(
            cell_id=cell_id,
            flow={},
            incidents=[],
            captured_at=captured_at,
            road_type=RoadType.RURAL,
            ttl_seconds=0,
            error=message,
        )


@dataclass(frozen=True)
class UsageRecord:
    """Aggregate API request counter for one (date, hour, category) key."""
    date: str
    hour: int
    category: str
    request_count: int = 0


@dataclass
class UsageTotals:
    """Usage sums read for a single admission check."""
    daily: int = 0
    hourly: int = 0
    per_category: Dict[str, int] = field(default_factory=dict)
