"""
Traffic multipliers for travel-time matrices.

Turns cached cell snapshots into per-edge slowdown factors consumed by
the route-ordering step.
"""

from typing import Dict, List, Optional, Sequence

from .grid import GridIndex, LatLon
from traffic_guard.storage.models import TrafficSnapshot

MIN_MULTIPLIER = 1.0
MAX_MULTIPLIER = 3.0


def traffic_multiplier_for(snapshot: Optional[TrafficSnapshot]) -> float:
    """Slowdown factor of a cell: free-flow speed over current speed.

    Capped to [1.0, 3.0]. A missing snapshot, a failed fetch or flow data
    without both speeds is neutral (exactly 1.0).
    """
    if snapshot is None or not snapshot.has_flow:
        return MIN_MULTIPLIER

    current_speed = snapshot.flow.get("currentSpeed")
    free_flow_speed = snapshot.flow.get("freeFlowSpeed")
    if current_speed is None or free_flow_speed is None:
        return MIN_MULTIPLIER

    multiplier = free_flow_speed / max(current_speed, 1)
    return min(max(multiplier, MIN_MULTIPLIER), MAX_MULTIPLIER)


def segment_multiplier(
    origin: LatLon,
    destination: LatLon,
    snapshots: Dict[str, TrafficSnapshot],
    grid: GridIndex,
) -> float:
    """Average multiplier of the cells holding the two segment endpoints."""
    origin_snapshot = snapshots.get(grid.cell_id_for(*origin))
    destination_snapshot = snapshots.get(grid.cell_id_for(*destination))
    return (traffic_multiplier_for(origin_snapshot) + traffic_multiplier_for(destination_snapshot)) / 2


def apply_traffic_to_matrix(
    durations: Sequence[Sequence[float]],
    stops: Sequence[LatLon],
    snapshots: Dict[str, TrafficSnapshot],
    grid: GridIndex,
) -> List[List[float]]:
    """Scale an NxN travel-time matrix by per-segment traffic multipliers.

    Args:
        durations: Base durations, ``durations[i][j]`` from stop i to stop j
        stops: The N stops the matrix was computed for
        snapshots: Traffic snapshots keyed by grid cell id
        grid: Grid used to key the snapshots

    Returns:
        New matrix with a zero diagonal

    Raises:
        ValueError: If the matrix is not N x N for N stops
    """
    n = len(stops)
    if len(durations) != n or any(len(row) != n for row in durations):
        raise ValueError(f"Duration matrix must be {n}x{n} for {n} stops")

    return [
        [
            0.0 if i == j else durations[i][j] * segment_multiplier(stops[i], stops[j], snapshots, grid)
            for j in range(n)
        ]
        for i in range(n)
    ]
