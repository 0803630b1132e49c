"""
Cache-aware traffic lookup for route stops.

Resolves route stops to grid cells, serves what the cache holds, and
fetches the rest from the traffic provider when the budget allows.

Degradation order:
1. Invalid input is rejected before any I/O
2. Cache failures read as misses
3. Budget denials leave cells out of the result
4. Provider failures become empty error snapshots
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .budget import AdmissionDecision, BudgetCategory, BudgetLedger, parse_category
from .errors import InvalidInput
from .grid import DEFAULT_PADDING_KM, CellBounds, GridIndex, LatLon, validate_coordinate
from traffic_guard.storage.models import TrafficSnapshot
from traffic_guard.storage.repository import TrafficCacheRepository, UsageRepository

logger = logging.getLogger(__name__)


@dataclass
class TrafficResult:
    """Merged traffic view for one lookup."""
    snapshots: Dict[str, TrafficSnapshot]
    cache_hit_ratio: float
    cells_fetched: int
    total_cells: int
    cells_failed: int = 0
    budget_exhausted: bool = False
    admission: Optional[AdmissionDecision] = None
    cells: List[str] = field(default_factory=list)

    @property
    def cache_hit_rate(self) -> float:
        """Cache hit ratio as a percentage with one decimal."""
        return round(self.cache_hit_ratio * 100, 1)


class TrafficCoordinator:
    """Orchestrates grid, cache, budget ledger and traffic provider.

    The provider is any object exposing ``fetch_traffic(bounds)`` that
    returns ``{"flow": dict, "incidents": list, "timestamp": str}`` and
    raises on failure. All collaborators are passed in; the coordinator
    holds no other state.
    """

    def __init__(
        self,
        grid: GridIndex,
        cache: TrafficCacheRepository,
        ledger: BudgetLedger,
        provider,
        padding_km: float = DEFAULT_PADDING_KM,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.grid = grid
        self.cache = cache
        self.ledger = ledger
        self.provider = provider
        self.padding_km = padding_km
        self.clock = clock

    @classmethod
    def from_config(cls, config, provider, clock: Callable[[], datetime] = datetime.now) -> "TrafficCoordinator":
        """Wire a coordinator and its SQLite-backed stores from configuration."""
        db_path = config.storage.db_path
        return cls(
            grid=GridIndex.from_config(config),
            cache=TrafficCacheRepository(db_path, clock=clock),
            ledger=BudgetLedger.from_config(config, UsageRepository(db_path), clock=clock),
            provider=provider,
            padding_km=config.grid.bbox_padding_km,
            clock=clock,
        )

    def get_traffic_for_stops(
        self,
        coordinates: Sequence[LatLon],
        category=BudgetCategory.ACTIVE,
    ) -> TrafficResult:
        """Traffic snapshots for every cell around a set of route stops.

        Args:
            coordinates: Route stops as (lat, lon) pairs
            category: Budget category charged for any fetches

        Returns:
            TrafficResult with cached and freshly fetched snapshots merged

        Raises:
            InvalidInput: If coordinates are empty or malformed, or the
                category is unknown
        """
        if not coordinates:
            raise InvalidInput("At least one coordinate is required")
        stops = [validate_coordinate(c) for c in coordinates]
        category = parse_category(category)

        bounds = self.grid.bounding_box_for(stops, self.padding_km)
        cells = self.grid.cells_covering_bounds(bounds)
        logger.info("Route requires %d grid cells", len(cells))

        return self._resolve(cells, category)

    def get_traffic_for_bounds(self, bounds: CellBounds, category=BudgetCategory.REFRESH) -> TrafficResult:
        """Traffic for an area, looked up through its centre and corners."""
        coordinates = [
            bounds.center,
            (bounds.lat_min, bounds.lon_min),
            (bounds.lat_max, bounds.lon_max),
        ]
        return self.get_traffic_for_stops(coordinates, category)

    def prefetch(self, cell_ids: Iterable[str], category=BudgetCategory.PREFETCH) -> TrafficResult:
        """Warm the cache for a list of popular cells.

        Cells already cached are left alone. Whether it is a good time to
        prefetch (off-peak) is for the caller to decide.

        Raises:
            InvalidInput: If a cell id is malformed or the category is unknown
        """
        category = parse_category(category)
        cells = list(dict.fromkeys(cell_ids))
        for cell in cells:
            self.grid.bounds_for(cell)

        result = self._resolve(cells, category)
        logger.info("Prefetched %d of %d popular grid cells", result.cells_fetched, len(cells))
        return result

    def evict_expired(self) -> int:
        """Drop expired cache entries."""
        return self.cache.evict_expired()

    def _resolve(self, cells: List[str], category: BudgetCategory) -> TrafficResult:
        cached = self.cache.get_many(cells)
        missing = [cell for cell in cells if cell not in cached]
        logger.info("Cache status: %d/%d cells cached", len(cached), len(cells))

        fresh: Dict[str, TrafficSnapshot] = {}
        fetched = failed = 0
        admission = None
        exhausted = False

        if missing:
            admission = self.ledger.can_admit(category, len(missing))
            if admission.allowed:
                to_fetch = missing
            else:
                to_fetch = missing[:admission.allowed_remaining]
                logger.warning(
                    "Budget limit reached: %s. Fetching %d of %d uncached cells, "
                    "using stale/empty data for the rest.",
                    admission.message, len(to_fetch), len(missing),
                )
            exhausted = len(to_fetch) < len(missing)

            if to_fetch:
                logger.info("Fetching %d uncached cells from provider", len(to_fetch))
                fresh, fetched, failed = self._fetch_cells(to_fetch, category)

        total = len(cells)
        return TrafficResult(
            snapshots={**cached, **fresh},
            cache_hit_ratio=len(cached) / total if total else 0.0,
            cells_fetched=fetched,
            total_cells=total,
            cells_failed=failed,
            budget_exhausted=exhausted,
            admission=admission,
            cells=cells,
        )

    def _fetch_cells(
        self, cells: List[str], category: BudgetCategory
    ) -> Tuple[Dict[str, TrafficSnapshot], int, int]:
        """Fetch, cache and charge each cell; one provider call per cell."""
        snapshots: Dict[str, TrafficSnapshot] = {}
        fetched = failed = 0

        for cell in cells:
            bounds = self.grid.bounds_for(cell)
            try:
                data = self.provider.fetch_traffic(bounds)
                snapshot = self._snapshot_from(cell, data)
            except Exception as e:
                logger.error("Failed to fetch traffic for cell %s: %s", cell, e, exc_info=True)
                snapshots[cell] = TrafficSnapshot.failed(cell, str(e), self.clock())
                failed += 1
                continue

            snapshots[cell] = self.cache.put(cell, bounds, snapshot)
            self.ledger.record(category, 1)
            fetched += 1
            logger.info(
                "Fetched and cached traffic for cell %s [%s, TTL: %ds]",
                cell, snapshot.road_type.value, snapshot.ttl_seconds,
            )

        return snapshots, fetched, failed

    def _snapshot_from(self, cell: str, data: dict) -> TrafficSnapshot:
        flow = data.get("flow") or {}
        road_type = self.grid.road_type_from_speed(flow.get("freeFlowSpeed"))
        try:
            captured_at = datetime.fromisoformat(data.get("timestamp"))
        except (TypeError, ValueError):
            captured_at = self.clock()

        return TrafficSnapshot(
            cell_id=cell,
            flow=flow,
            incidents=list(data.get("incidents") or []),
            captured_at=captured_at,
            road_type=road_type,
            ttl_seconds=self.grid.ttl_for(road_type),
        )
