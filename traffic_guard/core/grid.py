"""
Geographic grid used as the traffic cache key space.

Divides the operating region (northern Italy) into fixed-size cells so
nearby route stops share cached traffic data.
"""

import math
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import InvalidInput
from traffic_guard.storage.models import RoadType

# Internal coordinate type: (lat, lon)
LatLon = Tuple[float, float]

EARTH_RADIUS_KM = 6371.0

# Approximate km per degree at the operating latitude (~45°N).
# Longitude uses a fixed cos(45°) * 111 instead of a per-latitude value.
KM_PER_LAT_DEGREE = 111.0
KM_PER_LON_DEGREE = 78.8

DEFAULT_CELL_SIZE_KM = 50.0
DEFAULT_PADDING_KM = 10.0

DEFAULT_TTLS: Dict[RoadType, int] = {
    RoadType.HIGHWAY: 180,
    RoadType.URBAN: 300,
    RoadType.RURAL: 900,
}


@dataclass(frozen=True)
class CellBounds:
    """Axis-aligned rectangle in degrees."""
    lat_min: float
    lat_max: float
    lon_min: float
    lon_max: float

    def __post_init__(self):
        """Validate bounds are finite and ordered."""
        values = (self.lat_min, self.lat_max, self.lon_min, self.lon_max)
        if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in values):
            raise InvalidInput(f"Bounds must be finite numbers: {values}")
        if self.lat_min > self.lat_max:
            raise InvalidInput("lat_min must not exceed lat_max")
        if self.lon_min > self.lon_max:
            raise InvalidInput("lon_min must not exceed lon_max")

    @property
    def center(self) -> LatLon:
        return ((self.lat_min + self.lat_max) / 2, (self.lon_min + self.lon_max) / 2)

    def contains(self, lat: float, lon: float) -> bool:
        return self.lat_min <= lat <= self.lat_max and self.lon_min <= lon <= self.lon_max


def validate_coordinate(coord) -> LatLon:
    """Normalize a (lat, lon) pair, rejecting anything off the globe.

    Raises:
        InvalidInput: If the pair is malformed or out of range
    """
    try:
        lat, lon = coord
        lat = float(lat)
        lon = float(lon)
    except (TypeError, ValueError):
        raise InvalidInput(f"Coordinate must be a (lat, lon) pair: {coord!r}")
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise InvalidInput(f"Coordinate must be finite: {coord!r}")
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
        raise InvalidInput(f"Coordinate out of range: {coord!r}")
    return lat, lon


def great_circle_distance_km(a: LatLon, b: LatLon) -> float:
    """Haversine distance between two (lat, lon) points in kilometers."""
    lat1, lon1 = a
    lat2, lon2 = b
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


class GridIndex:
    """Stateless mapping between coordinates and grid cell ids.

    A cell id is the quantized lower-left corner of the cell formatted as
    ``"<lat_min>_<lon_min>"`` with 4 decimal places, e.g. ``"45.0450_8.8832"``.
    """

    def __init__(
        self,
        cell_size_km: float = DEFAULT_CELL_SIZE_KM,
        ttls: Optional[Dict[RoadType, int]] = None,
        highway_speed_threshold: float = 90.0,
        urban_speed_threshold: float = 50.0,
    ):
        if cell_size_km <= 0:
            raise ValueError("cell_size_km must be > 0")
        self.cell_size_km = cell_size_km
        self.lat_step = cell_size_km / KM_PER_LAT_DEGREE
        self.lon_step = cell_size_km / KM_PER_LON_DEGREE
        self.ttls = dict(DEFAULT_TTLS)
        if ttls:
            self.ttls.update(ttls)
        self.highway_speed_threshold = highway_speed_threshold
        self.urban_speed_threshold = urban_speed_threshold

    @classmethod
    def from_config(cls, config) -> "GridIndex":
        """Build a grid from a TrafficGuardConfig."""
        return cls(
            cell_size_km=config.grid.cell_size_km,
            ttls={
                RoadType.HIGHWAY: config.cache_ttl.highway,
                RoadType.URBAN: config.cache_ttl.urban,
                RoadType.RURAL: config.cache_ttl.rural,
            },
            highway_speed_threshold=config.grid.highway_speed_threshold,
            urban_speed_threshold=config.grid.urban_speed_threshold,
        )

    def _format(self, lat_index: int, lon_index: int) -> str:
        return f"{lat_index * self.lat_step:.4f}_{lon_index * self.lon_step:.4f}"

    def _indices(self, lat: float, lon: float) -> Tuple[int, int]:
        return math.floor(lat / self.lat_step), math.floor(lon / self.lon_step)

    def cell_id_for(self, lat: float, lon: float) -> str:
        """Grid cell id containing the given coordinate."""
        return self._format(*self._indices(lat, lon))

    def bounds_for(self, cell_id: str) -> CellBounds:
        """Rectangle covered by a cell id.

        The 4-decimal corner is snapped back to its lattice index so the
        result is identical to the rectangle the id was derived from.

        Raises:
            InvalidInput: If the id is not of the form ``"<lat>_<lon>"``
        """
        try:
            lat_text, lon_text = cell_id.split("_")
            lat_index = round(float(lat_text) / self.lat_step)
            lon_index = round(float(lon_text) / self.lon_step)
        except (AttributeError, ValueError):
            raise InvalidInput(f"Malformed grid cell id: {cell_id!r}")

        return CellBounds(
            lat_min=lat_index * self.lat_step,
            lat_max=(lat_index + 1) * self.lat_step,
            lon_min=lon_index * self.lon_step,
            lon_max=(lon_index + 1) * self.lon_step,
        )

    def cells_covering_bounds(self, bounds: CellBounds) -> List[str]:
        """All cells intersecting ``bounds``, latitude-major order.

        Boundary cells that only partially overlap are included.
        """
        lat_start, lon_start = self._indices(bounds.lat_min, bounds.lon_min)
        lat_end, lon_end = self._indices(bounds.lat_max, bounds.lon_max)

        return [
            self._format(lat_idx, lon_idx)
            for lat_idx in range(lat_start, lat_end + 1)
            for lon_idx in range(lon_start, lon_end + 1)
        ]

    def cells_for_route(self, coordinates: Iterable[LatLon]) -> List[str]:
        """Unique cells containing each stop, in first-seen order."""
        cells: Dict[str, None] = {}
        for lat, lon in coordinates:
            cells.setdefault(self.cell_id_for(lat, lon), None)
        return list(cells)

    def bounding_box_for(
        self,
        coordinates: Sequence[LatLon],
        padding_km: float = DEFAULT_PADDING_KM,
    ) -> Optional[CellBounds]:
        """Padded extents of a coordinate list, or None when it is empty."""
        if not coordinates:
            return None

        lats = [lat for lat, _ in coordinates]
        lons = [lon for _, lon in coordinates]
        lat_padding = padding_km / KM_PER_LAT_DEGREE
        lon_padding = padding_km / KM_PER_LON_DEGREE

        return CellBounds(
            lat_min=min(lats) - lat_padding,
            lat_max=max(lats) + lat_padding,
            lon_min=min(lons) - lon_padding,
            lon_max=max(lons) + lon_padding,
        )

    def road_type_from_speed(self, free_flow_speed_kmh: Optional[float]) -> RoadType:
        """Classify a cell by its free-flow speed."""
        if free_flow_speed_kmh is None:
            return RoadType.RURAL
        if free_flow_speed_kmh > self.highway_speed_threshold:
            return RoadType.HIGHWAY
        if free_flow_speed_kmh > self.urban_speed_threshold:
            return RoadType.URBAN
        return RoadType.RURAL

    def ttl_for(self, road_type) -> int:
        """Cache TTL in seconds; unknown road types get the urban window."""
        try:
            return self.ttls[RoadType(road_type)]
        except (KeyError, ValueError):
            return self.ttls[RoadType.URBAN]

    def popular_cells(self, coordinates: Iterable[LatLon], limit: int = 20) -> List[str]:
        """Most frequently visited cells among historical stop locations."""
        counts = Counter(self.cell_id_for(lat, lon) for lat, lon in coordinates)
        return [cell for cell, _ in counts.most_common(limit)]
