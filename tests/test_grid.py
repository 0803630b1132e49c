"""
Unit tests for grid geometry.

Tests cell addressing, bounds reconstruction, covering cells and road
classification.
"""

import math

import pytest

from traffic_guard.core.errors import InvalidInput
from traffic_guard.core.grid import (
    CellBounds,
    GridIndex,
    great_circle_distance_km,
    validate_coordinate,
)
from traffic_guard.storage.models import RoadType

MILAN = (45.4642, 9.19)
TURIN = (45.0703, 7.6869)


class TestCellAddressing:
    """Test coordinate to cell id mapping and back."""

    def setup_method(self):
        self.grid = GridIndex(cell_size_km=50)

    def test_cell_id_format(self):
        """Cell ids are the lower-left corner with 4 decimals."""
        cell_id = self.grid.cell_id_for(*MILAN)
        lat_text, lon_text = cell_id.split("_")

        assert len(lat_text.split(".")[1]) == 4
        assert len(lon_text.split(".")[1]) == 4
        assert float(lat_text) <= MILAN[0]
        assert float(lon_text) <= MILAN[1]

    def test_cell_id_is_deterministic(self):
        """Identical inputs always give the identical id."""
        assert self.grid.cell_id_for(*MILAN) == self.grid.cell_id_for(*MILAN)
        assert GridIndex(50).cell_id_for(*MILAN) == self.grid.cell_id_for(*MILAN)

    def test_cell_id_matches_lattice(self):
        """Milan falls in lattice row 100, column 14 for 50 km cells."""
        lat_step = 50 / 111.0
        lon_step = 50 / 78.8
        expected = f"{100 * lat_step:.4f}_{14 * lon_step:.4f}"

        assert self.grid.cell_id_for(*MILAN) == expected

    @pytest.mark.parametrize("lat, lon", [
        MILAN,
        TURIN,
        (41.9028, 12.4964),
        (0.0, 0.0),
        (-33.8688, 151.2093),
        (-0.0001, -0.0001),
        (89.9, 179.9),
    ])
    def test_bounds_contain_point(self, lat, lon):
        """The bounds of a point's cell contain that point."""
        for size in (0.5, 5, 50, 137):
            grid = GridIndex(cell_size_km=size)
            bounds = grid.bounds_for(grid.cell_id_for(lat, lon))
            assert bounds.contains(lat, lon)

    def test_bounds_have_cell_size(self):
        """Bounds span exactly one lattice step in each dimension."""
        bounds = self.grid.bounds_for(self.grid.cell_id_for(*TURIN))

        assert bounds.lat_max - bounds.lat_min == pytest.approx(50 / 111.0)
        assert bounds.lon_max - bounds.lon_min == pytest.approx(50 / 78.8)

    def test_bounds_round_trip_to_same_id(self):
        """A cell's own corner maps back to the same cell id."""
        cell_id = self.grid.cell_id_for(*TURIN)
        bounds = self.grid.bounds_for(cell_id)
        center = bounds.center

        assert self.grid.cell_id_for(*center) == cell_id

    @pytest.mark.parametrize("bad_id", ["", "45.0", "abc_def", "1_2_3", None])
    def test_malformed_cell_id_rejected(self, bad_id):
        """Malformed ids raise InvalidInput."""
        with pytest.raises(InvalidInput):
            self.grid.bounds_for(bad_id)

    def test_non_positive_cell_size_rejected(self):
        """Cell size must be positive."""
        with pytest.raises(ValueError, match="cell_size_km"):
            GridIndex(cell_size_km=0)


class TestCoveringCells:
    """Test enumeration of cells covering a rectangle."""

    def setup_method(self):
        self.grid = GridIndex(cell_size_km=50)

    def test_single_cell_bounds(self):
        """A rectangle inside one cell is covered by that cell alone."""
        bounds = self.grid.bounds_for(self.grid.cell_id_for(*MILAN))
        inner = CellBounds(
            lat_min=bounds.lat_min + 0.01,
            lat_max=bounds.lat_max - 0.01,
            lon_min=bounds.lon_min + 0.01,
            lon_max=bounds.lon_max - 0.01,
        )

        assert self.grid.cells_covering_bounds(inner) == [self.grid.cell_id_for(*MILAN)]

    def test_partial_overlap_cells_included(self):
        """Cells that the rectangle only clips are included."""
        bounds = self.grid.bounds_for(self.grid.cell_id_for(*MILAN))
        straddling = CellBounds(
            lat_min=bounds.lat_max - 0.01,
            lat_max=bounds.lat_max + 0.01,
            lon_min=bounds.lon_max - 0.01,
            lon_max=bounds.lon_max + 0.01,
        )

        assert len(self.grid.cells_covering_bounds(straddling)) == 4

    def test_enumeration_is_latitude_major_without_duplicates(self):
        """Cells are listed row by row and never repeated."""
        box = self.grid.bounding_box_for([MILAN, TURIN])
        cells = self.grid.cells_covering_bounds(box)
        lat_mins = [self.grid.bounds_for(c).lat_min for c in cells]

        assert len(cells) == len(set(cells))
        assert lat_mins == sorted(lat_mins)

    @pytest.mark.parametrize("box", [
        CellBounds(44.98, 45.55, 7.56, 9.32),
        CellBounds(-1.2, 0.7, -0.3, 2.9),
        CellBounds(10.0, 10.0, 20.0, 20.0),
        CellBounds(38.1, 47.0, 6.6, 18.5),
    ])
    def test_covering_cells_have_no_gaps(self, box):
        """The union of returned cells contains the whole rectangle."""
        cells = self.grid.cells_covering_bounds(box)
        cell_bounds = [self.grid.bounds_for(c) for c in cells]

        assert min(b.lat_min for b in cell_bounds) <= box.lat_min
        assert max(b.lat_max for b in cell_bounds) >= box.lat_max
        assert min(b.lon_min for b in cell_bounds) <= box.lon_min
        assert max(b.lon_max for b in cell_bounds) >= box.lon_max

        # Sample points across the rectangle, including its corners
        for i in range(11):
            for j in range(11):
                lat = box.lat_min + (box.lat_max - box.lat_min) * i / 10
                lon = box.lon_min + (box.lon_max - box.lon_min) * j / 10
                assert any(b.contains(lat, lon) for b in cell_bounds)

    def test_milan_turin_covering_cells(self):
        """The padded Milan-Turin box spans 3 rows by 4 columns."""
        box = self.grid.bounding_box_for([MILAN, TURIN], padding_km=10)

        assert len(self.grid.cells_covering_bounds(box)) == 12


class TestBoundingBox:
    """Test padded bounding boxes and route cells."""

    def setup_method(self):
        self.grid = GridIndex(cell_size_km=50)

    def test_empty_coordinates_return_none(self):
        """No coordinates means no area to cache."""
        assert self.grid.bounding_box_for([]) is None

    def test_padding_converted_to_degrees(self):
        """Padding uses the fixed km-per-degree constants."""
        box = self.grid.bounding_box_for([MILAN, TURIN], padding_km=10)

        assert box.lat_min == pytest.approx(TURIN[0] - 10 / 111.0)
        assert box.lat_max == pytest.approx(MILAN[0] + 10 / 111.0)
        assert box.lon_min == pytest.approx(TURIN[1] - 10 / 78.8)
        assert box.lon_max == pytest.approx(MILAN[1] + 10 / 78.8)

    def test_single_point_box(self):
        """One stop yields a box centred on it."""
        box = self.grid.bounding_box_for([MILAN], padding_km=0)

        assert box == CellBounds(MILAN[0], MILAN[0], MILAN[1], MILAN[1])

    def test_cells_for_route_unique_in_order(self):
        """Stops sharing a cell are collapsed, first-seen order kept."""
        cells = self.grid.cells_for_route([MILAN, TURIN, (45.4650, 9.1900)])

        assert cells == [self.grid.cell_id_for(*MILAN), self.grid.cell_id_for(*TURIN)]

    def test_popular_cells_ranked_by_frequency(self):
        """Most visited cells come first."""
        history = [TURIN, MILAN, MILAN, MILAN, TURIN, (41.9028, 12.4964)]
        popular = self.grid.popular_cells(history, limit=2)

        assert popular == [self.grid.cell_id_for(*MILAN), self.grid.cell_id_for(*TURIN)]


class TestBoundsValidation:
    """Test rejection of malformed bounds and coordinates."""

    def test_inverted_bounds_rejected(self):
        with pytest.raises(InvalidInput, match="lat_min"):
            CellBounds(46.0, 45.0, 7.0, 8.0)
        with pytest.raises(InvalidInput, match="lon_min"):
            CellBounds(45.0, 46.0, 8.0, 7.0)

    def test_non_finite_bounds_rejected(self):
        with pytest.raises(InvalidInput):
            CellBounds(45.0, math.nan, 7.0, 8.0)

    @pytest.mark.parametrize("coord", [(91, 0), (0, 181), ("a", 1), (1,), None, (math.inf, 0)])
    def test_invalid_coordinates_rejected(self, coord):
        with pytest.raises(InvalidInput):
            validate_coordinate(coord)

    def test_valid_coordinate_normalized(self):
        assert validate_coordinate(["45.5", 9]) == (45.5, 9.0)


class TestDistance:
    """Test haversine distance."""

    def test_zero_distance(self):
        assert great_circle_distance_km(MILAN, MILAN) == 0.0

    def test_milan_turin_distance(self):
        """Milan to Turin is about 126 km as the crow flies."""
        assert great_circle_distance_km(MILAN, TURIN) == pytest.approx(125.5, abs=1.0)

    def test_distance_is_symmetric(self):
        assert great_circle_distance_km(MILAN, TURIN) == pytest.approx(
            great_circle_distance_km(TURIN, MILAN)
        )

    def test_one_degree_latitude(self):
        """One degree of latitude is 6371 * pi / 180 km."""
        assert great_circle_distance_km((0, 0), (1, 0)) == pytest.approx(6371 * math.pi / 180)


class TestRoadTypeAndTtl:
    """Test road classification and TTL lookup."""

    def setup_method(self):
        self.grid = GridIndex()

    @pytest.mark.parametrize("speed, expected", [
        (130, RoadType.HIGHWAY),
        (90.1, RoadType.HIGHWAY),
        (90, RoadType.URBAN),
        (51, RoadType.URBAN),
        (50, RoadType.RURAL),
        (0, RoadType.RURAL),
        (None, RoadType.RURAL),
    ])
    def test_road_type_thresholds(self, speed, expected):
        assert self.grid.road_type_from_speed(speed) == expected

    def test_custom_thresholds(self):
        grid = GridIndex(highway_speed_threshold=110, urban_speed_threshold=30)

        assert grid.road_type_from_speed(100) == RoadType.URBAN
        assert grid.road_type_from_speed(31) == RoadType.URBAN
        assert grid.road_type_from_speed(111) == RoadType.HIGHWAY

    def test_default_ttls(self):
        assert self.grid.ttl_for(RoadType.HIGHWAY) == 180
        assert self.grid.ttl_for(RoadType.URBAN) == 300
        assert self.grid.ttl_for("rural") == 900

    def test_unknown_road_type_uses_urban_ttl(self):
        assert self.grid.ttl_for("ferry") == 300

    def test_configured_ttls(self):
        grid = GridIndex(ttls={RoadType.HIGHWAY: 60})

        assert grid.ttl_for(RoadType.HIGHWAY) == 60
        assert grid.ttl_for(RoadType.RURAL) == 900
