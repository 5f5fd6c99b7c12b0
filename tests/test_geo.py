import random

import numpy as np
import pytest

from shared.geo import (
    bearing_deg,
    distance_m,
    haversine_many,
    haversine_m,
    point_along,
    random_point_within,
    route_crosses,
    to_geojson_linestring,
)
from shared.types import HazardBounds, Location
from tests.conftest import KL_CENTRE


def test_one_degree_of_latitude():
    assert haversine_m(0, 0, 1, 0) == pytest.approx(111_195, rel=1e-3)


def test_vectorized_matches_scalar():
    coords = np.array([[3.1180, 101.6662], [3.1714, 101.7003], [KL_CENTRE.lat, KL_CENTRE.lng]])
    many = haversine_many(KL_CENTRE, coords)
    for (lat, lng), d in zip(coords, many):
        assert d == pytest.approx(haversine_m(KL_CENTRE.lat, KL_CENTRE.lng, lat, lng))
    assert many[-1] == 0
    assert haversine_many(KL_CENTRE, np.zeros((0, 2))).shape == (0,)


def test_bearing_due_east():
    assert bearing_deg(Location(lat=0, lng=0), Location(lat=0, lng=1)) == pytest.approx(90)


class TestPointAlong:
    points = [Location(lat=0, lng=0), Location(lat=0, lng=1), Location(lat=1, lng=1)]

    def test_endpoints(self):
        assert point_along(self.points, 0) == self.points[0]
        assert point_along(self.points, 1) == self.points[-1]
        assert point_along(self.points, 1.5) == self.points[-1]

    def test_midway_lands_on_the_corner(self):
        middle = point_along(self.points, 0.5)
        assert distance_m(middle, self.points[1]) < 500

    def test_degenerate_polyline(self):
        same = [KL_CENTRE, KL_CENTRE]
        assert point_along(same, 0.3) == KL_CENTRE
        with pytest.raises(ValueError):
            point_along([], 0.5)


def test_random_points_stay_within_radius():
    rng = random.Random(42)
    for _ in range(200):
        point = random_point_within(KL_CENTRE, 2.0, rng)
        assert distance_m(KL_CENTRE, point) <= 2000 * 1.001


def test_geojson_is_lng_lat():
    line = to_geojson_linestring([Location(lat=3.1, lng=101.6), Location(lat=3.2, lng=101.7)])
    assert line == {"type": "LineString", "coordinates": [[101.6, 3.1], [101.7, 3.2]]}


def test_route_crosses_box_between_points():
    bounds = HazardBounds(min_lat=-0.1, max_lat=0.1, min_lng=0.9, max_lng=1.1)
    # Neither endpoint is inside but the segment midpoint is
    crossing = [Location(lat=0, lng=0), Location(lat=0, lng=2)]
    clear = [Location(lat=1, lng=0), Location(lat=1, lng=2)]
    assert route_crosses(crossing, bounds)
    assert not route_crosses(clear, bounds)
