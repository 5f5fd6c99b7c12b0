"""Geo utilities used by ranking and simulation."""
import math
import random
from typing import Sequence

import numpy as np

from shared.types import HazardBounds, Location

EARTH_RADIUS_M = 6_371_000


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two coordinates in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_m(a: Location, b: Location) -> float:
    return haversine_m(a.lat, a.lng, b.lat, b.lng)


def haversine_many(origin: Location, coords: np.ndarray) -> np.ndarray:
    """
    Vectorized haversine from one origin to an (N, 2) array of (lat, lng) rows.

    Returns an array of N distances in meters.
    """
    if len(coords) == 0:
        return np.zeros(0)
    lat1 = math.radians(origin.lat)
    lat2 = np.radians(coords[:, 0])
    dphi = lat2 - lat1
    dlam = np.radians(coords[:, 1] - origin.lng)
    a = np.sin(dphi / 2) ** 2 + math.cos(lat1) * np.cos(lat2) * np.sin(dlam / 2) ** 2
    return 2 * EARTH_RADIUS_M * np.arctan2(np.sqrt(a), np.sqrt(1 - a))


def bearing_deg(a: Location, b: Location) -> float:
    """Initial bearing from a to b, degrees clockwise from north in [0, 360)."""
    phi1, phi2 = math.radians(a.lat), math.radians(b.lat)
    dlam = math.radians(b.lng - a.lng)
    x = math.sin(dlam) * math.cos(phi2)
    y = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlam)
    return (math.degrees(math.atan2(x, y)) + 360.0) % 360.0


def interpolate(a: Location, b: Location, fraction: float) -> Location:
    fraction = min(max(fraction, 0.0), 1.0)
    return Location(
        lat=a.lat + (b.lat - a.lat) * fraction,
        lng=a.lng + (b.lng - a.lng) * fraction,
    )


def polyline_length_m(points: Sequence[Location]) -> float:
    return sum(distance_m(points[i], points[i + 1]) for i in range(len(points) - 1))


def point_along(points: Sequence[Location], fraction: float) -> Location:
    """
    Position at `fraction` of the total length of a polyline.

    Zero-length polylines (single point or repeated points) return the last point.
    """
    if not points:
        raise ValueError("polyline has no points")
    if fraction <= 0.0:
        return points[0]
    total = polyline_length_m(points)
    if fraction >= 1.0 or total == 0.0:
        return points[-1]

    budget = total * fraction
    for i in range(len(points) - 1):
        seg = distance_m(points[i], points[i + 1])
        if seg >= budget and seg > 0:
            return interpolate(points[i], points[i + 1], budget / seg)
        budget -= seg
    return points[-1]


def estimate_travel_seconds(meters: float, speed_kmh: float) -> float:
    """Travel time at a constant assumed speed."""
    return meters / (speed_kmh * 1000.0 / 3600.0)


def route_crosses(points: Sequence[Location], bounds: HazardBounds) -> bool:
    """True if any route point, or any segment midpoint, falls inside the box."""
    for i, point in enumerate(points):
        if bounds.contains(point):
            return True
        if i + 1 < len(points) and bounds.contains(interpolate(point, points[i + 1], 0.5)):
            return True
    return False


def random_point_within(center: Location, radius_km: float, rng: random.Random) -> Location:
    """Uniformly distributed point inside a circle around `center`."""
    distance = radius_km * 1000.0 * math.sqrt(rng.random())
    theta = rng.uniform(0, 2 * math.pi)
    dlat = (distance * math.cos(theta)) / EARTH_RADIUS_M
    dlng = (distance * math.sin(theta)) / (EARTH_RADIUS_M * math.cos(math.radians(center.lat)))
    return Location(lat=center.lat + math.degrees(dlat), lng=center.lng + math.degrees(dlng))


def to_geojson_linestring(points: Sequence[Location]) -> dict:
    """GeoJSON LineString; coordinates are [lng, lat] pairs."""
    return {
        "type": "LineString",
        "coordinates": [[p.lng, p.lat] for p in points],
    }
