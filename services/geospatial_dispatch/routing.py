"""
Routing oracles.

The engine treats routing as an external capability: give it an origin and a
destination, get back a polyline with an ETA. OSRM is the network oracle; the
straight-line oracle is both a standalone mode and the fallback when OSRM is
slow or down.
"""
import logging
import os
from typing import Optional, Protocol

import requests

from shared.errors import UpstreamUnavailableError
from shared.geo import distance_m, estimate_travel_seconds
from shared.types import Location, Route

logger = logging.getLogger(__name__)

ROUTING_PROVIDER = os.getenv("ROUTING_PROVIDER", "osrm")
OSRM_BASE_URL = os.getenv("OSRM_BASE_URL", "https://router.project-osrm.org")
ROUTING_TIMEOUT_SECONDS = float(os.getenv("ROUTING_TIMEOUT_SECONDS", "5"))
AMBULANCE_SPEED_KMH = float(os.getenv("AMBULANCE_SPEED_KMH", "40"))


class RoutingOracle(Protocol):
    def route(self, origin: Location, destination: Location) -> Route:
        ...


class StraightLineRouter:
    """Two-point route at a constant assumed speed."""

    def __init__(self, speed_kmh: float = AMBULANCE_SPEED_KMH):
        self.speed_kmh = speed_kmh

    def route(self, origin: Location, destination: Location) -> Route:
        meters = distance_m(origin, destination)
        return Route(
            points=[origin, destination],
            eta_seconds=estimate_travel_seconds(meters, self.speed_kmh),
            distance_meters=meters,
            source="straight_line",
        )


class OsrmRouter:
    """Driving routes from an OSRM server."""

    def __init__(
        self,
        base_url: str = OSRM_BASE_URL,
        timeout: float = ROUTING_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def route(self, origin: Location, destination: Location) -> Route:
        url = (f"{self.base_url}/route/v1/driving/"
               f"{origin.lng},{origin.lat};{destination.lng},{destination.lat}"
               f"?overview=full&geometries=geojson")
        try:
            resp = self.session.get(url, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise UpstreamUnavailableError(f"OSRM request failed: {e}") from e

        if data.get("code") != "Ok" or not data.get("routes"):
            raise UpstreamUnavailableError(f"OSRM returned no route: {data.get('code')}")

        best = data["routes"][0]
        coords = best["geometry"]["coordinates"]
        # OSRM coordinates are [lng, lat]
        points = [Location(lat=c[1], lng=c[0]) for c in coords]
        if len(points) < 2:
            points = [origin, destination]
        return Route(
            points=points,
            eta_seconds=float(best["duration"]),
            distance_meters=float(best["distance"]),
            source="osrm",
        )


class FallbackRouter:
    """Try the primary oracle, fall back to another when it is unavailable."""

    def __init__(self, primary: RoutingOracle, fallback: RoutingOracle):
        self.primary = primary
        self.fallback = fallback

    def route(self, origin: Location, destination: Location) -> Route:
        try:
            return self.primary.route(origin, destination)
        except UpstreamUnavailableError as e:
            logger.warning(f"Primary routing failed, using fallback: {e}")
            return self.fallback.route(origin, destination)


def create_routing_oracle(provider: Optional[str] = None) -> RoutingOracle:
    """Build the oracle selected by ROUTING_PROVIDER."""
    provider = (provider or ROUTING_PROVIDER).lower()
    straight = StraightLineRouter()
    if provider == "straight_line":
        return straight
    if provider == "osrm":
        return FallbackRouter(OsrmRouter(), straight)
    raise ValueError(f"Unknown routing provider: {provider}")
