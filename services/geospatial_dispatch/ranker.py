"""Candidate ranking: which idle ambulances should answer an incident, best first."""
import logging
import os
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Iterable, List, Optional

import numpy as np

from shared.geo import haversine_many, route_crosses
from shared.types import (
    Ambulance,
    AmbulanceStatus,
    AmbulanceType,
    Candidate,
    Location,
    Route,
    Severity,
    TriageType,
)
from services.geospatial_dispatch.routing import (
    ROUTING_TIMEOUT_SECONDS,
    RoutingOracle,
    StraightLineRouter,
)

logger = logging.getLogger(__name__)

RANKER_TOP_K = int(os.getenv("RANKER_TOP_K", "5"))
HAZARD_PENALTY_SECONDS = float(os.getenv("HAZARD_PENALTY_SECONDS", "120"))

TRIAGE_PREFERRED_TYPE = {
    TriageType.STEMI: AmbulanceType.ALS,
    TriageType.STROKE: AmbulanceType.ALS,
    TriageType.TRAUMA: AmbulanceType.ALS,
    TriageType.BURNS: AmbulanceType.ALS,
    TriageType.PEDIATRIC: AmbulanceType.ALS,
    TriageType.GENERAL: AmbulanceType.BLS,
}


def preferred_type(triage: Optional[TriageType], severity: Optional[Severity] = None) -> AmbulanceType:
    """Lowest capability class that suits the triage; HIGH severity needs at least ALS."""
    preferred = TRIAGE_PREFERRED_TYPE.get(triage, AmbulanceType.BLS)
    if severity == Severity.HIGH and preferred.rank < AmbulanceType.ALS.rank:
        preferred = AmbulanceType.ALS
    return preferred


class CandidateRanker:
    """
    Ranks IDLE ambulances for an incident location.

    Straight-line distance (vectorized) narrows the fleet to the top K; only
    those K go to the routing oracle, concurrently and under one deadline.
    Anything the oracle does not answer in time is estimated in a straight
    line. Final order: capability-compatible first, then ETA, distance, id.
    """

    def __init__(
        self,
        store,
        oracle: RoutingOracle,
        top_k: int = RANKER_TOP_K,
        timeout: float = ROUTING_TIMEOUT_SECONDS,
        hazard_penalty: float = HAZARD_PENALTY_SECONDS,
    ):
        self.store = store
        self.oracle = oracle
        self.top_k = top_k
        self.timeout = timeout
        self.hazard_penalty = hazard_penalty
        self._fallback = StraightLineRouter()
        self._executor = ThreadPoolExecutor(max_workers=max(top_k, 1), thread_name_prefix="ranker")

    def shutdown(self):
        self._executor.shutdown(wait=False, cancel_futures=True)

    def rank(
        self,
        location: Location,
        required_type: Optional[AmbulanceType] = None,
        triage: Optional[TriageType] = None,
        severity: Optional[Severity] = None,
        exclude: Iterable[int] = (),
    ) -> List[Candidate]:
        excluded = set(exclude)
        fleet = [a for a in self.store.list_ambulances(idle_only=True)
                 if a.id not in excluded and a.status == AmbulanceStatus.IDLE]
        if required_type is not None:
            fleet = [a for a in fleet if a.type == required_type]
        if not fleet:
            return []

        preferred = required_type or preferred_type(triage, severity)
        coords = np.array([[a.location.lat, a.location.lng] for a in fleet], dtype=float)
        distances = haversine_many(location, coords)

        shortlist = sorted(
            zip(fleet, distances.tolist()),
            key=lambda pair: (pair[0].type.rank < preferred.rank, pair[1], pair[0].id),
        )[:self.top_k]

        routes = self._route_all([a for a, _ in shortlist], location)
        hazards = self.store.list_hazards(active_only=True)

        candidates = []
        for (ambulance, _), route in zip(shortlist, routes):
            eta = route.eta_seconds
            if any(route_crosses(route.points, h.bounds) for h in hazards):
                eta += self.hazard_penalty
            candidates.append(Candidate(
                ambulance=ambulance,
                eta_seconds=eta,
                distance_meters=route.distance_meters,
                hospital_name=ambulance.hospital.name if ambulance.hospital else None,
                compatible=ambulance.type.rank >= preferred.rank,
                route=route,
            ))

        candidates.sort(key=lambda c: (not c.compatible, c.eta_seconds, c.distance_meters, c.ambulance.id))
        return candidates

    def _route_all(self, ambulances: List[Ambulance], destination: Location) -> List[Route]:
        futures = [self._executor.submit(self.oracle.route, a.location, destination) for a in ambulances]
        wait(futures, timeout=self.timeout)

        routes = []
        for ambulance, future in zip(ambulances, futures):
            if future.done() and future.exception() is None:
                routes.append(future.result())
                continue
            if future.done():
                logger.warning(f"Routing failed for {ambulance.callsign}: {future.exception()}")
            else:
                future.cancel()
                logger.warning(f"Routing timed out for {ambulance.callsign}; using straight-line estimate")
            routes.append(self._fallback.route(ambulance.location, destination))
        return routes
