"""Destination hospital recommendations."""
import logging
from typing import List

from shared.geo import distance_m, estimate_travel_seconds
from shared.types import (
    HospitalCapability,
    HospitalRecommendation,
    HospitalStatus,
    Location,
    TriageType,
)
from services.geospatial_dispatch.routing import AMBULANCE_SPEED_KMH

logger = logging.getLogger(__name__)

TRIAGE_CAPABILITY = {
    TriageType.STEMI: HospitalCapability.PCI,
    TriageType.STROKE: HospitalCapability.STROKE,
    TriageType.TRAUMA: HospitalCapability.TRAUMA,
    TriageType.BURNS: HospitalCapability.BURNS,
    TriageType.PEDIATRIC: HospitalCapability.PEDIATRIC,
    TriageType.GENERAL: HospitalCapability.GENERAL,
}

ETA_WEIGHT = 0.5
CAPABILITY_WEIGHT = 0.3
LOAD_WEIGHT = 0.2
# ETA at which the proximity term falls to one half
ETA_HALF_SECONDS = 600.0
DIVERTING_FACTOR = 0.5


def hospital_score(eta_seconds: float, capability_match: bool, load: float, status: HospitalStatus) -> float:
    score = (ETA_WEIGHT / (1.0 + eta_seconds / ETA_HALF_SECONDS)
             + CAPABILITY_WEIGHT * (1.0 if capability_match else 0.0)
             + LOAD_WEIGHT * (1.0 - load / 100.0))
    if status == HospitalStatus.DIVERTING:
        score *= DIVERTING_FACTOR
    return score


class HospitalSelector:
    def __init__(self, store, speed_kmh: float = AMBULANCE_SPEED_KMH):
        self.store = store
        self.speed_kmh = speed_kmh

    def recommend(self, location: Location, triage: TriageType, limit: int = 3) -> List[HospitalRecommendation]:
        """Open or diverting hospitals for an incident, best score first."""
        needed = TRIAGE_CAPABILITY.get(triage, HospitalCapability.GENERAL)
        recommendations = []
        for hospital in self.store.list_hospitals():
            if hospital.status == HospitalStatus.CLOSED:
                continue
            meters = distance_m(location, hospital.location)
            eta = estimate_travel_seconds(meters, self.speed_kmh)
            recommendations.append(HospitalRecommendation(
                hospital=hospital,
                score=round(hospital_score(eta, needed in hospital.capabilities, hospital.load, hospital.status), 4),
                eta_seconds=eta,
                distance_meters=meters,
            ))
        recommendations.sort(key=lambda r: (-r.score, r.eta_seconds, r.hospital.id))
        if not recommendations:
            logger.warning(f"No open hospital for {triage.value} incident at ({location.lat}, {location.lng})")
        return recommendations[:limit]
