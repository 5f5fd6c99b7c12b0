"""Demo hospitals and ambulance fleet around Kuala Lumpur."""
import logging

from shared.types import (
    Ambulance,
    AmbulanceType,
    Hospital,
    HospitalCapability as Cap,
    Location,
)

logger = logging.getLogger(__name__)

HOSPITALS = [
    {"id": 1, "name": "Hospital Kuala Lumpur", "lat": 3.1716, "lng": 101.7020,
     "capabilities": [Cap.PCI, Cap.STROKE, Cap.TRAUMA, Cap.BURNS, Cap.GENERAL], "load": 70},
    {"id": 2, "name": "University Malaya Medical Centre", "lat": 3.1136, "lng": 101.6530,
     "capabilities": [Cap.PCI, Cap.STROKE, Cap.TRAUMA, Cap.PEDIATRIC, Cap.GENERAL], "load": 55},
    {"id": 3, "name": "Pantai Hospital Kuala Lumpur", "lat": 3.1189, "lng": 101.6673,
     "capabilities": [Cap.PCI, Cap.GENERAL], "load": 40},
    {"id": 4, "name": "Institut Jantung Negara", "lat": 3.1706, "lng": 101.7083,
     "capabilities": [Cap.PCI], "load": 45},
    {"id": 5, "name": "Prince Court Medical Centre", "lat": 3.1490, "lng": 101.7210,
     "capabilities": [Cap.STROKE, Cap.GENERAL], "load": 30},
    {"id": 6, "name": "Hospital Tunku Azizah", "lat": 3.1703, "lng": 101.7000,
     "capabilities": [Cap.PEDIATRIC, Cap.GENERAL], "load": 50},
]

# Stationed at their base hospital, nudged so markers do not overlap
FLEET = [
    {"id": 1, "callsign": "KL-ALS-01", "type": AmbulanceType.ALS, "hospital_id": 1, "lat": 3.1702, "lng": 101.7008},
    {"id": 2, "callsign": "KL-BLS-02", "type": AmbulanceType.BLS, "hospital_id": 1, "lat": 3.1725, "lng": 101.7031},
    {"id": 3, "callsign": "KL-ALS-03", "type": AmbulanceType.ALS, "hospital_id": 2, "lat": 3.1145, "lng": 101.6541},
    {"id": 4, "callsign": "KL-CCT-04", "type": AmbulanceType.CCT, "hospital_id": 2, "lat": 3.1128, "lng": 101.6519},
    {"id": 5, "callsign": "KL-BLS-05", "type": AmbulanceType.BLS, "hospital_id": 3, "lat": 3.1197, "lng": 101.6684},
    {"id": 6, "callsign": "KL-ALS-06", "type": AmbulanceType.ALS, "hospital_id": 3, "lat": 3.1180, "lng": 101.6662},
    {"id": 7, "callsign": "KL-CCT-07", "type": AmbulanceType.CCT, "hospital_id": 4, "lat": 3.1714, "lng": 101.7094},
    {"id": 8, "callsign": "KL-RRV-08", "type": AmbulanceType.RRV, "hospital_id": 5, "lat": 3.1499, "lng": 101.7199},
    {"id": 9, "callsign": "KL-BLS-09", "type": AmbulanceType.BLS, "hospital_id": 5, "lat": 3.1481, "lng": 101.7222},
    {"id": 10, "callsign": "KL-ALS-10", "type": AmbulanceType.ALS, "hospital_id": 6, "lat": 3.1694, "lng": 101.6989},
]


def seed_store(store) -> None:
    """Load the demo hospitals and fleet into an empty store."""
    for h in HOSPITALS:
        store.add_hospital(Hospital(
            id=h["id"],
            name=h["name"],
            location=Location(lat=h["lat"], lng=h["lng"]),
            capabilities=h["capabilities"],
            load=h["load"],
        ))
    for a in FLEET:
        store.add_ambulance(Ambulance(
            id=a["id"],
            callsign=a["callsign"],
            type=a["type"],
            hospital_id=a["hospital_id"],
            location=Location(lat=a["lat"], lng=a["lng"]),
        ))
    logger.info(f"Seeded {len(HOSPITALS)} hospitals and {len(FLEET)} ambulances")
