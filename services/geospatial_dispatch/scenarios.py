"""Demo scenario generation: caller-described incidents and random incident batches."""
import logging
import random
import uuid
from typing import Any, Dict, List, Optional

from shared.geo import random_point_within
from shared.types import Incident, Location, TriageType

logger = logging.getLogger(__name__)

CALLER_NAMES = ["Aisyah Rahman", "Tan Wei Ming", "Rajesh Kumar", "Nurul Huda", "Lim Mei Ling", "Daniel Wong"]

SAMPLE_DESCRIPTIONS = {
    TriageType.STEMI: "Man collapsed with crushing chest pain and sweating",
    TriageType.STROKE: "Elderly woman with face drooping and slurred speech",
    TriageType.TRAUMA: "Motorcycle accident on the highway, rider bleeding",
    TriageType.BURNS: "Kitchen fire, occupant has burns on both arms",
    TriageType.PEDIATRIC: "Toddler with high fever and a febrile seizure",
    TriageType.GENERAL: "Adult feeling dizzy and vomiting since morning",
}


def create_scenario(
    orchestrator,
    classifier,
    location: Location,
    description: str,
    caller_name: Optional[str] = None,
    caller_phone: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create an incident from a caller's free-text report.

    The classifier labels the report; if it fails the incident is still
    created as General with no AI labels.
    """
    analysis = None
    try:
        analysis = classifier.analyze_text(description)
    except Exception:
        logger.exception("Triage classifier failed; creating incident without AI labels")

    if analysis is not None:
        incident, _ = orchestrator.create_incident(
            location=location,
            triage=analysis.triage_type or TriageType.GENERAL,
            description=description,
            category=analysis.category,
            severity=analysis.severity,
            is_ai_generated=True,
        )
    else:
        incident, _ = orchestrator.create_incident(
            location=location, triage=TriageType.GENERAL, description=description,
        )

    user = {
        "id": str(uuid.uuid4()),
        "name": caller_name or "Anonymous caller",
        "phone": caller_phone,
    }
    return {"incident": incident, "user": user, "analysis": analysis}


def seed_incidents(
    orchestrator,
    count: int,
    center: Location,
    radius_km: float,
    rng: Optional[random.Random] = None,
) -> List[Incident]:
    """Create `count` PENDING incidents uniformly scattered inside a circle."""
    rng = rng or random.Random()
    triages = list(TriageType)
    created = []
    for _ in range(count):
        triage = rng.choice(triages)
        incident, _ = orchestrator.create_incident(
            location=random_point_within(center, radius_km, rng),
            triage=triage,
            description=SAMPLE_DESCRIPTIONS[triage],
            dispatcher_notes=f"Seeded demo call from {rng.choice(CALLER_NAMES)}",
        )
        created.append(incident)
    logger.info(f"Seeded {len(created)} incidents within {radius_km} km of ({center.lat}, {center.lng})")
    return created
