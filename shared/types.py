"""Shared type definitions for the dispatch services."""
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriageType(str, Enum):
    """Clinical category of an incident."""
    STEMI = "STEMI"
    STROKE = "Stroke"
    TRAUMA = "Trauma"
    BURNS = "Burns"
    PEDIATRIC = "Pediatric"
    GENERAL = "General"


class IncidentStatus(str, Enum):
    """Incident lifecycle states."""
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    DISPATCHED = "DISPATCHED"
    EN_ROUTE = "EN_ROUTE"
    ARRIVED = "ARRIVED"
    TRANSPORTING = "TRANSPORTING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class IncidentCategory(str, Enum):
    MEDICAL = "MEDICAL"
    FIRE = "FIRE"
    ACCIDENT = "ACCIDENT"
    OTHER = "OTHER"


class Severity(str, Enum):
    HIGH = "HIGH"
    LOW = "LOW"


class AmbulanceType(str, Enum):
    """Ambulance capability class, lowest capability first."""
    BLS = "BLS"
    ALS = "ALS"
    CCT = "CCT"
    RRV = "RRV"

    @property
    def rank(self) -> int:
        return list(AmbulanceType).index(self)


class AmbulanceStatus(str, Enum):
    """Ambulance operational status."""
    IDLE = "IDLE"
    EN_ROUTE = "EN_ROUTE"
    ON_SCENE = "ON_SCENE"
    TRANSPORTING = "TRANSPORTING"


class HospitalCapability(str, Enum):
    PCI = "PCI"
    STROKE = "STROKE"
    TRAUMA = "TRAUMA"
    BURNS = "BURNS"
    PEDIATRIC = "PEDIATRIC"
    GENERAL = "GENERAL"


class HospitalStatus(str, Enum):
    OPEN = "OPEN"
    DIVERTING = "DIVERTING"
    CLOSED = "CLOSED"


class HazardType(str, Enum):
    FLOOD = "FLOOD"
    ACCIDENT = "ACCIDENT"
    ROADBLOCK = "ROADBLOCK"
    CONSTRUCTION = "CONSTRUCTION"
    OTHER = "OTHER"


class SimulationPhase(str, Enum):
    """Movement simulator sub-state of an active dispatch."""
    TO_SCENE = "TO_SCENE"
    TO_HOSPITAL = "TO_HOSPITAL"
    RETURNING = "RETURNING"


class EventType(str, Enum):
    """Event stream message types."""
    SNAPSHOT = "SNAPSHOT"
    AMBULANCE_UPDATE = "AMBULANCE_UPDATE"
    INCIDENT_ADDED = "INCIDENT_ADDED"
    INCIDENT_UPDATE = "INCIDENT_UPDATE"
    INCIDENT_DELETED = "INCIDENT_DELETED"
    HOSPITAL_SELECTED = "HOSPITAL_SELECTED"
    HOSPITAL_UPDATE = "HOSPITAL_UPDATE"
    HAZARD_UPDATE = "HAZARD_UPDATE"
    SIMULATION_COMPLETE = "SIMULATION_COMPLETE"
    SIMULATION_CANCELLED = "SIMULATION_CANCELLED"


ACTIVE_INCIDENT_STATUSES = frozenset({
    IncidentStatus.ASSIGNED,
    IncidentStatus.DISPATCHED,
    IncidentStatus.EN_ROUTE,
    IncidentStatus.ARRIVED,
    IncidentStatus.TRANSPORTING,
})

TERMINAL_INCIDENT_STATUSES = frozenset({
    IncidentStatus.COMPLETED,
    IncidentStatus.CANCELLED,
})


class ApiModel(BaseModel):
    """Base model serialized with camelCase field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Location(ApiModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class HospitalRef(ApiModel):
    id: int
    name: str


class Incident(ApiModel):
    """Emergency incident record."""
    id: str
    location: Location
    triage: TriageType
    status: IncidentStatus = IncidentStatus.PENDING
    description: Optional[str] = None
    category: Optional[IncidentCategory] = None
    severity: Optional[Severity] = None
    is_ai_generated: bool = False
    dispatcher_notes: Optional[str] = None
    assigned_ambulance_id: Optional[int] = None
    recommended_hospital_id: Optional[int] = None
    eta_seconds: Optional[float] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INCIDENT_STATUSES


class Ambulance(ApiModel):
    """Emergency vehicle representation."""
    id: int
    callsign: str
    type: AmbulanceType
    status: AmbulanceStatus = AmbulanceStatus.IDLE
    location: Location
    hospital_id: int
    hospital: Optional[HospitalRef] = None
    current_incident_id: Optional[str] = None
    version: int = 0
    updated_at: datetime = Field(default_factory=utcnow)


class Hospital(ApiModel):
    id: int
    name: str
    location: Location
    capabilities: List[HospitalCapability] = []
    status: HospitalStatus = HospitalStatus.OPEN
    load: float = Field(default=0.0, ge=0, le=100)
    ambulance_count: int = 0
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class HospitalWithAmbulances(Hospital):
    ambulances: List[Ambulance] = []


class HazardBounds(ApiModel):
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, location: Location) -> bool:
        return (self.min_lat <= location.lat <= self.max_lat
                and self.min_lng <= location.lng <= self.max_lng)


class Hazard(ApiModel):
    id: str
    type: HazardType
    description: str
    bounds: HazardBounds
    active: bool = True
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Route(ApiModel):
    """Route produced by a routing oracle."""
    points: List[Location]
    eta_seconds: float
    distance_meters: float
    source: str = "straight_line"  # osrm, straight_line


class Candidate(ApiModel):
    """Ambulance considered for an incident."""
    ambulance: Ambulance
    eta_seconds: float
    distance_meters: float
    hospital_name: Optional[str] = None
    compatible: bool = True
    route: Optional[Route] = Field(default=None, exclude=True)


class HospitalRecommendation(ApiModel):
    hospital: Hospital
    score: float
    eta_seconds: float
    distance_meters: float


class TriageAnalysis(ApiModel):
    """Structured labels returned by the triage classifier."""
    category: IncidentCategory
    severity: Severity
    triage_type: Optional[TriageType] = None
    confidence: float
    keywords: List[str] = []


class DispatchResult(ApiModel):
    incident_id: str
    ambulance_id: int
    ambulance_callsign: str
    eta_seconds: float
    distance_meters: float
    route: Dict[str, Any]  # GeoJSON LineString


class SimulationInfo(ApiModel):
    incident_id: str
    ambulance_id: int
    phase: SimulationPhase
    started_at: datetime


class EventEnvelope(ApiModel):
    """Message published on the event stream."""
    type: EventType
    data: Dict[str, Any]
    timestamp: datetime
    sequence: int


class Snapshot(ApiModel):
    """Full authoritative state as of one change-log sequence number."""
    sequence: int
    timestamp: datetime
    incidents: List[Incident]
    ambulances: List[Ambulance]
    hospitals: List[Hospital]
    hazards: List[Hazard]


# Request bodies

class CreateIncidentRequest(ApiModel):
    location: Location
    triage: TriageType
    description: Optional[str] = None
    dispatcher_notes: Optional[str] = None


class AssignAmbulanceRequest(ApiModel):
    ambulance_id: int
    hospital_id: Optional[int] = None
    dispatcher_notes: Optional[str] = None


class SelectHospitalRequest(ApiModel):
    hospital_id: int


class UpdateIncidentStatusRequest(ApiModel):
    status: IncidentStatus


class UpdateAmbulanceStatusRequest(ApiModel):
    status: AmbulanceStatus


class UpdateAmbulanceLocationRequest(ApiModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class UpdateHospitalStatusRequest(ApiModel):
    status: HospitalStatus
    load: float = Field(ge=0, le=100)


class CreateHazardRequest(ApiModel):
    type: HazardType
    description: str
    bounds: HazardBounds


class UpdateHazardRequest(ApiModel):
    active: Optional[bool] = None
    description: Optional[str] = None


class CalculateRouteRequest(ApiModel):
    origin: Location
    destination: Location


class DispatchRequest(ApiModel):
    incident_id: str
    lat: Optional[float] = None
    lng: Optional[float] = None
    required_type: Optional[AmbulanceType] = None
    severity: Optional[Severity] = None
    triage_type: Optional[TriageType] = None


class CreateScenarioRequest(ApiModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    description: str
    caller_name: Optional[str] = None
    caller_phone: Optional[str] = None


class SeedIncidentsRequest(ApiModel):
    count: int = Field(ge=1, le=200)
    center_lat: float = Field(ge=-90, le=90)
    center_lng: float = Field(ge=-180, le=180)
    radius_km: float = Field(gt=0, le=100)


class AnalyzeTextRequest(ApiModel):
    text: str
