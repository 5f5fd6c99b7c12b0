"""
Entity store - authoritative state for incidents, ambulances, hospitals and hazards.

Every mutation runs under per-entity locks (the incident and the ambulance it
touches), then commits under the change-log lock, which stamps each changed
record with the next sequence number and hands one event envelope per change
to the registered listeners. Snapshots are taken under the same lock, so a
snapshot's sequence number is exactly the last change it contains.
"""
import logging
import threading
import uuid
from contextlib import ExitStack, contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from shared.errors import (
    AmbulanceUnavailableError,
    ConflictError,
    IncidentNotAssignableError,
    InvalidTransitionError,
    NotFoundError,
)
from shared.types import (
    ACTIVE_INCIDENT_STATUSES,
    TERMINAL_INCIDENT_STATUSES,
    Ambulance,
    AmbulanceStatus,
    EventEnvelope,
    EventType,
    Hazard,
    HazardBounds,
    HazardType,
    Hospital,
    HospitalRef,
    HospitalStatus,
    HospitalWithAmbulances,
    Incident,
    IncidentCategory,
    IncidentStatus,
    Location,
    Severity,
    Snapshot,
    TriageType,
    utcnow,
)

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_SECONDS = 5.0

# CANCELLED is reachable from every non-terminal state; nothing else skips.
INCIDENT_TRANSITIONS = {
    IncidentStatus.PENDING: {IncidentStatus.ASSIGNED, IncidentStatus.CANCELLED},
    IncidentStatus.ASSIGNED: {IncidentStatus.DISPATCHED, IncidentStatus.CANCELLED},
    IncidentStatus.DISPATCHED: {IncidentStatus.EN_ROUTE, IncidentStatus.CANCELLED},
    IncidentStatus.EN_ROUTE: {IncidentStatus.ARRIVED, IncidentStatus.CANCELLED},
    IncidentStatus.ARRIVED: {IncidentStatus.TRANSPORTING, IncidentStatus.CANCELLED},
    IncidentStatus.TRANSPORTING: {IncidentStatus.COMPLETED, IncidentStatus.CANCELLED},
    IncidentStatus.COMPLETED: set(),
    IncidentStatus.CANCELLED: set(),
}

AMBULANCE_STATUS_FOR_INCIDENT = {
    IncidentStatus.ASSIGNED: AmbulanceStatus.EN_ROUTE,
    IncidentStatus.DISPATCHED: AmbulanceStatus.EN_ROUTE,
    IncidentStatus.EN_ROUTE: AmbulanceStatus.EN_ROUTE,
    IncidentStatus.ARRIVED: AmbulanceStatus.ON_SCENE,
    IncidentStatus.TRANSPORTING: AmbulanceStatus.TRANSPORTING,
}

Listener = Callable[[EventEnvelope], None]

# Sentinel for "do not check the ambulance owner"
ANY_OWNER = object()

# One pending change: (event type, record or None, extra event fields)
Change = Tuple[EventType, Any, Dict[str, Any]]


def check_transition(incident: Incident, new_status: IncidentStatus):
    """Raise InvalidTransitionError unless the state graph allows the move."""
    if incident.is_terminal:
        raise InvalidTransitionError(
            f"Incident {incident.id} is {incident.status.value} and can no longer change"
        )
    if new_status not in INCIDENT_TRANSITIONS[incident.status]:
        raise InvalidTransitionError(
            f"Cannot move incident {incident.id} from {incident.status.value} to {new_status.value}"
        )


class EntityStore:
    """In-process authoritative store. Create at startup, `close()` at shutdown."""

    def __init__(self):
        self._incidents: Dict[str, Incident] = {}
        self._ambulances: Dict[int, Ambulance] = {}
        self._hospitals: Dict[int, Hospital] = {}
        self._hazards: Dict[str, Hazard] = {}

        self._locks: Dict[Tuple[str, Any], threading.Lock] = {}
        self._locks_guard = threading.Lock()

        self._log_lock = threading.RLock()
        self._sequence = 0
        self._last_timestamp: Optional[datetime] = None
        self._listeners: List[Listener] = []
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle and listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener):
        with self._log_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        with self._log_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def close(self):
        with self._log_lock:
            self._closed = True
            self._listeners.clear()
        logger.info("Entity store closed")

    @property
    def sequence(self) -> int:
        return self._sequence

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _lock(self, kind: str, key: Any) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get((kind, key))
            if lock is None:
                lock = self._locks[(kind, key)] = threading.Lock()
            return lock

    def _forget_lock(self, kind: str, key: Any):
        with self._locks_guard:
            self._locks.pop((kind, key), None)

    @contextmanager
    def _locked(self, *keys: Tuple[str, Any]):
        """Acquire entity locks in a fixed global order."""
        ordered = sorted(set(keys), key=lambda k: (k[0], str(k[1])))
        with ExitStack() as stack:
            for kind, key in ordered:
                lock = self._lock(kind, key)
                if not lock.acquire(timeout=LOCK_TIMEOUT_SECONDS):
                    raise ConflictError(f"Timed out waiting for {kind} {key}; retry")
                stack.callback(lock.release)
            yield

    @contextmanager
    def _incident_scope(self, incident_id: str):
        """Lock an incident together with the ambulance currently bound to it."""
        for _ in range(3):
            ambulance_id = self.get_incident(incident_id).assigned_ambulance_id
            keys = [("incident", incident_id)]
            if ambulance_id is not None:
                keys.append(("ambulance", ambulance_id))
            with self._locked(*keys):
                incident = self.get_incident(incident_id)
                if incident.assigned_ambulance_id == ambulance_id:
                    yield incident
                    return
        raise ConflictError(f"Incident {incident_id} kept changing; retry")

    # ------------------------------------------------------------------
    # Change log
    # ------------------------------------------------------------------

    def _next_timestamp(self) -> datetime:
        now = utcnow()
        if self._last_timestamp is not None and now < self._last_timestamp:
            now = self._last_timestamp
        self._last_timestamp = now
        return now

    def _commit(self, changes: List[Change]) -> List[Any]:
        """Stamp, store and publish changes. Returns the stamped records in order."""
        stamped = []
        with self._log_lock:
            if self._closed:
                raise ConflictError("Entity store is shut down")
            for event_type, record, extra in changes:
                self._sequence += 1
                timestamp = self._next_timestamp()
                data: Dict[str, Any] = {}
                if record is not None:
                    record = record.model_copy(update={"version": self._sequence, "updated_at": timestamp})
                    self._put(record)
                    data = self._event_data(record)
                data.update(extra)
                stamped.append(record)
                self._notify(EventEnvelope(
                    type=event_type, data=data, timestamp=timestamp, sequence=self._sequence,
                ))
        return stamped

    def _put(self, record):
        if isinstance(record, Incident):
            self._incidents[record.id] = record
        elif isinstance(record, Ambulance):
            self._ambulances[record.id] = record
        elif isinstance(record, Hospital):
            self._hospitals[record.id] = record
        elif isinstance(record, Hazard):
            self._hazards[record.id] = record
        else:
            raise TypeError(f"Unsupported record type {type(record).__name__}")

    def _event_data(self, record) -> Dict[str, Any]:
        if isinstance(record, Incident):
            data = record.to_json()
            data.update(incidentId=record.id, lat=record.location.lat, lng=record.location.lng)
        elif isinstance(record, Ambulance):
            data = record.to_json()
            data.update(ambulanceId=record.id, lat=record.location.lat, lng=record.location.lng)
        elif isinstance(record, Hospital):
            data = self._hospital_view(record).to_json()
            data.update(hospitalId=record.id)
        else:
            data = record.to_json()
            data.update(hazardId=record.id)
        return data

    def _notify(self, envelope: EventEnvelope):
        for listener in list(self._listeners):
            try:
                listener(envelope)
            except Exception:
                logger.exception(f"Event listener failed for {envelope.type.value}")

    def record_event(self, event_type: EventType, data: Dict[str, Any]) -> EventEnvelope:
        """Publish an event that does not change an entity (simulation lifecycle)."""
        with self._log_lock:
            self._commit([(event_type, None, data)])
            return EventEnvelope(
                type=event_type, data=data, timestamp=self._last_timestamp, sequence=self._sequence,
            )

    def snapshot(self, register: Optional[Callable[[Snapshot], None]] = None) -> Snapshot:
        """
        Full state as of the current sequence number.

        `register` runs under the change-log lock right after the snapshot is
        taken, so anything it subscribes sees exactly the events that follow.
        """
        with self._log_lock:
            snap = Snapshot(
                sequence=self._sequence,
                timestamp=self._last_timestamp or utcnow(),
                incidents=sorted(self._incidents.values(), key=lambda i: i.created_at),
                ambulances=sorted(self._ambulances.values(), key=lambda a: a.id),
                hospitals=[self._hospital_view(h) for h in sorted(self._hospitals.values(), key=lambda h: h.id)],
                hazards=sorted(self._hazards.values(), key=lambda h: h.created_at),
            )
            if register is not None:
                register(snap)
            return snap

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_incident(self, incident_id: str) -> Incident:
        incident = self._incidents.get(incident_id)
        if incident is None:
            raise NotFoundError(f"Incident {incident_id} not found")
        return incident

    def list_incidents(self, statuses: Optional[Iterable[IncidentStatus]] = None) -> List[Incident]:
        incidents = sorted(self._incidents.values(), key=lambda i: i.created_at)
        if statuses is not None:
            wanted = set(statuses)
            incidents = [i for i in incidents if i.status in wanted]
        return incidents

    def list_active_incidents(self) -> List[Incident]:
        return [i for i in self.list_incidents() if not i.is_terminal]

    def get_ambulance(self, ambulance_id: int) -> Ambulance:
        ambulance = self._ambulances.get(ambulance_id)
        if ambulance is None:
            raise NotFoundError(f"Ambulance {ambulance_id} not found")
        return ambulance

    def list_ambulances(self, idle_only: bool = False) -> List[Ambulance]:
        ambulances = sorted(self._ambulances.values(), key=lambda a: a.id)
        if idle_only:
            ambulances = [a for a in ambulances if a.status == AmbulanceStatus.IDLE]
        return ambulances

    def _hospital_view(self, hospital: Hospital) -> Hospital:
        count = sum(1 for a in self._ambulances.values() if a.hospital_id == hospital.id)
        if count == hospital.ambulance_count:
            return hospital
        return hospital.model_copy(update={"ambulance_count": count})

    def get_hospital(self, hospital_id: int) -> Hospital:
        hospital = self._hospitals.get(hospital_id)
        if hospital is None:
            raise NotFoundError(f"Hospital {hospital_id} not found")
        return self._hospital_view(hospital)

    def get_hospital_with_ambulances(self, hospital_id: int) -> HospitalWithAmbulances:
        hospital = self.get_hospital(hospital_id)
        ambulances = [a for a in self.list_ambulances() if a.hospital_id == hospital_id]
        return HospitalWithAmbulances(**hospital.model_dump(), ambulances=ambulances)

    def list_hospitals(self) -> List[Hospital]:
        return [self._hospital_view(h) for h in sorted(self._hospitals.values(), key=lambda h: h.id)]

    def get_hazard(self, hazard_id: str) -> Hazard:
        hazard = self._hazards.get(hazard_id)
        if hazard is None:
            raise NotFoundError(f"Hazard {hazard_id} not found")
        return hazard

    def list_hazards(self, active_only: bool = False) -> List[Hazard]:
        hazards = sorted(self._hazards.values(), key=lambda h: h.created_at)
        if active_only:
            hazards = [h for h in hazards if h.active]
        return hazards

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def add_hospital(self, hospital: Hospital) -> Hospital:
        with self._locked(("hospital", hospital.id)):
            if hospital.id in self._hospitals:
                raise ConflictError(f"Hospital {hospital.id} already exists")
            return self._commit([(EventType.HOSPITAL_UPDATE, hospital, {})])[0]

    def add_ambulance(self, ambulance: Ambulance) -> Ambulance:
        hospital = self.get_hospital(ambulance.hospital_id)
        with self._locked(("ambulance", ambulance.id)):
            if ambulance.id in self._ambulances:
                raise ConflictError(f"Ambulance {ambulance.id} already exists")
            ambulance = ambulance.model_copy(update={
                "hospital": HospitalRef(id=hospital.id, name=hospital.name),
                "status": AmbulanceStatus.IDLE,
                "current_incident_id": None,
            })
            return self._commit([(EventType.AMBULANCE_UPDATE, ambulance, {})])[0]

    # ------------------------------------------------------------------
    # Incident mutations
    # ------------------------------------------------------------------

    def create_incident(
        self,
        location: Location,
        triage: TriageType,
        description: Optional[str] = None,
        category: Optional[IncidentCategory] = None,
        severity: Optional[Severity] = None,
        is_ai_generated: bool = False,
        dispatcher_notes: Optional[str] = None,
    ) -> Incident:
        incident = Incident(
            id=str(uuid.uuid4()),
            location=location,
            triage=triage,
            description=description,
            category=category,
            severity=severity,
            is_ai_generated=is_ai_generated,
            dispatcher_notes=dispatcher_notes,
        )
        with self._locked(("incident", incident.id)):
            incident = self._commit([(EventType.INCIDENT_ADDED, incident, {})])[0]
        logger.info(f"Incident {incident.id} created ({triage.value}) at ({location.lat}, {location.lng})")
        return incident

    def update_incident_status(self, incident_id: str, new_status: IncidentStatus) -> Incident:
        """
        Move an incident along the state graph.

        The bound ambulance follows in the same commit: its status tracks the
        incident, and a terminal incident releases it to IDLE.
        """
        with self._incident_scope(incident_id) as incident:
            check_transition(incident, new_status)
            if new_status == IncidentStatus.ASSIGNED:
                raise InvalidTransitionError(
                    f"Incident {incident_id} becomes ASSIGNED only by assigning an ambulance"
                )

            update: Dict[str, Any] = {"status": new_status}
            if new_status in TERMINAL_INCIDENT_STATUSES:
                update.update(assigned_ambulance_id=None, eta_seconds=None)
            elif new_status == IncidentStatus.ARRIVED:
                update["eta_seconds"] = 0.0
            changes: List[Change] = [(EventType.INCIDENT_UPDATE, incident.model_copy(update=update), {})]

            ambulance_id = incident.assigned_ambulance_id
            if ambulance_id is not None:
                ambulance = self.get_ambulance(ambulance_id)
                if new_status in TERMINAL_INCIDENT_STATUSES:
                    ambulance = ambulance.model_copy(update={
                        "status": AmbulanceStatus.IDLE, "current_incident_id": None,
                    })
                    changes.append((EventType.AMBULANCE_UPDATE, ambulance, {}))
                elif ambulance.status != AMBULANCE_STATUS_FOR_INCIDENT[new_status]:
                    ambulance = ambulance.model_copy(update={"status": AMBULANCE_STATUS_FOR_INCIDENT[new_status]})
                    changes.append((EventType.AMBULANCE_UPDATE, ambulance, {}))

            updated = self._commit(changes)[0]
        if new_status in TERMINAL_INCIDENT_STATUSES:
            # Finished incidents only accept deletion, which re-checks under the log lock
            self._forget_lock("incident", incident_id)
        logger.info(f"Incident {incident_id}: {incident.status.value} -> {new_status.value}")
        return updated

    def assign_ambulance(
        self,
        incident_id: str,
        ambulance_id: int,
        dispatcher_notes: Optional[str] = None,
        hospital_id: Optional[int] = None,
        eta_seconds: Optional[float] = None,
    ) -> Tuple[Incident, Ambulance]:
        """Bind an IDLE ambulance to a PENDING incident."""
        with self._locked(("incident", incident_id), ("ambulance", ambulance_id)):
            incident = self.get_incident(incident_id)
            ambulance = self.get_ambulance(ambulance_id)
            if incident.status != IncidentStatus.PENDING:
                raise IncidentNotAssignableError(
                    f"Incident {incident_id} is {incident.status.value}, not PENDING"
                )
            if ambulance.status != AmbulanceStatus.IDLE or ambulance.current_incident_id is not None:
                raise AmbulanceUnavailableError(
                    f"Ambulance {ambulance.callsign} is {ambulance.status.value}"
                )

            update: Dict[str, Any] = {
                "status": IncidentStatus.ASSIGNED,
                "assigned_ambulance_id": ambulance_id,
                "eta_seconds": eta_seconds,
            }
            if dispatcher_notes is not None:
                update["dispatcher_notes"] = dispatcher_notes
            changes: List[Change] = []
            if hospital_id is not None:
                hospital = self.get_hospital(hospital_id)
                update["recommended_hospital_id"] = hospital_id
            changes.append((EventType.INCIDENT_UPDATE, incident.model_copy(update=update), {}))
            changes.append((EventType.AMBULANCE_UPDATE, ambulance.model_copy(update={
                "status": AmbulanceStatus.EN_ROUTE,
                "current_incident_id": incident_id,
            }), {}))
            if hospital_id is not None:
                changes.append((EventType.HOSPITAL_SELECTED, None, _hospital_selected(incident_id, hospital)))

            stamped = self._commit(changes)
        logger.info(f"Ambulance {ambulance.callsign} assigned to incident {incident_id}")
        return stamped[0], stamped[1]

    def select_hospital(self, incident_id: str, hospital_id: int) -> Incident:
        with self._incident_scope(incident_id) as incident:
            if incident.is_terminal:
                raise InvalidTransitionError(
                    f"Incident {incident_id} is {incident.status.value} and can no longer change"
                )
            hospital = self.get_hospital(hospital_id)
            if hospital.status == HospitalStatus.CLOSED:
                raise ConflictError(f"Hospital {hospital.name} is closed")
            updated = incident.model_copy(update={"recommended_hospital_id": hospital_id})
            stamped = self._commit([
                (EventType.INCIDENT_UPDATE, updated, {}),
                (EventType.HOSPITAL_SELECTED, None, _hospital_selected(incident_id, hospital)),
            ])
        return stamped[0]

    def set_incident_eta(self, incident_id: str, eta_seconds: Optional[float]) -> Incident:
        with self._incident_scope(incident_id) as incident:
            if incident.is_terminal:
                raise InvalidTransitionError(
                    f"Incident {incident_id} is {incident.status.value} and can no longer change"
                )
            updated = incident.model_copy(update={"eta_seconds": eta_seconds})
            return self._commit([(EventType.INCIDENT_UPDATE, updated, {})])[0]

    def delete_incident(self, incident_id: str):
        """Remove an incident that has no ambulance bound (PENDING or terminal)."""
        with self._incident_scope(incident_id) as incident:
            if incident.status in ACTIVE_INCIDENT_STATUSES:
                raise InvalidTransitionError(
                    f"Incident {incident_id} is {incident.status.value}; cancel it before deleting"
                )
            with self._log_lock:
                if self._incidents.pop(incident_id, None) is None:
                    raise NotFoundError(f"Incident {incident_id} not found")
                self._commit([(EventType.INCIDENT_DELETED, None, {"incidentId": incident_id})])
        self._forget_lock("incident", incident_id)
        logger.info(f"Incident {incident_id} deleted")

    # ------------------------------------------------------------------
    # Ambulance mutations
    # ------------------------------------------------------------------

    def update_ambulance_location(
        self,
        ambulance_id: int,
        location: Location,
        expected_incident_id: Any = ANY_OWNER,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Ambulance:
        """
        Move an ambulance. When `expected_incident_id` is given the write only
        succeeds while the ambulance is still bound to that incident (None
        meaning unbound), so a stale writer cannot move a reassigned vehicle.
        """
        with self._locked(("ambulance", ambulance_id)):
            ambulance = self.get_ambulance(ambulance_id)
            if expected_incident_id is not ANY_OWNER and ambulance.current_incident_id != expected_incident_id:
                raise ConflictError(
                    f"Ambulance {ambulance.callsign} is bound to {ambulance.current_incident_id}, "
                    f"not {expected_incident_id}"
                )
            updated = ambulance.model_copy(update={"location": location})
            return self._commit([(EventType.AMBULANCE_UPDATE, updated, extra or {})])[0]

    def update_ambulance_status(self, ambulance_id: int, status: AmbulanceStatus) -> Ambulance:
        with self._locked(("ambulance", ambulance_id)):
            ambulance = self.get_ambulance(ambulance_id)
            if status == AmbulanceStatus.IDLE and ambulance.current_incident_id is not None:
                raise InvalidTransitionError(
                    f"Ambulance {ambulance.callsign} is bound to incident "
                    f"{ambulance.current_incident_id}; complete or cancel it instead"
                )
            if status != AmbulanceStatus.IDLE and ambulance.current_incident_id is None:
                raise InvalidTransitionError(
                    f"Ambulance {ambulance.callsign} has no incident; assign it before changing status"
                )
            updated = ambulance.model_copy(update={"status": status})
            return self._commit([(EventType.AMBULANCE_UPDATE, updated, {})])[0]

    # ------------------------------------------------------------------
    # Hospitals and hazards
    # ------------------------------------------------------------------

    def update_hospital_status(self, hospital_id: int, status: HospitalStatus, load: float) -> Hospital:
        with self._locked(("hospital", hospital_id)):
            hospital = self.get_hospital(hospital_id)
            updated = hospital.model_copy(update={"status": status, "load": load})
            stamped = self._commit([(EventType.HOSPITAL_UPDATE, updated, {})])[0]
        logger.info(f"Hospital {hospital.name} now {status.value} (load {load})")
        return self._hospital_view(stamped)

    def create_hazard(self, hazard_type: HazardType, description: str, bounds: HazardBounds) -> Hazard:
        hazard = Hazard(id=str(uuid.uuid4()), type=hazard_type, description=description, bounds=bounds)
        with self._locked(("hazard", hazard.id)):
            return self._commit([(EventType.HAZARD_UPDATE, hazard, {})])[0]

    def update_hazard(
        self, hazard_id: str, active: Optional[bool] = None, description: Optional[str] = None
    ) -> Hazard:
        with self._locked(("hazard", hazard_id)):
            hazard = self.get_hazard(hazard_id)
            update: Dict[str, Any] = {}
            if active is not None:
                update["active"] = active
            if description is not None:
                update["description"] = description
            return self._commit([(EventType.HAZARD_UPDATE, hazard.model_copy(update=update), {})])[0]

    # ------------------------------------------------------------------
    # Invariants
    # ------------------------------------------------------------------

    def check_invariants(self) -> List[str]:
        """Return human-readable violations of the incident/ambulance binding rules."""
        problems = []
        with self._log_lock:
            claimed: Dict[int, str] = {}
            for incident in self._incidents.values():
                bound = incident.assigned_ambulance_id is not None
                active = incident.status in ACTIVE_INCIDENT_STATUSES
                if bound != active:
                    problems.append(
                        f"incident {incident.id} is {incident.status.value} with ambulance "
                        f"{incident.assigned_ambulance_id}"
                    )
                if bound:
                    if incident.assigned_ambulance_id in claimed:
                        problems.append(f"ambulance {incident.assigned_ambulance_id} claimed twice")
                    claimed[incident.assigned_ambulance_id] = incident.id

            for ambulance in self._ambulances.values():
                owner = claimed.get(ambulance.id)
                if ambulance.status == AmbulanceStatus.IDLE:
                    if ambulance.current_incident_id is not None or owner is not None:
                        problems.append(f"idle ambulance {ambulance.id} still bound to {owner or ambulance.current_incident_id}")
                elif owner is None or ambulance.current_incident_id != owner:
                    problems.append(
                        f"ambulance {ambulance.id} is {ambulance.status.value} without a matching incident"
                    )
        return problems


def _hospital_selected(incident_id: str, hospital: Hospital) -> Dict[str, Any]:
    return {
        "incidentId": incident_id,
        "hospitalId": hospital.id,
        "hospitalName": hospital.name,
        "hospital": {"id": hospital.id, "name": hospital.name},
    }
