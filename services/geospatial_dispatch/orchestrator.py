"""
Dispatch orchestrator - the engine's public operations.

Combines ranking, assignment, hospital selection and the movement simulator.
All operations are synchronous and thread-safe; the API layer calls them from
worker threads.
"""
import logging
import threading
from typing import Dict, List, Optional, Tuple

from shared.errors import (
    AlreadyDispatchedError,
    AmbulanceUnavailableError,
    ConflictError,
    DispatchError,
    IncidentNotAssignableError,
    InvalidTransitionError,
    NoCandidateAvailableError,
)
from shared.geo import to_geojson_linestring
from shared.types import (
    ACTIVE_INCIDENT_STATUSES,
    TERMINAL_INCIDENT_STATUSES,
    Ambulance,
    AmbulanceStatus,
    AmbulanceType,
    Candidate,
    DispatchResult,
    EventEnvelope,
    EventType,
    HospitalRecommendation,
    Incident,
    IncidentCategory,
    IncidentStatus,
    Location,
    Route,
    Severity,
    SimulationInfo,
    TriageType,
)
from services.geospatial_dispatch.hospitals import HospitalSelector
from services.geospatial_dispatch.ranker import CandidateRanker
from services.geospatial_dispatch.routing import RoutingOracle
from services.geospatial_dispatch.simulator import MovementSimulator
from services.geospatial_dispatch.store import EntityStore, check_transition

logger = logging.getLogger(__name__)

FINISHED_STATUS_VALUES = frozenset(s.value for s in TERMINAL_INCIDENT_STATUSES)


class DispatchOrchestrator:
    def __init__(
        self,
        store: EntityStore,
        oracle: RoutingOracle,
        ranker: Optional[CandidateRanker] = None,
        simulator: Optional[MovementSimulator] = None,
        hospital_selector: Optional[HospitalSelector] = None,
    ):
        self.store = store
        self.oracle = oracle
        self.hospital_selector = hospital_selector or HospitalSelector(store)
        self.ranker = ranker or CandidateRanker(store, oracle)
        self.simulator = simulator or MovementSimulator(store, oracle, self.hospital_selector)
        self._dispatch_locks: Dict[str, threading.Lock] = {}
        self._dispatch_locks_guard = threading.Lock()
        store.add_listener(self._forget_finished)

    def shutdown(self):
        self.simulator.shutdown()
        self.ranker.shutdown()

    def _dispatch_lock(self, incident_id: str) -> threading.Lock:
        with self._dispatch_locks_guard:
            lock = self._dispatch_locks.get(incident_id)
            if lock is None:
                lock = self._dispatch_locks[incident_id] = threading.Lock()
            return lock

    def _forget_finished(self, envelope: EventEnvelope):
        """Drop the dispatch lock of an incident that can no longer be dispatched."""
        if envelope.type == EventType.INCIDENT_DELETED:
            incident_id = envelope.data.get("incidentId")
        elif envelope.type == EventType.INCIDENT_UPDATE and envelope.data.get("status") in FINISHED_STATUS_VALUES:
            incident_id = envelope.data.get("id")
        else:
            return
        with self._dispatch_locks_guard:
            self._dispatch_locks.pop(incident_id, None)

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------

    def create_incident(
        self,
        location: Location,
        triage: TriageType,
        description: Optional[str] = None,
        dispatcher_notes: Optional[str] = None,
        category: Optional[IncidentCategory] = None,
        severity: Optional[Severity] = None,
        is_ai_generated: bool = False,
    ) -> Tuple[Incident, List[HospitalRecommendation]]:
        """Create a PENDING incident and pre-select the best destination hospital."""
        incident = self.store.create_incident(
            location=location,
            triage=triage,
            description=description,
            category=category,
            severity=severity,
            is_ai_generated=is_ai_generated,
            dispatcher_notes=dispatcher_notes,
        )
        recommendations = self.hospital_selector.recommend(location, triage)
        if recommendations:
            incident = self.store.select_hospital(incident.id, recommendations[0].hospital.id)
        return incident, recommendations

    def update_incident_status(self, incident_id: str, status: IncidentStatus) -> Incident:
        """
        Manual status change. CANCELLED goes through the cancel path; anything
        else is refused while the simulator owns the incident.
        """
        if status == IncidentStatus.CANCELLED:
            incident = self.store.get_incident(incident_id)
            # A finished incident cannot be cancelled, and its return leg stays untouched
            check_transition(incident, status)
            self.cancel_dispatch_simulation(incident_id)
            return self.store.get_incident(incident_id)
        if self.simulator.get(incident_id) is not None:
            raise ConflictError(f"Incident {incident_id} is under simulation; cancel it first")
        return self.store.update_incident_status(incident_id, status)

    def select_hospital(self, incident_id: str, hospital_id: int) -> Incident:
        return self.store.select_hospital(incident_id, hospital_id)

    def delete_incident(self, incident_id: str):
        """
        Delete a PENDING or finished incident. Active incidents are refused
        before anything is touched; a finished one may still own a return leg,
        which is stopped where it is.
        """
        with self._dispatch_lock(incident_id):
            incident = self.store.get_incident(incident_id)
            if incident.status in ACTIVE_INCIDENT_STATUSES:
                raise InvalidTransitionError(
                    f"Incident {incident_id} is {incident.status.value}; cancel it before deleting"
                )
            self.simulator.cancel(incident_id)
            self.store.delete_incident(incident_id)

    # ------------------------------------------------------------------
    # Ranking and dispatch
    # ------------------------------------------------------------------

    def rank_candidates(
        self,
        location: Location,
        required_type: Optional[AmbulanceType] = None,
        triage: Optional[TriageType] = None,
        severity: Optional[Severity] = None,
    ) -> List[Candidate]:
        return self.ranker.rank(location, required_type=required_type, triage=triage, severity=severity)

    def candidates_for_incident(self, incident_id: str) -> List[Candidate]:
        incident = self.store.get_incident(incident_id)
        return self.rank_candidates(incident.location, triage=incident.triage, severity=incident.severity)

    def dispatch(
        self,
        incident_id: str,
        location: Optional[Location] = None,
        required_type: Optional[AmbulanceType] = None,
        severity: Optional[Severity] = None,
        triage: Optional[TriageType] = None,
    ) -> DispatchResult:
        """
        Rank candidates, bind the best available one and start the simulation.

        Dispatches of the same incident are serialized; the loser sees
        AlreadyDispatched. A candidate taken by a concurrent dispatch is
        skipped in favour of the next one.
        """
        with self._dispatch_lock(incident_id):
            incident = self.store.get_incident(incident_id)
            if incident.is_terminal:
                raise IncidentNotAssignableError(
                    f"Incident {incident_id} is {incident.status.value}"
                )
            if incident.status != IncidentStatus.PENDING:
                raise AlreadyDispatchedError(
                    f"Incident {incident_id} already has ambulance {incident.assigned_ambulance_id}"
                )

            candidates = self.rank_candidates(
                location or incident.location,
                required_type=required_type,
                triage=triage or incident.triage,
                severity=severity or incident.severity,
            )
            if not candidates:
                raise NoCandidateAvailableError(f"No available ambulance for incident {incident_id}")

            for candidate in candidates:
                try:
                    ambulance = self._bind(incident, candidate.ambulance.id, candidate.eta_seconds)
                except AmbulanceUnavailableError as e:
                    logger.info(f"Candidate {candidate.ambulance.callsign} taken, trying next: {e.message}")
                    continue
                self.simulator.start(incident_id, route=candidate.route)
                logger.info(
                    f"Dispatched {ambulance.callsign} to incident {incident_id} "
                    f"(eta {candidate.eta_seconds:.0f}s)"
                )
                return _dispatch_result(incident_id, ambulance, candidate.route, candidate.eta_seconds)

            raise NoCandidateAvailableError(
                f"All {len(candidates)} candidates for incident {incident_id} were taken"
            )

    def assign(
        self,
        incident_id: str,
        ambulance_id: int,
        hospital_id: Optional[int] = None,
        dispatcher_notes: Optional[str] = None,
    ) -> Incident:
        """Manual assignment of a chosen ambulance, followed by simulated movement."""
        with self._dispatch_lock(incident_id):
            incident = self.store.get_incident(incident_id)
            if incident.status != IncidentStatus.PENDING:
                raise IncidentNotAssignableError(
                    f"Incident {incident_id} is {incident.status.value}, not PENDING"
                )
            ambulance = self.store.get_ambulance(ambulance_id)
            route = self.oracle.route(ambulance.location, incident.location)
            self._bind(incident, ambulance_id, route.eta_seconds,
                       hospital_id=hospital_id, dispatcher_notes=dispatcher_notes)
            self.simulator.start(incident_id, route=route)
            return self.store.get_incident(incident_id)

    def _bind(
        self,
        incident: Incident,
        ambulance_id: int,
        eta_seconds: float,
        hospital_id: Optional[int] = None,
        dispatcher_notes: Optional[str] = None,
    ) -> Ambulance:
        ambulance = self.store.get_ambulance(ambulance_id)
        if ambulance.status != AmbulanceStatus.IDLE:
            raise AmbulanceUnavailableError(f"Ambulance {ambulance.callsign} is {ambulance.status.value}")
        self.simulator.stop_return_leg(ambulance_id)
        _, ambulance = self.store.assign_ambulance(
            incident.id,
            ambulance_id,
            dispatcher_notes=dispatcher_notes,
            hospital_id=hospital_id,
            eta_seconds=eta_seconds,
        )
        return ambulance

    # ------------------------------------------------------------------
    # Simulation control
    # ------------------------------------------------------------------

    def cancel_dispatch_simulation(self, incident_id: str) -> Incident:
        """
        Stop the simulation for an incident and cancel the incident if it is
        still open. The ambulance is released IDLE where it stands. Repeated
        calls are no-ops.
        """
        info = self.simulator.cancel(incident_id)
        incident = self.store.get_incident(incident_id)
        if not incident.is_terminal:
            incident = self.store.update_incident_status(incident_id, IncidentStatus.CANCELLED)
        if info is not None:
            self.store.record_event(EventType.SIMULATION_CANCELLED, {
                "incidentId": incident_id,
                "ambulanceId": info.ambulance_id,
                "reason": "cancelled",
            })
        return incident

    def cancel_all_simulations(self) -> List[SimulationInfo]:
        """Cancel every running simulation. One failure does not stop the rest."""
        cancelled = []
        for info in self.simulator.status():
            try:
                self.cancel_dispatch_simulation(info.incident_id)
            except DispatchError as e:
                logger.warning(f"Could not cancel simulation for incident {info.incident_id}: {e.message}")
                continue
            cancelled.append(info)
        return cancelled

    def simulation_status(self) -> List[SimulationInfo]:
        return self.simulator.status()

    # ------------------------------------------------------------------
    # Ambulances
    # ------------------------------------------------------------------

    def update_ambulance_status(self, ambulance_id: int, status: AmbulanceStatus) -> Ambulance:
        if self.simulator.is_simulating(ambulance_id):
            raise ConflictError(f"Ambulance {ambulance_id} is under simulation")
        return self.store.update_ambulance_status(ambulance_id, status)

    def update_ambulance_location(self, ambulance_id: int, location: Location) -> Ambulance:
        if self.simulator.is_simulating(ambulance_id):
            raise ConflictError(f"Ambulance {ambulance_id} is under simulation")
        return self.store.update_ambulance_location(ambulance_id, location)


def _dispatch_result(incident_id: str, ambulance: Ambulance, route: Optional[Route], eta: float) -> DispatchResult:
    points = route.points if route else []
    return DispatchResult(
        incident_id=incident_id,
        ambulance_id=ambulance.id,
        ambulance_callsign=ambulance.callsign,
        eta_seconds=eta,
        distance_meters=route.distance_meters if route else 0.0,
        route=to_geojson_linestring(points),
    )
