"""
Movement simulator - animates dispatched ambulances and drives incident lifecycle.

Lifecycle per dispatch:
  ASSIGNED -> DISPATCHED (start) -> EN_ROUTE (first tick) -> ARRIVED (route end)
  -> on-scene dwell -> TRANSPORTING -> COMPLETED (hospital reached)
  -> RETURNING (ambulance already IDLE, driving back to base) -> done

Each simulation owns a lock and a cancelled flag. Every write re-checks the
flag under that lock, so once `cancel()` returns nothing more is written for
that simulation.
"""
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from shared.errors import ConflictError, DispatchError, InvalidTransitionError
from shared.geo import distance_m, point_along, to_geojson_linestring
from shared.types import (
    EventType,
    HospitalStatus,
    IncidentStatus,
    Location,
    Route,
    Severity,
    SimulationInfo,
    SimulationPhase,
    TriageType,
    utcnow,
)
from services.geospatial_dispatch.hospitals import HospitalSelector
from services.geospatial_dispatch.routing import RoutingOracle

logger = logging.getLogger(__name__)

SIM_TICK_SECONDS = float(os.getenv("SIM_TICK_SECONDS", "2"))
ON_SCENE_SECONDS = float(os.getenv("ON_SCENE_SECONDS", "10"))

# Closer than this to the base counts as already home
HOME_RADIUS_M = 5.0


@dataclass
class Simulation:
    incident_id: str
    ambulance_id: int
    route: Route
    leg_started: float
    home: Location
    phase: SimulationPhase = SimulationPhase.TO_SCENE
    started_at: datetime = field(default_factory=utcnow)
    en_route: bool = False
    dwell_until: Optional[float] = None
    cancelled: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    stop_event: threading.Event = field(default_factory=threading.Event, repr=False)
    thread: Optional[threading.Thread] = field(default=None, repr=False)

    def info(self) -> SimulationInfo:
        return SimulationInfo(
            incident_id=self.incident_id,
            ambulance_id=self.ambulance_id,
            phase=self.phase,
            started_at=self.started_at,
        )


def needs_transport(triage: TriageType, severity: Optional[Severity]) -> bool:
    """Minor General calls are treated on scene."""
    return not (triage == TriageType.GENERAL and severity != Severity.HIGH)


class MovementSimulator:
    """
    Registry of running simulations keyed by incident id.

    With `threaded=False` nothing runs in the background and callers advance
    simulations with `step()` / `step_all()` against an injected clock.
    """

    def __init__(
        self,
        store,
        oracle: RoutingOracle,
        hospital_selector: Optional[HospitalSelector] = None,
        tick_seconds: float = SIM_TICK_SECONDS,
        on_scene_seconds: float = ON_SCENE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        threaded: bool = True,
    ):
        self.store = store
        self.oracle = oracle
        self.hospital_selector = hospital_selector or HospitalSelector(store)
        self.tick_seconds = tick_seconds
        self.on_scene_seconds = on_scene_seconds
        self.clock = clock
        self.threaded = threaded
        self._sims: Dict[str, Simulation] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def start(self, incident_id: str, route: Optional[Route] = None) -> SimulationInfo:
        """Begin animating the ambulance assigned to an ASSIGNED incident."""
        incident = self.store.get_incident(incident_id)
        if incident.status != IncidentStatus.ASSIGNED:
            raise InvalidTransitionError(
                f"Incident {incident_id} is {incident.status.value}; only ASSIGNED incidents can be dispatched"
            )
        ambulance = self.store.get_ambulance(incident.assigned_ambulance_id)
        home = self.store.get_hospital(ambulance.hospital_id).location
        if route is None:
            route = self.oracle.route(ambulance.location, incident.location)

        sim = Simulation(
            incident_id=incident_id,
            ambulance_id=ambulance.id,
            route=route,
            leg_started=self.clock(),
            home=home,
        )
        with self._lock:
            if incident_id in self._sims:
                raise ConflictError(f"Incident {incident_id} is already being simulated")
            self._sims[incident_id] = sim

        try:
            self.store.update_incident_status(incident_id, IncidentStatus.DISPATCHED)
        except DispatchError:
            self._unregister(sim)
            raise

        if self.threaded:
            sim.thread = threading.Thread(
                target=self._run,
                args=(sim,),
                daemon=True,
                name=f"sim-{incident_id[:8]}",
            )
            sim.thread.start()
        logger.info(
            f"Simulation started: ambulance {ambulance.callsign} -> incident {incident_id} "
            f"(eta {route.eta_seconds:.0f}s, {route.source})"
        )
        return sim.info()

    def cancel(self, incident_id: str) -> Optional[SimulationInfo]:
        """
        Stop a simulation. Idempotent: returns None when nothing was running.

        After this returns no further position or status write is made for it.
        """
        with self._lock:
            sim = self._sims.pop(incident_id, None)
        if sim is None:
            return None
        with sim.lock:
            sim.cancelled = True
            sim.stop_event.set()
        logger.info(f"Simulation cancelled for incident {incident_id} ({sim.phase.value})")
        return sim.info()

    def cancel_all(self) -> List[SimulationInfo]:
        with self._lock:
            incident_ids = list(self._sims)
        cancelled = []
        for incident_id in incident_ids:
            info = self.cancel(incident_id)
            if info is not None:
                cancelled.append(info)
        return cancelled

    def stop_return_leg(self, ambulance_id: int) -> bool:
        """Tear down the RETURNING leg of an ambulance about to be re-dispatched."""
        with self._lock:
            match = next((s for s in self._sims.values()
                          if s.ambulance_id == ambulance_id and s.phase == SimulationPhase.RETURNING), None)
        if match is None or self.cancel(match.incident_id) is None:
            return False
        self.store.record_event(EventType.SIMULATION_CANCELLED, {
            "incidentId": match.incident_id,
            "ambulanceId": ambulance_id,
            "reason": "preempted",
        })
        return True

    def get(self, incident_id: str) -> Optional[SimulationInfo]:
        sim = self._sims.get(incident_id)
        return sim.info() if sim else None

    def status(self) -> List[SimulationInfo]:
        with self._lock:
            sims = list(self._sims.values())
        return [s.info() for s in sims]

    def is_simulating(self, ambulance_id: int) -> bool:
        with self._lock:
            return any(s.ambulance_id == ambulance_id for s in self._sims.values())

    def step(self, incident_id: str) -> bool:
        """Advance one simulation by one tick. Returns False once it has ended."""
        sim = self._sims.get(incident_id)
        if sim is None:
            return False
        return self._safe_tick(sim)

    def step_all(self):
        with self._lock:
            sims = list(self._sims.values())
        for sim in sims:
            self._safe_tick(sim)

    def shutdown(self, timeout: float = 2.0):
        with self._lock:
            sims = list(self._sims.values())
        self.cancel_all()
        for sim in sims:
            if sim.thread is not None and sim.thread is not threading.current_thread():
                sim.thread.join(timeout=timeout)
        logger.info("Movement simulator stopped")

    def _unregister(self, sim: Simulation):
        with self._lock:
            if self._sims.get(sim.incident_id) is sim:
                del self._sims[sim.incident_id]

    # ------------------------------------------------------------------
    # Ticking
    # ------------------------------------------------------------------

    def _run(self, sim: Simulation):
        while not sim.stop_event.wait(self.tick_seconds):
            if not self._safe_tick(sim):
                break

    def _safe_tick(self, sim: Simulation) -> bool:
        try:
            return self._tick(sim)
        except DispatchError as e:
            logger.warning(f"Simulation for incident {sim.incident_id} stopped: {e.message}")
        except Exception:
            logger.exception(f"Simulation for incident {sim.incident_id} crashed")
        self._abort(sim)
        return False

    def _abort(self, sim: Simulation):
        with sim.lock:
            if sim.cancelled:
                return
            sim.cancelled = True
            sim.stop_event.set()
        self._unregister(sim)
        self.store.record_event(EventType.SIMULATION_CANCELLED, {
            "incidentId": sim.incident_id,
            "ambulanceId": sim.ambulance_id,
            "reason": "error",
        })

    def _tick(self, sim: Simulation) -> bool:
        with sim.lock:
            if sim.cancelled:
                return False
            now = self.clock()

            if sim.dwell_until is not None:
                if now >= sim.dwell_until:
                    sim.dwell_until = None
                    self._leave_scene(sim, now)
                return True

            if sim.phase == SimulationPhase.TO_SCENE and not sim.en_route:
                self.store.update_incident_status(sim.incident_id, IncidentStatus.EN_ROUTE)
                sim.en_route = True

            eta = sim.route.eta_seconds
            progress = 1.0 if eta <= 0 else min(max((now - sim.leg_started) / eta, 0.0), 1.0)
            remaining = eta * (1.0 - progress)
            position = point_along(sim.route.points, progress)

            owner = None if sim.phase == SimulationPhase.RETURNING else sim.incident_id
            self.store.update_ambulance_location(
                sim.ambulance_id,
                position,
                expected_incident_id=owner,
                extra={
                    "phase": sim.phase.value,
                    "etaSeconds": remaining,
                    "route": to_geojson_linestring(sim.route.points),
                },
            )
            if progress < 1.0:
                if sim.phase != SimulationPhase.RETURNING:
                    self.store.set_incident_eta(sim.incident_id, remaining)
                return True

            return self._arrive(sim, now)

    def _arrive(self, sim: Simulation, now: float) -> bool:
        if sim.phase == SimulationPhase.TO_SCENE:
            self.store.update_incident_status(sim.incident_id, IncidentStatus.ARRIVED)
            sim.dwell_until = now + self.on_scene_seconds
            logger.info(f"Ambulance {sim.ambulance_id} on scene at incident {sim.incident_id}")
            return True

        if sim.phase == SimulationPhase.TO_HOSPITAL:
            self.store.update_incident_status(sim.incident_id, IncidentStatus.COMPLETED)
            logger.info(f"Incident {sim.incident_id} completed at hospital")
            return self._begin_return(sim, now)

        self._finish(sim)
        return False

    def _leave_scene(self, sim: Simulation, now: float):
        incident = self.store.get_incident(sim.incident_id)
        position = self.store.get_ambulance(sim.ambulance_id).location

        hospital = None
        if needs_transport(incident.triage, incident.severity):
            if incident.recommended_hospital_id is not None:
                hospital = self.store.get_hospital(incident.recommended_hospital_id)
                if hospital.status == HospitalStatus.CLOSED:
                    logger.warning(f"{hospital.name} closed after selection; choosing again for incident {sim.incident_id}")
                    hospital = None
            if hospital is None:
                best = self.hospital_selector.recommend(incident.location, incident.triage, limit=1)
                if best:
                    hospital = best[0].hospital
                    self.store.select_hospital(sim.incident_id, hospital.id)

        self.store.update_incident_status(sim.incident_id, IncidentStatus.TRANSPORTING)
        if hospital is None:
            # Treated on scene
            self.store.update_incident_status(sim.incident_id, IncidentStatus.COMPLETED)
            logger.info(f"Incident {sim.incident_id} treated on scene")
            self._begin_return(sim, now)
            return

        sim.phase = SimulationPhase.TO_HOSPITAL
        sim.route = self.oracle.route(position, hospital.location)
        sim.leg_started = now
        logger.info(f"Ambulance {sim.ambulance_id} transporting to {hospital.name}")

    def _begin_return(self, sim: Simulation, now: float) -> bool:
        position = self.store.get_ambulance(sim.ambulance_id).location
        if distance_m(position, sim.home) <= HOME_RADIUS_M:
            self._finish(sim)
            return False
        sim.phase = SimulationPhase.RETURNING
        sim.route = self.oracle.route(position, sim.home)
        sim.leg_started = now
        return True

    def _finish(self, sim: Simulation):
        sim.cancelled = True
        sim.stop_event.set()
        self._unregister(sim)
        self.store.record_event(EventType.SIMULATION_COMPLETE, {
            "incidentId": sim.incident_id,
            "ambulanceId": sim.ambulance_id,
        })
        logger.info(f"Simulation complete for incident {sim.incident_id}")
