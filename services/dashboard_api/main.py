"""Dispatch API Service - REST and WebSocket surface for dispatcher dashboards."""
import logging
import os
import time
from typing import Any, Callable, Optional

from fastapi import FastAPI, Query, Request, WebSocket
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.errors import DispatchError, UpstreamUnavailableError
from shared.geo import to_geojson_linestring
from shared.kafka_client import create_producer
from shared.redis_client import create_redis_client
from shared.types import (
    AmbulanceType,
    AnalyzeTextRequest,
    AssignAmbulanceRequest,
    CalculateRouteRequest,
    CreateHazardRequest,
    CreateIncidentRequest,
    CreateScenarioRequest,
    DispatchRequest,
    IncidentStatus,
    Location,
    SeedIncidentsRequest,
    SelectHospitalRequest,
    Severity,
    TriageType,
    UpdateAmbulanceLocationRequest,
    UpdateAmbulanceStatusRequest,
    UpdateHazardRequest,
    UpdateHospitalStatusRequest,
    UpdateIncidentStatusRequest,
)
from services.ai_suggestion_engine.triage import KeywordTriageClassifier, TriageClassifier
from services.dashboard_api.broadcaster import Broadcaster, EventRelay, KafkaSink, RedisSink
from services.geospatial_dispatch.hospitals import HospitalSelector
from services.geospatial_dispatch.orchestrator import DispatchOrchestrator
from services.geospatial_dispatch.ranker import CandidateRanker
from services.geospatial_dispatch.routing import RoutingOracle, create_routing_oracle
from services.geospatial_dispatch.scenarios import create_scenario, seed_incidents
from services.geospatial_dispatch.seed import seed_store
from services.geospatial_dispatch.simulator import MovementSimulator
from services.geospatial_dispatch.store import EntityStore
from services.geospatial_dispatch.vehicle_tracker import AmbulanceLocationTracker

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SEED_ON_STARTUP = os.getenv("SEED_ON_STARTUP", "true").lower() == "true"
REDIS_ENABLED = os.getenv("REDIS_ENABLED", "false").lower() == "true"
KAFKA_ENABLED = os.getenv("KAFKA_ENABLED", "false").lower() == "true"

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def ok(data: Any, message: Optional[str] = None, count: Optional[int] = None) -> dict:
    """Standard success wrapper."""
    body = {"success": True, "data": jsonable_encoder(data)}
    if message is not None:
        body["message"] = message
    if count is not None:
        body["count"] = count
    return body


def create_app(
    store: Optional[EntityStore] = None,
    oracle: Optional[RoutingOracle] = None,
    classifier: Optional[TriageClassifier] = None,
    simulator_threads: bool = True,
    seed: bool = SEED_ON_STARTUP,
    clock: Callable[[], float] = time.monotonic,
) -> FastAPI:
    store = store or EntityStore()
    oracle = oracle or create_routing_oracle()
    classifier = classifier or KeywordTriageClassifier()
    if seed and not store.list_hospitals():
        seed_store(store)

    selector = HospitalSelector(store)
    simulator = MovementSimulator(store, oracle, selector, clock=clock, threaded=simulator_threads)
    orchestrator = DispatchOrchestrator(
        store, oracle, ranker=CandidateRanker(store, oracle), simulator=simulator, hospital_selector=selector,
    )
    broadcaster = Broadcaster(store)
    tracker = AmbulanceLocationTracker(store, simulator.is_simulating)

    app = FastAPI(title="Dispatch API Service", version="1.0.0")
    app.state.store = store
    app.state.orchestrator = orchestrator
    app.state.broadcaster = broadcaster
    app.state.relay = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "data": None, "message": exc.message, "error": exc.kind},
        )

    @app.on_event("startup")
    def startup():
        """Start external relays and the GPS feed when enabled."""
        sinks = []
        if REDIS_ENABLED:
            sinks.append(RedisSink(create_redis_client()))
        if KAFKA_ENABLED:
            try:
                sinks.append(KafkaSink(create_producer()))
            except Exception:
                logger.exception("Kafka producer unavailable; Kafka relay disabled")
            tracker.start_consumer()
        if sinks:
            relay = EventRelay(sinks)
            store.add_listener(relay.publish)
            relay.start()
            app.state.relay = relay
        logger.info("Dispatch API started")

    @app.on_event("shutdown")
    def shutdown():
        orchestrator.shutdown()
        if app.state.relay is not None:
            app.state.relay.stop()
        broadcaster.close_all()
        store.close()

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------

    @app.get("/incidents")
    def list_incidents(status: Optional[IncidentStatus] = None):
        incidents = store.list_incidents([status] if status else None)
        return ok(incidents, count=len(incidents))

    @app.get("/incidents/active")
    def list_active_incidents():
        incidents = store.list_active_incidents()
        return ok(incidents, count=len(incidents))

    @app.get("/incidents/{incident_id}")
    def get_incident(incident_id: str):
        return ok(store.get_incident(incident_id))

    @app.post("/incidents", status_code=201)
    def create_incident(request: CreateIncidentRequest):
        incident, recommendations = orchestrator.create_incident(
            location=request.location,
            triage=request.triage,
            description=request.description,
            dispatcher_notes=request.dispatcher_notes,
        )
        return ok({"incident": incident, "recommendations": recommendations}, message="Incident created")

    @app.delete("/incidents/{incident_id}")
    def delete_incident(incident_id: str):
        orchestrator.delete_incident(incident_id)
        return ok({"incidentId": incident_id}, message="Incident deleted")

    @app.post("/incidents/{incident_id}/assign")
    def assign_ambulance(incident_id: str, request: AssignAmbulanceRequest):
        incident = orchestrator.assign(
            incident_id,
            request.ambulance_id,
            hospital_id=request.hospital_id,
            dispatcher_notes=request.dispatcher_notes,
        )
        return ok(incident, message="Ambulance assigned")

    @app.patch("/incidents/{incident_id}/status")
    def update_incident_status(incident_id: str, request: UpdateIncidentStatusRequest):
        return ok(orchestrator.update_incident_status(incident_id, request.status))

    @app.post("/incidents/{incident_id}/hospital")
    def select_hospital(incident_id: str, request: SelectHospitalRequest):
        return ok(orchestrator.select_hospital(incident_id, request.hospital_id), message="Hospital selected")

    @app.get("/incidents/{incident_id}/candidates")
    def incident_candidates(incident_id: str):
        candidates = orchestrator.candidates_for_incident(incident_id)
        return ok(candidates, count=len(candidates))

    # ------------------------------------------------------------------
    # Ambulances
    # ------------------------------------------------------------------

    @app.get("/ambulances")
    def list_ambulances():
        ambulances = store.list_ambulances()
        return ok(ambulances, count=len(ambulances))

    @app.get("/ambulances/available")
    def list_available_ambulances():
        ambulances = store.list_ambulances(idle_only=True)
        return ok(ambulances, count=len(ambulances))

    @app.get("/ambulances/{ambulance_id}")
    def get_ambulance(ambulance_id: int):
        return ok(store.get_ambulance(ambulance_id))

    @app.patch("/ambulances/{ambulance_id}/status")
    def update_ambulance_status(ambulance_id: int, request: UpdateAmbulanceStatusRequest):
        return ok(orchestrator.update_ambulance_status(ambulance_id, request.status))

    @app.patch("/ambulances/{ambulance_id}/location")
    def update_ambulance_location(ambulance_id: int, request: UpdateAmbulanceLocationRequest):
        location = Location(lat=request.lat, lng=request.lng)
        return ok(orchestrator.update_ambulance_location(ambulance_id, location))

    # ------------------------------------------------------------------
    # Hospitals and hazards
    # ------------------------------------------------------------------

    @app.get("/hospitals")
    def list_hospitals():
        hospitals = store.list_hospitals()
        return ok(hospitals, count=len(hospitals))

    @app.get("/hospitals/{hospital_id}")
    def get_hospital(hospital_id: int):
        return ok(store.get_hospital_with_ambulances(hospital_id))

    @app.post("/hospitals/{hospital_id}/status")
    def update_hospital_status(hospital_id: int, request: UpdateHospitalStatusRequest):
        return ok(store.update_hospital_status(hospital_id, request.status, request.load))

    @app.get("/hazards")
    def list_hazards(active: bool = False):
        hazards = store.list_hazards(active_only=active)
        return ok(hazards, count=len(hazards))

    @app.post("/hazards", status_code=201)
    def create_hazard(request: CreateHazardRequest):
        return ok(store.create_hazard(request.type, request.description, request.bounds), message="Hazard created")

    @app.get("/hazards/{hazard_id}")
    def get_hazard(hazard_id: str):
        return ok(store.get_hazard(hazard_id))

    @app.patch("/hazards/{hazard_id}")
    def update_hazard(hazard_id: str, request: UpdateHazardRequest):
        return ok(store.update_hazard(hazard_id, active=request.active, description=request.description))

    # ------------------------------------------------------------------
    # Routing and dispatch
    # ------------------------------------------------------------------

    @app.post("/routes/calculate")
    def calculate_route(request: CalculateRouteRequest):
        route = oracle.route(request.origin, request.destination)
        return ok({"route": {
            "geometry": to_geojson_linestring(route.points),
            "etaSeconds": route.eta_seconds,
            "distanceMeters": route.distance_meters,
            "source": route.source,
        }})

    @app.post("/api/dispatch")
    def dispatch(request: DispatchRequest):
        location = None
        if request.lat is not None and request.lng is not None:
            location = Location(lat=request.lat, lng=request.lng)
        result = orchestrator.dispatch(
            request.incident_id,
            location=location,
            required_type=request.required_type,
            severity=request.severity,
            triage=request.triage_type,
        )
        return ok(result, message="Ambulance dispatched")

    @app.get("/api/dispatch/candidates")
    def dispatch_candidates(
        lat: float = Query(ge=-90, le=90),
        lng: float = Query(ge=-180, le=180),
        required_type: Optional[AmbulanceType] = Query(default=None, alias="requiredType"),
        triage_type: Optional[TriageType] = Query(default=None, alias="triageType"),
        severity: Optional[Severity] = None,
    ):
        candidates = orchestrator.rank_candidates(
            Location(lat=lat, lng=lng), required_type=required_type, triage=triage_type, severity=severity,
        )
        return ok(candidates, count=len(candidates))

    @app.delete("/api/dispatch/simulations/{incident_id}")
    def cancel_simulation(incident_id: str):
        return ok(orchestrator.cancel_dispatch_simulation(incident_id), message="Simulation cancelled")

    # ------------------------------------------------------------------
    # Simulation and AI
    # ------------------------------------------------------------------

    @app.post("/api/simulation/scenario", status_code=201)
    def simulation_scenario(request: CreateScenarioRequest):
        result = create_scenario(
            orchestrator,
            classifier,
            Location(lat=request.lat, lng=request.lng),
            request.description,
            caller_name=request.caller_name,
            caller_phone=request.caller_phone,
        )
        return ok(result, message="Scenario created")

    @app.post("/api/simulation/seed", status_code=201)
    def simulation_seed(request: SeedIncidentsRequest):
        incidents = seed_incidents(
            orchestrator,
            request.count,
            Location(lat=request.center_lat, lng=request.center_lng),
            request.radius_km,
        )
        return ok({"created": len(incidents), "incidents": incidents})

    @app.get("/api/simulation/status")
    def simulation_status():
        simulations = orchestrator.simulation_status()
        return ok({"activeSimulations": len(simulations), "incidents": simulations})

    @app.delete("/api/simulation/all")
    def cancel_all_simulations():
        cancelled = orchestrator.cancel_all_simulations()
        return ok({"cancelled": len(cancelled), "incidents": cancelled}, message="All simulations cancelled")

    @app.post("/api/ai/analyze")
    def analyze_text(request: AnalyzeTextRequest):
        try:
            analysis = classifier.analyze_text(request.text)
        except DispatchError:
            raise
        except Exception as e:
            raise UpstreamUnavailableError(f"Triage classifier failed: {e}") from e
        return ok(analysis)

    # ------------------------------------------------------------------
    # Real-time state
    # ------------------------------------------------------------------

    @app.get("/api/snapshot")
    def snapshot():
        return ok(store.snapshot())

    @app.websocket("/ws/dispatch")
    async def dispatch_stream(websocket: WebSocket):
        """Snapshot first, then every change as it commits."""
        await broadcaster.serve(websocket)

    @app.get("/health")
    def health():
        return {
            "status": "healthy",
            "service": "dispatch-api",
            "activeSimulations": len(orchestrator.simulation_status()),
            "sessions": broadcaster.session_count,
            "invariantViolations": store.check_invariants(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8005)
