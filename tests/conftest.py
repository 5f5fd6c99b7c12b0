import pytest

from shared.types import Location, TriageType
from services.geospatial_dispatch.hospitals import HospitalSelector
from services.geospatial_dispatch.orchestrator import DispatchOrchestrator
from services.geospatial_dispatch.ranker import CandidateRanker
from services.geospatial_dispatch.routing import StraightLineRouter
from services.geospatial_dispatch.seed import seed_store
from services.geospatial_dispatch.simulator import MovementSimulator
from services.geospatial_dispatch.store import EntityStore

# Scenario A incident location (central Kuala Lumpur)
KL_CENTRE = Location(lat=3.1390, lng=101.6869)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class EventLog:
    """Store listener that keeps every envelope."""

    def __init__(self):
        self.events = []

    def __call__(self, envelope):
        self.events.append(envelope)

    def of_type(self, event_type):
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    s = EntityStore()
    seed_store(s)
    return s


@pytest.fixture
def empty_store():
    return EntityStore()


@pytest.fixture
def events(store):
    log = EventLog()
    store.add_listener(log)
    return log


@pytest.fixture
def router():
    return StraightLineRouter(speed_kmh=40)


@pytest.fixture
def simulator(store, router, clock):
    sim = MovementSimulator(
        store, router, HospitalSelector(store),
        tick_seconds=2, on_scene_seconds=10, clock=clock, threaded=False,
    )
    yield sim
    sim.shutdown()


@pytest.fixture
def orchestrator(store, router, simulator):
    orch = DispatchOrchestrator(
        store, router,
        ranker=CandidateRanker(store, router, top_k=5, timeout=2.0),
        simulator=simulator,
    )
    yield orch
    orch.ranker.shutdown()


@pytest.fixture
def stemi_incident(orchestrator):
    incident, _ = orchestrator.create_incident(KL_CENTRE, TriageType.STEMI, description="Crushing chest pain")
    return incident


def run_until_done(simulator, incident_id, clock, step_seconds=30.0, max_ticks=500):
    """Advance the fake clock and tick until the simulation ends."""
    for _ in range(max_ticks):
        clock.advance(step_seconds)
        if not simulator.step(incident_id):
            return
    raise AssertionError(f"simulation for {incident_id} did not finish")
