import threading

import pytest

from shared.errors import (
    AlreadyDispatchedError,
    ConflictError,
    IncidentNotAssignableError,
    InvalidTransitionError,
    NoCandidateAvailableError,
)
from shared.types import (
    AmbulanceStatus,
    AmbulanceType,
    EventType,
    IncidentStatus,
    Location,
    SimulationPhase,
    TriageType,
)
from tests.conftest import KL_CENTRE, run_until_done


class TestCreateIncident:
    def test_recommends_and_selects_hospital(self, events, orchestrator):
        incident, recommendations = orchestrator.create_incident(KL_CENTRE, TriageType.STEMI)
        assert recommendations
        assert incident.status == IncidentStatus.PENDING
        assert incident.recommended_hospital_id == recommendations[0].hospital.id
        assert events.of_type(EventType.HOSPITAL_SELECTED)[-1].data["incidentId"] == incident.id


class TestDispatch:
    def test_dispatch_binds_best_candidate(self, orchestrator, stemi_incident, store):
        result = orchestrator.dispatch(stemi_incident.id)
        assert result.ambulance_id == 6
        assert result.route["type"] == "LineString"
        assert result.route["coordinates"][-1] == [KL_CENTRE.lng, KL_CENTRE.lat]

        incident = store.get_incident(stemi_incident.id)
        assert incident.status == IncidentStatus.DISPATCHED
        assert incident.assigned_ambulance_id == 6
        assert incident.eta_seconds == pytest.approx(result.eta_seconds)
        assert store.get_ambulance(6).status == AmbulanceStatus.EN_ROUTE
        assert store.check_invariants() == []

    def test_second_dispatch_is_rejected(self, orchestrator, stemi_incident):
        orchestrator.dispatch(stemi_incident.id)
        with pytest.raises(AlreadyDispatchedError):
            orchestrator.dispatch(stemi_incident.id)

    def test_terminal_incident_is_not_assignable(self, orchestrator, stemi_incident):
        orchestrator.update_incident_status(stemi_incident.id, IncidentStatus.CANCELLED)
        with pytest.raises(IncidentNotAssignableError):
            orchestrator.dispatch(stemi_incident.id)

    def test_no_idle_ambulance(self, orchestrator, store):
        for ambulance in store.list_ambulances():
            incident, _ = orchestrator.create_incident(KL_CENTRE, TriageType.GENERAL)
            store.assign_ambulance(incident.id, ambulance.id)

        incident, _ = orchestrator.create_incident(KL_CENTRE, TriageType.TRAUMA)
        with pytest.raises(NoCandidateAvailableError):
            orchestrator.dispatch(incident.id)
        assert store.get_incident(incident.id).status == IncidentStatus.PENDING
        assert store.check_invariants() == []

    def test_required_type_with_no_match(self, orchestrator, store, stemi_incident):
        for ambulance_id in (4, 7):
            incident, _ = orchestrator.create_incident(KL_CENTRE, TriageType.GENERAL)
            store.assign_ambulance(incident.id, ambulance_id)
        with pytest.raises(NoCandidateAvailableError):
            orchestrator.dispatch(stemi_incident.id, required_type=AmbulanceType.CCT)

    def test_taken_candidate_falls_through_to_next(self, orchestrator, store, stemi_incident):
        ranked = orchestrator.candidates_for_incident(stemi_incident.id)
        other, _ = orchestrator.create_incident(KL_CENTRE, TriageType.GENERAL)

        original = orchestrator.rank_candidates

        def rank_then_steal(*args, **kwargs):
            candidates = original(*args, **kwargs)
            store.assign_ambulance(other.id, candidates[0].ambulance.id)
            return candidates

        orchestrator.rank_candidates = rank_then_steal
        result = orchestrator.dispatch(stemi_incident.id)
        assert result.ambulance_id == ranked[1].ambulance.id
        assert store.check_invariants() == []

    def test_concurrent_dispatch_of_same_incident(self, orchestrator, stemi_incident, store):
        barrier = threading.Barrier(4)
        outcomes = []

        def attempt():
            barrier.wait()
            try:
                orchestrator.dispatch(stemi_incident.id)
                outcomes.append("dispatched")
            except AlreadyDispatchedError:
                outcomes.append("already")

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["already"] * 3 + ["dispatched"]
        busy = [a for a in store.list_ambulances() if a.status != AmbulanceStatus.IDLE]
        assert len(busy) == 1

    def test_concurrent_dispatch_of_different_incidents_never_shares(self, orchestrator, store):
        incidents = [orchestrator.create_incident(KL_CENTRE, TriageType.STROKE)[0] for _ in range(4)]
        barrier = threading.Barrier(len(incidents))

        def attempt(incident_id):
            barrier.wait()
            orchestrator.dispatch(incident_id)

        threads = [threading.Thread(target=attempt, args=(i.id,)) for i in incidents]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assigned = [store.get_incident(i.id).assigned_ambulance_id for i in incidents]
        assert None not in assigned
        assert len(set(assigned)) == len(incidents)
        assert store.check_invariants() == []


class TestManualPath:
    def test_assign_starts_simulation(self, orchestrator, stemi_incident, store):
        incident = orchestrator.assign(stemi_incident.id, 3, hospital_id=2, dispatcher_notes="Use back entrance")
        assert incident.status == IncidentStatus.DISPATCHED
        assert incident.dispatcher_notes == "Use back entrance"
        assert incident.recommended_hospital_id == 2
        assert orchestrator.simulator.get(stemi_incident.id) is not None

    def test_manual_status_change_blocked_while_simulated(self, orchestrator, stemi_incident):
        orchestrator.dispatch(stemi_incident.id)
        with pytest.raises(ConflictError):
            orchestrator.update_incident_status(stemi_incident.id, IncidentStatus.EN_ROUTE)

    def test_ambulance_edits_blocked_while_simulated(self, orchestrator, stemi_incident):
        result = orchestrator.dispatch(stemi_incident.id)
        with pytest.raises(ConflictError):
            orchestrator.update_ambulance_location(result.ambulance_id, Location(lat=3.0, lng=101.0))
        with pytest.raises(ConflictError):
            orchestrator.update_ambulance_status(result.ambulance_id, AmbulanceStatus.ON_SCENE)

    def test_idle_ambulance_can_be_moved(self, orchestrator):
        moved = orchestrator.update_ambulance_location(9, Location(lat=3.15, lng=101.72))
        assert moved.location == Location(lat=3.15, lng=101.72)


class TestCancel:
    def test_cancel_is_idempotent(self, events, orchestrator, stemi_incident, store):
        result = orchestrator.dispatch(stemi_incident.id)
        first = orchestrator.cancel_dispatch_simulation(stemi_incident.id)
        second = orchestrator.cancel_dispatch_simulation(stemi_incident.id)

        assert first.status == second.status == IncidentStatus.CANCELLED
        assert len(events.of_type(EventType.SIMULATION_CANCELLED)) == 1
        assert store.get_ambulance(result.ambulance_id).status == AmbulanceStatus.IDLE
        assert orchestrator.simulation_status() == []

    def test_cancel_via_status_update(self, orchestrator, stemi_incident, store):
        orchestrator.dispatch(stemi_incident.id)
        incident = orchestrator.update_incident_status(stemi_incident.id, IncidentStatus.CANCELLED)
        assert incident.status == IncidentStatus.CANCELLED
        assert incident.assigned_ambulance_id is None
        assert store.check_invariants() == []

    def test_cancel_all(self, orchestrator, store):
        for _ in range(3):
            incident, _ = orchestrator.create_incident(KL_CENTRE, TriageType.BURNS)
            orchestrator.dispatch(incident.id)
        assert len(orchestrator.simulation_status()) == 3

        cancelled = orchestrator.cancel_all_simulations()
        assert len(cancelled) == 3
        assert orchestrator.simulation_status() == []
        assert all(a.status == AmbulanceStatus.IDLE for a in store.list_ambulances())
        assert store.check_invariants() == []

    def test_delete_after_cancel(self, orchestrator, stemi_incident, store):
        orchestrator.dispatch(stemi_incident.id)
        orchestrator.cancel_dispatch_simulation(stemi_incident.id)
        orchestrator.delete_incident(stemi_incident.id)
        assert all(i.id != stemi_incident.id for i in store.list_incidents())


def _step_to_return_leg(simulator, incident_id, clock):
    for _ in range(500):
        clock.advance(30)
        simulator.step(incident_id)
        info = simulator.get(incident_id)
        if info is not None and info.phase == SimulationPhase.RETURNING:
            return
    raise AssertionError("never reached the return leg")


class TestFinishedIncidents:
    def test_active_incident_cannot_be_deleted(self, orchestrator, simulator, stemi_incident, store, clock):
        result = orchestrator.dispatch(stemi_incident.id)
        clock.advance(30)
        simulator.step(stemi_incident.id)
        before = store.sequence

        with pytest.raises(InvalidTransitionError):
            orchestrator.delete_incident(stemi_incident.id)

        assert simulator.get(stemi_incident.id) is not None
        incident = store.get_incident(stemi_incident.id)
        assert incident.status == IncidentStatus.EN_ROUTE
        assert incident.assigned_ambulance_id == result.ambulance_id
        assert store.sequence == before

        run_until_done(simulator, stemi_incident.id, clock)
        assert store.get_incident(stemi_incident.id).status == IncidentStatus.COMPLETED

    def test_deleting_completed_incident_stops_its_return_leg(self, orchestrator, simulator, store, clock):
        incident, _ = orchestrator.create_incident(KL_CENTRE, TriageType.STROKE)
        result = orchestrator.dispatch(incident.id)
        _step_to_return_leg(simulator, incident.id, clock)

        orchestrator.delete_incident(incident.id)

        assert simulator.get(incident.id) is None
        assert store.get_ambulance(result.ambulance_id).status == AmbulanceStatus.IDLE

    def test_cancelled_incident_cannot_be_cancelled_again_by_status(self, orchestrator, stemi_incident, store):
        orchestrator.dispatch(stemi_incident.id)
        orchestrator.update_incident_status(stemi_incident.id, IncidentStatus.CANCELLED)
        before = store.sequence

        with pytest.raises(InvalidTransitionError):
            orchestrator.update_incident_status(stemi_incident.id, IncidentStatus.CANCELLED)
        assert store.sequence == before

    def test_completed_incident_cannot_be_cancelled_by_status(self, events, orchestrator, simulator, store, clock):
        incident, _ = orchestrator.create_incident(KL_CENTRE, TriageType.STROKE)
        orchestrator.dispatch(incident.id)
        _step_to_return_leg(simulator, incident.id, clock)
        cancelled_events = len(events.of_type(EventType.SIMULATION_CANCELLED))

        with pytest.raises(InvalidTransitionError):
            orchestrator.update_incident_status(incident.id, IncidentStatus.CANCELLED)

        assert store.get_incident(incident.id).status == IncidentStatus.COMPLETED
        assert simulator.get(incident.id).phase == SimulationPhase.RETURNING
        assert len(events.of_type(EventType.SIMULATION_CANCELLED)) == cancelled_events

    def test_cancel_all_survives_a_vanished_incident(self, orchestrator, simulator, store, clock):
        returning, _ = orchestrator.create_incident(KL_CENTRE, TriageType.STROKE)
        busy, _ = orchestrator.create_incident(KL_CENTRE, TriageType.BURNS)
        orchestrator.dispatch(returning.id)
        orchestrator.dispatch(busy.id)
        _step_to_return_leg(simulator, returning.id, clock)
        # Removed behind the orchestrator's back while its return leg still runs
        store.delete_incident(returning.id)

        cancelled = orchestrator.cancel_all_simulations()

        assert [info.incident_id for info in cancelled] == [busy.id]
        assert simulator.status() == []
        assert store.get_incident(busy.id).status == IncidentStatus.CANCELLED
        assert store.check_invariants() == []

    def test_finished_incidents_release_their_locks(self, orchestrator, stemi_incident, store):
        orchestrator.dispatch(stemi_incident.id)
        assert stemi_incident.id in orchestrator._dispatch_locks

        orchestrator.cancel_dispatch_simulation(stemi_incident.id)

        assert stemi_incident.id not in orchestrator._dispatch_locks
        assert ("incident", stemi_incident.id) not in store._locks

        orchestrator.delete_incident(stemi_incident.id)
        assert stemi_incident.id not in orchestrator._dispatch_locks
        assert ("incident", stemi_incident.id) not in store._locks
