import threading

import pytest

from shared.errors import (
    AmbulanceUnavailableError,
    ConflictError,
    IncidentNotAssignableError,
    InvalidTransitionError,
    NotFoundError,
)
from shared.types import (
    AmbulanceStatus,
    EventType,
    HazardBounds,
    HazardType,
    HospitalStatus,
    IncidentStatus,
    Location,
    TriageType,
)
from tests.conftest import KL_CENTRE


def _incident(store, triage=TriageType.GENERAL):
    return store.create_incident(KL_CENTRE, triage)


class TestChangeLog:
    def test_versions_follow_sequence(self, store, events):
        incident = _incident(store)
        added = events.of_type(EventType.INCIDENT_ADDED)[-1]
        assert incident.version == added.sequence == store.sequence
        assert added.data["incidentId"] == incident.id
        assert added.data["lat"] == KL_CENTRE.lat

    def test_sequences_and_timestamps_never_go_backwards(self, store, events):
        incident = _incident(store)
        store.assign_ambulance(incident.id, 1)
        store.update_incident_status(incident.id, IncidentStatus.CANCELLED)
        sequences = [e.sequence for e in events.events]
        assert sequences == sorted(sequences)
        assert len(set(sequences)) == len(sequences)
        timestamps = [e.timestamp for e in events.events]
        assert timestamps == sorted(timestamps)

    def test_snapshot_sequence_matches_last_change(self, store):
        incident = _incident(store)
        snap = store.snapshot()
        assert snap.sequence == store.sequence
        assert any(i.id == incident.id for i in snap.incidents)
        assert len(snap.ambulances) == 10
        assert all(h.ambulance_count >= 1 for h in snap.hospitals)

    def test_snapshot_register_runs_before_next_event(self, store, events):
        seen = []
        store.snapshot(register=lambda snap: seen.append(snap.sequence))
        _incident(store)
        assert seen[0] < events.events[-1].sequence

    def test_failing_listener_does_not_block_commit(self, store):
        def broken(envelope):
            raise RuntimeError("listener down")

        store.add_listener(broken)
        incident = _incident(store)
        assert store.get_incident(incident.id).status == IncidentStatus.PENDING


class TestAssignment:
    def test_assign_binds_both_sides(self, store):
        incident = _incident(store)
        incident, ambulance = store.assign_ambulance(incident.id, 2, eta_seconds=120)
        assert incident.status == IncidentStatus.ASSIGNED
        assert incident.assigned_ambulance_id == 2
        assert incident.eta_seconds == 120
        assert ambulance.status == AmbulanceStatus.EN_ROUTE
        assert ambulance.current_incident_id == incident.id
        assert store.check_invariants() == []

    def test_busy_ambulance_is_unavailable(self, store):
        first, second = _incident(store), _incident(store)
        store.assign_ambulance(first.id, 2)
        with pytest.raises(AmbulanceUnavailableError):
            store.assign_ambulance(second.id, 2)
        assert store.get_incident(second.id).status == IncidentStatus.PENDING

    def test_only_pending_incidents_are_assignable(self, store):
        incident = _incident(store)
        store.assign_ambulance(incident.id, 2)
        with pytest.raises(IncidentNotAssignableError):
            store.assign_ambulance(incident.id, 3)

    def test_concurrent_assign_of_one_ambulance_has_one_winner(self, store):
        incidents = [_incident(store) for _ in range(8)]
        barrier = threading.Barrier(len(incidents))
        outcomes = []

        def attempt(incident_id):
            barrier.wait()
            try:
                store.assign_ambulance(incident_id, 4)
                outcomes.append("won")
            except AmbulanceUnavailableError:
                outcomes.append("lost")

        threads = [threading.Thread(target=attempt, args=(i.id,)) for i in incidents]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("won") == 1
        assert outcomes.count("lost") == len(incidents) - 1
        assert store.check_invariants() == []

    def test_assign_with_hospital_emits_selection(self, store, events):
        incident = _incident(store)
        store.assign_ambulance(incident.id, 1, hospital_id=3)
        selected = events.of_type(EventType.HOSPITAL_SELECTED)[-1]
        assert selected.data["hospitalId"] == 3
        assert store.get_incident(incident.id).recommended_hospital_id == 3


class TestTransitions:
    def test_cannot_skip_states(self, store):
        incident = _incident(store)
        store.assign_ambulance(incident.id, 1)
        with pytest.raises(InvalidTransitionError):
            store.update_incident_status(incident.id, IncidentStatus.ARRIVED)

    def test_assigned_only_through_assignment(self, store):
        incident = _incident(store)
        with pytest.raises(InvalidTransitionError):
            store.update_incident_status(incident.id, IncidentStatus.ASSIGNED)

    def test_pending_cannot_move_forward_without_ambulance(self, store):
        incident = _incident(store)
        with pytest.raises(InvalidTransitionError):
            store.update_incident_status(incident.id, IncidentStatus.EN_ROUTE)

    def test_ambulance_follows_incident(self, store):
        incident = _incident(store)
        store.assign_ambulance(incident.id, 1)
        for status, expected in [
            (IncidentStatus.DISPATCHED, AmbulanceStatus.EN_ROUTE),
            (IncidentStatus.EN_ROUTE, AmbulanceStatus.EN_ROUTE),
            (IncidentStatus.ARRIVED, AmbulanceStatus.ON_SCENE),
            (IncidentStatus.TRANSPORTING, AmbulanceStatus.TRANSPORTING),
        ]:
            store.update_incident_status(incident.id, status)
            assert store.get_ambulance(1).status == expected
            assert store.check_invariants() == []

        done = store.update_incident_status(incident.id, IncidentStatus.COMPLETED)
        assert done.assigned_ambulance_id is None
        assert done.eta_seconds is None
        ambulance = store.get_ambulance(1)
        assert ambulance.status == AmbulanceStatus.IDLE
        assert ambulance.current_incident_id is None

    def test_terminal_incidents_are_frozen(self, store):
        incident = _incident(store)
        store.update_incident_status(incident.id, IncidentStatus.CANCELLED)
        with pytest.raises(InvalidTransitionError):
            store.update_incident_status(incident.id, IncidentStatus.CANCELLED)
        with pytest.raises(InvalidTransitionError):
            store.select_hospital(incident.id, 1)
        with pytest.raises(InvalidTransitionError):
            store.set_incident_eta(incident.id, 30)

    def test_cancel_releases_ambulance_in_same_commit(self, store, events):
        incident = _incident(store)
        store.assign_ambulance(incident.id, 5)
        before = store.sequence
        store.update_incident_status(incident.id, IncidentStatus.CANCELLED)
        committed = [e for e in events.events if e.sequence > before]
        assert [e.type for e in committed] == [EventType.INCIDENT_UPDATE, EventType.AMBULANCE_UPDATE]
        assert committed[1].data["status"] == "IDLE"


class TestAmbulances:
    def test_location_write_checks_owner(self, store):
        incident = _incident(store)
        store.assign_ambulance(incident.id, 1)
        moved = store.update_ambulance_location(1, Location(lat=3.15, lng=101.70), expected_incident_id=incident.id)
        assert moved.location.lat == 3.15
        with pytest.raises(ConflictError):
            store.update_ambulance_location(1, Location(lat=3.16, lng=101.70), expected_incident_id=None)

    def test_status_change_respects_binding(self, store):
        with pytest.raises(InvalidTransitionError):
            store.update_ambulance_status(1, AmbulanceStatus.EN_ROUTE)
        incident = _incident(store)
        store.assign_ambulance(incident.id, 1)
        with pytest.raises(InvalidTransitionError):
            store.update_ambulance_status(1, AmbulanceStatus.IDLE)
        assert store.update_ambulance_status(1, AmbulanceStatus.ON_SCENE).status == AmbulanceStatus.ON_SCENE

    def test_unknown_ids(self, store):
        with pytest.raises(NotFoundError):
            store.get_ambulance(999)
        with pytest.raises(NotFoundError):
            store.get_incident("missing")
        with pytest.raises(NotFoundError):
            store.get_hospital(999)

    def test_hospital_lists_its_ambulances(self, store):
        hospital = store.get_hospital_with_ambulances(1)
        assert {a.id for a in hospital.ambulances} == {1, 2}
        assert hospital.ambulance_count == 2
        assert all(a.hospital.name == "Hospital Kuala Lumpur" for a in hospital.ambulances)


class TestDeleteHospitalsHazards:
    def test_delete_pending_incident(self, store, events):
        incident = _incident(store)
        store.delete_incident(incident.id)
        assert events.events[-1].type == EventType.INCIDENT_DELETED
        with pytest.raises(NotFoundError):
            store.get_incident(incident.id)

    def test_active_incident_cannot_be_deleted(self, store):
        incident = _incident(store)
        store.assign_ambulance(incident.id, 1)
        with pytest.raises(InvalidTransitionError):
            store.delete_incident(incident.id)

    def test_hospital_status_update(self, store):
        hospital = store.update_hospital_status(2, HospitalStatus.DIVERTING, 95)
        assert hospital.status == HospitalStatus.DIVERTING
        assert hospital.load == 95
        assert hospital.ambulance_count == 2

    def test_closed_hospital_cannot_be_selected(self, store):
        store.update_hospital_status(2, HospitalStatus.CLOSED, 100)
        incident = _incident(store)
        with pytest.raises(ConflictError):
            store.select_hospital(incident.id, 2)

    def test_hazard_lifecycle(self, store):
        bounds = HazardBounds(min_lat=3.13, max_lat=3.15, min_lng=101.68, max_lng=101.70)
        hazard = store.create_hazard(HazardType.FLOOD, "Flash flood", bounds)
        assert store.list_hazards(active_only=True) == [hazard]
        store.update_hazard(hazard.id, active=False)
        assert store.list_hazards(active_only=True) == []
        assert store.get_hazard(hazard.id).description == "Flash flood"

    def test_closed_store_rejects_writes(self, store):
        store.close()
        with pytest.raises(ConflictError):
            _incident(store)
