from shared.sync import DispatchMirror
from shared.types import IncidentStatus, TriageType
from tests.conftest import KL_CENTRE, run_until_done


def _mirror_of(store):
    mirror = DispatchMirror()
    mirror.load_snapshot(store.snapshot().to_json())
    return mirror


def _authoritative(store):
    snap = store.snapshot().to_json()
    return (
        {i["id"]: i for i in snap["incidents"]},
        {a["id"]: a for a in snap["ambulances"]},
    )


class TestMirror:
    def test_live_events_keep_mirror_in_step(self, store, orchestrator, simulator, clock):
        mirror = DispatchMirror()
        store.snapshot(register=lambda snap: (
            mirror.load_snapshot(snap.to_json()),
            store.add_listener(lambda envelope: mirror.apply(envelope.to_json())),
        ))

        incident, _ = orchestrator.create_incident(KL_CENTRE, TriageType.STEMI)
        orchestrator.dispatch(incident.id)
        run_until_done(simulator, incident.id, clock)

        incidents, ambulances = _authoritative(store)
        assert mirror.incidents == incidents
        assert mirror.ambulances == ambulances
        assert mirror.sequence == store.sequence

    def test_reconnect_with_fresh_snapshot_converges(self, store, orchestrator, simulator, clock):
        mirror = _mirror_of(store)
        incident, _ = orchestrator.create_incident(KL_CENTRE, TriageType.TRAUMA)
        orchestrator.dispatch(incident.id)
        clock.advance(60)
        simulator.step(incident.id)
        # Disconnected for all of the above; reconnect
        mirror.load_snapshot(store.snapshot().to_json())

        incidents, ambulances = _authoritative(store)
        assert mirror.incidents == incidents
        assert mirror.ambulances == ambulances

    def test_stale_and_duplicate_events_are_ignored(self, store, events, orchestrator):
        incident, _ = orchestrator.create_incident(KL_CENTRE, TriageType.BURNS)
        orchestrator.dispatch(incident.id)
        mirror = _mirror_of(store)
        held = mirror.incident(incident.id)
        assert held["status"] == IncidentStatus.DISPATCHED.value

        for envelope in events.events:
            assert mirror.apply(envelope.to_json()) is False
        assert mirror.incident(incident.id) == held

    def test_deleted_incident_stays_deleted(self, store, events, orchestrator):
        incident, _ = orchestrator.create_incident(KL_CENTRE, TriageType.GENERAL)
        mirror = _mirror_of(store)
        orchestrator.delete_incident(incident.id)

        deletion = events.events[-1].to_json()
        stale_update = next(e.to_json() for e in events.events if e.type.value == "INCIDENT_ADDED")

        assert mirror.apply(deletion) is True
        assert mirror.apply(stale_update) is False
        assert mirror.incident(incident.id) is None

    def test_event_only_fields_are_stripped(self, store, events):
        mirror = _mirror_of(store)
        incident = store.create_incident(KL_CENTRE, TriageType.PEDIATRIC)
        mirror.apply(events.events[-1].to_json())
        record = mirror.incident(incident.id)
        assert "incidentId" not in record
        assert "lat" not in record
        assert record["location"] == {"lat": KL_CENTRE.lat, "lng": KL_CENTRE.lng}
