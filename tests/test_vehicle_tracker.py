from types import SimpleNamespace

from services.geospatial_dispatch.vehicle_tracker import AmbulanceLocationTracker


def _tracker(store, simulated=()):
    messages = []
    tracker = AmbulanceLocationTracker(
        store,
        is_simulated=lambda ambulance_id: ambulance_id in simulated,
        consumer_factory=lambda: [SimpleNamespace(value=m) for m in messages],
    )
    return tracker, messages


def test_applies_gps_fixes(store):
    tracker, messages = _tracker(store)
    messages.extend([
        {"ambulance_id": 2, "lat": 3.150, "lng": 101.700},
        {"ambulance_id": "3", "lat": "3.160", "lng": "101.710"},
    ])
    tracker.consume()

    assert tracker.applied == 2
    assert store.get_ambulance(2).location.lat == 3.150
    assert store.get_ambulance(3).location.lng == 101.710


def test_skips_malformed_messages(store):
    tracker, messages = _tracker(store)
    before = store.sequence
    messages.extend([
        "not a dict",
        {"ambulance_id": 2, "lat": 3.15},
        {"ambulance_id": 2, "lat": 95.0, "lng": 101.7},
        {"ambulance_id": "two", "lat": 3.15, "lng": 101.7},
        {"ambulance_id": 999, "lat": 3.15, "lng": 101.7},
    ])
    tracker.consume()

    assert tracker.applied == 0
    assert tracker.skipped == 5
    assert store.sequence == before


def test_simulated_ambulances_are_left_alone(store):
    tracker, _ = _tracker(store, simulated={6})
    original = store.get_ambulance(6).location
    assert tracker.handle({"ambulance_id": 6, "lat": 3.2, "lng": 101.8}) is False
    assert store.get_ambulance(6).location == original


def test_consumer_failure_is_logged(store, caplog):
    def broken():
        raise ConnectionError("no brokers")

    tracker = AmbulanceLocationTracker(store, is_simulated=lambda _: False, consumer_factory=broken)
    tracker.consume()
    assert "Failed to create Kafka consumer" in caplog.text
