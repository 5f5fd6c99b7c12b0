"""
Client-side mirror of dispatch state.

Loads a snapshot, then applies event envelopes as full-record replacements
keyed by id. A record is replaced only when the incoming version is newer
than the one held, so duplicate or late deliveries are harmless.
"""
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_RECORD_EVENTS = {
    "INCIDENT_ADDED": "incidents",
    "INCIDENT_UPDATE": "incidents",
    "AMBULANCE_UPDATE": "ambulances",
    "HOSPITAL_UPDATE": "hospitals",
    "HAZARD_UPDATE": "hazards",
}

# Keys the server adds to record events that are not part of the record itself.
_EVENT_ONLY_KEYS = {
    "incidents": ("incidentId", "lat", "lng"),
    "ambulances": ("ambulanceId", "lat", "lng", "phase", "etaSeconds", "route"),
    "hospitals": ("hospitalId",),
    "hazards": ("hazardId",),
}


class DispatchMirror:
    def __init__(self):
        self.sequence = 0
        self.incidents: Dict[str, dict] = {}
        self.ambulances: Dict[int, dict] = {}
        self.hospitals: Dict[int, dict] = {}
        self.hazards: Dict[str, dict] = {}
        # Deleted incident id -> sequence of the deletion
        self._tombstones: Dict[str, int] = {}

    def load_snapshot(self, snapshot: Dict[str, Any]):
        """Replace all local state with a snapshot payload."""
        self.sequence = snapshot["sequence"]
        self.incidents = {i["id"]: i for i in snapshot["incidents"]}
        self.ambulances = {a["id"]: a for a in snapshot["ambulances"]}
        self.hospitals = {h["id"]: h for h in snapshot["hospitals"]}
        self.hazards = {h["id"]: h for h in snapshot["hazards"]}
        self._tombstones = {
            k: v for k, v in self._tombstones.items() if v > self.sequence
        }

    def apply(self, envelope: Dict[str, Any]) -> bool:
        """Apply one envelope. Returns True if local state changed."""
        event_type = envelope["type"]
        data = envelope.get("data") or {}
        sequence = envelope.get("sequence", 0)

        if event_type == "SNAPSHOT":
            self.load_snapshot(data)
            return True

        if event_type == "INCIDENT_DELETED":
            incident_id = data["incidentId"]
            held = self.incidents.get(incident_id)
            if held is not None and held.get("version", 0) >= sequence:
                return False
            self._tombstones[incident_id] = sequence
            self.sequence = max(self.sequence, sequence)
            return self.incidents.pop(incident_id, None) is not None

        table_name = _RECORD_EVENTS.get(event_type)
        if table_name is None:
            # Informational events (hospital selected, simulation lifecycle)
            self.sequence = max(self.sequence, sequence)
            return False

        extras = _EVENT_ONLY_KEYS[table_name]
        record = {k: v for k, v in data.items() if k not in extras}
        record_id = record.get("id")
        if record_id is None:
            logger.warning(f"Dropping {event_type} without id: {data}")
            return False

        if table_name == "incidents":
            deleted_at = self._tombstones.get(record_id)
            if deleted_at is not None and deleted_at >= record.get("version", 0):
                return False

        table = getattr(self, table_name)
        held = table.get(record_id)
        self.sequence = max(self.sequence, sequence)
        if held is not None and held.get("version", 0) >= record.get("version", 0):
            return False
        table[record_id] = record
        return True

    def incident(self, incident_id: str) -> Optional[dict]:
        return self.incidents.get(incident_id)

    def ambulance(self, ambulance_id: int) -> Optional[dict]:
        return self.ambulances.get(ambulance_id)
