"""
Ambulance Location Tracker - Consumes real GPS positions from Kafka.
"""

import os
import logging
import threading
from typing import Callable, Iterable, Optional

from pydantic import ValidationError

from shared.errors import DispatchError
from shared.kafka_client import AMBULANCE_GPS_TOPIC, create_consumer
from shared.types import Location

logger = logging.getLogger(__name__)


def _default_consumer() -> Iterable:
    return create_consumer(
        topics=[AMBULANCE_GPS_TOPIC],
        group_id=os.getenv("KAFKA_CONSUMER_GROUP_ID", "dispatch-gps-tracker"),
        auto_offset_reset="latest",
    )


class AmbulanceLocationTracker:
    """
    Applies positions from the 'ambulance-gps' Kafka topic to the store in a
    background thread. Ambulances the movement simulator is animating are
    skipped so the two sources never fight over one vehicle.
    """

    def __init__(
        self,
        store,
        is_simulated: Callable[[int], bool],
        consumer_factory: Callable[[], Iterable] = _default_consumer,
    ):
        self._store = store
        self._is_simulated = is_simulated
        self._consumer_factory = consumer_factory
        self._consumer_thread: Optional[threading.Thread] = None
        self.applied = 0
        self.skipped = 0

    def start_consumer(self) -> None:
        """Start the background Kafka consumer thread."""
        self._consumer_thread = threading.Thread(
            target=self.consume,
            daemon=True,
            name="ambulance-gps-consumer",
        )
        self._consumer_thread.start()
        logger.info("Ambulance GPS consumer thread started")

    def consume(self) -> None:
        """Consume GPS messages until the consumer is exhausted."""
        try:
            consumer = self._consumer_factory()
            logger.info(f"Subscribed to '{AMBULANCE_GPS_TOPIC}' topic")
        except Exception:
            logger.exception("Failed to create Kafka consumer for ambulance GPS. Positions come from the simulator only.")
            return

        for message in consumer:
            self.handle(message.value)

    def handle(self, data) -> bool:
        """Apply one GPS message. Returns True when the position was written."""
        if not isinstance(data, dict):
            logger.warning(f"Skipping malformed GPS message: {data!r}")
            self.skipped += 1
            return False

        ambulance_id = data.get("ambulance_id")
        lat = data.get("lat")
        lng = data.get("lng")
        if ambulance_id is None or lat is None or lng is None:
            logger.warning(f"Skipping malformed GPS message: {data}")
            self.skipped += 1
            return False

        try:
            ambulance_id = int(ambulance_id)
            location = Location(lat=float(lat), lng=float(lng))
        except (TypeError, ValueError, ValidationError):
            logger.warning(f"Skipping GPS message with bad values: {data}")
            self.skipped += 1
            return False

        if self._is_simulated(ambulance_id):
            logger.debug(f"Ambulance {ambulance_id} is simulated; ignoring GPS fix")
            self.skipped += 1
            return False

        try:
            self._store.update_ambulance_location(ambulance_id, location)
        except DispatchError as e:
            logger.warning(f"GPS update for ambulance {ambulance_id} rejected: {e.message}")
            self.skipped += 1
            return False

        self.applied += 1
        logger.debug(f"Updated position for ambulance {ambulance_id}: ({lat}, {lng})")
        return True
