"""Kafka producer and consumer utilities."""
import json
import logging
import os
from typing import List, Optional
from kafka import KafkaProducer, KafkaConsumer
from kafka.errors import KafkaError

logger = logging.getLogger(__name__)

KAFKA_BROKER = os.getenv("KAFKA_BROKER", "localhost:9092")

VEHICLE_LOCATIONS_TOPIC = "vehicle-locations"
DISPATCH_EVENTS_TOPIC = "dispatch-events"
AMBULANCE_GPS_TOPIC = "ambulance-gps"


def create_producer(bootstrap_servers: Optional[str] = None) -> KafkaProducer:
    """Create a Kafka producer with JSON values and string keys."""
    return KafkaProducer(
        bootstrap_servers=bootstrap_servers or KAFKA_BROKER,
        value_serializer=lambda v: json.dumps(v).encode('utf-8'),
        key_serializer=lambda k: k.encode('utf-8') if k else None
    )


def publish_message(producer: KafkaProducer, topic: str, message: dict, key: Optional[str] = None):
    """Publish a message to a Kafka topic and wait for the broker ack."""
    try:
        future = producer.send(topic, value=message, key=key)
        future.get(timeout=10)
    except KafkaError as e:
        logger.error(f"Error publishing to {topic}: {e}")
        raise


def create_consumer(
    topics: List[str],
    group_id: str,
    bootstrap_servers: Optional[str] = None,
    auto_offset_reset: str = "latest",
) -> KafkaConsumer:
    """Create a Kafka consumer with JSON values."""
    return KafkaConsumer(
        *topics,
        bootstrap_servers=bootstrap_servers or KAFKA_BROKER,
        group_id=group_id,
        value_deserializer=lambda m: json.loads(m.decode('utf-8')),
        auto_offset_reset=auto_offset_reset,
        enable_auto_commit=True
    )


def topic_for_event(event_type: str) -> str:
    """Location ticks go to the high-volume topic, everything else to the event log."""
    if event_type == "AMBULANCE_UPDATE":
        return VEHICLE_LOCATIONS_TOPIC
    return DISPATCH_EVENTS_TOPIC
