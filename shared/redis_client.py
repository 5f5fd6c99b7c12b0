"""Redis client utilities."""
import json
import os
import redis
from typing import Optional


REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))

EVENTS_CHANNEL = "dispatch:events"


def create_redis_client() -> redis.Redis:
    """Create a Redis client."""
    return redis.Redis(
        host=REDIS_HOST,
        port=REDIS_PORT,
        decode_responses=True
    )


def publish_realtime_update(client: redis.Redis, channel: str, message: dict):
    """Publish a real-time update to a Redis channel."""
    client.publish(channel, json.dumps(message))


def incident_channel(incident_id: Optional[str]) -> Optional[str]:
    """Per-incident channel, mirroring the `dispatch:{id}` naming of the event stream."""
    if not incident_id:
        return None
    return f"dispatch:{incident_id}"
