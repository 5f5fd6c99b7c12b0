"""
Event fan-out to dispatcher WebSocket sessions and external relays.

Store listeners run on whatever thread committed the change, so each
WebSocket session buffers outbound frames in a bounded queue and an asyncio
task on the server loop drains it. A session that falls too far behind is
closed with code 1013 and the client reconnects for a fresh snapshot.
"""
import asyncio
import json
import logging
import os
import threading
import time
import uuid
from collections import deque
from typing import Any, Callable, Dict, List, Optional

from fastapi import WebSocket, WebSocketDisconnect

from shared.errors import RetryExhaustedError
from shared.kafka_client import publish_message, topic_for_event
from shared.redis_client import EVENTS_CHANNEL, incident_channel, publish_realtime_update
from shared.retry import RetryPolicy
from shared.types import EventEnvelope, EventType, Snapshot, utcnow

logger = logging.getLogger(__name__)

SESSION_QUEUE_SIZE = int(os.getenv("SESSION_QUEUE_SIZE", "512"))
RELAY_QUEUE_SIZE = int(os.getenv("RELAY_QUEUE_SIZE", "2048"))

# "Try again later": the client should reconnect and resync
CLOSE_OVERFLOW = 1013


def snapshot_message(snapshot: Snapshot) -> Dict[str, Any]:
    return {
        "type": EventType.SNAPSHOT.value,
        "data": snapshot.to_json(),
        "timestamp": snapshot.timestamp.isoformat(),
        "sequence": snapshot.sequence,
    }


class Session:
    """One connected dispatcher."""

    def __init__(self, websocket: WebSocket, loop: asyncio.AbstractEventLoop, max_queue: int = SESSION_QUEUE_SIZE):
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.max_queue = max_queue
        self.overflowed = False
        self.closed = False
        self.sent = 0
        self._loop = loop
        self._queue: deque = deque()
        self._lock = threading.Lock()
        self._wakeup = asyncio.Event()

    def offer(self, message: Dict[str, Any]) -> bool:
        """Queue a frame from any thread. Returns False if the session is gone or overflowed."""
        with self._lock:
            if self.closed:
                return False
            if len(self._queue) >= self.max_queue:
                self.overflowed = True
                self.closed = True
                self._queue.clear()
            else:
                self._queue.append(message)
        if not self._wake():
            with self._lock:
                self.closed = True
            return False
        return not self.overflowed

    def _wake(self) -> bool:
        if self._loop.is_closed():
            return False
        self._loop.call_soon_threadsafe(self._wakeup.set)
        return True

    def _drain(self) -> List[Dict[str, Any]]:
        with self._lock:
            batch = list(self._queue)
            self._queue.clear()
            return batch

    def close(self):
        with self._lock:
            self.closed = True
        self._wake()

    async def pump(self):
        """Send queued frames in order until the session closes."""
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            for message in self._drain():
                await self.websocket.send_json(message)
                self.sent += 1
            if self.overflowed:
                logger.warning(f"Session {self.id} fell behind; closing for resync")
                await self.websocket.close(code=CLOSE_OVERFLOW)
                return
            if self.closed:
                return


class Broadcaster:
    """Registers sessions against the store and fans every event out to them."""

    def __init__(self, store, queue_size: int = SESSION_QUEUE_SIZE):
        self.store = store
        self.queue_size = queue_size
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()
        store.add_listener(self.publish)

    @property
    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def publish(self, envelope: EventEnvelope):
        message = envelope.to_json()
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            if not session.offer(message) and session.overflowed:
                self.remove(session)

    def remove(self, session: Session):
        with self._lock:
            self._sessions.pop(session.id, None)

    def close_all(self):
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()

    def _register(self, session: Session, snapshot: Snapshot):
        session.offer(snapshot_message(snapshot))
        with self._lock:
            self._sessions[session.id] = session

    async def serve(self, websocket: WebSocket):
        """Run one WebSocket session: snapshot first, then live events."""
        await websocket.accept()
        session = Session(websocket, asyncio.get_running_loop(), self.queue_size)
        self.store.snapshot(register=lambda snap: self._register(session, snap))
        logger.info(f"Session {session.id} connected ({self.session_count} active)")

        reader = asyncio.create_task(self._read(session))
        pump = asyncio.create_task(session.pump())
        try:
            done, _ = await asyncio.wait({reader, pump}, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                error = task.exception()
                if error is not None and not isinstance(error, (WebSocketDisconnect, RuntimeError)):
                    logger.error(f"Session {session.id} failed: {error!r}")
        finally:
            self.remove(session)
            session.close()
            for task in (reader, pump):
                task.cancel()
            logger.info(f"Session {session.id} disconnected after {session.sent} frames")

    async def _read(self, session: Session):
        websocket = session.websocket
        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                return
            try:
                message = json.loads(raw)
            except ValueError:
                logger.warning(f"Session {session.id} sent non-JSON frame")
                continue
            kind = message.get("type") if isinstance(message, dict) else None
            if kind == "RESYNC":
                self.store.snapshot(register=lambda snap: session.offer(snapshot_message(snap)))
            elif kind == "PING":
                session.offer({"type": "PONG", "timestamp": utcnow().isoformat()})
            else:
                logger.debug(f"Session {session.id} sent unknown frame type {kind}")


# ---------------------------------------------------------------------------
# External relays
# ---------------------------------------------------------------------------

class RedisSink:
    """Publishes every event on the shared channel, incident events also on their own channel."""

    name = "redis"

    def __init__(self, client):
        self.client = client

    def __call__(self, message: Dict[str, Any]):
        publish_realtime_update(self.client, EVENTS_CHANNEL, message)
        channel = incident_channel(message.get("data", {}).get("incidentId"))
        if channel:
            publish_realtime_update(self.client, channel, message)


class KafkaSink:
    """Location ticks to 'vehicle-locations', everything else to 'dispatch-events'."""

    name = "kafka"

    def __init__(self, producer):
        self.producer = producer

    def __call__(self, message: Dict[str, Any]):
        data = message.get("data", {})
        key = data.get("incidentId") or data.get("ambulanceId") or data.get("id")
        publish_message(
            self.producer,
            topic_for_event(message["type"]),
            message,
            key=str(key) if key is not None else None,
        )


class EventRelay:
    """
    Mirrors envelopes to external sinks from a bounded queue on a worker thread.

    When the queue is full the oldest envelope is dropped. Each publish is
    retried with backoff; a publish that exhausts its retries is logged and
    skipped.
    """

    def __init__(
        self,
        sinks: List[Callable[[Dict[str, Any]], None]],
        max_queue: int = RELAY_QUEUE_SIZE,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.sinks = sinks
        self.retry_policy = retry_policy or RetryPolicy(base_delay=0.5, max_delay=10.0, max_attempts=5)
        self.dropped = 0
        self.failed = 0
        self._sleep = sleep
        self._queue: deque = deque(maxlen=max_queue)
        self._cond = threading.Condition()
        self._stopping = False
        self._thread: Optional[threading.Thread] = None

    def publish(self, envelope: EventEnvelope):
        message = envelope.to_json()
        with self._cond:
            if len(self._queue) == self._queue.maxlen:
                self.dropped += 1
                if self.dropped % 100 == 1:
                    logger.warning(f"Relay queue full; {self.dropped} events dropped so far")
            self._queue.append(message)
            self._cond.notify()

    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    def start(self):
        self._thread = threading.Thread(target=self._run, daemon=True, name="event-relay")
        self._thread.start()
        logger.info(f"Event relay started with sinks: {[getattr(s, 'name', repr(s)) for s in self.sinks]}")

    def stop(self, timeout: float = 2.0):
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _run(self):
        while True:
            with self._cond:
                while not self._queue and not self._stopping:
                    self._cond.wait()
                if self._stopping:
                    return
            self.drain()

    def drain(self) -> int:
        """Deliver everything queued right now on the calling thread."""
        delivered = 0
        while True:
            with self._cond:
                if not self._queue:
                    return delivered
                message = self._queue.popleft()
            for sink in self.sinks:
                self._deliver(sink, message)
            delivered += 1

    def _deliver(self, sink, message: Dict[str, Any]):
        name = getattr(sink, "name", repr(sink))
        try:
            self.retry_policy.run(
                lambda: sink(message),
                sleep=self._sleep,
                description=f"{name} publish of {message['type']}",
            )
        except RetryExhaustedError as e:
            self.failed += 1
            logger.error(f"{e.message}: {e.last_error}")
