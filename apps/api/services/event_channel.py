"""
Event Channel: worker -> web process -> browser.

Workers publish {"userId", "type", "payload"} JSON on one Redis pub/sub
channel. Every web process runs an EventRelay that subscribes to that
channel and hands each message to its ConnectionManager, which forwards it
to the addressed user's live WebSocket sessions.

Delivery is best-effort and at-most-once. A user with no open session
simply misses the event; the UI refetches on reconnect.
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import WebSocket
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

EVENT_AI_STREAM = "ai-stream"
EVENT_EVIDENCE_BATCH_SAVED = "evidence-batch-saved"
EVENT_GENERATION_PROGRESS = "generation-progress"
EVENT_GENERATION_RETRY = "generation-retry"
EVENT_GENERATION_COMPLETE = "generation-complete"
EVENT_GENERATION_FAILED = "generation-failed"
EVENT_GENERATION_CANCELLED = "generation-cancelled"
EVENT_FILE_PROCESSED = "file-processed"

ALL_EVENTS = (
    EVENT_AI_STREAM,
    EVENT_EVIDENCE_BATCH_SAVED,
    EVENT_GENERATION_PROGRESS,
    EVENT_GENERATION_RETRY,
    EVENT_GENERATION_COMPLETE,
    EVENT_GENERATION_FAILED,
    EVENT_GENERATION_CANCELLED,
    EVENT_FILE_PROCESSED,
)


def encode_event(user_id: str, event_type: str, payload: Dict[str, Any]) -> str:
    return json.dumps({"userId": str(user_id), "type": event_type, "payload": payload}, default=str)


def decode_event(raw) -> Optional[Dict[str, Any]]:
    """Parse a channel message; returns None for anything malformed."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(message, dict) or not message.get("userId") or not message.get("type"):
        return None
    return message


class RedisEventChannel:
    """Publisher used inside worker processes."""

    def __init__(self, redis_client, channel: str):
        self.redis_client = redis_client
        self.channel = channel

    def publish(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if self.redis_client is None:
            return
        try:
            self.redis_client.publish(self.channel, encode_event(user_id, event_type, payload))
        except RedisError as e:
            logger.warning(f"Failed to publish {event_type} for user {user_id}: {e}")


class ConnectionManager:
    """Live WebSocket sessions per user, for the current web process only."""

    def __init__(self):
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, user_id: str, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.setdefault(str(user_id), []).append(websocket)
        logger.info(f"Client connected for user {user_id}")

    def disconnect(self, user_id: str, websocket: WebSocket):
        sessions = self.active_connections.get(str(user_id), [])
        if websocket in sessions:
            sessions.remove(websocket)
        if not sessions:
            self.active_connections.pop(str(user_id), None)

    def session_count(self, user_id: str) -> int:
        return len(self.active_connections.get(str(user_id), []))

    async def send_to_user(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> int:
        """Send to every session of ``user_id``; returns the number reached."""
        delivered = 0
        for websocket in list(self.active_connections.get(str(user_id), [])):
            try:
                await websocket.send_json({"event": event_type, "data": payload})
                delivered += 1
            except Exception as e:
                logger.debug(f"Dropping dead socket for user {user_id}: {e}")
                self.disconnect(user_id, websocket)
        return delivered

    async def dispatch(self, raw) -> int:
        message = decode_event(raw)
        if message is None:
            logger.warning("Ignoring malformed worker event")
            return 0
        return await self.send_to_user(message["userId"], message["type"], message.get("payload") or {})


class EventRelay:
    """Subscribes to the worker channel for the web app's lifespan."""

    def __init__(self, redis_client, channel: str, manager: ConnectionManager):
        self.redis_client = redis_client
        self.channel = channel
        self.manager = manager
        self._task: Optional[asyncio.Task] = None

    async def run(self):
        pubsub = self.redis_client.pubsub()
        await pubsub.subscribe(self.channel)
        logger.info(f"Event relay subscribed to {self.channel}")
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                await self.manager.dispatch(message.get("data"))
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.close()

    def start(self):
        self._task = asyncio.create_task(self._run_forever())

    async def _run_forever(self):
        while True:
            try:
                await self.run()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Event relay stopped: {e}; resubscribing in 5s")
                await asyncio.sleep(5)

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
