"""
CTF Range Orchestrator - Live Update Publisher

In-process topic fan-out feeding the server-sent event streams that the
dashboard uses for live scores.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, Optional, Set

import orjson
import structlog

logger = structlog.get_logger(__name__)

# Pushed to every subscriber on shutdown
_CLOSED = object()


class EventPublisher:
    """
    Topic-based publisher for server-sent events.

    Features:
    - One bounded queue per subscriber
    - Heartbeat messages while a topic is idle
    - Slow subscribers lose messages instead of blocking publishers
    """

    def __init__(self, heartbeat_interval: float = 15.0, queue_size: int = 100):
        self._heartbeat_interval = heartbeat_interval
        self._queue_size = queue_size
        self._subscriptions: Dict[str, Set[asyncio.Queue]] = {}
        self._sequence = 0
        self._running = True

    @staticmethod
    def session_topic(session_id: Any) -> str:
        return f"session:{session_id}"

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, ()))

    async def publish(self, topic: str, event_type: str, data: Dict[str, Any]) -> int:
        """
        Publish a message to a topic.

        Returns:
            Number of subscribers the message was queued for
        """
        self._sequence += 1
        message = {
            "id": str(self._sequence),
            "type": event_type,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        count = 0
        for queue in list(self._subscriptions.get(topic, ())):
            try:
                queue.put_nowait(message)
                count += 1
            except asyncio.QueueFull:
                logger.warning("Dropping live update for slow subscriber", topic=topic)
        return count

    async def subscribe(self, topic: str) -> AsyncGenerator[Dict[str, Any], None]:
        """
        Yield messages published to a topic until the publisher stops.

        A ``heartbeat`` message is yielded whenever nothing was published
        for one heartbeat interval.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscriptions.setdefault(topic, set()).add(queue)
        logger.debug("Live update subscriber added", topic=topic)

        try:
            while self._running:
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=self._heartbeat_interval)
                except asyncio.TimeoutError:
                    yield {
                        "type": "heartbeat",
                        "data": {"timestamp": datetime.now(timezone.utc).isoformat()},
                    }
                    continue

                if message is _CLOSED:
                    break
                yield message
        finally:
            subscribers = self._subscriptions.get(topic)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscriptions[topic]

    async def stop(self) -> None:
        """End every open subscription."""
        self._running = False
        for subscribers in list(self._subscriptions.values()):
            for queue in list(subscribers):
                try:
                    queue.put_nowait(_CLOSED)
                except asyncio.QueueFull:
                    # Full queues see the stopped flag after draining
                    pass
        logger.info("Live update publisher stopped")


def stream_message(message: Dict[str, Any], default_type: Optional[str] = None) -> Dict[str, Any]:
    """Shape a publisher message for ``EventSourceResponse``."""
    return {
        "event": message.get("type", default_type or "message"),
        "data": orjson.dumps(message).decode(),
        "id": message.get("id"),
    }
