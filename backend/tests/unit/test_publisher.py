"""
Unit tests for the live update publisher.
"""

import asyncio
import json

import pytest

from ctfrange.application.scoring.service import ScoringService
from ctfrange.infrastructure.realtime.publisher import EventPublisher, stream_message


async def _subscribed(publisher, topic):
    """Start a subscription and wait until it is registered."""
    stream = publisher.subscribe(topic)
    pending = asyncio.ensure_future(stream.__anext__())
    while publisher.subscriber_count(topic) == 0:
        await asyncio.sleep(0)
    return stream, pending


class TestEventPublisher:
    """Test topic fan-out."""

    @pytest.mark.asyncio
    async def test_publish_reaches_topic_subscribers(self):
        publisher = EventPublisher(heartbeat_interval=5)
        stream, pending = await _subscribed(publisher, "session:1")

        assert await publisher.publish("session:1", "event_recorded", {"total": 10}) == 1
        assert await publisher.publish("session:2", "event_recorded", {"total": 99}) == 0

        message = await asyncio.wait_for(pending, timeout=1)
        assert message["type"] == "event_recorded"
        assert message["data"] == {"total": 10}
        assert message["id"] == "1"

        await stream.aclose()
        assert publisher.subscriber_count("session:1") == 0

    @pytest.mark.asyncio
    async def test_heartbeat_when_idle(self):
        publisher = EventPublisher(heartbeat_interval=0.01)
        stream, pending = await _subscribed(publisher, "t")

        message = await asyncio.wait_for(pending, timeout=1)

        assert message["type"] == "heartbeat"
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_stop_ends_subscriptions(self):
        publisher = EventPublisher(heartbeat_interval=5)
        stream, pending = await _subscribed(publisher, "t")

        await publisher.stop()

        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(pending, timeout=1)
        assert publisher.subscriber_count("t") == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_message(self):
        publisher = EventPublisher(heartbeat_interval=5, queue_size=1)
        stream, pending = await _subscribed(publisher, "t")

        # The waiting subscriber takes the first; the second fills the queue
        assert await publisher.publish("t", "a", {}) == 1
        await asyncio.wait_for(pending, timeout=1)
        assert await publisher.publish("t", "b", {}) == 1
        assert await publisher.publish("t", "c", {}) == 0

        await stream.aclose()

    def test_stream_message_shape(self):
        shaped = stream_message({"id": "7", "type": "leaderboard", "data": {"entries": []}})

        assert shaped["event"] == "leaderboard"
        assert shaped["id"] == "7"
        assert json.loads(shaped["data"])["data"] == {"entries": []}


class TestScoringPublishes:
    """Test that recorded events are pushed to the session topic."""

    @pytest.mark.asyncio
    async def test_record_event_published(
        self, db_manager, range_settings, fake_runtime, session_service, join_service
    ):
        publisher = EventPublisher(heartbeat_interval=5)
        scoring = ScoringService(db_manager, range_settings, fake_runtime, publisher)
        game_session = await session_service.create_session(max_players=2)
        joined = await join_service.join(game_session.session_code, "Alice")

        topic = EventPublisher.session_topic(game_session.id)
        stream, pending = await _subscribed(publisher, topic)

        await scoring.record_event(joined.container.id, "flag_captured")
        message = await asyncio.wait_for(pending, timeout=1)

        assert message["type"] == "event_recorded"
        assert message["data"]["score"]["total_score"] == 10
        assert message["data"]["container_code"] == joined.container.container_code
        await stream.aclose()
