"""
Unit tests for the per-session event channel.
"""
import asyncio

import pytest

from facilityxl.extraction_engine.events import EventChannel, EventType, PipelineEvent


class TestEventChannel:
    """Tests for publishing and consuming events."""

    @pytest.mark.asyncio
    async def test_get_in_order(self):
        """Test that events are consumed in publish order."""
        channel = EventChannel("session-1")
        channel.publish(EventType.SESSION_STARTED, documents=2)
        channel.publish(EventType.DOCUMENT_STARTED, document_id="doc-1")

        first = await channel.get()
        second = await channel.get()
        assert first.type == EventType.SESSION_STARTED
        assert first.data == {"documents": 2}
        assert first.session_id == "session-1"
        assert second.data["document_id"] == "doc-1"

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        """Test that a full queue drops its oldest events."""
        channel = EventChannel("session-1", maxsize=2)
        for index in range(4):
            channel.publish(EventType.PASS_PROGRESS, step=index)

        assert channel.dropped == 2
        assert channel.pending() == 2
        assert (await channel.get()).data["step"] == 2
        assert (await channel.get()).data["step"] == 3

    @pytest.mark.asyncio
    async def test_close_ends_stream(self):
        """Test that closing ends the stream after queued events."""
        channel = EventChannel("session-1")
        channel.publish(EventType.SESSION_STARTED)
        channel.publish(EventType.SESSION_COMPLETED)
        channel.close()

        received = [event.type async for event in channel.stream()]
        assert received == [EventType.SESSION_STARTED, EventType.SESSION_COMPLETED]
        assert channel.closed

    @pytest.mark.asyncio
    async def test_get_after_close(self):
        """Test get on a closed, empty channel."""
        channel = EventChannel("session-1")
        channel.close()
        channel.close()
        assert await channel.get() is None
        assert channel.pending() == 0

    @pytest.mark.asyncio
    async def test_get_keeps_returning_none_once_drained(self):
        """Test that repeated gets after close return None without blocking."""
        channel = EventChannel("session-1")
        channel.publish(EventType.SESSION_COMPLETED)
        channel.close()

        assert (await channel.get()).type == EventType.SESSION_COMPLETED
        assert await channel.get() is None
        assert await asyncio.wait_for(channel.get(), 0.2) is None
        assert await asyncio.wait_for(channel.get(), 0.2) is None
        assert [event async for event in channel.stream()] == []

    @pytest.mark.asyncio
    async def test_stream_waits_for_producer(self):
        """Test that the stream waits for events still to come."""
        channel = EventChannel("session-1")

        async def produce():
            await asyncio.sleep(0)
            channel.publish(EventType.HEARTBEAT)
            channel.close()

        producer = asyncio.create_task(produce())
        received = [event async for event in channel.stream()]
        await producer
        assert [e.type for e in received] == [EventType.HEARTBEAT]

    def test_publish_after_close_ignored(self):
        """Test that publishing after close is ignored."""
        channel = EventChannel("session-1")
        channel.close()
        assert channel.publish(EventType.ERROR, message="late") is None
        assert channel.history() == []

    def test_history_is_capped(self):
        """Test that history keeps only the latest events."""
        channel = EventChannel("session-1", maxsize=10, history_size=3)
        for index in range(5):
            channel.publish(EventType.PASS_PROGRESS, step=index)
        assert [e.data["step"] for e in channel.history()] == [2, 3, 4]


class TestPipelineEvent:
    def test_to_dict(self):
        """Test event serialization."""
        event = PipelineEvent(type=EventType.ERROR, session_id="s-1", data={"recoverable": True})
        payload = event.to_dict()
        assert payload["type"] == "error"
        assert payload["session_id"] == "s-1"
        assert payload["data"] == {"recoverable": True}
        assert "T" in payload["timestamp"]
