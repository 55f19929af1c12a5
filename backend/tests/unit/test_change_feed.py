"""
Unit tests for ChangeFeed and the SSE frame generator.
"""

import asyncio
import json

import pytest

from backend.src.api.changes import format_sse, stream_changes
from backend.src.utils.change_feed import ChangeFeed


ORDER_INSERT = {"table": "orders", "type": "INSERT", "new": {"id": 1, "restaurant_id": "rest_1"}}


class TestChangeFeed:
    """Tests for ChangeFeed fan-out."""

    @pytest.mark.asyncio
    async def test_publish_reaches_tenant_subscribers_only(self):
        feed = ChangeFeed()
        mine = await feed.subscribe("rest_1")
        other = await feed.subscribe("rest_2")

        delivered = await feed.publish("rest_1", ORDER_INSERT)

        assert delivered == 1
        event = mine.get_nowait()
        assert event["table"] == "orders"
        assert event["tenant_id"] == "rest_1"
        assert event["sequence"] == 1
        assert event["commit_timestamp"]
        assert other.empty()

    @pytest.mark.asyncio
    async def test_sequence_increases(self):
        feed = ChangeFeed()
        queue = await feed.subscribe("rest_1")
        await feed.publish("rest_1", ORDER_INSERT)
        await feed.publish("rest_1", ORDER_INSERT)
        assert [queue.get_nowait()["sequence"] for _ in range(2)] == [1, 2]

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        """Should drop the oldest event instead of blocking the publisher."""
        feed = ChangeFeed(queue_size=2)
        queue = await feed.subscribe("rest_1")
        for _ in range(3):
            await feed.publish("rest_1", ORDER_INSERT)

        assert queue.qsize() == 2
        assert queue.get_nowait()["sequence"] == 2

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        feed = ChangeFeed()
        queue = await feed.subscribe("rest_1")
        assert feed.get_subscriber_count("rest_1") == 1
        feed.unsubscribe("rest_1", queue)
        feed.unsubscribe("rest_1", queue)
        assert feed.get_subscriber_count() == 0
        assert await feed.publish("rest_1", ORDER_INSERT) == 0


class TestStreamChanges:
    """Tests for the SSE frame generator behind /api/changes/stream."""

    def test_format_sse(self):
        assert format_sse({"a": 1}) == 'data: {"a": 1}\n\n'
        assert format_sse({"a": 1}, event="ready") == 'event: ready\ndata: {"a": 1}\n\n'

    @pytest.mark.asyncio
    async def test_ready_then_events(self):
        feed = ChangeFeed()
        stream = stream_changes(feed, "rest_1", "kitchen", keepalive=1.0)

        ready = await stream.__anext__()
        assert ready.startswith("event: ready\n")
        assert feed.get_subscriber_count("rest_1") == 1

        await feed.publish("rest_1", ORDER_INSERT)
        frame = await stream.__anext__()
        payload = json.loads(frame[len("data: "):])
        assert payload["new"] == {"id": 1, "restaurant_id": "rest_1"}

        await stream.aclose()
        assert feed.get_subscriber_count("rest_1") == 0

    @pytest.mark.asyncio
    async def test_filters_tables(self):
        feed = ChangeFeed()
        stream = stream_changes(feed, "rest_1", "kitchen", tables={"bookings"}, keepalive=1.0)
        await stream.__anext__()

        await feed.publish("rest_1", ORDER_INSERT)
        await feed.publish("rest_1", {"table": "bookings", "type": "INSERT", "new": {"id": 4}})

        frame = await stream.__anext__()
        assert json.loads(frame[len("data: "):])["table"] == "bookings"
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_keepalive_on_silence(self):
        feed = ChangeFeed()
        stream = stream_changes(feed, "rest_1", "kitchen", keepalive=0.01)
        await stream.__anext__()
        assert await stream.__anext__() == ": keepalive\n\n"
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_keepalive_despite_filtered_traffic(self):
        """Should keep sending keepalives while only unwatched tables change."""
        feed = ChangeFeed()
        stream = stream_changes(feed, "rest_1", "kitchen", tables={"orders"}, keepalive=0.05)
        await stream.__anext__()

        async def publish_bookings():
            for i in range(40):
                await feed.publish("rest_1", {"table": "bookings", "type": "INSERT", "new": {"id": i}})
                await asyncio.sleep(0.01)

        publisher = asyncio.create_task(publish_bookings())
        try:
            frame = await asyncio.wait_for(stream.__anext__(), timeout=0.3)
            assert frame == ": keepalive\n\n"
        finally:
            publisher.cancel()
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_stops_when_client_disconnects(self):
        feed = ChangeFeed()

        async def disconnected():
            return True

        stream = stream_changes(feed, "rest_1", "kitchen", is_disconnected=disconnected)
        frames = [frame async for frame in stream]
        assert len(frames) == 1
        await asyncio.sleep(0)
        assert feed.get_subscriber_count() == 0
