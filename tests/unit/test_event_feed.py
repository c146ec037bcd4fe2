"""
Unit tests for the event feed.
"""

import pytest

from huddle.services.event_feed import EventFeed, FeedEventType


@pytest.fixture
def feed():
    return EventFeed()


class TestEventFeed:
    """Subscribers see events in publish order."""

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self, feed):
        seen = []

        async def async_handler(event):
            seen.append(("async", event.type))

        feed.subscribe(lambda event: seen.append(("sync", event.type)))
        feed.subscribe(async_handler)

        await feed.emit(FeedEventType.MESSAGE_APPENDED, "s1", message={"id": "m1"})

        assert seen == [("sync", FeedEventType.MESSAGE_APPENDED), ("async", FeedEventType.MESSAGE_APPENDED)]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, feed):
        seen = []
        unsubscribe = feed.subscribe(seen.append)

        unsubscribe()
        await feed.emit(FeedEventType.PLAN_PROPOSED, "s1")

        assert seen == []

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self, feed):
        seen = []

        def broken(event):
            raise ValueError("render failed")

        feed.subscribe(broken)
        feed.subscribe(seen.append)

        event = await feed.emit(FeedEventType.TASK_COMPLETED, "s1", summary={})

        assert seen == [event]

    @pytest.mark.asyncio
    async def test_queue_subscription(self, feed):
        queue = feed.subscribe_queue()

        await feed.emit(FeedEventType.SESSION_COMPACTED, "s1", message_index=20)
        event = queue.get_nowait()

        assert event.type == FeedEventType.SESSION_COMPACTED
        assert event.data == {"message_index": 20}

        feed.unsubscribe_queue(queue)
        await feed.emit(FeedEventType.SESSION_COMPACTED, "s1")
        assert queue.empty()
