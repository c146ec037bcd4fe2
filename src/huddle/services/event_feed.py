"""Subscription feed for presentation layers."""

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Union

from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)


class FeedEventType(str, Enum):
    MESSAGE_APPENDED = "message_appended"
    ROUTING_STATE_CHANGED = "routing_state_changed"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_RESOLVED = "approval_resolved"
    PLAN_PROPOSED = "plan_proposed"
    PLAN_RESOLVED = "plan_resolved"
    TASK_COMPLETED = "task_completed"
    SESSION_COMPACTED = "session_compacted"


class FeedEvent(BaseModel):
    type: FeedEventType
    session_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = Field(default_factory=dict)


FeedHandler = Callable[[FeedEvent], Union[None, Awaitable[None]]]


class EventFeed:
    """Fans scheduler events out to subscribers in publish order.

    Handlers may be plain functions or coroutines. A failing handler is
    logged and skipped; it never fails the round that published the event.
    """

    def __init__(self):
        self._handlers: List[FeedHandler] = []
        self._queues: List[asyncio.Queue] = []

    def subscribe(self, handler: FeedHandler) -> Callable[[], None]:
        """Register ``handler``; the returned callable unsubscribes it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def subscribe_queue(self, maxsize: int = 0) -> asyncio.Queue:
        """Receive events on a queue instead of a callback."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._queues.append(queue)
        return queue

    def unsubscribe_queue(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    async def publish(self, event: FeedEvent) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Feed handler failed on {event.type.value} for session {event.session_id}")

        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Dropping {event.type.value} event for a full subscriber queue")

    async def emit(self, event_type: FeedEventType, session_id: str, **data: Any) -> FeedEvent:
        event = FeedEvent(type=event_type, session_id=session_id, data=data)
        await self.publish(event)
        return event
