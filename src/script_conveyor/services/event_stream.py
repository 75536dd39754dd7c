"""Live progress events for the conveyor with a small per-item replay buffer."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections import OrderedDict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Set

from ..config import EventSettings
from ..workflow.models import utcnow

LOGGER = logging.getLogger(__name__)


class EventType(str, Enum):
    ITEM_STARTED = "item:started"
    ITEM_COMPLETED = "item:completed"
    ITEM_FAILED = "item:failed"
    STAGE = "stage"
    THINKING = "thinking"
    ERROR = "error"


@dataclass(frozen=True)
class EventData:
    stage: Optional[int] = None
    stage_name: Optional[str] = None
    message: Optional[str] = None
    thinking: Optional[str] = None
    progress: Optional[int] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "stage": self.stage,
            "stageName": self.stage_name,
            "message": self.message,
            "thinking": self.thinking,
            "progress": self.progress,
            "result": self.result,
            "error": self.error,
        }
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(frozen=True)
class ConveyorEvent:
    """A single progress notification about one content item."""

    type: EventType
    user_id: str
    item_id: str
    data: EventData = field(default_factory=EventData)
    timestamp: datetime = field(default_factory=utcnow)
    seq: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "userId": self.user_id,
            "itemId": self.item_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data.to_payload(),
        }

    def to_sse(self) -> str:
        body = json.dumps(self.to_payload(), ensure_ascii=False)
        return f"event: {self.type.value}\ndata: {body}\n\n"


_CLOSED = object()


class Subscription:
    """Queue-backed async iterator over the events of one tenant."""

    def __init__(self, user_id: str, maxsize: int) -> None:
        self.user_id = user_id
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ConveyorEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def get(self, timeout: Optional[float] = None) -> Optional[ConveyorEvent]:
        """Wait for the next event.

        Returns ``None`` when the subscription is closed.  With ``timeout`` a
        ``asyncio.TimeoutError`` is raised if nothing arrives in time, which
        the SSE endpoint turns into a keep-alive comment.
        """

        if self._closed and self._queue.empty():
            return None
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            return None
        return item

    def offer(self, event: ConveyorEvent) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            LOGGER.debug(
                "Dropping %s event for slow subscriber of user %s", event.type.value, self.user_id
            )
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # A full queue is never awaited on; get() stops once it drains.
            return


class EventStream:
    """Fans conveyor events out to live subscribers and keeps recent history.

    Delivery is best-effort: a subscriber whose queue is full misses the
    event, while the replay buffer still records it.  Events of one item are
    delivered in emission order; there is no ordering across items.
    """

    def __init__(
        self,
        replay_buffer_size: int = 100,
        max_tracked_items: int = 500,
        subscriber_queue_size: int = 256,
        max_tracked_tenants: int = 1000,
    ) -> None:
        self.replay_buffer_size = replay_buffer_size
        self.max_tracked_items = max_tracked_items
        self.subscriber_queue_size = subscriber_queue_size
        self.max_tracked_tenants = max_tracked_tenants
        self._subscribers: Dict[str, Set[Subscription]] = {}
        self._replay: "OrderedDict[str, OrderedDict[str, Deque[ConveyorEvent]]]" = OrderedDict()
        self._seq = itertools.count(1)

    @classmethod
    def from_settings(cls, settings: EventSettings) -> "EventStream":
        return cls(
            replay_buffer_size=settings.replay_buffer_size,
            max_tracked_items=settings.max_tracked_items,
            subscriber_queue_size=settings.subscriber_queue_size,
            max_tracked_tenants=settings.max_tracked_tenants,
        )

    def publish(self, event: ConveyorEvent) -> ConveyorEvent:
        event = replace(event, seq=next(self._seq))
        self._remember(event)
        for subscription in list(self._subscribers.get(event.user_id, ())):
            subscription.offer(event)
        return event

    def emit(self, event_type: EventType, user_id: str, item_id: str, **data: Any) -> ConveyorEvent:
        """Build and publish an event; keyword arguments populate ``EventData``."""

        return self.publish(
            ConveyorEvent(type=event_type, user_id=user_id, item_id=item_id, data=EventData(**data))
        )

    def _remember(self, event: ConveyorEvent) -> None:
        items = self._replay.get(event.user_id)
        if items is None:
            items = self._replay[event.user_id] = OrderedDict()
            while len(self._replay) > self.max_tracked_tenants:
                self._replay.popitem(last=False)
        else:
            self._replay.move_to_end(event.user_id)
        buffer = items.get(event.item_id)
        if buffer is None:
            buffer = items[event.item_id] = deque(maxlen=self.replay_buffer_size)
            while len(items) > self.max_tracked_items:
                items.popitem(last=False)
        else:
            items.move_to_end(event.item_id)
        buffer.append(event)

    @asynccontextmanager
    async def subscribe(self, user_id: str) -> AsyncIterator[Subscription]:
        subscription = Subscription(user_id, self.subscriber_queue_size)
        self._subscribers.setdefault(user_id, set()).add(subscription)
        LOGGER.debug("Subscriber attached for user %s", user_id)
        try:
            yield subscription
        finally:
            subscription.close()
            subscribers = self._subscribers.get(user_id)
            if subscribers is not None:
                subscribers.discard(subscription)
                if not subscribers:
                    del self._subscribers[user_id]
            LOGGER.debug("Subscriber detached for user %s", user_id)

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscribers.get(user_id, ()))

    def close(self, user_id: Optional[str] = None) -> None:
        """End the live subscriptions of ``user_id``, or of every tenant."""

        tenants = list(self._subscribers) if user_id is None else [user_id]
        for tenant in tenants:
            for subscription in list(self._subscribers.get(tenant, ())):
                subscription.close()

    def history(self, user_id: str, limit: int = 50, item_id: Optional[str] = None) -> List[ConveyorEvent]:
        """Return up to ``limit`` of the latest events, oldest first."""

        if limit <= 0:
            return []
        items = self._replay.get(user_id, {})
        if item_id is not None:
            events = list(items.get(item_id, ()))
        else:
            events = sorted(
                (event for buffer in items.values() for event in buffer),
                key=lambda event: event.seq,
            )
        return events[-limit:]


__all__ = ["ConveyorEvent", "EventData", "EventStream", "EventType", "Subscription"]
