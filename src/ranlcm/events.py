"""
Watch events - in-memory pub/sub for object changes.

The object store publishes an event for every mutation. The controller
subscribes to turn events into reconciliation requests, and the HTTP API
streams them to clients as Server-Sent Events, similar to the Kubernetes
watch API.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from ranlcm.objects import ObjectKey, Unstructured

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of watch events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class WatchEvent:
    """Event emitted when a stored object changes."""

    event_type: EventType
    object: Unstructured
    timestamp: str

    @property
    def kind(self) -> str:
        return self.object.kind

    @property
    def key(self) -> ObjectKey:
        return self.object.key

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.event_type.value,
            "object": self.object.object,
            "timestamp": self.timestamp,
        }

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        json_data = json.dumps(self.to_dict())
        return f"event: {self.event_type.value}\ndata: {json_data}\n\n"

    @classmethod
    def for_object(cls, event_type: EventType, obj: Unstructured) -> "WatchEvent":
        """
        Create an event carrying a snapshot of ``obj``.

        Args:
            event_type: The type of event.
            obj: The object after the change (before it, for deletes).

        Returns:
            A new WatchEvent instance.
        """
        return cls(
            event_type=event_type,
            object=obj.deepcopy(),
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[["WatchEvent"], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator["WatchEvent"]:
        return self

    async def __anext__(self) -> "WatchEvent":
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus for watch events.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking. Full queues cause events to be dropped; the controller's
    periodic resync recovers anything a dropped event would have triggered.
    """

    def __init__(self, queue_size: int = 1024):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: WatchEvent) -> None:
        """
        Publish an event to all subscribers (non-blocking).

        Events are dropped for subscribers whose queues are full.

        Args:
            event: The event to publish.
        """
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped {event.event_type.value} {event.kind} {event.key} "
                    f"for subscriber {subscriber_id}: queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[WatchEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.
                Only events for which it returns ``True`` are yielded.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.info(f"New watch subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and clean up its queue.

        Sends a ``None`` sentinel so that the subscription's async
        iterator terminates gracefully.

        Args:
            subscriber_id: The ID returned by :meth:`subscribe`.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                # Drain one slot so the sentinel always gets through
                queue.get_nowait()
                queue.put_nowait(None)
            logger.info(f"Unsubscribed: {subscriber_id}")
