"""In-process publish/subscribe fan-out for live video events."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from typing import Any, Dict, Iterable, Optional, Set

logger = logging.getLogger(__name__)

UPLOAD_COMPLETE = "upload-complete"
ANALYSIS_STARTED = "analysis-started"
ANALYSIS_ALREADY_RUNNING = "analysis-already-running"
ANALYSIS_ERROR = "analysis-error"
PROCESSING_UPDATE = "processing-update"
PROCESSING_COMPLETE = "processing-complete"


def room_for(video_id: str) -> str:
    return f"video-{video_id}"


class Subscriber:
    """One live connection; events are buffered in a bounded queue."""

    def __init__(self, subscriber_id: Optional[str] = None, maxsize: int = 100, tenant_id: Optional[str] = None):
        self.id = subscriber_id or str(uuid.uuid4())
        self.tenant_id = tenant_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.rooms: Set[str] = set()

    def deliver(self, event: Dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Dropping %s event for slow subscriber %s", event.get("event"), self.id)
            return False
        return True

    async def next_event(self) -> Dict[str, Any]:
        return await self.queue.get()

    def drain(self) -> list[Dict[str, Any]]:
        """Pop every buffered event without waiting."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events


class EventBroadcaster:
    """
    Delivers events to subscribers joined to a video's room, or to every
    connected subscriber. Delivery is fire-and-forget: no persistence and
    no replay for subscribers that join later.
    """

    def __init__(self, queue_size: int = 100):
        self._queue_size = queue_size
        self._subscribers: Dict[str, Subscriber] = {}
        self._rooms: Dict[str, Set[str]] = defaultdict(set)

    def connect(self, subscriber: Optional[Subscriber] = None) -> Subscriber:
        subscriber = subscriber or Subscriber(maxsize=self._queue_size)
        self._subscribers[subscriber.id] = subscriber
        return subscriber

    def disconnect(self, subscriber: Subscriber) -> None:
        for room in list(subscriber.rooms):
            self._leave_room(room, subscriber)
        self._subscribers.pop(subscriber.id, None)

    def subscribe(self, video_id: str, subscriber: Subscriber) -> None:
        if subscriber.id not in self._subscribers:
            self.connect(subscriber)
        room = room_for(video_id)
        self._rooms[room].add(subscriber.id)
        subscriber.rooms.add(room)

    def unsubscribe(self, video_id: str, subscriber: Subscriber) -> None:
        self._leave_room(room_for(video_id), subscriber)

    def _leave_room(self, room: str, subscriber: Subscriber) -> None:
        subscriber.rooms.discard(room)
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(subscriber.id)
        if not members:
            self._rooms.pop(room, None)

    def room_size(self, video_id: str) -> int:
        return len(self._rooms.get(room_for(video_id), ()))

    @property
    def connected_count(self) -> int:
        return len(self._subscribers)

    def _fan_out(self, subscriber_ids: Iterable[str], event: Dict[str, Any]) -> int:
        delivered = 0
        for subscriber_id in list(subscriber_ids):
            subscriber = self._subscribers.get(subscriber_id)
            if subscriber is not None and subscriber.deliver(event):
                delivered += 1
        return delivered

    def publish(
        self,
        video_id: str,
        event_kind: str,
        payload: Dict[str, Any],
        exclude: Optional[Subscriber] = None,
    ) -> int:
        """Send to everyone in the video's room. Returns the delivery count."""
        members = set(self._rooms.get(room_for(video_id), ()))
        if exclude is not None:
            members.discard(exclude.id)
        return self._fan_out(members, {"event": event_kind, "data": payload})

    def publish_global(self, event_kind: str, payload: Dict[str, Any], tenant_id: Optional[str] = None) -> int:
        """
        Send to every connected subscriber. With `tenant_id`, subscribers bound
        to another tenant are skipped; unbound in-process subscribers still receive it.
        """
        recipients = [
            subscriber.id
            for subscriber in self._subscribers.values()
            if tenant_id is None or subscriber.tenant_id in (None, tenant_id)
        ]
        return self._fan_out(recipients, {"event": event_kind, "data": payload})

    def send(self, subscriber: Subscriber, event_kind: str, payload: Dict[str, Any]) -> bool:
        """Deliver directly to one subscriber regardless of rooms."""
        return subscriber.deliver({"event": event_kind, "data": payload})
