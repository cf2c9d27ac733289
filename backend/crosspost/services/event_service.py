"""In-process event bus with optional Redis pub/sub mirroring

Services emit typed events; WebSocket handlers (or any other consumer)
subscribe per user with ``async with event_bus.subscribe(user_id) as sub``.
Each subscription owns a bounded queue that is unregistered when the block
exits.
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional, Set

from crosspost.core.config import settings
from crosspost.db.redis import get_async_redis_client

logger = logging.getLogger(__name__)

CREDENTIAL_UPDATED = "credential_updated"
CONNECTION_CHANGED = "connection_changed"
JOB_STATUS_CHANGED = "job_status_changed"
PUBLISH_PROGRESS = "publish_progress"

EVENT_TYPES = (CREDENTIAL_UPDATED, CONNECTION_CHANGED, JOB_STATUS_CHANGED, PUBLISH_PROGRESS)

# Redis channel suffix per event type: user:{id}:{suffix}
_CHANNELS = {
    CREDENTIAL_UPDATED: "connections",
    CONNECTION_CHANGED: "connections",
    JOB_STATUS_CHANGED: "jobs",
    PUBLISH_PROGRESS: "publish_progress",
}


@dataclass
class Event:
    type: str
    user_id: int
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class Subscription:
    """One consumer's view of a user's events.

    When the queue is full the oldest event is dropped so that publishing
    never waits on a slow consumer.
    """

    def __init__(self, user_id: int, maxsize: int):
        self.user_id = user_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def deliver(self, event: Event) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Event:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)


class EventBus:
    def __init__(self, queue_size: int = 100, mirror_to_redis: bool = False):
        self.queue_size = queue_size
        self.mirror_to_redis = mirror_to_redis
        self._subscriptions: Dict[int, Set[Subscription]] = {}

    @asynccontextmanager
    async def subscribe(self, user_id: int) -> AsyncIterator[Subscription]:
        subscription = Subscription(user_id, self.queue_size)
        self._subscriptions.setdefault(user_id, set()).add(subscription)
        try:
            yield subscription
        finally:
            subscribers = self._subscriptions.get(user_id)
            if subscribers is not None:
                subscribers.discard(subscription)
                if not subscribers:
                    del self._subscriptions[user_id]

    def subscriber_count(self, user_id: int) -> int:
        return len(self._subscriptions.get(user_id, ()))

    async def publish(self, event: Event) -> int:
        """Deliver an event to the user's local subscribers; returns how many received it"""
        if event.type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event.type}")

        subscribers = list(self._subscriptions.get(event.user_id, ()))
        for subscription in subscribers:
            subscription.deliver(event)

        if self.mirror_to_redis:
            await self._mirror(event)

        logger.debug(f"Event {event.type} for user {event.user_id} delivered to {len(subscribers)} subscriber(s)")
        return len(subscribers)

    async def emit(self, user_id: int, event_type: str, data: Dict[str, Any]) -> Event:
        event = Event(type=event_type, user_id=user_id, data=data)
        await self.publish(event)
        return event

    async def _mirror(self, event: Event) -> None:
        channel = f"user:{event.user_id}:{_CHANNELS[event.type]}"
        try:
            client = get_async_redis_client()
            if client is not None:
                await client.publish(channel, json.dumps(event.to_dict()))
        except Exception as e:
            logger.warning(f"Failed to mirror event {event.type} to {channel}: {e}")


event_bus = EventBus(queue_size=settings.EVENT_QUEUE_SIZE, mirror_to_redis=settings.EVENTS_REDIS_MIRROR)


# Convenience functions for specific event types

async def publish_job_status_changed(user_id: int, job_id: int, status: str, error: Optional[str] = None) -> None:
    data = {"job_id": job_id, "status": status}
    if error:
        data["error"] = error
    await event_bus.emit(user_id, JOB_STATUS_CHANGED, data)


async def publish_progress(user_id: int, job_id: int, platform: str, percent: int) -> None:
    await event_bus.emit(user_id, PUBLISH_PROGRESS, {"job_id": job_id, "platform": platform, "progress": percent})


async def publish_connection_changed(user_id: int, platform: str, connected: bool,
                                     account_name: Optional[str] = None) -> None:
    await event_bus.emit(user_id, CONNECTION_CHANGED, {
        "platform": platform, "connected": connected, "account_name": account_name
    })


async def publish_credential_updated(user_id: int, platform: str, expires_at: Optional[datetime]) -> None:
    await event_bus.emit(user_id, CREDENTIAL_UPDATED, {
        "platform": platform, "expires_at": expires_at.isoformat() if expires_at else None
    })
