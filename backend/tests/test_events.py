"""EventBus tests"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from crosspost.services.event_service import (
    CONNECTION_CHANGED, JOB_STATUS_CHANGED, PUBLISH_PROGRESS, Event, EventBus
)


@pytest.mark.critical
class TestEventBus:
    """Per-user subscriptions with bounded queues"""

    @pytest.mark.asyncio
    async def test_subscriber_receives_own_events_only(self):
        bus = EventBus()
        async with bus.subscribe(1) as mine, bus.subscribe(2) as theirs:
            delivered = await bus.publish(Event(JOB_STATUS_CHANGED, 1, {"job_id": 5, "status": "processing"}))

            assert delivered == 1
            event = await mine.get(timeout=1)
            assert event.data == {"job_id": 5, "status": "processing"}
            assert theirs.queue.empty()

    @pytest.mark.asyncio
    async def test_every_subscription_of_a_user_receives_event(self):
        bus = EventBus()
        async with bus.subscribe(1) as first, bus.subscribe(1) as second:
            assert await bus.publish(Event(CONNECTION_CHANGED, 1, {"platform": "page-platform-b"})) == 2
            assert (await first.get(timeout=1)).type == CONNECTION_CHANGED
            assert (await second.get(timeout=1)).type == CONNECTION_CHANGED

    @pytest.mark.asyncio
    async def test_subscription_is_removed_on_exit(self):
        bus = EventBus()
        async with bus.subscribe(1):
            assert bus.subscriber_count(1) == 1
        assert bus.subscriber_count(1) == 0
        assert await bus.publish(Event(JOB_STATUS_CHANGED, 1, {})) == 0

    @pytest.mark.asyncio
    async def test_subscription_is_removed_when_consumer_fails(self):
        bus = EventBus()
        with pytest.raises(RuntimeError):
            async with bus.subscribe(1):
                raise RuntimeError("socket closed")
        assert bus.subscriber_count(1) == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        bus = EventBus(queue_size=3)
        async with bus.subscribe(1) as subscription:
            for percent in range(5):
                await bus.emit(1, PUBLISH_PROGRESS, {"progress": percent})

            received = [subscription.queue.get_nowait().data["progress"] for _ in range(3)]
            assert received == [2, 3, 4]
            assert subscription.dropped == 2

    @pytest.mark.asyncio
    async def test_get_times_out_without_events(self):
        bus = EventBus()
        async with bus.subscribe(1) as subscription:
            with pytest.raises(asyncio.TimeoutError):
                await subscription.get(timeout=0.01)

    @pytest.mark.asyncio
    async def test_unknown_event_type_is_rejected(self):
        bus = EventBus()
        with pytest.raises(ValueError):
            await bus.publish(Event("video_uploaded", 1, {}))


@pytest.mark.medium
class TestRedisMirror:

    @pytest.mark.asyncio
    async def test_events_are_mirrored_to_user_channel(self):
        redis_client = MagicMock()
        redis_client.publish = AsyncMock()
        bus = EventBus(mirror_to_redis=True)

        with patch("crosspost.services.event_service.get_async_redis_client", return_value=redis_client):
            await bus.emit(7, JOB_STATUS_CHANGED, {"job_id": 1, "status": "completed"})

        channel, message = redis_client.publish.call_args.args
        assert channel == "user:7:jobs"
        assert json.loads(message)["data"] == {"job_id": 1, "status": "completed"}

    @pytest.mark.asyncio
    async def test_mirror_failure_does_not_block_local_delivery(self):
        redis_client = MagicMock()
        redis_client.publish = AsyncMock(side_effect=ConnectionError("redis down"))
        bus = EventBus(mirror_to_redis=True)

        with patch("crosspost.services.event_service.get_async_redis_client", return_value=redis_client):
            async with bus.subscribe(7) as subscription:
                delivered = await bus.publish(Event(PUBLISH_PROGRESS, 7, {"progress": 50}))
                assert delivered == 1
                assert (await subscription.get(timeout=1)).data == {"progress": 50}
