"""Scheduled job runner tests"""
import asyncio
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from crosspost.core.config import settings
from crosspost.db.helpers import (
    add_content, add_scheduled_job, cancel_job, claim_job, finish_job, get_job, get_job_attempts
)
from crosspost.models import Base, User
from crosspost.models.scheduled_job import (
    JOB_CANCELLED, JOB_COMPLETED, JOB_FAILED, JOB_PROCESSING, JOB_SCHEDULED
)
from crosspost.services.errors import CredentialExpiredError, PublishError
from crosspost.services.event_service import JOB_STATUS_CHANGED, PUBLISH_PROGRESS, event_bus
from crosspost.tasks.scheduler import build_publish_metadata, process_scheduled_jobs

from conftest import FakePublisher, connect_platform

VIDEO = "video-platform-a"
PAGE = "page-platform-b"
PHOTO = "photo-platform-c"


def schedule(db_session, user, content, platforms, minutes_ago: int = 1, **kwargs):
    return add_scheduled_job(
        user_id=user.id,
        content_id=content.id,
        platforms=platforms,
        scheduled_for=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
        db=db_session,
        **kwargs,
    )


def factory_for(*publishers):
    by_platform = {publisher.platform_id: publisher for publisher in publishers}
    return lambda platform: by_platform[platform]


@pytest.mark.critical
class TestJobTransitions:
    """Conditional status updates"""

    def test_claim_only_succeeds_once(self, db_session, test_user, test_content):
        job = schedule(db_session, test_user, test_content, [VIDEO])

        assert claim_job(job.id, db=db_session) is True
        assert claim_job(job.id, db=db_session) is False
        assert get_job(job.id, db=db_session).status == JOB_PROCESSING

    def test_finish_requires_processing(self, db_session, test_user, test_content):
        job = schedule(db_session, test_user, test_content, [VIDEO])

        assert finish_job(job.id, True, db=db_session) is False
        claim_job(job.id, db=db_session)
        assert finish_job(job.id, True, db=db_session) is True
        assert finish_job(job.id, False, "late failure", db=db_session) is False

        job = get_job(job.id, db=db_session)
        db_session.refresh(job)
        assert job.status == JOB_COMPLETED
        assert job.error_message is None
        assert job.executed_at is not None

    def test_concurrent_claims_have_one_winner(self, tmp_path):
        """Many runners racing on the same job: exactly one claim succeeds"""
        engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(bind=engine)
        with Session(bind=engine) as setup:
            user = User(email="race@example.com")
            setup.add(user)
            setup.commit()
            content = add_content(user.id, "race.mp4", "race.mp4", db=setup)
            job_id = schedule(setup, user, content, [VIDEO]).id

        runners = 8
        barrier = threading.Barrier(runners)
        results = []
        lock = threading.Lock()

        def run():
            with Session(bind=engine) as session:
                barrier.wait()
                won = claim_job(job_id, db=session)
                with lock:
                    results.append(won)

        threads = [threading.Thread(target=run) for _ in range(runners)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(results) == [False] * (runners - 1) + [True]
        engine.dispose()


@pytest.mark.critical
class TestProcessScheduledJobs:
    """One scheduler pass"""

    @pytest.mark.asyncio
    async def test_all_platforms_succeed(self, db_session, test_user, test_content, blob_store):
        connect_platform(db_session, test_user, VIDEO, refresh_token="refresh")
        connect_platform(db_session, test_user, PAGE)
        job = schedule(db_session, test_user, test_content, [VIDEO, PAGE])
        video, page = FakePublisher(VIDEO), FakePublisher(PAGE)

        summary = await process_scheduled_jobs(db=db_session, blob_store=blob_store,
                                               publisher_factory=factory_for(video, page))

        assert summary == {"processed": 1, "results": [{"id": job.id, "status": JOB_COMPLETED}]}
        attempts = get_job_attempts(job.id, db=db_session)
        assert [(a.platform, a.success) for a in attempts] == [(VIDEO, True), (PAGE, True)]
        assert attempts[0].url == f"https://example.com/{VIDEO}"
        assert video.calls[0][0].access_token == "access-token"

    @pytest.mark.asyncio
    async def test_partial_failure_fails_job_but_records_success(self, db_session, test_user, test_content, blob_store):
        connect_platform(db_session, test_user, VIDEO, refresh_token="refresh")
        connect_platform(db_session, test_user, PAGE)
        job = schedule(db_session, test_user, test_content, [VIDEO, PAGE])
        page_error = PublishError(PAGE, "video upload failed: HTTP 500", retryable=True)

        summary = await process_scheduled_jobs(
            db=db_session, blob_store=blob_store,
            publisher_factory=factory_for(FakePublisher(VIDEO), FakePublisher(PAGE, error=page_error)),
        )

        result = summary["results"][0]
        assert result["status"] == JOB_FAILED
        assert result["error"].startswith(f"{PAGE}:")
        attempts = {a.platform: a for a in get_job_attempts(job.id, db=db_session)}
        assert attempts[VIDEO].success is True
        assert attempts[PAGE].success is False
        assert attempts[PAGE].retryable is True
        assert attempts[PAGE].error_type == "PublishError"

        job = get_job(job.id, db=db_session)
        db_session.refresh(job)
        assert job.status == JOB_FAILED
        assert job.error_message == result["error"]

    @pytest.mark.asyncio
    async def test_missing_connection_requires_reconnect(self, db_session, test_user, test_content, blob_store):
        connect_platform(db_session, test_user, VIDEO, refresh_token="refresh")
        job = schedule(db_session, test_user, test_content, [VIDEO, PHOTO])
        video, photo = FakePublisher(VIDEO), FakePublisher(PHOTO)

        await process_scheduled_jobs(db=db_session, blob_store=blob_store,
                                     publisher_factory=factory_for(video, photo))

        attempts = {a.platform: a for a in get_job_attempts(job.id, db=db_session)}
        assert attempts[PHOTO].reconnect_required is True
        assert attempts[PHOTO].error_type == "CredentialExpiredError"
        assert attempts[VIDEO].success is True
        assert photo.calls == []

    @pytest.mark.asyncio
    async def test_expired_token_reported_by_platform(self, db_session, test_user, test_content, blob_store):
        connect_platform(db_session, test_user, PAGE)
        job = schedule(db_session, test_user, test_content, [PAGE])
        error = CredentialExpiredError(PAGE, "Access token is invalid or expired.")

        await process_scheduled_jobs(db=db_session, blob_store=blob_store,
                                     publisher_factory=factory_for(FakePublisher(PAGE, error=error)))

        attempt = get_job_attempts(job.id, db=db_session)[0]
        assert attempt.reconnect_required is True
        assert attempt.retryable is False

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated_to_platform(self, db_session, test_user, test_content, blob_store):
        connect_platform(db_session, test_user, VIDEO, refresh_token="refresh")
        connect_platform(db_session, test_user, PAGE)
        job = schedule(db_session, test_user, test_content, [VIDEO, PAGE])

        summary = await process_scheduled_jobs(
            db=db_session, blob_store=blob_store,
            publisher_factory=factory_for(FakePublisher(VIDEO, error=RuntimeError("boom")), FakePublisher(PAGE)),
        )

        assert summary["results"][0]["status"] == JOB_FAILED
        attempts = {a.platform: a for a in get_job_attempts(job.id, db=db_session)}
        assert attempts[VIDEO].error_type == "RuntimeError"
        assert attempts[VIDEO].retryable is False
        assert attempts[PAGE].success is True

    @pytest.mark.asyncio
    async def test_publish_timeout_is_retryable(self, db_session, test_user, test_content, blob_store):
        connect_platform(db_session, test_user, PAGE)
        job = schedule(db_session, test_user, test_content, [PAGE])

        with patch.object(settings, "PUBLISH_TIMEOUT_SECONDS", 0.05):
            await process_scheduled_jobs(db=db_session, blob_store=blob_store,
                                         publisher_factory=factory_for(FakePublisher(PAGE, delay=1)))

        attempt = get_job_attempts(job.id, db=db_session)[0]
        assert attempt.error_type == "PublishTimeout"
        assert attempt.retryable is True

    @pytest.mark.asyncio
    async def test_missing_content_fails_job(self, db_session, test_user, test_content, blob_store):
        job = add_scheduled_job(test_user.id, 9999, [VIDEO], datetime.now(timezone.utc) - timedelta(minutes=1),
                                db=db_session)

        summary = await process_scheduled_jobs(db=db_session, blob_store=blob_store,
                                               publisher_factory=factory_for(FakePublisher(VIDEO)))

        assert summary["results"] == [{"id": job.id, "status": JOB_FAILED, "error": "Content 9999 not found"}]

    @pytest.mark.asyncio
    async def test_only_due_scheduled_jobs_run(self, db_session, test_user, test_content, blob_store):
        connect_platform(db_session, test_user, PAGE)
        future = schedule(db_session, test_user, test_content, [PAGE], minutes_ago=-60)
        cancelled = schedule(db_session, test_user, test_content, [PAGE])
        assert cancel_job(cancelled.id, test_user.id, db=db_session) is True
        publisher = FakePublisher(PAGE)

        summary = await process_scheduled_jobs(db=db_session, blob_store=blob_store,
                                               publisher_factory=factory_for(publisher))

        assert summary == {"processed": 0, "results": []}
        assert publisher.calls == []
        assert get_job(future.id, db=db_session).status == JOB_SCHEDULED
        assert get_job(cancelled.id, db=db_session).status == JOB_CANCELLED

    @pytest.mark.asyncio
    async def test_job_is_never_published_twice(self, db_session, test_user, test_content, blob_store):
        connect_platform(db_session, test_user, PAGE)
        schedule(db_session, test_user, test_content, [PAGE])
        publisher = FakePublisher(PAGE)

        first = await process_scheduled_jobs(db=db_session, blob_store=blob_store,
                                             publisher_factory=factory_for(publisher))
        second = await process_scheduled_jobs(db=db_session, blob_store=blob_store,
                                              publisher_factory=factory_for(publisher))

        assert first["processed"] == 1
        assert second["processed"] == 0
        assert len(publisher.calls) == 1

    @pytest.mark.asyncio
    async def test_lost_claim_is_skipped(self, db_session, test_user, test_content, blob_store):
        connect_platform(db_session, test_user, PAGE)
        schedule(db_session, test_user, test_content, [PAGE])
        publisher = FakePublisher(PAGE)

        with patch("crosspost.tasks.scheduler.claim_job", return_value=False):
            summary = await process_scheduled_jobs(db=db_session, blob_store=blob_store,
                                                   publisher_factory=factory_for(publisher))

        assert summary["processed"] == 0
        assert publisher.calls == []

    @pytest.mark.asyncio
    async def test_emits_status_and_progress_events(self, db_session, test_user, test_content, blob_store):
        connect_platform(db_session, test_user, PAGE)
        job = schedule(db_session, test_user, test_content, [PAGE])

        async with event_bus.subscribe(test_user.id) as subscription:
            await process_scheduled_jobs(db=db_session, blob_store=blob_store,
                                         publisher_factory=factory_for(FakePublisher(PAGE)))
            events = []
            while not subscription.queue.empty():
                events.append(subscription.queue.get_nowait())

        statuses = [e.data["status"] for e in events if e.type == JOB_STATUS_CHANGED]
        assert statuses == [JOB_PROCESSING, JOB_COMPLETED]
        progress = [e.data for e in events if e.type == PUBLISH_PROGRESS]
        assert progress == [{"job_id": job.id, "platform": PAGE, "progress": 100}]


class HandshakePublisher(FakePublisher):
    """Signals that it started, then waits for its partner to start too"""

    def __init__(self, platform: str, started: asyncio.Event, partner_started: asyncio.Event):
        super().__init__(platform)
        self.started = started
        self.partner_started = partner_started

    async def publish(self, credential, content, metadata, on_progress=None):
        self.started.set()
        await asyncio.wait_for(self.partner_started.wait(), timeout=1)
        return await super().publish(credential, content, metadata, on_progress)


class InFlightPublisher(FakePublisher):
    """Tracks how many publishes overlap"""

    def __init__(self, platform: str, tracker: dict):
        super().__init__(platform)
        self.tracker = tracker

    async def publish(self, credential, content, metadata, on_progress=None):
        self.tracker["current"] += 1
        self.tracker["peak"] = max(self.tracker["peak"], self.tracker["current"])
        try:
            await asyncio.sleep(0.01)
            return await super().publish(credential, content, metadata, on_progress)
        finally:
            self.tracker["current"] -= 1


@pytest.mark.high
class TestConcurrentJobs:
    """Due jobs within one pass run side by side"""

    @pytest.mark.asyncio
    async def test_due_jobs_run_concurrently(self, db_session, test_user, test_content, blob_store):
        connect_platform(db_session, test_user, VIDEO, refresh_token="refresh")
        connect_platform(db_session, test_user, PAGE)
        first = schedule(db_session, test_user, test_content, [VIDEO], minutes_ago=2)
        second = schedule(db_session, test_user, test_content, [PAGE], minutes_ago=1)
        video_started, page_started = asyncio.Event(), asyncio.Event()
        video = HandshakePublisher(VIDEO, video_started, page_started)
        page = HandshakePublisher(PAGE, page_started, video_started)

        summary = await process_scheduled_jobs(db=db_session, blob_store=blob_store,
                                               publisher_factory=factory_for(video, page))

        assert summary == {"processed": 2, "results": [
            {"id": first.id, "status": JOB_COMPLETED},
            {"id": second.id, "status": JOB_COMPLETED},
        ]}
        assert len(video.calls) == 1
        assert len(page.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, db_session, test_user, test_content, blob_store):
        connect_platform(db_session, test_user, PAGE)
        jobs = [schedule(db_session, test_user, test_content, [PAGE], minutes_ago=3 - i) for i in range(3)]
        tracker = {"current": 0, "peak": 0}

        with patch.object(settings, "SCHEDULER_JOB_CONCURRENCY", 1):
            summary = await process_scheduled_jobs(db=db_session, blob_store=blob_store,
                                                   publisher_factory=factory_for(InFlightPublisher(PAGE, tracker)))

        assert [r["id"] for r in summary["results"]] == [job.id for job in jobs]
        assert all(r["status"] == JOB_COMPLETED for r in summary["results"])
        assert tracker["peak"] == 1


@pytest.mark.medium
class TestPublishMetadata:

    def test_platform_options_are_scoped_per_platform(self, db_session, test_user):
        content = add_content(
            test_user.id, "key.mp4", "my_clip.mp4",
            platform_options={PAGE: {"scheduled_publish_time": 1893456000}, PHOTO: {"share_to_feed": False}},
            db=db_session,
        )

        page = build_publish_metadata(content, PAGE)
        video = build_publish_metadata(content, VIDEO)

        assert page.options == {"scheduled_publish_time": 1893456000}
        assert video.options == {}
        assert video.title == "my_clip"
        assert video.caption == "my_clip"
