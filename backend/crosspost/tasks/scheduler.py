"""Background scheduler: claims due jobs and publishes them to every requested platform"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from crosspost.core.config import settings
from crosspost.core.metrics import (
    publish_attempts_counter,
    scheduler_claim_conflicts_counter,
    scheduler_jobs_processed_counter,
    scheduler_runs_counter,
)
from crosspost.core.otel import publish_span
from crosspost.db.helpers import claim_job, finish_job, get_content, get_due_jobs, record_publish_attempt
from crosspost.db.session import SessionLocal
from crosspost.models.content import Content
from crosspost.models.scheduled_job import ScheduledJob, JOB_COMPLETED, JOB_FAILED, JOB_PROCESSING
from crosspost.services.credential_service import resolve_credential
from crosspost.services.errors import CredentialExpiredError, CrosspostError, PublishError
from crosspost.services.event_service import publish_job_status_changed, publish_progress
from crosspost.services.platforms import (
    Credential, PlatformPublisher, PublishContent, PublishMetadata, get_publisher
)
from crosspost.services.storage.r2_service import BlobStore, get_r2_service

logger = logging.getLogger(__name__)
scheduler_logger = logging.getLogger("scheduler")

PublisherFactory = Callable[[str], PlatformPublisher]


@dataclass
class PlatformOutcome:
    platform: str
    success: bool
    external_id: Optional[str] = None
    url: Optional[str] = None
    error_type: Optional[str] = None
    error_detail: Optional[str] = None
    retryable: bool = False
    reconnect_required: bool = False


def _failure(platform: str, error: Exception, retryable: bool = False, reconnect_required: bool = False) -> PlatformOutcome:
    detail = getattr(error, "detail", None) or str(error) or type(error).__name__
    return PlatformOutcome(
        platform=platform,
        success=False,
        error_type=type(error).__name__,
        error_detail=detail,
        retryable=retryable,
        reconnect_required=reconnect_required,
    )


def build_publish_metadata(content: Content, platform: str) -> PublishMetadata:
    """Per-platform metadata; platform_options[platform] is passed through untouched"""
    fallback_title = PurePosixPath(content.filename).stem if content.filename else "Untitled"
    title = content.title or fallback_title
    return PublishMetadata(
        title=title,
        description=content.description or "",
        caption=content.caption or content.description or title,
        tags=list(content.tags or []),
        privacy_status=content.privacy_status or "public",
        cover_url=content.cover_url,
        options=dict((content.platform_options or {}).get(platform) or {}),
    )


async def publish_to_platform(job_id: int, user_id: int, platform: str, credential: Credential,
                              content: Content, blob_store: BlobStore,
                              publisher_factory: PublisherFactory = get_publisher) -> PlatformOutcome:
    """Publish one job to one platform, converting every failure into an outcome"""
    with publish_span(job_id, platform) as span:
        outcome = await _publish(job_id, user_id, platform, credential, content, blob_store, publisher_factory)
        span.set_attribute("crosspost.success", outcome.success)
        if not outcome.success:
            span.set_attribute("crosspost.error_type", outcome.error_type)
            span.set_attribute("crosspost.retryable", outcome.retryable)
        return outcome


async def _publish(job_id: int, user_id: int, platform: str, credential: Credential,
                   content: Content, blob_store: BlobStore, publisher_factory: PublisherFactory) -> PlatformOutcome:
    async def on_progress(percent: int) -> None:
        await publish_progress(user_id, job_id, platform, percent)

    publisher = publisher_factory(platform)
    media = PublishContent(
        object_key=content.object_key,
        filename=content.filename,
        content_type=content.content_type or "video/mp4",
        store=blob_store,
    )
    try:
        result = await asyncio.wait_for(
            publisher.publish(credential, media, build_publish_metadata(content, platform), on_progress),
            timeout=settings.PUBLISH_TIMEOUT_SECONDS,
        )
    except CredentialExpiredError as e:
        return _failure(platform, e, reconnect_required=True)
    except PublishError as e:
        return _failure(platform, e, retryable=e.retryable)
    except asyncio.TimeoutError:
        return PlatformOutcome(
            platform=platform, success=False, error_type="PublishTimeout",
            error_detail=f"Publish did not finish within {settings.PUBLISH_TIMEOUT_SECONDS:.0f}s", retryable=True,
        )
    except FileNotFoundError as e:
        return _failure(platform, e)
    except Exception as e:
        # Recorded against this platform only
        scheduler_logger.error(
            f"Unexpected error publishing job {job_id} to {platform}: {e}",
            exc_info=True,
            extra={"job_id": job_id, "user_id": user_id, "platform": platform, "error_type": type(e).__name__}
        )
        return _failure(platform, e)

    return PlatformOutcome(platform=platform, success=True, external_id=result.external_id, url=result.url)


async def run_job(job: ScheduledJob, db: Session, blob_store: BlobStore,
                  publisher_factory: PublisherFactory = get_publisher) -> Dict[str, Any]:
    """Publish a claimed job and record its outcome

    Credentials are resolved one platform at a time; publishing then runs
    concurrently. Every platform gets exactly one attempt row and the job is
    completed only if all of them succeeded.
    """
    job_id, user_id = job.id, job.user_id
    platforms: List[str] = list(job.platforms or [])

    content = get_content(job.content_id, db=db)
    if content is None:
        error = f"Content {job.content_id} not found"
        finish_job(job_id, False, error, db=db)
        await publish_job_status_changed(user_id, job_id, JOB_FAILED, error)
        return {"id": job_id, "status": JOB_FAILED, "error": error}

    outcomes: Dict[str, PlatformOutcome] = {}
    ready = []
    for platform in platforms:
        try:
            credential = await resolve_credential(user_id, platform, db=db)
        except CredentialExpiredError as e:
            outcomes[platform] = _failure(platform, e, reconnect_required=True)
            continue
        except CrosspostError as e:
            outcomes[platform] = _failure(platform, e)
            continue
        ready.append((platform, credential))

    published = await asyncio.gather(*(
        publish_to_platform(job_id, user_id, platform, credential, content, blob_store, publisher_factory)
        for platform, credential in ready
    ))
    for outcome in published:
        outcomes[outcome.platform] = outcome

    first_error = None
    for platform in platforms:
        outcome = outcomes[platform]
        record_publish_attempt(
            job_id, platform,
            success=outcome.success,
            external_id=outcome.external_id,
            url=outcome.url,
            error_type=outcome.error_type,
            error_detail=outcome.error_detail,
            retryable=outcome.retryable,
            reconnect_required=outcome.reconnect_required,
            db=db,
        )
        publish_attempts_counter.labels(platform=platform, outcome="success" if outcome.success else "failure").inc()
        if outcome.success:
            scheduler_logger.info(f"Job {job_id} published to {platform}: {outcome.url}")
        else:
            scheduler_logger.warning(
                f"Job {job_id} failed on {platform}: {outcome.error_detail}",
                extra={
                    "job_id": job_id,
                    "user_id": user_id,
                    "platform": platform,
                    "error_type": outcome.error_type,
                    "retryable": outcome.retryable,
                    "reconnect_required": outcome.reconnect_required,
                }
            )
            if first_error is None:
                first_error = f"{platform}: {outcome.error_detail}"

    success = first_error is None
    status = JOB_COMPLETED if success else JOB_FAILED
    finish_job(job_id, success, first_error, db=db)
    scheduler_jobs_processed_counter.labels(status=status).inc()
    await publish_job_status_changed(user_id, job_id, status, first_error)

    result = {"id": job_id, "status": status}
    if first_error:
        result["error"] = first_error
    return result


async def process_scheduled_jobs(db: Session = None, blob_store: Optional[BlobStore] = None,
                                 publisher_factory: PublisherFactory = get_publisher,
                                 now: Optional[datetime] = None) -> Dict[str, Any]:
    """Run one scheduler pass over due jobs

    Returns:
        ``{"processed": n, "results": [{"id", "status", "error"?}, ...]}``
    """
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        now = now or datetime.now(timezone.utc)
        due_jobs = get_due_jobs(now, limit=settings.SCHEDULER_BATCH_SIZE, db=db)
        if not due_jobs:
            scheduler_runs_counter.labels(status="idle").inc()
            return {"processed": 0, "results": []}

        if blob_store is None:
            blob_store = get_r2_service()

        claimed = []
        for job in due_jobs:
            if not claim_job(job.id, db=db):
                scheduler_claim_conflicts_counter.inc()
                scheduler_logger.info(f"Job {job.id} already claimed by another runner, skipping")
                continue
            db.refresh(job)
            claimed.append(job)

        semaphore = asyncio.Semaphore(max(settings.SCHEDULER_JOB_CONCURRENCY, 1))

        async def run_with_limit(job: ScheduledJob) -> Dict[str, Any]:
            async with semaphore:
                return await _run_claimed_job(job, db, blob_store, publisher_factory)

        results = list(await asyncio.gather(*(run_with_limit(job) for job in claimed)))

        scheduler_runs_counter.labels(status="success").inc()
        return {"processed": len(results), "results": results}
    finally:
        if should_close:
            db.close()


async def _run_claimed_job(job: ScheduledJob, db: Session, blob_store: BlobStore,
                           publisher_factory: PublisherFactory) -> Dict[str, Any]:
    job_id, user_id = job.id, job.user_id
    scheduler_logger.info(f"Processing job {job_id} for user {user_id}: {job.platforms}")
    await publish_job_status_changed(user_id, job_id, JOB_PROCESSING)
    try:
        return await run_job(job, db, blob_store, publisher_factory)
    except Exception as e:
        # Never leave a claimed job stuck in processing
        scheduler_logger.error(f"Job {job_id} aborted: {e}", exc_info=True)
        db.rollback()
        error = f"Unexpected error: {type(e).__name__}"
        finish_job(job_id, False, error, db=db)
        scheduler_jobs_processed_counter.labels(status=JOB_FAILED).inc()
        return {"id": job_id, "status": JOB_FAILED, "error": error}


async def scheduler_task():
    """Background task that runs a scheduler pass every SCHEDULER_INTERVAL_SECONDS"""
    while True:
        try:
            await asyncio.sleep(settings.SCHEDULER_INTERVAL_SECONDS)
            summary = await process_scheduled_jobs()
            if summary["processed"]:
                scheduler_logger.info(f"Scheduler pass processed {summary['processed']} job(s)")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            scheduler_runs_counter.labels(status="error").inc()
            logger.error(f"Scheduler pass failed: {e}", exc_info=True)
