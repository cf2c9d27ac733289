"""Scheduling service - create, cancel and resubmit publish jobs"""
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from crosspost.db.helpers import (
    add_scheduled_job, cancel_job as cancel_job_row, get_content, get_job as get_job_row,
    get_job_attempts, get_user_jobs
)
from crosspost.models.scheduled_job import ScheduledJob, JOB_FAILED, JOB_STATUSES
from crosspost.services.errors import (
    ContentNotFoundError, InvalidJobTransitionError, InvalidPlatformError, JobNotFoundError
)
from crosspost.services.event_service import publish_job_status_changed
from crosspost.services.platforms import parse_platform
from crosspost.utils.timeutil import ensure_utc

logger = logging.getLogger(__name__)


def normalize_platforms(platforms: Iterable[str]) -> List[str]:
    """Validate platform ids, dropping duplicates but keeping order

    Raises:
        InvalidPlatformError: If the list is empty or names an unknown platform
    """
    normalized = []
    for platform in platforms or []:
        value = parse_platform(platform).value
        if value not in normalized:
            normalized.append(value)
    if not normalized:
        raise InvalidPlatformError("At least one platform is required")
    return normalized


async def create_job(user_id: int, content_id: int, platforms: Iterable[str],
                     scheduled_for: datetime, notes: Optional[str] = None,
                     db: Session = None) -> ScheduledJob:
    """Schedule content for publication; naive times are taken as UTC"""
    if get_content(content_id, user_id=user_id, db=db) is None:
        raise ContentNotFoundError(f"Content {content_id} not found")

    job = add_scheduled_job(
        user_id=user_id,
        content_id=content_id,
        platforms=normalize_platforms(platforms),
        scheduled_for=ensure_utc(scheduled_for),
        notes=notes,
        db=db,
    )
    logger.info(f"Scheduled job {job.id} for user {user_id}: content {content_id} -> {job.platforms} at {job.scheduled_for}")
    await publish_job_status_changed(user_id, job.id, job.status)
    return job


def get_job(user_id: int, job_id: int, db: Session = None) -> ScheduledJob:
    job = get_job_row(job_id, user_id=user_id, db=db)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found")
    return job


def list_jobs(user_id: int, status: Optional[str] = None, db: Session = None) -> List[ScheduledJob]:
    if status is not None and status not in JOB_STATUSES:
        raise ValueError(f"Unknown job status: {status}")
    return get_user_jobs(user_id, status=status, db=db)


async def cancel_job(user_id: int, job_id: int, db: Session = None) -> ScheduledJob:
    """Cancel a job that has not started; any other state is rejected"""
    job = get_job(user_id, job_id, db=db)
    if not cancel_job_row(job_id, user_id, db=db):
        if db is not None:
            db.refresh(job)
        raise InvalidJobTransitionError(f"Job {job_id} is {job.status} and can no longer be cancelled")

    job = get_job(user_id, job_id, db=db)
    logger.info(f"Cancelled job {job_id} for user {user_id}")
    await publish_job_status_changed(user_id, job_id, job.status)
    return job


async def resubmit_job(user_id: int, job_id: int, scheduled_for: Optional[datetime] = None,
                       platforms: Optional[Iterable[str]] = None, db: Session = None) -> ScheduledJob:
    """Create a new job from a failed one; the failed job is never modified

    Defaults to the platforms that failed, scheduled for now.
    """
    original = get_job(user_id, job_id, db=db)
    if original.status != JOB_FAILED:
        raise InvalidJobTransitionError(f"Job {job_id} is {original.status}; only failed jobs can be resubmitted")

    if platforms is None:
        failed = [attempt.platform for attempt in get_job_attempts(job_id, db=db) if not attempt.success]
        platforms = failed or original.platforms

    job = add_scheduled_job(
        user_id=user_id,
        content_id=original.content_id,
        platforms=normalize_platforms(platforms),
        scheduled_for=ensure_utc(scheduled_for) if scheduled_for else datetime.now(timezone.utc),
        notes=original.notes,
        resubmitted_from_id=original.id,
        db=db,
    )
    logger.info(f"Resubmitted failed job {job_id} as job {job.id} for {job.platforms}")
    await publish_job_status_changed(user_id, job.id, job.status)
    return job
