"""Content, scheduled job and publish status API routes"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from crosspost.core.security import require_auth, require_cron_secret
from crosspost.db.helpers import add_content
from crosspost.db.session import get_db
from crosspost.schemas.jobs import ContentCreate, ContentResponse, JobCreate, JobResubmit
from crosspost.services import schedule_service
from crosspost.services.errors import (
    AttemptNotFoundError, ContentNotFoundError, CredentialExpiredError, InsightsUnavailableError,
    InvalidJobTransitionError, InvalidPlatformError, JobNotFoundError, PublishError
)
from crosspost.services.insights_service import get_attempt_insights
from crosspost.services.status_service import get_job_status, get_recent_attempt_statuses, job_to_dict
from crosspost.tasks.scheduler import process_scheduled_jobs

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])

# Separate routers for /api/contents, /api/attempts and /api/internal
contents_router = APIRouter(prefix="/api/contents", tags=["contents"])
attempts_router = APIRouter(prefix="/api/attempts", tags=["attempts"])
internal_router = APIRouter(prefix="/api/internal", tags=["internal"])


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, (JobNotFoundError, ContentNotFoundError, AttemptNotFoundError)):
        return HTTPException(404, str(e))
    if isinstance(e, (InvalidJobTransitionError, InsightsUnavailableError)):
        return HTTPException(409, str(e))
    if isinstance(e, CredentialExpiredError):
        return HTTPException(409, e.detail)
    if isinstance(e, PublishError):
        return HTTPException(502, e.detail)
    return HTTPException(400, str(e))


@contents_router.post("", response_model=ContentResponse)
def create_content(payload: ContentCreate, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Register uploaded media so it can be scheduled"""
    content = add_content(user_id=user_id, db=db, **payload.model_dump())
    return ContentResponse(id=content.id, object_key=content.object_key, filename=content.filename, title=content.title)


@router.post("")
async def create_job(payload: JobCreate, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Schedule content for publication on one or more platforms"""
    try:
        job = await schedule_service.create_job(
            user_id, payload.content_id, payload.platforms, payload.scheduled_for, payload.notes, db=db
        )
    except (ContentNotFoundError, InvalidPlatformError) as e:
        raise _http_error(e)
    return job_to_dict(job)


@router.get("")
def list_jobs(status: Optional[str] = None, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """List the caller's jobs, optionally filtered by status"""
    try:
        jobs = schedule_service.list_jobs(user_id, status=status, db=db)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {"jobs": [job_to_dict(job) for job in jobs]}


@router.get("/{job_id}")
def get_job(job_id: int, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """A job with its per-platform publish attempts"""
    try:
        return get_job_status(user_id, job_id, db=db)
    except JobNotFoundError as e:
        raise _http_error(e)


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: int, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Cancel a job that has not started yet"""
    try:
        job = await schedule_service.cancel_job(user_id, job_id, db=db)
    except (JobNotFoundError, InvalidJobTransitionError) as e:
        raise _http_error(e)
    return job_to_dict(job)


@router.post("/{job_id}/resubmit")
async def resubmit_job(job_id: int, payload: Optional[JobResubmit] = None,
                       user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Create a new job from a failed one"""
    payload = payload or JobResubmit()
    try:
        job = await schedule_service.resubmit_job(
            user_id, job_id, scheduled_for=payload.scheduled_for, platforms=payload.platforms, db=db
        )
    except (JobNotFoundError, InvalidJobTransitionError, InvalidPlatformError) as e:
        raise _http_error(e)
    return job_to_dict(job)


@attempts_router.get("/recent")
def recent_attempts(limit: int = Query(20, ge=1, le=100), user_id: int = Depends(require_auth),
                    db: Session = Depends(get_db)):
    """Most recent publish attempts across the caller's jobs"""
    return {"attempts": get_recent_attempt_statuses(user_id, limit=limit, db=db)}


@attempts_router.get("/{attempt_id}/insights")
async def attempt_insights(attempt_id: int, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Current engagement counters for the post a successful attempt created"""
    try:
        return await get_attempt_insights(user_id, attempt_id, db=db)
    except (AttemptNotFoundError, InsightsUnavailableError, CredentialExpiredError, PublishError) as e:
        raise _http_error(e)


@internal_router.post("/process-scheduled", dependencies=[Depends(require_cron_secret)])
async def trigger_scheduled_processing(db: Session = Depends(get_db)):
    """Run one scheduler pass (for an external cron)"""
    return await process_scheduled_jobs(db=db)
