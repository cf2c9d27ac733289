"""Read-only status projections for connections, jobs and publish attempts"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from crosspost.db.helpers import (
    get_job, get_job_attempts, get_latest_attempts_by_platform, get_recent_attempts, get_user_connections
)
from crosspost.models.platform_connection import PlatformConnection
from crosspost.models.publish_attempt import PublishAttempt
from crosspost.models.scheduled_job import ScheduledJob
from crosspost.services.errors import JobNotFoundError
from crosspost.services.platforms import ALL_PLATFORMS, parse_platform
from crosspost.services.platforms.registry import OAUTH_EXCHANGERS
from crosspost.utils.timeutil import ensure_utc

CONNECTION_CONNECTED = "connected"
CONNECTION_EXPIRING = "expiring"
CONNECTION_RECONNECT_REQUIRED = "reconnect_required"
CONNECTION_DISCONNECTED = "disconnected"

FAILURE_RECONNECT_REQUIRED = "reconnect_required"
FAILURE_TRANSIENT = "transient"
FAILURE_REJECTED = "rejected"


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def _rejected_since_last_sync(connection: PlatformConnection, attempt: Optional[PublishAttempt]) -> bool:
    if attempt is None or not attempt.reconnect_required:
        return False
    last_sync_at = ensure_utc(connection.last_sync_at)
    return last_sync_at is None or ensure_utc(attempt.created_at) > last_sync_at


def connection_status(connection: Optional[PlatformConnection], now: Optional[datetime] = None,
                      latest_attempt: Optional[PublishAttempt] = None) -> str:
    """Classify a connection row for display.

    A video-platform token past its expiry is still ``connected`` as long as
    a refresh token is stored, since it renews itself on next use. If the
    newest publish attempt on the platform required a reconnect and nothing
    has refreshed the connection since, it needs a reconnect regardless.
    """
    if connection is None or not connection.connected or not connection.access_token:
        return CONNECTION_DISCONNECTED
    if _rejected_since_last_sync(connection, latest_attempt):
        return CONNECTION_RECONNECT_REQUIRED

    expires_at = ensure_utc(connection.expires_at)
    if expires_at is None:
        return CONNECTION_CONNECTED

    now = now or datetime.now(timezone.utc)
    if connection.refresh_token:
        return CONNECTION_CONNECTED
    if expires_at <= now:
        return CONNECTION_RECONNECT_REQUIRED

    window = OAUTH_EXCHANGERS[parse_platform(connection.platform)].renewal_window
    if expires_at - now <= window:
        return CONNECTION_EXPIRING
    return CONNECTION_CONNECTED


def connection_to_dict(platform: str, connection: Optional[PlatformConnection],
                       now: Optional[datetime] = None,
                       latest_attempt: Optional[PublishAttempt] = None) -> Dict[str, Any]:
    return {
        "platform": platform,
        "status": connection_status(connection, now, latest_attempt),
        "connected": bool(connection and connection.connected),
        "account_id": connection.account_id if connection else None,
        "account_name": connection.account_name if connection else None,
        "account_handle": connection.account_handle if connection else None,
        "expires_at": _isoformat(connection.expires_at) if connection else None,
        "last_sync_at": _isoformat(connection.last_sync_at) if connection else None,
    }


def get_connection_statuses(user_id: int, db: Session = None, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """One entry per supported platform, connected or not"""
    connections = get_user_connections(user_id, db=db)
    latest_attempts = get_latest_attempts_by_platform(user_id, db=db)
    return [
        connection_to_dict(platform.value, connections.get(platform.value), now,
                           latest_attempts.get(platform.value))
        for platform in ALL_PLATFORMS
    ]


def failure_kind(attempt: PublishAttempt) -> Optional[str]:
    if attempt.success:
        return None
    if attempt.reconnect_required:
        return FAILURE_RECONNECT_REQUIRED
    if attempt.retryable:
        return FAILURE_TRANSIENT
    return FAILURE_REJECTED


def attempt_to_dict(attempt: PublishAttempt) -> Dict[str, Any]:
    return {
        "id": attempt.id,
        "job_id": attempt.job_id,
        "platform": attempt.platform,
        "success": attempt.success,
        "external_id": attempt.external_id,
        "url": attempt.url,
        "error_type": attempt.error_type,
        "error_detail": attempt.error_detail,
        "retryable": attempt.retryable,
        "failure_kind": failure_kind(attempt),
        "created_at": _isoformat(attempt.created_at),
    }


def job_to_dict(job: ScheduledJob, attempts: Optional[List[PublishAttempt]] = None) -> Dict[str, Any]:
    result = {
        "id": job.id,
        "content_id": job.content_id,
        "platforms": list(job.platforms or []),
        "scheduled_for": _isoformat(job.scheduled_for),
        "status": job.status,
        "notes": job.notes,
        "error_message": job.error_message,
        "executed_at": _isoformat(job.executed_at),
        "resubmitted_from_id": job.resubmitted_from_id,
        "created_at": _isoformat(job.created_at),
    }
    if attempts is not None:
        result["attempts"] = [attempt_to_dict(attempt) for attempt in attempts]
    return result


def get_job_status(user_id: int, job_id: int, db: Session = None) -> Dict[str, Any]:
    """A job with every publish attempt recorded for it"""
    job = get_job(job_id, user_id=user_id, db=db)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found")
    return job_to_dict(job, get_job_attempts(job.id, db=db))


def get_recent_attempt_statuses(user_id: int, limit: int = 20, db: Session = None) -> List[Dict[str, Any]]:
    return [attempt_to_dict(attempt) for attempt in get_recent_attempts(user_id, limit=limit, db=db)]
