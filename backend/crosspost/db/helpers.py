"""Database helper functions for connections, content, jobs and publish attempts"""
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from typing import Optional, List, Dict, Any, Iterable
import logging
from datetime import datetime, timezone

from crosspost.models.content import Content
from crosspost.models.platform_connection import PlatformConnection
from crosspost.models.publish_attempt import PublishAttempt
from crosspost.models.scheduled_job import (
    ScheduledJob, JOB_SCHEDULED, JOB_PROCESSING, JOB_CANCELLED, JOB_COMPLETED, JOB_FAILED
)
from crosspost.db.session import SessionLocal
from crosspost.utils.encryption import encrypt

logger = logging.getLogger(__name__)


# ============================================================================
# PLATFORM CONNECTIONS
# ============================================================================

def get_connection(user_id: int, platform: str, db: Session = None) -> Optional[PlatformConnection]:
    """Get a user's connection row for one platform (connected or not)"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        return db.query(PlatformConnection).filter(
            PlatformConnection.user_id == user_id,
            PlatformConnection.platform == platform
        ).first()
    finally:
        if should_close:
            db.close()


def get_user_connections(user_id: int, db: Session = None) -> Dict[str, PlatformConnection]:
    """Get all connection rows for a user, keyed by platform"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        connections = db.query(PlatformConnection).filter(PlatformConnection.user_id == user_id).all()
        return {connection.platform: connection for connection in connections}
    finally:
        if should_close:
            db.close()


def save_connection(user_id: int, platform: str, access_token: str,
                    refresh_token: str = None, expires_at: datetime = None,
                    scopes: List[str] = None, user_access_token: str = None,
                    account_id: str = None, account_name: str = None, account_handle: str = None,
                    extra_data: Dict = None, db: Session = None) -> PlatformConnection:
    """Create or update a connection (tokens are encrypted)

    Reconnecting upserts the existing row. A refresh token is only replaced
    when a new one is given, account fields are only replaced when given, and
    extra_data is merged rather than overwritten.

    Args:
        user_id: User ID
        platform: Platform id
        access_token: Publishing access token (will be encrypted)
        refresh_token: Refresh token (will be encrypted, optional)
        expires_at: Access token expiry (optional)
        user_access_token: Long-lived user token used to renew graph platforms (will be encrypted)
        db: Database session (if None, creates its own)
    """
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        now = datetime.now(timezone.utc)
        connection = db.query(PlatformConnection).filter(
            PlatformConnection.user_id == user_id,
            PlatformConnection.platform == platform
        ).first()

        merged_extra = dict(extra_data or {})
        if user_access_token:
            merged_extra["user_access_token"] = encrypt(user_access_token)

        if connection is None:
            connection = PlatformConnection(user_id=user_id, platform=platform, extra_data={})
            db.add(connection)

        connection.access_token = encrypt(access_token)
        if refresh_token:
            connection.refresh_token = encrypt(refresh_token)
        connection.expires_at = expires_at
        if scopes is not None:
            connection.scopes = list(scopes)
        if account_id is not None:
            connection.account_id = account_id
        if account_name is not None:
            connection.account_name = account_name
        if account_handle is not None:
            connection.account_handle = account_handle
        if merged_extra:
            connection.extra_data = {**(connection.extra_data or {}), **merged_extra}
            flag_modified(connection, "extra_data")
        connection.connected = True
        connection.last_sync_at = now
        connection.updated_at = now

        db.commit()
        db.refresh(connection)
        return connection
    finally:
        if should_close:
            db.close()


def clear_connection(user_id: int, platform: str, db: Session = None) -> bool:
    """Disconnect a platform: drop the tokens but keep the row for display

    Returns:
        True if a connection row existed
    """
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        connection = db.query(PlatformConnection).filter(
            PlatformConnection.user_id == user_id,
            PlatformConnection.platform == platform
        ).first()
        if not connection:
            return False

        connection.access_token = None
        connection.refresh_token = None
        connection.expires_at = None
        connection.connected = False
        extra_data = dict(connection.extra_data or {})
        extra_data.pop("user_access_token", None)
        connection.extra_data = extra_data
        flag_modified(connection, "extra_data")
        connection.updated_at = datetime.now(timezone.utc)

        db.commit()
        return True
    finally:
        if should_close:
            db.close()


def get_connections_expiring_before(cutoff: datetime, platforms: Iterable[str], db: Session = None) -> List[PlatformConnection]:
    """Connected rows on the given platforms whose access token expires before cutoff"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        return db.query(PlatformConnection).filter(
            PlatformConnection.connected.is_(True),
            PlatformConnection.platform.in_(list(platforms)),
            PlatformConnection.expires_at.isnot(None),
            PlatformConnection.expires_at <= cutoff
        ).order_by(PlatformConnection.expires_at).all()
    finally:
        if should_close:
            db.close()


# ============================================================================
# CONTENT
# ============================================================================

def add_content(user_id: int, object_key: str, filename: str, title: str = None,
                description: str = None, caption: str = None, tags: List[str] = None,
                content_type: str = "video/mp4", file_size_bytes: int = None,
                cover_url: str = None, privacy_status: str = "public",
                platform_options: Dict[str, Any] = None, db: Session = None) -> Content:
    """Register an uploaded object as publishable content"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        content = Content(
            user_id=user_id,
            object_key=object_key,
            filename=filename,
            title=title,
            description=description,
            caption=caption,
            tags=tags or [],
            content_type=content_type,
            file_size_bytes=file_size_bytes,
            cover_url=cover_url,
            privacy_status=privacy_status,
            platform_options=platform_options or {},
        )
        db.add(content)
        db.commit()
        db.refresh(content)
        return content
    finally:
        if should_close:
            db.close()


def get_content(content_id: int, user_id: int = None, db: Session = None) -> Optional[Content]:
    """Get content by id, optionally restricted to an owner"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        query = db.query(Content).filter(Content.id == content_id)
        if user_id is not None:
            query = query.filter(Content.user_id == user_id)
        return query.first()
    finally:
        if should_close:
            db.close()


# ============================================================================
# SCHEDULED JOBS
# ============================================================================

def add_scheduled_job(user_id: int, content_id: int, platforms: List[str], scheduled_for: datetime,
                      notes: str = None, resubmitted_from_id: int = None, db: Session = None) -> ScheduledJob:
    """Create a job in the scheduled state"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        job = ScheduledJob(
            user_id=user_id,
            content_id=content_id,
            platforms=list(platforms),
            scheduled_for=scheduled_for,
            status=JOB_SCHEDULED,
            notes=notes,
            resubmitted_from_id=resubmitted_from_id,
        )
        db.add(job)
        db.commit()
        db.refresh(job)
        return job
    finally:
        if should_close:
            db.close()


def get_job(job_id: int, user_id: int = None, db: Session = None) -> Optional[ScheduledJob]:
    """Get a job by id, optionally restricted to an owner"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        query = db.query(ScheduledJob).filter(ScheduledJob.id == job_id)
        if user_id is not None:
            query = query.filter(ScheduledJob.user_id == user_id)
        return query.first()
    finally:
        if should_close:
            db.close()


def get_user_jobs(user_id: int, status: str = None, db: Session = None) -> List[ScheduledJob]:
    """List a user's jobs, soonest first"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        query = db.query(ScheduledJob).filter(ScheduledJob.user_id == user_id)
        if status:
            query = query.filter(ScheduledJob.status == status)
        return query.order_by(ScheduledJob.scheduled_for, ScheduledJob.id).all()
    finally:
        if should_close:
            db.close()


def get_due_jobs(now: datetime, limit: int = 10, db: Session = None) -> List[ScheduledJob]:
    """Scheduled jobs whose time has come, oldest first"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        return db.query(ScheduledJob).filter(
            ScheduledJob.status == JOB_SCHEDULED,
            ScheduledJob.scheduled_for <= now
        ).order_by(ScheduledJob.scheduled_for, ScheduledJob.id).limit(limit).all()
    finally:
        if should_close:
            db.close()


def _transition_job(db: Session, job_id: int, from_status: str, values: Dict[str, Any],
                    user_id: int = None) -> bool:
    """Conditionally move a job out of from_status.

    The status check and the write are a single UPDATE, so when several
    writers race only one sees rowcount == 1.
    """
    query = db.query(ScheduledJob).filter(
        ScheduledJob.id == job_id,
        ScheduledJob.status == from_status
    )
    if user_id is not None:
        query = query.filter(ScheduledJob.user_id == user_id)
    updated = query.update(values, synchronize_session=False)
    db.commit()
    return updated == 1


def claim_job(job_id: int, now: datetime = None, db: Session = None) -> bool:
    """Atomically move a job from scheduled to processing

    Returns:
        True if this caller won the claim, False if the job was no longer scheduled
    """
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        now = now or datetime.now(timezone.utc)
        return _transition_job(db, job_id, JOB_SCHEDULED, {
            ScheduledJob.status: JOB_PROCESSING,
            ScheduledJob.claimed_at: now,
            ScheduledJob.updated_at: now,
        })
    finally:
        if should_close:
            db.close()


def finish_job(job_id: int, success: bool, error_message: str = None,
               now: datetime = None, db: Session = None) -> bool:
    """Move a processing job to completed or failed"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        now = now or datetime.now(timezone.utc)
        return _transition_job(db, job_id, JOB_PROCESSING, {
            ScheduledJob.status: JOB_COMPLETED if success else JOB_FAILED,
            ScheduledJob.error_message: None if success else error_message,
            ScheduledJob.executed_at: now,
            ScheduledJob.updated_at: now,
        })
    finally:
        if should_close:
            db.close()


def cancel_job(job_id: int, user_id: int, db: Session = None) -> bool:
    """Move a scheduled job to cancelled; any other state is left untouched"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        now = datetime.now(timezone.utc)
        return _transition_job(db, job_id, JOB_SCHEDULED, {
            ScheduledJob.status: JOB_CANCELLED,
            ScheduledJob.updated_at: now,
        }, user_id=user_id)
    finally:
        if should_close:
            db.close()


# ============================================================================
# PUBLISH ATTEMPTS
# ============================================================================

def record_publish_attempt(job_id: int, platform: str, success: bool, external_id: str = None,
                           url: str = None, error_type: str = None, error_detail: str = None,
                           retryable: bool = False, reconnect_required: bool = False,
                           db: Session = None) -> PublishAttempt:
    """Store the outcome of publishing a job to one platform"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        attempt = PublishAttempt(
            job_id=job_id,
            platform=platform,
            success=success,
            external_id=external_id,
            url=url,
            error_type=error_type,
            error_detail=error_detail,
            retryable=retryable,
            reconnect_required=reconnect_required,
        )
        db.add(attempt)
        db.commit()
        db.refresh(attempt)
        return attempt
    finally:
        if should_close:
            db.close()


def get_job_attempts(job_id: int, db: Session = None) -> List[PublishAttempt]:
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        return db.query(PublishAttempt).filter(PublishAttempt.job_id == job_id).order_by(PublishAttempt.id).all()
    finally:
        if should_close:
            db.close()


def get_recent_attempts(user_id: int, limit: int = 20, db: Session = None) -> List[PublishAttempt]:
    """Most recent publish attempts across a user's jobs"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        return db.query(PublishAttempt).join(ScheduledJob, PublishAttempt.job_id == ScheduledJob.id).filter(
            ScheduledJob.user_id == user_id
        ).order_by(PublishAttempt.created_at.desc(), PublishAttempt.id.desc()).limit(limit).all()
    finally:
        if should_close:
            db.close()


def get_latest_attempts_by_platform(user_id: int, db: Session = None) -> Dict[str, PublishAttempt]:
    """Newest publish attempt per platform across a user's jobs"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        attempts = db.query(PublishAttempt).join(ScheduledJob, PublishAttempt.job_id == ScheduledJob.id).filter(
            ScheduledJob.user_id == user_id
        ).order_by(PublishAttempt.created_at.desc(), PublishAttempt.id.desc()).all()
        latest = {}
        for attempt in attempts:
            latest.setdefault(attempt.platform, attempt)
        return latest
    finally:
        if should_close:
            db.close()


def get_attempt(attempt_id: int, user_id: int = None, db: Session = None) -> Optional[PublishAttempt]:
    """Get a publish attempt, optionally scoped to the owner of its job"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        query = db.query(PublishAttempt).filter(PublishAttempt.id == attempt_id)
        if user_id is not None:
            query = query.join(ScheduledJob, PublishAttempt.job_id == ScheduledJob.id).filter(
                ScheduledJob.user_id == user_id
            )
        return query.first()
    finally:
        if should_close:
            db.close()


def touch_connection_sync(user_id: int, platform: str, db: Session = None) -> Optional[datetime]:
    """Record a successful platform read on the connection; returns the new last_sync_at"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        connection = db.query(PlatformConnection).filter(
            PlatformConnection.user_id == user_id,
            PlatformConnection.platform == platform
        ).first()
        if connection is None:
            return None
        now = datetime.now(timezone.utc)
        connection.last_sync_at = now
        db.commit()
        return now
    finally:
        if should_close:
            db.close()
