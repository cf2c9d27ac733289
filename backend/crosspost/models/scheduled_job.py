"""ScheduledJob model"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, JSON, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from crosspost.models.base import Base

JOB_SCHEDULED = "scheduled"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"

JOB_STATUSES = (JOB_SCHEDULED, JOB_PROCESSING, JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)
TERMINAL_JOB_STATUSES = (JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)


class ScheduledJob(Base):
    """A request to publish one content item to a set of platforms at a time"""
    __tablename__ = "scheduled_jobs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    content_id = Column(Integer, ForeignKey("contents.id", ondelete="CASCADE"), nullable=False, index=True)
    platforms = Column(JSON, nullable=False)  # Non-empty list of platform ids
    scheduled_for = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(20), default=JOB_SCHEDULED, nullable=False)
    notes = Column(Text)
    error_message = Column(Text)
    claimed_at = Column(DateTime(timezone=True))
    executed_at = Column(DateTime(timezone=True))
    resubmitted_from_id = Column(Integer, ForeignKey("scheduled_jobs.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    # Relationships
    user = relationship("User", back_populates="scheduled_jobs")
    content = relationship("Content")
    attempts = relationship("PublishAttempt", back_populates="job", cascade="all, delete-orphan",
                            order_by="PublishAttempt.id")

    # Composite index for the due-job query
    __table_args__ = (
        Index('ix_scheduled_jobs_status_scheduled_for', 'status', 'scheduled_for'),
    )
