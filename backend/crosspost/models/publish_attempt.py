"""PublishAttempt model"""
from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from crosspost.models.base import Base


class PublishAttempt(Base):
    """Outcome of publishing one job to one platform"""
    __tablename__ = "publish_attempts"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("scheduled_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    platform = Column(String(50), nullable=False)
    success = Column(Boolean, nullable=False)
    external_id = Column(String(255))
    url = Column(String(1024))
    error_type = Column(String(100))
    error_detail = Column(Text)
    retryable = Column(Boolean, default=False, nullable=False)
    reconnect_required = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    job = relationship("ScheduledJob", back_populates="attempts")

    __table_args__ = (
        UniqueConstraint('job_id', 'platform', name='uq_publish_attempts_job_platform'),
    )
