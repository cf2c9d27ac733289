"""Content model"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, JSON, BigInteger
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from crosspost.models.base import Base


class Content(Base):
    """An uploaded video plus the metadata used when publishing it"""
    __tablename__ = "contents"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    object_key = Column(String(512), nullable=False)  # Blob store key (e.g., "user_{user_id}/content_{id}_{filename}")
    filename = Column(String(255), nullable=False)
    content_type = Column(String(100), default="video/mp4", nullable=False)
    file_size_bytes = Column(BigInteger, nullable=True)
    title = Column(Text)
    description = Column(Text)
    caption = Column(Text)
    tags = Column(JSON, default=list)
    cover_url = Column(String(1024))
    privacy_status = Column(String(20), default="public", nullable=False)
    platform_options = Column(JSON, default=dict)  # Per-platform pass-through settings keyed by platform id
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationship
    user = relationship("User", back_populates="contents")
