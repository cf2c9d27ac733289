"""PlatformConnection model"""
from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from crosspost.models.base import Base


class PlatformConnection(Base):
    """A user's link to one publishing platform (tokens encrypted).

    The row survives a disconnect: tokens are cleared and ``connected`` is
    set to False, but the account name and last sync time stay for display.
    """
    __tablename__ = "platform_connections"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    platform = Column(String(50), nullable=False)  # video-platform-a, page-platform-b, photo-platform-c
    connected = Column(Boolean, default=False, nullable=False)
    account_id = Column(String(255))
    account_name = Column(String(255))
    account_handle = Column(String(255))
    access_token = Column(Text)  # Encrypted
    refresh_token = Column(Text)  # Encrypted
    expires_at = Column(DateTime(timezone=True))
    scopes = Column(JSON, default=list)
    extra_data = Column(JSON, default=dict)  # Platform-specific data (graph platforms: encrypted long-lived user token)
    last_sync_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    # Relationship
    user = relationship("User", back_populates="connections")

    __table_args__ = (
        UniqueConstraint('user_id', 'platform', name='uq_platform_connections_user_platform'),
    )
