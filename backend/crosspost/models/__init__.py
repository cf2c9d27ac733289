"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from crosspost.models.base import Base
from crosspost.models.user import User
from crosspost.models.content import Content
from crosspost.models.platform_connection import PlatformConnection
from crosspost.models.scheduled_job import ScheduledJob
from crosspost.models.publish_attempt import PublishAttempt

# Export all for convenience
__all__ = [
    "Base", "User", "Content", "PlatformConnection", "ScheduledJob", "PublishAttempt"
]
