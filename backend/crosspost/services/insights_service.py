"""Per-post engagement insights for published attempts"""
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from crosspost.core.metrics import insights_requests_counter
from crosspost.db.helpers import get_attempt, touch_connection_sync
from crosspost.services.credential_service import resolve_credential
from crosspost.services.errors import (
    AttemptNotFoundError, CredentialExpiredError, InsightsUnavailableError, PublishError
)
from crosspost.services.platforms import PlatformPublisher, get_publisher
from crosspost.utils.timeutil import ensure_utc

logger = logging.getLogger(__name__)

PublisherFactory = Callable[[str], PlatformPublisher]


async def get_attempt_insights(user_id: int, attempt_id: int, db: Session = None,
                               publisher_factory: Optional[PublisherFactory] = None) -> Dict[str, Any]:
    """Fetch current engagement counters for the post a successful attempt created

    Stamps the connection's last_sync_at on success.

    Raises:
        AttemptNotFoundError: If the attempt does not exist or belongs to another user
        InsightsUnavailableError: If the attempt did not publish anything
        CredentialExpiredError: If the platform has to be reconnected
        PublishError: If the platform fails the request
    """
    attempt = get_attempt(attempt_id, user_id=user_id, db=db)
    if attempt is None:
        raise AttemptNotFoundError(f"Attempt {attempt_id} not found")
    if not attempt.success or not attempt.external_id:
        raise InsightsUnavailableError(f"Attempt {attempt_id} did not publish a post")

    platform = attempt.platform
    publisher = (publisher_factory or get_publisher)(platform)
    try:
        credential = await resolve_credential(user_id, platform, db=db)
        published_at = ensure_utc(attempt.created_at)
        metrics = await publisher.fetch_insights(
            credential, attempt.external_id, since=published_at.date() if published_at else None
        )
    except (CredentialExpiredError, PublishError) as e:
        insights_requests_counter.labels(platform=platform, status="failed").inc()
        logger.warning(
            f"Insights for attempt {attempt_id} on {platform} failed: {e}",
            extra={"user_id": user_id, "platform": platform, "error_type": type(e).__name__}
        )
        raise

    synced_at = touch_connection_sync(user_id, platform, db=db)
    insights_requests_counter.labels(platform=platform, status="success").inc()
    return {
        "attempt_id": attempt.id,
        "job_id": attempt.job_id,
        "platform": platform,
        "external_id": attempt.external_id,
        "url": attempt.url,
        "metrics": metrics,
        "synced_at": synced_at.isoformat() if synced_at else None,
    }
