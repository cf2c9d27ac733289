"""Background renewal of long-lived graph-platform credentials"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from crosspost.core.config import settings
from crosspost.db.helpers import get_connections_expiring_before
from crosspost.db.session import SessionLocal
from crosspost.services.credential_service import credential_from_connection, renew_credential
from crosspost.services.errors import CrosspostError
from crosspost.services.platforms import OAuthExchanger, Platform, get_exchanger
from crosspost.services.platforms.registry import OAUTH_EXCHANGERS
from crosspost.utils.timeutil import ensure_utc

logger = logging.getLogger(__name__)

# Video-platform tokens renew themselves on use; only graph tokens can silently run out
PROACTIVE_PLATFORMS = (Platform.PAGE, Platform.PHOTO)


async def renew_expiring_connections(db: Session = None, now: Optional[datetime] = None,
                                     exchanger_factory: Callable[[str], OAuthExchanger] = get_exchanger) -> Dict[str, int]:
    """Renew every graph connection that is inside its renewal window but not yet expired"""
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True

    try:
        now = now or datetime.now(timezone.utc)
        window = max(OAUTH_EXCHANGERS[platform].renewal_window for platform in PROACTIVE_PLATFORMS)
        candidates = get_connections_expiring_before(
            now + window, [platform.value for platform in PROACTIVE_PLATFORMS], db=db
        )

        renewed = failed = 0
        for connection in candidates:
            if ensure_utc(connection.expires_at) <= now:
                continue
            user_id, platform = connection.user_id, connection.platform
            try:
                credential = credential_from_connection(connection)
                await renew_credential(user_id, credential, exchanger_factory(platform), db=db)
                renewed += 1
            except CrosspostError as e:
                failed += 1
                logger.warning(f"Proactive renewal of {platform} for user {user_id} failed: {e}")

        if renewed or failed:
            logger.info(f"Token renewal pass: {renewed} renewed, {failed} failed")
        return {"renewed": renewed, "failed": failed}
    finally:
        if should_close:
            db.close()


async def token_renewal_task():
    """Background task that renews expiring graph credentials every TOKEN_RENEWAL_INTERVAL_SECONDS"""
    while True:
        try:
            await asyncio.sleep(settings.TOKEN_RENEWAL_INTERVAL_SECONDS)
            await renew_expiring_connections()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Token renewal pass failed: {e}", exc_info=True)
