"""Credential resolution: decrypt stored tokens and renew them before they lapse"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from crosspost.core.config import settings
from crosspost.core.metrics import token_renewals_counter
from crosspost.db.helpers import get_connection, save_connection
from crosspost.db.redis import acquire_lock, lock_held, release_lock
from crosspost.models.platform_connection import PlatformConnection
from crosspost.services.errors import AuthExchangeError, CredentialExpiredError
from crosspost.services.event_service import publish_credential_updated
from crosspost.services.platforms import Credential, OAuthExchanger, get_exchanger, parse_platform
from crosspost.utils.encryption import decrypt
from crosspost.utils.timeutil import ensure_utc

logger = logging.getLogger(__name__)

LOCK_POLL_INTERVAL_SECONDS = 0.5


def credential_from_connection(connection: PlatformConnection) -> Credential:
    """Decrypt a connection row into a Credential

    Raises:
        CredentialExpiredError: If the row has no token or cannot be decrypted
    """
    platform = parse_platform(connection.platform)
    if not connection.connected or not connection.access_token:
        raise CredentialExpiredError(platform.value, "Not connected")

    extra_data = dict(connection.extra_data or {})
    try:
        access_token = decrypt(connection.access_token)
        refresh_token = decrypt(connection.refresh_token) if connection.refresh_token else None
        user_access_token = decrypt(extra_data.pop("user_access_token")) if extra_data.get("user_access_token") else None
    except ValueError:
        logger.error(f"Failed to decrypt stored credential for user {connection.user_id}, platform {platform.value}")
        raise CredentialExpiredError(platform.value, "Stored credential could not be read. Please reconnect.")

    return Credential(
        platform=platform,
        access_token=access_token,
        account_id=connection.account_id,
        refresh_token=refresh_token,
        user_access_token=user_access_token,
        expires_at=ensure_utc(connection.expires_at),
        extra=extra_data,
    )


def needs_renewal(credential: Credential, exchanger: OAuthExchanger, now: Optional[datetime] = None) -> bool:
    if credential.expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return credential.expires_at - now <= exchanger.renewal_window


async def _await_concurrent_renewal(user_id: int, platform: str, lock_key: str,
                                    db: Session = None) -> Credential:
    """Wait for another worker's renewal to finish and use what it stored

    Raises:
        CredentialExpiredError: If the stored credential is still expired afterwards
    """
    polls = int(settings.TOKEN_REFRESH_LOCK_TIMEOUT / LOCK_POLL_INTERVAL_SECONDS)
    for _ in range(max(polls, 1)):
        await asyncio.sleep(LOCK_POLL_INTERVAL_SECONDS)
        if not lock_held(lock_key):
            break

    connection = get_connection(user_id, platform, db=db)
    if connection is None:
        raise CredentialExpiredError(platform, "Not connected")
    if db is not None:
        db.refresh(connection)
    credential = credential_from_connection(connection)

    if credential.expires_at is not None and credential.expires_at <= datetime.now(timezone.utc):
        logger.warning(
            f"{platform} credential for user {user_id} still expired after a concurrent renewal",
            extra={"user_id": user_id, "platform": platform, "error_type": "CredentialExpired"}
        )
        raise CredentialExpiredError(platform, "Token expired and could not be renewed. Please reconnect.")
    return credential


async def renew_credential(user_id: int, credential: Credential, exchanger: OAuthExchanger,
                           db: Session = None) -> Credential:
    """Renew and persist a credential

    Raises:
        AuthExchangeError: If the platform rejects the renewal
    """
    platform = credential.platform.value
    lock_key = f"token_refresh_lock:{user_id}:{platform}"
    if not acquire_lock(lock_key, timeout=settings.TOKEN_REFRESH_LOCK_TIMEOUT):
        return await _await_concurrent_renewal(user_id, platform, lock_key, db=db)

    try:
        grant = await exchanger.renew(credential)
    except AuthExchangeError:
        token_renewals_counter.labels(platform=platform, status="failed").inc()
        raise
    finally:
        release_lock(lock_key)

    connection = save_connection(
        user_id, platform,
        access_token=grant.access_token,
        refresh_token=grant.refresh_token,
        expires_at=grant.expires_at,
        user_access_token=grant.user_access_token,
        db=db,
    )
    token_renewals_counter.labels(platform=platform, status="success").inc()
    logger.info(f"Renewed {platform} credential for user {user_id}, expires {grant.expires_at}")
    await publish_credential_updated(user_id, platform, grant.expires_at)
    return credential_from_connection(connection)


async def resolve_credential(user_id: int, platform: str, db: Session = None,
                             exchanger: Optional[OAuthExchanger] = None,
                             now: Optional[datetime] = None) -> Credential:
    """Return a credential that is safe to publish with right now

    Renews inside the platform's renewal window. A failed renewal is only
    fatal once the current token has actually expired.

    Raises:
        CredentialExpiredError: If the user must reconnect the platform
    """
    platform = parse_platform(platform).value
    connection = get_connection(user_id, platform, db=db)
    if connection is None:
        raise CredentialExpiredError(platform, "Not connected")

    credential = credential_from_connection(connection)
    exchanger = exchanger or get_exchanger(platform)
    now = now or datetime.now(timezone.utc)

    if not needs_renewal(credential, exchanger, now):
        return credential

    expired = credential.expires_at <= now
    try:
        return await renew_credential(user_id, credential, exchanger, db=db)
    except AuthExchangeError as e:
        if expired:
            logger.warning(
                f"{platform} credential for user {user_id} expired and renewal failed: {e.detail}",
                extra={"user_id": user_id, "platform": platform, "error_type": "CredentialExpired"}
            )
            raise CredentialExpiredError(platform, "Token expired and could not be renewed. Please reconnect.")
        logger.warning(f"{platform} renewal for user {user_id} failed, using current token: {e.detail}")
        return credential
