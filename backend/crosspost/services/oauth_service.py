"""OAuth service - connect and disconnect publishing platforms"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from crosspost.core.metrics import oauth_connections_counter
from crosspost.core.security import sign_oauth_state, verify_oauth_state
from crosspost.db.helpers import clear_connection, save_connection
from crosspost.services.errors import AuthExchangeError, CrosspostError
from crosspost.services.event_service import publish_connection_changed
from crosspost.services.platforms import OAuthExchanger, get_exchanger, parse_platform

oauth_logger = logging.getLogger("oauth")


def initiate_oauth_flow(user_id: int, platform: str, exchanger: Optional[OAuthExchanger] = None) -> Dict[str, str]:
    """Build the authorization URL for a platform, carrying a signed one-time state"""
    platform = parse_platform(platform)
    exchanger = exchanger or get_exchanger(platform)
    state = sign_oauth_state(user_id, platform.value)
    auth_url = exchanger.build_authorization_url(state)
    oauth_logger.info(f"Initiating {platform.value} auth flow for user {user_id}")
    return {"url": auth_url}


async def complete_oauth_flow(platform: str, code: Optional[str], state: Optional[str], db: Session,
                              exchanger: Optional[OAuthExchanger] = None) -> Dict[str, Any]:
    """Handle the callback: verify state, exchange the code, store the connection

    Nothing is written unless every step succeeds, so a replayed callback or
    a rejected code leaves any existing connection untouched.

    Raises:
        OAuthStateError: If the state is invalid, expired or already used
        AuthExchangeError: If the platform rejects the code or a follow-up call
    """
    platform = parse_platform(platform)
    user_id = verify_oauth_state(state, platform.value)

    if not code:
        raise AuthExchangeError(platform.value, "Missing authorization code")

    exchanger = exchanger or get_exchanger(platform)
    try:
        grant, account = await exchanger.complete(code)
    except CrosspostError:
        oauth_connections_counter.labels(platform=platform.value, status="failed").inc()
        raise

    connection = save_connection(
        user_id, platform.value,
        access_token=grant.access_token,
        refresh_token=grant.refresh_token,
        expires_at=grant.expires_at,
        scopes=grant.scopes,
        user_access_token=grant.user_access_token,
        account_id=account.account_id,
        account_name=account.name,
        account_handle=account.handle,
        extra_data={key: value for key, value in account.extra.items() if value is not None},
        db=db,
    )
    oauth_connections_counter.labels(platform=platform.value, status="success").inc()
    oauth_logger.info(
        f"{platform.value} connected for user {user_id} as {account.name or account.account_id}",
        extra={"user_id": user_id, "platform": platform.value, "account_id": account.account_id}
    )
    await publish_connection_changed(user_id, platform.value, True, connection.account_name)

    return {
        "success": True,
        "platform": platform.value,
        "account_name": connection.account_name,
    }


async def disconnect_platform(user_id: int, platform: str, db: Session) -> Dict[str, Any]:
    """Clear a platform's tokens while keeping the connection row for display"""
    platform = parse_platform(platform)
    existed = clear_connection(user_id, platform.value, db=db)
    if existed:
        oauth_logger.info(f"{platform.value} disconnected for user {user_id}")
        await publish_connection_changed(user_id, platform.value, False)
    return {"message": "Disconnected", "platform": platform.value}
