"""OAuth API routes for connecting and disconnecting publishing platforms"""
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from crosspost.core.config import settings
from crosspost.core.security import require_auth
from crosspost.schemas.oauth import AuthUrlResponse, ConnectionsResponse
from crosspost.db.session import get_db
from crosspost.services.errors import (
    AuthExchangeError, ConfigurationError, InvalidPlatformError, OAuthStateError
)
from crosspost.services.oauth_service import complete_oauth_flow, disconnect_platform, initiate_oauth_flow
from crosspost.services.platforms import parse_platform
from crosspost.services.status_service import get_connection_statuses

oauth_logger = logging.getLogger("oauth")

router = APIRouter(prefix="/api/auth", tags=["oauth"])

# Separate router for /api/connections
connections_router = APIRouter(prefix="/api/connections", tags=["connections"])


def _connections_redirect(**params) -> RedirectResponse:
    return RedirectResponse(f"{settings.FRONTEND_URL}/platform-connections?{urlencode(params)}")


@router.get("/{platform}", response_model=AuthUrlResponse)
def auth_start(platform: str, user_id: int = Depends(require_auth)):
    """Start a platform OAuth flow - returns the consent URL"""
    try:
        return initiate_oauth_flow(user_id, platform)
    except InvalidPlatformError as e:
        raise HTTPException(404, str(e))
    except ConfigurationError as e:
        raise HTTPException(400, str(e))


@router.get("/{platform}/callback")
async def auth_callback(
    platform: str,
    code: str = None,
    state: str = None,
    error: str = None,
    error_description: str = None,
    db: Session = Depends(get_db)
):
    """OAuth callback - verifies state, exchanges the code and stores the connection

    Always redirects back to the frontend; failures never touch stored credentials.
    """
    if error:
        oauth_logger.warning(f"{platform} OAuth error from provider: {error} - {error_description}")
        return _connections_redirect(error=error, platform=platform)

    try:
        platform_id = parse_platform(platform).value
    except InvalidPlatformError:
        return _connections_redirect(error="unknown_platform", platform=platform)

    try:
        await complete_oauth_flow(platform_id, code, state, db)
    except OAuthStateError as e:
        oauth_logger.warning(f"{platform_id} callback rejected: {e}")
        return _connections_redirect(error="invalid_state", platform=platform_id)
    except AuthExchangeError as e:
        oauth_logger.error(f"{platform_id} callback failed: {e.detail}")
        return _connections_redirect(error="auth_failed", platform=platform_id)
    except ConfigurationError as e:
        oauth_logger.error(f"{platform_id} callback failed: {e}")
        return _connections_redirect(error="not_configured", platform=platform_id)

    return _connections_redirect(connected=platform_id)


@router.delete("/{platform}")
async def auth_disconnect(platform: str, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Disconnect a platform (tokens cleared, connection row kept)"""
    try:
        return await disconnect_platform(user_id, platform, db)
    except InvalidPlatformError as e:
        raise HTTPException(404, str(e))


@connections_router.get("", response_model=ConnectionsResponse)
def list_connections(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Connection status for every supported platform"""
    return {"connections": get_connection_statuses(user_id, db=db)}
