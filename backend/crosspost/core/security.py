"""Security dependencies and signed OAuth state"""
import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Optional

from fastapi import Header, HTTPException, Request

from crosspost.core.config import settings
from crosspost.db.redis import consume_oauth_nonce, get_session
from crosspost.services.errors import ConfigurationError, OAuthStateError

security_logger = logging.getLogger("security")


def require_auth(request: Request) -> int:
    """Dependency: Require authentication, return user_id"""
    session_id = request.cookies.get("session_id")

    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    user_id = get_session(session_id)
    if not user_id:
        raise HTTPException(401, "Session expired. Please log in again.")

    return user_id


def require_cron_secret(x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret")) -> None:
    """Dependency: Require the shared secret used by the external scheduler trigger"""
    if not settings.CRON_SECRET:
        raise HTTPException(503, "Scheduled processing trigger is not configured")
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, settings.CRON_SECRET):
        security_logger.warning("Rejected scheduled processing trigger with invalid secret")
        raise HTTPException(403, "Invalid cron secret")


# ============================================================================
# OAUTH STATE
# ============================================================================

def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _b64decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _signature(payload: str) -> str:
    if not settings.SECRET_KEY:
        raise ConfigurationError("SECRET_KEY is not set; OAuth state cannot be signed.")
    digest = hmac.new(settings.SECRET_KEY.encode(), payload.encode(), hashlib.sha256).digest()
    return _b64encode(digest)


def sign_oauth_state(user_id: int, platform: str, issued_at: Optional[int] = None) -> str:
    """Build the state parameter for an authorization URL.

    The state names the user and platform that started the flow and carries
    a random nonce; it is only valid for OAUTH_STATE_TTL_SECONDS and only once.
    """
    payload = _b64encode(json.dumps({
        "u": user_id,
        "p": platform,
        "n": secrets.token_urlsafe(16),
        "t": int(issued_at if issued_at is not None else time.time()),
    }, separators=(",", ":")).encode())
    return f"{payload}.{_signature(payload)}"


def verify_oauth_state(state: Optional[str], platform: str, consume: bool = True) -> int:
    """Validate a callback's state and return the user id it was issued to

    Raises:
        OAuthStateError: If the state is missing, forged, expired, for another
            platform, or was already used
    """
    if not state or state.count(".") != 1:
        raise OAuthStateError("Missing or malformed OAuth state")

    payload, signature = state.split(".")
    if not hmac.compare_digest(signature, _signature(payload)):
        security_logger.warning(f"OAuth state signature mismatch for platform {platform}")
        raise OAuthStateError("Invalid OAuth state signature")

    try:
        data = json.loads(_b64decode(payload))
        user_id = int(data["u"])
        issued_at = int(data["t"])
        nonce = str(data["n"])
        state_platform = data["p"]
    except (ValueError, KeyError, TypeError):
        raise OAuthStateError("Malformed OAuth state payload")

    if state_platform != platform:
        raise OAuthStateError("OAuth state was issued for a different platform")

    age = time.time() - issued_at
    if age < 0 or age > settings.OAUTH_STATE_TTL_SECONDS:
        raise OAuthStateError("OAuth state has expired. Please start the connection again.")

    if consume and not consume_oauth_nonce(nonce, settings.OAUTH_STATE_TTL_SECONDS):
        security_logger.warning(f"Replayed OAuth state for user {user_id}, platform {platform}")
        raise OAuthStateError("OAuth state has already been used")

    return user_id
