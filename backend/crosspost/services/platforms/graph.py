"""Shared Graph API plumbing for the page and photo platforms"""

import json
import logging
from abc import abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from crosspost.core.config import settings, GRAPH_AUTH_URL, GRAPH_API_URL, GRAPH_TOKEN_URL
from crosspost.services.errors import (
    AuthExchangeError, ConfigurationError, CredentialExpiredError, PublishError
)
from crosspost.services.platforms.base import AccountInfo, Credential, OAuthExchanger, TokenGrant

logger = logging.getLogger(__name__)

# Graph error code for an invalid or expired access token
INVALID_TOKEN_CODE = 190
# Transient / throttling error codes
TRANSIENT_CODES = {1, 2, 4, 17, 32, 341, 613}

LONG_LIVED_TOKEN_DAYS = 60

_PLATFORM_LOGGERS = {
    "page-platform-b": logging.getLogger("page_platform"),
    "photo-platform-c": logging.getLogger("photo_platform"),
}


def _platform_logger(platform: str) -> logging.Logger:
    return _PLATFORM_LOGGERS.get(platform, logger)


def parse_graph_error(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text}
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"]
    return {"message": json.dumps(body) if not isinstance(body, str) else body}


def raise_for_graph_error(response: httpx.Response, platform: str, stage: str,
                          context: Optional[Dict[str, Any]] = None) -> None:
    """Map a non-2xx Graph response onto CredentialExpiredError or PublishError"""
    if 200 <= response.status_code < 300:
        return

    error = parse_graph_error(response)
    code = error.get("code")
    message = error.get("message", "")
    error_context = {
        "platform": platform,
        "stage": stage,
        "http_status": response.status_code,
        "error_code": code,
        "error_subcode": error.get("error_subcode"),
        "error_message": message,
        **(context or {}),
    }

    if code == INVALID_TOKEN_CODE or response.status_code == 401:
        _platform_logger(platform).error(
            f"{stage} failed - access token invalid or expired", extra=error_context
        )
        raise CredentialExpiredError(platform, "Access token is invalid or expired. Please reconnect your account.")

    retryable = response.status_code == 429 or response.status_code >= 500 or code in TRANSIENT_CODES
    _platform_logger(platform).error(
        f"{stage} failed: HTTP {response.status_code} - {message}", extra=error_context
    )
    raise PublishError(platform, f"{stage} failed: HTTP {response.status_code} - {message}", retryable=retryable)


async def graph_request(client: httpx.AsyncClient, method: str, url: str, platform: str, stage: str,
                        context: Optional[Dict[str, Any]] = None, **kwargs) -> Dict[str, Any]:
    """Perform one Graph call, translating transport failures and error payloads"""
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TransportError as e:
        raise PublishError(platform, f"{stage} failed: {type(e).__name__}", retryable=True)
    raise_for_graph_error(response, platform, stage, context)
    return response.json()


def metric_values(payload: Dict[str, Any], names: Dict[str, str]) -> Dict[str, int]:
    """Flatten an insights payload into ``{our name: latest value}`` using a
    Graph metric name -> our name mapping"""
    reported = {}
    for entry in payload.get("data") or []:
        values = entry.get("values") or []
        value = values[0].get("value") if values else (entry.get("total_value") or {}).get("value")
        if isinstance(value, (int, float)):
            reported[entry.get("name")] = int(value)
    return {name: reported.get(metric, 0) for metric, name in names.items()}


class GraphOAuthExchanger(OAuthExchanger):
    """Graph-style OAuth shared by the page and photo platforms.

    The code exchange yields a short-lived user token that must be extended
    to a ~60 day token before anything is stored. There is no refresh token:
    renewal re-extends the stored long-lived user token, and once that has
    expired only re-authorization helps.
    """

    renewal_window = timedelta(days=7)
    scopes: List[str] = []

    def _app_credentials(self) -> Tuple[str, str]:
        if not settings.GRAPH_APP_ID or not settings.GRAPH_APP_SECRET:
            raise ConfigurationError("Graph OAuth credentials not configured. Set GRAPH_APP_ID and GRAPH_APP_SECRET.")
        return settings.GRAPH_APP_ID, settings.GRAPH_APP_SECRET

    def build_authorization_url(self, state: str) -> str:
        app_id, _ = self._app_credentials()
        params = {
            "client_id": app_id,
            "redirect_uri": self.redirect_uri,
            "scope": ",".join(self.scopes),
            "response_type": "code",
            "state": state,
        }
        return f"{GRAPH_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, params: Dict[str, str], stage: str) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.get(GRAPH_TOKEN_URL, params=params)
        except httpx.TransportError as e:
            raise AuthExchangeError(self.platform.value, f"{stage} request failed: {type(e).__name__}")

        if response.status_code != 200:
            error = parse_graph_error(response)
            logger.error(
                f"Graph {stage} failed: HTTP {response.status_code} - {error.get('message')}",
                extra={"platform": self.platform.value, "stage": stage, "http_status": response.status_code,
                       "error_code": error.get("code")}
            )
            raise AuthExchangeError(self.platform.value, f"{stage} failed: {error.get('message')}", response.status_code)

        data = response.json()
        if not data.get("access_token"):
            raise AuthExchangeError(self.platform.value, f"{stage} response did not include an access_token")
        return data

    async def exchange_code(self, code: str) -> TokenGrant:
        app_id, app_secret = self._app_credentials()
        data = await self._token_request({
            "client_id": app_id,
            "client_secret": app_secret,
            "redirect_uri": self.redirect_uri,
            "code": code,
        }, "code exchange")
        expires_in = data.get("expires_in")
        return TokenGrant(
            access_token=data["access_token"],
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(expires_in)) if expires_in else None,
            scopes=list(self.scopes),
        )

    async def extend_token(self, short_lived_token: str) -> TokenGrant:
        """Trade a user token for a long-lived (~60 day) one"""
        app_id, app_secret = self._app_credentials()
        data = await self._token_request({
            "grant_type": "fb_exchange_token",
            "client_id": app_id,
            "client_secret": app_secret,
            "fb_exchange_token": short_lived_token,
        }, "token extension")
        expires_in = data.get("expires_in") or LONG_LIVED_TOKEN_DAYS * 24 * 60 * 60
        return TokenGrant(
            access_token=data["access_token"],
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(expires_in)),
            scopes=list(self.scopes),
            user_access_token=data["access_token"],
        )

    async def _fetch_pages(self, user_token: str) -> List[Dict[str, Any]]:
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{GRAPH_API_URL}/me/accounts",
                    params={
                        "fields": "id,name,access_token,instagram_business_account{id,username,name,profile_picture_url}",
                        "access_token": user_token,
                    }
                )
        except httpx.TransportError as e:
            raise AuthExchangeError(self.platform.value, f"Page lookup failed: {type(e).__name__}")
        if response.status_code != 200:
            error = parse_graph_error(response)
            raise AuthExchangeError(self.platform.value, f"Page lookup failed: {error.get('message')}", response.status_code)
        return response.json().get("data") or []

    @abstractmethod
    def _select_account(self, pages: List[Dict[str, Any]], account_id: Optional[str] = None) -> Tuple[str, AccountInfo]:
        """Pick the account to publish as; returns (publishing token, account)"""

    async def fetch_account(self, grant: TokenGrant) -> Tuple[TokenGrant, AccountInfo]:
        user_token = grant.user_access_token or grant.access_token
        pages = await self._fetch_pages(user_token)
        page_token, account = self._select_account(pages)
        return TokenGrant(
            access_token=page_token,
            expires_at=grant.expires_at,
            scopes=grant.scopes,
            user_access_token=user_token,
        ), account

    async def complete(self, code: str) -> Tuple[TokenGrant, AccountInfo]:
        short_lived = await self.exchange_code(code)
        long_lived = await self.extend_token(short_lived.access_token)
        return await self.fetch_account(long_lived)

    async def renew(self, credential: Credential) -> TokenGrant:
        if not credential.user_access_token:
            raise AuthExchangeError(self.platform.value, "No long-lived user token stored")
        long_lived = await self.extend_token(credential.user_access_token)
        pages = await self._fetch_pages(long_lived.access_token)
        page_token, _ = self._select_account(pages, account_id=credential.account_id)
        return TokenGrant(
            access_token=page_token,
            expires_at=long_lived.expires_at,
            scopes=long_lived.scopes,
            user_access_token=long_lived.access_token,
        )
