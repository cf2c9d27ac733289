"""Video platform (Google-style OAuth, resumable upload)"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from crosspost.core.config import (
    settings, VIDEO_PLATFORM_AUTH_URL, VIDEO_PLATFORM_TOKEN_URL,
    VIDEO_PLATFORM_API_BASE, VIDEO_PLATFORM_UPLOAD_URL, VIDEO_PLATFORM_ANALYTICS_URL, VIDEO_PLATFORM_SCOPES
)
from crosspost.services.errors import (
    AuthExchangeError, ConfigurationError, CredentialExpiredError, PublishError
)
from crosspost.services.platforms.base import (
    AccountInfo, Credential, OAuthExchanger, Platform, PlatformPublisher,
    ProgressCallback, PublishContent, PublishMetadata, PublishResult,
    TokenGrant, report_progress
)

video_platform_logger = logging.getLogger("video_platform")

WATCH_URL = "https://www.youtube.com/watch?v="
DEFAULT_CATEGORY_ID = "22"
MAX_TITLE_LENGTH = 100
INSIGHTS_DEFAULT_DAYS = 28

ANALYTICS_METRICS = (
    "views", "likes", "dislikes", "comments", "shares", "estimatedMinutesWatched", "averageViewDuration",
)


def _grant_from_token_response(data: Dict) -> TokenGrant:
    if not data.get("access_token"):
        raise AuthExchangeError(Platform.VIDEO.value, "Token response did not include an access_token")
    expires_in = data.get("expires_in")
    return TokenGrant(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(expires_in)) if expires_in else None,
        scopes=data.get("scope", "").split() if data.get("scope") else list(VIDEO_PLATFORM_SCOPES),
    )


class VideoOAuthExchanger(OAuthExchanger):
    """Authorization-code flow with offline access.

    Access tokens last about an hour and are renewed with the refresh token
    issued on first consent (``prompt=consent`` forces one every time).
    """

    platform = Platform.VIDEO
    renewal_window = timedelta(minutes=5)

    def _client_credentials(self) -> Tuple[str, str]:
        if not settings.VIDEO_PLATFORM_CLIENT_ID or not settings.VIDEO_PLATFORM_CLIENT_SECRET:
            raise ConfigurationError(
                "Video platform OAuth credentials not configured. "
                "Set VIDEO_PLATFORM_CLIENT_ID and VIDEO_PLATFORM_CLIENT_SECRET."
            )
        return settings.VIDEO_PLATFORM_CLIENT_ID, settings.VIDEO_PLATFORM_CLIENT_SECRET

    def build_authorization_url(self, state: str) -> str:
        client_id, _ = self._client_credentials()
        params = {
            "client_id": client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(VIDEO_PLATFORM_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{VIDEO_PLATFORM_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, payload: Dict, stage: str) -> TokenGrant:
        client_id, client_secret = self._client_credentials()
        payload = {**payload, "client_id": client_id, "client_secret": client_secret}
        try:
            async with self._client() as client:
                response = await client.post(VIDEO_PLATFORM_TOKEN_URL, data=payload)
        except httpx.TransportError as e:
            raise AuthExchangeError(self.platform.value, f"{stage} request failed: {type(e).__name__}")

        if response.status_code != 200:
            try:
                error = response.json()
                detail = error.get("error_description") or error.get("error") or response.text
            except ValueError:
                detail = response.text
            video_platform_logger.error(
                f"Token {stage} failed: HTTP {response.status_code} - {detail}",
                extra={"platform": self.platform.value, "stage": stage, "http_status": response.status_code}
            )
            raise AuthExchangeError(self.platform.value, f"{stage} failed: {detail}", response.status_code)

        return _grant_from_token_response(response.json())

    async def exchange_code(self, code: str) -> TokenGrant:
        return await self._token_request({
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri,
        }, "code exchange")

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        grant = await self._token_request({
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }, "refresh")
        # The token endpoint usually omits the refresh token on refresh
        if not grant.refresh_token:
            grant.refresh_token = refresh_token
        return grant

    async def renew(self, credential: Credential) -> TokenGrant:
        if not credential.refresh_token:
            raise AuthExchangeError(self.platform.value, "No refresh token stored")
        return await self.refresh_token(credential.refresh_token)

    async def fetch_account(self, grant: TokenGrant) -> Tuple[TokenGrant, AccountInfo]:
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{VIDEO_PLATFORM_API_BASE}/channels",
                    params={"part": "snippet", "mine": "true"},
                    headers={"Authorization": f"Bearer {grant.access_token}"}
                )
        except httpx.TransportError as e:
            raise AuthExchangeError(self.platform.value, f"Channel lookup failed: {type(e).__name__}")
        if response.status_code != 200:
            raise AuthExchangeError(self.platform.value, f"Channel lookup failed: HTTP {response.status_code}", response.status_code)

        items = response.json().get("items") or []
        if not items:
            raise AuthExchangeError(self.platform.value, "No channel found for this account")
        channel = items[0]
        snippet = channel.get("snippet", {})
        account = AccountInfo(
            account_id=channel["id"],
            name=snippet.get("title"),
            handle=snippet.get("customUrl"),
            extra={"avatar_url": snippet.get("thumbnails", {}).get("default", {}).get("url")},
        )
        return grant, account


class VideoPublisher(PlatformPublisher):
    """Resumable upload: initiate a session, stream the bytes, resume on failure"""

    platform = Platform.VIDEO

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, max_retries: Optional[int] = None):
        super().__init__(transport)
        self.max_retries = settings.UPLOAD_MAX_RETRIES if max_retries is None else max_retries

    def _build_resource(self, metadata: PublishMetadata) -> Dict:
        title = (metadata.title or "Untitled")[:MAX_TITLE_LENGTH]
        return {
            "snippet": {
                "title": title,
                "description": metadata.description or "",
                "tags": metadata.tags or [],
                "categoryId": str(metadata.options.get("category_id", DEFAULT_CATEGORY_ID)),
            },
            "status": {
                "privacyStatus": metadata.privacy_status or "public",
                "selfDeclaredMadeForKids": bool(metadata.options.get("made_for_kids", False)),
            },
        }

    def _raise_for_status(self, response: httpx.Response, stage: str) -> None:
        status = response.status_code
        if status == 401:
            raise CredentialExpiredError(self.platform.value, "Access token is invalid or expired. Please reconnect.")
        retryable = status == 429 or status >= 500
        try:
            body = response.json()
            message = body.get("error", {}).get("message") or response.text
        except ValueError:
            message = response.text
        video_platform_logger.error(
            f"Video platform {stage} failed: HTTP {status} - {message}",
            extra={"platform": self.platform.value, "stage": stage, "http_status": status}
        )
        raise PublishError(self.platform.value, f"{stage} failed: HTTP {status} - {message}", retryable=retryable)

    async def _initiate(self, client: httpx.AsyncClient, token: str, metadata: PublishMetadata,
                        total: int, content_type: str) -> str:
        try:
            response = await client.post(
                VIDEO_PLATFORM_UPLOAD_URL,
                params={"uploadType": "resumable", "part": "snippet,status"},
                json=self._build_resource(metadata),
                headers={
                    "Authorization": f"Bearer {token}",
                    "X-Upload-Content-Length": str(total),
                    "X-Upload-Content-Type": content_type,
                }
            )
        except httpx.TransportError as e:
            raise PublishError(self.platform.value, f"Upload initiation failed: {type(e).__name__}", retryable=True)

        if response.status_code != 200:
            self._raise_for_status(response, "upload initiation")

        session_url = response.headers.get("Location")
        if not session_url:
            raise PublishError(self.platform.value, "Upload initiation returned no session URL", retryable=True)
        return session_url

    async def _query_upload_status(self, client: httpx.AsyncClient, session_url: str, token: str,
                                   total: int) -> Tuple[Optional[Dict], int]:
        """Ask the session how much it has received.

        Returns ``(resource, offset)``: the finished resource if the upload is
        already complete, otherwise the byte offset to resume from.
        """
        try:
            response = await client.put(
                session_url,
                headers={"Authorization": f"Bearer {token}", "Content-Range": f"bytes */{total}", "Content-Length": "0"}
            )
        except httpx.TransportError as e:
            video_platform_logger.warning(f"Upload status query failed: {type(e).__name__}; resending from start")
            return None, 0

        if response.status_code in (200, 201):
            return response.json(), total
        if response.status_code == 308:
            received = response.headers.get("Range")
            if received and "-" in received:
                return None, int(received.rsplit("-", 1)[1]) + 1
            return None, 0
        if response.status_code == 401:
            raise CredentialExpiredError(self.platform.value, "Access token is invalid or expired. Please reconnect.")
        if response.status_code == 404:
            raise PublishError(self.platform.value, "Upload session expired", retryable=True)
        return None, 0

    def _result(self, resource: Dict) -> PublishResult:
        video_id = resource.get("id")
        if not video_id:
            raise PublishError(self.platform.value, f"No video ID in upload response: {resource}", retryable=False)
        return PublishResult(external_id=video_id, url=f"{WATCH_URL}{video_id}")

    async def publish(self, credential: Credential, content: PublishContent, metadata: PublishMetadata,
                      on_progress: Optional[ProgressCallback] = None) -> PublishResult:
        total = await content.size()
        token = credential.access_token

        async with self._client() as client:
            session_url = await self._initiate(client, token, metadata, total, content.content_type)
            video_platform_logger.info(f"Upload session created for {content.filename} ({total} bytes)")
            await report_progress(on_progress, 10)

            offset = 0
            retries = 0
            while True:
                headers = {
                    "Authorization": f"Bearer {token}",
                    "Content-Type": content.content_type,
                    "Content-Length": str(total - offset),
                }
                if offset:
                    headers["Content-Range"] = f"bytes {offset}-{total - 1}/{total}"
                try:
                    # Streamed from the blob store; a resume opens a new stream at the offset
                    response = await client.put(session_url, content=content.stream(offset), headers=headers)
                except httpx.TransportError as e:
                    failure = f"{type(e).__name__}: {e}"
                else:
                    if response.status_code in (200, 201):
                        result = self._result(response.json())
                        await report_progress(on_progress, 100)
                        video_platform_logger.info(f"Published {content.filename} as {result.external_id}")
                        return result
                    if response.status_code != 308 and response.status_code != 429 and response.status_code < 500:
                        self._raise_for_status(response, "upload")
                    failure = f"HTTP {response.status_code}"

                retries += 1
                if retries > self.max_retries:
                    raise PublishError(
                        self.platform.value,
                        f"Upload failed after {self.max_retries} retries: {failure}",
                        retryable=True
                    )

                video_platform_logger.warning(
                    f"Upload interrupted ({failure}), checking session state (retry {retries}/{self.max_retries})",
                    extra={"platform": self.platform.value, "filename": content.filename, "retry": retries}
                )
                resource, offset = await self._query_upload_status(client, session_url, token, total)
                if resource is not None:
                    result = self._result(resource)
                    await report_progress(on_progress, 100)
                    return result
                if total:
                    await report_progress(on_progress, 10 + int(offset / total * 80))

    async def fetch_insights(self, credential: Credential, external_id: str,
                             since: Optional[date] = None) -> Dict[str, int]:
        """Per-video report from the analytics API, from ``since`` through today"""
        end = datetime.now(timezone.utc).date()
        start = min(since, end) if since else end - timedelta(days=INSIGHTS_DEFAULT_DAYS)
        try:
            async with self._client() as client:
                response = await client.get(
                    VIDEO_PLATFORM_ANALYTICS_URL,
                    params={
                        "ids": "channel==MINE",
                        "startDate": start.isoformat(),
                        "endDate": end.isoformat(),
                        "metrics": ",".join(ANALYTICS_METRICS),
                        "dimensions": "video",
                        "filters": f"video=={external_id}",
                    },
                    headers={"Authorization": f"Bearer {credential.access_token}"},
                )
        except httpx.TransportError as e:
            raise PublishError(self.platform.value, f"Analytics request failed: {type(e).__name__}", retryable=True)
        if response.status_code != 200:
            self._raise_for_status(response, "analytics")

        report = response.json()
        columns = [header.get("name") for header in report.get("columnHeaders") or []]
        rows = report.get("rows") or []
        # No row until the platform has processed the first views
        values = dict(zip(columns, rows[0])) if rows else {}
        return {
            "views": int(values.get("views", 0)),
            "likes": int(values.get("likes", 0)),
            "dislikes": int(values.get("dislikes", 0)),
            "comments": int(values.get("comments", 0)),
            "shares": int(values.get("shares", 0)),
            "watch_time_seconds": int(float(values.get("estimatedMinutesWatched", 0)) * 60),
            "average_view_duration_seconds": int(float(values.get("averageViewDuration", 0))),
        }
