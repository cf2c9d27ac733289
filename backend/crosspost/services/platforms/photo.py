"""Photo platform (Graph OAuth, container create / poll / publish)"""

import asyncio
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import httpx

from crosspost.core.config import settings, GRAPH_API_URL, PHOTO_PLATFORM_SCOPES
from crosspost.services.errors import AuthExchangeError, CredentialExpiredError, PublishError
from crosspost.services.platforms.base import (
    AccountInfo, Credential, Platform, PlatformPublisher, ProgressCallback,
    PublishContent, PublishMetadata, PublishResult, report_progress
)
from crosspost.services.platforms.graph import (
    GraphOAuthExchanger, graph_request, metric_values, raise_for_graph_error
)

photo_platform_logger = logging.getLogger("photo_platform")

REEL_URL = "https://www.instagram.com/reel/"
MAX_CAPTION_LENGTH = 2200

STATUS_FINISHED = "FINISHED"
STATUS_ERROR = "ERROR"
STATUS_EXPIRED = "EXPIRED"

INSIGHT_METRICS = {
    "plays": "views",
    "likes": "likes",
    "comments": "comments",
    "shares": "shares",
    "saved": "saves",
    "reach": "reach",
    "total_interactions": "engagement",
}


class PhotoOAuthExchanger(GraphOAuthExchanger):
    platform = Platform.PHOTO
    scopes = PHOTO_PLATFORM_SCOPES

    def _select_account(self, pages: List[Dict[str, Any]], account_id: Optional[str] = None) -> Tuple[str, AccountInfo]:
        linked = [page for page in pages if page.get("instagram_business_account")]
        if account_id:
            linked = [page for page in linked if page["instagram_business_account"].get("id") == account_id]
        if not linked:
            raise AuthExchangeError(
                self.platform.value,
                "No business account linked to any of your pages. Link one in your page settings and reconnect."
            )
        page = linked[0]
        business = page["instagram_business_account"]
        if not page.get("access_token"):
            raise AuthExchangeError(self.platform.value, f"No page access token returned for page {page.get('id')}")
        account = AccountInfo(
            account_id=business["id"],
            name=business.get("name") or business.get("username"),
            handle=business.get("username"),
            extra={"page_id": page.get("id"), "avatar_url": business.get("profile_picture_url")},
        )
        return page["access_token"], account


class PhotoPublisher(PlatformPublisher):
    """Asynchronous publish protocol.

    1. Create a media container pointing at the public video URL.
    2. Poll the container's ``status_code`` until FINISHED, ERROR or EXPIRED.
    3. Publish the finished container.

    The publish call is never made for a container that did not finish.
    """

    platform = Platform.PHOTO

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None,
                 poll_interval: Optional[float] = None, max_polls: Optional[int] = None):
        super().__init__(transport)
        self.poll_interval = settings.PHOTO_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.max_polls = settings.PHOTO_POLL_MAX_ATTEMPTS if max_polls is None else max_polls

    async def _create_container(self, client: httpx.AsyncClient, credential: Credential,
                                content: PublishContent, metadata: PublishMetadata) -> str:
        caption = (metadata.caption or metadata.title or "")[:MAX_CAPTION_LENGTH]
        params = {
            "media_type": "REELS",
            "video_url": content.public_url(),
            "caption": caption,
            "share_to_feed": bool(metadata.options.get("share_to_feed", True)),
        }
        if metadata.cover_url:
            params["cover_url"] = metadata.cover_url
        if metadata.options.get("location_id"):
            params["location_id"] = metadata.options["location_id"]

        result = await graph_request(
            client, "POST", f"{GRAPH_API_URL}/{credential.account_id}/media",
            self.platform.value, "create container",
            context={"business_account_id": credential.account_id, "filename": content.filename},
            json=params,
            headers={"Authorization": f"Bearer {credential.access_token}"},
        )
        container_id = result.get("id")
        if not container_id:
            raise PublishError(self.platform.value, f"No container ID in response: {result}", retryable=True)
        return container_id

    async def _container_status(self, client: httpx.AsyncClient, credential: Credential,
                                container_id: str) -> Optional[str]:
        """Return the container status, or None when this poll hit a transient error"""
        try:
            response = await client.get(
                f"{GRAPH_API_URL}/{container_id}",
                params={"fields": "status_code"},
                headers={"Authorization": f"Bearer {credential.access_token}"},
            )
        except httpx.TransportError as e:
            photo_platform_logger.warning(f"Container {container_id} status poll failed: {type(e).__name__}")
            return None
        if response.status_code == 429 or response.status_code >= 500:
            photo_platform_logger.warning(f"Container {container_id} status poll returned HTTP {response.status_code}")
            return None
        raise_for_graph_error(response, self.platform.value, "container status", {"container_id": container_id})
        return response.json().get("status_code")

    async def _wait_until_finished(self, client: httpx.AsyncClient, credential: Credential,
                                   container_id: str, on_progress: Optional[ProgressCallback]) -> None:
        for attempt in range(1, self.max_polls + 1):
            status_code = await self._container_status(client, credential, container_id)
            photo_platform_logger.info(f"Container {container_id} status (poll {attempt}/{self.max_polls}): {status_code}")

            if status_code == STATUS_FINISHED:
                await report_progress(on_progress, 100)
                return
            if status_code == STATUS_ERROR:
                raise PublishError(self.platform.value, "Container processing failed", retryable=False)
            if status_code == STATUS_EXPIRED:
                raise PublishError(self.platform.value, "Container expired before it could be published", retryable=True)

            await report_progress(on_progress, min(90, int(attempt / self.max_polls * 90)))
            if attempt < self.max_polls:
                await asyncio.sleep(self.poll_interval)

        raise PublishError(
            self.platform.value,
            f"Container did not finish processing after {self.max_polls} polls",
            retryable=True
        )

    async def publish(self, credential: Credential, content: PublishContent, metadata: PublishMetadata,
                      on_progress: Optional[ProgressCallback] = None) -> PublishResult:
        if not credential.account_id:
            raise CredentialExpiredError(self.platform.value, "No business account ID. Please reconnect.")

        async with self._client() as client:
            container_id = await self._create_container(client, credential, content, metadata)
            photo_platform_logger.info(f"Created container {container_id} for {content.filename}")
            await report_progress(on_progress, 0)

            await self._wait_until_finished(client, credential, container_id, on_progress)

            result = await graph_request(
                client, "POST", f"{GRAPH_API_URL}/{credential.account_id}/media_publish",
                self.platform.value, "publish media",
                context={"container_id": container_id},
                json={"creation_id": container_id},
                headers={"Authorization": f"Bearer {credential.access_token}"},
            )

        media_id = result.get("id")
        if not media_id:
            raise PublishError(self.platform.value, f"No media ID in publish response: {result}", retryable=False)

        photo_platform_logger.info(f"Published container {container_id} as {media_id}")
        return PublishResult(external_id=media_id, url=f"{REEL_URL}{media_id}")

    async def fetch_insights(self, credential: Credential, external_id: str,
                             since: Optional[date] = None) -> Dict[str, int]:
        async with self._client() as client:
            payload = await graph_request(
                client, "GET", f"{GRAPH_API_URL}/{external_id}/insights",
                self.platform.value, "media insights",
                context={"media_id": external_id},
                params={"metric": ",".join(INSIGHT_METRICS)},
                headers={"Authorization": f"Bearer {credential.access_token}"},
            )
        return metric_values(payload, INSIGHT_METRICS)
