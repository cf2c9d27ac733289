"""Page platform (Graph OAuth, single-call multipart video upload)"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import httpx

from crosspost.core.config import GRAPH_API_URL, PAGE_PLATFORM_SCOPES
from crosspost.services.errors import AuthExchangeError, CredentialExpiredError, PublishError
from crosspost.services.platforms.base import (
    AccountInfo, Credential, Platform, PlatformPublisher, ProgressCallback,
    PublishContent, PublishMetadata, PublishResult, report_progress
)
from crosspost.services.platforms.graph import GraphOAuthExchanger, graph_request, metric_values

page_platform_logger = logging.getLogger("page_platform")

POST_URL = "https://www.facebook.com/"

INSIGHT_METRICS = {
    "total_video_views": "views",
    "total_video_views_unique": "reach",
    "total_video_reactions": "likes",
    "total_video_comments": "comments",
    "total_video_shares": "shares",
}


class PageOAuthExchanger(GraphOAuthExchanger):
    platform = Platform.PAGE
    scopes = PAGE_PLATFORM_SCOPES

    def _select_account(self, pages: List[Dict[str, Any]], account_id: Optional[str] = None) -> Tuple[str, AccountInfo]:
        if account_id:
            pages = [page for page in pages if page.get("id") == account_id]
        if not pages:
            raise AuthExchangeError(self.platform.value, "No manageable page found for this account")
        page = pages[0]
        if not page.get("access_token"):
            raise AuthExchangeError(self.platform.value, f"No page access token returned for page {page.get('id')}")
        return page["access_token"], AccountInfo(account_id=page["id"], name=page.get("name"))


class PagePublisher(PlatformPublisher):
    """Uploads the video to the page in one multipart request.

    A native ``scheduled_publish_time`` in the page options is passed through
    as-is; the platform then holds the post unpublished until that time and
    the job is complete as soon as the upload is accepted.
    """

    platform = Platform.PAGE

    async def publish(self, credential: Credential, content: PublishContent, metadata: PublishMetadata,
                      on_progress: Optional[ProgressCallback] = None) -> PublishResult:
        if not credential.account_id:
            raise CredentialExpiredError(self.platform.value, "No page selected. Please reconnect.")

        data = await content.read()
        await report_progress(on_progress, 20)

        form = {
            "title": metadata.title or "",
            "description": metadata.description or metadata.caption or "",
        }
        scheduled_publish_time = metadata.options.get("scheduled_publish_time")
        if scheduled_publish_time:
            form["published"] = "false"
            form["scheduled_publish_time"] = str(scheduled_publish_time)

        page_platform_logger.info(f"Uploading {content.filename} ({len(data)} bytes) to page {credential.account_id}")

        async with self._client() as client:
            result = await graph_request(
                client, "POST", f"{GRAPH_API_URL}/{credential.account_id}/videos",
                self.platform.value, "video upload",
                context={"page_id": credential.account_id, "filename": content.filename},
                data=form,
                files={"source": (content.filename, data, content.content_type)},
                headers={"Authorization": f"Bearer {credential.access_token}"},
            )

        video_id = result.get("id")
        if not video_id:
            raise PublishError(self.platform.value, f"No video ID in upload response: {result}", retryable=False)

        await report_progress(on_progress, 100)
        page_platform_logger.info(f"Published {content.filename} to page as {video_id}")
        return PublishResult(external_id=video_id, url=f"{POST_URL}{video_id}")

    async def fetch_insights(self, credential: Credential, external_id: str,
                             since: Optional[date] = None) -> Dict[str, int]:
        # Lifetime video metrics; the period is fixed by the platform
        async with self._client() as client:
            payload = await graph_request(
                client, "GET", f"{GRAPH_API_URL}/{external_id}/video_insights",
                self.platform.value, "video insights",
                context={"video_id": external_id},
                params={"metric": ",".join(INSIGHT_METRICS)},
                headers={"Authorization": f"Bearer {credential.access_token}"},
            )
        return metric_values(payload, INSIGHT_METRICS)
