"""Per-post insights tests"""
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import httpx
import pytest

from crosspost.db.helpers import add_scheduled_job, get_connection, record_publish_attempt
from crosspost.services.errors import (
    AttemptNotFoundError, CredentialExpiredError, InsightsUnavailableError, PublishError
)
from crosspost.services.insights_service import get_attempt_insights
from crosspost.services.platforms import Credential, Platform
from crosspost.services.platforms.page import PagePublisher
from crosspost.services.platforms.photo import PhotoPublisher
from crosspost.services.platforms.video import VideoPublisher
from crosspost.utils.timeutil import ensure_utc

from conftest import FakePublisher, connect_platform

VIDEO = "video-platform-a"
PAGE = "page-platform-b"
PHOTO = "photo-platform-c"


def published_attempt(db_session, user, content, platform, success=True, external_id="post-1"):
    job = add_scheduled_job(user.id, content.id, [platform], datetime.now(timezone.utc) - timedelta(days=2),
                            db=db_session)
    if success:
        return record_publish_attempt(job.id, platform, True, external_id=external_id,
                                      url=f"https://example.com/{external_id}", db=db_session)
    return record_publish_attempt(job.id, platform, False, error_type="PublishError",
                                  error_detail="HTTP 400", db=db_session)


def graph_insights(*entries):
    return {"data": [{"name": name, "period": "lifetime", "values": [{"value": value}]} for name, value in entries]}


@pytest.mark.high
class TestVideoInsights:

    credential = Credential(platform=Platform.VIDEO, access_token="ya29.access")

    @pytest.mark.asyncio
    async def test_reads_report_by_column_name(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(200, json={
                "columnHeaders": [{"name": name} for name in (
                    "video", "views", "likes", "dislikes", "comments", "shares",
                    "estimatedMinutesWatched", "averageViewDuration",
                )],
                "rows": [["vid123", 120, 9, 1, 4, 2, 30.5, 41]],
            })

        publisher = VideoPublisher(transport=httpx.MockTransport(handler))
        metrics = await publisher.fetch_insights(self.credential, "vid123", since=date(2030, 1, 1))

        assert metrics == {
            "views": 120, "likes": 9, "dislikes": 1, "comments": 4, "shares": 2,
            "watch_time_seconds": 1830, "average_view_duration_seconds": 41,
        }
        params = seen["request"].url.params
        assert params["filters"] == "video==vid123"
        assert params["ids"] == "channel==MINE"
        assert params["dimensions"] == "video"
        assert seen["request"].headers["Authorization"] == "Bearer ya29.access"

    @pytest.mark.asyncio
    async def test_report_window_starts_at_publish_date(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = request.url.params
            return httpx.Response(200, json={"columnHeaders": [], "rows": []})

        publisher = VideoPublisher(transport=httpx.MockTransport(handler))
        await publisher.fetch_insights(self.credential, "vid123", since=date(2024, 3, 1))

        assert seen["params"]["startDate"] == "2024-03-01"
        assert seen["params"]["endDate"] == datetime.now(timezone.utc).date().isoformat()

    @pytest.mark.asyncio
    async def test_no_rows_yet_reports_zeros(self):
        publisher = VideoPublisher(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"columnHeaders": [{"name": "video"}], "rows": []})
        ))

        metrics = await publisher.fetch_insights(self.credential, "vid123")

        assert metrics["views"] == 0
        assert metrics["watch_time_seconds"] == 0

    @pytest.mark.asyncio
    async def test_unauthorized_requires_reconnect(self):
        publisher = VideoPublisher(transport=httpx.MockTransport(
            lambda request: httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})
        ))

        with pytest.raises(CredentialExpiredError):
            await publisher.fetch_insights(self.credential, "vid123")


@pytest.mark.high
class TestGraphInsights:

    page_credential = Credential(platform=Platform.PAGE, access_token="page-token", account_id="page-1")
    photo_credential = Credential(platform=Platform.PHOTO, access_token="page-token", account_id="ig-1")

    @pytest.mark.asyncio
    async def test_page_video_insights(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(200, json=graph_insights(
                ("total_video_views", 300), ("total_video_views_unique", 210),
                ("total_video_reactions", 25), ("total_video_comments", 6),
            ))

        publisher = PagePublisher(transport=httpx.MockTransport(handler))
        metrics = await publisher.fetch_insights(self.page_credential, "video-1")

        assert metrics == {"views": 300, "reach": 210, "likes": 25, "comments": 6, "shares": 0}
        assert seen["request"].url.path.endswith("/video-1/video_insights")
        assert "total_video_views" in seen["request"].url.params["metric"]

    @pytest.mark.asyncio
    async def test_photo_media_insights(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            payload = graph_insights(("plays", 1500), ("likes", 80), ("comments", 12), ("shares", 5),
                                     ("saved", 9), ("reach", 1100))
            payload["data"].append({"name": "total_interactions", "total_value": {"value": 106}})
            return httpx.Response(200, json=payload)

        publisher = PhotoPublisher(transport=httpx.MockTransport(handler))
        metrics = await publisher.fetch_insights(self.photo_credential, "media-1")

        assert metrics == {
            "views": 1500, "likes": 80, "comments": 12, "shares": 5,
            "saves": 9, "reach": 1100, "engagement": 106,
        }
        assert seen["request"].url.path.endswith("/media-1/insights")

    @pytest.mark.asyncio
    async def test_invalid_token_requires_reconnect(self):
        publisher = PhotoPublisher(transport=httpx.MockTransport(
            lambda request: httpx.Response(400, json={"error": {"code": 190, "message": "Session has expired"}})
        ))

        with pytest.raises(CredentialExpiredError):
            await publisher.fetch_insights(self.photo_credential, "media-1")

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        publisher = PagePublisher(transport=httpx.MockTransport(
            lambda request: httpx.Response(500, json={"error": {"code": 2, "message": "Service unavailable"}})
        ))

        with pytest.raises(PublishError) as exc_info:
            await publisher.fetch_insights(self.page_credential, "video-1")

        assert exc_info.value.retryable is True


@pytest.mark.high
class TestInsightsService:

    @pytest.mark.asyncio
    async def test_returns_metrics_and_updates_last_sync(self, db_session, test_user, test_content):
        connection = connect_platform(db_session, test_user, PAGE)
        connection.last_sync_at = datetime.now(timezone.utc) - timedelta(days=2)
        db_session.commit()
        attempt = published_attempt(db_session, test_user, test_content, PAGE, external_id="video-1")
        publisher = FakePublisher(PAGE)

        insights = await get_attempt_insights(test_user.id, attempt.id, db=db_session,
                                              publisher_factory=lambda platform: publisher)

        assert insights["metrics"] == {"views": 42, "likes": 7}
        assert insights["external_id"] == "video-1"
        assert insights["platform"] == PAGE
        credential, external_id, since = publisher.insight_calls[0]
        assert credential.access_token == "access-token"
        assert external_id == "video-1"
        assert since == ensure_utc(attempt.created_at).date()

        connection = get_connection(test_user.id, PAGE, db=db_session)
        db_session.refresh(connection)
        assert ensure_utc(connection.last_sync_at) > datetime.now(timezone.utc) - timedelta(minutes=1)
        assert insights["synced_at"] == ensure_utc(connection.last_sync_at).isoformat()

    @pytest.mark.asyncio
    async def test_failed_attempt_has_no_insights(self, db_session, test_user, test_content):
        connect_platform(db_session, test_user, PAGE)
        attempt = published_attempt(db_session, test_user, test_content, PAGE, success=False)

        with pytest.raises(InsightsUnavailableError):
            await get_attempt_insights(test_user.id, attempt.id, db=db_session,
                                       publisher_factory=lambda platform: FakePublisher(PAGE))

    @pytest.mark.asyncio
    async def test_other_users_attempt_is_not_found(self, db_session, test_user, test_user_2, test_content):
        attempt = published_attempt(db_session, test_user, test_content, PAGE)

        with pytest.raises(AttemptNotFoundError):
            await get_attempt_insights(test_user_2.id, attempt.id, db=db_session,
                                       publisher_factory=lambda platform: FakePublisher(PAGE))

    @pytest.mark.asyncio
    async def test_rejected_token_leaves_last_sync_untouched(self, db_session, test_user, test_content):
        connection = connect_platform(db_session, test_user, PHOTO)
        last_sync = datetime.now(timezone.utc) - timedelta(days=2)
        connection.last_sync_at = last_sync
        db_session.commit()
        attempt = published_attempt(db_session, test_user, test_content, PHOTO)
        error = CredentialExpiredError(PHOTO, "Access token is invalid or expired.")

        with pytest.raises(CredentialExpiredError):
            await get_attempt_insights(test_user.id, attempt.id, db=db_session,
                                       publisher_factory=lambda platform: FakePublisher(PHOTO, error=error))

        connection = get_connection(test_user.id, PHOTO, db=db_session)
        db_session.refresh(connection)
        assert abs(ensure_utc(connection.last_sync_at) - last_sync) < timedelta(seconds=1)


@pytest.mark.high
class TestInsightsApi:

    def test_unknown_attempt_is_not_found(self, authenticated_client):
        assert authenticated_client.get("/api/attempts/999/insights").status_code == 404

    def test_failed_attempt_conflicts(self, authenticated_client, db_session, test_user, test_content):
        connect_platform(db_session, test_user, PAGE)
        attempt = published_attempt(db_session, test_user, test_content, PAGE, success=False)

        assert authenticated_client.get(f"/api/attempts/{attempt.id}/insights").status_code == 409

    def test_returns_insights(self, authenticated_client, db_session, test_user, test_content):
        connect_platform(db_session, test_user, PAGE)
        attempt = published_attempt(db_session, test_user, test_content, PAGE, external_id="video-1")

        with patch("crosspost.services.insights_service.get_publisher", return_value=FakePublisher(PAGE)):
            response = authenticated_client.get(f"/api/attempts/{attempt.id}/insights")

        assert response.status_code == 200
        body = response.json()
        assert body["attempt_id"] == attempt.id
        assert body["metrics"] == {"views": 42, "likes": 7}

    def test_platform_failure_is_bad_gateway(self, authenticated_client, db_session, test_user, test_content):
        connect_platform(db_session, test_user, PAGE)
        attempt = published_attempt(db_session, test_user, test_content, PAGE)
        error = PublishError(PAGE, "video insights failed: HTTP 500", retryable=True)

        with patch("crosspost.services.insights_service.get_publisher", return_value=FakePublisher(PAGE, error=error)):
            response = authenticated_client.get(f"/api/attempts/{attempt.id}/insights")

        assert response.status_code == 502
