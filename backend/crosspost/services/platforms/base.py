"""Shared types and interface contracts for platform integrations"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from crosspost.core.config import settings
from crosspost.services.errors import InvalidPlatformError


class Platform(str, Enum):
    """Supported publishing destinations"""
    VIDEO = "video-platform-a"
    PAGE = "page-platform-b"
    PHOTO = "photo-platform-c"


ALL_PLATFORMS = (Platform.VIDEO, Platform.PAGE, Platform.PHOTO)


def parse_platform(value) -> Platform:
    """Convert a raw identifier into a Platform, raising InvalidPlatformError if unknown"""
    if isinstance(value, Platform):
        return value
    try:
        return Platform(value)
    except ValueError:
        raise InvalidPlatformError(f"Unknown platform: {value}")


# Async callback receiving a 0-100 progress percentage
ProgressCallback = Callable[[int], Awaitable[None]]


@dataclass
class TokenGrant:
    """Result of a code exchange, extension or refresh"""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: List[str] = field(default_factory=list)
    # Graph platforms publish with a page token but renew with the long-lived user token
    user_access_token: Optional[str] = None


@dataclass
class AccountInfo:
    account_id: str
    name: Optional[str] = None
    handle: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Credential:
    """A decrypted, ready-to-use platform credential"""
    platform: Platform
    access_token: str
    account_id: Optional[str] = None
    refresh_token: Optional[str] = None
    user_access_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PublishMetadata:
    title: str
    description: str = ""
    caption: str = ""
    tags: List[str] = field(default_factory=list)
    privacy_status: str = "public"
    cover_url: Optional[str] = None
    # Platform-specific pass-through values (e.g. native scheduled_publish_time)
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PublishContent:
    """The media being published, backed by the blob store"""
    object_key: str
    filename: str
    content_type: str
    store: Any

    async def read(self) -> bytes:
        return await self.store.read(self.object_key)

    async def size(self) -> int:
        return await self.store.size(self.object_key)

    def stream(self, start: int = 0) -> AsyncIterator[bytes]:
        return self.store.stream(self.object_key, start)

    def public_url(self) -> str:
        return self.store.public_url(self.object_key)


@dataclass
class PublishResult:
    external_id: str
    url: str


def callback_url(platform: Platform) -> str:
    """OAuth redirect URI registered with each platform"""
    return f"{settings.BACKEND_URL}/api/auth/{platform.value}/callback"


class OAuthExchanger(ABC):
    """Interface contract for a platform's OAuth flow.

    ``complete`` performs the whole post-callback sequence for the platform
    (exchange, mandatory extension where applicable, account lookup) and
    returns the credential to store. ``renew`` picks refresh or extension
    so callers never need to branch on platform.
    """

    platform: Platform
    renewal_window: timedelta

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=settings.OAUTH_HTTP_TIMEOUT_SECONDS, transport=self._transport)

    @property
    def redirect_uri(self) -> str:
        return callback_url(self.platform)

    @abstractmethod
    def build_authorization_url(self, state: str) -> str:
        """Return the consent URL carrying the signed state"""

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenGrant:
        """Trade an authorization code for tokens.

        Raises:
            AuthExchangeError: If the platform rejects the code
        """

    @abstractmethod
    async def fetch_account(self, grant: TokenGrant) -> Tuple[TokenGrant, AccountInfo]:
        """Look up the connected account, returning the credential to publish with"""

    @abstractmethod
    async def renew(self, credential: Credential) -> TokenGrant:
        """Obtain a fresh credential from the stored renewal material"""

    async def complete(self, code: str) -> Tuple[TokenGrant, AccountInfo]:
        grant = await self.exchange_code(code)
        return await self.fetch_account(grant)


class PlatformPublisher(ABC):
    """Interface contract for publishing one piece of content to one platform"""

    platform: Platform

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=settings.PUBLISH_HTTP_TIMEOUT_SECONDS, transport=self._transport)

    @abstractmethod
    async def publish(
        self,
        credential: Credential,
        content: PublishContent,
        metadata: PublishMetadata,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PublishResult:
        """Publish the content and return the platform's id and public URL.

        Raises:
            PublishError: If the platform rejects or fails the publish
            CredentialExpiredError: If the platform reports the token invalid
        """

    @abstractmethod
    async def fetch_insights(self, credential: Credential, external_id: str,
                             since: Optional[date] = None) -> Dict[str, int]:
        """Engagement counters for a published post, keyed by metric name.

        Metrics the platform does not report for the post are returned as 0.
        """


async def report_progress(on_progress: Optional[ProgressCallback], percent: int) -> None:
    if on_progress is not None:
        await on_progress(percent)
