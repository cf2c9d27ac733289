"""Platform exchanger and publisher registry"""

from typing import Optional

import httpx

from crosspost.services.platforms.base import OAuthExchanger, Platform, PlatformPublisher, parse_platform
from crosspost.services.platforms.page import PageOAuthExchanger, PagePublisher
from crosspost.services.platforms.photo import PhotoOAuthExchanger, PhotoPublisher
from crosspost.services.platforms.video import VideoOAuthExchanger, VideoPublisher

OAUTH_EXCHANGERS = {
    Platform.VIDEO: VideoOAuthExchanger,
    Platform.PAGE: PageOAuthExchanger,
    Platform.PHOTO: PhotoOAuthExchanger,
}

PLATFORM_PUBLISHERS = {
    Platform.VIDEO: VideoPublisher,
    Platform.PAGE: PagePublisher,
    Platform.PHOTO: PhotoPublisher,
}


def get_exchanger(platform, transport: Optional[httpx.AsyncBaseTransport] = None) -> OAuthExchanger:
    return OAUTH_EXCHANGERS[parse_platform(platform)](transport=transport)


def get_publisher(platform, transport: Optional[httpx.AsyncBaseTransport] = None) -> PlatformPublisher:
    return PLATFORM_PUBLISHERS[parse_platform(platform)](transport=transport)
