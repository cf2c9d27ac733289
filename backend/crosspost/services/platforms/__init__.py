"""Platform integrations: OAuth exchangers and publishers"""
from crosspost.services.platforms.base import (
    ALL_PLATFORMS, AccountInfo, Credential, OAuthExchanger, Platform, PlatformPublisher,
    PublishContent, PublishMetadata, PublishResult, TokenGrant, parse_platform
)
from crosspost.services.platforms.registry import get_exchanger, get_publisher

__all__ = [
    "ALL_PLATFORMS", "AccountInfo", "Credential", "OAuthExchanger", "Platform", "PlatformPublisher",
    "PublishContent", "PublishMetadata", "PublishResult", "TokenGrant", "parse_platform",
    "get_exchanger", "get_publisher",
]
