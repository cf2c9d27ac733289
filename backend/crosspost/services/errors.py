"""Typed errors raised by the publishing services"""
from typing import Optional


class CrosspostError(Exception):
    """Base class for all service errors"""


class ConfigurationError(CrosspostError):
    """Platform app credentials or required settings are missing"""


class AuthExchangeError(CrosspostError):
    """A code exchange, token extension or refresh was rejected by the platform"""

    def __init__(self, platform: str, detail: str, status_code: Optional[int] = None):
        self.platform = platform
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"{platform}: {detail}")


class OAuthStateError(CrosspostError):
    """The OAuth state parameter is malformed, forged, expired or already used"""


class CredentialExpiredError(CrosspostError):
    """No usable credential exists; the user has to reconnect the platform"""

    def __init__(self, platform: str, detail: str = "Reconnect required"):
        self.platform = platform
        self.detail = detail
        super().__init__(f"{platform}: {detail}")


class PublishError(CrosspostError):
    """A platform rejected or failed a publish.

    ``retryable`` tells the user whether resubmitting the same content is
    likely to succeed (rate limits, timeouts, server errors) or not
    (validation errors, processing failures).
    """

    def __init__(self, platform: str, detail: str, retryable: bool = False):
        self.platform = platform
        self.detail = detail
        self.retryable = retryable
        super().__init__(f"{platform}: {detail}")


class JobNotFoundError(CrosspostError):
    """The job does not exist or belongs to another user"""


class ContentNotFoundError(CrosspostError):
    """The content does not exist or belongs to another user"""


class InvalidJobTransitionError(CrosspostError):
    """The requested status change is not allowed from the job's current status"""


class InvalidPlatformError(CrosspostError):
    """A platform identifier is unknown"""


class AttemptNotFoundError(CrosspostError):
    """The publish attempt does not exist or belongs to another user"""


class InsightsUnavailableError(CrosspostError):
    """The attempt has no published post to report on"""
