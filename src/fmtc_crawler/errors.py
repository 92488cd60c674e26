"""
Exception taxonomy for the FMTC crawler.

Every component raises one of these types at its boundary. The
orchestrator converts them into structured results so that a job
always resolves.
"""
from enum import Enum
from typing import Optional


class CrawlerError(Exception):
    """Base class for all crawler errors."""

    retryable = False


class ConfigurationError(CrawlerError):
    """Missing credentials, API key or otherwise invalid configuration."""


class ChallengeError(CrawlerError):
    """A CAPTCHA challenge is present and could not be resolved.

    Raised only after the resolution service has used its own retries.
    """


class NavigationError(CrawlerError):
    """A page could not be reached or did not load within its timeout."""

    retryable = True

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class AntiBotError(NavigationError):
    """A block page was detected and local recovery did not clear it."""


class ExtractionError(CrawlerError):
    """A field or section could not be extracted from a page."""


class LoginFailureReason(str, Enum):
    """Classified reason for a failed login attempt."""
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    CAPTCHA_REQUIRED = "captcha_required"
    SESSION_EXPIRED = "session_expired"
    ACCESS_DENIED = "access_denied"
    UNKNOWN = "unknown"


class LoginError(CrawlerError):
    """Authentication against the portal failed. Terminal for a job."""

    def __init__(
        self,
        message: str,
        reason: LoginFailureReason = LoginFailureReason.UNKNOWN,
    ):
        super().__init__(message)
        self.reason = reason
