"""FMTC program directory crawler with anti-detection."""

__version__ = "0.1.0"

from fmtc_crawler.config import (
    BehaviorConfig,
    CaptchaConfig,
    CrawlerConfig,
    SessionConfig,
)
from fmtc_crawler.errors import (
    AntiBotError,
    ChallengeError,
    ConfigurationError,
    CrawlerError,
    ExtractionError,
    LoginError,
    NavigationError,
)
from fmtc_crawler.models import (
    Credentials,
    DisplayFilter,
    JobDescriptor,
    JobResult,
    MerchantDetail,
    MerchantSummary,
    MerchantTarget,
    NetworkAssociation,
    ParsedResultPage,
    SearchParams,
    SessionState,
)
from fmtc_crawler.orchestrator import CrawlOrchestrator, CrawlState
from fmtc_crawler.single_merchant import MerchantRefresher, refresh_merchant

__all__ = [
    # Core
    "CrawlOrchestrator",
    "CrawlState",
    "MerchantRefresher",
    "refresh_merchant",
    # Config
    "BehaviorConfig",
    "CaptchaConfig",
    "CrawlerConfig",
    "SessionConfig",
    # Errors
    "AntiBotError",
    "ChallengeError",
    "ConfigurationError",
    "CrawlerError",
    "ExtractionError",
    "LoginError",
    "NavigationError",
    # Models
    "Credentials",
    "DisplayFilter",
    "JobDescriptor",
    "JobResult",
    "MerchantDetail",
    "MerchantSummary",
    "MerchantTarget",
    "NetworkAssociation",
    "ParsedResultPage",
    "SearchParams",
    "SessionState",
]
