"""Data models passed between crawler components."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from fmtc_crawler.config import CrawlerConfig


class DisplayFilter(str, Enum):
    """Search display filter. Values map to the radio button values on the form."""
    ALL = "all"
    ACCEPTING = "accepting"
    NOT_ACCEPTING = "not_accepting"

    @property
    def radio_value(self) -> str:
        return {"all": "0", "accepting": "1", "not_accepting": "2"}[self.value]


class NetworkStatus(str, Enum):
    """Relationship between the account and a merchant on one network."""
    JOINED = "joined"
    NOT_JOINED = "not_joined"
    UNVERIFIED = "unverified"


class CaptchaMethod(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"
    SKIP = "skip"


@dataclass(frozen=True)
class Credentials:
    """Portal account credentials."""

    username: str
    password: str = field(repr=False)


@dataclass
class SessionState:
    """Authenticated browser state captured after login.

    Serialized form matches Playwright's storage state layout with an
    added capture timestamp, so it can be fed back into ``add_cookies``
    and local storage seeding unchanged.
    """

    cookies: List[Dict[str, Any]] = field(default_factory=list)
    origins: List[Dict[str, Any]] = field(default_factory=list)
    captured_at: Optional[datetime] = None
    identity: Optional[str] = None

    def __post_init__(self):
        if self.captured_at is None:
            self.captured_at = datetime.now()

    def is_expired(self, max_age_hours: float = 4) -> bool:
        """Check if the state is older than the allowed max age."""
        return datetime.now() - self.captured_at > timedelta(hours=max_age_hours)

    def local_storage_for(self, origin: str) -> List[Dict[str, str]]:
        for entry in self.origins:
            if entry.get("origin") == origin:
                return list(entry.get("localStorage", []))
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the persisted session record."""
        return {
            "cookies": self.cookies,
            "origins": self.origins,
            "capturedAt": self.captured_at.isoformat(),
            "identity": self.identity,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionState":
        """Deserialize from a persisted session record."""
        captured_at = None
        if data.get("capturedAt"):
            captured_at = datetime.fromisoformat(data["capturedAt"])

        return cls(
            cookies=data.get("cookies", []),
            origins=data.get("origins", []),
            captured_at=captured_at,
            identity=data.get("identity"),
        )


@dataclass(frozen=True)
class SearchParams:
    """Input for one search form submission."""

    free_text: Optional[str] = None
    network_id: Optional[str] = None
    provider_id: Optional[str] = None
    category: Optional[str] = None
    country: Optional[str] = None
    ship_to_country: Optional[str] = None
    display_filter: DisplayFilter = DisplayFilter.ALL

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchParams":
        values = {k: data.get(k) for k in (
            "free_text", "network_id", "provider_id", "category",
            "country", "ship_to_country",
        )}
        values = {k: str(v) for k, v in values.items() if v not in (None, "")}
        return cls(
            display_filter=DisplayFilter(data.get("display_filter", "all")),
            **values,
        )


@dataclass(frozen=True)
class MerchantSummary:
    """One row of the program directory table."""

    id: str
    name: str
    country: str = ""
    network: str = ""
    date_added: str = ""
    detail_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "country": self.country,
            "network": self.network,
            "date_added": self.date_added,
            "detail_url": self.detail_url,
        }


@dataclass(frozen=True)
class ParsedResultPage:
    """Merchants and paging metadata parsed from one results page."""

    merchants: List[MerchantSummary]
    total_count: int
    current_page: int
    has_next_page: bool
    page_size: int = 0


@dataclass(frozen=True)
class NetworkAssociation:
    """A merchant's program on one affiliate network."""

    network_name: str
    network_id: str
    status: NetworkStatus
    join_url: Optional[str] = None
    fmtc_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "network_name": self.network_name,
            "network_id": self.network_id,
            "status": self.status.value,
            "join_url": self.join_url,
            "fmtc_id": self.fmtc_id,
        }


@dataclass
class MerchantDetail:
    """Fields extracted from a merchant detail page."""

    source_url: str
    name: Optional[str] = None
    homepage: Optional[str] = None
    primary_category: Optional[str] = None
    primary_country: Optional[str] = None
    ships_to: List[str] = field(default_factory=list)
    fmtc_id: Optional[str] = None
    fresh_reach_supported: bool = False
    fresh_reach_urls: List[str] = field(default_factory=list)
    logo_url: Optional[str] = None
    logo_urls: Dict[str, str] = field(default_factory=dict)
    screenshot_urls: Dict[str, str] = field(default_factory=dict)
    affiliate_url: Optional[str] = None
    affiliate_links: Dict[str, List[str]] = field(default_factory=dict)
    preview_deals_url: Optional[str] = None
    networks: List[NetworkAssociation] = field(default_factory=list)
    downloaded_images: Dict[str, str] = field(default_factory=dict)
    extraction_errors: List[str] = field(default_factory=list)

    @property
    def primary_network(self) -> Optional[NetworkAssociation]:
        return self.networks[0] if self.networks else None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "source_url": self.source_url,
            "name": self.name,
            "homepage": self.homepage,
            "primary_category": self.primary_category,
            "primary_country": self.primary_country,
            "ships_to": self.ships_to,
            "fmtc_id": self.fmtc_id,
            "fresh_reach_supported": self.fresh_reach_supported,
            "fresh_reach_urls": self.fresh_reach_urls,
            "logo_url": self.logo_url,
            "logo_urls": self.logo_urls,
            "screenshot_urls": self.screenshot_urls,
            "affiliate_url": self.affiliate_url,
            "affiliate_links": self.affiliate_links,
            "preview_deals_url": self.preview_deals_url,
            "networks": [n.to_dict() for n in self.networks],
            "downloaded_images": self.downloaded_images,
            "extraction_errors": self.extraction_errors,
        }


@dataclass
class CaptchaOutcome:
    """Result of handling one challenge encounter."""

    success: bool
    method: CaptchaMethod
    error: Optional[str] = None
    duration_ms: int = 0
    cost_cents: Optional[float] = None


@dataclass(frozen=True)
class MerchantTarget:
    """A single merchant to refresh, addressed by URL or portal id."""

    merchant_url: Optional[str] = None
    merchant_id: Optional[str] = None
    merchant_name: Optional[str] = None

    def resolve_url(self, base_url: str) -> str:
        if self.merchant_url:
            return self.merchant_url
        if self.merchant_id:
            return f"{base_url}/cp/program_directory/m/{self.merchant_id}/"
        raise ValueError("merchant_url or merchant_id is required")

    @property
    def label(self) -> str:
        return self.merchant_name or self.merchant_id or self.merchant_url or "?"


@dataclass
class JobDescriptor:
    """What one crawl job should do."""

    credentials: Credentials
    execution_id: str
    search_params: Optional[SearchParams] = None
    targets: List[MerchantTarget] = field(default_factory=list)
    download_images: bool = False

    @property
    def is_direct(self) -> bool:
        """True when the job refreshes known merchants instead of searching."""
        return bool(self.targets)


@dataclass
class JobExecutionContext:
    """Everything a component needs for one run, owned by the orchestrator."""

    credentials: Credentials
    execution_id: str
    config: CrawlerConfig
    reporter: Any
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class MerchantFailure:
    """A merchant whose detail fetch failed."""

    target: str
    error_type: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"target": self.target, "error_type": self.error_type, "message": self.message}


@dataclass
class JobResult:
    """Outcome of one job. Always produced, never raised."""

    success: bool
    execution_id: str
    final_state: str
    merchants: List[MerchantDetail] = field(default_factory=list)
    failures: List[MerchantFailure] = field(default_factory=list)
    error: Optional[str] = None
    merchant_url: Optional[str] = None
    pages_processed: int = 0
    cancelled: bool = False
    scraped_at: datetime = field(default_factory=datetime.now)
    processing_time_ms: int = 0

    @property
    def merchant_data(self) -> Optional[MerchantDetail]:
        return self.merchants[0] if self.merchants else None

    @property
    def completed(self) -> int:
        return len(self.merchants)

    @property
    def failed(self) -> int:
        return len(self.failures)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "success": self.success,
            "execution_id": self.execution_id,
            "final_state": self.final_state,
            "merchant_url": self.merchant_url,
            "merchants": [m.to_dict() for m in self.merchants],
            "completed": self.completed,
            "failed": self.failed,
            "failures": [f.to_dict() for f in self.failures],
            "error": self.error,
            "pages_processed": self.pages_processed,
            "cancelled": self.cancelled,
            "scraped_at": self.scraped_at.isoformat(),
            "processing_time_ms": self.processing_time_ms,
        }
