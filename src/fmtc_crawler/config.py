"""
Crawler configuration.

All tunables are immutable pydantic models built once at job start and
passed explicitly to every component. Environment variables and YAML job
files are only read here, by ``CrawlerConfig.from_env`` and
``load_job_file``, which the CLI calls.
"""
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, model_validator

from fmtc_crawler.errors import ConfigurationError

logger = logging.getLogger(__name__)


BASE_URL = "https://account.fmtc.co"
LOGIN_PATH = "/cp/login"
DASHBOARD_PATH = "/cp/dash"
DIRECTORY_PATH = "/cp/program_directory/index"
DEFAULT_LIST_PATH = "/cp/program_directory/index/net/0/opm/0/cntry/0/cat/2/unsmrch/0"

# Label -> numeric code used by the directory's category control.
CATEGORY_MAP: Dict[str, str] = {
    "Accessories": "1",
    "Clothing": "2",
    "Automotive": "3",
    "Baby & Toddler": "4",
    "Beauty": "5",
    "Books & Media": "6",
    "Business": "7",
    "Computers & Electronics": "8",
    "Education": "9",
    "Entertainment": "10",
    "Financial Services": "11",
    "Food & Drink": "12",
    "Gifts & Flowers": "13",
    "Health & Wellness": "14",
    "Home & Garden": "15",
    "Jewelry": "16",
    "Office Supplies": "17",
    "Pets": "18",
    "Shoes": "19",
    "Sports & Outdoors": "20",
    "Telecommunications": "21",
    "Toys & Games": "22",
    "Travel": "23",
    "Department Stores": "24",
}

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class BehaviorConfig(BaseModel):
    """Human-behavior simulation and anti-bot heuristics."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(
        default=True,
        description="Run pauses, scrolls and mouse movement. Disable for fast/test runs."
    )
    reading_pause_seconds: Tuple[float, float] = Field(
        default=(3.0, 7.0),
        description="Range of the 'reading' pause before interacting with a page"
    )
    scroll_fraction: Tuple[float, float] = Field(
        default=(0.2, 0.5),
        description="Fraction of the viewport height scrolled per behavior pass"
    )
    mouse_steps: Tuple[int, int] = Field(
        default=(5, 15),
        description="Number of intermediate points on a mouse path"
    )
    mouse_step_delay_ms: Tuple[int, int] = Field(
        default=(5, 50),
        description="Delay between mouse path steps"
    )
    keystroke_delay_ms: Tuple[int, int] = Field(
        default=(50, 150),
        description="Delay between typed characters"
    )
    cooldown_window_seconds: float = Field(
        default=30.0,
        description="Requests closer together than this count as consecutive",
        ge=0
    )
    cooldown_base_seconds: float = Field(default=2.0, ge=0)
    cooldown_increment_seconds: float = Field(
        default=1.0,
        description="Added to the cooldown for every consecutive request",
        ge=0
    )
    cooldown_max_seconds: float = Field(default=30.0, ge=0)
    timing_variation_factor: float = Field(
        default=0.4,
        description="Upper bound of the random multiplier applied to cooldowns",
        ge=0,
        le=2.0
    )
    min_content_length: int = Field(
        default=1000,
        description="Visible text shorter than this is treated as a possible block page",
        ge=0
    )
    recovery_wait_seconds: Tuple[float, float] = Field(
        default=(3.0, 5.0),
        description="Wait before the first anti-bot recovery reload"
    )
    recovery_long_wait_seconds: Tuple[float, float] = Field(
        default=(5.0, 8.0),
        description="Wait after clearing cookies before the second recovery reload"
    )
    recovery_settle_seconds: Tuple[float, float] = Field(default=(2.0, 3.0))

    @model_validator(mode="after")
    def _check_ranges(self) -> "BehaviorConfig":
        for name in ("reading_pause_seconds", "scroll_fraction", "mouse_steps",
                     "mouse_step_delay_ms", "keystroke_delay_ms",
                     "recovery_wait_seconds", "recovery_long_wait_seconds",
                     "recovery_settle_seconds"):
            low, high = getattr(self, name)
            if low > high:
                raise ValueError(f"{name}: lower bound {low} exceeds upper bound {high}")
        return self


class CaptchaConfig(BaseModel):
    """CAPTCHA resolution settings."""

    model_config = ConfigDict(frozen=True)

    mode: Literal["manual", "auto", "skip"] = Field(
        default="manual",
        description="manual waits for an operator, auto uses 2Captcha, skip does nothing"
    )
    manual_timeout: float = Field(default=120.0, description="Seconds to wait for an operator", gt=0)
    auto_timeout: float = Field(default=180.0, description="Seconds to wait for the solving API", gt=0)
    first_poll_delay: float = Field(default=20.0, ge=0)
    poll_interval: float = Field(default=5.0, gt=0)
    api_key: Optional[str] = Field(default=None, repr=False)
    api_base: str = Field(default="https://2captcha.com")
    soft_id: int = Field(default=4580)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_delay: float = Field(default=5.0, ge=0)
    min_token_length: int = Field(default=100, ge=0)
    token_settle_seconds: float = Field(
        default=3.0,
        description="Wait after injecting a solved token so the page can react",
        ge=0
    )
    cost_cents_per_solve: float = Field(default=0.1, ge=0)


class SessionConfig(BaseModel):
    """Session persistence settings."""

    model_config = ConfigDict(frozen=True)

    max_age_hours: float = Field(default=4.0, gt=0)
    session_dir: Path = Field(default=Path.home() / ".fmtc_crawler" / "sessions")
    database_path: Optional[Path] = Field(
        default=None,
        description="SQLite file for durable session records. None disables the database."
    )
    use_database: bool = True
    fallback_to_file: bool = True


class CrawlerConfig(BaseModel):
    """Top-level configuration for one crawl job."""

    model_config = ConfigDict(frozen=True)

    base_url: str = BASE_URL
    login_path: str = LOGIN_PATH
    dashboard_path: str = DASHBOARD_PATH
    directory_path: str = DIRECTORY_PATH

    headless: bool = True
    request_timeout_ms: int = Field(default=30000, ge=1000, le=300000)
    navigation_timeout_ms: int = Field(default=45000, ge=1000, le=300000)
    element_timeout_ms: int = Field(default=15000, ge=500, le=120000)

    max_pages: int = Field(default=10, ge=1, le=100)
    request_delay_ms: Tuple[int, int] = Field(
        default=(1000, 5000),
        description="Random delay between list pages"
    )
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_base_delay: float = Field(
        default=5.0,
        description="First retry delay in seconds; doubles on each further attempt",
        ge=0
    )
    max_consecutive_errors: int = Field(default=5, ge=1)
    settle_delay_ms: int = Field(
        default=5000,
        description="Fixed wait after clicking 'next' when no table response is seen",
        ge=0
    )

    download_images: bool = False
    image_dir: Path = Field(default=Path("fmtc_images"))

    behavior: BehaviorConfig = Field(default_factory=BehaviorConfig)
    captcha: CaptchaConfig = Field(default_factory=CaptchaConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)

    @model_validator(mode="after")
    def _check_delays(self) -> "CrawlerConfig":
        low, high = self.request_delay_ms
        if not (500 <= low <= high <= 10000):
            raise ValueError("request_delay_ms must satisfy 500 <= min <= max <= 10000")
        return self

    def url(self, path: str) -> str:
        """Absolute portal URL for a path."""
        if path.startswith("http"):
            return path
        return f"{self.base_url}{path}"

    @property
    def login_url(self) -> str:
        return self.url(self.login_path)

    @property
    def dashboard_url(self) -> str:
        return self.url(self.dashboard_path)

    @property
    def directory_url(self) -> str:
        return self.url(self.directory_path)

    @classmethod
    def from_env(cls, overrides: Optional[Dict[str, Any]] = None) -> "CrawlerConfig":
        """Build configuration from environment variables and a .env file.

        Args:
            overrides: Values (e.g. from a YAML job file) that win over the environment

        Returns:
            CrawlerConfig instance
        """
        load_dotenv()

        data: Dict[str, Any] = {
            "headless": os.getenv("FMTC_HEADLESS", "true").lower() != "false",
            "max_pages": int(os.getenv("FMTC_MAX_PAGES", "10")),
            "download_images": os.getenv("FMTC_DOWNLOAD_IMAGES", "false").lower() == "true",
            "captcha": {
                "mode": os.getenv("FMTC_RECAPTCHA_MODE", "manual"),
                "api_key": os.getenv("TWOCAPTCHA_API_KEY") or None,
            },
            "session": {
                "max_age_hours": float(os.getenv("FMTC_SESSION_MAX_AGE_HOURS", "4")),
            },
        }
        if os.getenv("FMTC_BASE_URL"):
            data["base_url"] = os.getenv("FMTC_BASE_URL")
        if os.getenv("FMTC_IMAGE_DIR"):
            data["image_dir"] = os.getenv("FMTC_IMAGE_DIR")
        if os.getenv("FMTC_SESSION_DIR"):
            data["session"]["session_dir"] = os.getenv("FMTC_SESSION_DIR")
        if os.getenv("FMTC_DATABASE_PATH"):
            data["session"]["database_path"] = os.getenv("FMTC_DATABASE_PATH")

        return cls.model_validate(merge_overrides(data, overrides))

    def with_overrides(self, overrides: Optional[Dict[str, Any]]) -> "CrawlerConfig":
        """Validated copy with ``overrides`` applied; nested sections merge."""
        if not overrides:
            return self
        return type(self).model_validate(merge_overrides(self.model_dump(), overrides))


def merge_overrides(data: Dict[str, Any], overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Shallow-merge overrides into data, one level deep for nested sections."""
    merged = dict(data)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def credentials_from_env() -> Tuple[Optional[str], Optional[str]]:
    """Read FMTC_USERNAME / FMTC_PASSWORD."""
    load_dotenv()
    return os.getenv("FMTC_USERNAME"), os.getenv("FMTC_PASSWORD")


def validate_credentials(credentials) -> None:
    """Fail fast on missing credentials.

    Raises:
        ConfigurationError: If username or password is empty
    """
    if credentials is None or not credentials.username or not credentials.password:
        raise ConfigurationError("FMTC username and password are required")
    if not EMAIL_PATTERN.match(credentials.username):
        logger.warning(
            f"Username '{credentials.username}' does not look like an e-mail address"
        )


def load_job_file(path: Path) -> Dict[str, Any]:
    """Load a YAML job file.

    The file may contain ``config`` (CrawlerConfig overrides), ``search``
    (SearchParams fields), ``merchants`` (list of id/url/name mappings)
    and ``download_images``.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Job file not found: {path}")

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigurationError(f"Job file {path} must contain a mapping")

    logger.debug(f"Loaded job file {path} with sections: {sorted(data)}")
    return data
