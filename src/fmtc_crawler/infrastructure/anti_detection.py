"""
Anti-detection engine.

Configures a page's identity and fingerprint surface before the first
navigation, simulates a human reading and moving the mouse between
requests, enforces the progressive cooldown, and detects and recovers
from block pages.

Usage:
    engine = AntiDetectionEngine(config.behavior)
    await engine.initialize(page)
    await page.goto(url)
    await engine.simulate_human_behavior(page)
    if await engine.detect_anti_bot(page):
        await engine.handle_anti_bot(page)
"""

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fmtc_crawler.browser_config import IdentityProfile, choose_identity
from fmtc_crawler.config import BehaviorConfig
from fmtc_crawler.errors import AntiBotError
from fmtc_crawler.infrastructure.stealth import build_stealth_script
from fmtc_crawler.infrastructure.timing_evasion import (
    RequestCooldown,
    get_mouse_movement_points,
    random_delay,
)

logger = logging.getLogger(__name__)


# Phrases that only appear on challenge / interstitial pages
STRONG_INDICATORS = [
    "Access to this page has been denied",
    "Just a moment, we are checking your browser",
    "Checking your browser before accessing",
    "Please wait while we check your browser",
    "DDoS protection by Cloudflare",
    "Ray ID:",
    "cf-ray",
    "Please complete the security check",
    "Enable JavaScript and cookies to continue",
    "Browser check complete",
    "Attention Required! | Cloudflare",
]

BLOCK_TITLE_INDICATORS = [
    "Just a moment",
    "Attention Required",
    "Access denied",
    "Security check",
]

BLOCKING_STATUS_CODES = {403, 429}
SUSPICIOUS_TITLES = ["blocked", "access denied", "forbidden", "403", "429"]


def is_anti_bot_page(
    content: str,
    title: str,
    body_text: str,
    min_content_length: int = 1000,
) -> bool:
    """
    Decide whether a page is a bot-challenge page.

    True only when a strong indicator phrase is present AND either the
    title looks like a block page OR the visible text is shorter than
    ``min_content_length``. Short legitimate pages without indicator
    phrases are never flagged.
    """
    content_lower = (content or "").lower()
    has_indicator = any(ind.lower() in content_lower for ind in STRONG_INDICATORS)
    if not has_indicator:
        return False

    title_lower = (title or "").lower()
    title_match = any(ind.lower() in title_lower for ind in BLOCK_TITLE_INDICATORS)
    minimal_content = len((body_text or "").strip()) < min_content_length

    return title_match or minimal_content


@dataclass
class BlockingCheck:
    """Result of a response-level blocking check."""
    blocked: bool
    reason: Optional[str] = None
    status_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"blocked": self.blocked, "reason": self.reason, "status_code": self.status_code}


def detect_blocking(status_code: Optional[int], title: str = "") -> BlockingCheck:
    """Classify an HTTP status and page title as blocked or not."""
    if status_code in BLOCKING_STATUS_CODES:
        return BlockingCheck(True, f"HTTP {status_code}", status_code)

    title_lower = (title or "").lower()
    for marker in SUSPICIOUS_TITLES:
        if marker in title_lower:
            return BlockingCheck(True, f"suspicious title: {title}", status_code)

    return BlockingCheck(False, status_code=status_code)


@dataclass
class SessionHealth:
    """Snapshot of the browser session's state."""
    url: str
    title: str
    cookie_count: int
    blocked: bool
    identity: Optional[str] = None
    consecutive_requests: int = 0
    notes: List[str] = field(default_factory=list)


class AntiDetectionEngine:
    """
    Identity, fingerprint and behavior management for one browser session.

    Features:
    - One identity profile per session, applied to viewport and headers
    - Init script hiding automation markers and spoofing fingerprints
    - Reading pause, partial scroll and bezier mouse movement
    - Progressive cooldown between requests
    - Conjunctive block-page detection with bounded recovery
    """

    def __init__(
        self,
        config: Optional[BehaviorConfig] = None,
        profile: Optional[IdentityProfile] = None,
        rng: Optional[random.Random] = None,
        cooldown: Optional[RequestCooldown] = None,
    ):
        self.config = config or BehaviorConfig()
        self._rng = rng or random.Random()
        self.profile = profile or choose_identity(self._rng)
        self.cooldown = cooldown or RequestCooldown(self.config, rng=self._rng)
        self._initialized_pages: set = set()

    async def initialize(self, page) -> IdentityProfile:
        """
        Apply identity and install the stealth init script.

        Must run before the page's first navigation; init scripts only
        affect documents created afterwards.

        Args:
            page: Playwright Page instance

        Returns:
            The identity profile applied
        """
        if page.url not in ("", "about:blank"):
            logger.warning(
                f"Anti-detection initialized after navigation to {page.url}; "
                "the current document is not covered"
            )

        await page.set_viewport_size(self.profile.viewport)
        await page.set_extra_http_headers(self.profile.headers())
        await page.add_init_script(build_stealth_script(self.profile))
        self._initialized_pages.add(id(page))

        logger.info(
            f"Anti-detection initialized: {self.profile.platform} "
            f"{self.profile.viewport_width}x{self.profile.viewport_height}"
        )
        return self.profile

    def is_initialized(self, page) -> bool:
        return id(page) in self._initialized_pages

    async def simulate_human_behavior(self, page) -> None:
        """
        Pause as if reading, scroll part of the page, move the mouse.

        Behavior simulation is cosmetic: a failure here is logged and the
        crawl continues.
        """
        if not self.config.enabled:
            return

        try:
            await random_delay(*self.config.reading_pause_seconds, rng=self._rng)

            fraction = self._rng.uniform(*self.config.scroll_fraction)
            await page.evaluate(
                "(f) => window.scrollBy({top: window.innerHeight * f, behavior: 'smooth'})",
                fraction,
            )

            viewport = page.viewport_size or self.profile.viewport
            await self.move_mouse(page, viewport["width"], viewport["height"])
        except Exception as e:
            logger.debug(f"Human behavior simulation interrupted: {e}")

    async def move_mouse(self, page, width: int, height: int) -> int:
        """Move the mouse along a bezier path between two random points."""
        start = (self._rng.uniform(0, width), self._rng.uniform(0, height))
        end = (self._rng.uniform(0, width), self._rng.uniform(0, height))
        steps = self._rng.randint(*self.config.mouse_steps)
        low_ms, high_ms = self.config.mouse_step_delay_ms

        points = get_mouse_movement_points(start, end, steps=steps, rng=self._rng)
        for x, y in points:
            await page.mouse.move(x, y)
            await random_delay(low_ms / 1000.0, high_ms / 1000.0, rng=self._rng)
        return len(points)

    async def apply_cooldown(self) -> float:
        """Wait out the progressive inter-request cooldown."""
        if not self.config.enabled:
            self.cooldown.next_delay()
            return 0.0
        return await self.cooldown.wait()

    async def detect_anti_bot(self, page) -> bool:
        """Check the current page for a bot challenge."""
        try:
            content = await page.content()
            title = await page.title()
            body_text = await page.inner_text("body")
        except Exception as e:
            logger.debug(f"Anti-bot check could not read page: {e}")
            return False

        detected = is_anti_bot_page(
            content, title, body_text, self.config.min_content_length
        )
        if detected:
            logger.warning(
                f"Anti-bot page detected: title={title!r}, text_length={len(body_text)}"
            )
        return detected

    async def _wait(self, bounds) -> None:
        await random_delay(*bounds, rng=self._rng)

    async def handle_anti_bot(self, page) -> bool:
        """
        Try to get past a block page.

        Attempt 1: short wait, reload. Attempt 2: clear cookies, longer
        wait, reload. Returns False if both fail or the page becomes
        unusable mid-attempt.
        """
        logger.info("Attempting anti-bot recovery")

        try:
            await self._wait(self.config.recovery_wait_seconds)
            await page.reload(wait_until="domcontentloaded", timeout=15000)
            await self._wait(self.config.recovery_settle_seconds)
            if not await self.detect_anti_bot(page):
                logger.info("Anti-bot page cleared after reload")
                return True

            await page.context.clear_cookies()
            await self._wait(self.config.recovery_long_wait_seconds)
            await page.reload(wait_until="domcontentloaded", timeout=15000)
            await self._wait(self.config.recovery_settle_seconds)
            if not await self.detect_anti_bot(page):
                logger.info("Anti-bot page cleared after cookie reset")
                return True
        except Exception as e:
            logger.error(f"Anti-bot recovery aborted: {e}")
            return False

        logger.error("Anti-bot recovery failed")
        return False

    async def ensure_not_blocked(self, page) -> None:
        """Detect and recover from a block page.

        Raises:
            AntiBotError: If the page is still blocked after recovery
        """
        if await self.detect_anti_bot(page):
            if not await self.handle_anti_bot(page):
                raise AntiBotError("Blocked by anti-bot protection", url=page.url)

    async def recreate_session(self, page, base_url: str) -> bool:
        """
        Start over with a fresh identity on the same page.

        Clears cookies and storage, waits, rotates the identity headers and
        revisits the portal's base URL.
        """
        try:
            await page.context.clear_cookies()
            await page.evaluate(
                "() => { try { localStorage.clear(); sessionStorage.clear(); } catch (e) {} }"
            )
            await self._wait(self.config.recovery_long_wait_seconds)

            self.profile = choose_identity(self._rng)
            await page.set_extra_http_headers(self.profile.headers())
            self.cooldown.reset()

            await page.goto(base_url, wait_until="domcontentloaded")
            logger.info(f"Session recreated with {self.profile.platform} identity")
            return True
        except Exception as e:
            logger.error(f"Failed to recreate session: {e}")
            return False

    async def session_health(self, page) -> SessionHealth:
        """Collect a health snapshot of the current session."""
        notes = []
        try:
            cookies = await page.context.cookies()
        except Exception as e:
            cookies = []
            notes.append(f"cookies unavailable: {e}")

        try:
            title = await page.title()
        except Exception as e:
            title = ""
            notes.append(f"title unavailable: {e}")

        return SessionHealth(
            url=page.url,
            title=title,
            cookie_count=len(cookies),
            blocked=await self.detect_anti_bot(page),
            identity=self.profile.platform,
            consecutive_requests=self.cooldown.consecutive,
            notes=notes,
        )
