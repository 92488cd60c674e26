"""Browser lifecycle for one crawl job: one browser, one context, one page."""

import logging
import random
from typing import Optional

from playwright.async_api import async_playwright

from fmtc_crawler.browser_config import LAUNCH_ARGS, IdentityProfile, choose_identity
from fmtc_crawler.config import CrawlerConfig

logger = logging.getLogger(__name__)


class BrowserSession:
    """
    Async context manager owning the Playwright browser for a job.

    The context is created with the chosen identity so the user agent,
    viewport, locale and timezone agree from the first request.

    Usage:
        async with BrowserSession(config) as session:
            await engine.initialize(session.page)
            await session.page.goto(url)
    """

    def __init__(
        self,
        config: CrawlerConfig,
        profile: Optional[IdentityProfile] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.profile = profile or choose_identity(rng)
        self._playwright = None
        self._browser = None
        self.context = None
        self.page = None

    async def __aenter__(self) -> "BrowserSession":
        """Launch chromium and open the job's page."""
        logger.info(f"Launching chromium (headless={self.config.headless})")

        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.config.headless,
            args=LAUNCH_ARGS,
        )
        self.context = await self._browser.new_context(**self.profile.context_options())
        self.context.set_default_timeout(self.config.request_timeout_ms)
        self.context.set_default_navigation_timeout(self.config.navigation_timeout_ms)
        self.page = await self.context.new_page()

        logger.info("Browser launched successfully")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Close the browser and stop Playwright."""
        if self.context:
            await self.context.close()
            self.context = None
            self.page = None

        if self._browser:
            logger.info("Closing browser")
            await self._browser.close()
            self._browser = None

        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

        logger.info("Browser closed successfully")
