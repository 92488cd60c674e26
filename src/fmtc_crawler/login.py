"""
Portal login.

Flow: check for an existing login, open the login page, wait for the
form, clear any reCAPTCHA, type the credentials, submit and classify the
result. Every failure ends in a ``LoginError`` (or ``ChallengeError`` /
``NavigationError``) which the orchestrator treats as terminal.
"""

import logging
from typing import Optional

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from fmtc_crawler import selectors
from fmtc_crawler.config import CrawlerConfig
from fmtc_crawler.errors import ChallengeError, LoginError, LoginFailureReason, NavigationError
from fmtc_crawler.models import Credentials
from fmtc_crawler.utils.captcha_solver import CaptchaResolutionService
from fmtc_crawler.utils.human_simulator import HumanSimulator
from fmtc_crawler.utils.page_helpers import element_text, query_first

logger = logging.getLogger(__name__)


def classify_error_text(text: str) -> LoginFailureReason:
    """Map a portal error message to a failure reason by phrase group."""
    lowered = (text or "").lower()
    for reason, phrases in selectors.ERROR_PATTERNS.items():
        if any(phrase in lowered for phrase in phrases):
            return LoginFailureReason(reason)
    return LoginFailureReason.UNKNOWN


class LoginHandler:
    """
    Authenticates a page against the portal.

    Usage:
        handler = LoginHandler(config, captcha_service, simulator)
        await handler.login(page, credentials)
    """

    def __init__(
        self,
        config: CrawlerConfig,
        captcha: Optional[CaptchaResolutionService] = None,
        simulator: Optional[HumanSimulator] = None,
    ):
        self.config = config
        self.captcha = captcha or CaptchaResolutionService(config.captcha)
        self.simulator = simulator or HumanSimulator(config.behavior)

    async def is_logged_in(self, page) -> bool:
        """User chrome present, no login inputs, and not on a login URL."""
        if "login" in page.url.lower():
            return False
        try:
            marker = await query_first(page, selectors.LOGGED_IN_MARKERS)
            login_field = await query_first(
                page, selectors.USERNAME_INPUT + selectors.PASSWORD_INPUT
            )
        except Exception as e:
            logger.warning(f"Login state check failed: {e}")
            return False
        return marker is not None and login_field is None

    async def open_login_page(self, page) -> None:
        """Navigate to the login URL and wait for the form fields.

        Raises:
            NavigationError: If the page or the form does not load in time
        """
        url = self.config.login_url
        try:
            await page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=self.config.navigation_timeout_ms,
            )
            for group in (selectors.USERNAME_INPUT, selectors.PASSWORD_INPUT):
                await page.wait_for_selector(
                    ", ".join(group), timeout=self.config.element_timeout_ms
                )
        except PlaywrightTimeoutError as e:
            raise NavigationError(f"Login page did not load: {e}", url=url) from e

    async def login(self, page, credentials: Credentials) -> bool:
        """
        Log in with the given credentials.

        Returns:
            True once logged in

        Raises:
            LoginError: Credentials rejected or the result could not be confirmed
            ChallengeError: A reCAPTCHA on the form could not be resolved
            NavigationError: The login page could not be reached
        """
        if await self.is_logged_in(page):
            logger.info(f"Already logged in as {credentials.username}")
            return True

        logger.info(f"Logging in as {credentials.username}")
        await self.open_login_page(page)

        outcome = await self.captcha.resolve(page)
        if not outcome.success:
            raise ChallengeError(outcome.error or "reCAPTCHA on login form unresolved")

        await self.fill_form(page, credentials)
        await self.submit(page)
        return await self.wait_for_login_result(page)

    async def fill_form(self, page, credentials: Credentials) -> None:
        username = await query_first(page, selectors.USERNAME_INPUT)
        password = await query_first(page, selectors.PASSWORD_INPUT)
        if username is None or password is None:
            raise LoginError("Login form fields not found; page layout may have changed")

        await self.simulator.click(page, username)
        await self.simulator.type_text(username, credentials.username)
        await self.simulator.pause(0.3, 0.8)
        await self.simulator.click(page, password)
        await self.simulator.type_text(password, credentials.password)
        await self.simulator.pause(0.3, 0.8)

    async def submit(self, page) -> None:
        """Click the submit button, or press Enter when there is none."""
        button = await query_first(page, selectors.LOGIN_SUBMIT, visible_only=True)
        if button is not None:
            await self.simulator.safe_click(page, button)
        else:
            logger.debug("Login submit button not found, pressing Enter")
            await page.keyboard.press("Enter")

        try:
            await page.wait_for_load_state(
                "networkidle", timeout=self.config.navigation_timeout_ms
            )
        except PlaywrightTimeoutError:
            logger.debug("No network idle after login submit; checking result anyway")

    async def wait_for_login_result(self, page) -> bool:
        """
        Decide whether the submit succeeded.

        Checks, in order: an error element on the page, a URL away from the
        login page with user chrome, any logged-in marker, then known error
        phrases in the page content.

        Raises:
            LoginError: With the classified failure reason
        """
        await self.simulator.pause(2.0, 4.0)

        error_element = await query_first(page, selectors.LOGIN_ERROR, visible_only=True)
        message = await element_text(error_element)
        if message:
            raise LoginError(f"Login rejected: {message}", classify_error_text(message))

        if await self.is_logged_in(page):
            logger.info("Login succeeded")
            return True

        if "login" not in page.url.lower() and await query_first(page, selectors.LOGGED_IN_MARKERS):
            logger.info("Login succeeded")
            return True

        reason = classify_error_text(await page.content())
        if reason is not LoginFailureReason.UNKNOWN:
            raise LoginError(f"Login failed: {reason.value}", reason)

        raise LoginError("Login state unknown after submit; check the credentials")

    async def logout(self, page) -> bool:
        """Click the logout link if there is one."""
        link = await query_first(page, selectors.LOGOUT_LINKS)
        if link is None:
            logger.warning("Logout link not found")
            return False
        try:
            await link.click()
            await page.wait_for_load_state(
                "networkidle", timeout=self.config.navigation_timeout_ms
            )
        except PlaywrightTimeoutError as e:
            logger.warning(f"Logout did not settle: {e}")
            return False
        logger.info("Logged out")
        return True
