"""
reCAPTCHA resolution for the portal login.

Per challenge the service moves through

    NONE -> DETECTED -> MANUAL_WAIT | AUTO_SUBMIT -> RESOLVED | FAILED

Manual mode waits for an operator to tick the widget in a headed browser.
Auto mode sends the site key to 2Captcha, polls for a token and injects
it into the page.

Usage:
    service = CaptchaResolutionService(config.captcha)
    outcome = await service.resolve(page)
    if not outcome.success:
        ...

Note: auto mode needs a 2Captcha API key. A missing key is a
configuration error and is raised immediately rather than retried.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import aiohttp
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from fmtc_crawler import selectors
from fmtc_crawler.config import CaptchaConfig
from fmtc_crawler.errors import ChallengeError, ConfigurationError
from fmtc_crawler.models import CaptchaMethod, CaptchaOutcome

logger = logging.getLogger(__name__)

NOT_READY = "CAPCHA_NOT_READY"


class ChallengeState(str, Enum):
    """Where the service is in handling the current challenge."""
    NONE = "none"
    DETECTED = "detected"
    MANUAL_WAIT = "manual_wait"
    AUTO_SUBMIT = "auto_submit"
    RESOLVED = "resolved"
    FAILED = "failed"


class SolverStatus(Enum):
    """Status of a solve request."""
    PROCESSING = "processing"
    SOLVED = "solved"
    FAILED = "failed"


@dataclass
class SolveResult:
    """One poll result from the solving service."""
    status: SolverStatus
    task_id: str
    token: Optional[str] = None
    error: Optional[str] = None


class CaptchaSolverError(ChallengeError):
    """The solving service rejected a request or returned an error."""


class TwoCaptchaClient:
    """
    2Captcha HTTP API client.

    API Documentation: https://2captcha.com/2captcha-api
    """

    def __init__(
        self,
        api_key: str,
        api_base: str = "https://2captcha.com",
        soft_id: Optional[int] = 4580,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_seconds: float = 30.0,
    ):
        if not api_key:
            raise ConfigurationError("2Captcha API key is required for automatic solving")
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.soft_id = soft_id
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _request_json(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Perform one API call and decode the JSON body."""
        url = f"{self.api_base}{path}"
        if self._session is not None:
            async with self._session.request(method, url, timeout=self._timeout, **kwargs) as resp:
                return await resp.json(content_type=None)

        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.request(method, url, **kwargs) as resp:
                return await resp.json(content_type=None)

    async def submit(self, site_key: str, page_url: str) -> str:
        """
        Submit a reCAPTCHA v2 task.

        Returns:
            Task id used for polling

        Raises:
            CaptchaSolverError: If the service does not accept the task
        """
        data = {
            "key": self.api_key,
            "method": "userrecaptcha",
            "googlekey": site_key,
            "pageurl": page_url,
            "json": 1,
        }
        if self.soft_id:
            data["soft_id"] = self.soft_id

        try:
            body = await self._request_json("POST", "/in.php", data=data)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise CaptchaSolverError(f"2Captcha submit failed: {e!r}") from e

        if body.get("status") != 1:
            raise CaptchaSolverError(
                f"2Captcha submit error: {body.get('error_text') or body.get('request')}"
            )

        logger.info(f"2Captcha task submitted: {body['request']}")
        return str(body["request"])

    async def poll(self, task_id: str) -> SolveResult:
        """Ask for the result of a submitted task."""
        params = {"key": self.api_key, "action": "get", "id": task_id, "json": 1}
        try:
            body = await self._request_json("GET", "/res.php", params=params)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            return SolveResult(SolverStatus.FAILED, task_id, error=f"2Captcha poll failed: {e!r}")

        if body.get("status") == 1:
            return SolveResult(SolverStatus.SOLVED, task_id, token=body["request"])

        request = body.get("request", "Unknown error")
        if request == NOT_READY:
            return SolveResult(SolverStatus.PROCESSING, task_id)

        return SolveResult(SolverStatus.FAILED, task_id, error=str(request))

    async def get_balance(self) -> float:
        """Current account balance in USD."""
        params = {"key": self.api_key, "action": "getbalance", "json": 1}
        body = await self._request_json("GET", "/res.php", params=params)
        if body.get("status") != 1:
            raise CaptchaSolverError(f"2Captcha balance error: {body.get('request')}")
        return float(body["request"])


class CaptchaResolutionService:
    """
    Detects and resolves reCAPTCHA challenges on a page.

    Features:
    - Skip path when no widget is present or it is already solved
    - Manual mode: wait for the hidden response field to be filled
    - Auto mode: 2Captcha submit/poll with bounded timeout
    - Token injection with input/change/keyup events and page callback
    - Retry wrapper returning the last failure
    """

    def __init__(
        self,
        config: Optional[CaptchaConfig] = None,
        client: Optional[TwoCaptchaClient] = None,
    ):
        self.config = config or CaptchaConfig()
        self._client = client
        self.state = ChallengeState.NONE

        # Statistics
        self._attempts = 0
        self._solved = 0
        self._total_cost_cents = 0.0

    @property
    def client(self) -> TwoCaptchaClient:
        """2Captcha client, created on first use from the configured key."""
        if self._client is None:
            self._client = TwoCaptchaClient(
                api_key=self.config.api_key,
                api_base=self.config.api_base,
                soft_id=self.config.soft_id,
            )
        return self._client

    async def detect(self, page) -> bool:
        """Check for the challenge widget."""
        for selector in selectors.RECAPTCHA_WIDGET:
            try:
                if await page.query_selector(selector):
                    return True
            except Exception as e:
                logger.debug(f"reCAPTCHA check {selector} failed: {e}")
        return False

    async def is_already_resolved(self, page) -> bool:
        """Check whether the hidden response field already holds a token."""
        value = await page.evaluate(
            """(selector) => {
                const el = document.querySelector(selector);
                return el ? el.value : '';
            }""",
            selectors.RECAPTCHA_RESPONSE,
        )
        return bool(value)

    async def resolve(self, page) -> CaptchaOutcome:
        """
        Handle whatever challenge is on the page according to the mode.

        Returns:
            CaptchaOutcome; success is True on the skip path when there is
            nothing to solve

        Raises:
            ConfigurationError: Auto mode without an API key
        """
        loop = asyncio.get_running_loop()
        start = loop.time()

        if not await self.detect(page):
            self.state = ChallengeState.NONE
            return CaptchaOutcome(success=True, method=CaptchaMethod.SKIP)

        self.state = ChallengeState.DETECTED
        if await self.is_already_resolved(page):
            logger.info("reCAPTCHA already completed")
            self.state = ChallengeState.RESOLVED
            return CaptchaOutcome(
                success=True,
                method=CaptchaMethod.SKIP,
                duration_ms=int((loop.time() - start) * 1000),
            )

        if self.config.mode == "manual":
            return await self.solve_manually(page)
        if self.config.mode == "auto":
            return await self.solve_with_retry(page)

        self.state = ChallengeState.FAILED
        return CaptchaOutcome(
            success=False,
            method=CaptchaMethod.SKIP,
            error="reCAPTCHA handling is disabled",
            duration_ms=int((loop.time() - start) * 1000),
        )

    async def solve_manually(self, page) -> CaptchaOutcome:
        """Wait for an operator to complete the challenge. Timeout is a failed outcome."""
        loop = asyncio.get_running_loop()
        start = loop.time()
        self.state = ChallengeState.MANUAL_WAIT
        logger.info(
            f"Waiting up to {self.config.manual_timeout:.0f}s for manual reCAPTCHA completion"
        )

        try:
            await page.wait_for_function(
                """(selector) => {
                    const el = document.querySelector(selector);
                    return !!(el && el.value && el.value.length > 0);
                }""",
                arg=selectors.RECAPTCHA_RESPONSE,
                timeout=self.config.manual_timeout * 1000,
            )
        except PlaywrightTimeoutError:
            self.state = ChallengeState.FAILED
            return CaptchaOutcome(
                success=False,
                method=CaptchaMethod.MANUAL,
                error=f"Manual reCAPTCHA not completed within {self.config.manual_timeout:.0f}s",
                duration_ms=int((loop.time() - start) * 1000),
            )

        self.state = ChallengeState.RESOLVED
        logger.info("reCAPTCHA completed manually")
        return CaptchaOutcome(
            success=True,
            method=CaptchaMethod.MANUAL,
            duration_ms=int((loop.time() - start) * 1000),
        )

    async def extract_site_key(self, page) -> Optional[str]:
        """Find the site key in a data-sitekey attribute, then in page scripts."""
        site_key = await page.evaluate(
            """(selector) => {
                const el = document.querySelector(selector);
                return el ? el.getAttribute('data-sitekey') : null;
            }""",
            selectors.SITE_KEY_ATTRIBUTE_SELECTOR,
        )
        if site_key:
            return site_key

        match = selectors.SITE_KEY_SCRIPT_PATTERN.search(await page.content())
        return match.group(1) if match else None

    async def _wait_for_token(self, task_id: str, deadline: float) -> SolveResult:
        loop = asyncio.get_running_loop()
        delay = self.config.first_poll_delay
        result = SolveResult(SolverStatus.PROCESSING, task_id)

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return SolveResult(
                    SolverStatus.FAILED,
                    task_id,
                    error=f"Timeout after {self.config.auto_timeout:.0f}s",
                )
            await asyncio.sleep(min(delay, remaining))

            result = await self.client.poll(task_id)
            if result.status != SolverStatus.PROCESSING:
                return result
            delay = self.config.poll_interval

    async def solve_automatically(self, page) -> CaptchaOutcome:
        """
        Solve one challenge through 2Captcha.

        Raises:
            ConfigurationError: If no API key is configured
        """
        if not self.config.api_key and self._client is None:
            raise ConfigurationError("Auto reCAPTCHA mode requires a 2Captcha API key")

        loop = asyncio.get_running_loop()
        start = loop.time()
        self.state = ChallengeState.AUTO_SUBMIT
        self._attempts += 1

        def failed(error: str) -> CaptchaOutcome:
            self.state = ChallengeState.FAILED
            logger.warning(f"Automatic reCAPTCHA solve failed: {error}")
            return CaptchaOutcome(
                success=False,
                method=CaptchaMethod.AUTO,
                error=error,
                duration_ms=int((loop.time() - start) * 1000),
            )

        site_key = await self.extract_site_key(page)
        if not site_key:
            return failed("reCAPTCHA site key not found")

        try:
            task_id = await self.client.submit(site_key, page.url)
        except CaptchaSolverError as e:
            return failed(str(e))

        result = await self._wait_for_token(task_id, start + self.config.auto_timeout)
        if result.status != SolverStatus.SOLVED or not result.token:
            return failed(result.error or "No token returned")

        await self.apply_token(page, result.token)

        self._solved += 1
        self._total_cost_cents += self.config.cost_cents_per_solve
        self.state = ChallengeState.RESOLVED
        duration_ms = int((loop.time() - start) * 1000)
        logger.info(f"reCAPTCHA solved automatically in {duration_ms / 1000:.1f}s")

        return CaptchaOutcome(
            success=True,
            method=CaptchaMethod.AUTO,
            duration_ms=duration_ms,
            cost_cents=self.config.cost_cents_per_solve,
        )

    async def apply_token(self, page, token: str) -> None:
        """Write the token into the response field(s) and notify the page."""
        if len(token) < self.config.min_token_length:
            logger.warning(
                f"reCAPTCHA token is unusually short ({len(token)} chars); continuing anyway"
            )

        callback = await page.evaluate(
            """([selector, token]) => {
                document.querySelectorAll(selector).forEach((el) => {
                    el.value = token;
                    el.innerHTML = token;
                    ['input', 'change', 'keyup'].forEach((type) => {
                        el.dispatchEvent(new Event(type, { bubbles: true }));
                    });
                });

                const widget = document.querySelector('.g-recaptcha[data-callback]');
                const name = widget ? widget.getAttribute('data-callback') : null;
                if (name && typeof window[name] === 'function') {
                    try { window[name](token); return name; } catch (e) {}
                }

                if (typeof ___grecaptcha_cfg !== 'undefined') {
                    for (const client of Object.values(___grecaptcha_cfg.clients || {})) {
                        for (const value of Object.values(client || {})) {
                            for (const inner of Object.values(value || {})) {
                                if (inner && typeof inner.callback === 'function') {
                                    try { inner.callback(token); return 'grecaptcha_cfg'; } catch (e) {}
                                }
                            }
                        }
                    }
                }
                return null;
            }""",
            [selectors.RECAPTCHA_RESPONSE, token],
        )
        logger.debug(f"Injected reCAPTCHA token (callback: {callback or 'none'})")

        if self.config.token_settle_seconds:
            await asyncio.sleep(self.config.token_settle_seconds)

    async def solve_with_retry(self, page) -> CaptchaOutcome:
        """Run automatic solving up to ``retry_attempts`` times."""
        outcome = CaptchaOutcome(success=False, method=CaptchaMethod.AUTO, error="not attempted")
        for attempt in range(1, self.config.retry_attempts + 1):
            outcome = await self.solve_automatically(page)
            if outcome.success:
                return outcome
            logger.info(
                f"reCAPTCHA attempt {attempt}/{self.config.retry_attempts} failed: {outcome.error}"
            )
            if attempt < self.config.retry_attempts and self.config.retry_delay:
                await asyncio.sleep(self.config.retry_delay)
        return outcome

    async def ensure_resolved(self, page) -> CaptchaOutcome:
        """Resolve any challenge or raise.

        Raises:
            ChallengeError: If a challenge remains unresolved
        """
        outcome = await self.resolve(page)
        if not outcome.success:
            raise ChallengeError(outcome.error or "reCAPTCHA unresolved")
        return outcome

    async def get_balance(self) -> float:
        return await self.client.get_balance()

    def get_stats(self) -> Dict[str, Any]:
        """Get solver statistics."""
        return {
            "attempts": self._attempts,
            "solved": self._solved,
            "success_rate": self._solved / self._attempts if self._attempts else 0.0,
            "total_cost_cents": self._total_cost_cents,
        }
