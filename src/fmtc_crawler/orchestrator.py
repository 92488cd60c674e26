"""
Crawl orchestration.

One job runs on one page, strictly sequentially:

    LOGIN -> SEARCH -> LIST -> DETAIL -> DONE
                 (FAILED reachable from any state)

A valid saved session skips LOGIN. Jobs with direct merchant targets go
from authentication straight to DETAIL. Every state's page work is retried
with exponential backoff on navigation errors. A failed LOGIN ends the
job; a failed DETAIL visit is recorded and the next merchant is processed.

``run()`` never raises: every outcome, including configuration errors and
browser crashes, becomes a ``JobResult``.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from fmtc_crawler.browser_session import BrowserSession
from fmtc_crawler.config import CrawlerConfig, validate_credentials
from fmtc_crawler.database import AbstractDatabase, get_db_client
from fmtc_crawler.errors import ConfigurationError, CrawlerError, NavigationError
from fmtc_crawler.infrastructure.anti_detection import AntiDetectionEngine
from fmtc_crawler.infrastructure.timing_evasion import random_delay
from fmtc_crawler.log_sink import JobReporter, LogSink
from fmtc_crawler.login import LoginHandler
from fmtc_crawler.merchant_detail import MerchantDetailExtractor, normalize_detail_url
from fmtc_crawler.models import (
    JobDescriptor,
    JobExecutionContext,
    JobResult,
    MerchantDetail,
    MerchantFailure,
    MerchantSummary,
    SearchParams,
)
from fmtc_crawler.results_parser import ResultsParser
from fmtc_crawler.search import SearchFormAutomation
from fmtc_crawler.utils.captcha_solver import CaptchaResolutionService
from fmtc_crawler.utils.human_simulator import HumanSimulator
from fmtc_crawler.utils.session_store import SessionStore

logger = logging.getLogger(__name__)

MAX_BACKOFF_DELAY_SECONDS = 60.0


class CrawlState(str, Enum):
    LOGIN = "login"
    SEARCH = "search"
    LIST = "list"
    DETAIL = "detail"
    DONE = "done"
    FAILED = "failed"


@dataclass
class DetailTarget:
    """One detail visit scheduled by LIST or by a direct job."""
    url: Optional[str]
    label: str


@dataclass
class CrawlRun:
    """Mutable progress of one job, owned by the orchestrator."""
    context: JobExecutionContext
    job: JobDescriptor
    state: CrawlState = CrawlState.LOGIN
    authenticated: bool = False
    summaries: List[MerchantSummary] = field(default_factory=list)
    seen_ids: Set[str] = field(default_factory=set)
    merchants: List[MerchantDetail] = field(default_factory=list)
    failures: List[MerchantFailure] = field(default_factory=list)
    pages_processed: int = 0
    cancelled: bool = False
    error: Optional[str] = None
    history: List[CrawlState] = field(default_factory=list)

    @property
    def reporter(self) -> JobReporter:
        return self.context.reporter


class CrawlOrchestrator:
    """
    Drives the crawl state machine for one job at a time.

    All components can be injected; the defaults are built from the
    configuration and share one human simulator and one anti-detection
    engine.

    Usage:
        orchestrator = CrawlOrchestrator(config)
        result = await orchestrator.run(job)
    """

    def __init__(
        self,
        config: Optional[CrawlerConfig] = None,
        anti_detection: Optional[AntiDetectionEngine] = None,
        session_store: Optional[SessionStore] = None,
        captcha: Optional[CaptchaResolutionService] = None,
        login_handler: Optional[LoginHandler] = None,
        search: Optional[SearchFormAutomation] = None,
        results_parser: Optional[ResultsParser] = None,
        detail_extractor: Optional[MerchantDetailExtractor] = None,
        database: Optional[AbstractDatabase] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or CrawlerConfig()
        self._rng = rng or random.Random()

        self.database = database if database is not None else get_db_client(
            self.config.session.database_path
        )
        self.anti_detection = anti_detection or AntiDetectionEngine(self.config.behavior, rng=self._rng)
        self.simulator = HumanSimulator(self.config.behavior, rng=self._rng)
        self.captcha = captcha or CaptchaResolutionService(self.config.captcha)
        self.session_store = session_store or SessionStore(self.config.session, self.database)
        self.login_handler = login_handler or LoginHandler(self.config, self.captcha, self.simulator)
        self.search = search or SearchFormAutomation(self.config, self.simulator)
        self.results = results_parser or ResultsParser(self.config, self.simulator)
        self.detail = detail_extractor or MerchantDetailExtractor(
            self.config, self.anti_detection, self.captcha
        )

        self._handlers: Dict[CrawlState, Callable[[Any, CrawlRun], Awaitable[CrawlState]]] = {
            CrawlState.LOGIN: self._do_login,
            CrawlState.SEARCH: self._do_search,
            CrawlState.LIST: self._do_list,
            CrawlState.DETAIL: self._do_detail,
        }

    # -- entry point -----------------------------------------------------

    async def run(
        self,
        job: JobDescriptor,
        page=None,
        sink: Optional[LogSink] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> JobResult:
        """
        Execute a job and return its result.

        Args:
            job: What to crawl and with which credentials
            page: Existing Playwright page; a browser is launched when None
            sink: Optional progress sink receiving LogEvents
            cancel_event: Set to stop scheduling further work

        Returns:
            JobResult, always
        """
        loop = asyncio.get_running_loop()
        start = loop.time()
        reporter = JobReporter(job.execution_id, sink)
        context = JobExecutionContext(
            credentials=job.credentials,
            execution_id=job.execution_id,
            config=self.config,
            reporter=reporter,
            cancel_event=cancel_event or asyncio.Event(),
        )
        run = CrawlRun(context=context, job=job)

        with reporter.capture_component_logs():
            try:
                self._preflight(job)
                if page is not None:
                    await self._run_on_page(page, run)
                else:
                    async with BrowserSession(self.config, profile=self.anti_detection.profile) as session:
                        await self._run_on_page(session.page, run)
            except Exception as e:
                logger.exception(f"Job {job.execution_id} aborted")
                run.error = run.error or f"{type(e).__name__}: {e}"
                run.state = CrawlState.FAILED

        await reporter.flush()
        return self._build_result(run, int((loop.time() - start) * 1000))

    def _preflight(self, job: JobDescriptor) -> None:
        """Fail fast on configuration problems before a browser is started.

        Raises:
            ConfigurationError: Missing credentials or solver API key
        """
        validate_credentials(job.credentials)
        if self.config.captcha.mode == "auto" and not self.config.captcha.api_key:
            raise ConfigurationError("Auto reCAPTCHA mode requires a 2Captcha API key")

    def _build_result(self, run: CrawlRun, elapsed_ms: int) -> JobResult:
        done = run.state == CrawlState.DONE
        success = done and not run.cancelled and (bool(run.merchants) or not run.failures)
        if done and run.failures and not run.merchants:
            run.error = run.error or f"All {len(run.failures)} merchant visits failed"

        result = JobResult(
            success=success,
            execution_id=run.context.execution_id,
            final_state=run.state.value,
            merchants=run.merchants,
            failures=run.failures,
            error=run.error,
            merchant_url=run.job.targets[0].merchant_url if len(run.job.targets) == 1 else None,
            pages_processed=run.pages_processed,
            cancelled=run.cancelled,
            processing_time_ms=elapsed_ms,
        )
        logger.info(
            f"Job {result.execution_id} finished in state {result.final_state}: "
            f"{result.completed} completed, {result.failed} failed ({elapsed_ms}ms)"
        )
        return result

    # -- state machine ---------------------------------------------------

    async def _run_on_page(self, page, run: CrawlRun) -> None:
        await self.anti_detection.initialize(page)

        run.authenticated = await self._restore_session(page, run)
        if run.authenticated:
            run.reporter.info("Saved session is valid; skipping login")
            run.state = self._after_login(run)
        else:
            run.state = CrawlState.LOGIN

        try:
            while run.state not in (CrawlState.DONE, CrawlState.FAILED):
                if run.context.cancelled:
                    run.cancelled = True
                    run.error = "Job cancelled"
                    run.reporter.warning(f"Cancelled during {run.state.value}")
                    run.state = CrawlState.DONE
                    break

                run.history.append(run.state)
                handler = self._handlers[run.state]
                next_state = await handler(page, run)
                if next_state != run.state:
                    run.reporter.debug(f"{run.state.value} -> {next_state.value}")
                run.state = next_state
        finally:
            if run.authenticated:
                await self._save_session(page, run)

    def _after_login(self, run: CrawlRun) -> CrawlState:
        return CrawlState.DETAIL if run.job.is_direct else CrawlState.SEARCH

    def _backoff_delay(self, retry_count: int) -> float:
        """Exponential backoff with +/-25% jitter, capped."""
        delay = min(self.config.retry_base_delay * (2 ** retry_count), MAX_BACKOFF_DELAY_SECONDS)
        return max(delay + delay * self._rng.uniform(-0.25, 0.25), 0.0)

    async def _with_retry(self, run: CrawlRun, label: str, operation: Callable[[], Awaitable[Any]]):
        """
        Run a page operation, retrying retryable crawler errors.

        Playwright timeouts are converted to NavigationError. Anything
        still failing after ``max_retries`` retries is raised.
        """
        attempts = self.config.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except PlaywrightTimeoutError as e:
                error: CrawlerError = NavigationError(f"{label} timed out: {e}")
                error.__cause__ = e
            except CrawlerError as e:
                error = e

            if not error.retryable or attempt == attempts:
                raise error

            delay = self._backoff_delay(attempt - 1)
            run.reporter.warning(
                f"{label} failed ({error}); retry {attempt}/{self.config.max_retries} in {delay:.1f}s"
            )
            if delay:
                await asyncio.sleep(delay)

    async def _restore_session(self, page, run: CrawlRun) -> bool:
        identity = run.context.credentials.username
        state = self.session_store.load(identity)
        if state is None:
            return False

        try:
            await self.session_store.restore(page, state)
            valid = await self.session_store.check_authentication(
                page, self.config.dashboard_url, self.config.navigation_timeout_ms
            )
        except Exception as e:
            run.reporter.warning(f"Saved session could not be restored ({e}); logging in")
            return False
        if not valid:
            run.reporter.info("Saved session was rejected; logging in")
        return valid

    async def _save_session(self, page, run: CrawlRun) -> None:
        try:
            await self.session_store.save(page, run.context.credentials.username)
        except Exception as e:
            run.reporter.warning(f"Could not save session: {e}")

    async def _do_login(self, page, run: CrawlRun) -> CrawlState:
        run.reporter.info("Logging in", username=run.context.credentials.username)
        try:
            await self._with_retry(
                run, "Login", lambda: self.login_handler.login(page, run.context.credentials)
            )
        except CrawlerError as e:
            run.error = f"Login failed: {e}"
            run.reporter.error(run.error, error_type=type(e).__name__)
            return CrawlState.FAILED

        run.authenticated = True
        run.reporter.info("Login succeeded")
        return self._after_login(run)

    async def _do_search(self, page, run: CrawlRun) -> CrawlState:
        params = run.job.search_params or SearchParams()

        async def submit():
            await self.search.open_directory(page)
            await self.anti_detection.ensure_not_blocked(page)
            await self.captcha.ensure_resolved(page)
            return await self.search.perform_search(page, params)

        try:
            outcome = await self._with_retry(run, "Search", submit)
        except CrawlerError as e:
            run.error = f"Search failed: {e}"
            run.reporter.error(run.error, error_type=type(e).__name__)
            return CrawlState.FAILED

        if not outcome.category_resolved:
            run.reporter.warning(f"Category '{params.category}' was not recognised; submitted as-is")
        if not outcome.success:
            run.reporter.warning(outcome.error or "Search returned no results")
        else:
            run.reporter.info(f"Search returned {outcome.result_count} results", url=outcome.url)
            await self.results.optimize_page_size(page, outcome.result_count)
        return CrawlState.LIST

    async def _list_delay(self) -> None:
        if not self.config.behavior.enabled:
            return
        low, high = self.config.request_delay_ms
        await random_delay(low / 1000.0, high / 1000.0, rng=self._rng)

    def _add_summaries(self, run: CrawlRun, merchants: List[MerchantSummary]) -> int:
        added = 0
        for merchant in merchants:
            if merchant.id in run.seen_ids:
                continue
            run.seen_ids.add(merchant.id)
            run.summaries.append(merchant)
            added += 1
        return added

    async def _do_list(self, page, run: CrawlRun) -> CrawlState:
        async def parse():
            await self.anti_detection.ensure_not_blocked(page)
            return await self.results.parse_page(page)

        while True:
            try:
                parsed = await self._with_retry(run, "Results page", parse)
            except CrawlerError as e:
                if not run.summaries:
                    run.error = f"Results could not be read: {e}"
                    run.reporter.error(run.error)
                    return CrawlState.FAILED
                run.reporter.warning(f"Stopping pagination: {e}")
                break

            run.pages_processed += 1
            added = self._add_summaries(run, parsed.merchants)
            run.reporter.info(
                f"Results page {parsed.current_page}: {added} new merchants "
                f"({len(run.summaries)}/{parsed.total_count})",
                page=parsed.current_page,
            )

            if run.context.cancelled:
                break
            if not parsed.has_next_page:
                break
            if run.pages_processed >= self.config.max_pages:
                run.reporter.info(f"Reached page limit ({self.config.max_pages})")
                break

            await self.anti_detection.simulate_human_behavior(page)
            await self._list_delay()
            if not await self.results.go_to_next_page(page):
                run.reporter.warning("Could not advance to the next results page")
                break

        return CrawlState.DETAIL

    def _detail_targets(self, run: CrawlRun) -> List[DetailTarget]:
        if run.job.is_direct:
            targets: List[DetailTarget] = []
            seen: Set[str] = set()
            for target in run.job.targets:
                try:
                    url = normalize_detail_url(target.resolve_url(self.config.base_url))
                except ValueError:
                    url = None
                if url and url in seen:
                    continue
                if url:
                    seen.add(url)
                targets.append(DetailTarget(url=url, label=target.label))
            return targets
        return [DetailTarget(url=s.detail_url, label=s.name) for s in run.summaries]

    def _persist(self, run: CrawlRun, detail: MerchantDetail) -> None:
        if self.database is None:
            return
        try:
            self.database.save_merchant(detail)
        except Exception as e:
            run.reporter.warning(f"Could not store merchant {detail.name}: {e}")

    async def _do_detail(self, page, run: CrawlRun) -> CrawlState:
        targets = self._detail_targets(run)
        run.reporter.info(f"Fetching {len(targets)} merchant details")
        download = run.job.download_images or self.config.download_images
        consecutive_errors = 0

        for index, target in enumerate(targets):
            if run.context.cancelled:
                run.cancelled = True
                run.error = "Job cancelled"
                run.reporter.warning(
                    f"Cancelled after {index} of {len(targets)} merchants"
                )
                break

            if target.url is None:
                run.failures.append(MerchantFailure(
                    target.label, "ConfigurationError", "No detail URL for merchant"
                ))
                continue

            if index > 0:
                await self.anti_detection.apply_cooldown()

            try:
                detail = await self._with_retry(
                    run,
                    f"Detail {target.label}",
                    lambda: self.detail.fetch(page, target.url, target.label, download),
                )
            except Exception as e:
                consecutive_errors += 1
                run.failures.append(MerchantFailure(target.label, type(e).__name__, str(e)))
                run.reporter.error(f"Merchant {target.label} failed: {e}", url=target.url)
                if consecutive_errors >= self.config.max_consecutive_errors:
                    run.error = f"Stopped after {consecutive_errors} consecutive merchant failures"
                    run.reporter.error(run.error)
                    return CrawlState.FAILED
                continue

            consecutive_errors = 0
            run.merchants.append(detail)
            self._persist(run, detail)
            run.reporter.info(
                f"Merchant {index + 1}/{len(targets)} extracted: {detail.name or target.label}",
                fmtc_id=detail.fmtc_id,
                networks=len(detail.networks),
            )

        return CrawlState.DONE
