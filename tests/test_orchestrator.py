"""
Tests for the crawl orchestrator.

Jobs run end to end against the in-memory portal in ``portal_fakes``:
login, search, pagination and detail visits all go through the real
components.
"""

import asyncio
import logging

import pytest
from playwright.async_api import Error as PlaywrightError
from unittest.mock import AsyncMock

from fmtc_crawler.database import LocalSqliteDatabase
from fmtc_crawler.errors import LoginError, NavigationError
from fmtc_crawler.models import Credentials, JobDescriptor, MerchantTarget, SearchParams, SessionState
from fmtc_crawler.orchestrator import CrawlOrchestrator, CrawlState
from fmtc_crawler.utils.session_store import SessionStore
from portal_fakes import BASE, RECAPTCHA_HTML, FakePage, FakePortal, detail_html, fast_config

CREDENTIALS = Credentials(username="buyer@example.com", password="secret")


def search_job(**kwargs):
    return JobDescriptor(
        credentials=CREDENTIALS,
        execution_id="exec-test",
        search_params=SearchParams(category="Clothing"),
        **kwargs,
    )


class TestFullCrawl:
    """LOGIN -> SEARCH -> LIST -> DETAIL -> DONE on the fake portal."""

    @pytest.mark.asyncio
    async def test_two_pages_yield_sixty_unique_merchants(self, tmp_path):
        """50 + 10 rows become 60 detail records with distinct ids."""
        portal = FakePortal.with_results([50, 10])
        events = []
        orchestrator = CrawlOrchestrator(fast_config(tmp_path))

        result = await orchestrator.run(search_job(), page=FakePage(portal), sink=events.append)

        assert result.success, result.error
        assert result.final_state == CrawlState.DONE.value
        assert result.pages_processed == 2
        assert result.completed == 60
        assert result.failed == 0
        assert len({m.fmtc_id for m in result.merchants}) == 60
        assert portal.detail_visits[:2] == ["1001", "1002"]
        assert all(e.execution_id == "exec-test" for e in events)

    @pytest.mark.asyncio
    async def test_duplicate_rows_are_visited_once(self, tmp_path):
        """A row repeated across pages is deduplicated by id."""
        portal = FakePortal.with_results([3, 3])
        portal.result_pages[1] = portal.result_pages[1].replace(
            "/details/m/1004/", "/details/m/1001/"
        )
        result = await CrawlOrchestrator(fast_config(tmp_path)).run(
            search_job(), page=FakePage(portal)
        )

        assert result.completed == 5
        assert portal.detail_visits.count("1001") == 1

    @pytest.mark.asyncio
    async def test_max_pages_limits_listing(self, tmp_path):
        portal = FakePortal.with_results([5, 5, 5])
        result = await CrawlOrchestrator(fast_config(tmp_path, max_pages=2)).run(
            search_job(), page=FakePage(portal)
        )

        assert result.pages_processed == 2
        assert result.completed == 10

    @pytest.mark.asyncio
    async def test_merchants_are_persisted(self, tmp_path):
        """Every extracted merchant is written to the database."""
        database = LocalSqliteDatabase(tmp_path / "crawl.db")
        orchestrator = CrawlOrchestrator(fast_config(tmp_path), database=database)

        await orchestrator.run(search_job(), page=FakePage(FakePortal.with_results([3])))

        row = database.get_merchant("fmtc:1002")
        assert row["name"] == "Merchant 1002"
        assert len(database.get_networks("fmtc:1002")) == 2
        database.close()

    @pytest.mark.asyncio
    async def test_empty_search_finishes_without_merchants(self, tmp_path):
        result = await CrawlOrchestrator(fast_config(tmp_path)).run(
            search_job(), page=FakePage(FakePortal())
        )

        assert result.success
        assert result.completed == 0
        assert result.final_state == "done"


class TestFailures:
    """Error handling and terminal states."""

    @pytest.mark.asyncio
    async def test_login_failure_is_terminal(self, tmp_path):
        """Rejected credentials end the job in FAILED without searching."""
        portal = FakePortal.with_results([5], password="different")
        page = FakePage(portal)

        result = await CrawlOrchestrator(fast_config(tmp_path)).run(search_job(), page=page)

        assert not result.success
        assert result.final_state == CrawlState.FAILED.value
        assert result.error.startswith("Login failed")
        assert not any("program_directory" in url for url in page.visits)

    @pytest.mark.asyncio
    async def test_detail_failure_continues(self, tmp_path):
        """One merchant timing out is recorded; the rest are extracted."""
        portal = FakePortal.with_results([5], failing_ids={"1003"})

        result = await CrawlOrchestrator(fast_config(tmp_path)).run(
            search_job(), page=FakePage(portal)
        )

        assert result.success
        assert result.completed == 4
        assert result.failed == 1
        assert result.failures[0].target == "Merchant 1003"
        assert result.failures[0].error_type == "NavigationError"
        assert portal.detail_visits.count("1003") == 2

    @pytest.mark.asyncio
    async def test_consecutive_failures_stop_the_job(self, tmp_path):
        portal = FakePortal.with_results([10], failing_ids={str(i) for i in range(1001, 1011)})
        config = fast_config(tmp_path, max_consecutive_errors=3, max_retries=0)

        result = await CrawlOrchestrator(config).run(search_job(), page=FakePage(portal))

        assert result.final_state == CrawlState.FAILED.value
        assert result.failed == 3
        assert "consecutive" in result.error

    @pytest.mark.asyncio
    async def test_all_visits_failing_is_not_success(self, tmp_path):
        portal = FakePortal.with_results([2], failing_ids={"1001", "1002"})
        config = fast_config(tmp_path, max_retries=0)

        result = await CrawlOrchestrator(config).run(search_job(), page=FakePage(portal))

        assert result.final_state == "done"
        assert not result.success
        assert result.error == "All 2 merchant visits failed"

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_before_browser(self, tmp_path):
        """Configuration problems are reported without touching a page."""
        job = JobDescriptor(credentials=Credentials("", ""), execution_id="e")
        page = FakePage()

        result = await CrawlOrchestrator(fast_config(tmp_path)).run(job, page=page)

        assert result.final_state == "failed"
        assert result.error.startswith("ConfigurationError")
        assert page.visits == []

    @pytest.mark.asyncio
    async def test_auto_captcha_without_key_fails_fast(self, tmp_path):
        config = fast_config(tmp_path, captcha={"mode": "auto"})
        result = await CrawlOrchestrator(config).run(search_job(), page=FakePage())

        assert not result.success
        assert "API key" in result.error

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_result(self, tmp_path):
        """run() never raises."""
        login = AsyncMock()
        login.login = AsyncMock(side_effect=RuntimeError("browser crashed"))
        orchestrator = CrawlOrchestrator(fast_config(tmp_path), login_handler=login)

        result = await orchestrator.run(search_job(), page=FakePage())

        assert result.final_state == "failed"
        assert result.error == "RuntimeError: browser crashed"


class TestRetry:
    """Retrying page work."""

    @pytest.mark.asyncio
    async def test_navigation_error_is_retried(self, tmp_path):
        login = AsyncMock()
        login.login = AsyncMock(side_effect=[NavigationError("slow"), True])
        config = fast_config(tmp_path, max_retries=2)
        orchestrator = CrawlOrchestrator(config, login_handler=login)

        await orchestrator.run(
            JobDescriptor(CREDENTIALS, "e", targets=[MerchantTarget(merchant_id="1001")]),
            page=_logged_in_after_login(FakePage()),
        )

        assert login.login.await_count == 2

    @pytest.mark.asyncio
    async def test_login_error_is_not_retried(self, tmp_path):
        login = AsyncMock()
        login.login = AsyncMock(side_effect=LoginError("rejected"))
        orchestrator = CrawlOrchestrator(fast_config(tmp_path, max_retries=3), login_handler=login)

        result = await orchestrator.run(search_job(), page=FakePage())

        assert login.login.await_count == 1
        assert result.error == "Login failed: rejected"

    def test_backoff_is_capped_with_jitter(self, tmp_path):
        orchestrator = CrawlOrchestrator(fast_config(tmp_path, retry_base_delay=5))
        assert 3.75 <= orchestrator._backoff_delay(0) <= 6.25
        assert 15.0 <= orchestrator._backoff_delay(2) <= 25.0
        assert orchestrator._backoff_delay(10) <= 75.0


def _logged_in_after_login(page):
    """Let a mocked login hand over an authenticated page."""
    page.context._cookies.append({"name": "PHPSESSID", "value": "x"})
    return page


class TestSessionsAndTargets:
    """Session reuse, direct targets and cancellation."""

    @pytest.mark.asyncio
    async def test_saved_session_skips_login(self, tmp_path):
        """A second job with a fresh page reuses the stored session."""
        config = fast_config(tmp_path)
        portal = FakePortal.with_results([2])

        first = await CrawlOrchestrator(config).run(search_job(), page=FakePage(portal))
        assert first.success

        second_page = FakePage(portal)
        second = await CrawlOrchestrator(config).run(search_job(), page=second_page)

        assert second.success
        assert f"{BASE}/cp/login" not in second_page.visits
        assert second_page.visits[0] == f"{BASE}/cp/dash"

    @pytest.mark.asyncio
    async def test_direct_targets_skip_search(self, tmp_path):
        """A job with targets goes from login straight to DETAIL."""
        portal = FakePortal()
        page = FakePage(portal)
        job = JobDescriptor(
            credentials=CREDENTIALS,
            execution_id="refresh-1",
            targets=[
                MerchantTarget(merchant_id="1001"),
                MerchantTarget(merchant_url=f"{BASE}/cp/program_directory/details/m/1001/"),
                MerchantTarget(merchant_name="No address"),
            ],
        )

        result = await CrawlOrchestrator(fast_config(tmp_path)).run(job, page=page)

        assert portal.detail_visits == ["1001"]
        assert not any("program_directory/index" in url for url in page.visits)
        assert result.completed == 1
        assert result.failed == 1
        assert result.failures[0].target == "No address"

    @pytest.mark.asyncio
    async def test_cancellation_stops_detail_visits(self, tmp_path):
        """Setting the cancel event stops scheduling further merchants."""
        portal = FakePortal.with_results([10])
        cancel = asyncio.Event()
        portal.on_detail = lambda merchant_id: cancel.set() if merchant_id == "1003" else None

        result = await CrawlOrchestrator(fast_config(tmp_path)).run(
            search_job(), page=FakePage(portal), cancel_event=cancel
        )

        assert result.cancelled
        assert not result.success
        assert result.error == "Job cancelled"
        assert result.completed == 3
        assert portal.detail_visits == ["1001", "1002", "1003"]

    @pytest.mark.asyncio
    async def test_unusable_saved_session_falls_back_to_login(self, tmp_path):
        """A stored cookie the browser rejects leads to a normal login."""
        config = fast_config(tmp_path)
        SessionStore(config.session).persist(SessionState(
            cookies=[{"name": "PHPSESSID", "value": "stale"}],
            identity=CREDENTIALS.username,
        ))
        page = FakePage(FakePortal.with_results([2]))
        add_cookies = page.context.add_cookies

        async def strict_add_cookies(cookies):
            if any("domain" not in cookie for cookie in cookies):
                raise PlaywrightError("Cookie should have a url or a domain/path pair")
            await add_cookies(cookies)

        page.context.add_cookies = strict_add_cookies
        events = []

        result = await CrawlOrchestrator(config).run(search_job(), page=page, sink=events.append)

        assert result.success, result.error
        assert result.completed == 2
        assert f"{BASE}/cp/login" in page.visits
        assert any("could not be restored" in e.message for e in events)


class TestChallenges:
    """Unresolved reCAPTCHA handling per state."""

    @pytest.mark.asyncio
    async def test_unresolved_login_captcha_fails_job(self, tmp_path):
        """A reCAPTCHA on the login form that cannot be solved is terminal."""
        portal = FakePortal.with_results([3], login_captcha=True)
        page = FakePage(portal)
        config = fast_config(tmp_path, captcha={"mode": "skip"}, max_retries=2)

        result = await CrawlOrchestrator(config).run(search_job(), page=page)

        assert not result.success
        assert result.final_state == CrawlState.FAILED.value
        assert result.error.startswith("Login failed")
        assert page.visits.count(f"{BASE}/cp/login") == 1
        assert not any("program_directory" in url for url in page.visits)
        assert portal.detail_visits == []

    @pytest.mark.asyncio
    async def test_captcha_on_detail_page_is_a_merchant_failure(self, tmp_path):
        """One merchant behind a reCAPTCHA is recorded; the others complete."""
        def detail_with_captcha(merchant_id):
            html = detail_html(merchant_id)
            if merchant_id == "1002":
                html = html.replace("<h1>", RECAPTCHA_HTML + "<h1>", 1)
            return html

        portal = FakePortal.with_results([3], detail_factory=detail_with_captcha)
        config = fast_config(tmp_path, captcha={"mode": "skip"}, max_retries=2)

        result = await CrawlOrchestrator(config).run(search_job(), page=FakePage(portal))

        assert result.success
        assert result.final_state == CrawlState.DONE.value
        assert result.completed == 2
        assert [m.fmtc_id for m in result.merchants] == ["1001", "1003"]
        assert result.failed == 1
        assert result.failures[0].target == "Merchant 1002"
        assert result.failures[0].error_type == "ChallengeError"
        assert portal.detail_visits.count("1002") == 1


class TestProgressSink:
    """Component events reach the injected sink."""

    @pytest.mark.asyncio
    async def test_component_events_are_forwarded(self, tmp_path):
        """Search, parsing and detail logs arrive keyed by the execution id."""
        events = []
        orchestrator = CrawlOrchestrator(fast_config(tmp_path))

        result = await orchestrator.run(
            search_job(), page=FakePage(FakePortal.with_results([2])), sink=events.append
        )

        assert result.success
        messages = [e.message for e in events]
        assert any(m.startswith("Search fields set") for m in messages)
        assert any(m.startswith("Parsed page 1") for m in messages)
        assert sum(m.startswith("Merchant detail extracted") for m in messages) == 2
        assert messages.count("Login succeeded") == 1
        assert all(e.execution_id == "exec-test" for e in events)
        detail_event = next(e for e in events if e.message.startswith("Merchant detail extracted"))
        assert detail_event.context == {"logger": "fmtc_crawler.merchant_detail"}

    @pytest.mark.asyncio
    async def test_logger_level_is_restored(self, tmp_path):
        package_logger = logging.getLogger("fmtc_crawler")
        before = (package_logger.level, list(package_logger.handlers))

        await CrawlOrchestrator(fast_config(tmp_path)).run(
            search_job(), page=FakePage(FakePortal.with_results([1])), sink=lambda event: None
        )

        assert (package_logger.level, list(package_logger.handlers)) == before
