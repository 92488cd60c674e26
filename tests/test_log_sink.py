"""Tests for job progress reporting."""

import asyncio
import logging

import pytest

from fmtc_crawler.log_sink import JobReporter, LogEvent


class TestJobReporter:
    """Tests for JobReporter."""

    def test_events_reach_sink(self):
        """Each report becomes a LogEvent with the execution id and context."""
        events = []
        reporter = JobReporter("exec-1", sink=events.append)

        reporter.info("Search submitted", page=1)
        reporter.error("Merchant failed", url="https://x")

        assert [e.level for e in events] == ["info", "error"]
        assert events[0].execution_id == "exec-1"
        assert events[0].context == {"page": 1}
        assert events[1].to_dict()["message"] == "Merchant failed"

    def test_events_are_mirrored_to_logging(self, caplog):
        """Reports also go to the standard logging tree."""
        reporter = JobReporter("exec-2")
        with caplog.at_level(logging.INFO, logger="fmtc_crawler"):
            reporter.info("hello")
        assert "[exec-2] hello" in caplog.text

    def test_unknown_level_is_info(self):
        events = []
        JobReporter("e", sink=events.append).report("verbose", "x")
        assert events[0].level == "info"

    def test_failing_sink_never_raises(self):
        """A sink that raises does not affect the caller."""
        def broken(event: LogEvent):
            raise RuntimeError("sink down")

        reporter = JobReporter("exec-3", sink=broken)
        reporter.warning("still fine")

    @pytest.mark.asyncio
    async def test_async_sink_is_flushed(self):
        """Coroutine sinks are scheduled and awaited by flush()."""
        received = []

        async def sink(event):
            await asyncio.sleep(0)
            received.append(event.message)

        reporter = JobReporter("exec-4", sink=sink)
        reporter.info("one")
        reporter.info("two")
        await reporter.flush()

        assert received == ["one", "two"]

    @pytest.mark.asyncio
    async def test_failing_async_sink_is_swallowed(self):
        async def sink(event):
            raise RuntimeError("remote sink down")

        reporter = JobReporter("exec-5", sink=sink)
        reporter.info("x")
        await reporter.flush()


class TestComponentLogCapture:
    """Forwarding component log records while a job runs."""

    def test_component_records_reach_sink(self):
        """Records from package loggers become events; reporter events are not doubled."""
        events = []
        reporter = JobReporter("exec-6", sink=events.append)

        with reporter.capture_component_logs():
            logging.getLogger("fmtc_crawler.search").info("Search fields set: q")
            logging.getLogger("fmtc_crawler.search").debug("below the forwarding level")
            logging.getLogger("other_library").warning("not ours")
            reporter.info("Login succeeded")
        logging.getLogger("fmtc_crawler.search").info("after the job")

        assert [(e.level, e.message) for e in events] == [
            ("info", "Search fields set: q"),
            ("info", "Login succeeded"),
        ]
        assert events[0].context == {"logger": "fmtc_crawler.search"}
        assert events[0].execution_id == "exec-6"

    def test_without_sink_nothing_is_attached(self):
        package_logger = logging.getLogger("fmtc_crawler")
        handlers = list(package_logger.handlers)

        with JobReporter("exec-7").capture_component_logs():
            assert package_logger.handlers == handlers

    @pytest.mark.asyncio
    async def test_other_tasks_are_ignored(self):
        """Only the job's own task is forwarded."""
        events = []
        reporter = JobReporter("exec-8", sink=events.append)

        async def other_job():
            logging.getLogger("fmtc_crawler.results_parser").warning("someone else's page")

        with reporter.capture_component_logs():
            await asyncio.ensure_future(other_job())
            logging.getLogger("fmtc_crawler.results_parser").warning("our page")

        assert [e.message for e in events] == ["our page"]
