"""
Progress/log reporting for crawl jobs.

Components report through a ``JobReporter`` bound to one execution id.
Each event is mirrored to the standard ``logging`` tree and forwarded to
an optional injected sink ``report(event)``. While a job runs,
``capture_component_logs`` also forwards records from the component
loggers under ``fmtc_crawler`` to the same sink. Sink failures are logged
and dropped; reporting never fails a job.
"""
import asyncio
import inspect
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

LogSink = Callable[["LogEvent"], Any]

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


@dataclass
class LogEvent:
    """One progress or log record for an execution."""

    level: str
    message: str
    execution_id: str
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "message": self.message,
            "execution_id": self.execution_id,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }


class JobReporter:
    """
    Fire-and-forget reporter keyed by execution id.

    Usage:
        reporter = JobReporter("exec-42", sink=post_to_admin)
        reporter.info("Search submitted", page=1)
    """

    def __init__(
        self,
        execution_id: str,
        sink: Optional[LogSink] = None,
        source: str = "fmtc_crawler",
    ):
        self.execution_id = execution_id
        self.sink = sink
        self._logger = logging.getLogger(source)
        self._pending: List[asyncio.Future] = []

    def report(self, level: str, message: str, **context: Any) -> None:
        """Emit an event. Never raises."""
        level = level if level in _LEVELS else "info"
        self._logger.log(
            _LEVELS[level],
            f"[{self.execution_id}] {message}",
            extra={"job_event": True},
        )
        self.forward(level, message, **context)

    def forward(self, level: str, message: str, **context: Any) -> None:
        """Send an event to the sink only. Never raises."""
        if self.sink is None:
            return

        event = LogEvent(
            level=level,
            message=message,
            execution_id=self.execution_id,
            context=context,
        )
        try:
            result = self.sink(event)
            if inspect.isawaitable(result):
                future = asyncio.ensure_future(result)
                future.add_done_callback(self._on_sink_done)
                self._pending.append(future)
        except Exception as e:
            logger.debug(f"Log sink failed for {self.execution_id}: {e}")

    def _on_sink_done(self, future: asyncio.Future) -> None:
        if future in self._pending:
            self._pending.remove(future)
        if not future.cancelled() and future.exception() is not None:
            logger.debug(f"Log sink failed for {self.execution_id}: {future.exception()}")

    async def flush(self) -> None:
        """Wait for outstanding asynchronous sink calls."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    @contextmanager
    def capture_component_logs(
        self, logger_name: str = "fmtc_crawler", level: int = logging.INFO
    ) -> Iterator[None]:
        """
        Forward component log records to the sink for the duration of a job.

        Only records emitted from the current asyncio task are forwarded.
        The logger level is lowered to ``level`` while capturing; console
        handlers configured by ``setup_logging`` keep their own level.
        """
        if self.sink is None:
            yield
            return

        target = logging.getLogger(logger_name)
        handler = SinkHandler(self, level)
        previous_level = target.level
        target.addHandler(handler)
        if target.getEffectiveLevel() > level:
            target.setLevel(level)
        try:
            yield
        finally:
            target.removeHandler(handler)
            target.setLevel(previous_level)

    def debug(self, message: str, **context: Any) -> None:
        self.report("debug", message, **context)

    def info(self, message: str, **context: Any) -> None:
        self.report("info", message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self.report("warning", message, **context)

    def error(self, message: str, **context: Any) -> None:
        self.report("error", message, **context)


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class SinkHandler(logging.Handler):
    """Logging handler that forwards component records to a reporter's sink."""

    def __init__(self, reporter: JobReporter, level: int = logging.INFO):
        super().__init__(level)
        self.reporter = reporter
        self._task = _current_task()

    def emit(self, record: logging.LogRecord) -> None:
        # reporter events are forwarded by report() itself
        if getattr(record, "job_event", False) or record.name == __name__:
            return
        if self._task is not None and _current_task() is not self._task:
            return
        try:
            message = record.getMessage()
        except Exception:
            self.handleError(record)
            return
        self.reporter.forward(record.levelname.lower(), message, logger=record.name)
