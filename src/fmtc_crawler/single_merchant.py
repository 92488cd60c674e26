"""
On-demand refresh of individual merchants.

Accepts the job invocation contract used by the admin application:

    {
        "merchantUrl": "...",          # or "merchantId"
        "merchantName": "...",
        "credentials": {"username": "...", "password": "..."},
        "downloadImages": false,
        "config": {...},               # CrawlerConfig overrides
        "executionId": "..."
    }

and answers with ``{success, merchantData, error, scrapedAt, processingTimeMs}``.
A refresh is an orchestrator job with direct targets, so it starts in
DETAIL once the session is authenticated.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fmtc_crawler.config import CrawlerConfig
from fmtc_crawler.errors import ConfigurationError
from fmtc_crawler.log_sink import LogSink
from fmtc_crawler.models import Credentials, JobDescriptor, JobResult, MerchantTarget
from fmtc_crawler.orchestrator import CrawlOrchestrator, CrawlState

logger = logging.getLogger(__name__)


@dataclass
class RefreshRequest:
    """A parsed refresh invocation."""
    credentials: Credentials
    execution_id: str
    targets: List[MerchantTarget] = field(default_factory=list)
    download_images: bool = False
    config_overrides: Dict[str, Any] = field(default_factory=dict)

    def to_job(self) -> JobDescriptor:
        return JobDescriptor(
            credentials=self.credentials,
            execution_id=self.execution_id,
            targets=list(self.targets),
            download_images=self.download_images,
        )


def request_from_dict(data: Dict[str, Any]) -> RefreshRequest:
    """
    Parse the camelCase invocation contract.

    ``merchants`` may carry a list of ``{merchantUrl|merchantId, merchantName}``
    entries for a batch refresh instead of the single-merchant keys.

    Raises:
        ConfigurationError: If the payload is not a mapping
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Refresh request must be a JSON object")

    creds = data.get("credentials") or {}
    credentials = Credentials(
        username=creds.get("username", ""),
        password=creds.get("password", ""),
    )

    entries = data.get("merchants") or [data]
    targets = []
    for entry in entries:
        target = MerchantTarget(
            merchant_url=entry.get("merchantUrl") or None,
            merchant_id=str(entry["merchantId"]) if entry.get("merchantId") else None,
            merchant_name=entry.get("merchantName") or None,
        )
        if target.merchant_url or target.merchant_id:
            targets.append(target)

    return RefreshRequest(
        credentials=credentials,
        execution_id=data.get("executionId") or f"refresh-{uuid.uuid4().hex[:12]}",
        targets=targets,
        download_images=bool(data.get("downloadImages", False)),
        config_overrides=data.get("config") or {},
    )


def to_contract(result: JobResult) -> Dict[str, Any]:
    """Render a JobResult in the shape the admin application expects."""
    merchant = result.merchant_data
    payload: Dict[str, Any] = {
        "success": result.success,
        "merchantData": merchant.to_dict() if merchant is not None else None,
        "error": result.error,
        "scrapedAt": result.scraped_at.isoformat(),
        "processingTimeMs": result.processing_time_ms,
    }
    if len(result.merchants) + len(result.failures) > 1:
        payload["completed"] = result.completed
        payload["failed"] = result.failed
        payload["failures"] = [f.to_dict() for f in result.failures]
    return payload


class MerchantRefresher:
    """
    Resyncs one or a few merchants without a catalog sweep.

    Usage:
        refresher = MerchantRefresher(config)
        result = await refresher.refresh(request)
        print(to_contract(result))
    """

    def __init__(
        self,
        config: Optional[CrawlerConfig] = None,
        orchestrator: Optional[CrawlOrchestrator] = None,
    ):
        self.config = config
        self._orchestrator = orchestrator

    def _orchestrator_for(self, request: RefreshRequest) -> CrawlOrchestrator:
        if self._orchestrator is not None:
            return self._orchestrator
        config = (self.config or CrawlerConfig()).with_overrides(request.config_overrides)
        return CrawlOrchestrator(config)

    async def refresh(
        self,
        request: RefreshRequest,
        page=None,
        sink: Optional[LogSink] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> JobResult:
        """Run the refresh and return the orchestrator's result."""
        if not request.targets:
            logger.error(f"Refresh {request.execution_id} has no merchant URL or id")
            return JobResult(
                success=False,
                execution_id=request.execution_id,
                final_state=CrawlState.FAILED.value,
                error="merchantUrl or merchantId is required",
            )

        try:
            orchestrator = self._orchestrator_for(request)
        except (ValueError, ConfigurationError) as e:
            return JobResult(
                success=False,
                execution_id=request.execution_id,
                final_state=CrawlState.FAILED.value,
                error=f"Invalid configuration: {e}",
            )

        logger.info(
            f"Refreshing {len(request.targets)} merchant(s): "
            f"{', '.join(t.label for t in request.targets)}"
        )
        return await orchestrator.run(
            request.to_job(), page=page, sink=sink, cancel_event=cancel_event
        )


async def refresh_merchant(
    data: Dict[str, Any],
    config: Optional[CrawlerConfig] = None,
    page=None,
    sink: Optional[LogSink] = None,
) -> Dict[str, Any]:
    """Contract in, contract out."""
    try:
        request = request_from_dict(data)
    except ConfigurationError as e:
        return to_contract(JobResult(
            success=False, execution_id="", final_state=CrawlState.FAILED.value, error=str(e)
        ))
    result = await MerchantRefresher(config).refresh(request, page=page, sink=sink)
    return to_contract(result)
