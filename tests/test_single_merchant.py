"""Tests for the single-merchant refresh flow."""

import pytest
from unittest.mock import AsyncMock

from fmtc_crawler.errors import ConfigurationError
from fmtc_crawler.models import JobResult, MerchantDetail, MerchantFailure
from fmtc_crawler.single_merchant import (
    MerchantRefresher,
    RefreshRequest,
    refresh_merchant,
    request_from_dict,
    to_contract,
)
from portal_fakes import BASE, FakePage, FakePortal, fast_config

PAYLOAD = {
    "merchantId": 1001,
    "merchantName": "Acme Outdoor",
    "credentials": {"username": "buyer@example.com", "password": "secret"},
    "downloadImages": True,
    "config": {"max_pages": 1},
    "executionId": "exec-7",
}


class TestRequestFromDict:
    """Parsing the invocation contract."""

    def test_single_merchant(self):
        request = request_from_dict(PAYLOAD)

        assert request.execution_id == "exec-7"
        assert request.credentials.username == "buyer@example.com"
        assert len(request.targets) == 1
        assert request.targets[0].merchant_id == "1001"
        assert request.targets[0].merchant_name == "Acme Outdoor"
        assert request.download_images is True
        assert request.config_overrides == {"max_pages": 1}

        job = request.to_job()
        assert job.is_direct
        assert job.search_params is None

    def test_batch(self):
        request = request_from_dict({
            "credentials": {"username": "u@example.com", "password": "p"},
            "merchants": [
                {"merchantUrl": f"{BASE}/cp/program_directory/m/1/"},
                {"merchantId": "2", "merchantName": "Two"},
                {"merchantName": "No address"},
            ],
        })
        assert [t.label for t in request.targets] == [f"{BASE}/cp/program_directory/m/1/", "Two"]
        assert request.execution_id.startswith("refresh-")

    def test_not_a_mapping(self):
        with pytest.raises(ConfigurationError):
            request_from_dict(["merchantId", 1])


class TestToContract:
    """Rendering results for the admin application."""

    def test_single_result(self):
        result = JobResult(
            success=True,
            execution_id="e",
            final_state="done",
            merchants=[MerchantDetail(source_url="https://x", name="Acme", fmtc_id="1")],
            processing_time_ms=1234,
        )
        contract = to_contract(result)

        assert set(contract) == {"success", "merchantData", "error", "scrapedAt", "processingTimeMs"}
        assert contract["merchantData"]["name"] == "Acme"
        assert contract["processingTimeMs"] == 1234

    def test_batch_result_adds_counts(self):
        result = JobResult(
            success=True,
            execution_id="e",
            final_state="done",
            merchants=[MerchantDetail(source_url="https://x")],
            failures=[MerchantFailure("Two", "NavigationError", "timeout")],
        )
        contract = to_contract(result)

        assert contract["completed"] == 1
        assert contract["failed"] == 1
        assert contract["failures"][0]["error_type"] == "NavigationError"

    def test_failed_result(self):
        contract = to_contract(JobResult(success=False, execution_id="e", final_state="failed", error="x"))
        assert contract["merchantData"] is None
        assert contract["error"] == "x"


class TestMerchantRefresher:
    """Running refreshes."""

    @pytest.mark.asyncio
    async def test_refresh_on_fake_portal(self, tmp_path):
        """A refresh logs in and extracts the one merchant."""
        portal = FakePortal()
        refresher = MerchantRefresher(fast_config(tmp_path))
        request = request_from_dict({**PAYLOAD, "downloadImages": False})

        result = await refresher.refresh(request, page=FakePage(portal))

        assert result.success, result.error
        assert result.merchant_data.fmtc_id == "1001"
        assert result.merchant_url is None
        assert portal.detail_visits == ["1001"]

    @pytest.mark.asyncio
    async def test_missing_target(self, tmp_path):
        """No URL or id fails before any browser work."""
        orchestrator = AsyncMock()
        refresher = MerchantRefresher(fast_config(tmp_path), orchestrator=orchestrator)
        request = RefreshRequest(credentials=None, execution_id="e")

        result = await refresher.refresh(request)

        assert not result.success
        assert result.error == "merchantUrl or merchantId is required"
        orchestrator.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_config_override(self, tmp_path):
        refresher = MerchantRefresher(fast_config(tmp_path))
        request = request_from_dict({**PAYLOAD, "config": {"max_pages": 0}})

        result = await refresher.refresh(request)

        assert not result.success
        assert result.error.startswith("Invalid configuration")

    @pytest.mark.asyncio
    async def test_refresh_merchant_contract(self, tmp_path):
        """Contract in, contract out."""
        contract = await refresh_merchant(
            {**PAYLOAD, "downloadImages": False},
            config=fast_config(tmp_path),
            page=FakePage(FakePortal()),
        )

        assert contract["success"] is True
        assert contract["merchantData"]["fmtc_id"] == "1001"
        assert contract["merchantData"]["networks"][0]["network_name"] == "Awin"

    @pytest.mark.asyncio
    async def test_refresh_merchant_bad_payload(self):
        contract = await refresh_merchant("not a mapping")
        assert contract["success"] is False
        assert "JSON object" in contract["error"]
