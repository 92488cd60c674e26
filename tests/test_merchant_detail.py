"""Tests for merchant detail extraction."""

from pathlib import Path

import pytest

from fmtc_crawler.errors import NavigationError
from fmtc_crawler.merchant_detail import (
    MerchantDetailExtractor,
    classify_affiliate_link,
    normalize_detail_url,
    parse_merchant_detail_html,
)
from fmtc_crawler.models import NetworkStatus
from portal_fakes import BASE, SESSION_COOKIE, FakePage, FakePortal, detail_html, fast_config

DETAIL_URL = f"{BASE}/cp/program_directory/details/m/1001/"


class TestParseMerchantDetail:
    """Extraction from detail page markup."""

    def test_full_page(self):
        """Every section of a complete page is extracted."""
        detail = parse_merchant_detail_html(detail_html("1001"), DETAIL_URL)

        assert detail.name == "Merchant 1001"
        assert detail.homepage == "https://merchant1001.example.com"
        assert detail.primary_category == "Clothing"
        assert detail.primary_country == "US"
        assert detail.ships_to == ["US", "CA", "GB"]
        assert detail.fmtc_id == "1001"
        assert detail.logo_urls == {"logo_120x60": f"{BASE}/img/1001_120x60.png"}
        assert detail.screenshot_urls == {"screenshot_600x450": f"{BASE}/img/1001_600x450.jpg"}
        assert detail.affiliate_url == "https://www.awin1.com/cread.php?awinmid=1001"
        assert detail.affiliate_links == {"AW": ["https://www.awin1.com/cread.php?awinmid=1001"]}
        assert detail.preview_deals_url == f"{BASE}/cp/deals/preview/1001"
        assert detail.fresh_reach_supported is True
        assert detail.fresh_reach_urls == ["https://freshreach.co/m/1001"]
        assert detail.extraction_errors == []

    def test_networks_table(self):
        """Network rows carry name, id, badge status and join link."""
        networks = parse_merchant_detail_html(detail_html("1001"), DETAIL_URL).networks

        assert [(n.network_name, n.network_id, n.status) for n in networks] == [
            ("Awin", "7", NetworkStatus.JOINED),
            ("CJ Affiliate", "1", NetworkStatus.NOT_JOINED),
        ]
        assert networks[0].join_url == f"{BASE}/cp/join/7/1001"
        assert networks[0].fmtc_id == "1001"

    def test_page_without_networks_table(self):
        """A missing Networks section yields an empty list, not an error."""
        detail = parse_merchant_detail_html(detail_html("1001", with_networks=False), DETAIL_URL)
        assert detail.networks == []
        assert detail.name == "Merchant 1001"

    def test_unrecognised_layout_is_partial(self):
        """Markup without any known section still produces a record."""
        detail = parse_merchant_detail_html(
            "<html><head><title>Acme Outdoor | FMTC</title></head><body><p>FMTC ID: 777</p></body></html>",
            "https://account.fmtc.co/cp/somewhere",
        )
        assert detail.name == "Acme Outdoor"
        assert detail.fmtc_id == "777"
        assert detail.homepage is None
        assert detail.networks == []

    def test_classify_affiliate_link(self):
        assert classify_affiliate_link("CJ Link", "https://x") == "CJ"
        assert classify_affiliate_link("Tracking", "https://click.linksynergy.com/a") == "RA"
        assert classify_affiliate_link("Tracking", "https://example.com") == "OTHER"


class TestNormalizeDetailUrl:
    def test_short_path_is_expanded(self):
        assert normalize_detail_url(f"{BASE}/cp/program_directory/m/42/") == (
            f"{BASE}/cp/program_directory/details/m/42/"
        )

    def test_legacy_typo_is_repaired(self):
        assert normalize_detail_url(f"{BASE}/cp/program_dtails/m/42/") == (
            f"{BASE}/cp/program_directory/details/m/42/"
        )

    def test_canonical_url_unchanged(self):
        assert normalize_detail_url(DETAIL_URL) == DETAIL_URL


def logged_in_page(portal=None):
    page = FakePage(portal or FakePortal())
    page.context._cookies.append(dict(SESSION_COOKIE))
    return page


class TestMerchantDetailExtractor:
    """Fetching detail pages on the fake portal."""

    @pytest.mark.asyncio
    async def test_fetch(self, tmp_path):
        extractor = MerchantDetailExtractor(fast_config(tmp_path))
        page = logged_in_page()

        detail = await extractor.fetch(page, f"{BASE}/cp/program_directory/m/1001/", "Merchant 1001")

        assert page.visits == [DETAIL_URL]
        assert detail.fmtc_id == "1001"
        assert detail.source_url == DETAIL_URL
        assert detail.downloaded_images == {}

    @pytest.mark.asyncio
    async def test_timeout_is_navigation_error(self, tmp_path):
        extractor = MerchantDetailExtractor(fast_config(tmp_path))
        page = logged_in_page(FakePortal(failing_ids={"1001"}))

        with pytest.raises(NavigationError):
            await extractor.fetch(page, DETAIL_URL)

    @pytest.mark.asyncio
    async def test_login_redirect_is_navigation_error(self, tmp_path):
        """An expired session shows up as a redirect to the login page."""
        extractor = MerchantDetailExtractor(fast_config(tmp_path))
        page = FakePage(FakePortal())

        with pytest.raises(NavigationError, match="Redirected to login"):
            await extractor.fetch(page, DETAIL_URL)

    @pytest.mark.asyncio
    async def test_download_images(self, tmp_path):
        """Images are written under the merchant's folder; failed ones are skipped."""
        config = fast_config(tmp_path)
        extractor = MerchantDetailExtractor(config)
        page = logged_in_page()
        page.request.status_by_url[f"{BASE}/img/1001_600x450.jpg"] = 404

        detail = await extractor.fetch(page, DETAIL_URL, "Merchant 1001", download_images=True)

        expected = Path(config.image_dir) / "Merchant_1001" / "logo_120x60.png"
        assert detail.downloaded_images == {"logo_120x60": str(expected)}
        assert expected.read_bytes().startswith(b"\x89PNG")
        assert len(page.request.fetched) == 2

    @pytest.mark.asyncio
    async def test_unwritable_image_dir_keeps_detail(self, tmp_path):
        """An image folder that cannot be created skips downloads only."""
        blocker = tmp_path / "images"
        blocker.write_text("not a directory")
        extractor = MerchantDetailExtractor(fast_config(tmp_path, image_dir=blocker))
        page = logged_in_page()

        detail = await extractor.fetch(page, DETAIL_URL, "Merchant 1001", download_images=True)

        assert detail.fmtc_id == "1001"
        assert detail.downloaded_images == {}
        assert page.request.fetched == []
