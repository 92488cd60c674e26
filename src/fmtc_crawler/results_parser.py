"""
Program directory results parsing and pagination.

Parsing is done on the page HTML with BeautifulSoup so it can be tested
from literal markup. Pagination drives the DataTables controls on the
live page.

Table layout (one row per merchant, at least six cells):

    0 checkbox | 1 name (link to detail) | 2 country | 3 network
    4 date added | 5 premium deals
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from fmtc_crawler import selectors
from fmtc_crawler.config import BASE_URL, CrawlerConfig
from fmtc_crawler.models import MerchantSummary, ParsedResultPage
from fmtc_crawler.utils.human_simulator import HumanSimulator
from fmtc_crawler.utils.page_helpers import element_text, query_first

logger = logging.getLogger(__name__)

MERCHANT_ID_PATTERN = re.compile(r"/m/(\d+)")


def parse_showing_text(text: str) -> Optional[Tuple[int, int, int]]:
    """Parse "Showing A to B of C entries" into (A, B, C)."""
    match = selectors.SHOWING_PATTERN.search(text or "")
    if not match:
        return None
    start, end, total = (int(g.replace(",", "")) for g in match.groups())
    return start, end, total


@dataclass
class PaginationInfo:
    """Paging metadata derived from the table caption."""
    current_page: int
    total_pages: int
    total_entries: int
    page_size: int


def pagination_from_text(
    text: str,
    row_count: int,
    known_page_size: Optional[int] = None,
) -> PaginationInfo:
    """
    Compute paging metadata from the caption, or from the row count when
    there is no usable caption.

    A short last page ("Showing 51 to 60 of 60") says nothing about the
    page size; ``known_page_size`` from an earlier page is used instead.
    """
    parsed = parse_showing_text(text)
    if parsed is None:
        return PaginationInfo(
            current_page=1,
            total_pages=1,
            total_entries=row_count,
            page_size=row_count,
        )

    start, end, total = parsed
    page_size = max(end - start + 1, 1)
    if known_page_size and end >= total and page_size < known_page_size:
        page_size = known_page_size
    total = max(total, row_count)
    return PaginationInfo(
        current_page=max(math.ceil(start / page_size), 1),
        total_pages=max(math.ceil(total / page_size), 1),
        total_entries=total,
        page_size=page_size,
    )


def extract_merchant_id(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    match = MERCHANT_ID_PATTERN.search(url)
    return match.group(1) if match else None


def synthesize_id(name: str, index: int) -> str:
    """Deterministic id for a row whose link carries no merchant id."""
    return f"fmtc_{re.sub(r'[^a-zA-Z0-9]', '_', name).lower()}_{index}"


def absolute_url(href: Optional[str], base_url: str = BASE_URL) -> Optional[str]:
    if not href:
        return None
    if href.startswith("http"):
        return href
    return urljoin(base_url.rstrip("/") + "/", href)


def parse_row(cells, index: int, base_url: str = BASE_URL) -> Optional[MerchantSummary]:
    """Build a summary from a row's cells, or None if it has no name."""
    name_cell = cells[1]
    link = name_cell.find("a")
    if link is not None:
        name = link.get_text(strip=True)
        detail_url = absolute_url(link.get("href"), base_url)
    else:
        name = name_cell.get_text(strip=True)
        detail_url = None

    if not name:
        return None

    merchant_id = extract_merchant_id(detail_url) or synthesize_id(name, index)
    return MerchantSummary(
        id=merchant_id,
        name=name,
        country=cells[2].get_text(strip=True),
        network=cells[3].get_text(strip=True),
        date_added=cells[4].get_text(strip=True),
        detail_url=detail_url,
    )


def find_rows(soup: BeautifulSoup) -> List:
    """Rows from the first selector in the fallback list that matches any."""
    for selector in selectors.RESULT_ROWS:
        rows = soup.select(selector)
        if rows:
            logger.debug(f"Result rows matched by {selector}: {len(rows)}")
            return rows
    return []


def parse_results_html(
    html: str,
    base_url: str = BASE_URL,
    known_page_size: Optional[int] = None,
) -> ParsedResultPage:
    """
    Parse one results page.

    Rows with fewer than ``MIN_RESULT_COLUMNS`` cells or without a name
    are skipped. Totals come from the "Showing" caption when present,
    otherwise from the number of rows parsed.
    """
    soup = BeautifulSoup(html or "", "html.parser")

    info_text = ""
    for selector in selectors.RESULTS_INFO:
        info = soup.select_one(selector)
        if info is not None:
            info_text = info.get_text(" ", strip=True)
            break

    # row positions are global across pages
    showing = parse_showing_text(info_text)
    offset = showing[0] - 1 if showing else 0

    merchants: List[MerchantSummary] = []
    for index, row in enumerate(find_rows(soup)):
        cells = row.find_all("td", recursive=False) or row.find_all("td")
        if len(cells) < selectors.MIN_RESULT_COLUMNS:
            continue
        try:
            merchant = parse_row(cells, offset + index, base_url)
        except (AttributeError, IndexError) as e:
            logger.warning(f"Could not parse result row {index + 1}: {e}")
            continue
        if merchant is None:
            logger.debug(f"Result row {index + 1} has no merchant name, skipped")
            continue
        merchants.append(merchant)

    paging = pagination_from_text(info_text, len(merchants), known_page_size)
    has_next = any(soup.select_one(s) is not None for s in selectors.NEXT_BUTTON)

    return ParsedResultPage(
        merchants=merchants,
        total_count=paging.total_entries,
        current_page=paging.current_page,
        has_next_page=has_next,
        page_size=paging.page_size,
    )


def choose_page_size(target: int, available: List[int]) -> Optional[int]:
    """
    Pick 100, 500 or 1000 rows per page for the expected number of merchants.

    Falls back to the smallest larger option, then the largest option.
    """
    wanted = 100 if target <= 100 else 500 if target <= 500 else 1000
    if wanted in available:
        return wanted
    larger = sorted(v for v in available if v > wanted)
    if larger:
        return larger[0]
    return max(available) if available else None


class ResultsParser:
    """
    Reads result pages from the live page and moves through pagination.

    Usage:
        parser = ResultsParser(config)
        result = await parser.parse_page(page)
        while result.has_next_page and await parser.go_to_next_page(page):
            result = await parser.parse_page(page)
    """

    def __init__(self, config: CrawlerConfig, simulator: Optional[HumanSimulator] = None):
        self.config = config
        self.simulator = simulator or HumanSimulator(config.behavior)
        self._page_size: Optional[int] = None

    async def parse_page(self, page) -> ParsedResultPage:
        result = parse_results_html(
            await page.content(), self.config.base_url, self._page_size
        )
        if result.has_next_page and result.page_size:
            self._page_size = result.page_size
        logger.info(
            f"Parsed page {result.current_page}: {len(result.merchants)} merchants "
            f"(total {result.total_count}, next={result.has_next_page})"
        )
        return result

    async def has_next_page(self, page) -> bool:
        """True when the pagination control has an enabled "next" button."""
        return await query_first(page, selectors.NEXT_BUTTON) is not None

    async def get_pagination_info(self, page) -> PaginationInfo:
        info = await query_first(page, selectors.RESULTS_INFO)
        rows = await page.query_selector_all(selectors.RESULT_ROWS[0])
        return pagination_from_text(await element_text(info), len(rows))

    async def first_row_name(self, page) -> Optional[str]:
        cell = await page.query_selector(f"{selectors.RESULT_ROWS[0]} td:nth-child(2)")
        text = await element_text(cell)
        return text or None

    async def _wait_for_table(self, page) -> None:
        """Wait for the table's data request, at most the settle delay."""
        timeout = self.config.settle_delay_ms
        if timeout <= 0:
            return
        try:
            await page.wait_for_response(
                lambda response: "program_directory" in response.url, timeout=timeout
            )
        except PlaywrightTimeoutError:
            logger.debug("No table response seen; settle delay elapsed")

    async def go_to_next_page(self, page, attempts: int = 2) -> bool:
        """
        Click "next" and check that the first row changed.

        Returns:
            True if the table is believed to show the next page
        """
        before = await self.first_row_name(page)

        for attempt in range(1, attempts + 1):
            button = await query_first(page, selectors.NEXT_BUTTON)
            if button is None:
                logger.info("No enabled next button")
                return False

            await self.simulator.safe_click(page, button)
            await self._wait_for_table(page)

            after = await self.first_row_name(page)
            if after and after != before:
                logger.info(f"Moved to next page (first merchant: {after})")
                return True
            logger.warning(f"Table unchanged after next click (attempt {attempt}/{attempts})")

        return False

    async def optimize_page_size(self, page, target_merchants: int) -> Optional[int]:
        """
        Switch the DataTables length control to fit the expected result count.

        Returns:
            The page size now selected, or None if the control is missing
        """
        select = await page.query_selector(selectors.PAGE_LENGTH_SELECT)
        if select is None:
            logger.warning("Page length control not found; keeping default page size")
            return None

        current = await select.evaluate("(el) => parseInt(el.value) || 0")
        available = await select.evaluate(
            "(el) => Array.from(el.options).map((o) => parseInt(o.value)).filter((v) => v > 0)"
        )
        size = choose_page_size(target_merchants, available)
        if size is None or size == current:
            return current or None

        await select.select_option(str(size))
        self._page_size = size
        await self._wait_for_table(page)
        logger.info(f"Page size changed from {current} to {size}")
        return size
