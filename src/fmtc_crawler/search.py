"""
Program directory search form automation.

Fills whichever fields a ``SearchParams`` sets, in a fixed order:

    free text -> network -> provider -> category -> country
    -> ship-to country -> display filter -> submit

The category control is usually a Chosen.js widget that hides the native
<select>. In that case the synthetic dropdown is opened and the option
is clicked by exact text, contained text, then option index.

Usage:
    search = SearchFormAutomation(config, simulator)
    outcome = await search.perform_search(page, params)
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from bs4 import BeautifulSoup
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from fmtc_crawler import selectors
from fmtc_crawler.config import CATEGORY_MAP, CrawlerConfig
from fmtc_crawler.errors import NavigationError
from fmtc_crawler.models import DisplayFilter, SearchParams
from fmtc_crawler.utils.human_simulator import HumanSimulator
from fmtc_crawler.utils.page_helpers import element_text, query_first, wait_for_any

logger = logging.getLogger(__name__)

HEADER_MARKERS = ("merchant name", "program name")


def resolve_category(value: str, table: Optional[Dict[str, str]] = None) -> Tuple[str, bool]:
    """
    Resolve a category label to its numeric code.

    Precedence: numeric input as-is, exact label, case-insensitive label,
    substring in either direction. Anything else is returned unchanged.

    Returns:
        (code, resolved) where resolved is False for pass-through input
    """
    table = CATEGORY_MAP if table is None else table
    raw = (value or "").strip()
    if not raw:
        return raw, False

    if raw.isdigit():
        return raw, True

    if raw in table:
        return table[raw], True

    lowered = raw.lower()
    for label, code in table.items():
        if label.lower() == lowered:
            return code, True

    for label, code in table.items():
        label_lower = label.lower()
        if lowered in label_lower or label_lower in lowered:
            return code, True

    logger.warning(f"Category '{value}' not found in category map; using as-is")
    return raw, False


def extract_text_count(text: str) -> int:
    """First number found by the result-count phrase patterns, or 0."""
    for pattern in selectors.RESULT_COUNT_PATTERNS:
        match = pattern.search(text or "")
        if match:
            return int(match.group(1).replace(",", ""))
    return 0


def count_results(row_texts: Iterable[str], page_text: str) -> int:
    """
    Combine the DOM row count with the textual count; the larger wins.

    Header rows and rows with almost no text are not counted.
    """
    rows = 0
    for text in row_texts:
        text = (text or "").strip()
        lowered = text.lower()
        if len(text) > 10 and not any(marker in lowered for marker in HEADER_MARKERS):
            rows += 1
    return max(rows, extract_text_count(page_text))


@dataclass
class SearchOutcome:
    """What happened when the search form was submitted."""
    success: bool
    result_count: int = 0
    url: str = ""
    category_code: Optional[str] = None
    category_resolved: bool = True
    fields_set: Tuple[str, ...] = ()
    error: Optional[str] = None


def detect_results_html(html: str) -> Tuple[bool, int]:
    """
    Decide from page markup whether a results listing is present.

    Returns:
        (has_results, count)
    """
    soup = BeautifulSoup(html or "", "html.parser")

    row_texts: List[str] = []
    for selector in selectors.RESULT_ROWS:
        rows = soup.select(selector)
        if rows:
            row_texts = [row.get_text(" ", strip=True) for row in rows]
            break

    info_present = any(soup.select_one(s) is not None for s in selectors.RESULTS_INFO)
    body = soup.body or soup
    count = count_results(row_texts, body.get_text(" ", strip=True))
    has_results = bool(row_texts or info_present) and count > 0
    return has_results, count


class SearchFormAutomation:
    """
    Drives the program directory search form like a person would.

    Each field step is optional and skipped when its parameter is unset.
    A missing control is logged and skipped, never fatal; only a missing
    form is an error.
    """

    def __init__(
        self,
        config: CrawlerConfig,
        simulator: Optional[HumanSimulator] = None,
        category_map: Optional[Dict[str, str]] = None,
    ):
        self.config = config
        self.simulator = simulator or HumanSimulator(config.behavior)
        self.category_map = CATEGORY_MAP if category_map is None else category_map

    async def open_directory(self, page) -> None:
        """Navigate to the program directory unless already there."""
        if "program_directory" in page.url:
            return
        try:
            await page.goto(
                self.config.directory_url,
                wait_until="domcontentloaded",
                timeout=self.config.navigation_timeout_ms,
            )
        except PlaywrightTimeoutError as e:
            raise NavigationError(
                f"Program directory did not load: {e}", url=self.config.directory_url
            ) from e

    async def locate_form(self, page):
        """Wait for the search form.

        Raises:
            NavigationError: If no form candidate appears
        """
        selector, form = await wait_for_any(
            page, selectors.SEARCH_FORM, self.config.element_timeout_ms
        )
        if form is None:
            raise NavigationError("Search form not found on program directory", url=page.url)
        logger.debug(f"Search form found: {selector}")
        return form

    async def fill_free_text(self, page, text: str) -> bool:
        field = await query_first(page, selectors.SEARCH_TEXT)
        if field is None:
            logger.warning("Search text input not found")
            return False
        await self.simulator.click(page, field)
        await self.simulator.type_text(field, text)
        return True

    async def select_native(self, page, candidates: Tuple[str, ...], value: str, label: str) -> bool:
        """Choose an option of a native <select> by value, then by label."""
        element = await query_first(page, candidates)
        if element is None:
            logger.warning(f"{label} select not found")
            return False

        await self.simulator.move_to_element(page, element)
        selected = await self.choose_option(element, value, value)
        await self.simulator.pause(0.2, 0.5)

        if not selected:
            logger.warning(f"{label} option '{value}' not available")
            return False
        logger.debug(f"{label} set to {value}")
        return True

    async def choose_option(self, element, value: str, label: str) -> bool:
        """select_option by value, falling back to the visible label."""
        timeout = self.config.element_timeout_ms
        for kwargs in ({"value": value}, {"label": label}):
            try:
                if await element.select_option(timeout=timeout, **kwargs):
                    return True
            except PlaywrightTimeoutError:
                continue
        return False

    async def is_hidden(self, element) -> bool:
        return await element.evaluate("(el) => window.getComputedStyle(el).display === 'none'")

    async def select_chosen_option(self, page, label: str, code: str) -> bool:
        """
        Pick an option in the Chosen widget.

        Tries exact option text, then case-insensitive containment, then
        the option whose ``data-option-array-index`` equals the code.
        """
        toggle = await page.query_selector(selectors.CHOSEN_TOGGLE)
        if toggle is None:
            logger.warning("Chosen toggle not found")
            return False

        await self.simulator.safe_click(page, toggle)
        try:
            await page.wait_for_selector(
                selectors.CHOSEN_OPTIONS, timeout=self.config.element_timeout_ms
            )
        except PlaywrightTimeoutError:
            logger.warning("Chosen dropdown did not open")
            return False

        options = await page.query_selector_all(selectors.CHOSEN_OPTIONS)
        texts = [await element_text(opt) for opt in options]

        for option, text in zip(options, texts):
            if text == label:
                await self.simulator.safe_click(page, option)
                logger.debug(f"Chosen option selected by exact text: {text}")
                return True

        wanted = label.lower()
        for option, text in zip(options, texts):
            if wanted and wanted in text.lower():
                await self.simulator.safe_click(page, option)
                logger.debug(f"Chosen option selected by partial text: {text}")
                return True

        option = await page.query_selector(selectors.CHOSEN_OPTION_BY_INDEX.format(index=code))
        if option is not None:
            await self.simulator.safe_click(page, option)
            logger.debug(f"Chosen option selected by index {code}")
            return True

        logger.warning(f"No Chosen option matches '{label}'; available: {texts}")
        return False

    async def select_category(self, page, category: str) -> Tuple[Optional[str], bool]:
        """
        Resolve and select a category.

        Returns:
            (code, resolved); code is None if nothing could be selected
        """
        code, resolved = resolve_category(category, self.category_map)
        element = await query_first(page, selectors.CATEGORY_SELECT)
        if element is None:
            logger.warning("Category select not found")
            return None, resolved

        if await self.is_hidden(element):
            logger.debug("Category select is hidden; using Chosen widget")
            if await self.select_chosen_option(page, category, code):
                return code, resolved
            logger.warning("Chosen selection failed; setting the select value directly")

        selected = await self.choose_option(element, code, category)
        return (code if selected else None), resolved

    async def set_display_filter(self, page, display_filter: DisplayFilter) -> bool:
        radio = await page.query_selector(
            selectors.DISPLAY_RADIO.format(
                value=display_filter.radio_value, name=display_filter.value
            )
        )
        if radio is None:
            logger.warning(f"Display filter radio not found: {display_filter.value}")
            return False
        await self.simulator.click(page, radio)
        await self.simulator.pause(0.2, 0.4)
        return True

    async def fill(self, page, params: SearchParams) -> SearchOutcome:
        """Fill every field the params set. Missing controls are skipped."""
        fields: List[str] = []
        outcome = SearchOutcome(success=False)

        if params.free_text and await self.fill_free_text(page, params.free_text):
            fields.append("free_text")

        native = (
            ("network_id", selectors.NETWORK_SELECT, "Network"),
            ("provider_id", selectors.PROVIDER_SELECT, "Provider"),
        )
        for attr, candidates, label in native:
            value = getattr(params, attr)
            if value and await self.select_native(page, candidates, value, label):
                fields.append(attr)

        if params.category:
            code, resolved = await self.select_category(page, params.category)
            outcome.category_code = code
            outcome.category_resolved = resolved
            if code is not None:
                fields.append("category")

        native = (
            ("country", selectors.COUNTRY_SELECT, "Country"),
            ("ship_to_country", selectors.SHIP_TO_SELECT, "Ship-to country"),
        )
        for attr, candidates, label in native:
            value = getattr(params, attr)
            if value and await self.select_native(page, candidates, value, label):
                fields.append(attr)

        if await self.set_display_filter(page, params.display_filter):
            fields.append("display_filter")

        outcome.fields_set = tuple(fields)
        return outcome

    async def submit(self, page) -> bool:
        """
        Click the first visible submit button and wait for the page.

        A navigation timeout is not fatal; result detection decides.
        """
        await self.simulator.pause(1.0, 2.0)
        button = None
        for selector in selectors.SEARCH_SUBMIT:
            for candidate in await page.query_selector_all(selector):
                if await candidate.is_visible():
                    button = candidate
                    break
            if button is not None:
                break

        if button is None:
            logger.error("No visible search submit button")
            return False

        await self.simulator.safe_click(page, button)

        for state in ("domcontentloaded", "networkidle"):
            try:
                await page.wait_for_load_state(state, timeout=self.config.navigation_timeout_ms)
            except PlaywrightTimeoutError:
                logger.warning(f"Timed out waiting for {state} after search submit; continuing")
                break
        return True

    async def detect_results(self, page) -> Tuple[bool, int]:
        has_results, count = detect_results_html(await page.content())
        logger.info(f"Search results detected: {has_results} ({count})")
        return has_results, count

    async def perform_search(self, page, params: SearchParams) -> SearchOutcome:
        """
        Run a complete search.

        Raises:
            NavigationError: Directory or form could not be reached
        """
        await self.open_directory(page)
        await self.locate_form(page)

        outcome = await self.fill(page, params)
        logger.info(f"Search fields set: {', '.join(outcome.fields_set) or 'none'}")

        if not await self.submit(page):
            outcome.error = "Search submit button not found"
            return outcome

        await self.simulator.pause(2.0, 3.0)
        outcome.success, outcome.result_count = await self.detect_results(page)
        outcome.url = page.url
        if not outcome.success:
            outcome.error = "No results found after search"
        return outcome
