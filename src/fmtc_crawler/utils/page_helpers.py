"""Selector fallback helpers shared by the page-driving components."""

import logging
from typing import Iterable, Optional, Tuple

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

logger = logging.getLogger(__name__)


async def query_first(root, candidates: Iterable[str], visible_only: bool = False):
    """
    Return the first element matched by an ordered list of selectors.

    Args:
        root: Playwright Page or ElementHandle to search from
        candidates: Selectors tried in order
        visible_only: Skip matches that are not visible

    Returns:
        ElementHandle or None
    """
    for selector in candidates:
        try:
            element = await root.query_selector(selector)
        except Exception as e:
            logger.debug(f"Selector {selector} failed: {e}")
            continue
        if element is None:
            continue
        if visible_only and not await element.is_visible():
            continue
        return element
    return None


async def wait_for_any(
    page,
    candidates: Iterable[str],
    timeout_ms: int,
) -> Tuple[Optional[str], Optional[object]]:
    """
    Wait for whichever selector appears first, trying each in order.

    The timeout is split evenly across candidates.

    Returns:
        (selector, element) of the first match, or (None, None)
    """
    candidates = list(candidates)
    per_selector = max(int(timeout_ms / max(len(candidates), 1)), 1)
    for selector in candidates:
        try:
            element = await page.wait_for_selector(selector, timeout=per_selector)
        except PlaywrightTimeoutError:
            continue
        if element is not None:
            return selector, element
    return None, None


async def element_text(element) -> str:
    """Stripped text content of an element, empty when missing."""
    if element is None:
        return ""
    text = await element.text_content()
    return (text or "").strip()
