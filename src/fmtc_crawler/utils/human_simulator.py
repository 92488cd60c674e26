"""
Human-like input for form automation.

Features:
- Character-by-character typing with randomized keystroke delay
- Short "thinking" pauses between form steps
- Clicks preceded by mouse movement toward the element
- Click retries with a JavaScript click as the last resort
- Fast mode (behavior disabled) for tests and trusted runs
"""

import asyncio
import logging
import random
from typing import Optional, Tuple

from fmtc_crawler.config import BehaviorConfig
from fmtc_crawler.infrastructure.timing_evasion import get_mouse_movement_points

logger = logging.getLogger(__name__)


class HumanSimulator:
    """
    Simulates human interaction with page elements.

    Usage:
        simulator = HumanSimulator(config.behavior)
        await simulator.type_text(element, "shoes")
        await simulator.click(page, button)
    """

    def __init__(
        self,
        config: Optional[BehaviorConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or BehaviorConfig()
        self._rng = rng or random.Random()

    @property
    def fast_mode(self) -> bool:
        return not self.config.enabled

    def _char_delay(self) -> float:
        low, high = self.config.keystroke_delay_ms
        return self._rng.uniform(low, high) / 1000.0

    async def type_text(self, element, text: str, clear_first: bool = True) -> int:
        """
        Type into an element one character at a time.

        Args:
            element: Playwright ElementHandle or Locator for an input
            text: Text to type
            clear_first: Clear the field before typing

        Returns:
            Number of characters typed
        """
        if clear_first:
            await element.fill("")

        if self.fast_mode:
            await element.type(text)
            return len(text)

        await element.focus()
        for char in text:
            await element.type(char)
            await asyncio.sleep(self._char_delay())

        logger.debug(f"Typed {len(text)} chars")
        return len(text)

    async def pause(self, low: float = 0.3, high: float = 1.5) -> float:
        """Pause for a human-like duration. Returns seconds slept."""
        if self.fast_mode:
            return 0.0
        duration = self._rng.uniform(low, high)
        await asyncio.sleep(duration)
        return duration

    async def move_to_element(self, page, element) -> Optional[Tuple[float, float]]:
        """Move the mouse from the viewport centre to the element's centre."""
        box = await element.bounding_box()
        if not box:
            return None

        target = (
            box["x"] + box["width"] / 2 + self._rng.uniform(-3, 3),
            box["y"] + box["height"] / 2 + self._rng.uniform(-3, 3),
        )
        if self.fast_mode:
            return target

        viewport = page.viewport_size or {"width": 1000, "height": 600}
        start = (viewport["width"] / 2, viewport["height"] / 2)
        low_ms, high_ms = self.config.mouse_step_delay_ms

        for x, y in get_mouse_movement_points(start, target, steps=self._rng.randint(*self.config.mouse_steps), rng=self._rng):
            await page.mouse.move(x, y)
            await asyncio.sleep(self._rng.uniform(low_ms, high_ms) / 1000.0)
        return target

    async def click(self, page, element) -> None:
        """Click an element after moving the mouse to it."""
        await element.scroll_into_view_if_needed()
        target = await self.move_to_element(page, element)
        await self.pause(0.1, 0.3)

        if target is None or self.fast_mode:
            await element.click()
        else:
            await page.mouse.click(*target)

    async def safe_click(self, page, element, attempts: int = 3) -> bool:
        """
        Click with retries, falling back to a JavaScript click.

        Returns:
            True if any click attempt went through
        """
        for attempt in range(1, attempts + 1):
            try:
                await self.click(page, element)
                return True
            except Exception as e:
                logger.debug(f"Click attempt {attempt}/{attempts} failed: {e}")
                await self.pause(0.5, 1.0)

        try:
            await element.evaluate("(el) => el.click()")
            logger.debug("Clicked via JavaScript fallback")
            return True
        except Exception as e:
            logger.warning(f"JavaScript click fallback failed: {e}")
            return False
