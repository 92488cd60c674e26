"""Unit tests for HumanSimulator."""

import random

import pytest
from unittest.mock import AsyncMock, MagicMock

from fmtc_crawler.config import BehaviorConfig
from fmtc_crawler.utils.human_simulator import HumanSimulator


def make_element(box=None):
    element = MagicMock()
    element.fill = AsyncMock()
    element.type = AsyncMock()
    element.focus = AsyncMock()
    element.click = AsyncMock()
    element.evaluate = AsyncMock()
    element.scroll_into_view_if_needed = AsyncMock()
    element.bounding_box = AsyncMock(return_value=box)
    return element


def make_page():
    page = MagicMock()
    page.viewport_size = {"width": 1000, "height": 600}
    page.mouse.move = AsyncMock()
    page.mouse.click = AsyncMock()
    return page


@pytest.fixture
def fast():
    return HumanSimulator(BehaviorConfig(enabled=False))


@pytest.fixture
def human():
    config = BehaviorConfig(
        keystroke_delay_ms=(0, 0),
        mouse_step_delay_ms=(0, 0),
        mouse_steps=(4, 4),
    )
    return HumanSimulator(config, rng=random.Random(11))


class TestTyping:
    """Tests for type_text."""

    @pytest.mark.asyncio
    async def test_human_typing_is_per_character(self, human):
        """Each character is typed separately."""
        element = make_element()
        typed = await human.type_text(element, "shoes")

        assert typed == 5
        element.fill.assert_awaited_once_with("")
        assert [c.args[0] for c in element.type.await_args_list] == list("shoes")

    @pytest.mark.asyncio
    async def test_fast_mode_types_at_once(self, fast):
        """Fast mode types the whole string in one call."""
        element = make_element()
        await fast.type_text(element, "shoes", clear_first=False)

        element.fill.assert_not_called()
        element.type.assert_awaited_once_with("shoes")

    @pytest.mark.asyncio
    async def test_fast_mode_pause_is_zero(self, fast):
        """Pauses are skipped in fast mode."""
        assert await fast.pause(1, 2) == 0.0


class TestClicking:
    """Tests for click and safe_click."""

    @pytest.mark.asyncio
    async def test_click_moves_mouse_to_element(self, human):
        """A human click travels to the element and clicks its centre."""
        page = make_page()
        element = make_element({"x": 100, "y": 200, "width": 50, "height": 20})

        human.pause = AsyncMock(return_value=0.0)
        await human.click(page, element)

        assert page.mouse.move.await_count == 5
        x, y = page.mouse.click.call_args.args
        assert 122 <= x <= 128
        assert 207 <= y <= 213

    @pytest.mark.asyncio
    async def test_click_without_box_uses_element_click(self, human):
        """Elements without a bounding box are clicked directly."""
        human.pause = AsyncMock(return_value=0.0)
        page = make_page()
        element = make_element(None)

        await human.click(page, element)

        element.click.assert_awaited_once()
        page.mouse.click.assert_not_called()

    @pytest.mark.asyncio
    async def test_safe_click_falls_back_to_javascript(self, fast):
        """When every click fails a JavaScript click is used."""
        element = make_element({"x": 0, "y": 0, "width": 10, "height": 10})
        element.click = AsyncMock(side_effect=RuntimeError("intercepted"))

        assert await fast.safe_click(make_page(), element, attempts=2)
        assert element.click.await_count == 2
        element.evaluate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_safe_click_gives_up(self, fast):
        """A failing JavaScript click returns False."""
        element = make_element(None)
        element.click = AsyncMock(side_effect=RuntimeError("detached"))
        element.evaluate = AsyncMock(side_effect=RuntimeError("detached"))

        assert not await fast.safe_click(make_page(), element, attempts=1)
