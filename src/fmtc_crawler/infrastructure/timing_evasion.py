"""
Request timing evasion.

Automated traffic is easy to spot when requests arrive at a steady pace.
This module provides:
- A progressive cooldown: requests that follow each other within a
  window make the next delay longer, with bounded random variation
- Bezier mouse paths with micro-jitter
- Natural-looking random delays
"""

import asyncio
import logging
import math
import random
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from fmtc_crawler.config import BehaviorConfig

logger = logging.getLogger(__name__)


@dataclass
class CooldownDecision:
    """How long to wait before the next request, and why."""
    delay: float
    consecutive: int
    since_last: Optional[float]


class RequestCooldown:
    """
    Progressive inter-request cooldown.

    Every request that arrives within ``cooldown_window_seconds`` of the
    previous one increments a consecutive counter. The delay is
    ``(base + consecutive * increment) * (1 + U(0, variation))`` capped at
    ``cooldown_max_seconds``. A quiet period longer than the window resets
    the counter.
    """

    def __init__(
        self,
        config: Optional[BehaviorConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or BehaviorConfig()
        self._clock = clock
        self._rng = rng or random.Random()
        self._last_request: Optional[float] = None
        self._consecutive = 0

    @property
    def consecutive(self) -> int:
        return self._consecutive

    def next_delay(self) -> CooldownDecision:
        """Register a request and compute the delay that should precede it."""
        now = self._clock()
        since_last = None if self._last_request is None else now - self._last_request

        if since_last is not None and since_last < self.config.cooldown_window_seconds:
            self._consecutive += 1
        else:
            self._consecutive = 0

        base = (
            self.config.cooldown_base_seconds
            + self._consecutive * self.config.cooldown_increment_seconds
        )
        variation = self._rng.uniform(0, self.config.timing_variation_factor)
        delay = min(base * (1 + variation), self.config.cooldown_max_seconds)

        self._last_request = now
        return CooldownDecision(delay=delay, consecutive=self._consecutive, since_last=since_last)

    async def wait(self) -> float:
        """Sleep for the next cooldown. Returns seconds slept."""
        decision = self.next_delay()
        logger.debug(
            f"Cooldown {decision.delay:.2f}s (consecutive requests: {decision.consecutive})"
        )
        if decision.delay > 0:
            await asyncio.sleep(decision.delay)
        return decision.delay

    def reset(self) -> None:
        self._last_request = None
        self._consecutive = 0


def get_mouse_movement_points(
    start: Tuple[float, float],
    end: Tuple[float, float],
    steps: int = 10,
    jitter: float = 2.0,
    rng: Optional[random.Random] = None,
) -> List[Tuple[float, float]]:
    """
    Generate a human-like mouse path.

    Uses a quadratic bezier curve with a random control point.

    Args:
        start: Starting (x, y) position
        end: Target (x, y) position
        steps: Number of segments; the path has ``steps + 1`` points
        jitter: Max random offset in pixels added to inner points

    Returns:
        List of (x, y) points; first and last points are exactly start and end
    """
    rng = rng or random
    steps = max(1, steps)
    x1, y1 = start
    x2, y2 = end

    distance = math.sqrt((x2 - x1) ** 2 + (y2 - y1) ** 2)
    offset = distance * rng.uniform(0.1, 0.3)
    cx = (x1 + x2) / 2 + rng.uniform(-offset, offset)
    cy = (y1 + y2) / 2 + rng.uniform(-offset, offset)

    points = []
    for i in range(steps + 1):
        t = i / steps
        x = (1 - t) ** 2 * x1 + 2 * (1 - t) * t * cx + t ** 2 * x2
        y = (1 - t) ** 2 * y1 + 2 * (1 - t) * t * cy + t ** 2 * y2

        if 0 < i < steps:
            x += rng.uniform(-jitter, jitter)
            y += rng.uniform(-jitter, jitter)

        points.append((x, y))

    return points


async def random_delay(min_seconds: float, max_seconds: float, rng: Optional[random.Random] = None) -> float:
    """Sleep for a random time with a little extra spread. Returns seconds slept."""
    rng = rng or random
    delay = rng.uniform(min_seconds, max_seconds)
    delay += (rng.random() - 0.5) * delay * 0.1
    delay = max(0.0, delay)
    if delay > 0:
        await asyncio.sleep(delay)
    return delay
