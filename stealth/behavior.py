"""
CRAWL — Request Pacing
Keeps the crawler's request rate polite and irregular.
Delays are drawn from a Gaussian clipped to the configured window rather than
a flat uniform range, so consecutive requests never fall into a fixed rhythm.
"""

import asyncio
import random

from config.loader import PacingConfig


class Pacing:
    """
    Sleeps between crawl steps:
    - between detail items (1–2 s by default)
    - between listing pages
    - after clicking a tab or "expand" control
    """

    def __init__(self, config: PacingConfig = None, speed_factor: float = 1.0):
        """
        Args:
            speed_factor: Multiplier for all delays.
                          1.0 = normal, 0 = no waiting (tests), 2.0 = more cautious
        """
        self.config = config or PacingConfig()
        self.speed_factor = speed_factor
        self.total_slept = 0.0

    def _clipped_gauss(self, low: float, high: float) -> float:
        if high <= low:
            return max(0.0, low)
        mean = (low + high) / 2
        std = (high - low) / 4
        return min(high, max(low, random.gauss(mean, std)))

    async def _sleep(self, seconds: float):
        seconds *= self.speed_factor
        if seconds <= 0:
            return
        self.total_slept += seconds
        await asyncio.sleep(seconds)

    async def between_items(self):
        await self._sleep(self._clipped_gauss(self.config.item_delay_min_s, self.config.item_delay_max_s))

    async def between_pages(self):
        await self._sleep(self.config.page_delay_s)

    async def after_click(self):
        """Give the page a moment to render what the click revealed."""
        await self._sleep(self.config.click_settle_s)
