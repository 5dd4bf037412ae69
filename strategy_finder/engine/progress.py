"""Progress throttling and cooperative yielding for long runs."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from strategy_finder.types import ProgressSink

logger = logging.getLogger(__name__)

UI_UPDATE_INTERVAL_SECONDS = 0.120
YIELD_BUDGET_HEAVY_SECONDS = 0.016
YIELD_BUDGET_DEFAULT_SECONDS = 0.028


class LoggingProgressSink:
    """Progress sink that writes to the module logger.

    Used when no UI is attached: progress goes to debug, status to info.
    """

    def set_progress(self, percent: float, text: str) -> None:
        logger.debug("[%5.1f%%] %s", percent, text)

    def set_status(self, text: str) -> None:
        logger.info("%s", text)


class ProgressThrottle:
    """Rate-limits progress updates sent to a sink.

    Args:
        sink: Receiver of progress updates.
        min_interval: Minimum seconds between non-forced updates.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        sink: ProgressSink,
        min_interval: float = UI_UPDATE_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sink = sink
        self.min_interval = min_interval
        self._clock = clock
        self._last_update: float | None = None

    def should_update(self, force: bool = False) -> bool:
        """True if an update is due; records the update time when it is."""
        now = self._clock()
        if not force and self._last_update is not None and now - self._last_update < self.min_interval:
            return False
        self._last_update = now
        return True

    def progress(self, percent: float, text: str, force: bool = False) -> bool:
        """Forward a progress update if due. Returns True if sent."""
        if not self.should_update(force):
            return False
        self.sink.set_progress(percent, text)
        return True

    def status(self, text: str) -> None:
        """Status lines are never throttled."""
        self.sink.set_status(text)


class YieldBudget:
    """Hands control back to the event loop after a time budget is spent.

    Args:
        heavy: Use the shorter budget for heavy configurations.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(self, heavy: bool = False, clock: Callable[[], float] = time.monotonic) -> None:
        self.budget = YIELD_BUDGET_HEAVY_SECONDS if heavy else YIELD_BUDGET_DEFAULT_SECONDS
        self._clock = clock
        self._last_yield = clock()
        self.yields = 0

    async def maybe_yield(self, force: bool = False) -> bool:
        """Yield if forced or the budget is spent. Returns True if it yielded."""
        if not force and self._clock() - self._last_yield < self.budget:
            return False
        await asyncio.sleep(0)
        self._last_yield = self._clock()
        self.yields += 1
        return True


__all__ = [
    "UI_UPDATE_INTERVAL_SECONDS",
    "LoggingProgressSink",
    "ProgressThrottle",
    "YieldBudget",
]
