"""Multi-timeframe dataset loading and result aggregation.

A multi-timeframe run evaluates each parameter set on every requested
interval and ranks the mean of the per-interval results. Datasets are
fetched concurrently and cached briefly so consecutive runs on the same
symbol do not refetch.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from strategy_finder.config import MAX_TIMEFRAMES
from strategy_finder.metrics import BacktestResult, empty_result

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from strategy_finder.config import FinderOptions
    from strategy_finder.types import Bar, DataSource

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 30.0

_INTERVAL_RE = re.compile(r"^(\d+)\s*([mhdwM])$")


def normalize_interval(raw_interval: str) -> str | None:
    """Canonical interval label, or None if unparseable.

    Accepts '<count><unit>' with optional whitespace, where unit is one of
    m, h, d, w or M (month). '15 M' is 15 months, '15 m' is 15 minutes.
    """
    match = _INTERVAL_RE.match(raw_interval.strip())
    if not match:
        return None
    value = int(match.group(1))
    if value <= 0:
        return None
    unit = match.group(2)
    unit = unit if unit == "M" else unit.lower()
    return f"{value}{unit}"


def resolve_timeframes(options: FinderOptions, fallback_interval: str) -> list[str]:
    """Intervals to evaluate for a run.

    Returns ``[fallback_interval]`` unless multi-timeframe is enabled with
    at least one valid interval. Otherwise returns normalized, deduplicated
    intervals in request order, at most MAX_TIMEFRAMES of them.
    """
    if not options.multi_timeframe_enabled:
        return [fallback_interval]

    deduped: list[str] = []
    for interval in options.timeframes:
        normalized = normalize_interval(interval)
        if normalized is None:
            logger.warning("Ignoring invalid timeframe %r", interval)
            continue
        if normalized not in deduped:
            deduped.append(normalized)
        if len(deduped) >= MAX_TIMEFRAMES:
            break
    return deduped or [fallback_interval]


@dataclass(frozen=True, slots=True)
class TimeframeDataset:
    """Bars for one interval."""

    interval: str
    data: Sequence[Bar]


class TimeframeDatasetCache:
    """Short-lived dataset cache keyed by symbol and interval.

    Args:
        ttl_seconds: Entry lifetime.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[Sequence[Bar], float]] = {}

    @staticmethod
    def _key(symbol: str, interval: str) -> str:
        return f"{symbol}|{interval}"

    def get(self, symbol: str, interval: str) -> Sequence[Bar] | None:
        key = self._key(symbol, interval)
        entry = self._entries.get(key)
        if entry is None or not entry[0]:
            return None
        data, cached_at = entry
        if self._clock() - cached_at > self.ttl_seconds:
            del self._entries[key]
            return None
        return data

    def put(self, symbol: str, interval: str, data: Sequence[Bar]) -> None:
        self._entries[self._key(symbol, interval)] = (data, self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class TimeframeLoader:
    """Loads datasets for a multi-timeframe run.

    Args:
        data_source: Async bar provider.
        cache: Dataset cache shared across runs.
    """

    def __init__(self, data_source: DataSource, cache: TimeframeDatasetCache | None = None) -> None:
        self.data_source = data_source
        self.cache = cache or TimeframeDatasetCache()

    async def _fetch(self, symbol: str, interval: str) -> list[Bar]:
        return await self.data_source.fetch_data(symbol, interval)

    async def load_datasets(
        self,
        symbol: str,
        intervals: Sequence[str],
        current: TimeframeDataset | None = None,
    ) -> list[TimeframeDataset]:
        """Load every requested interval that has data.

        Cached datasets and the caller's in-memory dataset are reused;
        missing intervals are fetched concurrently. Failed or empty
        intervals are skipped with a warning.

        Args:
            symbol: Instrument symbol.
            intervals: Normalized intervals, in the order results should use.
            current: Dataset already loaded by the caller for ``symbol``.

        Returns:
            Datasets in request order, skipping unavailable intervals.
        """
        deduped = list(dict.fromkeys(intervals))
        loaded: dict[str, Sequence[Bar]] = {}

        for interval in deduped:
            cached = self.cache.get(symbol, interval)
            if cached is not None:
                loaded[interval] = cached

        if current is not None and current.interval in deduped and current.data:
            loaded[current.interval] = current.data
            self.cache.put(symbol, current.interval, current.data)

        missing = [interval for interval in deduped if interval not in loaded]
        if missing:
            results = await asyncio.gather(
                *(self._fetch(symbol, interval) for interval in missing),
                return_exceptions=True,
            )
            for interval, outcome in zip(missing, results, strict=True):
                if isinstance(outcome, BaseException):
                    logger.warning("Skipping timeframe %s: fetch failed: %s", interval, outcome)
                    continue
                if not outcome:
                    logger.warning("Skipping timeframe %s: no data returned", interval)
                    continue
                self.cache.put(symbol, interval, outcome)
                loaded[interval] = outcome

        return [TimeframeDataset(interval, loaded[i]) for i in deduped if i in loaded]


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def aggregate_backtest_results(
    results: Sequence[BacktestResult], initial_capital: float
) -> BacktestResult:
    """Combine per-interval results into one comparable result.

    A single result is returned unchanged. For several, metrics are
    averaged, trade counts re-derived from the mean win rate, and
    non-finite profit factors counted as 4. Trades and equity curves are
    not carried into the aggregate.

    Args:
        results: Per-interval results.
        initial_capital: Capital for recomputing net_profit_percent.

    Returns:
        Aggregated result (all-zero for an empty input).
    """
    if not results:
        return empty_result()
    if len(results) == 1:
        return results[0]

    avg_net_profit = _mean([r.net_profit for r in results])
    if initial_capital > 0:
        avg_net_profit_percent = avg_net_profit / initial_capital * 100
    else:
        avg_net_profit_percent = _mean([r.net_profit_percent for r in results])
    avg_trades = max(0, math.floor(_mean([r.total_trades for r in results]) + 0.5))
    avg_win_rate = _mean([r.win_rate for r in results])
    winning = max(0, math.floor(avg_win_rate / 100 * avg_trades + 0.5))
    losing = max(0, avg_trades - winning)
    profit_factors = [max(0.0, r.profit_factor) if math.isfinite(r.profit_factor) else 4.0 for r in results]

    return BacktestResult(
        trades=(),
        net_profit=avg_net_profit,
        net_profit_percent=avg_net_profit_percent,
        win_rate=avg_win_rate,
        expectancy=_mean([r.expectancy for r in results]),
        avg_trade=_mean([r.avg_trade for r in results]),
        profit_factor=_mean(profit_factors),
        max_drawdown=_mean([r.max_drawdown for r in results]),
        max_drawdown_percent=_mean([r.max_drawdown_percent for r in results]),
        total_trades=avg_trades,
        winning_trades=winning,
        losing_trades=losing,
        avg_win=_mean([r.avg_win for r in results]),
        avg_loss=_mean([r.avg_loss for r in results]),
        sharpe_ratio=_mean([r.sharpe_ratio for r in results]),
        equity_curve=(),
    )


__all__ = [
    "CACHE_TTL_SECONDS",
    "TimeframeDataset",
    "TimeframeDatasetCache",
    "TimeframeLoader",
    "aggregate_backtest_results",
    "normalize_interval",
    "resolve_timeframes",
]
