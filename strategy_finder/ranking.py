"""Bounded online top-K ranking of finder results.

Results are compared lexicographically over a sort-priority list of
metrics. The ranker keeps only the best ``capacity`` results seen so far in
a binary heap whose root is the worst kept result, so each offer costs
O(log K) and memory stays O(K) regardless of how many runs are evaluated.
"""

from __future__ import annotations

import functools
import math
from typing import TYPE_CHECKING

from strategy_finder.config import FinderMetric

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from strategy_finder.metrics import BacktestResult
    from strategy_finder.overfitting.durability import DurabilityMetrics
    from strategy_finder.types import FinderResult

# Metric deltas at or below this are treated as ties
METRIC_EPSILON = 1e-4

# Stand-in for an infinite profit factor (2**53 - 1)
MAX_SAFE_INTEGER = 9_007_199_254_740_991

_ASCENDING_METRICS = frozenset({FinderMetric.MAX_DRAWDOWN_PERCENT})


def _profit_factor(result: BacktestResult) -> float:
    if result.profit_factor == math.inf:
        return float(MAX_SAFE_INTEGER)
    return result.profit_factor


_RESULT_METRICS: dict[str, Callable[[BacktestResult], float]] = {
    FinderMetric.NET_PROFIT: lambda r: r.net_profit,
    FinderMetric.NET_PROFIT_PERCENT: lambda r: r.net_profit_percent,
    FinderMetric.PROFIT_FACTOR: _profit_factor,
    FinderMetric.SHARPE_RATIO: lambda r: r.sharpe_ratio,
    FinderMetric.WIN_RATE: lambda r: r.win_rate,
    FinderMetric.MAX_DRAWDOWN_PERCENT: lambda r: r.max_drawdown_percent,
    FinderMetric.EXPECTANCY: lambda r: r.expectancy,
    FinderMetric.AVERAGE_GAIN: lambda r: r.avg_win,
    FinderMetric.TOTAL_TRADES: lambda r: float(r.total_trades),
}

_DURABILITY_METRICS: dict[str, Callable[[DurabilityMetrics], float]] = {
    FinderMetric.OOS_DURABILITY_SCORE: lambda m: m.score,
    FinderMetric.OOS_PROFIT_FACTOR: lambda m: m.out_of_sample_profit_factor,
    FinderMetric.OOS_NET_PROFIT_PERCENT: lambda m: m.out_of_sample_net_profit_percent,
}


def metric_value(item: FinderResult, metric: FinderMetric | str) -> float:
    """Value of a ranking metric for a result.

    Trade metrics come from the endpoint-corrected selection result.
    Out-of-sample metrics come from durability metrics and are 0 when
    durability was not evaluated. Unknown metrics are 0.
    """
    getter = _RESULT_METRICS.get(metric)
    if getter is not None:
        return getter(item.selection_result)
    durability_getter = _DURABILITY_METRICS.get(metric)
    if durability_getter is not None and item.robust_metrics is not None:
        return durability_getter(item.robust_metrics)
    return 0.0


def compare_results(
    a: FinderResult, b: FinderResult, sort_priority: Sequence[FinderMetric | str]
) -> float:
    """Three-way comparison; negative means ``a`` ranks ahead of ``b``.

    The first metric whose values differ by more than METRIC_EPSILON
    decides. maxDrawdownPercent ranks lower-is-better, all others
    higher-is-better. Returns 0 when every metric ties.
    """
    for metric in sort_priority:
        val_a = metric_value(a, metric)
        val_b = metric_value(b, metric)
        if abs(val_a - val_b) > METRIC_EPSILON:
            return val_a - val_b if metric in _ASCENDING_METRICS else val_b - val_a
    return 0.0


class ResultRanker:
    """Fixed-capacity heap of the best results seen so far.

    Attributes:
        capacity: Maximum number of results kept (>= 1).
        sort_priority: Metrics used for comparison.
    """

    def __init__(self, capacity: int, sort_priority: Sequence[FinderMetric | str]) -> None:
        self.capacity = max(1, capacity)
        self.sort_priority = tuple(sort_priority)
        self._heap: list[FinderResult] = []

    def __len__(self) -> int:
        return len(self._heap)

    def _compare(self, a: FinderResult, b: FinderResult) -> float:
        return compare_results(a, b, self.sort_priority)

    def _is_worse(self, a: FinderResult, b: FinderResult) -> bool:
        return self._compare(a, b) > 0

    def offer(self, candidate: FinderResult) -> bool:
        """Consider a result for the top set.

        Returns:
            True if the candidate was kept.
        """
        heap = self._heap
        if len(heap) < self.capacity:
            heap.append(candidate)
            self._sift_up(len(heap) - 1)
            return True

        if self._compare(candidate, heap[0]) >= 0:
            return False

        heap[0] = candidate
        self._sift_down(0)
        return True

    def to_sorted_list(self, limit: int) -> list[FinderResult]:
        """Best-first copy of the kept results, truncated to max(1, limit)."""
        ordered = sorted(self._heap, key=functools.cmp_to_key(self._compare_key))
        return ordered[: max(1, limit)]

    def _compare_key(self, a: FinderResult, b: FinderResult) -> int:
        diff = self._compare(a, b)
        return (diff > 0) - (diff < 0)

    def _sift_up(self, index: int) -> None:
        heap = self._heap
        idx = index
        while idx > 0:
            parent = (idx - 1) // 2
            if not self._is_worse(heap[idx], heap[parent]):
                break
            heap[idx], heap[parent] = heap[parent], heap[idx]
            idx = parent

    def _sift_down(self, index: int) -> None:
        heap = self._heap
        size = len(heap)
        idx = index
        while True:
            left = idx * 2 + 1
            right = left + 1
            worst = idx
            if left < size and self._is_worse(heap[left], heap[worst]):
                worst = left
            if right < size and self._is_worse(heap[right], heap[worst]):
                worst = right
            if worst == idx:
                break
            heap[idx], heap[worst] = heap[worst], heap[idx]
            idx = worst


__all__ = [
    "MAX_SAFE_INTEGER",
    "METRIC_EPSILON",
    "ResultRanker",
    "compare_results",
    "metric_value",
]
