"""Dataset size tiers and the execution knobs derived from them."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from strategy_finder.config import BacktestSettings, FinderOptions

LARGE_DATASET_BARS = 500_000
VERY_LARGE_DATASET_BARS = 2_000_000
EXTREME_DATASET_BARS = 4_000_000

# Heavy configurations switch to compact backtests much earlier
HEAVY_COMPACT_THRESHOLD_BARS = 50_000
COMPACT_THRESHOLD_BARS = 500_000

HEAVY_MIN_TRADES = 1000

BATCH_SIZE_EXTREME = 1
BATCH_SIZE_VERY_LARGE = 2
BATCH_SIZE_LARGE = 8
BATCH_SIZE_HEAVY = 4
BATCH_SIZE_DEFAULT = 20


@dataclass(frozen=True, slots=True)
class DatasetFlags:
    """Execution profile of a run.

    Attributes:
        bar_count: Bars in the primary dataset.
        large: bar_count >= 500k.
        very_large: bar_count >= 2M.
        extreme: bar_count >= 4M.
        heavy: Configuration makes each backtest expensive.
        compact_threshold: Bar count at which compact backtests are used.
        batch_size: Jobs per batch.
    """

    bar_count: int
    large: bool
    very_large: bool
    extreme: bool
    heavy: bool
    compact_threshold: int
    batch_size: int

    @property
    def compact(self) -> bool:
        """Compact mode for the primary dataset."""
        return self.uses_compact(self.bar_count)

    def uses_compact(self, bar_count: int) -> bool:
        return bar_count >= self.compact_threshold


def is_heavy_configuration(settings: BacktestSettings, options: FinderOptions) -> bool:
    """True if snapshot filters, a high trade floor or confirmations are active."""
    return (
        settings.has_snapshot_filters()
        or (options.trade_filter_enabled and options.min_trades >= HEAVY_MIN_TRADES)
        or bool(settings.confirmation_strategies)
    )


def compute_dataset_flags(
    bar_count: int, settings: BacktestSettings, options: FinderOptions
) -> DatasetFlags:
    """Derive tiers, compact threshold and batch size for a run."""
    large = bar_count >= LARGE_DATASET_BARS
    very_large = bar_count >= VERY_LARGE_DATASET_BARS
    extreme = bar_count >= EXTREME_DATASET_BARS
    heavy = is_heavy_configuration(settings, options)

    if extreme:
        batch_size = BATCH_SIZE_EXTREME
    elif very_large:
        batch_size = BATCH_SIZE_VERY_LARGE
    elif large:
        batch_size = BATCH_SIZE_LARGE
    elif heavy:
        batch_size = BATCH_SIZE_HEAVY
    else:
        batch_size = BATCH_SIZE_DEFAULT

    return DatasetFlags(
        bar_count=bar_count,
        large=large,
        very_large=very_large,
        extreme=extreme,
        heavy=heavy,
        compact_threshold=HEAVY_COMPACT_THRESHOLD_BARS if heavy else COMPACT_THRESHOLD_BARS,
        batch_size=batch_size,
    )


__all__ = [
    "EXTREME_DATASET_BARS",
    "LARGE_DATASET_BARS",
    "VERY_LARGE_DATASET_BARS",
    "DatasetFlags",
    "compute_dataset_flags",
    "is_heavy_configuration",
]
