"""Out-of-sample durability scoring.

Splits the bar series into a leading in-sample segment and a trailing
holdout, re-runs a candidate's signals on each with the compact backtest,
and blends the holdout's profit factor, return, drawdown, Sharpe and
in/out consistency into a 0-100 score.

Scoring only applies to series of 200 to 500,000 bars. The split always
leaves at least 120 in-sample and 60 out-of-sample bars.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from strategy_finder.metrics import sanitize_sharpe

if TYPE_CHECKING:
    from collections.abc import Sequence

    from strategy_finder.config import BacktestSettings, CapitalSettings, FinderOptions
    from strategy_finder.types import Backtester, Bar, Signal

logger = logging.getLogger(__name__)

MIN_BARS = 200
MAX_BARS = 500_000
MIN_IN_SAMPLE_BARS = 120
MIN_OUT_OF_SAMPLE_BARS = 60
MIN_HOLDOUT_RATIO = 0.1
MAX_HOLDOUT_RATIO = 0.5

# Profit factor cap; non-finite values count as the cap
PROFIT_FACTOR_CAP = 4.0
# Multiplier applied for a losing holdout and again for a holdout PF < 1
LOSS_PENALTY = 0.75


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True, slots=True)
class DurabilityWeights:
    """Blend weights of the durability sub-scores. Must sum to 1.

    Attributes:
        profit_factor: Weight of the holdout profit-factor score.
        net_profit: Weight of the holdout return score.
        drawdown: Weight of the holdout drawdown score.
        consistency: Weight of holdout vs in-sample profit-factor ratio.
        sharpe: Weight of the holdout Sharpe score.
    """

    profit_factor: float = 0.35
    net_profit: float = 0.25
    drawdown: float = 0.15
    consistency: float = 0.15
    sharpe: float = 0.10

    def __post_init__(self) -> None:
        """Validate weights."""
        weights = (self.profit_factor, self.net_profit, self.drawdown, self.consistency, self.sharpe)
        if any(w < 0 for w in weights):
            msg = f"Durability weights must be non-negative, got {weights}"
            raise ValueError(msg)
        total = sum(weights)
        if abs(total - 1.0) > 1e-9:
            msg = f"Durability weights must sum to 1.0, got {total}"
            raise ValueError(msg)


DEFAULT_WEIGHTS = DurabilityWeights()


@dataclass(frozen=True, slots=True)
class DurabilityContext:
    """Precomputed in-sample / out-of-sample split for a run.

    Attributes:
        enabled: False when durability is off or the series is out of range.
        in_sample_data: Leading segment.
        out_of_sample_data: Trailing holdout segment.
        in_sample_start: First in-sample timestamp.
        in_sample_end: Last in-sample timestamp.
        out_of_sample_start: First holdout timestamp.
        out_of_sample_end: Last holdout timestamp.
        min_oos_trades: Holdout trades needed for full credit and a pass.
        min_score: Minimum score for a pass.
    """

    enabled: bool
    in_sample_data: Sequence[Bar] = field(default=())
    out_of_sample_data: Sequence[Bar] = field(default=())
    in_sample_start: float | None = None
    in_sample_end: float | None = None
    out_of_sample_start: float | None = None
    out_of_sample_end: float | None = None
    min_oos_trades: int = 0
    min_score: float = 0.0


@dataclass(frozen=True, slots=True)
class DurabilityMetrics:
    """Durability outcome for one parameter set.

    Attributes:
        enabled: False when no split was evaluated (all other fields zero).
        score: Blended score, integer in [0, 100].
        in_sample_net_profit_percent: In-sample return.
        in_sample_profit_factor: In-sample profit factor, capped to [0, 4].
        out_of_sample_net_profit_percent: Holdout return.
        out_of_sample_profit_factor: Holdout profit factor, capped to [0, 4].
        out_of_sample_sharpe_ratio: Holdout Sharpe, sanitized.
        out_of_sample_max_drawdown_percent: Holdout max drawdown.
        out_of_sample_trades: Holdout trade count.
        passed: True if the holdout meets every pass criterion.
    """

    enabled: bool = False
    score: float = 0.0
    in_sample_net_profit_percent: float = 0.0
    in_sample_profit_factor: float = 0.0
    out_of_sample_net_profit_percent: float = 0.0
    out_of_sample_profit_factor: float = 0.0
    out_of_sample_sharpe_ratio: float = 0.0
    out_of_sample_max_drawdown_percent: float = 0.0
    out_of_sample_trades: int = 0
    passed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "score": self.score,
            "inSampleNetProfitPercent": self.in_sample_net_profit_percent,
            "inSampleProfitFactor": self.in_sample_profit_factor,
            "outOfSampleNetProfitPercent": self.out_of_sample_net_profit_percent,
            "outOfSampleProfitFactor": self.out_of_sample_profit_factor,
            "outOfSampleSharpeRatio": self.out_of_sample_sharpe_ratio,
            "outOfSampleMaxDrawdownPercent": self.out_of_sample_max_drawdown_percent,
            "outOfSampleTrades": self.out_of_sample_trades,
            "pass": self.passed,
        }


def create_durability_context(options: FinderOptions, bars: Sequence[Bar]) -> DurabilityContext:
    """Split the series for durability scoring.

    Args:
        options: Run options (durability toggles and thresholds).
        bars: Full bar series.

    Returns:
        Enabled context with contiguous, non-overlapping segments, or a
        disabled context if durability is off or the series is too short
        or too long.
    """
    disabled = DurabilityContext(
        enabled=False,
        min_oos_trades=options.durability_min_oos_trades,
        min_score=options.durability_min_score,
    )
    n = len(bars)
    if not options.durability_enabled or n < MIN_BARS or n > MAX_BARS:
        return disabled

    holdout = _clamp(options.durability_holdout_percent / 100, MIN_HOLDOUT_RATIO, MAX_HOLDOUT_RATIO)
    raw_split = math.floor(n * (1 - holdout))
    split = max(MIN_IN_SAMPLE_BARS, min(n - MIN_OUT_OF_SAMPLE_BARS, raw_split))
    if split <= 0 or split >= n - 1:
        return disabled

    in_sample = bars[:split]
    out_of_sample = bars[split:]
    return DurabilityContext(
        enabled=True,
        in_sample_data=in_sample,
        out_of_sample_data=out_of_sample,
        in_sample_start=in_sample[0].time,
        in_sample_end=in_sample[-1].time,
        out_of_sample_start=out_of_sample[0].time,
        out_of_sample_end=out_of_sample[-1].time,
        min_oos_trades=options.durability_min_oos_trades,
        min_score=options.durability_min_score,
    )


def filter_signals_in_range(
    signals: Sequence[Signal], start: float | None, end: float | None
) -> list[Signal]:
    """Signals with start <= time <= end, with bar_index cleared.

    Each segment is backtested on a sliced series, so absolute bar indices
    from the full series would point at the wrong bars.
    """
    if start is None or end is None:
        return []
    return [
        replace(s, bar_index=None) if s.bar_index is not None else s
        for s in signals
        if start <= s.time <= end
    ]


def _capped_profit_factor(value: float) -> float:
    if not math.isfinite(value):
        return PROFIT_FACTOR_CAP
    return min(PROFIT_FACTOR_CAP, max(0.0, value))


def evaluate_durability(
    signals: Sequence[Signal],
    settings: BacktestSettings,
    context: DurabilityContext,
    capital: CapitalSettings,
    backtester: Backtester,
    weights: DurabilityWeights = DEFAULT_WEIGHTS,
) -> DurabilityMetrics:
    """Score a candidate's signals on the in-sample / holdout split.

    Args:
        signals: Signals computed on the full series.
        settings: Backtest settings of the job.
        context: Split from create_durability_context.
        capital: Capital and sizing settings.
        backtester: Backtester used in compact mode for both segments.
        weights: Sub-score blend weights.

    Returns:
        DurabilityMetrics; disabled (all zero) when the context is disabled.
    """
    if not context.enabled:
        return DurabilityMetrics()

    in_signals = filter_signals_in_range(signals, context.in_sample_start, context.in_sample_end)
    out_signals = filter_signals_in_range(
        signals, context.out_of_sample_start, context.out_of_sample_end
    )
    in_sample = backtester.run_compact(context.in_sample_data, in_signals, capital, settings)
    out_of_sample = backtester.run_compact(context.out_of_sample_data, out_signals, capital, settings)

    in_pf = _capped_profit_factor(in_sample.profit_factor)
    out_pf = _capped_profit_factor(out_of_sample.profit_factor)
    oos_sharpe = sanitize_sharpe(out_of_sample.sharpe_ratio)

    pf_score = _clamp((out_pf - 0.8) / 1.7, 0.0, 1.0)
    net_score = _clamp((out_of_sample.net_profit_percent + 2) / 8, 0.0, 1.0)
    dd_score = 1 - _clamp(out_of_sample.max_drawdown_percent / 12, 0.0, 1.0)
    sharpe_score = _clamp((oos_sharpe + 0.4) / 1.4, 0.0, 1.0)
    consistency = _clamp(out_pf / max(1.0, in_pf), 0.0, 1.25) / 1.25 if in_pf > 0 else 0.0
    trade_sufficiency = min(1.0, out_of_sample.total_trades / max(1, context.min_oos_trades))

    raw_score = 100 * (
        weights.profit_factor * pf_score
        + weights.net_profit * net_score
        + weights.drawdown * dd_score
        + weights.consistency * consistency
        + weights.sharpe * sharpe_score
    )
    raw_score *= trade_sufficiency
    if out_of_sample.net_profit_percent <= 0:
        raw_score *= LOSS_PENALTY
    if out_pf < 1:
        raw_score *= LOSS_PENALTY
    score = float(math.floor(_clamp(raw_score, 0.0, 100.0) + 0.5))

    passed = (
        out_of_sample.total_trades >= context.min_oos_trades
        and score >= context.min_score
        and out_of_sample.net_profit_percent >= 0
        and out_pf >= 1
    )
    logger.debug(
        "Durability score=%.0f pass=%s oos_trades=%d oos_pf=%.2f",
        score,
        passed,
        out_of_sample.total_trades,
        out_pf,
    )

    return DurabilityMetrics(
        enabled=True,
        score=score,
        in_sample_net_profit_percent=in_sample.net_profit_percent,
        in_sample_profit_factor=in_pf,
        out_of_sample_net_profit_percent=out_of_sample.net_profit_percent,
        out_of_sample_profit_factor=out_pf,
        out_of_sample_sharpe_ratio=oos_sharpe,
        out_of_sample_max_drawdown_percent=out_of_sample.max_drawdown_percent,
        out_of_sample_trades=out_of_sample.total_trades,
        passed=passed,
    )


__all__ = [
    "DEFAULT_WEIGHTS",
    "DurabilityContext",
    "DurabilityMetrics",
    "DurabilityWeights",
    "create_durability_context",
    "evaluate_durability",
    "filter_signals_in_range",
]
