"""Tests for endpoint-bias correction and durability scoring."""

from __future__ import annotations

import math
from unittest.mock import MagicMock

import pytest

from strategy_finder.config import BacktestSettings, CapitalSettings, FinderOptions
from strategy_finder.metrics import BacktestResult, Trade
from strategy_finder.types import Signal
from tests.fixtures.fakes import make_bars

LAST_TIME = 1_000.0


def _trade(trade_id: int, exit_time: float, pnl: float, pnl_percent: float | None = None) -> Trade:
    return Trade(
        id=trade_id,
        side="long",
        entry_time=exit_time - 10,
        entry_price=100.0,
        exit_time=exit_time,
        exit_price=100.0 + pnl,
        pnl=pnl,
        pnl_percent=pnl if pnl_percent is None else pnl_percent,
    )


class TestBuildSelectionResult:
    """Tests for endpoint-bias correction."""

    def test_unknown_last_time_unchanged(self) -> None:
        """Without a last timestamp the raw result is returned."""
        from strategy_finder.overfitting import build_selection_result

        raw = BacktestResult(trades=(_trade(1, LAST_TIME, 10.0),), total_trades=1)
        adjustment = build_selection_result(raw, None, 10_000)

        assert adjustment.result is raw
        assert adjustment.adjusted is False
        assert adjustment.removed_trades == 0

    def test_no_trade_at_end_unchanged(self) -> None:
        """Results without endpoint exits are not rebuilt."""
        from strategy_finder.overfitting import build_selection_result

        raw = BacktestResult(trades=(_trade(1, 500.0, 10.0),), total_trades=1, net_profit=10.0)
        adjustment = build_selection_result(raw, LAST_TIME, 10_000)

        assert adjustment.result is raw
        assert adjustment.adjusted is False

    def test_endpoint_trade_removed(self) -> None:
        """Trades exiting at or after the last bar are dropped and metrics rebuilt."""
        from strategy_finder.overfitting import build_selection_result

        raw = BacktestResult(
            trades=(
                _trade(1, 100.0, 10.0),
                _trade(2, 200.0, -5.0),
                _trade(3, LAST_TIME, 20.0),
            ),
            net_profit=25.0,
            total_trades=3,
            winning_trades=2,
            losing_trades=1,
            max_drawdown_percent=3.0,
        )
        adjustment = build_selection_result(raw, LAST_TIME, 10_000)
        result = adjustment.result

        assert adjustment.adjusted is True
        assert adjustment.removed_trades == 1
        assert result.total_trades == 2
        assert result.net_profit == pytest.approx(5.0)
        assert result.net_profit_percent == pytest.approx(0.05)
        assert result.win_rate == pytest.approx(50.0)
        assert result.profit_factor == pytest.approx(2.0)
        assert result.expectancy == pytest.approx(2.5)
        assert result.avg_trade == pytest.approx(2.5)
        assert result.avg_win == pytest.approx(10.0)
        assert result.avg_loss == pytest.approx(5.0)
        # Fewer than five returns
        assert result.sharpe_ratio == 0.0
        # Carried over from the raw result
        assert result.max_drawdown_percent == 3.0

    def test_idempotent(self) -> None:
        """Correcting an already corrected result changes nothing."""
        from strategy_finder.overfitting import build_selection_result

        raw = BacktestResult(
            trades=(_trade(1, 100.0, 10.0), _trade(2, 200.0, -5.0), _trade(3, LAST_TIME, 20.0)),
            total_trades=3,
        )
        once = build_selection_result(raw, LAST_TIME, 10_000).result
        twice = build_selection_result(once, LAST_TIME, 10_000)

        assert twice.adjusted is False
        assert twice.result is once

    def test_all_trades_removed(self) -> None:
        """Removing every trade leaves an all-zero trade summary."""
        from strategy_finder.overfitting import build_selection_result

        raw = BacktestResult(trades=(_trade(1, LAST_TIME + 60, 10.0),), total_trades=1, net_profit=10.0)
        result = build_selection_result(raw, LAST_TIME, 10_000).result

        assert result.total_trades == 0
        assert result.net_profit == 0.0
        assert result.profit_factor == 0.0
        assert result.win_rate == 0.0

    def test_only_winners_infinite_profit_factor(self) -> None:
        """Kept trades without losses give an infinite profit factor."""
        from strategy_finder.overfitting import build_selection_result

        raw = BacktestResult(
            trades=(_trade(1, 100.0, 10.0), _trade(2, LAST_TIME, -50.0)), total_trades=2
        )
        result = build_selection_result(raw, LAST_TIME, 10_000).result

        assert result.profit_factor == math.inf

    def test_sharpe_recomputed(self) -> None:
        """Sharpe uses finite per-trade returns of the kept trades."""
        from strategy_finder.metrics import sharpe_from_returns
        from strategy_finder.overfitting import build_selection_result

        returns = [1.0, 2.0, -0.5, 1.5, 0.5, 3.0]
        trades = tuple(_trade(i, 100.0 + i, r * 10, r) for i, r in enumerate(returns))
        trades += (_trade(99, LAST_TIME, 5.0, math.nan),)
        raw = BacktestResult(trades=trades, total_trades=len(trades))

        result = build_selection_result(raw, LAST_TIME, 10_000).result

        assert result.sharpe_ratio == pytest.approx(sharpe_from_returns(returns))


class TestDurabilityContext:
    """Tests for the in-sample / holdout split."""

    def test_disabled_by_option(self) -> None:
        """Durability off yields a disabled context."""
        from strategy_finder.overfitting import create_durability_context

        context = create_durability_context(FinderOptions(), make_bars(300))

        assert context.enabled is False

    @pytest.mark.parametrize("count", [199, 500_001])
    def test_disabled_out_of_range(self, count: int) -> None:
        """Series outside 200..500,000 bars are not scored."""
        from strategy_finder.overfitting import create_durability_context

        bars = make_bars(count) if count < 1000 else [make_bars(1)[0]] * count
        context = create_durability_context(FinderOptions(durability_enabled=True), bars)

        assert context.enabled is False

    @pytest.mark.parametrize(
        ("holdout", "split"),
        [(30.0, 210), (90.0, 150), (1.0, 240)],
    )
    def test_split_position(self, holdout: float, split: int) -> None:
        """Holdout is clamped to 10-50% and leaves 60 holdout bars minimum."""
        from strategy_finder.overfitting import create_durability_context

        bars = make_bars(300)
        options = FinderOptions(durability_enabled=True, durability_holdout_percent=holdout)
        context = create_durability_context(options, bars)

        assert context.enabled is True
        assert len(context.in_sample_data) == split
        assert len(context.out_of_sample_data) == 300 - split
        assert context.in_sample_end == bars[split - 1].time
        assert context.out_of_sample_start == bars[split].time

    def test_filter_signals_in_range(self) -> None:
        """Signals outside the window are dropped and bar indices cleared."""
        from strategy_finder.overfitting import filter_signals_in_range

        signals = [
            Signal(time=t, type="buy", price=1.0, bar_index=i) for i, t in enumerate([5.0, 10.0, 20.0, 30.0])
        ]

        kept = filter_signals_in_range(signals, 10.0, 20.0)

        assert [s.time for s in kept] == [10.0, 20.0]
        assert all(s.bar_index is None for s in kept)
        assert filter_signals_in_range(signals, None, 20.0) == []


class TestEvaluateDurability:
    """Tests for durability scoring."""

    def _context(self, min_oos_trades: int = 10, min_score: float = 55.0):
        from strategy_finder.overfitting import create_durability_context

        options = FinderOptions(
            durability_enabled=True,
            durability_min_oos_trades=min_oos_trades,
            durability_min_score=min_score,
        )
        return create_durability_context(options, make_bars(300))

    def _score(self, in_sample: BacktestResult, out_of_sample: BacktestResult, **context_kwargs):
        from strategy_finder.overfitting import evaluate_durability

        backtester = MagicMock()
        backtester.run_compact.side_effect = [in_sample, out_of_sample]
        metrics = evaluate_durability(
            [], BacktestSettings(), self._context(**context_kwargs), CapitalSettings(), backtester
        )
        assert backtester.run_compact.call_count == 2
        return metrics

    def test_strong_holdout_passes(self) -> None:
        """A profitable, consistent holdout scores high and passes."""
        in_sample = BacktestResult(profit_factor=2.5, net_profit_percent=12.0, total_trades=30)
        out_of_sample = BacktestResult(
            profit_factor=2.5,
            net_profit_percent=6.0,
            max_drawdown_percent=0.0,
            sharpe_ratio=1.0,
            total_trades=10,
        )

        metrics = self._score(in_sample, out_of_sample)

        assert metrics.enabled is True
        assert metrics.score == 97.0
        assert metrics.passed is True
        assert metrics.out_of_sample_trades == 10
        assert metrics.in_sample_net_profit_percent == 12.0

    def test_losing_holdout_fails(self) -> None:
        """A losing holdout is penalized and fails."""
        in_sample = BacktestResult(profit_factor=2.0, net_profit_percent=10.0, total_trades=30)
        out_of_sample = BacktestResult(
            profit_factor=0.5, net_profit_percent=-2.0, max_drawdown_percent=12.0, total_trades=12
        )

        metrics = self._score(in_sample, out_of_sample)

        assert metrics.passed is False
        assert metrics.score < 20

    def test_few_trades_scaled_down(self) -> None:
        """Too few holdout trades scales the score and fails the check."""
        in_sample = BacktestResult(profit_factor=2.5, net_profit_percent=12.0, total_trades=30)
        out_of_sample = BacktestResult(
            profit_factor=2.5, net_profit_percent=6.0, sharpe_ratio=1.0, total_trades=5
        )

        metrics = self._score(in_sample, out_of_sample)

        assert metrics.score == pytest.approx(49.0, abs=1.0)
        assert metrics.passed is False

    def test_infinite_profit_factor_capped(self) -> None:
        """Non-finite profit factors count as 4."""
        in_sample = BacktestResult(profit_factor=math.inf, total_trades=5)
        out_of_sample = BacktestResult(profit_factor=math.inf, net_profit_percent=1.0, total_trades=10)

        metrics = self._score(in_sample, out_of_sample)

        assert metrics.in_sample_profit_factor == 4.0
        assert metrics.out_of_sample_profit_factor == 4.0

    def test_disabled_context_returns_zero_metrics(self) -> None:
        """A disabled context skips backtesting."""
        from strategy_finder.overfitting import DurabilityContext, DurabilityMetrics, evaluate_durability

        backtester = MagicMock()
        metrics = evaluate_durability(
            [], BacktestSettings(), DurabilityContext(enabled=False), CapitalSettings(), backtester
        )

        assert metrics == DurabilityMetrics()
        backtester.run_compact.assert_not_called()

    def test_holdout_signals_are_split(self) -> None:
        """Each segment only sees the signals inside it."""
        from strategy_finder.overfitting import evaluate_durability
        from tests.fixtures.fakes import FakeBacktester

        bars = make_bars(300)
        context = self._context()
        signals = [Signal(time=b.time, type="buy", price=b.close, bar_index=i) for i, b in enumerate(bars)][::10]
        backtester = FakeBacktester()

        evaluate_durability(signals, BacktestSettings(), context, CapitalSettings(), backtester)

        assert backtester.calls == [("compact", 210, 21), ("compact", 90, 9)]


class TestDurabilityWeights:
    """Tests for DurabilityWeights validation."""

    def test_must_sum_to_one(self) -> None:
        """Weights not summing to 1 are rejected."""
        from strategy_finder.overfitting import DurabilityWeights

        with pytest.raises(ValueError, match="sum to 1.0"):
            DurabilityWeights(profit_factor=0.5)

    def test_negative_rejected(self) -> None:
        """Negative weights are rejected."""
        from strategy_finder.overfitting import DurabilityWeights

        with pytest.raises(ValueError, match="non-negative"):
            DurabilityWeights(profit_factor=0.65, drawdown=-0.15)
