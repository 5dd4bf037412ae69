"""Tests for backtest results and Sharpe helpers."""

from __future__ import annotations

import math

import pytest

from strategy_finder.metrics import BacktestResult, EquityPoint, Trade


class TestBacktestResultWire:
    """Tests for the camelCase wire format."""

    def test_from_dict(self) -> None:
        """Remote payloads are parsed, missing fields default to zero."""
        payload = {
            "netProfit": 120.5,
            "totalTrades": 12,
            "winningTrades": 7,
            "losingTrades": 5,
            "winRate": 58.33,
            "profitFactor": "Infinity",
            "trades": [
                {"id": 1, "type": "short", "entryTime": 10, "exitTime": 20, "pnl": 3.5, "pnlPercent": 0.35}
            ],
        }

        result = BacktestResult.from_dict(payload)

        assert result.net_profit == 120.5
        assert result.total_trades == 12
        assert result.profit_factor == math.inf
        assert result.max_drawdown == 0.0
        assert result.trades[0].side == "short"
        assert result.trades[0].exit_time == 20.0

    def test_missing_pnl_percent_is_nan(self) -> None:
        """Trades without pnlPercent carry NaN so Sharpe skips them."""
        trade = Trade.from_dict({"id": 1, "pnl": 2.0})

        assert math.isnan(trade.pnl_percent)

    def test_to_dict_keys(self) -> None:
        """Serialization uses camelCase keys."""
        d = BacktestResult(net_profit=1.0, equity_curve=(EquityPoint(1.0, 2.0),)).to_dict()

        assert d["netProfit"] == 1.0
        assert d["equityCurve"] == [{"time": 1.0, "value": 2.0}]
        assert "maxDrawdownPercent" in d


class TestSharpe:
    """Tests for Sharpe ratio helpers."""

    def test_too_few_returns(self) -> None:
        """Fewer than five returns give 0."""
        from strategy_finder.metrics import sharpe_from_returns

        assert sharpe_from_returns([1.0, 2.0, 3.0, 4.0]) == 0.0

    def test_flat_returns(self) -> None:
        """Near-zero variance gives 0."""
        from strategy_finder.metrics import sharpe_from_returns

        assert sharpe_from_returns([1.0] * 10) == 0.0

    def test_clamped(self) -> None:
        """Large ratios are clamped to +/- 8."""
        from strategy_finder.metrics import sharpe_from_returns

        assert sharpe_from_returns([1.0, 1.01, 1.0, 1.01, 1.0]) == 8.0
        assert sharpe_from_returns([-1.0, -1.01, -1.0, -1.01, -1.0]) == -8.0

    def test_non_finite_ignored(self) -> None:
        """NaN returns are dropped before counting."""
        from strategy_finder.metrics import sharpe_from_returns

        values = [1.0, -0.5, 2.0, 0.5, 1.5]
        assert sharpe_from_returns([*values, math.nan]) == pytest.approx(sharpe_from_returns(values))

    def test_sanitize(self) -> None:
        """sanitize_sharpe maps non-finite to 0 and clamps."""
        from strategy_finder.metrics import sanitize_sharpe

        assert sanitize_sharpe(math.nan) == 0.0
        assert sanitize_sharpe(math.inf) == 0.0
        assert sanitize_sharpe(20.0) == 8.0
        assert sanitize_sharpe(-1.5) == -1.5


class TestNormalizeResultSharpe:
    """Tests for Sharpe normalization of results."""

    def test_from_trades(self) -> None:
        """Trade returns take precedence."""
        from strategy_finder.metrics import normalize_result_sharpe, sharpe_from_returns

        returns = [1.0, -0.5, 2.0, 0.5, 1.5]
        trades = tuple(
            Trade(id=i, side="long", entry_time=0, entry_price=1, exit_time=1, exit_price=1, pnl=r, pnl_percent=r)
            for i, r in enumerate(returns)
        )
        result = normalize_result_sharpe(BacktestResult(trades=trades, sharpe_ratio=42.0), 1000)

        assert result.sharpe_ratio == pytest.approx(sharpe_from_returns(returns))

    def test_from_equity_curve(self) -> None:
        """Tradeless results use equity-curve returns from initial capital."""
        from strategy_finder.metrics import normalize_result_sharpe, sharpe_from_returns

        values = [1010.0, 1005.0, 1030.0, 1040.0, 1035.0, 1060.0]
        curve = tuple(EquityPoint(float(i), v) for i, v in enumerate(values))
        result = normalize_result_sharpe(BacktestResult(equity_curve=curve), 1000)

        prev = [1000.0, *values[:-1]]
        expected = sharpe_from_returns([(v - p) / p for v, p in zip(values, prev, strict=True)])
        assert result.sharpe_ratio == pytest.approx(expected)

    def test_unchanged_without_data(self) -> None:
        """Compact results without trades or curve keep their Sharpe."""
        from strategy_finder.metrics import normalize_result_sharpe

        raw = BacktestResult(sharpe_ratio=1.25)

        assert normalize_result_sharpe(raw, 1000) is raw
