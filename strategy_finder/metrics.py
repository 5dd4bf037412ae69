"""Backtest result types and Sharpe ratio helpers.

BacktestResult is the common currency between the backtester, the remote
engine, the endpoint corrector and the ranker. Its wire format is camelCase
JSON, matching the remote engine's batch responses.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Any

# Sharpe stability guards
SHARPE_MIN_TRADES = 5
SHARPE_MIN_STD_DEV = 1e-4
SHARPE_MAX_ABS = 8.0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _as_float(value: Any, default: float = 0.0) -> float:
    """Coerce JSON numbers, including 'Infinity' strings, to float."""
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True, slots=True)
class Trade:
    """Closed trade produced by a backtest.

    Attributes:
        id: Trade sequence number within the backtest.
        side: 'long' or 'short'.
        entry_time: Entry bar timestamp (unix seconds).
        entry_price: Fill price on entry.
        exit_time: Exit bar timestamp (unix seconds).
        exit_price: Fill price on exit.
        pnl: Realized profit in account currency.
        pnl_percent: Realized profit as percent of position value.
        size: Position size.
        fees: Commission paid.
    """

    id: int
    side: str
    entry_time: float
    entry_price: float
    exit_time: float
    exit_price: float
    pnl: float
    pnl_percent: float
    size: float = 0.0
    fees: float = 0.0

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Trade:
        """Build a trade from its camelCase wire form."""
        return cls(
            id=int(d.get("id", 0)),
            side=str(d.get("type", d.get("side", "long"))),
            entry_time=_as_float(d.get("entryTime")),
            entry_price=_as_float(d.get("entryPrice")),
            exit_time=_as_float(d.get("exitTime")),
            exit_price=_as_float(d.get("exitPrice")),
            pnl=_as_float(d.get("pnl")),
            pnl_percent=_as_float(d.get("pnlPercent"), math.nan),
            size=_as_float(d.get("size")),
            fees=_as_float(d.get("fees")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.side,
            "entryTime": self.entry_time,
            "entryPrice": self.entry_price,
            "exitTime": self.exit_time,
            "exitPrice": self.exit_price,
            "pnl": self.pnl,
            "pnlPercent": self.pnl_percent,
            "size": self.size,
            "fees": self.fees,
        }


@dataclass(frozen=True, slots=True)
class EquityPoint:
    """Account equity at a bar timestamp."""

    time: float
    value: float


@dataclass(frozen=True, slots=True)
class BacktestResult:
    """Performance summary of one backtest.

    Attributes:
        trades: Closed trades (empty for compact backtests and aggregates).
        net_profit: Sum of trade P&L.
        net_profit_percent: Net profit as percent of initial capital.
        win_rate: Winning trades as percent of total (0-100).
        expectancy: Expected P&L per trade.
        avg_trade: Net profit divided by trade count.
        profit_factor: Gross profit / gross loss, inf when there are no losses.
        max_drawdown: Largest peak-to-trough equity drop.
        max_drawdown_percent: Largest drawdown as percent of peak.
        total_trades: Number of closed trades.
        winning_trades: Trades with pnl > 0.
        losing_trades: Trades with pnl <= 0.
        avg_win: Mean profit of winning trades.
        avg_loss: Mean absolute loss of losing trades.
        sharpe_ratio: Per-trade Sharpe ratio.
        equity_curve: Equity series (may be empty).
    """

    trades: tuple[Trade, ...] = ()
    net_profit: float = 0.0
    net_profit_percent: float = 0.0
    win_rate: float = 0.0
    expectancy: float = 0.0
    avg_trade: float = 0.0
    profit_factor: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_percent: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    sharpe_ratio: float = 0.0
    equity_curve: tuple[EquityPoint, ...] = field(default=())

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> BacktestResult:
        """Build a result from the remote engine's camelCase JSON.

        Args:
            d: Result payload.

        Returns:
            BacktestResult instance. Missing numeric fields default to 0.
        """
        trades = tuple(Trade.from_dict(t) for t in d.get("trades") or ())
        equity = tuple(
            EquityPoint(time=_as_float(p.get("time")), value=_as_float(p.get("value")))
            for p in d.get("equityCurve") or ()
        )
        return cls(
            trades=trades,
            net_profit=_as_float(d.get("netProfit")),
            net_profit_percent=_as_float(d.get("netProfitPercent")),
            win_rate=_as_float(d.get("winRate")),
            expectancy=_as_float(d.get("expectancy")),
            avg_trade=_as_float(d.get("avgTrade")),
            profit_factor=_as_float(d.get("profitFactor")),
            max_drawdown=_as_float(d.get("maxDrawdown")),
            max_drawdown_percent=_as_float(d.get("maxDrawdownPercent")),
            total_trades=int(_as_float(d.get("totalTrades"))),
            winning_trades=int(_as_float(d.get("winningTrades"))),
            losing_trades=int(_as_float(d.get("losingTrades"))),
            avg_win=_as_float(d.get("avgWin")),
            avg_loss=_as_float(d.get("avgLoss")),
            sharpe_ratio=_as_float(d.get("sharpeRatio")),
            equity_curve=equity,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to camelCase JSON-compatible dict."""
        return {
            "trades": [t.to_dict() for t in self.trades],
            "netProfit": self.net_profit,
            "netProfitPercent": self.net_profit_percent,
            "winRate": self.win_rate,
            "expectancy": self.expectancy,
            "avgTrade": self.avg_trade,
            "profitFactor": self.profit_factor,
            "maxDrawdown": self.max_drawdown,
            "maxDrawdownPercent": self.max_drawdown_percent,
            "totalTrades": self.total_trades,
            "winningTrades": self.winning_trades,
            "losingTrades": self.losing_trades,
            "avgWin": self.avg_win,
            "avgLoss": self.avg_loss,
            "sharpeRatio": self.sharpe_ratio,
            "equityCurve": [{"time": p.time, "value": p.value} for p in self.equity_curve],
        }


def empty_result() -> BacktestResult:
    """Result with no trades and all metrics zero."""
    return BacktestResult()


def sharpe_from_moments(avg_return: float, std_return: float, count: int) -> float:
    """Sharpe ratio from precomputed mean and sample std of returns.

    Returns 0 for fewer than SHARPE_MIN_TRADES samples or near-zero variance,
    and clamps the ratio to +/- SHARPE_MAX_ABS.
    """
    if not math.isfinite(avg_return) or not math.isfinite(std_return):
        return 0.0
    if count < SHARPE_MIN_TRADES:
        return 0.0
    if std_return < SHARPE_MIN_STD_DEV:
        return 0.0
    raw = avg_return / std_return
    if not math.isfinite(raw):
        return 0.0
    return _clamp(raw, -SHARPE_MAX_ABS, SHARPE_MAX_ABS)


def sharpe_from_returns(returns: list[float]) -> float:
    """Sharpe ratio of a return series, ignoring non-finite values."""
    finite = [r for r in returns if math.isfinite(r)]
    if len(finite) < SHARPE_MIN_TRADES:
        return 0.0
    mean = sum(finite) / len(finite)
    variance = sum((r - mean) ** 2 for r in finite) / (len(finite) - 1)
    return sharpe_from_moments(mean, math.sqrt(max(0.0, variance)), len(finite))


def sanitize_sharpe(value: float) -> float:
    """Clamp a Sharpe ratio to a finite, bounded value."""
    if not math.isfinite(value):
        return 0.0
    return _clamp(value, -SHARPE_MAX_ABS, SHARPE_MAX_ABS)


def normalize_result_sharpe(result: BacktestResult, initial_capital: float) -> BacktestResult:
    """Recompute Sharpe from trade returns, or equity returns when tradeless.

    Backtesters and the remote engine annualize differently; ranking needs
    a single per-trade definition.

    Args:
        result: Raw backtest result.
        initial_capital: Starting equity for the first equity-curve return.

    Returns:
        Result with a normalized sharpe_ratio, or the input unchanged when
        neither trades nor an equity curve are available.
    """
    if result.trades:
        return replace(result, sharpe_ratio=sharpe_from_returns([t.pnl_percent for t in result.trades]))

    if len(result.equity_curve) > 1:
        returns: list[float] = []
        prev_equity = initial_capital
        for point in result.equity_curve:
            if prev_equity > 0:
                returns.append((point.value - prev_equity) / prev_equity)
            prev_equity = point.value
        return replace(result, sharpe_ratio=sharpe_from_returns(returns))

    return result


__all__ = [
    "SHARPE_MAX_ABS",
    "SHARPE_MIN_STD_DEV",
    "SHARPE_MIN_TRADES",
    "BacktestResult",
    "EquityPoint",
    "Trade",
    "empty_result",
    "normalize_result_sharpe",
    "sanitize_sharpe",
    "sharpe_from_moments",
    "sharpe_from_returns",
]
