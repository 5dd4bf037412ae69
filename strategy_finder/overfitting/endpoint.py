"""Endpoint-bias correction.

Backtests close any open position on the final bar. Those exits are not
real strategy decisions, yet they can dominate the metrics of a short or
trending sample. Selection therefore ranks on a result rebuilt without
trades whose exit is at or after the last data timestamp.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from strategy_finder.metrics import sharpe_from_moments

if TYPE_CHECKING:
    from strategy_finder.metrics import BacktestResult


@dataclass(frozen=True, slots=True)
class EndpointAdjustment:
    """Outcome of endpoint correction.

    Attributes:
        result: Corrected result, or the input when nothing was removed.
        adjusted: True if any trade was removed.
        removed_trades: Number of removed trades.
    """

    result: BacktestResult
    adjusted: bool
    removed_trades: int


def build_selection_result(
    raw: BacktestResult, last_time: float | None, initial_capital: float
) -> EndpointAdjustment:
    """Rebuild a result without trades exiting at or after ``last_time``.

    Counts, profit metrics and a per-trade Sharpe ratio are recomputed in a
    single pass (Welford mean/variance over finite trade returns). Drawdown
    and equity curve are carried over from the raw result.

    Args:
        raw: Raw backtest result.
        last_time: Timestamp of the last bar, or None if unknown.
        initial_capital: Capital used for net_profit_percent.

    Returns:
        EndpointAdjustment. The input is returned unchanged with
        adjusted=False if last_time is None, there are no trades, or no
        trade was removed.
    """
    if last_time is None or not raw.trades:
        return EndpointAdjustment(result=raw, adjusted=False, removed_trades=0)

    kept = []
    winning = 0
    losing = 0
    total_profit = 0.0
    total_loss = 0.0
    net_profit = 0.0
    return_count = 0
    mean_return = 0.0
    return_m2 = 0.0

    for trade in raw.trades:
        if trade.exit_time >= last_time:
            continue
        kept.append(trade)
        net_profit += trade.pnl
        if trade.pnl > 0:
            winning += 1
            total_profit += trade.pnl
        else:
            losing += 1
            total_loss += abs(trade.pnl)

        if math.isfinite(trade.pnl_percent):
            return_count += 1
            delta = trade.pnl_percent - mean_return
            mean_return += delta / return_count
            return_m2 += delta * (trade.pnl_percent - mean_return)

    removed = len(raw.trades) - len(kept)
    if removed <= 0:
        return EndpointAdjustment(result=raw, adjusted=False, removed_trades=0)

    total = len(kept)
    avg_win = total_profit / winning if winning else 0.0
    avg_loss = total_loss / losing if losing else 0.0
    win_rate = winning / total if total else 0.0
    loss_rate = losing / total if total else 0.0
    if total_loss > 0:
        profit_factor = total_profit / total_loss
    else:
        profit_factor = math.inf if total_profit > 0 else 0.0
    std_return = math.sqrt(return_m2 / (return_count - 1)) if return_count > 1 else 0.0

    corrected = replace(
        raw,
        trades=tuple(kept),
        net_profit=net_profit,
        net_profit_percent=net_profit / initial_capital * 100 if initial_capital > 0 else 0.0,
        win_rate=win_rate * 100,
        expectancy=win_rate * avg_win - loss_rate * avg_loss,
        avg_trade=net_profit / total if total else 0.0,
        profit_factor=profit_factor,
        total_trades=total,
        winning_trades=winning,
        losing_trades=losing,
        avg_win=avg_win,
        avg_loss=avg_loss,
        sharpe_ratio=sharpe_from_moments(mean_return, std_return, return_count),
    )
    return EndpointAdjustment(result=corrected, adjusted=True, removed_trades=removed)
