"""Local/remote routing of backtest batches.

The router decides once per run whether batches go to the remote engine
(directly, or against an uploaded dataset) or stay local, then executes
each batch with per-run fallback: anything the remote engine does not
return, or returns in an inconsistent state, is re-run locally.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from strategy_finder.config import FinderMetric
from strategy_finder.offload.client import BatchItem, OffloadError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from strategy_finder.config import BacktestSettings, CapitalSettings, FinderOptions
    from strategy_finder.engine.flags import DatasetFlags
    from strategy_finder.metrics import BacktestResult
    from strategy_finder.offload.client import RemoteEngineClient
    from strategy_finder.types import Backtester, Bar, Signal

logger = logging.getLogger(__name__)

WIN_RATE_TOLERANCE = 1.0
AVG_TRADE_TOLERANCE_RATIO = 0.15
AVG_TRADE_TOLERANCE_MIN = 0.01
MAX_ABS_SHARPE = 8.0


class OffloadMode(StrEnum):
    """Where batches are executed."""

    LOCAL = "local"
    DIRECT = "direct"
    CACHED = "cached"


@dataclass(frozen=True, slots=True)
class OffloadPlan:
    """Routing decision for a run.

    Attributes:
        mode: Execution mode.
        cache_id: Remote dataset id in CACHED mode.
        reason: Why the run stays local, for LOCAL plans.
    """

    mode: OffloadMode
    cache_id: str | None = None
    reason: str | None = None

    @property
    def remote(self) -> bool:
        return self.mode is not OffloadMode.LOCAL


LOCAL_PLAN = OffloadPlan(OffloadMode.LOCAL)


@dataclass(frozen=True, slots=True)
class PreparedRun:
    """A job whose signals are ready for backtesting.

    Attributes:
        job_id: Job identifier, unique within the run.
        key: Strategy key of the job.
        signals: Signals to backtest.
        settings: Job settings with risk overrides applied.
    """

    job_id: int
    key: str
    signals: Sequence[Signal]
    settings: BacktestSettings

    @property
    def remote_id(self) -> str:
        """Item id sent to the remote engine."""
        return f"{self.key}-{self.job_id}"


@dataclass(slots=True)
class BatchOutcome:
    """Result of executing one batch.

    Attributes:
        results: (run, result) pairs for every run that produced a result.
        failures: (run, error) pairs for runs whose local backtest raised.
        fallback_reason: Set when any part of the batch fell back to local.
        local_fallbacks: Runs executed locally after a remote attempt.
    """

    results: list[tuple[PreparedRun, BacktestResult]] = field(default_factory=list)
    failures: list[tuple[PreparedRun, Exception]] = field(default_factory=list)
    fallback_reason: str | None = None
    local_fallbacks: int = 0


def is_backtest_result_consistent(result: BacktestResult) -> bool:
    """Sanity-check a remote result against its own aggregates.

    Trade counts must add up. With trades, the win rate must match the
    counts within 1 point, the average trade must match net profit per
    trade within 15% (at least 0.01), and the Sharpe ratio must be finite
    with magnitude at most 8.
    """
    total = result.total_trades
    if total != result.winning_trades + result.losing_trades:
        return False
    if total <= 0:
        return True

    expected_win_rate = result.winning_trades / total * 100
    if abs(expected_win_rate - result.win_rate) > WIN_RATE_TOLERANCE:
        return False

    expected_avg_trade = result.net_profit / total
    tolerance = max(AVG_TRADE_TOLERANCE_MIN, abs(expected_avg_trade) * AVG_TRADE_TOLERANCE_RATIO)
    if abs(expected_avg_trade - result.avg_trade) > tolerance:
        return False

    return math.isfinite(result.sharpe_ratio) and abs(result.sharpe_ratio) <= MAX_ABS_SHARPE


class OffloadRouter:
    """Executes backtest batches locally or on the remote engine.

    Args:
        backtester: Local backtester, also used for every fallback.
        capital: Capital and sizing settings.
        client: Remote engine client, or None for local-only execution.
    """

    def __init__(
        self,
        backtester: Backtester,
        capital: CapitalSettings,
        client: RemoteEngineClient | None = None,
    ) -> None:
        self.backtester = backtester
        self.capital = capital
        self.client = client

    async def prepare(
        self,
        bars: Sequence[Bar],
        flags: DatasetFlags,
        settings: BacktestSettings,
        options: FinderOptions,
    ) -> OffloadPlan:
        """Decide how the run's batches are executed.

        Returns:
            A CACHED plan for large datasets whose upload succeeded, a
            DIRECT plan for other remote-eligible runs, otherwise LOCAL.
        """
        if self.client is None:
            return LOCAL_PLAN

        unsupported = settings.remote_unsupported_features()
        if unsupported:
            logger.info("Remote engine skipped, unsupported features: %s", ", ".join(unsupported))
            return OffloadPlan(OffloadMode.LOCAL, reason="unsupported_features")
        if flags.extreme:
            logger.warning(
                "Extreme dataset (%d bars), running locally one job at a time", flags.bar_count
            )
            return OffloadPlan(OffloadMode.LOCAL, reason="extreme_dataset")
        if FinderMetric.SHARPE_RATIO in options.sort_priority and flags.compact:
            # Compact remote results carry no per-trade data for Sharpe normalization
            logger.info("Remote engine skipped, sharpeRatio ranking needs full results")
            return OffloadPlan(OffloadMode.LOCAL, reason="sharpe_compact")
        if not await self.client.check_health():
            return OffloadPlan(OffloadMode.LOCAL, reason="unhealthy")

        if flags.large:
            cache_id = await self.client.cache_data(bars)
            if cache_id is None:
                logger.warning("Remote dataset upload failed, running locally")
                return OffloadPlan(OffloadMode.LOCAL, reason="cache_failed")
            return OffloadPlan(OffloadMode.CACHED, cache_id=cache_id)
        return OffloadPlan(OffloadMode.DIRECT)

    def run_local(
        self, bars: Sequence[Bar], run: PreparedRun, compact: bool
    ) -> BacktestResult:
        """Backtest one run with the local backtester."""
        if compact:
            return self.backtester.run_compact(bars, run.signals, self.capital, run.settings)
        return self.backtester.run(bars, run.signals, self.capital, run.settings)

    def _run_locally(
        self,
        bars: Sequence[Bar],
        runs: Sequence[PreparedRun],
        compact: bool,
        outcome: BatchOutcome,
    ) -> None:
        for run in runs:
            try:
                outcome.results.append((run, self.run_local(bars, run, compact)))
            except Exception as e:
                logger.warning("Backtest failed for job %d: %s", run.job_id, e)
                outcome.failures.append((run, e))

    async def run_batch(
        self,
        plan: OffloadPlan,
        bars: Sequence[Bar],
        runs: Sequence[PreparedRun],
        base_settings: BacktestSettings,
        compact: bool,
    ) -> BatchOutcome:
        """Execute a batch according to the plan.

        Args:
            plan: Routing decision from prepare().
            bars: Bars the signals were computed on.
            runs: Prepared runs, in submission order.
            base_settings: Run-level settings sent as the remote base.
            compact: Request compact backtests.

        Returns:
            BatchOutcome with results in remote response order followed by
            local fallbacks.
        """
        outcome = BatchOutcome()
        if not runs:
            return outcome
        if not plan.remote or self.client is None:
            self._run_locally(bars, runs, compact, outcome)
            return outcome

        by_id = {run.remote_id: run for run in runs}
        items = [
            BatchItem(id=item_id, signals=run.signals, settings=run.settings.to_remote())
            for item_id, run in by_id.items()
        ]
        remote_base = base_settings.to_remote()

        try:
            if plan.mode is OffloadMode.CACHED and plan.cache_id is not None:
                response = await self.client.run_cached_batch_backtest(
                    plan.cache_id, items, self.capital, remote_base, compact
                )
            else:
                response = await self.client.run_batch_backtest(
                    bars, items, self.capital, remote_base, compact
                )
        except OffloadError as e:
            logger.warning("Remote batch of %d failed, running locally: %s", len(runs), e)
            outcome.fallback_reason = "remote_error"
            outcome.local_fallbacks = len(runs)
            self._run_locally(bars, runs, compact, outcome)
            return outcome

        if not response.results:
            logger.warning("Remote batch of %d returned no results, running locally", len(runs))
            outcome.fallback_reason = "empty_response"
            outcome.local_fallbacks = len(runs)
            self._run_locally(bars, runs, compact, outcome)
            return outcome

        completed: set[str] = set()
        redo: list[PreparedRun] = []
        for entry in response.results:
            run = by_id.get(entry.id)
            if run is None:
                logger.warning("Remote batch returned unknown run id: %s", entry.id)
                continue
            if entry.id in completed:
                continue
            completed.add(entry.id)
            if not is_backtest_result_consistent(entry.result):
                logger.warning("Remote result inconsistent for %s, running locally", entry.id)
                outcome.fallback_reason = "inconsistent_result"
                redo.append(run)
                continue
            outcome.results.append((run, entry.result))

        missing = [run for item_id, run in by_id.items() if item_id not in completed]
        if missing:
            logger.warning("Remote batch missing %d of %d runs, running locally", len(missing), len(runs))
            outcome.fallback_reason = outcome.fallback_reason or "missing_results"
        redo.extend(missing)
        outcome.local_fallbacks = len(redo)
        self._run_locally(bars, redo, compact, outcome)
        return outcome


__all__ = [
    "LOCAL_PLAN",
    "BatchOutcome",
    "OffloadMode",
    "OffloadPlan",
    "OffloadRouter",
    "PreparedRun",
    "is_backtest_result_consistent",
]
