"""Finder execution engine.

Runs every candidate parameter set of every selected strategy, in adaptive
batches, through signal generation, optional confirmation gating and
durability scoring, and a local or remote backtest. Results are
endpoint-corrected, filtered and kept in a bounded ranker; the sorted top-N
is returned.

The engine runs on a single asyncio task. It suspends only for network
calls and cooperative yields between jobs, so a UI sharing the loop stays
responsive during long searches.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from strategy_finder.config import BacktestSettings, CapitalSettings, FinderMode, FinderOptions
from strategy_finder.engine.flags import compute_dataset_flags
from strategy_finder.engine.jobs import JobQueue, build_strategy_plans
from strategy_finder.engine.progress import LoggingProgressSink, ProgressThrottle, YieldBudget
from strategy_finder.engine.session import RunSession
from strategy_finder.logging.events import EventType
from strategy_finder.logging.writer import EventWriter
from strategy_finder.metrics import normalize_result_sharpe
from strategy_finder.multitimeframe import (
    TimeframeDataset,
    TimeframeDatasetCache,
    TimeframeLoader,
    aggregate_backtest_results,
    resolve_timeframes,
)
from strategy_finder.offload.router import OffloadMode, OffloadRouter, PreparedRun
from strategy_finder.overfitting.durability import (
    MAX_BARS as DURABILITY_MAX_BARS,
    MIN_BARS as DURABILITY_MIN_BARS,
    create_durability_context,
    evaluate_durability,
)
from strategy_finder.overfitting.endpoint import build_selection_result
from strategy_finder.ranking import ResultRanker
from strategy_finder.search.param_space import ParamSpaceSampler, build_random_confirmation_params
from strategy_finder.types import FinderResult

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path

    from strategy_finder.engine.flags import DatasetFlags
    from strategy_finder.engine.jobs import ParamJob
    from strategy_finder.metrics import BacktestResult
    from strategy_finder.offload.client import RemoteEngineClient
    from strategy_finder.overfitting.durability import DurabilityMetrics
    from strategy_finder.search.param_space import RandomFn
    from strategy_finder.types import (
        Backtester,
        Bar,
        ConfirmationFilter,
        DataSource,
        ProgressSink,
        SelectedStrategy,
        Signal,
        StrategyParams,
    )

logger = logging.getLogger(__name__)

# The ranker keeps at least this many results regardless of top_n
MIN_RANKER_CAPACITY = 50

# Multi-timeframe progress is only considered every N jobs
MULTI_TIMEFRAME_PROGRESS_EVERY = 5


@dataclass(frozen=True, slots=True)
class FinderRequest:
    """Everything a finder run needs.

    Attributes:
        symbol: Instrument symbol.
        interval: Interval of ``bars``.
        bars: Primary bar series.
        strategies: Strategies to search.
        options: Run options.
        settings: Backtest settings shared by every job.
        capital: Capital and sizing settings.
    """

    symbol: str
    interval: str
    bars: Sequence[Bar]
    strategies: Sequence[SelectedStrategy]
    options: FinderOptions = field(default_factory=FinderOptions)
    settings: BacktestSettings = field(default_factory=BacktestSettings)
    capital: CapitalSettings = field(default_factory=CapitalSettings)


@dataclass(slots=True)
class FinderRunOutput:
    """Outcome of a finder run.

    Attributes:
        results: Best results, best first, at most top_n.
        status: Final status line.
        run_id: Identifier of the run.
        total_runs: Parameter sets processed.
        matched: Results that passed filtering.
        endpoint_adjusted: Matched results changed by endpoint correction.
        timeframes: Intervals evaluated in multi-timeframe runs.
    """

    results: list[FinderResult]
    status: str
    run_id: str | None = None
    total_runs: int = 0
    matched: int = 0
    endpoint_adjusted: int = 0
    timeframes: list[str] = field(default_factory=list)


class FinderEngine:
    """Strategy parameter finder.

    One engine executes one run at a time; a second run while one is active
    raises FinderBusyError.

    Args:
        backtester: Local backtester, also the fallback for remote runs.
        data_source: Bar provider for multi-timeframe runs.
        confirmations: Confirmation filter for settings that name
            confirmation strategies.
        offload_client: Remote engine client; None keeps every run local.
        sampler: Parameter-space sampler.
        dataset_cache: Timeframe dataset cache shared across runs.
        events_dir: Directory for per-run JSONL event logs; None disables them.
        clock: Monotonic clock for progress throttling and yielding.
    """

    def __init__(
        self,
        backtester: Backtester,
        *,
        data_source: DataSource | None = None,
        confirmations: ConfirmationFilter | None = None,
        offload_client: RemoteEngineClient | None = None,
        sampler: ParamSpaceSampler | None = None,
        dataset_cache: TimeframeDatasetCache | None = None,
        events_dir: Path | str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backtester = backtester
        self.data_source = data_source
        self.confirmations = confirmations
        self.offload_client = offload_client
        self.sampler = sampler or ParamSpaceSampler()
        self.dataset_cache = dataset_cache or TimeframeDatasetCache()
        self.events_dir = events_dir
        self.clock = clock
        self.session = RunSession()

    @property
    def busy(self) -> bool:
        return self.session.busy

    async def run(self, request: FinderRequest, sink: ProgressSink | None = None) -> FinderRunOutput:
        """Execute a finder run.

        Args:
            request: Run inputs.
            sink: Progress receiver; defaults to logging.

        Returns:
            FinderRunOutput. Runs with nothing to do return no results and
            a status line explaining why.

        Raises:
            FinderBusyError: If a run is already in progress.
        """
        async with self.session.start() as run_id:
            writer = EventWriter(run_id, self.events_dir) if self.events_dir is not None else None
            try:
                finder_run = _FinderRun(self, request, sink or LoggingProgressSink(), run_id, writer)
                return await finder_run.execute()
            finally:
                if writer is not None:
                    writer.close()


class _FinderRun:
    """State of one run: counters, ranker and collaborators."""

    def __init__(
        self,
        engine: FinderEngine,
        request: FinderRequest,
        sink: ProgressSink,
        run_id: str,
        writer: EventWriter | None,
    ) -> None:
        self.engine = engine
        self.request = request
        self.options = request.options
        self.settings = request.settings
        self.capital = request.capital
        self.run_id = run_id
        self.writer = writer
        self.throttle = ProgressThrottle(sink, clock=engine.clock)
        self.router = OffloadRouter(engine.backtester, request.capital, engine.offload_client)
        self.ranker = ResultRanker(
            max(self.options.top_n, MIN_RANKER_CAPACITY), self.options.sort_priority
        )
        self.processed = 0
        self.matched = 0
        self.endpoint_adjusted = 0

        self.confirmation_keys = list(self.settings.confirmation_strategies)
        if self.confirmation_keys and engine.confirmations is None:
            logger.warning(
                "Confirmation strategies %s configured without a confirmation filter, ignoring",
                self.confirmation_keys,
            )
            self.confirmation_keys = []
        self.randomize_confirmations = self.options.mode is FinderMode.RANDOM
        self.base_confirmation_params = dict(self.settings.confirmation_strategy_params)

        self.flags: DatasetFlags = compute_dataset_flags(
            len(request.bars), self.settings, self.options
        )
        self.budget = YieldBudget(heavy=self.flags.heavy, clock=engine.clock)
        self.rand: RandomFn = engine.sampler.resolve_random(self.options)

    # --- events ------------------------------------------------------------

    def _emit(self, event_type: EventType, strategy: str = "", **data: object) -> None:
        if self.writer is not None:
            self.writer.emit(event_type, strategy, **data)

    def _job_failed(self, job: ParamJob, stage: str, error: Exception) -> None:
        self._emit(EventType.JOB_FAILED, job.key, job_id=job.id, stage=stage, error=str(error))

    # --- entry point -------------------------------------------------------

    def _finish_early(self, status: str) -> FinderRunOutput:
        self.throttle.status(status)
        self._emit(EventType.RUN_COMPLETED, status=status)
        return FinderRunOutput(results=[], status=status, run_id=self.run_id)

    async def execute(self) -> FinderRunOutput:
        request = self.request
        if not request.bars:
            return self._finish_early("Load data before running the finder.")
        if not request.strategies:
            return self._finish_early("No strategies selected.")

        flags = self.flags
        if flags.extreme:
            logger.warning(
                "Extreme dataset detected (%d bars), using ultra-memory-efficient mode",
                flags.bar_count,
            )
            self.throttle.status(f"Ultra-memory mode: {flags.bar_count / 1_000_000:.1f}M bars")
        elif flags.very_large:
            logger.warning(
                "Very large dataset detected (%d bars), using memory-efficient mode", flags.bar_count
            )

        self.throttle.progress(5, "Preparing parameter combinations...", force=True)
        plans = build_strategy_plans(
            request.strategies, self.settings, self.options, self.engine.sampler
        )
        queue = JobQueue(plans, self.settings)
        if queue.total_runs == 0:
            return self._finish_early("No valid parameter combinations generated.")

        logger.info(
            "Finder run %s: %d runs over %d strategies on %s %s (%d bars, batch size %d)",
            self.run_id,
            queue.total_runs,
            len(plans),
            request.symbol,
            request.interval,
            flags.bar_count,
            flags.batch_size,
        )
        self._emit(
            EventType.RUN_STARTED,
            symbol=request.symbol,
            interval=request.interval,
            bar_count=flags.bar_count,
            strategies=[plan.key for plan in plans],
            mode=str(self.options.mode),
        )

        if self.options.multi_timeframe_enabled:
            intervals = resolve_timeframes(self.options, request.interval)
            return await self._run_multi_timeframe(queue, intervals)
        return await self._run_single_timeframe(queue)

    # --- shared job steps --------------------------------------------------

    def _draw_confirmation_params(self) -> dict[str, StrategyParams] | None:
        """Confirmation params for a job: fresh random draws in random mode."""
        if not self.confirmation_keys:
            return None
        if self.randomize_confirmations:
            assert self.engine.confirmations is not None
            return build_random_confirmation_params(
                self.confirmation_keys, self.engine.confirmations, self.options, self.rand
            )
        return self.base_confirmation_params or None

    def _build_states(
        self, bars: Sequence[Bar], params: dict[str, StrategyParams] | None
    ) -> list[Any]:
        if not self.confirmation_keys:
            return []
        assert self.engine.confirmations is not None
        return self.engine.confirmations.build_states(bars, self.confirmation_keys, params or {})

    def _filter_direction(self, job: ParamJob) -> str | None:
        """Direction for confirmation gating; None gates both sides."""
        if job.strategy.metadata.role == "entry" or self.settings.trade_direction in (
            "both",
            "combined",
        ):
            return None
        return self.settings.trade_direction

    def _generate_signals(
        self, job: ParamJob, bars: Sequence[Bar], states: Sequence[Any]
    ) -> list[Signal]:
        signals = job.strategy.execute(bars, job.params)
        if states:
            assert self.engine.confirmations is not None
            signals = self.engine.confirmations.filter_signals(
                bars, signals, states, self.settings.confirmation_mode, self._filter_direction(job)
            )
        return signals

    def _entry_result(
        self, job: ParamJob, bars: Sequence[Bar], signals: Sequence[Signal]
    ) -> BacktestResult | None:
        """Entry-quality result for entry-role strategies, else None."""
        if job.strategy.metadata.role != "entry":
            return None
        evaluation = job.strategy.evaluate(bars, job.params, signals)
        if evaluation is None or not evaluation.entry_stats:
            return None
        return self.engine.backtester.build_entry_result(evaluation.entry_stats)

    def _outside_trade_range(self, total_trades: int) -> bool:
        return self.options.trade_filter_enabled and not (
            self.options.min_trades <= total_trades <= self.options.max_trades
        )

    def _insert_result(
        self,
        job: ParamJob,
        result: BacktestResult,
        last_time: float | None,
        confirmation_params: dict[str, StrategyParams] | None,
        robust_metrics: DurabilityMetrics | None = None,
        timeframes: list[str] | None = None,
    ) -> None:
        """Filter, correct and offer one result to the ranker."""
        options = self.options
        if options.trade_filter_enabled:
            if result.total_trades < options.min_trades:
                return
            # Without trades the count cannot shrink under endpoint correction
            if result.total_trades > options.max_trades and not result.trades:
                return

        normalized = normalize_result_sharpe(result, self.capital.initial_capital)
        adjustment = build_selection_result(normalized, last_time, self.capital.initial_capital)
        if self._outside_trade_range(normalized.total_trades):
            return
        if (
            options.durability_require_pass
            and robust_metrics is not None
            and robust_metrics.enabled
            and not robust_metrics.passed
        ):
            return

        self.matched += 1
        if adjustment.adjusted:
            self.endpoint_adjusted += 1
        self.ranker.offer(
            FinderResult(
                key=job.key,
                name=job.name,
                params=job.params,
                result=normalized,
                selection_result=adjustment.result,
                endpoint_adjusted=adjustment.adjusted,
                endpoint_removed_trades=adjustment.removed_trades,
                timeframes=timeframes,
                confirmation_params=confirmation_params,
                robust_metrics=robust_metrics,
            )
        )

    def _complete(self, total_runs: int, timeframes: list[str] | None = None) -> FinderRunOutput:
        self.engine.session.mark_completing()
        trimmed = self.ranker.to_sorted_list(self.options.top_n)

        parts = [f"{self.processed} runs"]
        if timeframes:
            parts.append(f"{len(timeframes)} timeframes")
        if self.options.trade_filter_enabled:
            parts.append(f"{self.matched} matched")
        if self.endpoint_adjusted > 0:
            parts.append(f"{self.endpoint_adjusted} endpoint-adjusted")
        parts.append(f"{len(trimmed)} shown")
        if self.flags.very_large and not timeframes:
            parts.append("(memory-efficient mode)")
        status = f"Complete. {', '.join(parts)}."

        self.throttle.progress(100, f"{total_runs}/{total_runs} runs", force=True)
        self.throttle.status(status)
        logger.info("Finder run %s: %s", self.run_id, status)
        self._emit(
            EventType.RUN_COMPLETED,
            total_runs=self.processed,
            matched=self.matched,
            endpoint_adjusted=self.endpoint_adjusted,
            shown=len(trimmed),
            status=status,
        )
        return FinderRunOutput(
            results=trimmed,
            status=status,
            run_id=self.run_id,
            total_runs=self.processed,
            matched=self.matched,
            endpoint_adjusted=self.endpoint_adjusted,
            timeframes=list(timeframes or []),
        )

    # --- single timeframe --------------------------------------------------

    async def _run_single_timeframe(self, queue: JobQueue) -> FinderRunOutput:
        bars = self.request.bars
        flags = self.flags
        total_runs = queue.total_runs
        last_time = bars[-1].time
        compact = flags.compact

        self.throttle.progress(10, f"Running {total_runs} backtests (batch mode)...", force=True)

        durability = create_durability_context(self.options, bars)
        if self.options.durability_enabled and not durability.enabled:
            logger.info(
                "Durability scoring disabled for %d bars (needs %d to %d)",
                len(bars),
                DURABILITY_MIN_BARS,
                DURABILITY_MAX_BARS,
            )

        fixed_states = (
            self._build_states(bars, self.base_confirmation_params)
            if not self.randomize_confirmations
            else []
        )

        plan = await self.router.prepare(bars, flags, self.settings, self.options)
        if plan.mode is OffloadMode.CACHED:
            self.throttle.status("Using remote engine with cached data...")
        elif not plan.remote and flags.large and not flags.extreme:
            self.throttle.status("Using local backtester...")

        total_batches = math.ceil(total_runs / flags.batch_size)
        batch_num = 0
        while self.processed < total_runs:
            jobs = queue.next_batch(flags.batch_size)
            if not jobs:
                break
            batch_num += 1
            produced = 0
            pending: dict[int, tuple[ParamJob, dict[str, StrategyParams] | None, DurabilityMetrics | None]] = {}
            runs: list[PreparedRun] = []

            for job in jobs:
                stage = "signals"
                try:
                    confirmation_params = self._draw_confirmation_params()
                    states = (
                        self._build_states(bars, confirmation_params)
                        if self.randomize_confirmations
                        else fixed_states
                    )
                    signals = self._generate_signals(job, bars, states)

                    entry = self._entry_result(job, bars, signals)
                    if entry is not None:
                        produced += 1
                        self._insert_result(job, entry, last_time, confirmation_params)
                        continue

                    stage = "backtest"
                    robust = (
                        evaluate_durability(
                            signals, job.settings, durability, self.capital, self.engine.backtester
                        )
                        if durability.enabled
                        else None
                    )
                    run = PreparedRun(job.id, job.key, signals, job.settings)
                    if plan.remote:
                        pending[job.id] = (job, confirmation_params, robust)
                        runs.append(run)
                    else:
                        result = self.router.run_local(bars, run, compact)
                        produced += 1
                        self._insert_result(job, result, last_time, confirmation_params, robust)
                except Exception as e:
                    logger.warning("Job %d (%s) failed during %s: %s", job.id, job.key, stage, e)
                    self._job_failed(job, stage, e)

                await self.budget.maybe_yield()

            if runs:
                outcome = await self.router.run_batch(plan, bars, runs, self.settings, compact)
                if outcome.fallback_reason is not None:
                    self._emit(
                        EventType.OFFLOAD_FALLBACK,
                        reason=outcome.fallback_reason,
                        runs=outcome.local_fallbacks,
                    )
                for run, result in outcome.results:
                    job, confirmation_params, robust = pending[run.job_id]
                    produced += 1
                    self._insert_result(job, result, last_time, confirmation_params, robust)
                for run, error in outcome.failures:
                    self._job_failed(pending[run.job_id][0], "backtest", error)

            self.processed += len(jobs)
            logger.debug(
                "Batch %d/%d: %d jobs, %d results", batch_num, total_batches, len(jobs), produced
            )
            self._emit(
                EventType.BATCH_COMPLETED,
                batch=batch_num,
                jobs=len(jobs),
                results=produced,
                offload_mode=str(plan.mode),
            )
            if self.throttle.progress(
                10 + self.processed / total_runs * 85,
                f"Batch {batch_num}/{total_batches} ({self.processed}/{total_runs})",
                force=self.processed == total_runs,
            ):
                if flags.extreme:
                    self.throttle.status(
                        f"Processing {batch_num}/{total_batches} (ultra-memory mode)..."
                    )
                else:
                    self.throttle.status(f"Processing batch {batch_num}/{total_batches}...")

            await self.budget.maybe_yield(force=True)

        return self._complete(total_runs)

    # --- multi timeframe ---------------------------------------------------

    async def _load_datasets(self, intervals: list[str]) -> list[TimeframeDataset]:
        request = self.request
        current = TimeframeDataset(request.interval, request.bars)
        if self.engine.data_source is None:
            logger.warning("No data source configured, only %s data is available", request.interval)
            return [current] if request.interval in intervals else []
        loader = TimeframeLoader(self.engine.data_source, self.engine.dataset_cache)
        return await loader.load_datasets(request.symbol, intervals, current=current)

    async def _run_multi_timeframe(self, queue: JobQueue, intervals: list[str]) -> FinderRunOutput:
        total_runs = queue.total_runs
        self.throttle.progress(8, f"Loading {len(intervals)} timeframe datasets...", force=True)
        self.throttle.status(f"Loading timeframe datasets ({len(intervals)})...")

        datasets = await self._load_datasets(intervals)
        loaded = {dataset.interval for dataset in datasets}
        for interval in intervals:
            if interval not in loaded:
                self._emit(EventType.TIMEFRAME_SKIPPED, interval=interval)
        if not datasets:
            return self._finish_early("No data available for selected timeframes.")

        labels = [dataset.interval for dataset in datasets]
        self.throttle.progress(
            12, f"Running {total_runs} runs across {len(datasets)} timeframes...", force=True
        )

        fixed_states: dict[str, list[Any]] = {}
        if not self.randomize_confirmations:
            for dataset in datasets:
                fixed_states[dataset.interval] = self._build_states(
                    dataset.data, self.base_confirmation_params
                )

        # Endpoint correction needs a single series end
        last_time = datasets[0].data[-1].time if len(datasets) == 1 else None

        batch_num = 0
        while self.processed < total_runs:
            jobs = queue.next_batch(self.flags.batch_size)
            if not jobs:
                break
            batch_num += 1
            produced = 0

            for job in jobs:
                timeframe_results: list[BacktestResult] = []
                confirmation_params: dict[str, StrategyParams] | None = None
                try:
                    confirmation_params = self._draw_confirmation_params()
                except Exception as e:
                    logger.warning("Job %d (%s) confirmation setup failed: %s", job.id, job.key, e)
                    self._job_failed(job, "confirmations", e)
                else:
                    for dataset in datasets:
                        try:
                            states = (
                                self._build_states(dataset.data, confirmation_params)
                                if self.randomize_confirmations
                                else fixed_states.get(dataset.interval, [])
                            )
                            signals = self._generate_signals(job, dataset.data, states)
                            result = self._entry_result(job, dataset.data, signals)
                            if result is None:
                                run = PreparedRun(job.id, job.key, signals, job.settings)
                                compact = self.flags.uses_compact(len(dataset.data))
                                result = self.router.run_local(dataset.data, run, compact)
                            timeframe_results.append(result)
                        except Exception as e:
                            logger.warning(
                                "Job %d (%s) failed on %s: %s", job.id, job.key, dataset.interval, e
                            )
                            self._job_failed(job, f"timeframe:{dataset.interval}", e)

                if timeframe_results:
                    aggregated = aggregate_backtest_results(
                        timeframe_results, self.capital.initial_capital
                    )
                    produced += 1
                    self._insert_result(
                        job, aggregated, last_time, confirmation_params, timeframes=labels
                    )

                self.processed += 1
                done = self.processed == total_runs
                if (
                    self.processed % MULTI_TIMEFRAME_PROGRESS_EVERY == 0 or done
                ) and self.throttle.progress(
                    12 + self.processed / total_runs * 84,
                    f"{self.processed}/{total_runs} runs ({len(datasets)} TF)",
                    force=done,
                ):
                    self.throttle.status(
                        f"Processing {self.processed}/{total_runs} runs "
                        f"across {len(datasets)} timeframes..."
                    )
                await self.budget.maybe_yield(force=done)

            self._emit(
                EventType.BATCH_COMPLETED,
                batch=batch_num,
                jobs=len(jobs),
                results=produced,
                offload_mode=str(OffloadMode.LOCAL),
            )

        return self._complete(total_runs, labels)


__all__ = ["FinderEngine", "FinderRequest", "FinderRunOutput"]
