"""Tests for local/remote batch routing and per-run fallback."""

from __future__ import annotations

import math
from unittest.mock import AsyncMock, MagicMock

import pytest

from strategy_finder.config import BacktestSettings, CapitalSettings, FinderMetric, FinderOptions
from strategy_finder.engine.flags import compute_dataset_flags
from strategy_finder.metrics import BacktestResult
from strategy_finder.types import Signal
from tests.fixtures.fakes import FakeBacktester, consistent_result, make_bars

NET_PROFIT_ONLY = FinderOptions(sort_priority=(FinderMetric.NET_PROFIT,))


def _mock_client(healthy: bool = True, cache_id: str | None = "cache-1") -> MagicMock:
    client = MagicMock()
    client.check_health = AsyncMock(return_value=healthy)
    client.cache_data = AsyncMock(return_value=cache_id)
    client.run_batch_backtest = AsyncMock()
    client.run_cached_batch_backtest = AsyncMock()
    return client


def _runs(count: int, key: str = "sma"):
    from strategy_finder.offload import PreparedRun

    bars = make_bars(50)
    signals = [Signal(time=bars[i].time, type="buy", price=bars[i].close, bar_index=i) for i in range(4, 50, 5)]
    return [PreparedRun(job_id=i, key=key, signals=signals, settings=BacktestSettings()) for i in range(count)]


def _response(*entries: tuple[str, BacktestResult]):
    from strategy_finder.offload import BatchEntry, BatchResponse

    return BatchResponse(results=[BatchEntry(id=i, result=r) for i, r in entries])


class TestIsBacktestResultConsistent:
    """Tests for remote result sanity checks."""

    def test_consistent(self) -> None:
        """Matching aggregates pass."""
        from strategy_finder.offload import is_backtest_result_consistent

        assert is_backtest_result_consistent(consistent_result()) is True

    def test_no_trades_skips_ratio_checks(self) -> None:
        """Tradeless results only need matching counts."""
        from strategy_finder.offload import is_backtest_result_consistent

        assert is_backtest_result_consistent(BacktestResult(win_rate=55.0, sharpe_ratio=math.nan)) is True

    @pytest.mark.parametrize(
        "override",
        [
            {"winning_trades": 3},
            {"win_rate": 60.0},
            {"avg_trade": 7.0},
            {"sharpe_ratio": 9.0},
            {"sharpe_ratio": math.inf},
        ],
    )
    def test_inconsistent(self, override: dict[str, float]) -> None:
        """Counts, win rate, average trade and Sharpe are all checked."""
        from dataclasses import replace

        from strategy_finder.offload import is_backtest_result_consistent

        assert is_backtest_result_consistent(replace(consistent_result(), **override)) is False

    def test_avg_trade_tolerance(self) -> None:
        """Average trade may deviate by 15% of the expected value."""
        from dataclasses import replace

        from strategy_finder.offload import is_backtest_result_consistent

        # expected 5.0, tolerance 0.75
        assert is_backtest_result_consistent(replace(consistent_result(), avg_trade=5.7)) is True
        assert is_backtest_result_consistent(replace(consistent_result(), avg_trade=5.8)) is False


class TestPrepare:
    """Tests for the per-run routing decision."""

    @pytest.mark.asyncio
    async def test_no_client_is_local(self) -> None:
        """Without a client every run is local."""
        from strategy_finder.offload import OffloadMode, OffloadRouter

        router = OffloadRouter(FakeBacktester(), CapitalSettings())
        plan = await router.prepare([], compute_dataset_flags(100, BacktestSettings(), NET_PROFIT_ONLY), BacktestSettings(), NET_PROFIT_ONLY)

        assert plan.mode is OffloadMode.LOCAL
        assert plan.remote is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "settings",
        [
            BacktestSettings(slippage_bps=5),
            BacktestSettings(execution_model="next_open"),
            BacktestSettings(allow_same_bar_exit=False),
            BacktestSettings(capture_snapshots=True),
            BacktestSettings(snapshot_filters={"snapshotRsiMin": 30.0}),
        ],
    )
    async def test_unsupported_features_local(self, settings: BacktestSettings) -> None:
        """Settings the remote engine cannot honour keep the run local."""
        from strategy_finder.offload import OffloadMode, OffloadRouter

        client = _mock_client()
        router = OffloadRouter(FakeBacktester(), CapitalSettings(), client)
        flags = compute_dataset_flags(100, settings, NET_PROFIT_ONLY)

        plan = await router.prepare([], flags, settings, NET_PROFIT_ONLY)

        assert plan.mode is OffloadMode.LOCAL
        assert plan.reason == "unsupported_features"
        client.check_health.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_extreme_dataset_local(self) -> None:
        """Extreme datasets are never offloaded."""
        from strategy_finder.offload import OffloadRouter

        router = OffloadRouter(FakeBacktester(), CapitalSettings(), _mock_client())
        flags = compute_dataset_flags(4_000_000, BacktestSettings(), NET_PROFIT_ONLY)

        plan = await router.prepare([], flags, BacktestSettings(), NET_PROFIT_ONLY)

        assert plan.reason == "extreme_dataset"

    @pytest.mark.asyncio
    async def test_sharpe_ranking_with_compact_local(self) -> None:
        """Sharpe ranking needs full results, so compact runs stay local."""
        from strategy_finder.offload import OffloadRouter

        router = OffloadRouter(FakeBacktester(), CapitalSettings(), _mock_client())
        options = FinderOptions()
        flags = compute_dataset_flags(600_000, BacktestSettings(), options)

        plan = await router.prepare([], flags, BacktestSettings(), options)

        assert FinderMetric.SHARPE_RATIO in options.sort_priority
        assert plan.reason == "sharpe_compact"

    @pytest.mark.asyncio
    async def test_unhealthy_local(self) -> None:
        """An unhealthy engine keeps the run local."""
        from strategy_finder.offload import OffloadRouter

        router = OffloadRouter(FakeBacktester(), CapitalSettings(), _mock_client(healthy=False))
        flags = compute_dataset_flags(100, BacktestSettings(), NET_PROFIT_ONLY)

        plan = await router.prepare([], flags, BacktestSettings(), NET_PROFIT_ONLY)

        assert plan.reason == "unhealthy"

    @pytest.mark.asyncio
    async def test_small_dataset_direct(self) -> None:
        """Healthy engine and a small dataset give a direct plan."""
        from strategy_finder.offload import OffloadMode, OffloadRouter

        client = _mock_client()
        router = OffloadRouter(FakeBacktester(), CapitalSettings(), client)
        flags = compute_dataset_flags(1_000, BacktestSettings(), NET_PROFIT_ONLY)

        plan = await router.prepare([], flags, BacktestSettings(), NET_PROFIT_ONLY)

        assert plan.mode is OffloadMode.DIRECT
        client.cache_data.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_large_dataset_cached(self) -> None:
        """Large datasets are uploaded once and referenced by id."""
        from strategy_finder.offload import OffloadMode, OffloadRouter

        client = _mock_client()
        router = OffloadRouter(FakeBacktester(), CapitalSettings(), client)
        flags = compute_dataset_flags(600_000, BacktestSettings(), NET_PROFIT_ONLY)

        plan = await router.prepare(["bars"], flags, BacktestSettings(), NET_PROFIT_ONLY)

        assert plan.mode is OffloadMode.CACHED
        assert plan.cache_id == "cache-1"
        client.cache_data.assert_awaited_once_with(["bars"])

    @pytest.mark.asyncio
    async def test_failed_upload_local(self) -> None:
        """A failed upload falls back to local execution."""
        from strategy_finder.offload import OffloadRouter

        router = OffloadRouter(FakeBacktester(), CapitalSettings(), _mock_client(cache_id=None))
        flags = compute_dataset_flags(600_000, BacktestSettings(), NET_PROFIT_ONLY)

        plan = await router.prepare([], flags, BacktestSettings(), NET_PROFIT_ONLY)

        assert plan.reason == "cache_failed"


class TestRunBatch:
    """Tests for batch execution with per-run fallback."""

    @pytest.mark.asyncio
    async def test_local_plan(self) -> None:
        """Local plans run every job on the local backtester."""
        from strategy_finder.offload import LOCAL_PLAN, OffloadRouter

        backtester = FakeBacktester()
        router = OffloadRouter(backtester, CapitalSettings())
        runs = _runs(3)

        outcome = await router.run_batch(LOCAL_PLAN, make_bars(50), runs, BacktestSettings(), compact=True)

        assert [run.job_id for run, _ in outcome.results] == [0, 1, 2]
        assert outcome.fallback_reason is None
        assert [kind for kind, _, _ in backtester.calls] == ["compact"] * 3

    @pytest.mark.asyncio
    async def test_missing_results_run_locally(self) -> None:
        """Five jobs with three remote results still produce five results."""
        from strategy_finder.offload import OffloadMode, OffloadPlan, OffloadRouter

        client = _mock_client()
        client.run_batch_backtest.return_value = _response(
            ("sma-0", consistent_result()), ("sma-2", consistent_result()), ("sma-4", consistent_result())
        )
        backtester = FakeBacktester()
        router = OffloadRouter(backtester, CapitalSettings(), client)

        outcome = await router.run_batch(
            OffloadPlan(OffloadMode.DIRECT), make_bars(50), _runs(5), BacktestSettings(), compact=False
        )

        assert sorted(run.job_id for run, _ in outcome.results) == [0, 1, 2, 3, 4]
        assert outcome.fallback_reason == "missing_results"
        assert outcome.local_fallbacks == 2
        assert len(backtester.calls) == 2
        items = client.run_batch_backtest.await_args.args[1]
        assert [item.id for item in items] == ["sma-0", "sma-1", "sma-2", "sma-3", "sma-4"]

    @pytest.mark.asyncio
    async def test_inconsistent_result_rerun(self) -> None:
        """Inconsistent remote results are replaced by local ones."""
        from dataclasses import replace

        from strategy_finder.offload import OffloadMode, OffloadPlan, OffloadRouter

        bad = replace(consistent_result(), winning_trades=4)
        client = _mock_client()
        client.run_batch_backtest.return_value = _response(("sma-0", consistent_result()), ("sma-1", bad))
        router = OffloadRouter(FakeBacktester(), CapitalSettings(), client)

        outcome = await router.run_batch(
            OffloadPlan(OffloadMode.DIRECT), make_bars(50), _runs(2), BacktestSettings(), compact=False
        )

        results = {run.job_id: result for run, result in outcome.results}
        assert results[0] == consistent_result()
        assert results[1] != bad
        assert outcome.fallback_reason == "inconsistent_result"
        assert outcome.local_fallbacks == 1

    @pytest.mark.asyncio
    async def test_remote_error_runs_all_locally(self) -> None:
        """A failed request runs the whole batch locally."""
        from strategy_finder.offload import OffloadError, OffloadMode, OffloadPlan, OffloadRouter

        client = _mock_client()
        client.run_batch_backtest.side_effect = OffloadError("timeout")
        router = OffloadRouter(FakeBacktester(), CapitalSettings(), client)

        outcome = await router.run_batch(
            OffloadPlan(OffloadMode.DIRECT), make_bars(50), _runs(3), BacktestSettings(), compact=False
        )

        assert len(outcome.results) == 3
        assert outcome.fallback_reason == "remote_error"
        assert outcome.local_fallbacks == 3

    @pytest.mark.asyncio
    async def test_empty_response_runs_all_locally(self) -> None:
        """An empty result list runs the whole batch locally."""
        from strategy_finder.offload import OffloadMode, OffloadPlan, OffloadRouter

        client = _mock_client()
        client.run_batch_backtest.return_value = _response()
        router = OffloadRouter(FakeBacktester(), CapitalSettings(), client)

        outcome = await router.run_batch(
            OffloadPlan(OffloadMode.DIRECT), make_bars(50), _runs(2), BacktestSettings(), compact=False
        )

        assert len(outcome.results) == 2
        assert outcome.fallback_reason == "empty_response"

    @pytest.mark.asyncio
    async def test_unknown_and_duplicate_ids_ignored(self) -> None:
        """Unknown ids are dropped and duplicates count once."""
        from strategy_finder.offload import OffloadMode, OffloadPlan, OffloadRouter

        client = _mock_client()
        client.run_batch_backtest.return_value = _response(
            ("sma-0", consistent_result()),
            ("sma-0", consistent_result(net_profit=40.0)),
            ("other-7", consistent_result()),
        )
        router = OffloadRouter(FakeBacktester(), CapitalSettings(), client)

        outcome = await router.run_batch(
            OffloadPlan(OffloadMode.DIRECT), make_bars(50), _runs(1), BacktestSettings(), compact=False
        )

        assert len(outcome.results) == 1
        assert outcome.results[0][1].net_profit == 20.0
        assert outcome.fallback_reason is None

    @pytest.mark.asyncio
    async def test_cached_plan_uses_cache_id(self) -> None:
        """Cached plans send the cache id instead of bars."""
        from strategy_finder.offload import OffloadMode, OffloadPlan, OffloadRouter

        client = _mock_client()
        client.run_cached_batch_backtest.return_value = _response(("sma-0", consistent_result()))
        router = OffloadRouter(FakeBacktester(), CapitalSettings(), client)

        await router.run_batch(
            OffloadPlan(OffloadMode.CACHED, cache_id="cache-1"),
            make_bars(50),
            _runs(1),
            BacktestSettings(),
            compact=True,
        )

        assert client.run_cached_batch_backtest.await_args.args[0] == "cache-1"
        client.run_batch_backtest.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_local_failure_recorded(self) -> None:
        """A failing local backtest is reported, not raised."""
        from strategy_finder.offload import LOCAL_PLAN, OffloadRouter

        backtester = FakeBacktester(fail_when=lambda signals: True)
        router = OffloadRouter(backtester, CapitalSettings())

        outcome = await router.run_batch(LOCAL_PLAN, make_bars(50), _runs(2), BacktestSettings(), compact=False)

        assert outcome.results == []
        assert [run.job_id for run, _ in outcome.failures] == [0, 1]
        assert isinstance(outcome.failures[0][1], RuntimeError)
