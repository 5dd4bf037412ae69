"""Tests for dataset tiers, progress throttling and cooperative yielding."""

from __future__ import annotations

import pytest

from strategy_finder.config import BacktestSettings, FinderOptions
from tests.fixtures.fakes import RecordingSink


class TestComputeDatasetFlags:
    """Tests for dataset size tiers."""

    @pytest.mark.parametrize(
        ("bar_count", "large", "very_large", "extreme", "batch_size"),
        [
            (10_000, False, False, False, 20),
            (499_999, False, False, False, 20),
            (500_000, True, False, False, 8),
            (2_000_000, True, True, False, 2),
            (4_000_000, True, True, True, 1),
        ],
    )
    def test_tiers(
        self, bar_count: int, large: bool, very_large: bool, extreme: bool, batch_size: int
    ) -> None:
        """Tier boundaries are inclusive and pick the batch size."""
        from strategy_finder.engine import compute_dataset_flags

        flags = compute_dataset_flags(bar_count, BacktestSettings(), FinderOptions())

        assert (flags.large, flags.very_large, flags.extreme) == (large, very_large, extreme)
        assert flags.batch_size == batch_size

    @pytest.mark.parametrize(
        ("settings", "options"),
        [
            (BacktestSettings(snapshot_filters={"snapshotAdxMin": 20.0}), FinderOptions()),
            (BacktestSettings(), FinderOptions(min_trades=1000)),
            (BacktestSettings(confirmation_strategies=["rsi_gate"]), FinderOptions()),
        ],
    )
    def test_heavy_configurations(self, settings: BacktestSettings, options: FinderOptions) -> None:
        """Heavy configurations use small batches and compact early."""
        from strategy_finder.engine import compute_dataset_flags

        flags = compute_dataset_flags(60_000, settings, options)

        assert flags.heavy is True
        assert flags.batch_size == 4
        assert flags.compact_threshold == 50_000
        assert flags.compact is True

    def test_trade_floor_ignored_when_filter_off(self) -> None:
        """A high min_trades only counts while the trade filter is on."""
        from strategy_finder.engine import compute_dataset_flags

        options = FinderOptions(trade_filter_enabled=False, min_trades=5000)

        assert compute_dataset_flags(100, BacktestSettings(), options).heavy is False

    def test_zero_snapshot_bounds_not_heavy(self) -> None:
        """Zero-valued snapshot bounds do not count as filters."""
        from strategy_finder.engine import compute_dataset_flags

        settings = BacktestSettings(snapshot_filters={"snapshotAdxMin": 0.0})

        assert compute_dataset_flags(100, settings, FinderOptions()).heavy is False

    def test_compact_threshold(self) -> None:
        """Light configurations switch to compact at 500k bars."""
        from strategy_finder.engine import compute_dataset_flags

        flags = compute_dataset_flags(100_000, BacktestSettings(), FinderOptions())

        assert flags.compact is False
        assert flags.uses_compact(500_000) is True
        assert flags.uses_compact(499_999) is False


class TestProgressThrottle:
    """Tests for rate-limited progress updates."""

    def test_updates_throttled(self) -> None:
        """Updates within 120ms of the last one are dropped."""
        from strategy_finder.engine import ProgressThrottle

        now = [0.0]
        sink = RecordingSink()
        throttle = ProgressThrottle(sink, clock=lambda: now[0])

        assert throttle.progress(10, "a") is True
        now[0] = 0.05
        assert throttle.progress(20, "b") is False
        now[0] = 0.13
        assert throttle.progress(30, "c") is True

        assert sink.progress == [(10, "a"), (30, "c")]

    def test_force_bypasses_interval(self) -> None:
        """Forced updates are always sent."""
        from strategy_finder.engine import ProgressThrottle

        sink = RecordingSink()
        throttle = ProgressThrottle(sink, clock=lambda: 0.0)

        throttle.progress(10, "a")
        assert throttle.progress(100, "done", force=True) is True
        assert sink.progress[-1] == (100, "done")

    def test_status_never_throttled(self) -> None:
        """Status lines always reach the sink."""
        from strategy_finder.engine import ProgressThrottle

        sink = RecordingSink()
        throttle = ProgressThrottle(sink, clock=lambda: 0.0)

        throttle.status("one")
        throttle.status("two")

        assert sink.statuses == ["one", "two"]


class TestYieldBudget:
    """Tests for cooperative yielding."""

    @pytest.mark.asyncio
    async def test_yields_after_budget(self) -> None:
        """The loop is only yielded to once the budget is spent."""
        from strategy_finder.engine import YieldBudget

        now = [0.0]
        budget = YieldBudget(clock=lambda: now[0])

        assert budget.budget == pytest.approx(0.028)
        now[0] = 0.01
        assert await budget.maybe_yield() is False
        now[0] = 0.03
        assert await budget.maybe_yield() is True
        now[0] = 0.04
        assert await budget.maybe_yield() is False
        assert budget.yields == 1

    @pytest.mark.asyncio
    async def test_heavy_budget_and_force(self) -> None:
        """Heavy runs get a shorter budget; force always yields."""
        from strategy_finder.engine import YieldBudget

        budget = YieldBudget(heavy=True, clock=lambda: 0.0)

        assert budget.budget == pytest.approx(0.016)
        assert await budget.maybe_yield(force=True) is True
        assert budget.yields == 1


class TestLoggingProgressSink:
    """Tests for the default sink."""

    def test_status_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """Status lines are logged at INFO."""
        import logging

        from strategy_finder.engine import LoggingProgressSink

        with caplog.at_level(logging.INFO, logger="strategy_finder.engine.progress"):
            LoggingProgressSink().set_status("Complete.")

        assert "Complete." in caplog.text
