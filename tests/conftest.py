"""Pytest fixtures for strategy-finder tests."""

from __future__ import annotations

import pytest

from strategy_finder.config import BacktestSettings, CapitalSettings, FinderOptions
from strategy_finder.types import Bar, SelectedStrategy
from tests.fixtures.fakes import (
    FakeBacktester,
    RecordingSink,
    SmaCrossStrategy,
    make_bars,
)


@pytest.fixture
def bars() -> list[Bar]:
    """300 one-minute bars."""
    return make_bars(300)


@pytest.fixture
def backtester() -> FakeBacktester:
    """Deterministic local backtester."""
    return FakeBacktester()


@pytest.fixture
def sink() -> RecordingSink:
    """Progress sink recording every update."""
    return RecordingSink()


@pytest.fixture
def capital() -> CapitalSettings:
    """Default capital settings."""
    return CapitalSettings()


@pytest.fixture
def settings() -> BacktestSettings:
    """Default backtest settings."""
    return BacktestSettings()


@pytest.fixture
def unfiltered_options() -> FinderOptions:
    """Grid options with the trade-count filter off."""
    return FinderOptions(trade_filter_enabled=False, min_trades=0)


@pytest.fixture
def sma_strategy() -> SelectedStrategy:
    """SMA cross strategy selection."""
    return SelectedStrategy(key="sma_cross", name="SMA Cross", strategy=SmaCrossStrategy())
