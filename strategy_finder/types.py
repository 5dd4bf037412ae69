"""Core data types and collaborator protocols for the finder.

The finder never simulates trades or computes indicators itself. Strategies,
backtesters, data sources and progress sinks are consumed through the
protocols below.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from strategy_finder.config import BacktestSettings, CapitalSettings
    from strategy_finder.metrics import BacktestResult
    from strategy_finder.overfitting.durability import DurabilityMetrics

# Strategy parameter set: insertion-ordered, strategy-defined keys.
StrategyParams = dict[str, float]


@dataclass(frozen=True, slots=True)
class Bar:
    """OHLCV bar.

    Attributes:
        time: Bar open timestamp (unix seconds).
        open: Open price.
        high: High price.
        low: Low price.
        close: Close price.
        volume: Traded volume.
    """

    time: float
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "time": self.time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass(frozen=True, slots=True)
class Signal:
    """Trade signal emitted by a strategy.

    Attributes:
        time: Timestamp of the signal bar.
        type: 'buy' or 'sell'.
        price: Reference price.
        bar_index: Index of the signal bar in the series it was computed on.
    """

    time: float
    type: str
    price: float
    bar_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"time": self.time, "type": self.type, "price": self.price}
        if self.bar_index is not None:
            d["barIndex"] = self.bar_index
        return d


@dataclass(frozen=True, slots=True)
class StrategyMetadata:
    """Descriptive strategy traits used by the engine.

    Attributes:
        role: 'entry' for entry-only strategies, otherwise None.
        direction: Preferred trade direction, if any.
    """

    role: str | None = None
    direction: str | None = None


@dataclass(frozen=True, slots=True)
class StrategyEvaluation:
    """Optional evaluation output of a strategy.

    Attributes:
        entry_stats: Entry-quality statistics for entry-role strategies.
    """

    entry_stats: Mapping[str, Any] | None = None


@runtime_checkable
class Strategy(Protocol):
    """Signal generator with tunable numeric parameters."""

    default_params: StrategyParams
    metadata: StrategyMetadata

    def execute(self, bars: Sequence[Bar], params: StrategyParams) -> list[Signal]:
        """Generate signals for the bars with the given parameters."""
        ...

    def evaluate(
        self, bars: Sequence[Bar], params: StrategyParams, signals: Sequence[Signal]
    ) -> StrategyEvaluation | None:
        """Optional post-signal evaluation. Return None when not applicable."""
        ...


@runtime_checkable
class Backtester(Protocol):
    """P&L simulator. Implementations may be slow; the engine isolates failures."""

    def run(
        self,
        bars: Sequence[Bar],
        signals: Sequence[Signal],
        capital: CapitalSettings,
        settings: BacktestSettings,
    ) -> BacktestResult:
        """Full backtest with trades and equity curve."""
        ...

    def run_compact(
        self,
        bars: Sequence[Bar],
        signals: Sequence[Signal],
        capital: CapitalSettings,
        settings: BacktestSettings,
    ) -> BacktestResult:
        """Memory-light backtest. May omit trades and the equity curve."""
        ...

    def build_entry_result(self, entry_stats: Mapping[str, Any]) -> BacktestResult:
        """Convert entry-role statistics into a result the ranker can compare."""
        ...


@runtime_checkable
class DataSource(Protocol):
    """Async bar provider keyed by symbol and interval."""

    async def fetch_data(self, symbol: str, interval: str) -> list[Bar]:
        """Fetch bars. May raise; the caller skips failed intervals."""
        ...


@runtime_checkable
class ProgressSink(Protocol):
    """Receives progress updates. Calls must be cheap and non-blocking."""

    def set_progress(self, percent: float, text: str) -> None: ...

    def set_status(self, text: str) -> None: ...


@runtime_checkable
class ConfirmationFilter(Protocol):
    """Gates strategy signals with confirmation strategies."""

    def default_params(self, strategy_key: str) -> StrategyParams | None:
        """Default parameters of a confirmation strategy, or None if unknown."""
        ...

    def build_states(
        self,
        bars: Sequence[Bar],
        strategy_keys: Sequence[str],
        params: Mapping[str, StrategyParams],
    ) -> list[Any]:
        """Precompute per-bar confirmation states for each strategy."""
        ...

    def filter_signals(
        self,
        bars: Sequence[Bar],
        signals: Sequence[Signal],
        states: Sequence[Any],
        mode: str,
        direction: str | None,
    ) -> list[Signal]:
        """Drop signals not confirmed by the states.

        A direction of None filters both sides.
        """
        ...


@dataclass(frozen=True, slots=True)
class SelectedStrategy:
    """Strategy chosen for a finder run."""

    key: str
    name: str
    strategy: Strategy


@dataclass(slots=True)
class FinderResult:
    """Ranked outcome of one parameter set.

    Attributes:
        key: Strategy key.
        name: Strategy display name.
        params: Parameter set that produced the result.
        result: Raw backtest result.
        selection_result: Result after endpoint-bias correction, used for ranking.
        endpoint_adjusted: Whether trades were removed by endpoint correction.
        endpoint_removed_trades: Number of removed trades.
        timeframes: Interval labels for multi-timeframe aggregates.
        confirmation_params: Confirmation strategy parameters used, if any.
        robust_metrics: Out-of-sample durability metrics, if evaluated.
    """

    key: str
    name: str
    params: StrategyParams
    result: BacktestResult
    selection_result: BacktestResult
    endpoint_adjusted: bool = False
    endpoint_removed_trades: int = 0
    timeframes: list[str] | None = None
    confirmation_params: dict[str, StrategyParams] | None = None
    robust_metrics: DurabilityMetrics | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "params": dict(self.params),
            "timeframes": self.timeframes,
            "result": self.result.to_dict(),
            "selectionResult": self.selection_result.to_dict(),
            "endpointAdjusted": self.endpoint_adjusted,
            "endpointRemovedTrades": self.endpoint_removed_trades,
            "confirmationParams": self.confirmation_params,
            "robustMetrics": self.robust_metrics.to_dict() if self.robust_metrics else None,
        }


__all__ = [
    "Backtester",
    "Bar",
    "ConfirmationFilter",
    "DataSource",
    "FinderResult",
    "ProgressSink",
    "SelectedStrategy",
    "Signal",
    "Strategy",
    "StrategyEvaluation",
    "StrategyMetadata",
    "StrategyParams",
]
