"""Finder configuration.

Run options and capital settings are frozen dataclasses validated on
construction. Backtest settings and the YAML run-file schema are pydantic
models, so they can round-trip the remote engine's camelCase JSON and
report every invalid field at once.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal, Self

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from strategy_finder.types import StrategyParams

DEFAULT_ROBUST_SEED = 1337
MAX_TIMEFRAMES = 10
DEFAULT_ENGINE_URL = "http://127.0.0.1:3030"


class FinderMode(StrEnum):
    """Parameter-space exploration mode."""

    DEFAULT = "default"
    GRID = "grid"
    RANDOM = "random"
    ROBUST_RANDOM_WF = "robust_random_wf"


class FinderMetric(StrEnum):
    """Metrics available for ranking, as named on the wire."""

    OOS_DURABILITY_SCORE = "oosDurabilityScore"
    OOS_PROFIT_FACTOR = "oosProfitFactor"
    OOS_NET_PROFIT_PERCENT = "oosNetProfitPercent"
    NET_PROFIT = "netProfit"
    PROFIT_FACTOR = "profitFactor"
    SHARPE_RATIO = "sharpeRatio"
    NET_PROFIT_PERCENT = "netProfitPercent"
    WIN_RATE = "winRate"
    MAX_DRAWDOWN_PERCENT = "maxDrawdownPercent"
    EXPECTANCY = "expectancy"
    AVERAGE_GAIN = "averageGain"
    TOTAL_TRADES = "totalTrades"


DEFAULT_SORT_PRIORITY: tuple[FinderMetric, ...] = (
    FinderMetric.OOS_DURABILITY_SCORE,
    FinderMetric.OOS_PROFIT_FACTOR,
    FinderMetric.OOS_NET_PROFIT_PERCENT,
    FinderMetric.EXPECTANCY,
    FinderMetric.PROFIT_FACTOR,
    FinderMetric.TOTAL_TRADES,
    FinderMetric.MAX_DRAWDOWN_PERCENT,
    FinderMetric.SHARPE_RATIO,
    FinderMetric.AVERAGE_GAIN,
    FinderMetric.WIN_RATE,
    FinderMetric.NET_PROFIT_PERCENT,
    FinderMetric.NET_PROFIT,
)


@dataclass(frozen=True, slots=True)
class FinderOptions:
    """Options for one finder run.

    Attributes:
        mode: Exploration mode.
        sort_priority: Ranking metrics, most significant first.
        top_n: Number of results returned.
        steps: Grid points per numeric parameter (>= 2).
        range_percent: Search range around each default, in percent.
        max_runs: Upper bound on parameter sets per strategy.
        trade_filter_enabled: Drop results outside [min_trades, max_trades].
        min_trades: Minimum trade count when filtering.
        max_trades: Maximum trade count when filtering (may be inf).
        multi_timeframe_enabled: Evaluate each job on several intervals.
        timeframes: Requested intervals for multi-timeframe runs.
        robust_seed: Seed used by robust_random_wf mode.
        durability_enabled: Score out-of-sample durability per job.
        durability_holdout_percent: Share of bars held out, in percent.
        durability_min_oos_trades: Out-of-sample trades needed for full credit.
        durability_min_score: Minimum score for a durability pass.
        durability_require_pass: Drop results that fail the durability check.
    """

    mode: FinderMode = FinderMode.GRID
    sort_priority: tuple[FinderMetric, ...] = DEFAULT_SORT_PRIORITY
    top_n: int = 10
    steps: int = 3
    range_percent: float = 35.0
    max_runs: int = 120
    trade_filter_enabled: bool = True
    min_trades: int = 40
    max_trades: float = math.inf
    multi_timeframe_enabled: bool = False
    timeframes: tuple[str, ...] = ()
    robust_seed: int = DEFAULT_ROBUST_SEED
    durability_enabled: bool = False
    durability_holdout_percent: float = 30.0
    durability_min_oos_trades: int = 10
    durability_min_score: float = 55.0
    durability_require_pass: bool = False

    def __post_init__(self) -> None:
        """Validate option ranges."""
        if self.top_n < 1:
            msg = f"top_n must be >= 1, got {self.top_n}"
            raise ValueError(msg)
        if self.steps < 2:
            msg = f"steps must be >= 2, got {self.steps}"
            raise ValueError(msg)
        if self.max_runs < 1:
            msg = f"max_runs must be >= 1, got {self.max_runs}"
            raise ValueError(msg)
        if self.range_percent < 0:
            msg = f"range_percent must be >= 0, got {self.range_percent}"
            raise ValueError(msg)
        if self.min_trades < 0:
            msg = f"min_trades must be >= 0, got {self.min_trades}"
            raise ValueError(msg)
        if self.max_trades < self.min_trades:
            msg = f"max_trades ({self.max_trades}) must be >= min_trades ({self.min_trades})"
            raise ValueError(msg)
        if not self.sort_priority:
            msg = "sort_priority must not be empty"
            raise ValueError(msg)
        if self.durability_min_oos_trades < 0:
            msg = f"durability_min_oos_trades must be >= 0, got {self.durability_min_oos_trades}"
            raise ValueError(msg)


@dataclass(frozen=True, slots=True)
class CapitalSettings:
    """Account and sizing parameters passed to every backtest.

    Attributes:
        initial_capital: Starting equity.
        position_size_percent: Position size as percent of equity.
        commission_percent: Commission per fill, in percent.
        sizing_mode: 'percent' or 'fixed'.
        fixed_trade_amount: Trade notional in fixed sizing mode.
    """

    initial_capital: float = 10_000.0
    position_size_percent: float = 100.0
    commission_percent: float = 0.1
    sizing_mode: Literal["percent", "fixed"] = "percent"
    fixed_trade_amount: float = 1_000.0

    def __post_init__(self) -> None:
        """Validate capital settings."""
        if self.initial_capital < 0:
            msg = f"initial_capital must be >= 0, got {self.initial_capital}"
            raise ValueError(msg)
        if self.position_size_percent <= 0:
            msg = f"position_size_percent must be > 0, got {self.position_size_percent}"
            raise ValueError(msg)
        if self.commission_percent < 0:
            msg = f"commission_percent must be >= 0, got {self.commission_percent}"
            raise ValueError(msg)
        if self.sizing_mode not in ("percent", "fixed"):
            msg = f"sizing_mode must be 'percent' or 'fixed', got {self.sizing_mode!r}"
            raise ValueError(msg)

    def sizing_payload(self) -> dict[str, Any]:
        """Sizing block of the remote engine request."""
        return {"mode": self.sizing_mode, "fixedTradeAmount": self.fixed_trade_amount}


class _CoreSettings(BaseModel):
    """Risk and direction settings shared by local and remote execution."""

    model_config = ConfigDict(
        extra="forbid", frozen=True, populate_by_name=True, alias_generator=to_camel
    )

    risk_mode: Literal["simple", "advanced", "percentage"] = "simple"
    stop_loss_enabled: bool = False
    stop_loss_percent: float | None = None
    take_profit_enabled: bool = False
    take_profit_percent: float | None = None
    atr_period: int | None = None
    stop_loss_atr: float | None = None
    take_profit_atr: float | None = None
    trailing_atr: float | None = None
    time_stop_bars: int | None = None
    trade_direction: Literal["long", "short", "both", "combined"] = "long"
    entry_confirmation: str | None = None

    def with_risk_overrides(self, params: StrategyParams) -> Self:
        """Apply per-job stopLossPercent / takeProfitPercent overrides.

        Returns self when the params carry neither key.
        """
        update: dict[str, float] = {}
        if "stopLossPercent" in params:
            update["stop_loss_percent"] = params["stopLossPercent"]
        if "takeProfitPercent" in params:
            update["take_profit_percent"] = params["takeProfitPercent"]
        if not update:
            return self
        return self.model_copy(update=update)


class RemoteCapableSettings(_CoreSettings):
    """Backtest settings the remote engine understands.

    Built from BacktestSettings.to_remote(). Fields the remote engine cannot
    honour have no place here, so they cannot reach the wire.
    """

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class BacktestSettings(_CoreSettings):
    """Full backtest settings for the local backtester.

    Extends the remote-capable subset with realism and filtering features
    that only the local backtester implements.
    """

    trade_filter_mode: str | None = None
    confirmation_strategies: list[str] = Field(default_factory=list)
    confirmation_strategy_params: dict[str, StrategyParams] = Field(default_factory=dict)
    execution_model: str = "signal_close"
    allow_same_bar_exit: bool = True
    slippage_bps: float = 0.0
    market_mode: str | None = None
    strategy_timeframe_enabled: bool = False
    strategy_timeframe_minutes: int | None = None
    capture_snapshots: bool = False
    snapshot_filters: dict[str, float] = Field(default_factory=dict)

    @field_validator("snapshot_filters")
    @classmethod
    def validate_snapshot_filters(cls, v: dict[str, float]) -> dict[str, float]:
        """Snapshot filter keys are 'snapshot*Min' / 'snapshot*Max' bounds."""
        bad = [k for k in v if not k.startswith("snapshot") or not k.endswith(("Min", "Max"))]
        if bad:
            raise ValueError(f"Invalid snapshot filter keys: {', '.join(sorted(bad))}")
        return v

    @property
    def confirmation_mode(self) -> str:
        """Signal gating mode for confirmation strategies."""
        return self.trade_filter_mode or self.entry_confirmation or "none"

    def has_snapshot_filters(self) -> bool:
        """True if any snapshot filter has a finite non-zero bound."""
        return any(math.isfinite(v) and v != 0 for v in self.snapshot_filters.values())

    def remote_unsupported_features(self) -> list[str]:
        """Names of enabled features the remote engine cannot execute.

        Returns:
            Empty list when a run may be offloaded.
        """
        features: list[str] = []
        if self.execution_model != "signal_close":
            features.append("executionModel")
        if not self.allow_same_bar_exit:
            features.append("allowSameBarExit")
        if self.slippage_bps > 0:
            features.append("slippageBps")
        if self.strategy_timeframe_enabled:
            features.append("strategyTimeframeEnabled")
        if self.capture_snapshots:
            features.append("captureSnapshots")
        if self.has_snapshot_filters():
            features.append("snapshotFilters")
        return features

    def to_remote(self) -> RemoteCapableSettings:
        """Project onto the remote-capable subset."""
        fields = set(RemoteCapableSettings.model_fields)
        return RemoteCapableSettings.model_validate(self.model_dump(include=fields))


# --- YAML run file ---------------------------------------------------------


class FinderConfigError(Exception):
    """Error raised when a finder run file cannot be loaded.

    Attributes:
        file_path: Path of the offending file, if any.
        details: Per-field validation messages.
    """

    def __init__(
        self,
        message: str,
        file_path: Path | str | None = None,
        details: list[str] | None = None,
    ) -> None:
        self.file_path = file_path
        self.details = details or []

        parts = []
        if file_path:
            parts.append(f"File: {file_path}")
        parts.append(message)
        if details:
            parts.extend(f"  - {d}" for d in details)

        super().__init__("\n".join(parts))


class OptionsSection(BaseModel):
    """'options' block of a run file.

    Simple sort (use_advanced_sort false) ranks by `sort`, then
    `sort_secondary`, then netProfit as a tie breaker. Advanced sort uses
    `sort_priority` verbatim, falling back to the default priority.
    """

    model_config = ConfigDict(extra="forbid")

    mode: FinderMode = FinderMode.GRID
    use_advanced_sort: bool = False
    sort: FinderMetric = FinderMetric.NET_PROFIT
    sort_secondary: FinderMetric | None = None
    sort_priority: list[FinderMetric] = Field(default_factory=list)
    top_n: int = 10
    steps: int = 3
    range_percent: float = 35.0
    max_runs: int = 120
    trade_filter_enabled: bool = True
    min_trades: int = 40
    max_trades: float | None = None
    multi_timeframe_enabled: bool = False
    timeframes: list[str] = Field(default_factory=list)
    robust_seed: int = DEFAULT_ROBUST_SEED
    durability_enabled: bool = False
    durability_holdout_percent: float = 30.0
    durability_min_oos_trades: int = 10
    durability_min_score: float = 55.0
    durability_require_pass: bool = False

    def resolved_sort_priority(self) -> tuple[FinderMetric, ...]:
        if self.use_advanced_sort:
            return tuple(self.sort_priority) or DEFAULT_SORT_PRIORITY
        priority = [self.sort]
        if self.sort_secondary is not None and self.sort_secondary != self.sort:
            priority.append(self.sort_secondary)
        if FinderMetric.NET_PROFIT not in priority:
            priority.append(FinderMetric.NET_PROFIT)
        return tuple(priority)

    def to_options(self) -> FinderOptions:
        """Clamp user input into a valid FinderOptions."""
        top_n = max(1, round(self.top_n))
        steps = max(2, round(self.steps))
        max_runs = max(1, round(self.max_runs))
        if self.trade_filter_enabled:
            min_trades = max(0, round(self.min_trades))
            raw_max = math.inf if self.max_trades is None else max(0.0, self.max_trades)
            max_trades = max(float(min_trades), raw_max)
        else:
            min_trades = 0
            max_trades = math.inf
        timeframes = tuple(self.timeframes) if self.multi_timeframe_enabled else ()
        return FinderOptions(
            mode=self.mode,
            sort_priority=self.resolved_sort_priority(),
            top_n=top_n,
            steps=steps,
            range_percent=max(0.0, self.range_percent),
            max_runs=max_runs,
            trade_filter_enabled=self.trade_filter_enabled,
            min_trades=min_trades,
            max_trades=max_trades,
            multi_timeframe_enabled=self.multi_timeframe_enabled,
            timeframes=timeframes,
            robust_seed=self.robust_seed,
            durability_enabled=self.durability_enabled,
            durability_holdout_percent=self.durability_holdout_percent,
            durability_min_oos_trades=max(0, self.durability_min_oos_trades),
            durability_min_score=self.durability_min_score,
            durability_require_pass=self.durability_require_pass,
        )


class CapitalSection(BaseModel):
    """'capital' block of a run file."""

    model_config = ConfigDict(extra="forbid")

    initial_capital: float = Field(default=10_000.0, ge=0)
    position_size_percent: float = Field(default=100.0, gt=0)
    commission_percent: float = Field(default=0.1, ge=0)
    sizing_mode: Literal["percent", "fixed"] = "percent"
    fixed_trade_amount: float = Field(default=1_000.0, ge=0)

    def to_capital(self) -> CapitalSettings:
        return CapitalSettings(**self.model_dump())


class OffloadSection(BaseModel):
    """'offload' block of a run file."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    base_url: str = DEFAULT_ENGINE_URL
    timeout_seconds: float = Field(default=60.0, gt=0)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got {v!r}")
        return v.rstrip("/")


class FinderConfig(BaseModel):
    """Finder run file.

    Example:
        symbol: BTCUSDT
        interval: 1h
        strategies:
          - my_package.strategies:sma_cross
        backtester: my_package.backtest:Backtester
        options:
          mode: grid
          max_runs: 200
    """

    model_config = ConfigDict(extra="forbid")

    symbol: str
    interval: str
    strategies: list[str] = Field(default_factory=list)
    backtester: str | None = None
    options: OptionsSection = Field(default_factory=OptionsSection)
    capital: CapitalSection = Field(default_factory=CapitalSection)
    settings: BacktestSettings = Field(default_factory=BacktestSettings)
    offload: OffloadSection = Field(default_factory=OffloadSection)

    @field_validator("strategies")
    @classmethod
    def validate_strategy_refs(cls, v: list[str]) -> list[str]:
        """Strategy references use 'module:attribute' form."""
        for ref in v:
            module, _, attr = ref.partition(":")
            if not module or not attr:
                raise ValueError(f"Strategy reference must be 'module:attr', got {ref!r}")
        return v


def _format_pydantic_errors(error: ValidationError) -> list[str]:
    messages = []
    for err in error.errors():
        loc = ".".join(str(x) for x in err["loc"])
        messages.append(f"{loc}: {err['msg']}")
    return messages


def parse_finder_config(
    yaml_content: str, file_path: Path | str | None = None
) -> FinderConfig:
    """Parse and validate a run file from a YAML string.

    Args:
        yaml_content: YAML document.
        file_path: Optional path used in error messages.

    Returns:
        Validated FinderConfig.

    Raises:
        FinderConfigError: If the YAML is malformed or fails validation.
    """
    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise FinderConfigError(f"Invalid YAML syntax: {e}", file_path=file_path) from e

    if data is None:
        raise FinderConfigError("Empty YAML document", file_path=file_path)
    if not isinstance(data, dict):
        raise FinderConfigError(
            f"Expected YAML mapping (dict), got {type(data).__name__}", file_path=file_path
        )

    try:
        return FinderConfig.model_validate(data)
    except ValidationError as e:
        raise FinderConfigError(
            "Finder config validation failed",
            file_path=file_path,
            details=_format_pydantic_errors(e),
        ) from e


def load_finder_config(path: Path | str) -> FinderConfig:
    """Load a run file from disk.

    Raises:
        FileNotFoundError: If the file does not exist.
        FinderConfigError: If parsing or validation fails.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Finder config not found: {config_path}")
    return parse_finder_config(config_path.read_text(encoding="utf-8"), file_path=config_path)


__all__ = [
    "DEFAULT_ENGINE_URL",
    "DEFAULT_ROBUST_SEED",
    "DEFAULT_SORT_PRIORITY",
    "MAX_TIMEFRAMES",
    "BacktestSettings",
    "CapitalSettings",
    "FinderConfig",
    "FinderConfigError",
    "FinderMetric",
    "FinderMode",
    "FinderOptions",
    "OffloadSection",
    "OptionsSection",
    "RemoteCapableSettings",
    "load_finder_config",
    "parse_finder_config",
]
