"""Parameter-space sampling for the strategy finder.

Turns a strategy's default parameters into a bounded list of candidate
parameter sets. Grid mode walks evenly spaced values around each default;
random modes draw uniformly within the same bounds. Every emitted set is
normalized (integers stay integers, percents stay in range) and passes
semantic validation.
"""

from __future__ import annotations

import logging
import math
import random
import re
from collections.abc import Callable, Iterable, Mapping
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from strategy_finder.config import FinderMode, FinderOptions
from strategy_finder.search.seeded import SeededRandom

if TYPE_CHECKING:
    from strategy_finder.types import ConfirmationFilter, StrategyParams

logger = logging.getLogger(__name__)

RandomFn = Callable[[], float]

_TOGGLE_RE = re.compile(r"^use[A-Z]")
_RSI_THRESHOLD_RE = re.compile(r"(rsi(bullish|bearish|overbought|oversold)|overbought|oversold)", re.I)
_RSI_RE = re.compile(r"rsi", re.I)
_ITERATION_RE = re.compile(r"(iteration|iterations|interval)", re.I)
_ALPHA_RE = re.compile(r"alpha", re.I)
_PERIOD_RE = re.compile(r"(period|lookback|bars|bins|length)", re.I)
_PERCENT_RE = re.compile(r"(percent|pct)", re.I)
_NON_NEGATIVE_RE = re.compile(r"(std|dev|factor|multiplier|atr|adx)", re.I)
_SCALE_RE = re.compile(r"(multiplier|factor)", re.I)
_Z_SCORE_RE = re.compile(r"z(entry|exit)", re.I)
_MIN_ONE_RE = re.compile(r"(iteration|iterations|interval|alpha)", re.I)

# Hard bounds for keys with a fixed valid domain
_FIXED_BOUNDS: dict[str, tuple[float, float]] = {
    "stopLossPercent": (0.0, 15.0),
    "takeProfitPercent": (0.0, 100.0),
    "targetPct": (0.0, 2.0),
}
_TWO_DECIMAL_KEYS = frozenset(_FIXED_BOUNDS)


def _round_half_up(value: float) -> float:
    """Round to the nearest integer, ties toward +inf."""
    return float(math.floor(value + 0.5))


def _to_fixed(value: float, digits: int) -> float:
    """Round to a fixed number of decimals, ties away from zero."""
    if not math.isfinite(value):
        return value
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP))


def _is_integer(value: float) -> bool:
    return math.isfinite(value) and float(value).is_integer()


def is_toggle_param(key: str, value: float) -> bool:
    """True for on/off parameters: 'use' + capital letter, valued 0 or 1."""
    return bool(_TOGGLE_RE.match(key)) and value in (0, 1)


def normalize_param_value(key: str, value: float, default_value: float) -> float:
    """Snap a raw value onto the valid domain of its parameter.

    Rules are keyed on naming conventions: period-like keys become positive
    integers, percent-like keys are clamped to [0, 100], scale factors stay
    positive, and the result keeps the integer/decimal shape of the default.

    Args:
        key: Parameter name.
        value: Raw candidate value.
        default_value: The strategy's default for this key.

    Returns:
        Normalized value.
    """
    is_rsi_threshold = bool(_RSI_THRESHOLD_RE.search(key))
    is_rsi_period = bool(_RSI_RE.search(key)) and not is_rsi_threshold
    period_like = (
        bool(_PERIOD_RE.search(key))
        or is_rsi_period
        or bool(_ITERATION_RE.search(key))
        or bool(_ALPHA_RE.search(key))
    )
    percent_like = bool(_PERCENT_RE.search(key)) or is_rsi_threshold
    non_negative = bool(_NON_NEGATIVE_RE.search(key))

    nxt = float(value)
    if key == "warmupBars":
        nxt = max(0.0, _round_half_up(nxt))
    elif key == "clusterChoice":
        nxt = min(2.0, max(0.0, _round_half_up(nxt)))
    elif period_like:
        nxt = max(1.0, _round_half_up(nxt))
    elif key in _FIXED_BOUNDS:
        low, high = _FIXED_BOUNDS[key]
        nxt = min(high, max(low, _to_fixed(nxt, 2)))
    elif percent_like:
        nxt = min(100.0, max(0.0, nxt))
    elif non_negative:
        nxt = max(0.0, nxt)

    if _SCALE_RE.search(key) and default_value > 0:
        nxt = max(0.1, nxt)
    if _Z_SCORE_RE.search(key):
        nxt = max(0.0, nxt)
    if key == "bufferAtr":
        nxt = max(0.0, nxt)

    if not period_like and _is_integer(default_value) and not percent_like and key not in _TWO_DECIMAL_KEYS:
        nxt = _round_half_up(nxt)
    elif key in _TWO_DECIMAL_KEYS:
        nxt = _to_fixed(nxt, 2)
    elif not _is_integer(default_value):
        nxt = _to_fixed(nxt, 4)

    return nxt


def normalize_params(params: Mapping[str, float]) -> StrategyParams:
    """Normalize every value against itself as default."""
    return {key: normalize_param_value(key, value, value) for key, value in params.items()}


def validate_params(params: Mapping[str, float]) -> bool:
    """Check cross-parameter ordering constraints.

    Only constraints whose keys are all present are enforced.

    Returns:
        False if the combination is semantically invalid.
    """

    def both(a: str, b: str) -> bool:
        return a in params and b in params

    if both("fastPeriod", "slowPeriod") and params["fastPeriod"] >= params["slowPeriod"]:
        return False
    if both("fastPeriod", "mediumPeriod") and params["fastPeriod"] >= params["mediumPeriod"]:
        return False
    if both("mediumPeriod", "slowPeriod") and params["mediumPeriod"] >= params["slowPeriod"]:
        return False
    if both("oversold", "overbought") and params["oversold"] >= params["overbought"]:
        return False
    if both("rsiOversold", "rsiOverbought") and params["rsiOversold"] >= params["rsiOverbought"]:
        return False
    if both("kPeriod", "dPeriod") and params["kPeriod"] < params["dPeriod"]:
        return False
    if both("macdFast", "macdSlow") and params["macdFast"] >= params["macdSlow"]:
        return False
    if both("minFactor", "maxFactor") and params["minFactor"] > params["maxFactor"]:
        return False
    if "factorStep" in params and params["factorStep"] <= 0:
        return False
    for key in ("kMeansIterations", "kMeansInterval", "perfAlpha"):
        if key in params and params[key] <= 0:
            return False
    if "clusterChoice" in params and not 0 <= params["clusterChoice"] <= 2:
        return False
    if both("zEntry", "zExit") and params["zExit"] >= params["zEntry"]:
        return False
    if both("entryExposurePct", "exitExposurePct") and params["exitExposurePct"] >= params["entryExposurePct"]:
        return False
    return True


def _format_value(value: float) -> str:
    if _is_integer(value):
        return str(int(value))
    return repr(value)


def serialize_params(params: Mapping[str, float]) -> str:
    """Order-independent identity key for a parameter set."""
    return "|".join(f"{key}:{_format_value(params[key])}" for key in sorted(params))


def _numeric_bounds(key: str, base_value: float, range_percent: float) -> tuple[float, float]:
    """Search interval [min, max] around a default value."""
    ratio = max(0.0, range_percent) / 100
    raw_range = abs(base_value) * ratio
    span = raw_range if raw_range > 0 else (1.0 if ratio > 0 else 0.0)
    low = base_value - span
    high = base_value + span
    if key in _FIXED_BOUNDS:
        fixed_low, fixed_high = _FIXED_BOUNDS[key]
        if key == "targetPct":
            return fixed_low, fixed_high
        return max(fixed_low, low), min(fixed_high, high)
    return low, high


def _grid_values(key: str, base_value: float, options: FinderOptions) -> list[float]:
    """Sorted, deduplicated grid values for one parameter (default included)."""
    if is_toggle_param(key, base_value):
        return [0.0, 1.0]

    low, high = _numeric_bounds(key, base_value, options.range_percent)
    if key == "clusterChoice":
        low, high = 0.0, 2.0
    elif _MIN_ONE_RE.search(key):
        low = max(1.0, low)
    elif key == "warmupBars":
        low = max(0.0, low)

    steps = max(2, options.steps)
    step_size = (high - low) / (steps - 1)
    values = {normalize_param_value(key, low + step_size * i, base_value) for i in range(steps)}
    values.add(normalize_param_value(key, base_value, base_value))
    return sorted(values)


def _random_params(
    toggle_keys: list[str],
    numeric_ranges: list[tuple[str, float, float, float]],
    rand: RandomFn,
) -> StrategyParams:
    params: StrategyParams = {}
    for key in toggle_keys:
        params[key] = 0.0 if rand() < 0.5 else 1.0
    for key, base_value, low, high in numeric_ranges:
        raw = low + rand() * (high - low)
        params[key] = normalize_param_value(key, raw, base_value)
    return params


def _split_keys(
    default_params: Mapping[str, float], options: FinderOptions
) -> tuple[list[str], list[tuple[str, float, float, float]]]:
    toggle_keys: list[str] = []
    numeric_ranges: list[tuple[str, float, float, float]] = []
    for key, base_value in default_params.items():
        if is_toggle_param(key, base_value):
            toggle_keys.append(key)
        else:
            low, high = _numeric_bounds(key, base_value, options.range_percent)
            numeric_ranges.append((key, base_value, low, high))
    return toggle_keys, numeric_ranges


class _ComboCollector:
    """Accumulates unique, valid parameter sets up to a cap."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.combos: list[StrategyParams] = []
        self._seen: set[str] = set()

    @property
    def full(self) -> bool:
        return len(self.combos) >= self.limit

    def add(self, params: Mapping[str, float]) -> bool:
        if self.full or not validate_params(params):
            return False
        key = serialize_params(params)
        if key in self._seen:
            return False
        self._seen.add(key)
        self.combos.append(dict(params))
        return True


class ParamSpaceSampler:
    """Generates candidate parameter sets for a strategy.

    Output invariants: never empty, at most ``options.max_runs`` entries,
    normalized default set first when it is valid, every entry valid
    (except the lone-default fallback when nothing else is).

    Args:
        rng_factory: Builds the non-seeded random source for grid and
            random modes. Defaults to ``random.random``.
    """

    def __init__(self, rng_factory: Callable[[], RandomFn] | None = None) -> None:
        self._rng_factory = rng_factory or (lambda: random.random)

    def resolve_random(self, options: FinderOptions) -> RandomFn:
        """Random source for a run: seeded only in robust_random_wf mode."""
        if options.mode is FinderMode.ROBUST_RANDOM_WF:
            return SeededRandom(options.robust_seed).random
        return self._rng_factory()

    def generate(
        self,
        default_params: Mapping[str, float],
        options: FinderOptions,
        rng: RandomFn | None = None,
    ) -> list[StrategyParams]:
        """Build the candidate list for one strategy.

        Args:
            default_params: Strategy defaults; keys and order define the space.
            options: Run options (mode, steps, range_percent, max_runs).
            rng: Random source override. Defaults to resolve_random(options).

        Returns:
            Between 1 and max_runs parameter sets.
        """
        default_set = normalize_params(default_params)
        if not default_params or options.mode is FinderMode.DEFAULT:
            return [default_set]

        keys = list(default_params)
        rand = rng or self.resolve_random(options)
        collector = _ComboCollector(options.max_runs)
        collector.add(default_set)

        if options.mode is FinderMode.GRID:
            values_by_key = [_grid_values(key, default_params[key], options) for key in keys]
            total = math.prod(len(values) for values in values_by_key)
            if total <= options.max_runs:
                self._walk_grid(keys, values_by_key, 0, {}, collector)
            else:
                logger.debug(
                    "Grid of %d combinations exceeds max_runs=%d, sampling", total, options.max_runs
                )
                self._sample_grid(keys, values_by_key, collector, rand)
        else:
            toggle_keys, numeric_ranges = _split_keys(default_params, options)
            attempts = 0
            max_attempts = options.max_runs * 10
            while not collector.full and attempts < max_attempts:
                collector.add(_random_params(toggle_keys, numeric_ranges, rand))
                attempts += 1

        if not collector.combos:
            logger.warning("No valid parameter combination found, using defaults")
            return [default_set]
        return collector.combos

    def _walk_grid(
        self,
        keys: list[str],
        values_by_key: list[list[float]],
        index: int,
        current: StrategyParams,
        collector: _ComboCollector,
    ) -> None:
        """Depth-first cartesian product, stopping once the collector is full."""
        if collector.full:
            return
        if index >= len(keys):
            collector.add(current)
            return
        key = keys[index]
        for value in values_by_key[index]:
            current[key] = value
            self._walk_grid(keys, values_by_key, index + 1, current, collector)
            if collector.full:
                break

    def _sample_grid(
        self,
        keys: list[str],
        values_by_key: list[list[float]],
        collector: _ComboCollector,
        rand: RandomFn,
    ) -> None:
        attempts = 0
        max_attempts = collector.limit * 10
        while not collector.full and attempts < max_attempts:
            params: StrategyParams = {}
            for key, values in zip(keys, values_by_key, strict=True):
                params[key] = values[math.floor(rand() * len(values))]
            collector.add(params)
            attempts += 1


def random_params_for(
    default_params: Mapping[str, float], options: FinderOptions, rand: RandomFn
) -> StrategyParams:
    """Draw one valid random parameter set, falling back to the defaults.

    Tries ``max(10, 5 * len(default_params))`` draws before giving up.
    """
    if not default_params:
        return {}
    toggle_keys, numeric_ranges = _split_keys(default_params, options)
    max_attempts = max(10, len(default_params) * 5)
    for _ in range(max_attempts):
        params = _random_params(toggle_keys, numeric_ranges, rand)
        if validate_params(params):
            return params
    return normalize_params(default_params)


def build_random_confirmation_params(
    strategy_keys: Iterable[str],
    confirmations: ConfirmationFilter,
    options: FinderOptions,
    rand: RandomFn,
) -> dict[str, StrategyParams]:
    """Random parameter sets for each known confirmation strategy.

    Unknown strategy keys are skipped.
    """
    params_by_key: dict[str, StrategyParams] = {}
    for key in strategy_keys:
        defaults = confirmations.default_params(key)
        if defaults is None:
            logger.debug("Unknown confirmation strategy %s, skipping", key)
            continue
        params_by_key[key] = random_params_for(defaults, options, rand)
    return params_by_key


__all__ = [
    "ParamSpaceSampler",
    "build_random_confirmation_params",
    "is_toggle_param",
    "normalize_param_value",
    "normalize_params",
    "random_params_for",
    "serialize_params",
    "validate_params",
]
