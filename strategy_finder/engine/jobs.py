"""Per-strategy search plans and the lazy job queue over them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from strategy_finder.config import BacktestSettings, FinderOptions
    from strategy_finder.search.param_space import ParamSpaceSampler
    from strategy_finder.types import SelectedStrategy, Strategy, StrategyParams

logger = logging.getLogger(__name__)

DEFAULT_STOP_LOSS_PERCENT = 5.0
DEFAULT_TAKE_PROFIT_PERCENT = 10.0


@dataclass(frozen=True, slots=True)
class StrategyPlan:
    """Candidate parameter sets for one strategy."""

    key: str
    name: str
    strategy: Strategy
    param_sets: list[StrategyParams]


@dataclass(frozen=True, slots=True)
class ParamJob:
    """One parameter set to evaluate.

    Attributes:
        id: Run-wide sequential id.
        key: Strategy key.
        name: Strategy display name.
        strategy: Strategy instance.
        params: Parameter set.
        settings: Backtest settings with the job's risk overrides applied.
    """

    id: int
    key: str
    name: str
    strategy: Strategy
    params: StrategyParams
    settings: BacktestSettings


def extended_defaults(defaults: StrategyParams, settings: BacktestSettings) -> StrategyParams:
    """Strategy defaults plus searchable stop-loss / take-profit percents.

    Only in percentage risk mode, and only for the enabled exits.
    """
    extended = dict(defaults)
    if settings.risk_mode == "percentage":
        if settings.stop_loss_enabled:
            extended["stopLossPercent"] = (
                settings.stop_loss_percent
                if settings.stop_loss_percent is not None
                else DEFAULT_STOP_LOSS_PERCENT
            )
        if settings.take_profit_enabled:
            extended["takeProfitPercent"] = (
                settings.take_profit_percent
                if settings.take_profit_percent is not None
                else DEFAULT_TAKE_PROFIT_PERCENT
            )
    return extended


def build_strategy_plans(
    strategies: Sequence[SelectedStrategy],
    settings: BacktestSettings,
    options: FinderOptions,
    sampler: ParamSpaceSampler,
) -> list[StrategyPlan]:
    """Generate the parameter sets of every selected strategy.

    Each strategy draws from its own random source, so a seeded search
    gives a strategy the same candidates regardless of what else is
    selected. Strategies that yield no parameter sets are left out.
    """
    plans: list[StrategyPlan] = []
    for selection in strategies:
        defaults = extended_defaults(dict(selection.strategy.default_params), settings)
        param_sets = sampler.generate(defaults, options)
        if not param_sets:
            continue
        logger.debug("Strategy %s: %d parameter sets", selection.key, len(param_sets))
        plans.append(StrategyPlan(selection.key, selection.name, selection.strategy, param_sets))
    return plans


class JobQueue:
    """Hands out jobs across all plans in order, a batch at a time.

    Jobs are materialized on demand so the run never holds more than one
    batch of them.
    """

    def __init__(self, plans: Sequence[StrategyPlan], settings: BacktestSettings) -> None:
        self.plans = list(plans)
        self.settings = settings
        self.total_runs = sum(len(plan.param_sets) for plan in self.plans)
        self._plan_index = 0
        self._param_index = 0
        self._next_id = 0

    @property
    def exhausted(self) -> bool:
        return self._next_id >= self.total_runs

    def next_batch(self, batch_size: int) -> list[ParamJob]:
        """Up to batch_size next jobs; empty once every plan is consumed."""
        batch: list[ParamJob] = []
        while len(batch) < batch_size and self._plan_index < len(self.plans):
            plan = self.plans[self._plan_index]
            if self._param_index >= len(plan.param_sets):
                self._plan_index += 1
                self._param_index = 0
                continue

            params = plan.param_sets[self._param_index]
            self._param_index += 1
            batch.append(
                ParamJob(
                    id=self._next_id,
                    key=plan.key,
                    name=plan.name,
                    strategy=plan.strategy,
                    params=params,
                    settings=self.settings.with_risk_overrides(params),
                )
            )
            self._next_id += 1
        return batch


__all__ = [
    "JobQueue",
    "ParamJob",
    "StrategyPlan",
    "build_strategy_plans",
    "extended_defaults",
]
