"""Finder execution engine.

Usage:
    from strategy_finder.engine import FinderEngine, FinderRequest

    engine = FinderEngine(backtester)
    output = await engine.run(FinderRequest(symbol, interval, bars, strategies))
"""

from strategy_finder.engine.flags import DatasetFlags, compute_dataset_flags
from strategy_finder.engine.jobs import JobQueue, ParamJob, StrategyPlan
from strategy_finder.engine.progress import LoggingProgressSink, ProgressThrottle, YieldBudget
from strategy_finder.engine.runner import FinderEngine, FinderRequest, FinderRunOutput
from strategy_finder.engine.session import FinderBusyError, RunSession, RunState

__all__ = [
    # Engine
    "FinderEngine",
    "FinderRequest",
    "FinderRunOutput",
    "FinderBusyError",
    # Scheduling
    "DatasetFlags",
    "compute_dataset_flags",
    "JobQueue",
    "ParamJob",
    "StrategyPlan",
    "LoggingProgressSink",
    "ProgressThrottle",
    "YieldBudget",
    # Session
    "RunSession",
    "RunState",
]
