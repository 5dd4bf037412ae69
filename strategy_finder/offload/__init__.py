"""Remote backtest engine offload.

The client speaks the engine's JSON API; the router decides per run whether
batches go remote and falls back to the local backtester per run.
"""

from strategy_finder.offload.client import (
    BatchEntry,
    BatchItem,
    BatchResponse,
    OffloadError,
    RemoteEngineClient,
)
from strategy_finder.offload.router import (
    LOCAL_PLAN,
    BatchOutcome,
    OffloadMode,
    OffloadPlan,
    OffloadRouter,
    PreparedRun,
    is_backtest_result_consistent,
)

__all__ = [
    # Client
    "BatchEntry",
    "BatchItem",
    "BatchResponse",
    "OffloadError",
    "RemoteEngineClient",
    # Routing
    "LOCAL_PLAN",
    "BatchOutcome",
    "OffloadMode",
    "OffloadPlan",
    "OffloadRouter",
    "PreparedRun",
    "is_backtest_result_consistent",
]
