"""Overfitting guards for finder results.

Endpoint-bias correction removes trades closed on the last bar, which are
typically forced liquidations. Durability scoring re-runs a candidate on an
in-sample / out-of-sample split and grades the out-of-sample segment.
"""

from strategy_finder.overfitting.durability import (
    DurabilityContext,
    DurabilityMetrics,
    DurabilityWeights,
    create_durability_context,
    evaluate_durability,
    filter_signals_in_range,
)
from strategy_finder.overfitting.endpoint import EndpointAdjustment, build_selection_result

__all__ = [
    # Endpoint correction
    "EndpointAdjustment",
    "build_selection_result",
    # Durability
    "DurabilityContext",
    "DurabilityMetrics",
    "DurabilityWeights",
    "create_durability_context",
    "evaluate_durability",
    "filter_signals_in_range",
]
