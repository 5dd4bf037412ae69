"""Parameter-space search: grid, bounded-random and seeded sampling."""

from strategy_finder.search.param_space import (
    ParamSpaceSampler,
    build_random_confirmation_params,
    is_toggle_param,
    normalize_param_value,
    normalize_params,
    serialize_params,
    validate_params,
)
from strategy_finder.search.seeded import SeededRandom

__all__ = [
    "ParamSpaceSampler",
    "SeededRandom",
    "build_random_confirmation_params",
    "is_toggle_param",
    "normalize_param_value",
    "normalize_params",
    "serialize_params",
    "validate_params",
]
