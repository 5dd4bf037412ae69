"""Deterministic 32-bit pseudo-random generator.

A mulberry32-style generator: every intermediate is masked to 32 bits, so
the sequence for a given seed is identical on every platform and
interpreter. Used by robust_random_wf mode so that a seed reproduces the
exact parameter sequence of an earlier run.
"""

from __future__ import annotations

import math

_MASK32 = 0xFFFFFFFF
_INCREMENT = 0x6D2B79F5
_TWO_POW_32 = 4294967296.0


def _imul(a: int, b: int) -> int:
    """32-bit integer multiply, keeping the low 32 bits."""
    return (a * b) & _MASK32


class SeededRandom:
    """Seeded uniform generator on [0, 1).

    Exposes ``random()`` so it can stand in for ``random.random`` wherever
    the sampler needs a draw.

    Args:
        seed: Any finite number. It is floored and reduced to 32 bits;
            a zero state is replaced by 1.
    """

    def __init__(self, seed: float) -> None:
        if not math.isfinite(seed):
            msg = f"seed must be finite, got {seed}"
            raise ValueError(msg)
        self._state = (math.floor(seed) & _MASK32) or 1

    def random(self) -> float:
        self._state = (self._state + _INCREMENT) & _MASK32
        t = self._state
        t = _imul(t ^ (t >> 15), t | 1)
        t ^= (t + _imul(t ^ (t >> 7), t | 61)) & _MASK32
        return ((t ^ (t >> 14)) & _MASK32) / _TWO_POW_32

    __call__ = random
