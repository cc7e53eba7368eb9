"""Floating-point helpers used by the stepping algorithms."""

from __future__ import annotations

import math

DEFAULT_EPSILON: float = 1e-4


def is_close(a: float, b: float, epsilon: float = DEFAULT_EPSILON) -> bool:
    """Return True if *a* is close to *b*.

    The comparison is relative to ``|b|``; when *b* is zero the absolute
    difference is compared against *epsilon* instead.
    """
    if a == b:
        return True

    d = abs(a - b)

    if b == 0:
        return d < epsilon

    return d / abs(b) < epsilon


def round_half_away(x: float) -> float:
    return math.copysign(math.floor(abs(x) + 0.5), x)


def default_step_size(duration: float) -> float:
    """Return ``10 ** (round(log10(duration)) - 3)``."""
    if duration <= 0:
        raise ValueError(f"duration must be positive, got {duration}")
    return 10.0 ** (round_half_away(math.log10(duration)) - 3)


def auto_interval(duration: float) -> float:
    """Find a nice interval that divides *duration* into 500 - 1000 steps."""
    h = default_step_size(duration)

    n_samples = duration / h

    if n_samples >= 2500:
        h *= 5
    elif n_samples >= 2000:
        h *= 4
    elif n_samples >= 1000:
        h *= 2
    elif n_samples <= 200:
        h /= 5
    elif n_samples <= 250:
        h /= 4
    elif n_samples <= 500:
        h /= 2

    return h
