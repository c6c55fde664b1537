"""
Trend estimation helpers.

The trend of a time-ordered series is its least-squares slope over
x = 0..n-1, normalized by the series mean:

    slope = (n·Σxy − Σx·Σy) / (n·Σx² − (Σx)²)
    trend = slope / mean(y)

A series with fewer than two points, or a zero mean, has trend 0.
"""

from __future__ import annotations

from collections.abc import Sequence


def mean(values: Sequence[float]) -> float:
    """Arithmetic mean; 0.0 for an empty sequence."""
    if not values:
        return 0.0
    return sum(values) / len(values)


def linear_slope(values: Sequence[float]) -> float:
    """Least-squares slope of values against their index."""
    n = len(values)
    if n < 2:
        return 0.0

    sum_x = n * (n - 1) / 2
    sum_y = sum(values)
    sum_xy = sum(i * y for i, y in enumerate(values))
    sum_xx = n * (n - 1) * (2 * n - 1) / 6

    denominator = n * sum_xx - sum_x * sum_x
    if denominator == 0:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denominator


def calculate_trend(values: Sequence[float]) -> float:
    """Normalized trend: slope divided by mean."""
    if len(values) < 2:
        return 0.0
    avg = mean(values)
    if avg == 0:
        return 0.0
    return linear_slope(values) / avg


def clamp(value: float, low: float, high: float) -> float:
    """Clamp value into [low, high]."""
    return max(low, min(high, value))
