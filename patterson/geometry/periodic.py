"""
Periodic Geometry Helpers for Fractional Coordinates.

Every position handled by the heavy-atom search lives in the unit cell,
where fractional coordinates are periodic with period 1. This module
collects the small set of operations needed to keep coordinates in the
canonical range and to compare or average them across the 0/1 boundary.

Conventions:
    - Canonical range is the half-open interval [0, 1).
    - Wrapping follows truncated-remainder semantics, ((v % 1) + 1) % 1,
      so that tiny negative values land on 0.0 rather than 1.0.

Author: Patterson Heavy-Atom Search Project
"""

import math

import numpy as np
from typing import Union


def wrap_fractional(value: float) -> float:
    """
    Wrap a fractional coordinate into [0, 1).

    Parameters
    ----------
    value : float
        Any finite fractional coordinate.

    Returns
    -------
    float
        Equivalent coordinate in [0, 1). Idempotent:
        ``wrap_fractional(wrap_fractional(x)) == wrap_fractional(x)``.

    Examples
    --------
    >>> wrap_fractional(1.25)
    0.25
    >>> wrap_fractional(-0.25)
    0.75
    >>> wrap_fractional(-1e-20)
    0.0
    """
    wrapped = math.fmod(value, 1.0)
    if wrapped < 0.0:
        wrapped += 1.0
    # -tiny + 1.0 rounds up to exactly 1.0
    if wrapped >= 1.0:
        wrapped = 0.0
    return wrapped


def wrap_fractional_array(values: np.ndarray) -> np.ndarray:
    """Vectorised form of :func:`wrap_fractional`."""
    wrapped = np.fmod(np.asarray(values, dtype=np.float64), 1.0)
    wrapped = np.where(wrapped < 0.0, wrapped + 1.0, wrapped)
    return np.where(wrapped >= 1.0, 0.0, wrapped)


def periodic_distance(v1: float, v2: float) -> float:
    """
    Shortest distance between two fractional coordinates on a circle of
    circumference 1.

    Inputs are expected in [0, 1); the result is then in [0, 0.5].
    """
    diff = abs(v1 - v2)
    return min(diff, 1.0 - diff)


def average_periodic(v1: float, v2: float) -> float:
    """
    Average two fractional coordinates across the 0/1 boundary.

    If the values are more than half a cell apart, the smaller one is
    shifted up by one before averaging. Identical inputs reproduce the
    input exactly.

    Examples
    --------
    >>> average_periodic(0.2, 0.4)
    0.30000000000000004
    >>> average_periodic(0.95, 0.05)
    0.0
    """
    if abs(v1 - v2) > 0.5:
        if v1 < v2:
            v1 += 1.0
        else:
            v2 += 1.0
    return wrap_fractional((v1 + v2) / 2.0)


def adjust_periodic(value: float, ref: float) -> float:
    """
    Unwrap ``value`` so it lies within half a cell of ``ref``.

    Used before arithmetic averaging of a cluster, with the first member
    as the reference.
    """
    if value - ref > 0.5:
        return value - 1.0
    if ref - value > 0.5:
        return value + 1.0
    return value


def coordinates_close(c1: Union[float, str], c2: Union[float, str],
                      tolerance: float) -> bool:
    """
    True if two coordinates are numeric and within ``tolerance`` of each
    other under periodic distance.

    Accepts floats or coordinate strings as produced by the Harker
    matcher; the unknown marker ``'?'`` and unparseable strings never
    compare close.
    """
    v1 = parse_coordinate(c1)
    v2 = parse_coordinate(c2)
    if v1 is None or v2 is None:
        return False
    return periodic_distance(v1, v2) < tolerance


def parse_coordinate(coord: Union[float, str]):
    """
    Parse a coordinate value, returning ``None`` for the unknown marker,
    unparseable text or NaN.
    """
    if coord == '?':
        return None
    try:
        value = float(coord)
    except (TypeError, ValueError):
        return None
    if math.isnan(value):
        return None
    return value
