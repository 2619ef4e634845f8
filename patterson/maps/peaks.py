"""
Peak Extraction from a 3D Patterson Map.

Finds local maxima of the Patterson field that rise above a relative
threshold, normalises their heights to [0, 1] and returns the strongest
ones, highest first.

Algorithm:
1. Finite minimum and maximum of the field (non-finite cells ignored)
2. Threshold at min + 0.15·(max − min)
3. For interior cells only (1 ≤ i ≤ res − 2 on every axis), accept a cell
   at or above threshold when none of its 26 neighbours is strictly
   greater; equal neighbours and non-finite neighbours never reject
4. Stable sort by height, descending, and keep the first 50

Edge cells are never considered, even though the map is periodic.

Author: Patterson Heavy-Atom Search Project
"""

import logging
from dataclasses import dataclass

import numpy as np
from scipy.ndimage import maximum_filter
from typing import Any, Dict, List, Optional

_LOG = logging.getLogger(__name__)

PEAK_THRESHOLD_FRACTION = 0.15
MAX_PEAKS = 50


@dataclass(frozen=True)
class Peak:
    """A Patterson peak at fractional (u, v, w) with normalised height."""
    u: float
    v: float
    w: float
    height: float

    def coordinate(self, axis: str) -> float:
        """Value on the named axis ('u', 'v' or 'w')."""
        if axis not in ('u', 'v', 'w'):
            raise ValueError(f"Unknown axis: {axis}")
        return getattr(self, axis)

    def to_dict(self) -> Dict[str, Any]:
        return {'u': self.u, 'v': self.v, 'w': self.w, 'height': self.height}


def find_peaks(field: np.ndarray, map_resolution: int,
               logger: Optional[logging.Logger] = None,
               threshold_fraction: float = PEAK_THRESHOLD_FRACTION,
               max_peaks: int = MAX_PEAKS) -> List[Peak]:
    """
    Find significant local maxima in a Patterson map.

    Parameters
    ----------
    field : np.ndarray
        Patterson map, either shape (res, res, res) indexed [iw, iv, iu]
        or its flat form of length res³.
    map_resolution : int
        Grid points per axis.
    logger : logging.Logger, optional
        Diagnostics sink. Defaults to the module logger.
    threshold_fraction : float, optional
        Relative height threshold. Default 0.15.
    max_peaks : int, optional
        Maximum number of peaks returned. Default 50.

    Returns
    -------
    list of Peak
        Peaks ordered by descending height, ties kept in scan order
        (w-major, then v, then u). Empty for a flat or all non-finite map.
    """
    log = logger or _LOG
    if field is None:
        return []

    res = int(map_resolution)
    grid = np.asarray(field, dtype=np.float64).reshape((res, res, res))

    finite = np.isfinite(grid)
    if not finite.any():
        log.warning("Map flat/invalid. Skipping peaks.")
        return []
    max_val = float(grid[finite].max())
    min_val = float(grid[finite].min())
    if max_val == min_val:
        log.warning("Map flat/invalid. Skipping peaks.")
        return []

    span = max_val - min_val
    threshold = min_val + span * threshold_fraction

    # Non-finite neighbours must never reject a cell
    safe = np.where(finite, grid, -np.inf)
    neighbourhood_max = maximum_filter(safe, size=3, mode='nearest')

    is_peak = finite & (grid >= threshold) & (grid >= neighbourhood_max)

    # Outer shell is excluded from the search
    interior = np.zeros_like(is_peak)
    interior[1:-1, 1:-1, 1:-1] = True
    is_peak &= interior

    iw, iv, iu = np.nonzero(is_peak)
    heights = (grid[iw, iv, iu] - min_val) / span
    order = np.argsort(-heights, kind='stable')

    peaks = [
        Peak(u=float(iu[i]) / res, v=float(iv[i]) / res, w=float(iw[i]) / res,
             height=float(heights[i]))
        for i in order
    ]
    found = peaks[:max_peaks]
    log.info("Found %d peaks. Kept %d.", len(peaks), len(found))
    return found
