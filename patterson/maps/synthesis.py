"""
Patterson Map Synthesis.

Computes the 3D Patterson function directly from measured intensities:

    P(u, v, w) = (1/V) Σ_hkl I(hkl) · cos(2π(hu + kv + lw))

sampled on a cubic grid of ``res`` points per axis. The Patterson map is
the autocorrelation of the electron density and needs no phases, which
is what makes the heavy-atom method possible.

Grid layout:
    The field is an ndarray of shape (res, res, res) indexed [iw, iv, iu],
    so its C-order flattening puts cell (iu, iv, iw) at
    iw*res*res + iv*res + iu.

Units:
    Cell lengths in Angstroms (Å)
    Fractional coordinates dimensionless [0, 1)

Author: Patterson Heavy-Atom Search Project
"""

import logging
import math

import numpy as np
from typing import Optional

from ..crystal.data import CrystalData, PattersonInputError

_LOG = logging.getLogger(__name__)


def validate_resolution(map_resolution) -> int:
    """
    Check the grid resolution and return it as an int.

    Raises
    ------
    PattersonInputError
        If the resolution is not an integer of at least 2.
    """
    if isinstance(map_resolution, bool):
        raise PattersonInputError(f"Invalid map resolution: {map_resolution}")
    try:
        res = int(map_resolution)
    except (TypeError, ValueError):
        raise PattersonInputError(f"Invalid map resolution: {map_resolution}") from None
    if res != map_resolution or res < 2:
        raise PattersonInputError(f"Invalid map resolution: {map_resolution}")
    return res


def calculate_patterson_map(crystal_data: CrystalData, map_resolution: int,
                            logger: Optional[logging.Logger] = None) -> np.ndarray:
    """
    Calculate the 3D Patterson map.

    This is the dominant cost of the search, O(res³ · N_reflections).
    The sum is vectorised over the grid one reflection at a time; each
    grid cell still accumulates independently.

    Parameters
    ----------
    crystal_data : CrystalData
        Cell geometry and reflections.
    map_resolution : int
        Grid points per axis (res ≥ 2).
    logger : logging.Logger, optional
        Diagnostics sink. Defaults to the module logger.

    Returns
    -------
    np.ndarray
        Read-only float64 array of shape (res, res, res), indexed [iw, iv, iu].

    Raises
    ------
    PattersonInputError
        If there are no reflections, the cell lengths are missing or
        non-finite, the volume is not finite and positive, or the
        resolution is invalid.
    """
    log = logger or _LOG

    reflections = crystal_data.reflections
    cell = crystal_data.cell
    if not reflections:
        raise PattersonInputError("No reflection data.")
    if not cell.has_valid_lengths():
        raise PattersonInputError("Invalid cell data.")

    res = validate_resolution(map_resolution)
    log.info("Calculating Patterson map with resolution: %d", res)

    V = cell.volume
    if not math.isfinite(V) or V <= 0:
        raise PattersonInputError(f"Invalid volume: {V}")

    usable = [r for r in reflections if r.is_finite()]
    skipped = len(reflections) - len(usable)
    if skipped:
        log.warning("Skipped %d reflection(s) with non-finite values.", skipped)

    # Fractional grid coordinates, broadcast along their own axis of [iw, iv, iu]
    frac = np.arange(res, dtype=np.float64) / res
    u = frac[np.newaxis, np.newaxis, :]
    v = frac[np.newaxis, :, np.newaxis]
    w = frac[:, np.newaxis, np.newaxis]

    two_pi = 2.0 * np.pi
    field = np.zeros((res, res, res), dtype=np.float64)

    # Overflow to inf (or inf - inf = nan) is clamped below
    with np.errstate(over='ignore', invalid='ignore'):
        for r in usable:
            phase = two_pi * (r.h * u + r.k * v + r.l * w)
            field += r.intensity * np.cos(phase)

        field[~np.isfinite(field)] = 0.0
        field /= V

    field.flags.writeable = False
    log.info("Map calculated.")
    return field


def flatten_map(field: np.ndarray) -> np.ndarray:
    """Flat view of the field in iw*res*res + iv*res + iu order."""
    return np.ravel(field, order='C')
