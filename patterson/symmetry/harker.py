"""
Harker Section Analysis.

Symmetry operators of a space group map an atom at (x, y, z) onto
equivalent positions; the vectors between such pairs fall on fixed
planes or lines of the Patterson map, the Harker sections. A peak
lying on a section can be solved for (some of) the atom's coordinates
using per-axis solver formulas from the space-group table.

Workflow:
1. Look up the Harker sections of the crystal's space group
2. Test each peak for periodic proximity to each section's fixed value
3. Solve x, y and z for matching peaks; drop sites with solver errors

Space-group table format (JSON-compatible)::

    {"4": {"name": "P2_1",
           "harker_sections": [
               {"coordinate": "v", "value": 0.5, "type": "plane",
                "solver": {"x": "u/2", "y": "?", "z": "w/2"}}]}}

Author: Patterson Heavy-Atom Search Project
"""

import logging
from dataclasses import dataclass

from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..crystal.data import CrystalData
from ..geometry.periodic import periodic_distance, wrap_fractional
from ..maps.peaks import Peak
from .expressions import ExpressionError, evaluate_expression

_LOG = logging.getLogger(__name__)

UNKNOWN = '?'
ERROR = 'err'
AXES = ('u', 'v', 'w')

# Acceptance radius in grid spacings
HARKER_GRID_TOLERANCE = 1.5


@dataclass(frozen=True)
class HarkerSection:
    """
    One Harker section of a space group.

    Attributes
    ----------
    coordinate : str
        Fixed Patterson axis, 'u', 'v' or 'w'.
    value : float
        Fractional value of the fixed axis.
    type : str
        Descriptive label, e.g. 'plane' or 'line'.
    solver : dict
        Expressions for 'x', 'y', 'z' in u, v, w, or '?' if not
        determined by this section. A missing axis is kept as None
        and solves to 'err'.
    """
    coordinate: str
    value: float
    type: str
    solver: Dict[str, Optional[str]]

    @property
    def description(self) -> str:
        label = self.type[:1].upper() + self.type[1:] if self.type else 'Unk'
        return f"{label} ({self.coordinate}={self.value:.3f})"

    @classmethod
    def from_dict(cls, section: Mapping[str, Any]) -> Optional['HarkerSection']:
        """Build from a table entry, or return None if it is malformed."""
        if not isinstance(section, Mapping):
            return None
        coordinate = section.get('coordinate')
        value = section.get('value')
        solver = section.get('solver')
        if coordinate not in AXES:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if not isinstance(solver, Mapping) or not solver:
            return None
        return cls(
            coordinate=coordinate,
            value=float(value),
            type=str(section.get('type') or ''),
            solver={axis: solver.get(axis) for axis in ('x', 'y', 'z')},
        )


@dataclass(frozen=True)
class PartialSite:
    """
    Partial atomic site from one peak on one Harker section.

    Each of x, y, z is a 3-decimal fractional string, '?' when the section
    does not determine that axis, or 'err' when its solver failed.
    """
    source: str
    peak_coords: str
    x: str
    y: str
    z: str

    @property
    def is_valid(self) -> bool:
        return ERROR not in (self.x, self.y, self.z)

    def to_dict(self) -> Dict[str, str]:
        return {'source': self.source, 'peakCoords': self.peak_coords,
                'x': self.x, 'y': self.y, 'z': self.z}


def format_fractional(value: float) -> str:
    """Wrap into [0, 1) and format with 3 decimals."""
    text = f"{wrap_fractional(value):.3f}"
    # 0.9996 rounds up to the next cell
    if text == '1.000':
        text = '0.000'
    return text


def solve_coordinate(solver_string: str, peak: Peak,
                     logger: Optional[logging.Logger] = None) -> str:
    """
    Solve one atomic coordinate from a peak position.

    Parameters
    ----------
    solver_string : str
        Expression in u, v, w, or '?'.
    peak : Peak
        Matched Patterson peak.

    Returns
    -------
    str
        '?' passed through, a 3-decimal value in [0, 1), or 'err'.
    """
    log = logger or _LOG
    if solver_string == UNKNOWN:
        return UNKNOWN
    try:
        result = evaluate_expression(solver_string, peak.u, peak.v, peak.w)
    except (ExpressionError, TypeError) as e:
        log.error('Error solving: "%s" for peak (%.3f, %.3f, %.3f): %s',
                  solver_string, peak.u, peak.v, peak.w, e)
        return ERROR
    return format_fractional(result)


def get_harker_sections(space_groups: Optional[Mapping[Any, Any]],
                        number: Optional[int]) -> Optional[List[Any]]:
    """
    Raw Harker-section list for a space group, or None if the table has
    no entry. JSON tables key space groups by string, so both the int and
    its string form are tried.
    """
    if not space_groups or number is None:
        return None
    entry = space_groups.get(number)
    if entry is None:
        entry = space_groups.get(str(number))
    if not isinstance(entry, Mapping):
        return None
    sections = entry.get('harker_sections')
    if sections is None:
        return None
    return list(sections)


def analyze_harker_peaks(peaks: Sequence[Peak], crystal_data: CrystalData,
                         space_groups: Optional[Mapping[Any, Any]],
                         map_resolution: int,
                         logger: Optional[logging.Logger] = None,
                         grid_tolerance: float = HARKER_GRID_TOLERANCE) -> List[PartialSite]:
    """
    Match peaks against the Harker sections of the crystal's space group.

    Parameters
    ----------
    peaks : sequence of Peak
        Peaks from :func:`patterson.maps.peaks.find_peaks`.
    crystal_data : CrystalData
        Supplies the space-group number.
    space_groups : mapping
        Space-group table.
    map_resolution : int
        Grid points per axis; sets the tolerance to 1.5 grid spacings.
    grid_tolerance : float, optional
        Tolerance in grid spacings. Default 1.5.

    Returns
    -------
    list of PartialSite
        Valid partial sites in section-major, peak-minor order. Empty when
        the space group is unknown, has no table entry or sections, or
        there are no peaks.
    """
    log = logger or _LOG
    if crystal_data.space_group is None or not peaks or not space_groups:
        log.info("Skipping Harker.")
        return []

    sg_number = crystal_data.space_group
    tol = grid_tolerance * (1.0 / map_resolution)
    log.info("Analyzing SG: %d. Tol: %.3f", sg_number, tol)

    sections = get_harker_sections(space_groups, sg_number)
    if sections is None:
        log.warning("No Harker data for SG %d.", sg_number)
        return []
    if not sections:
        log.info("No Harker sections for SG %d.", sg_number)
        return []
    log.info("Found %d Harker sections.", len(sections))

    results = []
    for si, raw in enumerate(sections):
        section = HarkerSection.from_dict(raw)
        if section is None:
            log.warning("Skip invalid section %d", si + 1)
            continue

        for pi, peak in enumerate(peaks):
            p_diff = periodic_distance(peak.coordinate(section.coordinate), section.value)
            if not p_diff < tol:
                continue

            site = PartialSite(
                source=section.description,
                peak_coords=f"({peak.u:.3f}, {peak.v:.3f}, {peak.w:.3f})",
                x=solve_coordinate(section.solver['x'], peak, log),
                y=solve_coordinate(section.solver['y'], peak, log),
                z=solve_coordinate(section.solver['z'], peak, log),
            )
            if site.is_valid:
                results.append(site)
            else:
                log.error("Solver error. Peak %d, Sec %d. Discarded.", pi, si + 1)

    log.info("Harker found %d partial site(s).", len(results))
    return results
