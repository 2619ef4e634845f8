"""
Site Consolidation from Partial Harker Solutions.

A single Harker section usually fixes only two of an atom's three
coordinates. Two partial sites that agree on one shared axis can be
merged into a full (x, y, z) candidate, and candidates that coincide in
the periodic cell are clustered into consolidated sites.

Step A - pairwise combination:
    For each unordered pair (r1, r2) and each of six patterns, one axis
    must be close under periodic distance while the two remaining axes
    are donated one by r1 and one by r2. The shared axis is averaged
    across the 0/1 boundary. Every matching pattern yields a candidate.

Step B - clustering:
    Pop the first unassigned candidate, absorb every later candidate
    within tolerance on all three axes of any current member (single
    pass, left to right), and average the group after unwrapping each
    member relative to the first one.

Units:
    Fractional coordinates dimensionless [0, 1)

Author: Patterson Heavy-Atom Search Project
"""

import logging
from dataclasses import dataclass
from itertools import combinations

from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..geometry.periodic import (
    adjust_periodic,
    average_periodic,
    coordinates_close,
    parse_coordinate,
    wrap_fractional,
)
from ..symmetry.harker import ERROR, PartialSite

_LOG = logging.getLogger(__name__)

# (shared axis, axis donated by r1, axis donated by r2), in test order
COMBINATION_PATTERNS: Tuple[Tuple[str, str, str], ...] = (
    ('z', 'x', 'y'),
    ('z', 'y', 'x'),
    ('y', 'x', 'z'),
    ('y', 'z', 'x'),
    ('x', 'y', 'z'),
    ('x', 'z', 'y'),
)


@dataclass(frozen=True)
class CombinedSite:
    """Full fractional position built from two partial sites."""
    x: float
    y: float
    z: float


@dataclass(frozen=True)
class ConsolidatedSite:
    """Cluster average of combined sites, with the cluster size."""
    x: float
    y: float
    z: float
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {'x': self.x, 'y': self.y, 'z': self.z, 'count': self.count}


def _is_numeric(coord: str) -> bool:
    return parse_coordinate(coord) is not None


def combine_pair(r1: PartialSite, r2: PartialSite,
                 tolerance: float) -> List[CombinedSite]:
    """
    All combined sites obtainable from one pair of partial sites.

    Returns one candidate per matching pattern, possibly none.
    """
    candidates = []
    for shared, from_r1, from_r2 in COMBINATION_PATTERNS:
        c1, c2 = getattr(r1, shared), getattr(r2, shared)
        d1, d2 = getattr(r1, from_r1), getattr(r2, from_r2)
        if not coordinates_close(c1, c2, tolerance):
            continue
        if not (_is_numeric(d1) and _is_numeric(d2)):
            continue

        coords = {
            shared: average_periodic(float(c1), float(c2)),
            from_r1: float(d1),
            from_r2: float(d2),
        }
        candidates.append(CombinedSite(
            x=wrap_fractional(coords['x']),
            y=wrap_fractional(coords['y']),
            z=wrap_fractional(coords['z']),
        ))
    return candidates


def generate_candidates(partial_sites: Sequence[PartialSite], tolerance: float,
                        logger: Optional[logging.Logger] = None) -> List[CombinedSite]:
    """
    Step A: combine every unordered pair of partial sites.

    A failure while combining one pair is logged and that pair is skipped.
    """
    log = logger or _LOG
    candidates = []
    for (i, r1), (j, r2) in combinations(enumerate(partial_sites), 2):
        try:
            candidates.extend(combine_pair(r1, r2, tolerance))
        except (ValueError, ArithmeticError, TypeError) as e:
            log.error("Error combining pair (%d, %d): %s %r %r", i + 1, j + 1, e, r1, r2)
    return candidates


def _sites_close(s1: CombinedSite, s2: CombinedSite, tolerance: float) -> bool:
    return (coordinates_close(s1.x, s2.x, tolerance)
            and coordinates_close(s1.y, s2.y, tolerance)
            and coordinates_close(s1.z, s2.z, tolerance))


def _average_group(group: Sequence[CombinedSite]) -> ConsolidatedSite:
    ref = group[0]
    n = len(group)
    sum_x = sum(adjust_periodic(s.x, ref.x) for s in group)
    sum_y = sum(adjust_periodic(s.y, ref.y) for s in group)
    sum_z = sum(adjust_periodic(s.z, ref.z) for s in group)
    return ConsolidatedSite(
        x=wrap_fractional(sum_x / n),
        y=wrap_fractional(sum_y / n),
        z=wrap_fractional(sum_z / n),
        count=n,
    )


def cluster_sites(candidates: Sequence[CombinedSite], tolerance: float,
                  logger: Optional[logging.Logger] = None) -> List[ConsolidatedSite]:
    """
    Step B: order-dependent single-linkage clustering.

    Each round takes the first unassigned candidate as a seed and scans
    the remaining pool once, left to right. A candidate joins when it is
    close on all three axes to any member already in the group, including
    members added earlier in the same scan. Candidates passed over are not
    revisited in that round, so the result is not a transitive closure.

    Parameters
    ----------
    candidates : sequence of CombinedSite
        Combined sites; anything with ``x``, ``y`` and ``z`` works.
    tolerance : float
        Periodic distance required on every axis.

    Returns
    -------
    list of ConsolidatedSite
        One site per group, in seed order.
    """
    log = logger or _LOG
    pool = list(range(len(candidates)))
    final_sites = []

    while pool:
        seed, rest = pool[0], pool[1:]
        group = [seed]
        remaining = []
        for idx in rest:
            site = candidates[idx]
            if any(_sites_close(site, candidates[m], tolerance) for m in group):
                group.append(idx)
            else:
                remaining.append(idx)
        pool = remaining

        consolidated = _average_group([candidates[m] for m in group])
        final_sites.append(consolidated)
        log.info("  Cluster (Size %d): Avg=(%.3f, %.3f, %.3f)", consolidated.count,
                 consolidated.x, consolidated.y, consolidated.z)

    return final_sites


def combine_sites(partial_sites: Sequence[PartialSite], harker_tolerance: float,
                  logger: Optional[logging.Logger] = None) -> List[ConsolidatedSite]:
    """
    Combine partial Harker sites into consolidated 3D atom sites.

    Parameters
    ----------
    partial_sites : sequence of PartialSite
        Output of :func:`patterson.symmetry.harker.analyze_harker_peaks`.
        Sites with an 'err' coordinate are ignored.
    harker_tolerance : float
        Periodic distance used both for matching shared axes and for
        clustering.

    Returns
    -------
    list of ConsolidatedSite
        Empty when fewer than two valid partial sites exist or no pair
        combines.
    """
    log = logger or _LOG
    log.info("--- Starting Site Combination ---")
    results = [s for s in partial_sites if ERROR not in (s.x, s.y, s.z)]
    log.info("Attempting to combine %d valid partial sites. Tolerance: %.3f",
             len(results), harker_tolerance)

    if len(results) < 2:
        log.info("--- Finished Site Combination (Not enough sites) ---")
        return []

    candidates = generate_candidates(results, harker_tolerance, log)
    log.info("Generated %d potential combined sites.", len(candidates))
    if not candidates:
        log.info("--- Finished Site Combination (No pairs combined) ---")
        return []

    log.info(" Clustering potential sites...")
    final_sites = cluster_sites(candidates, harker_tolerance, log)
    log.info("--- Finished Site Combination (%d sites) ---", len(final_sites))
    return final_sites
