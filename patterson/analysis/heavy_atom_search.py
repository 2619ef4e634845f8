"""
Heavy-Atom Search Pipeline.

Runs the complete Patterson heavy-atom workflow on one data set:
1. Calculate the 3D Patterson map from reflection intensities
2. Find significant peaks
3. Match peaks against the Harker sections of the space group
4. Combine partial sites into consolidated 3D atom positions

Only the first stage can fail; later stages degrade to empty results and
the final summary message reports how far the search got.

The module also provides the request/response message handling used by
front ends, space-group table loading, and pandas export of results.

Units:
    Cell lengths in Angstroms (Å)
    Fractional coordinates dimensionless [0, 1)

Author: Patterson Heavy-Atom Search Project
"""

import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import pandas as pd
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..crystal.data import CrystalData, PattersonInputError
from ..maps.peaks import MAX_PEAKS, PEAK_THRESHOLD_FRACTION, Peak, find_peaks
from ..maps.synthesis import calculate_patterson_map, flatten_map, validate_resolution
from ..sites.consolidation import ConsolidatedSite, combine_sites
from ..symmetry.harker import HARKER_GRID_TOLERANCE, PartialSite, analyze_harker_peaks

_LOG = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(__file__).parent.parent.parent / 'data'
SPACE_GROUP_FILE = 'space_groups.json'

ProgressCallback = Callable[[str], None]


def configure_logging(level: int = logging.INFO) -> None:
    """Basic console logging for scripts and the Streamlit front end."""
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


@dataclass
class SearchSettings:
    """
    Tunable parameters of the heavy-atom search.

    Attributes
    ----------
    map_resolution : int
        Grid points per axis of the Patterson map.
    harker_tolerance : float
        Periodic distance for combining and clustering sites.
    peak_threshold_fraction : float
        Relative height threshold for peaks.
    max_peaks : int
        Maximum number of peaks kept.
    harker_grid_tolerance : float
        Harker-section acceptance radius in grid spacings.
    """
    map_resolution: int = 32
    harker_tolerance: float = 0.05
    peak_threshold_fraction: float = PEAK_THRESHOLD_FRACTION
    max_peaks: int = MAX_PEAKS
    harker_grid_tolerance: float = HARKER_GRID_TOLERANCE

    def validate(self) -> 'SearchSettings':
        """Check values, raising PattersonInputError on the first bad one."""
        self.map_resolution = validate_resolution(self.map_resolution)
        if not _is_real(self.harker_tolerance) or self.harker_tolerance < 0:
            raise PattersonInputError(f"Invalid Harker tolerance: {self.harker_tolerance}")
        if not _is_real(self.peak_threshold_fraction) or not 0 <= self.peak_threshold_fraction <= 1:
            raise PattersonInputError(
                f"Invalid peak threshold fraction: {self.peak_threshold_fraction}")
        if isinstance(self.max_peaks, bool) or not isinstance(self.max_peaks, int) or self.max_peaks < 0:
            raise PattersonInputError(f"Invalid peak limit: {self.max_peaks}")
        if not _is_real(self.harker_grid_tolerance) or self.harker_grid_tolerance <= 0:
            raise PattersonInputError(
                f"Invalid Harker grid tolerance: {self.harker_grid_tolerance}")
        return self

    @classmethod
    def from_request(cls, request: Mapping[str, Any], validate: bool = True) -> 'SearchSettings':
        """Read ``mapResolution`` and ``harkerTolerance`` from a request."""
        settings = cls()
        if request.get('mapResolution') is not None:
            settings.map_resolution = request['mapResolution']
        if request.get('harkerTolerance') is not None:
            settings.harker_tolerance = request['harkerTolerance']
        return settings.validate() if validate else settings


def _is_real(value: Any) -> bool:
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and math.isfinite(value))


@dataclass
class SearchResult:
    """Everything produced by one heavy-atom search."""
    patterson_map: np.ndarray
    peaks: List[Peak] = field(default_factory=list)
    partial_sites: List[PartialSite] = field(default_factory=list)
    consolidated_sites: List[ConsolidatedSite] = field(default_factory=list)
    final_message: str = "Done."

    def to_payload(self) -> Dict[str, Any]:
        """Response payload with the external key names."""
        return {
            'pattersonMap3D': flatten_map(self.patterson_map),
            'foundPeaks': [p.to_dict() for p in self.peaks],
            'harkerAnalysisResults': [s.to_dict() for s in self.partial_sites],
            'consolidatedSites': [s.to_dict() for s in self.consolidated_sites],
            'finalMessage': self.final_message,
        }

    def to_dataframes(self) -> Dict[str, pd.DataFrame]:
        return results_to_dataframes(self)


def summarize_results(peaks: List[Peak], partial_sites: List[PartialSite],
                      consolidated_sites: List[ConsolidatedSite]) -> str:
    """Final status message, reporting the furthest stage that produced output."""
    if consolidated_sites:
        return f"Done. Found {len(consolidated_sites)} site(s)."
    if partial_sites:
        return f"Done. Found {len(partial_sites)} partial sites, but none combined."
    if peaks:
        return "Done. Found peaks, but no Harker matches."
    return "Done. No significant peaks found."


class HeavyAtomSearch:
    """
    Patterson heavy-atom search over one crystal data set.

    Parameters
    ----------
    space_groups : mapping, optional
        Space-group table keyed by number (int or string).
    settings : SearchSettings, optional
        Search parameters. Defaults to ``SearchSettings()``.
    logger : logging.Logger, optional
        Diagnostics sink passed to every stage.
    progress : callable, optional
        Called with a short status text before each stage. Has no effect
        on the results.

    Examples
    --------
    >>> table = load_space_group_table()
    >>> search = HeavyAtomSearch(table, SearchSettings(map_resolution=24))
    >>> result = search.run(CrystalData.from_dict(crystal))
    >>> print(result.final_message)
    """

    def __init__(self, space_groups: Optional[Mapping[Any, Any]] = None,
                 settings: Optional[SearchSettings] = None,
                 logger: Optional[logging.Logger] = None,
                 progress: Optional[ProgressCallback] = None):
        self.space_groups = space_groups
        self.settings = settings or SearchSettings()
        self.logger = logger or _LOG
        self.progress = progress

    def _report(self, message: str) -> None:
        if self.progress is not None:
            self.progress(message)

    def run(self, crystal_data: CrystalData) -> SearchResult:
        """
        Run all four stages.

        Raises
        ------
        PattersonInputError
            If the settings are invalid or the Patterson map cannot be
            calculated.
        """
        s = self.settings
        self._report(f"Calculating {s.map_resolution}^3 map...")
        s.validate()
        res = s.map_resolution

        patterson_map = calculate_patterson_map(crystal_data, res, self.logger)

        self._report("Finding peaks...")
        peaks = find_peaks(patterson_map, res, self.logger,
                           threshold_fraction=s.peak_threshold_fraction,
                           max_peaks=s.max_peaks)

        self._report("Analyzing Harker sections...")
        partial_sites = analyze_harker_peaks(peaks, crystal_data, self.space_groups, res,
                                             self.logger,
                                             grid_tolerance=s.harker_grid_tolerance)

        self._report("Consolidating sites...")
        consolidated_sites = combine_sites(partial_sites, s.harker_tolerance, self.logger)

        return SearchResult(
            patterson_map=patterson_map,
            peaks=peaks,
            partial_sites=partial_sites,
            consolidated_sites=consolidated_sites,
            final_message=summarize_results(peaks, partial_sites, consolidated_sites),
        )


# =============================================================================
# Request / Response Handling
# =============================================================================

def run_request(request: Mapping[str, Any],
                progress: Optional[ProgressCallback] = None,
                logger: Optional[logging.Logger] = None) -> Dict[str, Any]:
    """
    Run one search request and return the response payload.

    The request mapping holds ``crystalData``, ``spaceGroups``,
    ``mapResolution`` and ``harkerTolerance``.

    Raises
    ------
    PattersonInputError
        On any input that aborts the search; no partial results.
    """
    settings = SearchSettings.from_request(request, validate=False)
    crystal_data = CrystalData.from_dict(request.get('crystalData'))
    search = HeavyAtomSearch(request.get('spaceGroups'), settings, logger, progress)
    return search.run(crystal_data).to_payload()


def handle_message(message: Mapping[str, Any],
                   post_message: Callable[[Dict[str, Any]], None],
                   logger: Optional[logging.Logger] = None) -> None:
    """
    Serve one ``{'type': 'CALCULATE', 'payload': request}`` message.

    Posts ``{'type': 'status', ...}`` before each stage, then either one
    ``{'type': 'analysis_complete', 'payload': response}`` or, if the
    search fails, one ``{'type': 'error', 'payload': text}``. Messages of
    any other type are ignored.
    """
    log = logger or _LOG
    if message.get('type') != 'CALCULATE':
        return

    def status(text: str) -> None:
        post_message({'type': 'status', 'payload': text})

    try:
        payload = run_request(message.get('payload') or {}, progress=status, logger=log)
    except Exception as e:
        log.error("Pipeline Error: %s", e)
        post_message({'type': 'error',
                      'payload': str(e) or "An unknown error occurred."})
        return
    post_message({'type': 'analysis_complete', 'payload': payload})


# =============================================================================
# Space-Group Tables
# =============================================================================

def load_space_group_table(data_dir: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load the Harker-section table.

    Parameters
    ----------
    data_dir : str or Path, optional
        Directory containing space_groups.json. Defaults to the project
        data directory.

    Returns
    -------
    dict
        Table keyed by space-group number as a string.

    Raises
    ------
    FileNotFoundError
        If space_groups.json is not found.
    """
    data_dir = DEFAULT_DATA_DIR if data_dir is None else Path(data_dir)
    json_path = data_dir / SPACE_GROUP_FILE

    if not json_path.exists():
        raise FileNotFoundError(f"Space-group table not found: {json_path}")

    with open(json_path, 'r') as f:
        return json.load(f)


def list_space_groups(data_dir: Optional[Union[str, Path]] = None) -> List[int]:
    """Space-group numbers available in the table, ascending."""
    try:
        table = load_space_group_table(data_dir)
    except FileNotFoundError:
        return []
    return sorted(int(k) for k in table)


# =============================================================================
# Tabular Export
# =============================================================================

def results_to_dataframes(result: SearchResult) -> Dict[str, pd.DataFrame]:
    """
    Convert search results to pandas DataFrames for display or export.

    Returns
    -------
    dict
        - 'peaks': u, v, w, height
        - 'partial_sites': source, peak, x, y, z (strings)
        - 'consolidated_sites': x, y, z, count
    """
    peaks = pd.DataFrame([p.to_dict() for p in result.peaks],
                         columns=['u', 'v', 'w', 'height'])
    partial = pd.DataFrame(
        [{'source': s.source, 'peak': s.peak_coords, 'x': s.x, 'y': s.y, 'z': s.z}
         for s in result.partial_sites],
        columns=['source', 'peak', 'x', 'y', 'z'])
    consolidated = pd.DataFrame([s.to_dict() for s in result.consolidated_sites],
                                columns=['x', 'y', 'z', 'count'])
    return {
        'peaks': peaks,
        'partial_sites': partial,
        'consolidated_sites': consolidated,
    }
