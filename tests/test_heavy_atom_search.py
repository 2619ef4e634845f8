import itertools
import math

import numpy as np
import pandas as pd
import pytest

from patterson.analysis.heavy_atom_search import (
    HeavyAtomSearch,
    SearchSettings,
    handle_message,
    list_space_groups,
    load_space_group_table,
    results_to_dataframes,
    run_request,
    summarize_results,
)
from patterson.crystal.data import CrystalData, PattersonInputError
from patterson.maps.peaks import Peak
from patterson.sites.consolidation import ConsolidatedSite
from patterson.symmetry.harker import PartialSite

RES = 16

# Two equivalent atoms related by the P2_1 screw axis, (x, y, z) and
# (-x, y + 1/2, -z), with x = z = 0.125. Their Patterson vector is
# (0.25, 0.5, 0.25); the full reflection set for a 16-point grid makes
# the sampled map a sum of exact delta functions.
INTERATOMIC = (0.25, -0.5, 0.25)


def pair_reflections():
    reflections = []
    for h, k, l in itertools.product(range(-8, 8), repeat=3):
        phase = 2 * math.pi * (h * INTERATOMIC[0] + k * INTERATOMIC[1] + l * INTERATOMIC[2])
        reflections.append({'h': h, 'k': k, 'l': l, 'intensity': 2.0 + 2.0 * math.cos(phase)})
    return reflections


@pytest.fixture(scope="module")
def crystal_dict():
    return {
        'cell': {'a': 10.0, 'b': 10.0, 'c': 10.0},
        'reflections': pair_reflections(),
        'spaceGroup': {'number': 4},
    }


@pytest.fixture(scope="module")
def space_groups():
    return load_space_group_table()


def make_request(crystal_dict, space_groups, **overrides):
    request = {
        'crystalData': crystal_dict,
        'spaceGroups': space_groups,
        'mapResolution': RES,
        'harkerTolerance': 0.05,
    }
    request.update(overrides)
    return request


def test_final_message_precedence():
    peak = Peak(0.5, 0.5, 0.5, 1.0)
    site = PartialSite("Plane (v=0.500)", "(0.500, 0.500, 0.500)", "0.250", "?", "0.250")
    full = ConsolidatedSite(0.1, 0.2, 0.3, 2)
    assert summarize_results([peak], [site], [full]) == "Done. Found 1 site(s)."
    assert summarize_results([peak], [site, site], []) == \
        "Done. Found 2 partial sites, but none combined."
    assert summarize_results([peak], [], []) == "Done. Found peaks, but no Harker matches."
    assert summarize_results([], [], []) == "Done. No significant peaks found."


def test_p21_pair_gives_harker_peaks(crystal_dict, space_groups):
    payload = run_request(make_request(crystal_dict, space_groups))

    assert payload['pattersonMap3D'].shape == (RES ** 3,)
    coords = sorted((p['u'], p['v'], p['w']) for p in payload['foundPeaks'])
    # The origin peak sits on the edge shell and is not reported
    assert coords == [(0.25, 0.5, 0.25), (0.75, 0.5, 0.75)]

    solved = sorted((s['x'], s['y'], s['z']) for s in payload['harkerAnalysisResults'])
    assert solved == [('0.125', '?', '0.125'), ('0.375', '?', '0.375')]
    assert all(s['source'] == "Plane (v=0.500)" for s in payload['harkerAnalysisResults'])

    # Both partial sites lack y, so nothing combines
    assert payload['consolidatedSites'] == []
    assert payload['finalMessage'] == "Done. Found 2 partial sites, but none combined."


def test_complementary_sections_combine_into_sites(crystal_dict):
    table = {'4': {'harker_sections': [
        {'coordinate': 'v', 'value': 0.5, 'type': 'plane',
         'solver': {'x': 'u/2', 'y': '?', 'z': 'w/2'}},
        {'coordinate': 'v', 'value': 0.5, 'type': 'plane',
         'solver': {'x': '?', 'y': 'v', 'z': 'w/2'}},
    ]}}
    payload = run_request(make_request(crystal_dict, table))
    sites = sorted((s['x'], s['y'], s['z'], s['count']) for s in payload['consolidatedSites'])
    assert sites == [(0.125, 0.5, 0.125, 1), (0.375, 0.5, 0.375, 1)]
    assert payload['finalMessage'] == "Done. Found 2 site(s)."


def test_space_group_missing_from_table(crystal_dict):
    payload = run_request(make_request(crystal_dict, {'19': {'harker_sections': []}}))
    assert len(payload['foundPeaks']) == 2
    assert payload['harkerAnalysisResults'] == []
    assert payload['consolidatedSites'] == []
    assert payload['finalMessage'] == "Done. Found peaks, but no Harker matches."


def test_flat_map_reports_no_peaks(space_groups):
    crystal = {'cell': {'a': 5, 'b': 5, 'c': 5},
               'reflections': [{'h': 0, 'k': 0, 'l': 0, 'intensity': 10.0}],
               'spaceGroup': {'number': 4}}
    payload = run_request(make_request(crystal, space_groups, mapResolution=6))
    np.testing.assert_allclose(payload['pattersonMap3D'], 10.0 / 125.0)
    assert payload['foundPeaks'] == []
    assert payload['finalMessage'] == "Done. No significant peaks found."


def test_progress_is_reported_in_stage_order(crystal_dict, space_groups):
    messages = []
    search = HeavyAtomSearch(space_groups, SearchSettings(map_resolution=RES),
                             progress=messages.append)
    search.run(CrystalData.from_dict(crystal_dict))
    assert messages == [
        f"Calculating {RES}^3 map...",
        "Finding peaks...",
        "Analyzing Harker sections...",
        "Consolidating sites...",
    ]


def test_handle_message_success(crystal_dict, space_groups):
    posted = []
    handle_message({'type': 'CALCULATE', 'payload': make_request(crystal_dict, space_groups)},
                   posted.append)
    assert [m['type'] for m in posted] == ['status'] * 4 + ['analysis_complete']
    result = posted[-1]['payload']
    assert set(result) == {'pattersonMap3D', 'foundPeaks', 'harkerAnalysisResults',
                           'consolidatedSites', 'finalMessage'}


def test_handle_message_fatal_error(space_groups):
    crystal = {'cell': {'a': 10, 'b': 10, 'c': 10}, 'reflections': []}
    posted = []
    handle_message({'type': 'CALCULATE', 'payload': make_request(crystal, space_groups)},
                   posted.append)
    assert [m['type'] for m in posted] == ['status', 'error']
    assert posted[-1]['payload'] == "No reflection data."


def test_handle_message_ignores_other_types():
    posted = []
    handle_message({'type': 'PING'}, posted.append)
    assert posted == []


def test_run_request_invalid_cell(space_groups):
    crystal = {'cell': {'a': 10, 'b': float('nan'), 'c': 10},
               'reflections': [{'h': 1, 'k': 0, 'l': 0, 'intensity': 1.0}]}
    with pytest.raises(PattersonInputError, match="Invalid cell data"):
        run_request(make_request(crystal, space_groups))


@pytest.mark.parametrize("overrides", [
    {'mapResolution': 1},
    {'mapResolution': 7.5},
    {'harkerTolerance': -0.1},
    {'harkerTolerance': float('inf')},
    {'harkerTolerance': 'wide'},
])
def test_settings_validation(overrides):
    with pytest.raises(PattersonInputError):
        SearchSettings.from_request(overrides)


def test_settings_defaults_from_empty_request():
    settings = SearchSettings.from_request({})
    assert settings.map_resolution == 32
    assert settings.harker_tolerance == 0.05
    assert settings.max_peaks == 50


def test_space_group_table_loading(tmp_path):
    table = load_space_group_table()
    assert table['4']['harker_sections'][0]['coordinate'] == 'v'
    assert list_space_groups() == [1, 2, 4, 14, 19]
    with pytest.raises(FileNotFoundError):
        load_space_group_table(tmp_path)
    assert list_space_groups(tmp_path) == []


def test_results_to_dataframes(crystal_dict, space_groups):
    search = HeavyAtomSearch(space_groups, SearchSettings(map_resolution=RES))
    result = search.run(CrystalData.from_dict(crystal_dict))
    tables = results_to_dataframes(result)
    assert isinstance(tables['peaks'], pd.DataFrame)
    assert list(tables['peaks'].columns) == ['u', 'v', 'w', 'height']
    assert len(tables['peaks']) == 2
    assert list(tables['partial_sites'].columns) == ['source', 'peak', 'x', 'y', 'z']
    assert tables['consolidated_sites'].empty


def test_handle_message_reports_status_before_invalid_resolution(crystal_dict, space_groups):
    posted = []
    handle_message({'type': 'CALCULATE',
                    'payload': make_request(crystal_dict, space_groups, mapResolution=1)},
                   posted.append)
    assert posted[0] == {'type': 'status', 'payload': "Calculating 1^3 map..."}
    assert [m['type'] for m in posted] == ['status', 'error']


def test_invalid_settings_fail_after_first_stage_report(crystal_dict, space_groups):
    messages = []
    search = HeavyAtomSearch(space_groups, SearchSettings(harker_tolerance=-1.0),
                             progress=messages.append)
    with pytest.raises(PattersonInputError, match="Harker tolerance"):
        search.run(CrystalData.from_dict(crystal_dict))
    assert messages == ["Calculating 32^3 map..."]
