import logging

import pytest

from patterson.crystal.data import CrystalData, UnitCell
from patterson.maps.peaks import Peak
from patterson.symmetry.harker import (
    ERROR,
    UNKNOWN,
    HarkerSection,
    PartialSite,
    analyze_harker_peaks,
    format_fractional,
    solve_coordinate,
)

P21_TABLE = {
    "4": {"name": "P2_1",
          "harker_sections": [
              {"coordinate": "v", "value": 0.5, "type": "plane",
               "solver": {"x": "u/2", "y": "?", "z": "w/2"}}]},
}


def crystal(space_group=4):
    return CrystalData(UnitCell(10.0, 10.0, 10.0), [], space_group)


def test_peak_on_section_is_solved():
    peaks = [Peak(0.5, 0.5, 0.25, 1.0)]
    sites = analyze_harker_peaks(peaks, crystal(), P21_TABLE, 8)
    assert sites == [PartialSite(source="Plane (v=0.500)",
                                 peak_coords="(0.500, 0.500, 0.250)",
                                 x="0.250", y="?", z="0.125")]


def test_tolerance_is_one_and_a_half_grid_spacings():
    # res = 8 gives tol = 0.1875
    inside = Peak(0.25, 0.625, 0.25, 0.9)
    boundary = Peak(0.25, 0.6875, 0.25, 0.8)
    sites = analyze_harker_peaks([inside, boundary], crystal(), P21_TABLE, 8)
    assert [s.peak_coords for s in sites] == ["(0.250, 0.625, 0.250)"]


def test_section_distance_is_periodic():
    table = {4: {"harker_sections": [
        {"coordinate": "w", "value": 0.0, "type": "line",
         "solver": {"x": "?", "y": "v", "z": "?"}}]}}
    sites = analyze_harker_peaks([Peak(0.5, 0.25, 0.875, 1.0)], crystal(), table, 8)
    assert len(sites) == 1
    assert sites[0].source == "Line (w=0.000)"
    assert (sites[0].x, sites[0].y, sites[0].z) == ("?", "0.250", "?")


def test_negative_solutions_wrap_into_cell():
    table = {"4": {"harker_sections": [
        {"coordinate": "v", "value": 0.5, "type": "plane",
         "solver": {"x": "-u/2", "y": "?", "z": "w-1"}}]}}
    sites = analyze_harker_peaks([Peak(0.5, 0.5, 0.25, 1.0)], crystal(), table, 16)
    assert (sites[0].x, sites[0].z) == ("0.750", "0.250")


@pytest.mark.parametrize("sg, table", [
    (None, P21_TABLE),
    (19, P21_TABLE),
    (4, {}),
    (4, None),
    (4, {"4": {"harker_sections": []}}),
    (4, {"4": {"name": "no sections"}}),
])
def test_missing_symmetry_information_gives_no_sites(sg, table):
    assert analyze_harker_peaks([Peak(0.5, 0.5, 0.5, 1.0)], crystal(sg), table, 8) == []


def test_no_peaks_gives_no_sites():
    assert analyze_harker_peaks([], crystal(), P21_TABLE, 8) == []


def test_solver_error_discards_only_that_site(caplog):
    table = {"4": {"harker_sections": [
        {"coordinate": "v", "value": 0.5, "type": "plane",
         "solver": {"x": "u/0", "y": "?", "z": "w/2"}},
        {"coordinate": "v", "value": 0.5, "type": "plane",
         "solver": {"x": "u/2", "y": "?", "z": "os.system('x')"}},
        {"coordinate": "v", "value": 0.5, "type": "plane",
         "solver": {"x": "u/2", "y": "?", "z": "w/2"}}]}}
    with caplog.at_level(logging.ERROR):
        sites = analyze_harker_peaks([Peak(0.5, 0.5, 0.25, 1.0)], crystal(), table, 8)
    assert len(sites) == 1
    assert sites[0].x == "0.250"
    assert "Discarded" in caplog.text


def test_invalid_sections_are_skipped():
    table = {"4": {"harker_sections": [
        {"coordinate": "q", "value": 0.5, "solver": {"x": "u"}},
        {"coordinate": "v", "value": "0.5", "solver": {"x": "u"}},
        {"coordinate": "v", "value": 0.5},
        "not a section",
        {"coordinate": "v", "value": 0.5, "solver": {"x": "u", "y": "?", "z": "?"}}]}}
    sites = analyze_harker_peaks([Peak(0.5, 0.5, 0.25, 1.0)], crystal(), table, 8)
    assert len(sites) == 1
    assert sites[0].source == "Unk (v=0.500)"


def test_injected_logger_receives_diagnostics(caplog):
    logger = logging.getLogger("harker-test")
    with caplog.at_level(logging.INFO, logger="harker-test"):
        analyze_harker_peaks([Peak(0.5, 0.5, 0.25, 1.0)], crystal(), P21_TABLE, 8, logger=logger)
    assert any(r.name == "harker-test" for r in caplog.records)


def test_solve_coordinate_markers():
    peak = Peak(0.3, 0.4, 0.5, 1.0)
    assert solve_coordinate("?", peak) == UNKNOWN
    assert solve_coordinate("exec('u')", peak) == ERROR
    assert solve_coordinate(["u"], peak) == ERROR
    assert solve_coordinate("u+v", peak) == "0.700"


def test_format_fractional_stays_below_one():
    assert format_fractional(0.99996) == "0.000"
    assert format_fractional(-0.25) == "0.750"
    assert format_fractional(1.5) == "0.500"


def test_section_description():
    section = HarkerSection.from_dict({"coordinate": "u", "value": 0.25, "type": "plane",
                                       "solver": {"x": "?", "y": "v", "z": "w"}})
    assert section.description == "Plane (u=0.250)"
    assert section.solver == {"x": "?", "y": "v", "z": "w"}
    assert HarkerSection.from_dict({"coordinate": "u", "value": True,
                                    "solver": {"x": "u"}}) is None


def test_runaway_solver_discards_only_that_site():
    table = {"4": {"harker_sections": [
        {"coordinate": "v", "value": 0.5, "type": "plane",
         "solver": {"x": "(" * 5000 + "u" + ")" * 5000, "y": "?", "z": "w/2"}},
        {"coordinate": "v", "value": 0.5, "type": "plane",
         "solver": {"x": "u/2", "y": "?", "z": "-" * 5000 + "w"}},
        {"coordinate": "v", "value": 0.5, "type": "plane",
         "solver": {"x": "u/2", "y": "?", "z": "w/2"}}]}}
    sites = analyze_harker_peaks([Peak(0.5, 0.5, 0.25, 1.0)], crystal(), table, 8)
    assert [(s.x, s.y, s.z) for s in sites] == [("0.250", "?", "0.125")]
    assert solve_coordinate("(" * 5000 + "u" + ")" * 5000, Peak(0.5, 0.5, 0.25, 1.0)) == ERROR


def test_missing_solver_axis_discards_site():
    table = {"4": {"harker_sections": [
        {"coordinate": "v", "value": 0.5, "type": "plane",
         "solver": {"x": "u/2", "z": "w/2"}}]}}
    assert analyze_harker_peaks([Peak(0.5, 0.5, 0.25, 1.0)], crystal(), table, 8) == []

    section = HarkerSection.from_dict(table["4"]["harker_sections"][0])
    assert section.solver["y"] is None
    assert solve_coordinate(section.solver["y"], Peak(0.5, 0.5, 0.25, 1.0)) == ERROR
