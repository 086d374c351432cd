import re

import pytest

from loc_sweeper.errors import EmptySnapshot
from loc_sweeper.models import LanguageMetric, Project
from loc_sweeper.render import (
    OTHER_COLOR,
    OTHER_LABEL,
    PALETTE,
    SvgRenderer,
    color_for,
    group_long_tail,
    output_path,
    write_svg,
)


@pytest.fixture
def project():
    return Project("acme", "widget", title="Widget")


def test_render_is_byte_identical(project, make_snapshot, scenario_a_breakdown):
    snap = make_snapshot(list(scenario_a_breakdown.metrics), snapshot_id=1)
    assert SvgRenderer().render(project, snap) == SvgRenderer().render(project, snap)


def test_render_contains_title_and_totals(project, make_snapshot, scenario_a_breakdown):
    svg = SvgRenderer().render(project, make_snapshot(list(scenario_a_breakdown.metrics))).decode()
    assert svg.startswith("<svg")
    assert "Stats for Widget" in svg
    assert "515 lines of code in 5 files" in svg
    assert svg.index(">Rust ") < svg.index(">Shell ")


def test_scenario_d_groups_small_language(project, make_snapshot):
    snap = make_snapshot([LanguageMetric("A", code=995), LanguageMetric("B", code=5)])
    spec = SvgRenderer(other_threshold=0.01).build_spec(project, snap)
    assert [r.language for r in spec.rows] == ["A", OTHER_LABEL]
    assert spec.rows[1].code == "5"
    assert spec.rows[1].color == OTHER_COLOR


def test_two_small_languages_share_one_other_row(project, make_snapshot):
    snap = make_snapshot([LanguageMetric("A", code=1000), LanguageMetric("B", code=5), LanguageMetric("C", code=1)])
    svg = SvgRenderer().render(project, snap).decode()
    assert len(re.findall(r'<g id="row-\d+">', svg)) == 2
    assert f">{OTHER_LABEL} " in svg
    assert ">B " not in svg


def test_threshold_is_strict(project, make_snapshot):
    snap = make_snapshot([LanguageMetric("A", code=99), LanguageMetric("B", code=1)])
    spec = SvgRenderer(other_threshold=0.01).build_spec(project, snap)
    assert [r.language for r in spec.rows] == ["A", "B"]


def test_color_is_stable_across_positions(project, make_snapshot):
    first = SvgRenderer().build_spec(project, make_snapshot(
        [LanguageMetric("Go", code=50), LanguageMetric("Python", code=40)]))
    second = SvgRenderer().build_spec(project, make_snapshot(
        [LanguageMetric("Python", code=90), LanguageMetric("Go", code=10), LanguageMetric("C", code=5)]))
    assert first.palette_assignment["Go"] == second.palette_assignment["Go"]
    assert first.palette_assignment["Python"] == second.palette_assignment["Python"]
    assert color_for("Go") in PALETTE


def test_empty_snapshot_is_rejected(project, make_snapshot):
    with pytest.raises(EmptySnapshot):
        SvgRenderer().render(project, make_snapshot([]))


def test_names_are_escaped(make_snapshot):
    project = Project("acme", "widget", title="<script>alert(1)</script>")
    svg = SvgRenderer().render(project, make_snapshot([LanguageMetric("C<&>", code=3)])).decode()
    assert "<script>" not in svg
    assert "&lt;script&gt;" in svg
    assert "C&lt;&amp;&gt;" in svg


def test_zero_code_language_gets_empty_bar(project, make_snapshot):
    snap = make_snapshot([LanguageMetric("Go", code=10), LanguageMetric("Text", code=0, blank=4)])
    spec = SvgRenderer(other_threshold=0).build_spec(project, snap)
    assert [r.language for r in spec.rows] == ["Go", "Text"]
    assert spec.rows[1].bar_w == "0.00"
    assert spec.rows[0].bar_w == f"{SvgRenderer().row_width:.2f}"


def test_all_zero_code_does_not_divide_by_zero(project, make_snapshot):
    snap = make_snapshot([LanguageMetric("Text", files=1, blank=3)])
    spec = SvgRenderer().build_spec(project, snap)
    assert spec.rows[0].bar_w == "0.00"
    assert spec.rows[0].share == "0.0%"


def test_max_rows_folds_overflow_into_other():
    metrics = [LanguageMetric(f"L{i}", code=100 - i) for i in range(6)]
    kept, other = group_long_tail(metrics, threshold=0, max_rows=4)
    assert [m.language for m in kept] == ["L0", "L1", "L2"]
    assert other.language == OTHER_LABEL
    assert other.code == sum(100 - i for i in range(3, 6))


def test_nothing_folded_means_no_other_bucket():
    kept, other = group_long_tail([LanguageMetric("Go", code=3)])
    assert [m.language for m in kept] == ["Go"]
    assert other is None


def test_language_named_like_the_bucket_keeps_its_own_colour(project, make_snapshot):
    snap = make_snapshot([
        LanguageMetric("Go", code=995),
        LanguageMetric(OTHER_LABEL, code=400),
        LanguageMetric("Tcl", code=1),
    ])
    spec = SvgRenderer().build_spec(project, snap)
    assert [(r.language, r.color) for r in spec.rows] == [
        ("Go", color_for("Go")),
        (OTHER_LABEL, color_for(OTHER_LABEL)),
        (OTHER_LABEL, OTHER_COLOR),
    ]
    assert spec.palette_assignment == {"Go": color_for("Go"), OTHER_LABEL: color_for(OTHER_LABEL)}
    assert spec.rows[2].code == "1"


def test_row_count_matches_height(project, make_snapshot):
    renderer = SvgRenderer(max_rows=3, other_threshold=0)
    snap = make_snapshot([LanguageMetric(n, code=c) for n, c in [("A", 9), ("B", 8), ("C", 7), ("D", 6)]])
    svg = renderer.render(project, snap).decode()
    assert len(re.findall(r'<g id="row-\d+">', svg)) == 3
    height = renderer.header_h + 3 * renderer.row_h + renderer.padding
    assert f'height="{height}"' in svg


def test_write_svg_replaces_atomically(tmp_path, project):
    target = write_svg(tmp_path, project, b"<svg>one</svg>")
    assert target == output_path(tmp_path, project) == tmp_path / "acme" / "widget.svg"
    write_svg(tmp_path, project, b"<svg>two</svg>")
    assert target.read_bytes() == b"<svg>two</svg>"
    assert sorted(p.name for p in target.parent.iterdir()) == ["widget.svg"]
    assert target.stat().st_mode & 0o777 == 0o644
