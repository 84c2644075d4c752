from datetime import datetime, timedelta

import pytest

from aggregation import (
    ALL_OBJECTS,
    OBJECT_COLORS,
    Window,
    aggregate,
    build_chart,
    pie_slice_paths,
    resolve_selection,
    share,
    subtract_months,
    window_cutoff,
)
from reports import SAVED_AT_FORMAT, ReportEntry, SavedReport

NOW = datetime(2026, 10, 19, 12, 0)


def make_report(report_id: str, saved_at: datetime, *entries) -> SavedReport:
    return SavedReport(
        id=report_id,
        name="Anna",
        period="Oktober",
        saved_at=saved_at.strftime(SAVED_AT_FORMAT),
        entries=tuple(ReportEntry(object=name, hours=hours) for name, hours in entries),
    )


def test_week_window_excludes_older_reports() -> None:
    reports = [
        make_report("old", NOW - timedelta(days=10), ("A", 3)),
        make_report("new", NOW, ("A", 2), ("B", 1)),
    ]

    slices, total = aggregate(reports, "week", ALL_OBJECTS, now=NOW)

    assert [(item.object, item.hours) for item in slices] == [("A", 2), ("B", 1)]
    assert total == 3


def test_empty_report_list_yields_no_slices() -> None:
    slices, total = aggregate([], Window.MONTH, now=NOW)

    assert slices == []
    assert total == 0


def test_slice_hours_sum_to_total_for_every_selection() -> None:
    reports = [
        make_report("r1", NOW - timedelta(days=2), ("A", 1.25), ("B", 0.1), ("C", 4)),
        make_report("r2", NOW - timedelta(days=1), ("B", 0.2), ("C", 0.3), ("A", 2.5)),
    ]
    for selection in (ALL_OBJECTS, {"A"}, {"B", "C"}, {"A", "B", "C"}):
        slices, total = aggregate(reports, "month", selection, now=NOW)
        assert sum(item.hours for item in slices) == pytest.approx(total)


def test_slices_sorted_descending_with_stable_ties_and_ranked_colors() -> None:
    reports = [make_report("r1", NOW, ("X", 2), ("Y", 5), ("Z", 2))]

    slices, _ = aggregate(reports, "week", now=NOW)

    assert [item.object for item in slices] == ["Y", "X", "Z"]
    assert [item.color for item in slices] == OBJECT_COLORS[:3]


def test_palette_wraps_after_ten_objects() -> None:
    entries = [(f"O{index}", 20 - index) for index in range(12)]
    reports = [make_report("r1", NOW, *entries)]

    slices, _ = aggregate(reports, "week", now=NOW)

    assert slices[10].color == OBJECT_COLORS[0]
    assert slices[11].color == OBJECT_COLORS[1]


def test_unparseable_timestamp_is_included() -> None:
    report = SavedReport(id="r1", saved_at="yesterday-ish", entries=(ReportEntry(object="A", hours=4),))

    slices, total = aggregate([report], "week", now=NOW)

    assert [item.object for item in slices] == ["A"]
    assert total == 4


def test_report_at_cutoff_is_excluded() -> None:
    reports = [make_report("edge", NOW - timedelta(days=7), ("A", 1))]

    slices, total = aggregate(reports, "week", now=NOW)

    assert slices == []
    assert total == 0


def test_entries_without_object_or_hours_are_skipped() -> None:
    report = SavedReport(
        id="r1",
        saved_at=NOW.strftime(SAVED_AT_FORMAT),
        entries=(ReportEntry(object="", hours=3), ReportEntry(object="A", hours=0), ReportEntry(object="B", hours=1)),
    )

    chart = build_chart([report], "week", now=NOW)

    assert chart.objects == ["B"]
    assert chart.total == 1


def test_stale_selection_resets_to_all_objects() -> None:
    reports = [make_report("r1", NOW, ("A", 2), ("B", 1))]

    chart = build_chart(reports, "week", {"A", "Gone"}, now=NOW)

    assert chart.selected == frozenset({"A", "B"})
    assert [item.object for item in chart.slices] == ["A", "B"]


def test_valid_subset_filters_total_but_not_unfiltered_total() -> None:
    reports = [make_report("r1", NOW, ("A", 2), ("B", 1))]

    chart = build_chart(reports, "week", {"B"}, now=NOW)

    assert [item.object for item in chart.slices] == ["B"]
    assert chart.total == 1
    assert chart.unfiltered_total == 3


def test_resolve_selection_accepts_single_name_and_empty_sets() -> None:
    assert resolve_selection("A", ["A", "B"]) == frozenset({"A"})
    assert resolve_selection(set(), ["A", "B"]) == frozenset({"A", "B"})
    assert resolve_selection(None, []) == frozenset()


def test_month_cutoff_clamps_to_month_end() -> None:
    assert subtract_months(datetime(2026, 3, 31, 8, 0), 1) == datetime(2026, 2, 28, 8, 0)
    assert subtract_months(datetime(2024, 2, 29), 12) == datetime(2023, 2, 28)
    assert window_cutoff("month", datetime(2026, 1, 15)) == datetime(2025, 12, 15)


def test_unknown_window_raises() -> None:
    with pytest.raises(ValueError):
        window_cutoff("decade", NOW)


def test_share_with_zero_total_is_zero() -> None:
    assert share(5, 0) == 0
    assert share(1, 4) == 0.25


def test_pie_paths_mark_large_arcs() -> None:
    reports = [make_report("r1", NOW, ("A", 3), ("B", 1))]
    chart = build_chart(reports, "week", now=NOW)

    paths = pie_slice_paths(chart.slices, chart.total)

    assert [item["object"] for item in paths] == ["A", "B"]
    assert " 0 1 1 " in paths[0]["path"]
    assert " 0 0 1 " in paths[1]["path"]
    assert paths[0]["path"].startswith("M 150 150 L 150.000 50.000")


def test_year_window_keeps_eleven_months_and_drops_thirteen() -> None:
    reports = [
        make_report("old", subtract_months(NOW, 13), ("A", 3)),
        make_report("recent", subtract_months(NOW, 11), ("B", 2)),
    ]

    slices, total = aggregate(reports, "year", now=NOW)

    assert [(item.object, item.hours) for item in slices] == [("B", 2)]
    assert total == 2
