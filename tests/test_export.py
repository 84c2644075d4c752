import csv
import io
from datetime import date

from export import HEADER, export_delimited, export_filename, quote_field, report_totals
from reports import ReportEntry, SavedReport


def rows_of(text: str):
    return list(csv.reader(io.StringIO(text)))


def test_entry_row_formats_amounts_and_blanks_zeroes() -> None:
    report = SavedReport(
        id="r1",
        entries=(ReportEntry(date=date(2026, 10, 5), object="Inselweg 31", hours=5, absences=0, overtime=1.5, expense_amount=0),),
    )

    rows = rows_of(export_delimited(report))

    assert rows[0] == HEADER
    entry = rows[1]
    assert entry[0] == "05.10.2026"
    assert entry[4] == "5.00"
    assert entry[5] == ""
    assert entry[6] == "1.50"
    assert entry[8] == ""


def test_zero_hours_are_still_rendered() -> None:
    report = SavedReport(id="r1", entries=(ReportEntry(object="A"),))

    rows = rows_of(export_delimited(report))

    assert rows[1][4] == "0.00"


def test_field_with_comma_is_quoted_and_parses_back() -> None:
    report = SavedReport(id="r1", entries=(ReportEntry(object="Inselweg 31, Hurden", hours=2),))

    text = export_delimited(report)

    assert '"Inselweg 31, Hurden"' in text.splitlines()[1]
    assert rows_of(text)[1][2] == "Inselweg 31, Hurden"


def test_quotes_without_delimiter_are_left_alone() -> None:
    assert quote_field('Haus "Rot"') == 'Haus "Rot"'


def test_summary_rows_align_under_columns() -> None:
    report = SavedReport(
        id="r1",
        entries=(
            ReportEntry(object="A", hours=4, absences=2, expense_amount=12.5),
            ReportEntry(object="B", hours=3.5, overtime=0.5),
        ),
    )

    rows = rows_of(export_delimited(report))
    total_row, required_row = rows[-2], rows[-1]

    assert total_row == ["Total", "", "", "", "7.50", "2.00", "0.50", "", "12.50", ""]
    assert required_row == ["Total Sollstunden", "", "", "", "9.50", "", "", "", "", ""]


def test_empty_report_still_has_header_and_summaries() -> None:
    text = export_delimited(SavedReport(id="empty"))

    rows = rows_of(text)
    assert len(rows) == 3
    assert rows[1][4] == "0.00"
    assert rows[1][5] == ""
    assert rows[1][8] == "0.00"
    assert rows[2][4] == "0.00"
    assert text.endswith("\n")


def test_required_hours_is_hours_plus_absences() -> None:
    totals = report_totals([ReportEntry(hours=6, absences=2), ReportEntry(hours=1)])

    assert totals.required_hours == 9
    assert report_totals([]).required_hours == 0


def test_filename_replaces_whitespace() -> None:
    report = SavedReport(id="r1", name="Anna  Muster", period="01. - 15. October 2026")

    assert export_filename(report) == "Arbeitsrapport_Anna_Muster_01._-_15._October_2026.csv"
