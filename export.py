from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List

from reports import ENTRY_DATE_FORMAT, ReportEntry, SavedReport

DELIMITER = ","
EXPORT_EXTENSION = "csv"
EXPORT_MIMETYPE = "text/csv"

HEADER = [
    "Datum",
    "Auftrag Nr.",
    "Objekt oder Strasse",
    "Ort",
    "Std.",
    "Absenzen",
    "Überstd.",
    "Auslagen und Bemerkungen",
    "Auslagen Fr.",
    "Notizen",
]
HOURS_COLUMN = HEADER.index("Std.")


@dataclass(frozen=True)
class ReportTotals:
    hours: float
    absences: float
    overtime: float
    expenses: float

    @property
    def required_hours(self) -> float:
        return self.hours + self.absences


def report_totals(entries: Iterable[ReportEntry]) -> ReportTotals:
    hours = absences = overtime = expenses = 0.0
    for entry in entries:
        hours += entry.hours
        absences += entry.absences
        overtime += entry.overtime
        expenses += entry.expense_amount
    return ReportTotals(hours=hours, absences=absences, overtime=overtime, expenses=expenses)


def format_amount(value: float) -> str:
    return f"{value:.2f}"


def format_optional_amount(value: float) -> str:
    return format_amount(value) if value > 0 else ""


def quote_field(value: str) -> str:
    # Embedded quotes are left as they are.
    if DELIMITER in value:
        return f'"{value}"'
    return value


def _join(fields: List[str]) -> str:
    return DELIMITER.join(quote_field(value) for value in fields)


def entry_row(entry: ReportEntry) -> List[str]:
    return [
        entry.date.strftime(ENTRY_DATE_FORMAT) if entry.date else "",
        entry.order_number,
        entry.object,
        entry.location,
        format_amount(entry.hours),
        format_optional_amount(entry.absences),
        format_optional_amount(entry.overtime),
        entry.expense_note,
        format_optional_amount(entry.expense_amount),
        entry.notes,
    ]


def summary_rows(totals: ReportTotals) -> List[List[str]]:
    total_row = [""] * len(HEADER)
    total_row[0] = "Total"
    total_row[HOURS_COLUMN] = format_amount(totals.hours)
    total_row[HOURS_COLUMN + 1] = format_optional_amount(totals.absences)
    total_row[HOURS_COLUMN + 2] = format_optional_amount(totals.overtime)
    total_row[HOURS_COLUMN + 4] = format_amount(totals.expenses)

    required_row = [""] * len(HEADER)
    required_row[0] = "Total Sollstunden"
    required_row[HOURS_COLUMN] = format_amount(totals.required_hours)
    return [total_row, required_row]


def export_delimited(report: SavedReport) -> str:
    lines = [_join(HEADER)]
    lines.extend(_join(entry_row(entry)) for entry in report.entries)
    lines.extend(_join(row) for row in summary_rows(report_totals(report.entries)))
    return "\n".join(lines) + "\n"


def export_filename(report: SavedReport) -> str:
    name = re.sub(r"\s+", "_", report.name)
    period = re.sub(r"\s+", "_", report.period)
    return f"Arbeitsrapport_{name}_{period}.{EXPORT_EXTENSION}"
