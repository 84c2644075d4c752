from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

SAVED_REPORTS_KEY = "savedReports"
SAVED_AT_FORMAT = "%d.%m.%Y %H:%M"
ENTRY_DATE_FORMAT = "%d.%m.%Y"
DEFAULT_REPORT_NAME = "Unbenannter Bericht"
DEFAULT_REPORT_PERIOD = "Kein Zeitraum"


def to_amount(value: object) -> float:
    """Coerce a stored number to a non-negative float, zero when unusable."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        amount = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    if amount != amount or amount < 0:
        return 0.0
    return amount


def to_text(value: object) -> str:
    if value is None:
        return ""
    return value.strip() if isinstance(value, str) else str(value)


def parse_entry_date(value: object) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    for fmt in ("%Y-%m-%d", ENTRY_DATE_FORMAT):
        try:
            return datetime.strptime(raw[:10], fmt).date()
        except ValueError:
            continue
    return None


@dataclass(frozen=True)
class ReportEntry:
    date: Optional[date] = None
    order_number: str = ""
    object: str = ""
    location: str = ""
    hours: float = 0.0
    absences: float = 0.0
    overtime: float = 0.0
    expense_note: str = ""
    expense_amount: float = 0.0
    notes: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ReportEntry":
        return cls(
            date=parse_entry_date(payload.get("date")),
            order_number=to_text(payload.get("orderNumber")),
            object=to_text(payload.get("object")),
            location=to_text(payload.get("location")),
            hours=to_amount(payload.get("hours")),
            absences=to_amount(payload.get("absences")),
            overtime=to_amount(payload.get("overtime")),
            expense_note=to_text(payload.get("expenseNote", payload.get("expenses"))),
            expense_amount=to_amount(payload.get("expenseAmount")),
            notes=to_text(payload.get("notes")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat() if self.date else None,
            "orderNumber": self.order_number,
            "object": self.object,
            "location": self.location,
            "hours": self.hours,
            "absences": self.absences,
            "overtime": self.overtime,
            "expenseNote": self.expense_note,
            "expenseAmount": self.expense_amount,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class SavedReport:
    id: str
    name: str = DEFAULT_REPORT_NAME
    period: str = DEFAULT_REPORT_PERIOD
    saved_at: str = ""
    entries: Tuple[ReportEntry, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SavedReport":
        raw_entries = payload.get("entries") or []
        if not isinstance(raw_entries, list):
            raw_entries = []
        return cls(
            id=to_text(payload.get("id")),
            name=to_text(payload.get("name")) or DEFAULT_REPORT_NAME,
            period=to_text(payload.get("period")) or DEFAULT_REPORT_PERIOD,
            saved_at=to_text(payload.get("savedAt", payload.get("date"))),
            entries=tuple(ReportEntry.from_dict(item) for item in raw_entries if isinstance(item, Mapping)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "period": self.period,
            "savedAt": self.saved_at,
            "entries": [entry.to_dict() for entry in self.entries],
        }

    def stamped(self, moment: datetime) -> "SavedReport":
        return replace(self, saved_at=moment.strftime(SAVED_AT_FORMAT))


def decode_reports(raw: Optional[str]) -> List[SavedReport]:
    """Decode a serialized report list; anything unreadable counts as no reports."""
    if not raw:
        return []
    try:
        payload = json.loads(raw)
    except ValueError:
        logger.warning("Stored report list is not valid JSON; treating it as empty")
        return []
    if not isinstance(payload, list):
        logger.warning("Stored report list has unexpected type %s; treating it as empty", type(payload).__name__)
        return []
    return [SavedReport.from_dict(item) for item in payload if isinstance(item, Mapping)]


def encode_reports(reports: List[SavedReport]) -> str:
    return json.dumps([report.to_dict() for report in reports], ensure_ascii=False)


class ReportRepository(Protocol):
    def list(self) -> List[SavedReport]: ...

    def get(self, report_id: str) -> Optional[SavedReport]: ...

    def put(self, report: SavedReport) -> None: ...

    def delete(self, report_id: str) -> bool: ...


class KeyValueReportRepository:
    """Saved reports of one user, kept as a JSON list under a fixed key."""

    def __init__(self, conn: sqlite3.Connection, user_id: int, key: str = SAVED_REPORTS_KEY) -> None:
        self._conn = conn
        self._user_id = user_id
        self._key = key

    def _read(self) -> List[SavedReport]:
        row = self._conn.execute(
            "SELECT value FROM key_value_store WHERE user_id = ? AND key = ?",
            (self._user_id, self._key),
        ).fetchone()
        return decode_reports(row["value"] if row is not None else None)

    def _write(self, reports: List[SavedReport]) -> None:
        self._conn.execute(
            """
            INSERT INTO key_value_store (user_id, key, value) VALUES (?, ?, ?)
            ON CONFLICT(user_id, key) DO UPDATE SET value = excluded.value
            """,
            (self._user_id, self._key, encode_reports(reports)),
        )
        self._conn.commit()

    def list(self) -> List[SavedReport]:
        return self._read()

    def get(self, report_id: str) -> Optional[SavedReport]:
        for report in self._read():
            if report.id == report_id:
                return report
        return None

    def put(self, report: SavedReport) -> None:
        # A re-save drops the old version and appends the new one.
        reports = [item for item in self._read() if item.id != report.id]
        reports.append(report)
        self._write(reports)
        logger.info("Stored report %s for user %s (%d entries)", report.id, self._user_id, len(report.entries))

    def delete(self, report_id: str) -> bool:
        reports = self._read()
        remaining = [item for item in reports if item.id != report_id]
        if len(remaining) == len(reports):
            return False
        self._write(remaining)
        logger.info("Deleted report %s for user %s", report_id, self._user_id)
        return True
