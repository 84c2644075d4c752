from __future__ import annotations

import calendar
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from reports import ENTRY_DATE_FORMAT, SAVED_AT_FORMAT, SavedReport

ALL_OBJECTS = "all"

OBJECT_COLORS = [
    "#FF6384",
    "#36A2EB",
    "#FFCE56",
    "#4BC0C0",
    "#9966FF",
    "#FF9F40",
    "#8AC926",
    "#1982C4",
    "#6A4C93",
    "#F94144",
]

PIE_RADIUS = 100
PIE_CENTER = 150
PIE_SIZE = 300

Selection = Union[str, Iterable[str], None]


class Window(str, Enum):
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


@dataclass(frozen=True)
class ObjectHoursSlice:
    object: str
    hours: float
    color: str


@dataclass(frozen=True)
class ChartData:
    slices: List[ObjectHoursSlice]
    total: float
    unfiltered_total: float
    objects: List[str]
    selected: FrozenSet[str]


def subtract_months(moment: datetime, months: int) -> datetime:
    """Step back whole calendar months, clamping to the target month's last day."""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def window_cutoff(window: Union[Window, str], now: datetime) -> datetime:
    window = Window(window)
    if window is Window.WEEK:
        return now - timedelta(days=7)
    if window is Window.MONTH:
        return subtract_months(now, 1)
    return subtract_months(now, 12)


def parse_saved_at(value: str) -> Optional[datetime]:
    raw = (value or "").strip()
    for fmt in (SAVED_AT_FORMAT, ENTRY_DATE_FORMAT):
        try:
            return datetime.strptime(raw, fmt)
        except ValueError:
            continue
    return None


def hours_by_object(reports: Iterable[SavedReport], cutoff: datetime) -> Tuple[Dict[str, float], float]:
    per_object: Dict[str, float] = {}
    total = 0.0
    for report in reports:
        saved_at = parse_saved_at(report.saved_at)
        # Reports with an unreadable timestamp are kept.
        if saved_at is not None and not saved_at > cutoff:
            continue
        for entry in report.entries:
            if not entry.object or not entry.hours:
                continue
            per_object[entry.object] = per_object.get(entry.object, 0.0) + entry.hours
            total += entry.hours
    return per_object, total


def resolve_selection(selected: Selection, available: Iterable[str]) -> FrozenSet[str]:
    """Return the effective selection, falling back to every available object.

    A selection that is "all", empty, or names an object that is no longer
    available is reset to the full set. A smaller selection whose objects
    are all still available is kept as is, even though its size differs
    from the available set; resetting on size alone would make every
    partial selection fall back to all objects.
    """
    available_set = frozenset(available)
    if selected is None or (isinstance(selected, str) and selected == ALL_OBJECTS):
        return available_set
    chosen = frozenset([selected]) if isinstance(selected, str) else frozenset(selected)
    if not chosen or not chosen <= available_set:
        return available_set
    return chosen


def build_chart(
    reports: Iterable[SavedReport],
    window: Union[Window, str] = Window.MONTH,
    selected: Selection = ALL_OBJECTS,
    now: Optional[datetime] = None,
) -> ChartData:
    cutoff = window_cutoff(window, now or datetime.now())
    per_object, unfiltered_total = hours_by_object(reports, cutoff)
    objects = list(per_object)
    effective = resolve_selection(selected, objects)

    ranked = sorted(
        ((name, hours) for name, hours in per_object.items() if name in effective),
        key=lambda item: item[1],
        reverse=True,
    )
    slices = [
        ObjectHoursSlice(object=name, hours=hours, color=OBJECT_COLORS[rank % len(OBJECT_COLORS)])
        for rank, (name, hours) in enumerate(ranked)
    ]
    total = 0.0
    for item in slices:
        total += item.hours
    return ChartData(
        slices=slices,
        total=total,
        unfiltered_total=unfiltered_total,
        objects=objects,
        selected=effective,
    )


def aggregate(
    reports: Iterable[SavedReport],
    window: Union[Window, str],
    selected: Selection = ALL_OBJECTS,
    now: Optional[datetime] = None,
) -> Tuple[List[ObjectHoursSlice], float]:
    chart = build_chart(reports, window, selected, now)
    return chart.slices, chart.total


def share(hours: float, total: float) -> float:
    if not total:
        return 0.0
    return hours / total


def pie_slice_paths(slices: List[ObjectHoursSlice], total: float) -> List[Dict[str, str]]:
    paths = []
    current_angle = 0.0
    for item in slices:
        angle = share(item.hours, total) * 360
        start_angle = current_angle
        current_angle += angle
        start_rad = math.radians(start_angle - 90)
        end_rad = math.radians(current_angle - 90)
        x1 = PIE_CENTER + PIE_RADIUS * math.cos(start_rad)
        y1 = PIE_CENTER + PIE_RADIUS * math.sin(start_rad)
        x2 = PIE_CENTER + PIE_RADIUS * math.cos(end_rad)
        y2 = PIE_CENTER + PIE_RADIUS * math.sin(end_rad)
        large_arc = 1 if angle > 180 else 0
        path = " ".join(
            [
                f"M {PIE_CENTER} {PIE_CENTER}",
                f"L {x1:.3f} {y1:.3f}",
                f"A {PIE_RADIUS} {PIE_RADIUS} 0 {large_arc} 1 {x2:.3f} {y2:.3f}",
                "Z",
            ]
        )
        paths.append({"path": path, "color": item.color, "object": item.object})
    return paths
