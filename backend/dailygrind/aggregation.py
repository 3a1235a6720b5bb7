"""Derived views over a user's projects and time entries.

All functions are pure: they take the collections plus an explicit ``now``
and time zone and never touch storage. Calendar days are local to ``tz``.
"""

from __future__ import annotations

import csv
import datetime as dt
import io
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo

from .durations import entry_duration_ms, format_duration_for_export, parse_timestamp, total_duration

UTC = dt.timezone.utc

TODAY_LABEL = "Today"
YESTERDAY_LABEL = "Yesterday"
UNKNOWN_PROJECT_NAME = "Unknown Project"
CSV_HEADERS = ("Project Name", "Date", "Task Description", "Duration")

TimeZone = Union[dt.tzinfo, ZoneInfo]
DayLike = Union[dt.date, dt.datetime, str]


@dataclass(slots=True)
class ActivityGroup:
    label: str
    day: dt.date
    projects: List[Any] = field(default_factory=list)
    total_ms: int = 0


@dataclass(frozen=True, slots=True)
class ProjectBreakdownRow:
    project_id: str
    name: str
    minutes: float


@dataclass(slots=True)
class DayOverview:
    day: dt.date
    entries: List[Any]
    total_ms: int
    breakdown: List[ProjectBreakdownRow]


@dataclass(frozen=True, slots=True)
class DayTotal:
    day: dt.date
    total_ms: int


@dataclass(frozen=True, slots=True)
class ExportRow:
    project_name: str
    date: str
    description: str
    duration: str


def _local_date(value: Any, tz: TimeZone) -> Optional[dt.date]:
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return parsed.astimezone(tz).date()


def _as_day(day: DayLike, tz: TimeZone) -> dt.date:
    if isinstance(day, dt.datetime):
        return parse_timestamp(day).astimezone(tz).date()  # type: ignore[union-attr]
    if isinstance(day, dt.date):
        return day
    return dt.date.fromisoformat(day)


def _now(now: Optional[dt.datetime]) -> dt.datetime:
    return parse_timestamp(now) if now is not None else dt.datetime.now(UTC)  # type: ignore[return-value]


def _sort_key_start(entry: Any) -> dt.datetime:
    return parse_timestamp(entry.start_time) or dt.datetime.min.replace(tzinfo=UTC)


def entries_on_date(entries: Iterable[Any], day: DayLike, tz: TimeZone = UTC) -> List[Any]:
    """Entries whose start falls on ``day`` in the local calendar."""
    target = _as_day(day, tz)
    return [entry for entry in entries if _local_date(entry.start_time, tz) == target]


def entries_for_project(entries: Iterable[Any], project_id: str) -> List[Any]:
    return [entry for entry in entries if entry.project_id == project_id]


def entries_within(entries: Iterable[Any], start: dt.datetime, end: dt.datetime) -> List[Any]:
    start_at = parse_timestamp(start)
    end_at = parse_timestamp(end)
    selected: List[Any] = []
    for entry in entries:
        began = parse_timestamp(entry.start_time)
        if began is not None and start_at <= began <= end_at:
            selected.append(entry)
    return selected


def weekly_entries(entries: Iterable[Any], now: Optional[dt.datetime] = None, days: int = 7) -> List[Any]:
    current = _now(now)
    return entries_within(entries, current - dt.timedelta(days=days), current)


def group_label(day: dt.date, today: dt.date) -> str:
    if day == today:
        return TODAY_LABEL
    if day == today - dt.timedelta(days=1):
        return YESTERDAY_LABEL
    return f"{day:%B} {day.day}, {day.year}"


def _activity_date(project: Any, project_entries: Sequence[Any], today: dt.date, tz: TimeZone) -> dt.date:
    starts = [parse_timestamp(entry.start_time) for entry in project_entries]
    starts = [value for value in starts if value is not None]
    if starts:
        return max(starts).astimezone(tz).date()
    created = _local_date(project.created_at, tz)
    return created or today


def group_projects_by_activity(
    projects: Iterable[Any],
    entries: Iterable[Any],
    now: Optional[dt.datetime] = None,
    tz: TimeZone = UTC,
) -> List[ActivityGroup]:
    """Bucket navigable projects by the day of their latest activity.

    Every non-bucket project lands in exactly one group. Groups run Today,
    Yesterday, then older days newest first; members are ordered by name.
    """
    today = _now(now).astimezone(tz).date()
    yesterday = today - dt.timedelta(days=1)

    by_project: Dict[str, List[Any]] = defaultdict(list)
    for entry in entries:
        by_project[entry.project_id].append(entry)

    buckets: Dict[dt.date, List[Any]] = defaultdict(list)
    for project in projects:
        if getattr(project, "is_bucket", False):
            continue
        day = _activity_date(project, by_project.get(project.id, []), today, tz)
        buckets[day].append(project)

    def _order(day: dt.date) -> Tuple[int, int]:
        if day == today:
            return (0, 0)
        if day == yesterday:
            return (1, 0)
        return (2, -day.toordinal())

    groups: List[ActivityGroup] = []
    for day in sorted(buckets, key=_order):
        members = sorted(buckets[day], key=lambda project: (project.name, project.id))
        total_ms = sum(
            entry_duration_ms(entry)
            for project in members
            for entry in by_project.get(project.id, [])
            if _local_date(entry.start_time, tz) == day
        )
        groups.append(ActivityGroup(label=group_label(day, today), day=day, projects=members, total_ms=total_ms))
    return groups


def project_breakdown(
    entries: Iterable[Any],
    projects: Iterable[Any],
    day: DayLike,
    tz: TimeZone = UTC,
) -> List[ProjectBreakdownRow]:
    """Minutes per project on ``day``; projects without time that day are left out."""
    day_entries = entries_on_date(entries, day, tz)
    rows: List[ProjectBreakdownRow] = []
    for project in projects:
        duration = total_duration(entry for entry in day_entries if entry.project_id == project.id)
        if duration > 0:
            rows.append(ProjectBreakdownRow(project_id=project.id, name=project.name, minutes=duration / 60_000))
    return rows


def day_overview(
    entries: Iterable[Any],
    projects: Iterable[Any],
    day: DayLike,
    tz: TimeZone = UTC,
) -> DayOverview:
    entries = list(entries)
    target = _as_day(day, tz)
    day_entries = sorted(entries_on_date(entries, target, tz), key=_sort_key_start, reverse=True)
    return DayOverview(
        day=target,
        entries=day_entries,
        total_ms=total_duration(day_entries),
        breakdown=project_breakdown(day_entries, projects, target, tz),
    )


def week_overview(entries: Iterable[Any], start_day: DayLike, tz: TimeZone = UTC) -> List[DayTotal]:
    first = _as_day(start_day, tz)
    totals: Dict[dt.date, int] = defaultdict(int)
    for entry in entries:
        day = _local_date(entry.start_time, tz)
        if day is not None:
            totals[day] += entry_duration_ms(entry)
    days = [first + dt.timedelta(days=offset) for offset in range(7)]
    return [DayTotal(day=day, total_ms=totals.get(day, 0)) for day in days]


def daily_limit_crossed(
    existing: Iterable[Any],
    new_entry: Any,
    now: Optional[dt.datetime] = None,
    tz: TimeZone = UTC,
    limit_hours: float = 8,
) -> bool:
    """True when ``new_entry`` pushes today's total over the limit for the first time."""
    today = _now(now).astimezone(tz).date()
    if _local_date(new_entry.start_time, tz) != today:
        return False
    previous = total_duration(
        entry for entry in entries_on_date(existing, today, tz) if entry.id != new_entry.id
    )
    limit_ms = int(limit_hours * 3_600_000)
    updated = previous + entry_duration_ms(new_entry)
    return updated > limit_ms and previous <= limit_ms


def export_rows(entries: Iterable[Any], projects: Iterable[Any], tz: TimeZone = UTC) -> List[ExportRow]:
    names = {project.id: project.name for project in projects}
    rows: List[ExportRow] = []
    for entry in sorted(entries, key=_sort_key_start):
        if entry.start_time is None or entry.end_time is None:
            continue
        duration = entry_duration_ms(entry)
        if duration <= 0:
            continue
        rows.append(
            ExportRow(
                project_name=names.get(entry.project_id, UNKNOWN_PROJECT_NAME),
                date=_local_date(entry.start_time, tz).isoformat(),  # type: ignore[union-attr]
                description=entry.description,
                duration=format_duration_for_export(duration),
            )
        )
    return rows


def render_csv(rows: Iterable[ExportRow]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for row in rows:
        writer.writerow([row.project_name, row.date, row.description, row.duration])
    return "\ufeff" + buffer.getvalue()


__all__ = [
    "ActivityGroup",
    "DayOverview",
    "DayTotal",
    "ExportRow",
    "ProjectBreakdownRow",
    "daily_limit_crossed",
    "day_overview",
    "entries_for_project",
    "entries_on_date",
    "entries_within",
    "export_rows",
    "group_label",
    "group_projects_by_activity",
    "project_breakdown",
    "render_csv",
    "week_overview",
    "weekly_entries",
]
