from __future__ import annotations

import datetime as dt
import hashlib
import logging
import uuid
from pathlib import Path
from threading import RLock
from typing import Iterable, List, Optional, Tuple

from fastapi import HTTPException, status
from openpyxl import Workbook
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import cm
from reportlab.pdfgen import canvas
from sqlalchemy.orm import Session

from .aggregation import (
    ActivityGroup,
    DayOverview,
    DayTotal,
    ExportRow,
    daily_limit_crossed,
    day_overview,
    entries_for_project,
    entries_on_date,
    export_rows,
    group_projects_by_activity,
    render_csv,
    week_overview,
    weekly_entries,
)
from .config import Settings
from .durations import format_duration, parse_timestamp, total_duration
from .models import ExportRecord
from .records import ProjectRecord, TimeEntryRecord
from .schemas import (
    InternalActivityRequest,
    InternalActivityTimerRequest,
    ProjectCreateRequest,
    ProjectUpdateRequest,
    TimeEntryCreateRequest,
    TimeEntryUpdateRequest,
)
from .state import Workspace
from .summarizer import (
    NO_WEEKLY_ENTRIES,
    SummarizerClient,
    TaskSuggestions,
    WeeklyReport,
    format_entries_for_suggestions,
    format_entries_for_summary,
)
from .timer import Running, StopResult

logger = logging.getLogger(__name__)

UTC = dt.timezone.utc

ACTIVITY_TYPES = ("Practicing", "Checking")
EXPORT_FORMATS = ("csv", "xlsx", "pdf")

_bucket_lock = RLock()


def _now() -> dt.datetime:
    return dt.datetime.now(UTC)


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------
def list_projects(workspace: Workspace, include_bucket: bool = False) -> List[ProjectRecord]:
    projects = workspace.projects
    if include_bucket:
        return projects
    return [project for project in projects if not project.is_bucket]


def create_project(workspace: Workspace, payload: ProjectCreateRequest) -> ProjectRecord:
    name = (payload.name or "").strip()
    if not name:
        raise _bad_request("Project name is required.")
    project_id = workspace.repository.create_project(
        {
            "owner_id": workspace.user_id,
            "name": name,
            "description": (payload.description or "").strip(),
            "team_id": payload.team_id,
            "created_at": workspace.timer.now(),
        }
    )
    logger.info("Created project %s for %s", project_id, workspace.user_id)
    return workspace.require_project(project_id)


def update_project(workspace: Workspace, project_id: str, payload: ProjectUpdateRequest) -> ProjectRecord:
    workspace.require_project(project_id)
    changes = payload.model_dump(exclude_unset=True)
    if "name" in changes and not changes["name"]:
        raise _bad_request("Project name is required.")
    if "description" in changes and changes["description"] is None:
        changes["description"] = ""
    return workspace.repository.update_project(project_id, changes)


def delete_project(workspace: Workspace, project_id: str) -> int:
    workspace.require_project(project_id)
    state = workspace.timer.state
    if isinstance(state, Running) and state.project_id == project_id:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Stop the running timer before deleting its project.",
        )
    return workspace.repository.delete_project(project_id)


def get_or_create_bucket_project(workspace: Workspace, app_settings: Settings) -> ProjectRecord:
    with _bucket_lock:
        existing = workspace.bucket_project() or workspace.repository.find_bucket_project(workspace.user_id)
        if existing is not None:
            return existing
        project_id = workspace.repository.create_project(
            {
                "owner_id": workspace.user_id,
                "name": app_settings.bucket_project_name,
                "description": app_settings.bucket_project_description,
                "is_bucket": True,
                "created_at": workspace.timer.now(),
            }
        )
        logger.info("Created internal activities project %s for %s", project_id, workspace.user_id)
        return workspace.require_project(project_id)


# ---------------------------------------------------------------------------
# Time entries
# ---------------------------------------------------------------------------
def list_entries(
    workspace: Workspace,
    project_id: Optional[str] = None,
    day: Optional[dt.date] = None,
    tz: dt.tzinfo = UTC,
) -> List[TimeEntryRecord]:
    entries = workspace.entries
    if project_id is not None:
        workspace.require_project(project_id)
        entries = entries_for_project(entries, project_id)
    if day is not None:
        entries = entries_on_date(entries, day, tz)
    return sorted(entries, key=lambda entry: entry.start_time, reverse=True)


def _validated_interval(start: Optional[dt.datetime], end: Optional[dt.datetime]) -> Tuple[dt.datetime, dt.datetime]:
    start_at = parse_timestamp(start)
    end_at = parse_timestamp(end)
    if start_at is None or end_at is None:
        raise _bad_request("Start and end time are required.")
    if end_at <= start_at:
        raise _bad_request("End date and time must be after start date and time.")
    return start_at, end_at


def daily_limit_warning(limit_hours: float) -> str:
    return f"You have logged more than {limit_hours:g} hours today. Remember to take a break."


def create_time_entry(
    workspace: Workspace,
    payload: TimeEntryCreateRequest,
    *,
    now: Optional[dt.datetime] = None,
    tz: dt.tzinfo = UTC,
    limit_hours: float = 8,
) -> Tuple[TimeEntryRecord, Optional[str]]:
    description = (payload.description or "").strip()
    if not description:
        raise _bad_request("Please describe what you worked on.")
    start_at, end_at = _validated_interval(payload.start_time, payload.end_time)
    project = workspace.require_project(payload.project_id)
    candidate = TimeEntryRecord(
        id="",
        owner_id=workspace.user_id,
        project_id=project.id,
        description=description,
        start_time=start_at,
        end_time=end_at,
    )
    crossed = daily_limit_crossed(workspace.entries, candidate, now or _now(), tz, limit_hours)
    entry_id = workspace.repository.create_time_entry(
        {
            "owner_id": workspace.user_id,
            "project_id": project.id,
            "description": description,
            "start_time": start_at,
            "end_time": end_at,
        }
    )
    warning = daily_limit_warning(limit_hours) if crossed else None
    if warning:
        logger.info("Daily limit of %sh crossed for %s", limit_hours, workspace.user_id)
    return workspace.require_entry(entry_id), warning


def update_time_entry(workspace: Workspace, entry_id: str, payload: TimeEntryUpdateRequest) -> TimeEntryRecord:
    entry = workspace.require_entry(entry_id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "project_id" in changes:
        workspace.require_project(changes["project_id"])
    if "description" in changes:
        changes["description"] = changes["description"].strip()
        if not changes["description"]:
            raise _bad_request("Please describe what you worked on.")
    if "start_time" in changes or "end_time" in changes:
        start_at, end_at = _validated_interval(
            changes.get("start_time", entry.start_time),
            changes.get("end_time", entry.end_time),
        )
        changes["start_time"] = start_at
        changes["end_time"] = end_at
    if not changes:
        return entry
    return workspace.repository.update_time_entry(entry_id, changes)


def delete_time_entry(workspace: Workspace, entry_id: str) -> None:
    workspace.require_entry(entry_id)
    workspace.repository.delete_time_entry(entry_id)


# ---------------------------------------------------------------------------
# Internal activities
# ---------------------------------------------------------------------------
def _activity_description(activity_type: str, description: str) -> str:
    if activity_type not in ACTIVITY_TYPES:
        raise _bad_request("Unsupported activity type")
    cleaned = (description or "").strip()
    if not cleaned:
        raise _bad_request("Please describe the activity.")
    return f"{activity_type}: {cleaned}"


def log_internal_activity(
    workspace: Workspace,
    app_settings: Settings,
    payload: InternalActivityRequest,
    *,
    now: Optional[dt.datetime] = None,
    tz: dt.tzinfo = UTC,
) -> Tuple[TimeEntryRecord, Optional[str]]:
    description = _activity_description(payload.activity_type, payload.description)
    _validated_interval(payload.start_time, payload.end_time)
    bucket = get_or_create_bucket_project(workspace, app_settings)
    request = TimeEntryCreateRequest(
        project_id=bucket.id,
        description=description,
        start_time=payload.start_time,
        end_time=payload.end_time,
    )
    return create_time_entry(workspace, request, now=now, tz=tz, limit_hours=app_settings.daily_limit_hours)


def start_internal_activity_timer(
    workspace: Workspace,
    app_settings: Settings,
    payload: InternalActivityTimerRequest,
) -> Running:
    description = _activity_description(payload.activity_type, payload.description)
    bucket = get_or_create_bucket_project(workspace, app_settings)
    return workspace.timer.start(bucket.id, description)


# ---------------------------------------------------------------------------
# Timer
# ---------------------------------------------------------------------------
def start_timer(workspace: Workspace, project_id: str, description: str) -> Running:
    return workspace.timer.start(project_id, description)


def stop_timer(
    workspace: Workspace,
    *,
    now: Optional[dt.datetime] = None,
    tz: dt.tzinfo = UTC,
    limit_hours: float = 8,
) -> Tuple[Optional[StopResult], Optional[str]]:
    result = workspace.timer.stop()
    warning = None
    if result is not None and result.entry is not None:
        logger.info(
            "Timer stopped for %s after %s (delivered=%s)",
            workspace.user_id,
            format_duration(total_duration([result.entry])),
            result.delivered,
        )
        if daily_limit_crossed(workspace.entries, result.entry, now or _now(), tz, limit_hours):
            warning = daily_limit_warning(limit_hours)
            logger.info("Daily limit of %sh crossed for %s", limit_hours, workspace.user_id)
    return result, warning


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------
def sidebar_groups(workspace: Workspace, now: Optional[dt.datetime] = None, tz: dt.tzinfo = UTC) -> List[ActivityGroup]:
    return group_projects_by_activity(workspace.projects, workspace.entries, now or _now(), tz)


def day_view(workspace: Workspace, day: dt.date, tz: dt.tzinfo = UTC) -> DayOverview:
    return day_overview(workspace.entries, workspace.projects, day, tz)


def week_start(day: dt.date) -> dt.date:
    return day - dt.timedelta(days=day.weekday())


def week_view(
    workspace: Workspace,
    start: Optional[dt.date] = None,
    now: Optional[dt.datetime] = None,
    tz: dt.tzinfo = UTC,
) -> Tuple[dt.date, List[DayTotal]]:
    first = start or week_start((now or _now()).astimezone(tz).date())
    return first, week_overview(workspace.entries, first, tz)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------
def weekly_report(
    workspace: Workspace,
    client: SummarizerClient,
    now: Optional[dt.datetime] = None,
    tz: dt.tzinfo = UTC,
) -> WeeklyReport:
    recent = weekly_entries(workspace.entries, now or _now())
    if not recent:
        raise _bad_request(NO_WEEKLY_ENTRIES)
    text = format_entries_for_summary(recent, workspace.projects, tz)
    return client.weekly_summary(text)


def suggest_tasks(
    workspace: Workspace,
    client: SummarizerClient,
    project_id: str,
    tz: dt.tzinfo = UTC,
) -> TaskSuggestions:
    project = workspace.require_project(project_id)
    previous = format_entries_for_suggestions(entries_for_project(workspace.entries, project.id), tz)
    return client.suggest_tasks(project.description or project.name, previous)


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------
def _write_csv(path: Path, rows: Iterable[ExportRow]) -> None:
    path.write_text(render_csv(rows), encoding="utf-8")


def _write_pdf(path: Path, title: str, rows: Iterable[ExportRow]) -> None:
    pdf = canvas.Canvas(str(path), pagesize=A4)
    width, height = A4
    y = height - 2 * cm
    pdf.setTitle(title)
    pdf.setFont("Helvetica-Bold", 16)
    pdf.drawString(2 * cm, y, title)
    y -= 1.2 * cm
    pdf.setFont("Helvetica-Bold", 11)
    columns = [2 * cm, 7 * cm, 10 * cm]
    for x, header in zip(columns, ("Project", "Date", "Task")):
        pdf.drawString(x, y, header)
    pdf.drawRightString(width - 2 * cm, y, "Duration")
    y -= 0.8 * cm
    pdf.setFont("Helvetica", 10)
    for row in rows:
        pdf.drawString(columns[0], y, row.project_name[:30])
        pdf.drawString(columns[1], y, row.date)
        pdf.drawString(columns[2], y, row.description[:40])
        pdf.drawRightString(width - 2 * cm, y, row.duration)
        y -= 0.7 * cm
        if y < 2 * cm:
            pdf.showPage()
            y = height - 2 * cm
            pdf.setFont("Helvetica", 10)
    pdf.save()


def _write_xlsx(path: Path, rows: Iterable[ExportRow]) -> None:
    wb = Workbook()
    ws = wb.active
    ws.title = "Time Entries"
    ws.append(["Project Name", "Date", "Task Description", "Duration"])
    for row in rows:
        ws.append([row.project_name, row.date, row.description, row.duration])
    wb.save(path)


def _entries_in_range(
    entries: Iterable[TimeEntryRecord],
    start_date: Optional[dt.date],
    end_date: Optional[dt.date],
    tz: dt.tzinfo,
) -> List[TimeEntryRecord]:
    selected = []
    for entry in entries:
        started = parse_timestamp(entry.start_time)
        if started is None:
            continue
        day = started.astimezone(tz).date()
        if start_date and day < start_date:
            continue
        if end_date and day > end_date:
            continue
        selected.append(entry)
    return selected


def export_entries(
    db: Session,
    workspace: Workspace,
    export_dir: Path,
    export_format: str,
    start_date: Optional[dt.date] = None,
    end_date: Optional[dt.date] = None,
    tz: dt.tzinfo = UTC,
) -> ExportRecord:
    if export_format not in EXPORT_FORMATS:
        raise _bad_request("Unsupported export format")
    if start_date and end_date and end_date < start_date:
        raise _bad_request("End date must not be before start date.")

    selected = _entries_in_range(workspace.entries, start_date, end_date, tz)
    rows = export_rows(selected, workspace.projects, tz)

    export_dir.mkdir(parents=True, exist_ok=True)
    stamp = _now().strftime("%Y%m%d%H%M%S")
    filename = f"dailygrind_{stamp}_{uuid.uuid4().hex[:8]}.{export_format}"
    path = export_dir / filename

    if export_format == "csv":
        _write_csv(path, rows)
    elif export_format == "pdf":
        label = f"{start_date or 'all'} - {end_date or 'today'}"
        _write_pdf(path, f"Daily Grind Time Entries {label}", rows)
    else:
        _write_xlsx(path, rows)

    checksum = _checksum_file(path)
    export = ExportRecord(
        owner_id=workspace.user_id,
        format=export_format,
        entry_count=len(rows),
        path=str(path),
        checksum=checksum,
    )
    db.add(export)
    db.commit()
    db.refresh(export)
    logger.info("Exported %d entries for %s as %s", len(rows), workspace.user_id, export_format)
    return export


def list_exports(db: Session, owner_id: str) -> List[ExportRecord]:
    return (
        db.query(ExportRecord)
        .filter(ExportRecord.owner_id == owner_id)
        .order_by(ExportRecord.created_at.desc(), ExportRecord.id.desc())
        .all()
    )


def get_export(db: Session, owner_id: str, export_id: int) -> ExportRecord:
    export = db.get(ExportRecord, export_id)
    if not export or export.owner_id != owner_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Export not found")
    if not Path(export.path).exists():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Export file missing")
    return export


def _checksum_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            digest.update(chunk)
    return digest.hexdigest()
