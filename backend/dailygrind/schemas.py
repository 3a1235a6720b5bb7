from __future__ import annotations

import datetime as dt
from typing import Any, List, Optional

from typing_extensions import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_serializer

from .durations import duration_ms, format_clock, format_duration, ms_to_hours

ActivityType = Literal["Practicing", "Checking"]
ExportFormat = Literal["csv", "xlsx", "pdf"]


def _serialize_datetime(value: dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    else:
        value = value.astimezone(dt.timezone.utc)
    return value.isoformat()


def _strip(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip()


class RegisterRequest(BaseModel):
    email: str
    password: str


class LoginRequest(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    email: str


class TokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    user: UserResponse


class ProjectCreateRequest(BaseModel):
    name: str
    description: str = ""
    team_id: Optional[str] = None

    @field_validator("name", "description", mode="before")
    @classmethod
    def _strip_text(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)


class ProjectUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    team_id: Optional[str] = None

    @field_validator("name", "description", mode="before")
    @classmethod
    def _strip_text(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)


class ProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    name: str
    description: str
    team_id: Optional[str] = None
    is_bucket: bool = False
    created_at: Optional[dt.datetime] = None

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "team_id": self.team_id,
            "is_bucket": self.is_bucket,
            "created_at": _serialize_datetime(self.created_at) if self.created_at else None,
        }


class TimeEntryCreateRequest(BaseModel):
    project_id: str
    description: str
    start_time: dt.datetime
    end_time: dt.datetime


class TimeEntryUpdateRequest(BaseModel):
    project_id: Optional[str] = None
    description: Optional[str] = None
    start_time: Optional[dt.datetime] = None
    end_time: Optional[dt.datetime] = None


class TimeEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    project_id: str
    description: str
    start_time: Optional[dt.datetime]
    end_time: Optional[dt.datetime]

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        elapsed = duration_ms(self.start_time, self.end_time)
        return {
            "id": self.id,
            "project_id": self.project_id,
            "description": self.description,
            "start_time": _serialize_datetime(self.start_time) if self.start_time else None,
            "end_time": _serialize_datetime(self.end_time) if self.end_time else None,
            "duration_ms": elapsed,
            "duration": format_duration(elapsed),
        }


class TimeEntryCreateResponse(BaseModel):
    entry: TimeEntryResponse
    warning: Optional[str] = None


class InternalActivityRequest(BaseModel):
    activity_type: ActivityType
    description: str
    start_time: dt.datetime
    end_time: dt.datetime


class InternalActivityTimerRequest(BaseModel):
    activity_type: ActivityType
    description: str


class TimerStartRequest(BaseModel):
    project_id: str
    description: str


class TimerStatusResponse(BaseModel):
    status: Literal["idle", "running"]
    project_id: Optional[str] = None
    description: Optional[str] = None
    start_time: Optional[dt.datetime] = None
    elapsed_seconds: int = 0

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "project_id": self.project_id,
            "description": self.description,
            "start_time": _serialize_datetime(self.start_time) if self.start_time else None,
            "elapsed_seconds": self.elapsed_seconds,
            "elapsed": format_clock(self.elapsed_seconds),
        }


class TimerStopResponse(BaseModel):
    entry_id: Optional[str] = None
    delivered: bool = False
    pending: int = 0
    error: Optional[str] = None
    warning: Optional[str] = None
    timer: TimerStatusResponse


class OutboxEntryResponse(BaseModel):
    id: str
    project_id: str
    description: str
    start_time: dt.datetime
    end_time: dt.datetime


class OutboxResponse(BaseModel):
    pending: List[OutboxEntryResponse] = Field(default_factory=list)


class OutboxFlushResponse(BaseModel):
    delivered: List[str] = Field(default_factory=list)
    dropped: List[str] = Field(default_factory=list)
    remaining: int = 0
    error: Optional[str] = None


class ActivityGroupResponse(BaseModel):
    label: str
    day: dt.date
    total_ms: int
    projects: List[ProjectResponse] = Field(default_factory=list)

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "day": self.day.isoformat(),
            "total_ms": self.total_ms,
            "total": format_duration(self.total_ms),
            "projects": [project._serialize() for project in self.projects],
        }


class SidebarResponse(BaseModel):
    groups: List[ActivityGroupResponse] = Field(default_factory=list)


class ProjectBreakdownResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    project_id: str
    name: str
    minutes: float


class DayOverviewResponse(BaseModel):
    day: dt.date
    total_ms: int
    entries: List[TimeEntryResponse] = Field(default_factory=list)
    breakdown: List[ProjectBreakdownResponse] = Field(default_factory=list)

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "day": self.day.isoformat(),
            "total_ms": self.total_ms,
            "total": format_duration(self.total_ms),
            "entries": [entry._serialize() for entry in self.entries],
            "breakdown": [row.model_dump() for row in self.breakdown],
        }


class DayTotalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    day: dt.date
    total_ms: int

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "day": self.day.isoformat(),
            "total_ms": self.total_ms,
            "hours": ms_to_hours(self.total_ms),
        }


class WeekOverviewResponse(BaseModel):
    start: dt.date
    days: List[DayTotalResponse] = Field(default_factory=list)


class ProjectHoursResponse(BaseModel):
    project_name: str
    hours: float


class WeeklyReportResponse(BaseModel):
    total_hours: float
    project_breakdown: List[ProjectHoursResponse] = Field(default_factory=list)
    summary: str
    highlights: List[str] = Field(default_factory=list)


class TaskSuggestionsResponse(BaseModel):
    suggested_tasks: List[str] = Field(default_factory=list)
    reasoning: str = ""


class ExportRequest(BaseModel):
    format: ExportFormat = "csv"
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None


class ExportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    format: str
    entry_count: int
    checksum: str
    created_at: dt.datetime

    @model_serializer(mode="plain", when_used="json")
    def _serialize(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "format": self.format,
            "entry_count": self.entry_count,
            "checksum": self.checksum,
            "created_at": _serialize_datetime(self.created_at),
        }
