"""Plain value objects passed between the repository, the workspace cache and the views."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .durations import parse_timestamp


@dataclass(frozen=True, slots=True)
class UserRecord:
    """An authenticated account."""

    id: str
    email: str
    created_at: Optional[dt.datetime] = None


@dataclass(frozen=True, slots=True)
class ProjectRecord:
    """A project as seen by its owner."""

    id: str
    owner_id: str
    name: str
    description: str = ""
    team_id: Optional[str] = None
    is_bucket: bool = False
    created_at: Optional[dt.datetime] = None


@dataclass(frozen=True, slots=True)
class TimeEntryRecord:
    """A persisted, completed interval of work against a project."""

    id: str
    owner_id: str
    project_id: str
    description: str
    start_time: Optional[dt.datetime]
    end_time: Optional[dt.datetime]


@dataclass(frozen=True, slots=True)
class TimeEntryDraft:
    """A completed timer session waiting in the outbox for delivery."""

    id: str
    owner_id: str
    project_id: str
    description: str
    start_time: dt.datetime
    end_time: dt.datetime
    created_at: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))

    def to_fields(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "project_id": self.project_id,
            "description": self.description,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "project_id": self.project_id,
            "description": self.description,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "TimeEntryDraft":
        start = parse_timestamp(data["start_time"])
        end = parse_timestamp(data["end_time"])
        created = parse_timestamp(data.get("created_at")) or dt.datetime.now(dt.timezone.utc)
        if start is None or end is None:
            raise ValueError("Outbox entry is missing its start or end time")
        return cls(
            id=str(data["id"]),
            owner_id=str(data["owner_id"]),
            project_id=str(data["project_id"]),
            description=str(data["description"]),
            start_time=start,
            end_time=end,
            created_at=created,
        )


__all__ = ["ProjectRecord", "TimeEntryDraft", "TimeEntryRecord", "UserRecord"]
