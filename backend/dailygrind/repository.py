"""Persistence and live-sync of projects and time entries.

Callers talk to :class:`TimeTrackingRepository`. ``watch`` registers a
callback that receives the owner's full collection right away and again
after every committed change, which is what the workspace cache is built on.
"""

from __future__ import annotations

import abc
import datetime as dt
import logging
from collections import defaultdict
from contextlib import contextmanager
from threading import RLock
from typing import Any, Callable, Dict, Generator, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .database import db_session
from .durations import parse_timestamp
from .errors import NotFound, PersistenceError, ValidationFailed
from .models import Project, TimeEntry, new_id
from .records import ProjectRecord, TimeEntryRecord

logger = logging.getLogger(__name__)

UTC = dt.timezone.utc

PROJECTS = "projects"
TIME_ENTRIES = "time_entries"
COLLECTIONS = (PROJECTS, TIME_ENTRIES)

PROJECT_FIELDS = {"name", "description", "team_id"}
TIME_ENTRY_FIELDS = {"project_id", "description", "start_time", "end_time"}

SnapshotCallback = Callable[[List[Any]], None]


class Subscription:
    """Handle returned by ``watch``; call :meth:`unsubscribe` to stop deliveries."""

    def __init__(self, feed: "ChangeFeed", key: Tuple[str, str], callback: SnapshotCallback) -> None:
        self._feed = feed
        self.key = key
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._feed.remove(self)


class ChangeFeed:
    """Fan-out of collection snapshots to subscribers keyed by (collection, owner)."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._subscribers: Dict[Tuple[str, str], List[Subscription]] = defaultdict(list)

    def subscribe(self, collection: str, owner_id: str, callback: SnapshotCallback) -> Subscription:
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection}")
        subscription = Subscription(self, (collection, owner_id), callback)
        with self._lock:
            self._subscribers[subscription.key].append(subscription)
        return subscription

    def remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.key, [])
            if subscription in subscribers:
                subscribers.remove(subscription)

    def has_subscribers(self, collection: str, owner_id: str) -> bool:
        with self._lock:
            return bool(self._subscribers.get((collection, owner_id)))

    def publish(self, collection: str, owner_id: str, snapshot: List[Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get((collection, owner_id), []))
        for subscription in subscribers:
            if not subscription.active:
                continue
            try:
                subscription.callback(list(snapshot))
            except Exception:
                logger.exception("Subscriber for %s/%s failed", collection, owner_id)


class TimeTrackingRepository(abc.ABC):
    """Storage contract for projects and time entries."""

    def __init__(self) -> None:
        self.feed = ChangeFeed()

    @abc.abstractmethod
    def list_projects(self, owner_id: str) -> List[ProjectRecord]:
        ...

    @abc.abstractmethod
    def list_time_entries(self, owner_id: str, project_id: Optional[str] = None) -> List[TimeEntryRecord]:
        ...

    @abc.abstractmethod
    def get_project(self, project_id: str) -> Optional[ProjectRecord]:
        ...

    @abc.abstractmethod
    def get_time_entry(self, entry_id: str) -> Optional[TimeEntryRecord]:
        ...

    @abc.abstractmethod
    def find_bucket_project(self, owner_id: str) -> Optional[ProjectRecord]:
        ...

    @abc.abstractmethod
    def create_project(self, fields: Mapping[str, Any]) -> str:
        ...

    @abc.abstractmethod
    def update_project(self, project_id: str, changes: Mapping[str, Any]) -> ProjectRecord:
        ...

    @abc.abstractmethod
    def delete_project(self, project_id: str) -> int:
        """Delete a project and all of its entries as one unit; returns the entry count."""

    @abc.abstractmethod
    def create_time_entry(self, fields: Mapping[str, Any]) -> str:
        ...

    @abc.abstractmethod
    def update_time_entry(self, entry_id: str, changes: Mapping[str, Any]) -> TimeEntryRecord:
        ...

    @abc.abstractmethod
    def delete_time_entry(self, entry_id: str) -> None:
        ...

    def snapshot(self, collection: str, owner_id: str) -> List[Any]:
        if collection == PROJECTS:
            return list(self.list_projects(owner_id))
        if collection == TIME_ENTRIES:
            return list(self.list_time_entries(owner_id))
        raise ValueError(f"Unknown collection: {collection}")

    def watch(self, collection: str, owner_id: str, callback: SnapshotCallback) -> Subscription:
        subscription = self.feed.subscribe(collection, owner_id, callback)
        callback(self.snapshot(collection, owner_id))
        return subscription

    def publish(self, owner_id: str, *collections: str) -> None:
        for collection in collections:
            if self.feed.has_subscribers(collection, owner_id):
                self.feed.publish(collection, owner_id, self.snapshot(collection, owner_id))


def validate_interval(start: Any, end: Any) -> Tuple[dt.datetime, dt.datetime]:
    start_at = parse_timestamp(start)
    end_at = parse_timestamp(end)
    if start_at is None or end_at is None:
        raise ValidationFailed("Start and end time are required.")
    if end_at <= start_at:
        raise ValidationFailed("End date and time must be after start date and time.")
    return start_at.astimezone(UTC), end_at.astimezone(UTC)


def _from_db_datetime(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def project_record(row: Project) -> ProjectRecord:
    return ProjectRecord(
        id=row.id,
        owner_id=row.owner_id,
        name=row.name,
        description=row.description or "",
        team_id=row.team_id,
        is_bucket=bool(row.is_bucket),
        created_at=_from_db_datetime(row.created_at),
    )


def time_entry_record(row: TimeEntry) -> TimeEntryRecord:
    return TimeEntryRecord(
        id=row.id,
        owner_id=row.owner_id,
        project_id=row.project_id,
        description=row.description,
        start_time=_from_db_datetime(row.start_time),
        end_time=_from_db_datetime(row.end_time),
    )


class SqlRepository(TimeTrackingRepository):
    """SQLAlchemy-backed repository; each call is its own transaction."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        super().__init__()
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Generator[Session, None, None]:
        try:
            with db_session(self._session_factory) as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("Database operation failed: %s", exc)
            raise PersistenceError("The change could not be saved. Please try again.") from exc

    def list_projects(self, owner_id: str) -> List[ProjectRecord]:
        with self._transaction() as session:
            rows = (
                session.query(Project)
                .filter(Project.owner_id == owner_id)
                .order_by(Project.created_at.asc(), Project.id.asc())
                .all()
            )
            return [project_record(row) for row in rows]

    def list_time_entries(self, owner_id: str, project_id: Optional[str] = None) -> List[TimeEntryRecord]:
        with self._transaction() as session:
            query = session.query(TimeEntry).filter(TimeEntry.owner_id == owner_id)
            if project_id is not None:
                query = query.filter(TimeEntry.project_id == project_id)
            rows = query.order_by(TimeEntry.start_time.asc(), TimeEntry.id.asc()).all()
            return [time_entry_record(row) for row in rows]

    def get_project(self, project_id: str) -> Optional[ProjectRecord]:
        with self._transaction() as session:
            row = session.get(Project, project_id)
            return project_record(row) if row else None

    def get_time_entry(self, entry_id: str) -> Optional[TimeEntryRecord]:
        with self._transaction() as session:
            row = session.get(TimeEntry, entry_id)
            return time_entry_record(row) if row else None

    def find_bucket_project(self, owner_id: str) -> Optional[ProjectRecord]:
        with self._transaction() as session:
            row = (
                session.query(Project)
                .filter(Project.owner_id == owner_id, Project.is_bucket.is_(True))
                .order_by(Project.created_at.asc())
                .first()
            )
            return project_record(row) if row else None

    def create_project(self, fields: Mapping[str, Any]) -> str:
        name = (fields.get("name") or "").strip()
        if not name:
            raise ValidationFailed("Project name is required.")
        owner_id = fields["owner_id"]
        created_at = parse_timestamp(fields.get("created_at")) or dt.datetime.now(UTC)
        with self._transaction() as session:
            project = Project(
                id=fields.get("id") or new_id(),
                owner_id=owner_id,
                team_id=fields.get("team_id"),
                name=name,
                description=(fields.get("description") or "").strip(),
                is_bucket=bool(fields.get("is_bucket", False)),
                created_at=created_at.astimezone(UTC),
            )
            session.add(project)
            session.flush()
            project_id = project.id
        self.publish(owner_id, PROJECTS)
        return project_id

    def update_project(self, project_id: str, changes: Mapping[str, Any]) -> ProjectRecord:
        with self._transaction() as session:
            project = session.get(Project, project_id)
            if project is None:
                raise NotFound("Project not found")
            for key, value in changes.items():
                if key not in PROJECT_FIELDS:
                    continue
                if key == "name":
                    value = (value or "").strip()
                    if not value:
                        raise ValidationFailed("Project name is required.")
                if key == "description":
                    value = (value or "").strip()
                setattr(project, key, value)
            session.flush()
            record = project_record(project)
        self.publish(record.owner_id, PROJECTS)
        return record

    def delete_project(self, project_id: str) -> int:
        with self._transaction() as session:
            project = session.get(Project, project_id)
            if project is None:
                raise NotFound("Project not found")
            owner_id = project.owner_id
            removed = (
                session.query(TimeEntry)
                .filter(TimeEntry.project_id == project_id)
                .delete(synchronize_session=False)
            )
            session.delete(project)
        logger.info("Deleted project %s with %d time entries", project_id, removed)
        self.publish(owner_id, PROJECTS, TIME_ENTRIES)
        return removed

    def create_time_entry(self, fields: Mapping[str, Any]) -> str:
        description = (fields.get("description") or "").strip()
        if not description:
            raise ValidationFailed("Please describe what you worked on.")
        start_at, end_at = validate_interval(fields.get("start_time"), fields.get("end_time"))
        owner_id = fields["owner_id"]
        entry_id = fields.get("id") or new_id()
        with self._transaction() as session:
            existing = session.get(TimeEntry, entry_id)
            if existing is not None:
                if existing.owner_id != owner_id:
                    raise ValidationFailed("Time entry id is already in use.")
                # Replayed delivery from the outbox; already stored.
                return existing.id
            project = session.get(Project, fields.get("project_id"))
            if project is None or project.owner_id != owner_id:
                raise NotFound("Project not found")
            session.add(
                TimeEntry(
                    id=entry_id,
                    owner_id=owner_id,
                    project_id=project.id,
                    description=description,
                    start_time=start_at,
                    end_time=end_at,
                )
            )
        self.publish(owner_id, TIME_ENTRIES)
        return entry_id

    def update_time_entry(self, entry_id: str, changes: Mapping[str, Any]) -> TimeEntryRecord:
        with self._transaction() as session:
            entry = session.get(TimeEntry, entry_id)
            if entry is None:
                raise NotFound("Time entry not found")
            updates = {key: value for key, value in changes.items() if key in TIME_ENTRY_FIELDS}
            if "project_id" in updates:
                project = session.get(Project, updates["project_id"])
                if project is None or project.owner_id != entry.owner_id:
                    raise NotFound("Project not found")
                entry.project_id = project.id
            if "description" in updates:
                description = (updates["description"] or "").strip()
                if not description:
                    raise ValidationFailed("Please describe what you worked on.")
                entry.description = description
            if "start_time" in updates or "end_time" in updates:
                start_at, end_at = validate_interval(
                    updates.get("start_time", _from_db_datetime(entry.start_time)),
                    updates.get("end_time", _from_db_datetime(entry.end_time)),
                )
                entry.start_time = start_at
                entry.end_time = end_at
            session.flush()
            record = time_entry_record(entry)
        self.publish(record.owner_id, TIME_ENTRIES)
        return record

    def delete_time_entry(self, entry_id: str) -> None:
        with self._transaction() as session:
            entry = session.get(TimeEntry, entry_id)
            if entry is None:
                raise NotFound("Time entry not found")
            owner_id = entry.owner_id
            session.delete(entry)
        self.publish(owner_id, TIME_ENTRIES)


__all__ = [
    "COLLECTIONS",
    "ChangeFeed",
    "PROJECTS",
    "SqlRepository",
    "Subscription",
    "TIME_ENTRIES",
    "TimeTrackingRepository",
    "project_record",
    "time_entry_record",
    "validate_interval",
]
