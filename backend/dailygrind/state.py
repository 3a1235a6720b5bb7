from __future__ import annotations

import datetime as dt
import logging
from threading import RLock
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import Settings
from .errors import NotFound
from .records import ProjectRecord, TimeEntryDraft, TimeEntryRecord, UserRecord
from .repository import PROJECTS, TIME_ENTRIES, Subscription, TimeTrackingRepository
from .storage import FlushResult, LocalStore, Outbox
from .timer import Scheduler, TimerStateMachine

logger = logging.getLogger(__name__)

UTC = dt.timezone.utc


def resolve_timezone(name: Optional[str]) -> dt.tzinfo:
    if not name or name.upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone %r, falling back to UTC", name)
        return UTC


class Workspace:
    """Everything the service holds for one signed-in user.

    The project and entry caches are replaced wholesale whenever the
    repository pushes a new snapshot; ``version`` counts those replacements.
    """

    def __init__(
        self,
        user_id: str,
        repository: TimeTrackingRepository,
        store: LocalStore,
        *,
        scheduler: Optional[Scheduler] = None,
        tick_interval: float = 1.0,
        clock: Optional[Callable[[], dt.datetime]] = None,
    ) -> None:
        self.user_id = user_id
        self.repository = repository
        self._lock = RLock()
        self._projects: List[ProjectRecord] = []
        self._entries: List[TimeEntryRecord] = []
        self.version = 0
        self._subscriptions: List[Subscription] = []
        self.outbox = Outbox(store, f"outbox-{user_id}")
        timer_options = {"scheduler": scheduler, "tick_interval": tick_interval}
        if clock is not None:
            timer_options["clock"] = clock
        self.timer = TimerStateMachine(
            user_id,
            store,
            self.outbox,
            self._deliver,
            self.has_project,
            **timer_options,
        )
        self.closed = False

    @property
    def projects(self) -> List[ProjectRecord]:
        with self._lock:
            return list(self._projects)

    @property
    def entries(self) -> List[TimeEntryRecord]:
        with self._lock:
            return list(self._entries)

    def open(self) -> "Workspace":
        self._subscriptions.append(self.repository.watch(PROJECTS, self.user_id, self._on_projects))
        self._subscriptions.append(self.repository.watch(TIME_ENTRIES, self.user_id, self._on_entries))
        self.timer.restore()
        result = self.timer.flush_outbox()
        if result.remaining:
            logger.warning("%d timer entries for %s are still waiting for delivery", result.remaining, self.user_id)
        return self

    def close(self, discard_timer: bool = False) -> None:
        if discard_timer:
            self.timer.discard()
        self.timer.close()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        self.closed = True

    def _on_projects(self, snapshot: List[ProjectRecord]) -> None:
        with self._lock:
            self._projects = list(snapshot)
            self.version += 1

    def _on_entries(self, snapshot: List[TimeEntryRecord]) -> None:
        with self._lock:
            self._entries = list(snapshot)
            self.version += 1

    def _deliver(self, draft: TimeEntryDraft) -> str:
        return self.repository.create_time_entry(draft.to_fields())

    def has_project(self, project_id: str) -> bool:
        return self.project(project_id) is not None

    def project(self, project_id: str) -> Optional[ProjectRecord]:
        with self._lock:
            for project in self._projects:
                if project.id == project_id:
                    return project
        return None

    def require_project(self, project_id: str) -> ProjectRecord:
        project = self.project(project_id)
        if project is None:
            raise NotFound("Project not found")
        return project

    def entry(self, entry_id: str) -> Optional[TimeEntryRecord]:
        with self._lock:
            for entry in self._entries:
                if entry.id == entry_id:
                    return entry
        return None

    def require_entry(self, entry_id: str) -> TimeEntryRecord:
        entry = self.entry(entry_id)
        if entry is None:
            raise NotFound("Time entry not found")
        return entry

    def bucket_project(self) -> Optional[ProjectRecord]:
        with self._lock:
            for project in self._projects:
                if project.is_bucket:
                    return project
        return None

    def flush_outbox(self) -> FlushResult:
        return self.timer.flush_outbox()


class AppState:
    """Registry of per-user workspaces, shared by all requests of one app."""

    def __init__(
        self,
        repository: TimeTrackingRepository,
        store: LocalStore,
        base_settings: Settings,
        *,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Callable[[], dt.datetime]] = None,
    ) -> None:
        self._lock = RLock()
        self.repository = repository
        self.store = store
        self.settings = base_settings
        self.scheduler = scheduler
        self.clock = clock
        self.tz = resolve_timezone(base_settings.timezone)
        self._workspaces: Dict[str, Workspace] = {}

    def now(self) -> dt.datetime:
        if self.clock is not None:
            return self.clock()
        return dt.datetime.now(UTC)

    def get(self, user_id: str) -> Optional[Workspace]:
        with self._lock:
            return self._workspaces.get(user_id)

    def workspace(self, user_id: str) -> Workspace:
        with self._lock:
            workspace = self._workspaces.get(user_id)
            if workspace is None:
                workspace = Workspace(
                    user_id,
                    self.repository,
                    self.store,
                    scheduler=self.scheduler,
                    tick_interval=self.settings.tick_interval_seconds,
                    clock=self.clock,
                )
                workspace.open()
                self._workspaces[user_id] = workspace
                logger.info("Opened workspace for %s", user_id)
            return workspace

    def handle_auth_change(self, user_id: str, user: Optional[UserRecord]) -> None:
        if user is not None:
            self.workspace(user_id)
            return
        with self._lock:
            workspace = self._workspaces.pop(user_id, None)
        if workspace is not None:
            workspace.close(discard_timer=True)
            logger.info("Closed workspace for %s after sign-out", user_id)

    def close(self) -> None:
        with self._lock:
            workspaces = list(self._workspaces.values())
            self._workspaces.clear()
        for workspace in workspaces:
            workspace.close()


__all__ = ["AppState", "Workspace", "resolve_timezone"]
