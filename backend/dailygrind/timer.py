"""Single running timer per user.

The machine has two states, ``Idle`` and ``Running``. Elapsed time is always
``now - start_time``; nothing is accumulated, so a restart in between does not
drift. Stopping hands the finished session to the outbox first and only then
tries to deliver it, so the Idle transition never waits on the repository.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass
from threading import RLock
from typing import Any, Callable, List, Optional, Protocol, Union

from pydantic import ValidationError

from .durations import elapsed_seconds, parse_timestamp
from .errors import PersistenceError, TimerAlreadyRunning, ValidationFailed
from .models import new_id
from .records import TimeEntryDraft
from .storage import TIMER_SNAPSHOT_VERSION, FlushResult, LocalStore, Outbox, TimerSnapshot

logger = logging.getLogger(__name__)

UNDELIVERED_MESSAGE = (
    "Your time entry could not be saved yet. It stays queued and is sent again on the next "
    "timer stop, on sign-in, or when the outbox is flushed."
)

UTC = dt.timezone.utc

# Snapshots may come from a host whose clock runs slightly ahead.
FUTURE_TOLERANCE = dt.timedelta(minutes=5)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class Idle:
    pass


@dataclass(frozen=True, slots=True)
class Running:
    project_id: str
    description: str
    start_time: dt.datetime


TimerState = Union[Idle, Running]

IDLE = Idle()


@dataclass(frozen=True, slots=True)
class TimerEvent:
    """Notification for listeners; ``kind`` is started, stopped, discarded, restored or tick."""

    kind: str
    state: TimerState
    elapsed_seconds: int = 0


@dataclass(slots=True)
class StopResult:
    entry: Optional[TimeEntryDraft]
    delivered: bool
    error: Optional[str] = None
    pending: int = 0


class ScheduledTask(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def call_every(self, interval: float, callback: Callable[[], None]) -> ScheduledTask:
        ...


class _RepeatingTimer:
    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self.interval = interval
        self.callback = callback
        self._lock = threading.Lock()
        self._cancelled = False
        self._timer: Optional[threading.Timer] = None

    def start(self) -> "_RepeatingTimer":
        self._arm()
        return self

    def _arm(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            timer = threading.Timer(self.interval, self._fire)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _fire(self) -> None:
        with self._lock:
            if self._cancelled:
                return
        try:
            self.callback()
        except Exception:
            logger.exception("Timer tick callback failed")
        self._arm()

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class ThreadingScheduler:
    """Runs callbacks on daemon ``threading.Timer`` threads."""

    def call_every(self, interval: float, callback: Callable[[], None]) -> ScheduledTask:
        return _RepeatingTimer(interval, callback).start()


class TimerStateMachine:
    """Owns the single source of truth for one user's running timer."""

    def __init__(
        self,
        owner_id: str,
        store: LocalStore,
        outbox: Outbox,
        deliver: Callable[[TimeEntryDraft], Any],
        project_exists: Callable[[str], bool],
        *,
        clock: Callable[[], dt.datetime] = _utcnow,
        scheduler: Optional[Scheduler] = None,
        tick_interval: float = 1.0,
    ) -> None:
        self.owner_id = owner_id
        self.store = store
        self.outbox = outbox
        self._deliver = deliver
        self._project_exists = project_exists
        self._clock = clock
        self._scheduler = scheduler
        self._tick_interval = tick_interval
        self._lock = RLock()
        self._state: TimerState = IDLE
        self._task: Optional[ScheduledTask] = None
        self._generation = 0
        self._listeners: List[Callable[[TimerEvent], None]] = []
        self.elapsed_seconds = 0

    @property
    def snapshot_key(self) -> str:
        return f"timer-{self.owner_id}"

    @property
    def state(self) -> TimerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return isinstance(self._state, Running)

    @property
    def is_ticking(self) -> bool:
        return self._task is not None

    def now(self) -> dt.datetime:
        return parse_timestamp(self._clock())  # type: ignore[return-value]

    def elapsed(self, now: Optional[dt.datetime] = None) -> int:
        state = self._state
        if not isinstance(state, Running):
            return 0
        return elapsed_seconds(state.start_time, now or self.now())

    def add_listener(self, callback: Callable[[TimerEvent], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def _remove() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _remove

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def start(self, project_id: str, description: str) -> Running:
        cleaned = (description or "").strip()
        with self._lock:
            if isinstance(self._state, Running):
                raise TimerAlreadyRunning()
            if not cleaned:
                raise ValidationFailed("Please describe what you are working on.")
            if not project_id or not self._project_exists(project_id):
                raise ValidationFailed("Please select an existing project.")
            started = self.now()
            snapshot = TimerSnapshot(
                project_id=project_id,
                description=cleaned,
                start_time=started,
                saved_at=started,
            )
            try:
                self.store.save(self.snapshot_key, snapshot.model_dump(mode="json"))
            except OSError as exc:
                logger.error("Could not persist timer for %s: %s", self.owner_id, exc)
                raise PersistenceError("The timer could not be saved locally. Please try again.") from exc
            running = Running(project_id=project_id, description=cleaned, start_time=started)
            self._state = running
            self.elapsed_seconds = 0
            self._start_ticking()
            logger.info("Timer started for %s on project %s", self.owner_id, project_id)
            self._notify(TimerEvent("started", running))
            return running

    def stop(self) -> Optional[StopResult]:
        with self._lock:
            state = self._state
            if not isinstance(state, Running):
                return None
            ended = self.now()
            entry: Optional[TimeEntryDraft] = None
            if ended > state.start_time:
                entry = TimeEntryDraft(
                    id=new_id(),
                    owner_id=self.owner_id,
                    project_id=state.project_id,
                    description=state.description,
                    start_time=state.start_time,
                    end_time=ended,
                    created_at=ended,
                )
                self.outbox.enqueue(entry)
            else:
                logger.warning("Timer for %s stopped without elapsed time; nothing logged", self.owner_id)
            self._to_idle()
            self._notify(TimerEvent("stopped", IDLE))
            if entry is None:
                return StopResult(entry=None, delivered=False, error="No time elapsed; nothing was logged.")
            flushed = self.outbox.flush(self._deliver)
            delivered = entry.id in flushed.delivered
            error = None
            if not delivered:
                error = UNDELIVERED_MESSAGE
            return StopResult(entry=entry, delivered=delivered, error=error, pending=flushed.remaining)

    def discard(self) -> None:
        """Abandon a running session without logging it."""
        with self._lock:
            if not isinstance(self._state, Running):
                self._stop_ticking()
                return
            self._to_idle()
            logger.info("Running timer for %s discarded", self.owner_id)
            self._notify(TimerEvent("discarded", IDLE))

    def restore(self) -> TimerState:
        with self._lock:
            raw = self.store.load(self.snapshot_key)
            if raw is None:
                # Absent or unreadable; either way nothing usable remains on disk.
                self.store.clear(self.snapshot_key)
                return self._state
            try:
                snapshot = TimerSnapshot.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Discarding corrupt timer snapshot for %s: %s", self.owner_id, exc)
                self.store.clear(self.snapshot_key)
                return self._state
            if snapshot.version != TIMER_SNAPSHOT_VERSION:
                logger.warning(
                    "Discarding timer snapshot for %s with unsupported version %s",
                    self.owner_id,
                    snapshot.version,
                )
                self.store.clear(self.snapshot_key)
                return self._state
            start_time = parse_timestamp(snapshot.start_time)
            if start_time > self.now() + FUTURE_TOLERANCE:  # type: ignore[operator]
                logger.warning("Discarding timer snapshot for %s that starts in the future", self.owner_id)
                self.store.clear(self.snapshot_key)
                return self._state
            running = Running(project_id=snapshot.project_id, description=snapshot.description, start_time=start_time)  # type: ignore[arg-type]
            self._state = running
            self.elapsed_seconds = self.elapsed()
            self._start_ticking()
            logger.info("Restored running timer for %s started at %s", self.owner_id, start_time)
            self._notify(TimerEvent("restored", running, self.elapsed_seconds))
            return running

    def tick(self) -> int:
        with self._lock:
            if not isinstance(self._state, Running):
                return 0
            self.elapsed_seconds = self.elapsed()
            self._notify(TimerEvent("tick", self._state, self.elapsed_seconds))
            return self.elapsed_seconds

    def flush_outbox(self) -> FlushResult:
        return self.outbox.flush(self._deliver)

    def close(self) -> None:
        """Tear down the ticker; a running session stays persisted."""
        with self._lock:
            self._stop_ticking()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _to_idle(self) -> None:
        self._state = IDLE
        self.elapsed_seconds = 0
        self._stop_ticking()
        self.store.clear(self.snapshot_key)

    def _start_ticking(self) -> None:
        self._stop_ticking()
        if self._scheduler is None or self._tick_interval <= 0:
            return
        generation = self._generation

        def _on_tick() -> None:
            with self._lock:
                if generation != self._generation:
                    return
                self.tick()

        self._task = self._scheduler.call_every(self._tick_interval, _on_tick)

    def _stop_ticking(self) -> None:
        self._generation += 1
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def _notify(self, event: TimerEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Timer listener failed on %s event", event.kind)


__all__ = [
    "IDLE",
    "Idle",
    "Running",
    "ScheduledTask",
    "Scheduler",
    "StopResult",
    "ThreadingScheduler",
    "TimerEvent",
    "TimerState",
    "TimerStateMachine",
    "UNDELIVERED_MESSAGE",
]
