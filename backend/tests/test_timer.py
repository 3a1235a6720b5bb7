from __future__ import annotations

import datetime as dt
import time

import pytest

from dailygrind.errors import PersistenceError, TimerAlreadyRunning, ValidationFailed
from dailygrind.storage import LocalStore, Outbox
from dailygrind.timer import IDLE, UNDELIVERED_MESSAGE, Running, ThreadingScheduler, TimerStateMachine

from fakes import FakeClock, InMemoryRepository, ManualScheduler

UTC = dt.timezone.utc
T0 = dt.datetime(2024, 1, 10, 9, 0, tzinfo=UTC)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture()
def project_id(repository: InMemoryRepository) -> str:
    return repository.create_project({"owner_id": "u1", "name": "Alpha"})


def _machine(repository: InMemoryRepository, store: LocalStore, clock: FakeClock, scheduler=None) -> TimerStateMachine:
    return TimerStateMachine(
        "u1",
        store,
        Outbox(store, "outbox-u1"),
        lambda draft: repository.create_time_entry(draft.to_fields()),
        lambda project_id: repository.get_project(project_id) is not None,
        clock=clock,
        scheduler=scheduler,
    )


@pytest.fixture()
def machine(repository, store, clock, scheduler) -> TimerStateMachine:
    return _machine(repository, store, clock, scheduler)


def test_start_tick_and_stop_produce_one_entry(machine, repository, clock, scheduler, project_id):
    events = []
    machine.add_listener(lambda event: events.append(event.kind))

    running = machine.start(project_id, "  Writing docs  ")
    assert running == Running(project_id=project_id, description="Writing docs", start_time=T0)
    assert machine.is_ticking

    clock.advance(seconds=125)
    scheduler.fire()
    assert machine.elapsed_seconds == 125
    assert machine.elapsed() == 125

    result = machine.stop()

    assert result is not None and result.delivered
    assert result.error is None
    assert machine.state == IDLE
    assert not machine.is_ticking
    assert scheduler.active == []
    stored = repository.list_time_entries("u1", project_id)
    assert len(stored) == 1
    assert stored[0].id == result.entry.id
    assert (stored[0].end_time - stored[0].start_time) == dt.timedelta(milliseconds=125_000)
    assert machine.store.load(machine.snapshot_key) is None
    assert events == ["started", "tick", "stopped"]


def test_second_start_is_rejected_without_touching_the_session(machine, clock, project_id, repository):
    other = repository.create_project({"owner_id": "u1", "name": "Beta"})
    machine.start(project_id, "First")
    clock.advance(seconds=30)

    with pytest.raises(TimerAlreadyRunning):
        machine.start(other, "Second")

    assert machine.state == Running(project_id=project_id, description="First", start_time=T0)
    assert machine.store.load(machine.snapshot_key)["description"] == "First"


def test_stop_when_idle_is_a_no_op(machine, repository):
    assert machine.stop() is None
    assert machine.state == IDLE
    assert repository.create_entry_calls == 0


@pytest.mark.parametrize(("description", "use_project"), [("   ", True), ("Work", False)])
def test_start_validation(machine, project_id, description, use_project):
    with pytest.raises(ValidationFailed):
        machine.start(project_id if use_project else "missing", description)
    assert machine.state == IDLE
    assert machine.store.load(machine.snapshot_key) is None


def test_snapshot_failure_keeps_timer_idle(machine, project_id, monkeypatch):
    def _broken_save(key, value):
        raise OSError("disk full")

    monkeypatch.setattr(machine.store, "save", _broken_save)

    with pytest.raises(PersistenceError):
        machine.start(project_id, "Work")
    assert machine.state == IDLE
    assert not machine.is_ticking


def test_restore_resumes_with_original_start_time(repository, store, clock, project_id):
    first = _machine(repository, store, clock)
    first.start(project_id, "Deep work")
    first.close()

    clock.advance(minutes=5)
    second = _machine(repository, store, clock, ManualScheduler())
    state = second.restore()

    assert state == Running(project_id=project_id, description="Deep work", start_time=T0)
    assert second.elapsed() == 300
    assert second.is_ticking


@pytest.mark.parametrize(
    "snapshot",
    [
        {"version": 99, "project_id": "p1", "description": "x", "start_time": T0.isoformat(), "saved_at": T0.isoformat()},
        {"version": 1, "project_id": "", "description": "x", "start_time": T0.isoformat(), "saved_at": T0.isoformat()},
        {"version": 1, "project_id": "p1", "description": "x", "start_time": "2024-01-10T09:00:00", "saved_at": T0.isoformat()},
        {"version": 1, "project_id": "p1", "description": "x", "start_time": "2024-01-11T09:00:00+00:00", "saved_at": T0.isoformat()},
        ["not", "a", "snapshot"],
    ],
)
def test_restore_discards_invalid_snapshots(machine, snapshot):
    machine.store.save(machine.snapshot_key, snapshot)

    assert machine.restore() == IDLE
    assert machine.store.load(machine.snapshot_key) is None


def test_restore_discards_unreadable_snapshot(machine):
    path = machine.store.directory / f"{machine.snapshot_key}.json"
    path.write_text("{not json", encoding="utf-8")

    assert machine.restore() == IDLE
    assert not path.exists()


def test_failed_delivery_goes_idle_and_retries_from_outbox(machine, repository, clock, project_id):
    machine.start(project_id, "Offline work")
    clock.advance(minutes=10)
    repository.fail_writes = True

    result = machine.stop()

    assert machine.state == IDLE
    assert result is not None and not result.delivered
    assert result.error == UNDELIVERED_MESSAGE
    assert [draft.id for draft in machine.outbox.pending()] == [result.entry.id]
    assert repository.list_time_entries("u1") == []

    repository.fail_writes = False
    flushed = machine.flush_outbox()

    assert flushed.delivered == [result.entry.id]
    assert machine.outbox.pending() == []
    assert [entry.id for entry in repository.list_time_entries("u1")] == [result.entry.id]


def test_next_stop_sends_entries_queued_by_an_earlier_stop(machine, repository, clock, project_id):
    machine.start(project_id, "Offline work")
    clock.advance(minutes=10)
    repository.fail_writes = True
    first = machine.stop()
    repository.fail_writes = False

    machine.start(project_id, "Back online")
    clock.advance(minutes=5)
    second = machine.stop()

    assert second.delivered
    assert second.pending == 0
    assert second.error is None
    delivered = {entry.id for entry in repository.list_time_entries("u1")}
    assert delivered == {first.entry.id, second.entry.id}

def test_replayed_delivery_does_not_duplicate(machine, repository, clock, project_id):
    machine.start(project_id, "Work")
    clock.advance(minutes=1)
    result = machine.stop()

    draft = result.entry
    machine.outbox.enqueue(draft)
    flushed = machine.flush_outbox()

    assert flushed.delivered == [draft.id]
    assert len(repository.list_time_entries("u1")) == 1


def test_outbox_drops_entries_for_deleted_projects(machine, repository, clock, project_id):
    machine.start(project_id, "Work")
    clock.advance(minutes=1)
    repository.fail_writes = True
    result = machine.stop()
    repository.fail_writes = False
    repository.delete_project(project_id)

    flushed = machine.flush_outbox()

    assert flushed.dropped == [result.entry.id]
    assert flushed.remaining == 0
    assert machine.outbox.pending() == []


def test_stop_without_elapsed_time_logs_nothing(machine, repository, project_id):
    machine.start(project_id, "Blink")

    result = machine.stop()

    assert result is not None and result.entry is None
    assert machine.state == IDLE
    assert repository.create_entry_calls == 0


def test_discard_abandons_the_session(machine, repository, clock, project_id):
    events = []
    machine.add_listener(lambda event: events.append(event.kind))
    machine.start(project_id, "Work")
    clock.advance(minutes=3)

    machine.discard()

    assert machine.state == IDLE
    assert machine.store.load(machine.snapshot_key) is None
    assert repository.list_time_entries("u1") == []
    assert events == ["started", "discarded"]


def test_cancelled_ticks_never_fire_after_stop(machine, clock, scheduler, project_id):
    ticks = []
    machine.add_listener(lambda event: ticks.append(event) if event.kind == "tick" else None)
    machine.start(project_id, "Work")
    clock.advance(seconds=5)
    machine.stop()

    scheduler.fire_all()

    assert ticks == []
    assert machine.elapsed_seconds == 0


def test_failing_listener_does_not_break_transitions(machine, project_id):
    def _boom(event):
        raise RuntimeError("listener bug")

    machine.add_listener(_boom)
    machine.start(project_id, "Work")
    assert machine.is_running


def _wait_for(condition, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.005)
    return False


def test_threading_scheduler_stops_firing_after_cancel():
    ticks = []
    task = ThreadingScheduler().call_every(0.01, lambda: ticks.append(time.monotonic()))
    try:
        assert _wait_for(lambda: len(ticks) >= 3)
    finally:
        task.cancel()
    time.sleep(0.05)
    settled = len(ticks)

    time.sleep(0.1)

    assert len(ticks) == settled


def test_real_ticker_is_torn_down_by_stop(repository, store, clock, project_id):
    machine = TimerStateMachine(
        "u1",
        store,
        Outbox(store, "outbox-u1"),
        lambda draft: repository.create_time_entry(draft.to_fields()),
        lambda pid: repository.get_project(pid) is not None,
        clock=clock,
        scheduler=ThreadingScheduler(),
        tick_interval=0.01,
    )
    ticks = []
    machine.add_listener(lambda event: ticks.append(event) if event.kind == "tick" else None)

    machine.start(project_id, "Focus")
    assert _wait_for(lambda: len(ticks) >= 2)
    clock.advance(minutes=5)
    machine.stop()
    assert not machine.is_ticking
    time.sleep(0.05)
    settled = len(ticks)

    time.sleep(0.1)

    assert len(ticks) == settled
    assert len(repository.list_time_entries("u1")) == 1
