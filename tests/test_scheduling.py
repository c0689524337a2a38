from __future__ import annotations

import json
import sys
import threading
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import FakeClock

from stackaudit.scheduling import TRIGGER_PREFIX, TriggerRunner, TriggerScheduler
from stackaudit.storage import MemoryKeyValueStore, SqliteKeyValueStore


def _scheduler():
    store = MemoryKeyValueStore()
    clock = FakeClock()
    return store, clock, TriggerScheduler(store, clock=clock)


def test_each_trigger_is_persisted_under_its_own_key() -> None:
    store, clock, scheduler = _scheduler()

    callback_id = scheduler.schedule_callback("check_heartbeat_job_status", 10)

    assert store.list_keys() == [TRIGGER_PREFIX + callback_id]
    payload = json.loads(store.get(TRIGGER_PREFIX + callback_id))
    assert payload == {"functionName": "check_heartbeat_job_status", "dueAt": "2024-05-01T12:00:10.000Z"}


def test_triggers_survive_a_new_scheduler_instance() -> None:
    store, clock, scheduler = _scheduler()
    scheduler.schedule_callback("check_smart_discovery_job_status", 30)

    reloaded = TriggerScheduler(store, clock=clock)

    [callback] = reloaded.list_scheduled_callbacks()
    assert callback.function_name == "check_smart_discovery_job_status"


def test_list_is_ordered_by_due_time_and_cancel_removes_one() -> None:
    store, clock, scheduler = _scheduler()
    late = scheduler.schedule_callback("late", 60)
    early = scheduler.schedule_callback("early", 5)

    assert [callback.id for callback in scheduler.list_scheduled_callbacks()] == [early, late]
    assert scheduler.next_due() == clock.now.replace(second=5)

    scheduler.cancel_scheduled_callback(early)
    scheduler.cancel_scheduled_callback("missing")

    assert [callback.id for callback in scheduler.list_scheduled_callbacks()] == [late]


def test_cancelling_a_trigger_removes_its_key() -> None:
    store, _clock, scheduler = _scheduler()
    callback_id = scheduler.schedule_callback("check", 1)
    store.set("SYNC_STATE_GTM_TAGS", "{}")

    scheduler.cancel_scheduled_callback(callback_id)

    assert store.list_keys() == ["SYNC_STATE_GTM_TAGS"]


def test_run_due_fires_only_due_triggers_once() -> None:
    _store, clock, scheduler = _scheduler()
    calls = []
    scheduler.schedule_callback("check", 5)
    scheduler.schedule_callback("check", 60)

    clock.advance(10)
    fired = scheduler.run_due({"check": lambda: calls.append(clock.now)})
    fired_again = scheduler.run_due({"check": lambda: calls.append(clock.now)})

    assert fired == 1
    assert fired_again == 0
    assert len(calls) == 1
    assert len(scheduler.list_scheduled_callbacks()) == 1


def test_unknown_functions_are_dropped() -> None:
    _store, clock, scheduler = _scheduler()
    scheduler.schedule_callback("removed_function", 0)

    assert scheduler.run_due({}) == 0
    assert scheduler.list_scheduled_callbacks() == []


def test_handler_exceptions_do_not_stop_other_triggers() -> None:
    _store, clock, scheduler = _scheduler()
    calls = []

    def broken():
        raise RuntimeError("boom")

    scheduler.schedule_callback("broken", 0)
    scheduler.schedule_callback("working", 1)
    clock.advance(2)

    fired = scheduler.run_due({"broken": broken, "working": lambda: calls.append("ok")})

    assert fired == 2
    assert calls == ["ok"]


def test_unreadable_triggers_are_discarded() -> None:
    store = MemoryKeyValueStore({TRIGGER_PREFIX + "broken": "not json", TRIGGER_PREFIX + "list": "[]"})

    assert TriggerScheduler(store).list_scheduled_callbacks() == []
    assert store.get(TRIGGER_PREFIX + "broken") is None


def test_trigger_runner_drains_due_triggers_in_background() -> None:
    store = MemoryKeyValueStore()
    scheduler = TriggerScheduler(store)
    fired = threading.Event()
    scheduler.schedule_callback("check", 0)

    runner = TriggerRunner(scheduler, {"check": fired.set}, interval_seconds=1)
    runner.start()
    try:
        assert fired.wait(timeout=5)
    finally:
        runner.stop()

    assert runner.running is False
    assert scheduler.list_scheduled_callbacks() == []


class _SlowSqliteStore(SqliteKeyValueStore):
    def get(self, key):
        value = super().get(key)
        time.sleep(0.01)
        return value


def test_schedulers_sharing_one_store_keep_every_trigger(tmp_path: Path) -> None:
    path = tmp_path / "state.sqlite3"
    schedulers = [TriggerScheduler(_SlowSqliteStore(path)) for _ in range(2)]

    def schedule_many(scheduler: TriggerScheduler) -> None:
        for index in range(20):
            scheduler.schedule_callback(f"check_{index}", 60)

    threads = [threading.Thread(target=schedule_many, args=(scheduler,)) for scheduler in schedulers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(TriggerScheduler(SqliteKeyValueStore(path)).list_scheduled_callbacks()) == 40


def test_trigger_drained_elsewhere_is_not_fired_again() -> None:
    store = MemoryKeyValueStore()
    clock = FakeClock()
    first = TriggerScheduler(store, clock=clock)
    second = TriggerScheduler(store, clock=clock)
    first.schedule_callback("check", 0)
    due = second.due_callbacks()
    calls = []

    assert first.run_due({"check": lambda: calls.append("first")}) == 1

    second.due_callbacks = lambda now=None: due
    assert second.run_due({"check": lambda: calls.append("second")}) == 0
    assert calls == ["first"]
