from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, List

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import FakeClock, FakeSheetWriter

from stackaudit.audit_mode import AuditMode
from stackaudit.audit_runner import AuditRunner, ResourceSpec, aggregate_status
from stackaudit.storage import MemoryKeyValueStore
from stackaudit.sync_state import SyncMode, SyncStateStore, SyncStatus

HEADERS = ["ID", "Name", "Last Modified"]


class _Source:
    def __init__(self, rows: List[List[Any]]) -> None:
        self.rows = rows
        self.calls = 0

    def __call__(self) -> List[List[Any]]:
        self.calls += 1
        return [list(row) for row in self.rows]


def _spec(source, **overrides) -> ResourceSpec:
    values = dict(
        service="GTM",
        resource_type="TAGS",
        sheet_name="GTM_TAGS",
        headers=HEADERS,
        fetch=source,
        modified_column=2,
    )
    values.update(overrides)
    return ResourceSpec(**values)


def _runner(**kwargs):
    clock = FakeClock()
    writer = FakeSheetWriter()
    states = SyncStateStore(MemoryKeyValueStore(), clock=clock)
    options = {"write_options": {"sleep": lambda seconds: None}}
    options.update(kwargs)
    return clock, writer, states, AuditRunner(writer, states, **options)


def test_first_run_is_full_and_records_state() -> None:
    clock, writer, states, runner = _runner()
    source = _Source([["t1", "one", "2024-04-01 00:00:00"], ["t2", "two", "2024-04-02 00:00:00"]])

    result = runner.run_resource(_spec(source))

    assert result.mode is AuditMode.FULL
    assert result.status is SyncStatus.SUCCESS
    assert result.records == 2
    assert writer.rows("GTM_TAGS")[0] == HEADERS
    state = states.get_sync_state("GTM", "TAGS")
    assert state.sync_mode is SyncMode.FULL
    assert state.last_sync_count == 2
    assert state.last_sync_timestamp == clock.now


def test_second_run_is_incremental_and_only_writes_changes() -> None:
    clock, writer, states, runner = _runner()
    source = _Source([["t1", "one", "2024-04-01 00:00:00"], ["t2", "two", "2024-04-02 00:00:00"]])
    runner.run_resource(_spec(source))

    clock.advance(3600)
    source.rows = [
        ["t1", "one", "2024-04-01 00:00:00"],
        ["t2", "two (edited)", "2024-05-01 12:30:00"],
        ["t3", "three", "2024-05-01 12:45:00"],
    ]
    result = runner.run_resource(_spec(source))

    assert result.mode is AuditMode.INCREMENTAL
    assert result.fetched == 3
    assert result.records == 2
    assert writer.rows("GTM_TAGS") == [
        HEADERS,
        ["t1", "one", "2024-04-01 00:00:00"],
        ["t2", "two (edited)", "2024-05-01 12:30:00"],
        ["t3", "three", "2024-05-01 12:45:00"],
    ]
    assert states.get_sync_state("GTM", "TAGS").sync_mode is SyncMode.INCREMENTAL


def test_force_full_and_kill_switch() -> None:
    _clock, _writer, states, runner = _runner(incremental_enabled=False)
    states.record_sync_state("GTM", "TAGS", 1)

    assert runner.mode_for(_spec(_Source([]))) is AuditMode.FULL

    _clock, _writer, states, runner = _runner()
    states.record_sync_state("GTM", "TAGS", 1)

    assert runner.mode_for(_spec(_Source([]))) is AuditMode.INCREMENTAL
    assert runner.mode_for(_spec(_Source([])), force_full_audit=True) is AuditMode.FULL


def test_failed_previous_run_forces_full() -> None:
    _clock, _writer, states, runner = _runner()
    states.record_sync_state("GTM", "TAGS", 0, SyncStatus.ERROR, SyncMode.INCREMENTAL)

    assert runner.mode_for(_spec(_Source([]))) is AuditMode.FULL


def test_fetch_failure_is_recorded_and_other_resources_still_run() -> None:
    _clock, writer, states, runner = _runner()

    def broken():
        raise RuntimeError("API quota exhausted")

    report = runner.run(
        [
            _spec(broken, resource_type="TRIGGERS", sheet_name="GTM_TRIGGERS"),
            _spec(_Source([["t1", "one", ""]])),
        ]
    )

    assert report.status is SyncStatus.PARTIAL
    assert [result.status for result in report.results] == [SyncStatus.ERROR, SyncStatus.SUCCESS]
    assert "quota" in report.results[0].error
    assert states.get_sync_state("GTM", "TRIGGERS").last_sync_status is SyncStatus.ERROR
    assert writer.rows("GTM_TAGS")[1] == ["t1", "one", ""]


def test_write_failure_records_error_without_advancing_to_success() -> None:
    _clock, writer, states, runner = _runner()
    writer.fail_writes = RuntimeError("protected sheet")

    result = runner.run_resource(_spec(_Source([["t1", "one", ""]])))

    assert result.status is SyncStatus.ERROR
    assert states.get_sync_state("GTM", "TAGS").last_sync_status is SyncStatus.ERROR


def test_aggregate_status() -> None:
    assert aggregate_status([]) is SyncStatus.SUCCESS
    _clock, _writer, _states, runner = _runner()

    ok = runner.run_resource(_spec(_Source([["t1", "one", ""]])))

    assert aggregate_status([ok]) is SyncStatus.SUCCESS
    assert runner.run([_spec(lambda: 1 / 0)]).status is SyncStatus.ERROR
