from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import FakeClock, FakeEngine, FakeSheetWriter, bq_rows

from stackaudit.alerts import (
    DATA_INVENTORY,
    DIMENSIONAL_HEALTH,
    FAMILY_KEYS,
    FAMILY_NAMES,
    HEARTBEAT,
    SMART_DISCOVERY,
    AlertSuite,
)
from stackaudit.bigquery_client import BigQueryError, CostEstimate, JobStatus
from stackaudit.finalizers import ANOMALIES_SHEET, CONFIG_AUDIT_HEADERS, CONFIG_AUDIT_SHEET, ResultFinalizer
from stackaudit.jobs import JobHandleRepository, JobOrchestrator, JobSubmissionError, PollOutcome
from stackaudit.scheduling import TriggerScheduler
from stackaudit.settings import AuditSettings
from stackaudit.storage import MemoryKeyValueStore
from stackaudit.sync_state import SyncStateStore, SyncStatus


class _FakeBigQuery(FakeEngine):
    def __init__(self, dataset: str | None = "analytics_123") -> None:
        super().__init__()
        self.dataset = dataset
        self.dry_runs = []

    def find_ga4_dataset(self, project_id: str):
        return self.dataset

    def estimate_query_cost(self, sql: str, project_id: str) -> CostEstimate:
        self.dry_runs.append(sql)
        return CostEstimate(bytes_processed=1024 ** 3, gb_processed=1.0, estimated_cost_usd=0.005)


class _Suite:
    def __init__(self, *, project: str = "demo", dataset: str | None = "analytics_123", rules=None) -> None:
        self.clock = FakeClock()
        self.store = MemoryKeyValueStore()
        self.client = _FakeBigQuery(dataset)
        sheets = {CONFIG_AUDIT_SHEET: [CONFIG_AUDIT_HEADERS] + list(rules)} if rules is not None else {}
        self.writer = FakeSheetWriter(sheets)
        self.states = SyncStateStore(self.store, clock=self.clock)
        self.scheduler = TriggerScheduler(self.store, clock=self.clock)
        self.settings = AuditSettings(bq_project_id=project, warning_threshold=30, critical_threshold=50)
        finalizer = ResultFinalizer(
            self.writer, self.states, clock=self.clock, write_options={"sleep": lambda seconds: None}
        )
        orchestrator = JobOrchestrator(self.client, JobHandleRepository(self.store), self.scheduler, self.states)
        self.suite = AlertSuite(self.client, self.writer, orchestrator, finalizer, self.settings)

    def drain(self) -> int:
        self.clock.advance(60)
        return self.scheduler.run_due(self.suite.handlers())


def test_every_family_has_a_check_handler() -> None:
    suite = _Suite().suite

    assert [family.name for family in suite.families()] == FAMILY_NAMES
    assert set(suite.handlers()) == {
        "check_heartbeat_job_status",
        "check_dimensional_health_job_status",
        "check_data_inventory_job_status",
        "check_smart_discovery_job_status",
    }
    assert [suite.family(name).key for name in FAMILY_NAMES] == [FAMILY_KEYS[name] for name in FAMILY_NAMES]


def test_unknown_family_is_rejected() -> None:
    with pytest.raises(ValueError):
        _Suite().suite.family("weather")


def test_heartbeat_end_to_end() -> None:
    harness = _Suite()

    handle = harness.suite.run_heartbeat_alert()
    harness.client.statuses[handle.job_id] = [JobStatus(state="RUNNING"), JobStatus(state="DONE")]
    harness.client.results[handle.job_id] = bq_rows(
        ["WEB", "purchase", "2024-04-29", "100", "200", "-50", "200", "-50", "180", "-44", "250", "-60", "CRITICAL"]
    )

    assert harness.drain() == 1
    assert harness.drain() == 1

    rows = harness.writer.rows(ANOMALIES_SHEET)
    assert rows[1][12] == "CRITICAL"
    assert harness.states.get_sync_state("BIGQUERY", "HEARTBEAT").last_sync_status is SyncStatus.SUCCESS
    assert harness.scheduler.list_scheduled_callbacks() == []
    assert "`demo.analytics_123.events_*`" in harness.client.submitted[0][0]


def test_dimensional_health_needs_active_rules() -> None:
    harness = _Suite()

    with pytest.raises(JobSubmissionError, match="No active audit rules"):
        harness.suite.run_dimensional_health_check()

    assert harness.writer.get_sheet(CONFIG_AUDIT_SHEET) is not None
    assert harness.client.submitted == []


def test_dimensional_health_uses_sheet_rules() -> None:
    harness = _Suite(rules=[["purchase", "transaction_id", "ALL", 99, "DROP", True]])

    harness.suite.submit(DIMENSIONAL_HEALTH)

    sql = harness.client.submitted[0][0]
    assert "'transaction_id'" in sql


def test_missing_ga4_dataset_fails_submission() -> None:
    harness = _Suite(dataset=None)

    with pytest.raises(JobSubmissionError, match="No GA4 export dataset"):
        harness.suite.run_data_inventory()


def test_missing_project_fails_submission() -> None:
    harness = _Suite(project="")

    with pytest.raises(JobSubmissionError):
        harness.suite.run_smart_discovery()


def test_check_without_job_reports_no_job() -> None:
    harness = _Suite()

    assert harness.suite.check_data_inventory_job_status() is PollOutcome.NO_JOB


def test_families_run_independently() -> None:
    harness = _Suite()
    inventory = harness.suite.submit(DATA_INVENTORY)
    discovery = harness.suite.submit(SMART_DISCOVERY)
    harness.client.statuses[inventory.job_id] = [JobStatus(state="DONE", error_message="quota")]
    harness.client.statuses[discovery.job_id] = [JobStatus(state="RUNNING")]

    harness.drain()

    assert harness.suite.orchestrator.pending_handle(harness.suite.family(DATA_INVENTORY)) is None
    assert harness.suite.orchestrator.pending_handle(harness.suite.family(SMART_DISCOVERY)) == discovery
    names = [callback.function_name for callback in harness.scheduler.list_scheduled_callbacks()]
    assert names == ["check_smart_discovery_job_status"]
    assert harness.states.get_sync_state("BIGQUERY", "DATA_INVENTORY").last_sync_status is SyncStatus.ERROR


def test_reset_clears_a_stuck_job() -> None:
    harness = _Suite()
    handle = harness.suite.submit(HEARTBEAT)

    assert harness.suite.reset(HEARTBEAT) is True

    assert harness.client.cancelled == [handle.job_id]
    assert harness.scheduler.list_scheduled_callbacks() == []


def test_estimate_cost_dry_runs_the_family_query() -> None:
    harness = _Suite()

    estimate = harness.suite.estimate_cost(HEARTBEAT)

    assert estimate.gb_processed == 1.0
    assert harness.client.submitted == []
    assert "events_*" in harness.client.dry_runs[0]


def test_estimate_cost_requires_a_project() -> None:
    with pytest.raises(BigQueryError):
        _Suite(project="").suite.estimate_cost()
