from __future__ import annotations

import sys
from datetime import date
from pathlib import Path
from typing import Any, Dict, List

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fakes import FakeClock, FakeSheetWriter

from stackaudit.audit_runner import AuditRunner
from stackaudit.bigquery_client import BigQueryError
from stackaudit.bigquery_inventory import (
    BQ_DATASETS_HEADERS,
    BQ_GA4_TABLES_HEADERS,
    DATASET_KEY_COLUMN,
    DATASETS_SHEET,
    GA4_TABLES_SHEET,
    BigQueryInventory,
    filter_tables_by_date_range,
    format_epoch_ms,
    table_type,
)
from stackaudit.sheet_ops import merge_update_records
from stackaudit.storage import MemoryKeyValueStore
from stackaudit.sync_state import SyncStateStore, SyncStatus

# 2024-04-30 00:00:00 UTC
APRIL_30_MS = "1714435200000"


class _FakeBigQuery:
    def __init__(self) -> None:
        self.datasets: List[Dict[str, Any]] = [
            {"datasetReference": {"projectId": "demo", "datasetId": "marketing"}},
            {"datasetReference": {"projectId": "demo", "datasetId": "analytics_123"}},
        ]
        self.tables: Dict[str, List[str]] = {
            "analytics_123": ["events_20240430", "events_20240101", "events_intraday_20240501", "pseudonymous_users_20240430"],
        }
        self.broken_tables: set = set()
        self.table_calls: List[str] = []

    def list_datasets(self, project_id: str) -> List[Dict[str, Any]]:
        return self.datasets

    def get_dataset(self, project_id: str, dataset_id: str) -> Dict[str, Any]:
        if dataset_id == "marketing":
            raise BigQueryError("permission denied")
        return {
            "location": "US",
            "creationTime": APRIL_30_MS,
            "lastModifiedTime": APRIL_30_MS,
            "defaultTableExpirationMs": str(60 * 24 * 60 * 60 * 1000),
        }

    def list_tables(self, project_id: str, dataset_id: str) -> List[Dict[str, Any]]:
        return [{"tableReference": {"tableId": table_id}} for table_id in self.tables.get(dataset_id, [])]

    def get_table(self, project_id: str, dataset_id: str, table_id: str) -> Dict[str, Any]:
        self.table_calls.append(table_id)
        if table_id in self.broken_tables:
            raise BigQueryError("table vanished")
        return {
            "numRows": "1500",
            "numBytes": str(3 * 1024 ** 3),
            "creationTime": APRIL_30_MS,
            "lastModifiedTime": APRIL_30_MS,
            "timePartitioning": {"type": "DAY"},
            "clustering": {"fields": ["event_name", "platform"]},
        }


def _inventory(client=None, days: int = 30) -> BigQueryInventory:
    clock = FakeClock()
    return BigQueryInventory(client or _FakeBigQuery(), "demo", table_date_range_days=days, clock=clock)


def test_table_types() -> None:
    assert table_type("events_20240501") == "Daily"
    assert table_type("events_intraday_20240501") == "Intraday"
    assert table_type("events_streaming_1") == "Streaming"
    assert table_type("users_20240501") == "Other"


def test_format_epoch_ms() -> None:
    assert format_epoch_ms(APRIL_30_MS) == "2024-04-30 00:00:00"
    assert format_epoch_ms("garbage") == "N/A"


def test_date_range_filter_only_drops_old_daily_tables() -> None:
    tables = [
        {"tableReference": {"tableId": table_id}}
        for table_id in ("events_20240430", "events_20240101", "events_intraday_20240101", "events_20241399")
    ]

    kept = filter_tables_by_date_range(tables, 30, today=date(2024, 5, 1))
    everything = filter_tables_by_date_range(tables, -1, today=date(2024, 5, 1))

    assert [table["tableReference"]["tableId"] for table in kept] == [
        "events_20240430",
        "events_intraday_20240101",
        "events_20241399",
    ]
    assert len(everything) == 4


def test_dataset_rows_fall_back_to_list_entry() -> None:
    rows = _inventory().dataset_rows()

    assert [row[:3] for row in rows] == [
        ["demo:marketing", "demo", "marketing"],
        ["demo:analytics_123", "demo", "analytics_123"],
    ]
    marketing, analytics = rows
    assert marketing[3] == "N/A"
    assert marketing[8] == "No"
    assert analytics[3:9] == ["US", "2024-04-30 00:00:00", "2024-04-30 00:00:00", 60, "N/A", "Yes"]
    assert analytics[9] == "2024-05-01 12:00:00"
    assert len(analytics) == len(BQ_DATASETS_HEADERS)


def test_ga4_table_rows_are_keyed_by_full_table_id() -> None:
    client = _FakeBigQuery()

    rows = _inventory(client).ga4_table_rows()

    assert "events_20240101" not in client.table_calls
    assert [row[0] for row in rows] == [
        "demo:analytics_123.events_20240430",
        "demo:analytics_123.events_intraday_20240501",
        "demo:analytics_123.pseudonymous_users_20240430",
    ]
    first = rows[0]
    assert len(first) == len(BQ_GA4_TABLES_HEADERS)
    assert first[4:7] == ["Daily", 1500, "3.00"]
    assert first[9:11] == ["DAY", "event_name, platform"]


def test_broken_tables_are_skipped() -> None:
    client = _FakeBigQuery()
    client.broken_tables.add("events_20240430")

    rows = _inventory(client).ga4_table_rows()

    assert len(rows) == 2


def test_inventory_runs_through_the_audit_runner() -> None:
    clock = FakeClock()
    writer = FakeSheetWriter()
    states = SyncStateStore(MemoryKeyValueStore(), clock=clock)
    inventory = BigQueryInventory(_FakeBigQuery(), "demo", clock=clock)
    runner = AuditRunner(writer, states, write_options={"sleep": lambda seconds: None})

    report = runner.run(inventory.resource_specs())

    assert report.status is SyncStatus.SUCCESS
    assert writer.rows(DATASETS_SHEET)[0] == BQ_DATASETS_HEADERS
    assert len(writer.rows(DATASETS_SHEET)) == 3
    assert writer.rows(GA4_TABLES_SHEET)[0] == BQ_GA4_TABLES_HEADERS
    assert len(writer.rows(GA4_TABLES_SHEET)) == 4
    assert set(states.get_all_sync_states()["BIGQUERY"]) == {"DATASETS", "GA4_TABLES"}


def test_second_inventory_run_leaves_unchanged_tables_alone() -> None:
    clock = FakeClock()
    writer = FakeSheetWriter()
    states = SyncStateStore(MemoryKeyValueStore(), clock=clock)
    runner = AuditRunner(writer, states, margin_seconds=0, write_options={"sleep": lambda seconds: None})
    runner.run(BigQueryInventory(_FakeBigQuery(), "demo", clock=clock).resource_specs())
    before = [list(row) for row in writer.rows(GA4_TABLES_SHEET)]

    clock.advance(86400)
    report = runner.run(BigQueryInventory(_FakeBigQuery(), "demo", clock=clock).resource_specs())

    tables = report.results[1]
    assert tables.mode.value == "INCREMENTAL"
    assert tables.update.status.value == "SKIPPED"
    assert writer.rows(GA4_TABLES_SHEET) == before


def test_listing_failures_propagate_to_the_runner() -> None:
    client = _FakeBigQuery()

    def broken(project_id):
        raise BigQueryError("no access to project")

    client.list_datasets = broken

    report = AuditRunner(FakeSheetWriter(), SyncStateStore(MemoryKeyValueStore())).run(
        _inventory(client).resource_specs()
    )

    assert report.status is SyncStatus.ERROR


def test_same_dataset_name_in_two_projects_keeps_two_rows() -> None:
    clock = FakeClock()
    writer = FakeSheetWriter()
    client = _FakeBigQuery()
    client.datasets = [
        {"datasetReference": {"projectId": "demo", "datasetId": "analytics_123"}},
        {"datasetReference": {"projectId": "shared", "datasetId": "analytics_123"}},
    ]
    rows = BigQueryInventory(client, "demo", clock=clock).dataset_rows()
    merge_update_records(writer, DATASETS_SHEET, rows, DATASET_KEY_COLUMN, headers=BQ_DATASETS_HEADERS)

    result = merge_update_records(writer, DATASETS_SHEET, rows, DATASET_KEY_COLUMN, headers=BQ_DATASETS_HEADERS)

    assert result.records_updated == 2
    assert result.records_appended == 0
    assert [row[0] for row in writer.rows(DATASETS_SHEET)[1:]] == ["demo:analytics_123", "shared:analytics_123"]
