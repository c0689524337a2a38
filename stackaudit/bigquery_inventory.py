"""Inventory of BigQuery datasets and GA4 export tables.

Produces the ``BQ_DATASETS`` and ``BQ_GA4_TABLES`` resources for the audit
runner. Both are incremental on their ``Last Modified`` column. Daily
``events_YYYYMMDD`` tables older than the configured date range are skipped
before their metadata is fetched, since a mature export holds hundreds.
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from stackaudit.audit_runner import ResourceSpec
from stackaudit.bigquery_client import GA4_DATASET_PREFIX, BigQueryClient, BigQueryError
from stackaudit.sync_state import utc_now

logger = logging.getLogger(__name__)

BIGQUERY_SERVICE = "BIGQUERY"
DATASETS_SHEET = "BQ_DATASETS"
GA4_TABLES_SHEET = "BQ_GA4_TABLES"

BQ_DATASETS_HEADERS: List[str] = [
    "Full Dataset ID", "Project ID", "Dataset ID", "Location", "Created Date", "Last Modified",
    "Default Expiration (Days)", "Description", "Is GA4 Export", "Sync Date",
]
BQ_GA4_TABLES_HEADERS: List[str] = [
    "Full Table ID", "Project ID", "Dataset ID", "Table ID", "Table Type", "Row Count",
    "Size (GB)", "Created Date", "Last Modified", "Partition Type", "Clustering Fields", "Sync Date",
]

DATASET_KEY_COLUMN = BQ_DATASETS_HEADERS.index("Full Dataset ID")
DATASET_MODIFIED_COLUMN = BQ_DATASETS_HEADERS.index("Last Modified")
TABLE_KEY_COLUMN = BQ_GA4_TABLES_HEADERS.index("Full Table ID")
TABLE_MODIFIED_COLUMN = BQ_GA4_TABLES_HEADERS.index("Last Modified")

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
_DAILY_TABLE_RE = re.compile(r"^events_(\d{8})$")
_MS_PER_DAY = 1000 * 60 * 60 * 24
_BYTES_PER_GB = 1024 ** 3


def format_epoch_ms(value: Any) -> str:
    """Render a BigQuery epoch-millisecond string as a UTC timestamp."""

    try:
        moment = datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return "N/A"
    return moment.strftime(TIMESTAMP_FORMAT)


def table_type(table_id: str) -> str:
    if _DAILY_TABLE_RE.match(table_id):
        return "Daily"
    if table_id.startswith("events_intraday_"):
        return "Intraday"
    if table_id.startswith("events_streaming_"):
        return "Streaming"
    return "Other"


def filter_tables_by_date_range(
    tables: Sequence[Dict[str, Any]],
    days_back: int,
    today: Optional[date] = None,
) -> List[Dict[str, Any]]:
    """Drop daily export tables older than ``days_back`` days; ``-1`` keeps all.

    Intraday, streaming and any other tables are always kept.
    """

    if days_back < 0:
        return list(tables)
    cutoff = (today or utc_now().date()) - timedelta(days=days_back)
    kept: List[Dict[str, Any]] = []
    for table in tables:
        table_id = (table.get("tableReference") or {}).get("tableId", "")
        match = _DAILY_TABLE_RE.match(table_id)
        if match:
            try:
                table_date = datetime.strptime(match.group(1), "%Y%m%d").date()
            except ValueError:
                kept.append(table)
                continue
            if table_date < cutoff:
                continue
        kept.append(table)
    return kept


class BigQueryInventory:
    def __init__(
        self,
        client: BigQueryClient,
        project_id: str,
        *,
        table_date_range_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._project_id = project_id
        self._date_range = table_date_range_days
        self._clock = clock
        self._datasets: Optional[List[List[Any]]] = None

    def _sync_date(self) -> str:
        return self._clock().strftime(TIMESTAMP_FORMAT)

    def dataset_rows(self) -> List[List[Any]]:
        if self._datasets is not None:
            return self._datasets
        sync_date = self._sync_date()
        rows: List[List[Any]] = []
        for entry in self._client.list_datasets(self._project_id):
            reference = entry.get("datasetReference") or {}
            dataset_id = reference.get("datasetId", "")
            project_id = reference.get("projectId", self._project_id)
            try:
                dataset = self._client.get_dataset(project_id, dataset_id)
            except BigQueryError as exc:
                logger.warning("Could not get metadata for dataset %s: %s", dataset_id, exc)
                dataset = entry
            expiration = dataset.get("defaultTableExpirationMs")
            rows.append(
                [
                    f"{project_id}:{dataset_id}",
                    project_id,
                    dataset_id,
                    dataset.get("location") or "N/A",
                    format_epoch_ms(dataset.get("creationTime")) if dataset.get("creationTime") else "N/A",
                    format_epoch_ms(dataset.get("lastModifiedTime")) if dataset.get("lastModifiedTime") else "N/A",
                    round(int(expiration) / _MS_PER_DAY) if expiration else "None",
                    dataset.get("friendlyName") or dataset.get("description") or "N/A",
                    "Yes" if dataset_id.startswith(GA4_DATASET_PREFIX) else "No",
                    sync_date,
                ]
            )
        logger.info("Found %d datasets in %s", len(rows), self._project_id)
        self._datasets = rows
        return rows

    def _table_row(self, project_id: str, dataset_id: str, table_id: str, sync_date: str) -> List[Any]:
        table = self._client.get_table(project_id, dataset_id, table_id)
        num_bytes = table.get("numBytes")
        clustering = (table.get("clustering") or {}).get("fields") or []
        return [
            f"{project_id}:{dataset_id}.{table_id}",
            project_id,
            dataset_id,
            table_id,
            table_type(table_id),
            int(table.get("numRows") or 0),
            f"{float(num_bytes) / _BYTES_PER_GB:.2f}" if num_bytes else "0",
            format_epoch_ms(table.get("creationTime")) if table.get("creationTime") else "N/A",
            format_epoch_ms(table.get("lastModifiedTime")) if table.get("lastModifiedTime") else "N/A",
            (table.get("timePartitioning") or {}).get("type") or "None",
            ", ".join(clustering) if clustering else "None",
            sync_date,
        ]

    def ga4_table_rows(self) -> List[List[Any]]:
        sync_date = self._sync_date()
        rows: List[List[Any]] = []
        for dataset in self.dataset_rows():
            project_id, dataset_id = dataset[1], dataset[2]
            if not dataset_id.startswith(GA4_DATASET_PREFIX):
                continue
            try:
                tables = self._client.list_tables(project_id, dataset_id)
            except BigQueryError as exc:
                logger.warning("Could not list tables for %s: %s", dataset_id, exc)
                continue
            selected = filter_tables_by_date_range(tables, self._date_range, self._clock().date())
            logger.info(
                "Dataset %s: %d tables, %d within range (%s)",
                dataset_id,
                len(tables),
                len(selected),
                "all" if self._date_range < 0 else f"{self._date_range} days",
            )
            for table in selected:
                table_id = (table.get("tableReference") or {}).get("tableId", "")
                try:
                    rows.append(self._table_row(project_id, dataset_id, table_id, sync_date))
                except BigQueryError as exc:
                    logger.warning("Could not get metadata for table %s: %s", table_id, exc)
        return rows

    def resource_specs(self) -> List[ResourceSpec]:
        last = len(BQ_GA4_TABLES_HEADERS) - 1
        return [
            ResourceSpec(
                service=BIGQUERY_SERVICE,
                resource_type="DATASETS",
                sheet_name=DATASETS_SHEET,
                headers=BQ_DATASETS_HEADERS,
                fetch=self.dataset_rows,
                primary_key_index=DATASET_KEY_COLUMN,
                modified_column=DATASET_MODIFIED_COLUMN,
                strategy="merge",
            ),
            ResourceSpec(
                service=BIGQUERY_SERVICE,
                resource_type="GA4_TABLES",
                sheet_name=GA4_TABLES_SHEET,
                headers=BQ_GA4_TABLES_HEADERS,
                fetch=self.ga4_table_rows,
                primary_key_index=TABLE_KEY_COLUMN,
                modified_column=TABLE_MODIFIED_COLUMN,
                strategy="selective",
                ignore_columns=(last,),
            ),
        ]


__all__ = [
    "BQ_DATASETS_HEADERS",
    "BQ_GA4_TABLES_HEADERS",
    "DATASET_KEY_COLUMN",
    "BigQueryInventory",
    "DATASETS_SHEET",
    "GA4_TABLES_SHEET",
    "filter_tables_by_date_range",
    "format_epoch_ms",
    "table_type",
]
