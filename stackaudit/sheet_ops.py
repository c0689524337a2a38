"""Reconciliation strategies applying fetched records onto worksheets.

Each strategy takes a batch of freshly fetched rows and applies it to a
managed worksheet whose first row is always the header row:

``AppendOnly``
    Append every record after the last used row. No deduplication, so only
    suitable for resources whose identity never recurs (audit logs).

``MergeByKey``
    Read the sheet, overwrite rows whose primary key already exists in place
    and append the rest.

``SelectiveRefresh``
    Like ``MergeByKey`` but only rewrites rows whose content hash changed.

``FullOverwrite``
    Clear the sheet and write a fresh snapshot. Used for point-in-time
    analytical results and for FULL audits.

All strategies create the destination sheet lazily, append in batches of at
most 500 rows with a short pause between batches, and report failures as an
``UpdateResult`` with ``status=ERROR`` instead of raising.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Type

from stackaudit.hash import canonical_key, row_hash
from stackaudit.sheets_client import SheetHandle, SheetWriter

logger = logging.getLogger(__name__)

SHEET_OPS_BATCH_SIZE = 500
SHEET_OPS_PAUSE_SECONDS = 0.1

Row = Sequence[Any]

DEFAULT_HEADERS: Mapping[str, List[str]] = {
    "GA4_PROPERTIES": ["Property ID", "Display Name", "Create Time", "Industry Category", "Time Zone", "Sync Date"],
    "GA4_CUSTOM_DIMENSIONS": ["Property ID", "Dimension Name", "Scope", "Description", "Sync Date"],
    "GA4_CUSTOM_METRICS": ["Property ID", "Metric Name", "Scope", "Unit", "Description", "Sync Date"],
    "GTM_CONTAINERS": ["Account ID", "Container ID", "Name", "Usage Context", "Created By", "Sync Date"],
    "GTM_TAGS": ["Container ID", "Tag ID", "Name", "Type", "Fire On", "Workspace", "Sync Date"],
    "BQ_DATASETS": ["Project ID", "Dataset ID", "Location", "Created Date", "Last Modified", "Sync Date"],
    "BQ_TABLES": ["Project ID", "Dataset ID", "Table ID", "Row Count", "Size (GB)", "Created Date", "Sync Date"],
    "_AUDIT_METADATA": ["Service", "Resource Type", "Last Sync Timestamp", "Record Count", "Status", "Sync Mode"],
}
FALLBACK_HEADERS: List[str] = ["ID", "Name", "Value", "Sync Date"]


def default_headers(sheet_name: str) -> List[str]:
    return list(DEFAULT_HEADERS.get(sheet_name, FALLBACK_HEADERS))


class UpdateStatus(Enum):
    SUCCESS = "SUCCESS"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


@dataclass(slots=True)
class UpdateResult:
    status: UpdateStatus
    sheet_name: str
    records_processed: int = 0
    records_appended: int = 0
    records_updated: int = 0
    records_changed: int = 0
    records_unchanged: int = 0
    records_written: int = 0
    total_rows_in_sheet: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not UpdateStatus.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "sheet_name": self.sheet_name,
            "records_processed": self.records_processed,
            "records_appended": self.records_appended,
            "records_updated": self.records_updated,
            "records_changed": self.records_changed,
            "records_unchanged": self.records_unchanged,
            "records_written": self.records_written,
            "total_rows_in_sheet": self.total_rows_in_sheet,
            "error": self.error,
        }


def _record_key(record: Row, primary_key_index: int) -> Optional[str]:
    if primary_key_index < 0 or primary_key_index >= len(record):
        return None
    key = canonical_key(record[primary_key_index])
    return key or None


def _padded(record: Row, width: int) -> List[Any]:
    values = ["" if value is None else value for value in record]
    if len(values) < width:
        values.extend([""] * (width - len(values)))
    return values


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------
class ReconciliationStrategy:
    """Shared sheet creation and batching for every reconciliation variant."""

    name = "base"
    skip_empty = True

    def __init__(
        self,
        *,
        batch_size: int = SHEET_OPS_BATCH_SIZE,
        pause_seconds: float = SHEET_OPS_PAUSE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        ignore_columns: Sequence[int] = (),
    ) -> None:
        self.batch_size = max(1, min(SHEET_OPS_BATCH_SIZE, int(batch_size)))
        self.pause_seconds = max(0.0, pause_seconds)
        self._sleep = sleep
        # Columns left out of change detection, e.g. a per-run "Sync Date".
        self.ignore_columns = frozenset(ignore_columns)

    def apply(
        self,
        writer: SheetWriter,
        sheet_name: str,
        records: Sequence[Row],
        primary_key_index: int = 0,
        *,
        headers: Optional[Sequence[str]] = None,
    ) -> UpdateResult:
        records = [list(record) for record in records or []]
        if not records and self.skip_empty:
            logger.info("No records to apply to %s", sheet_name)
            return UpdateResult(status=UpdateStatus.SKIPPED, sheet_name=sheet_name)

        header_row = list(headers) if headers else default_headers(sheet_name)
        try:
            handle, _created = writer.get_or_create_sheet(sheet_name, header_row)
            result = self._apply(writer, handle, records, primary_key_index, header_row)
        except Exception as exc:
            logger.exception("Failed to apply %s to %s", self.name, sheet_name)
            return UpdateResult(status=UpdateStatus.ERROR, sheet_name=sheet_name, error=str(exc))
        return result

    def _apply(
        self,
        writer: SheetWriter,
        handle: SheetHandle,
        records: List[List[Any]],
        primary_key_index: int,
        headers: List[str],
    ) -> UpdateResult:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _ensure_header(self, writer: SheetWriter, handle: SheetHandle, headers: List[str], last_row: int) -> int:
        if last_row == 0:
            writer.write_range(handle, 1, 1, [headers])
            return 1
        return last_row

    def _append(self, writer: SheetWriter, handle: SheetHandle, rows: List[List[Any]], start_row: int) -> int:
        written = 0
        for offset in range(0, len(rows), self.batch_size):
            batch = rows[offset : offset + self.batch_size]
            writer.write_range(handle, start_row + offset, 1, batch)
            written += len(batch)
            if offset + self.batch_size < len(rows) and self.pause_seconds:
                self._sleep(self.pause_seconds)
        return written

    def _index_existing(
        self, existing: List[List[Any]], primary_key_index: int
    ) -> Dict[str, Tuple[int, List[Any]]]:
        index: Dict[str, Tuple[int, List[Any]]] = {}
        for row_number, row in enumerate(existing[1:], start=2):
            key = _record_key(row, primary_key_index)
            if key is not None:
                index[key] = (row_number, row)
        return index

    def _split(
        self,
        sheet_name: str,
        records: List[List[Any]],
        index: Mapping[str, Tuple[int, List[Any]]],
        primary_key_index: int,
    ) -> Tuple[List[Tuple[int, List[Any], List[Any]]], List[List[Any]]]:
        """Return ``(matches, pending)`` where matches are ``(row, existing, record)``."""

        matches: Dict[int, Tuple[int, List[Any], List[Any]]] = {}
        pending: List[List[Any]] = []
        pending_keys: Dict[str, int] = {}
        for record in records:
            key = _record_key(record, primary_key_index)
            if key is None:
                logger.warning(
                    "Record without primary key (column %d) queued as new row in %s",
                    primary_key_index,
                    sheet_name,
                )
                pending.append(record)
                continue
            existing = index.get(key)
            if existing is not None:
                row_number, existing_row = existing
                matches[row_number] = (row_number, existing_row, record)
            elif key in pending_keys:
                pending[pending_keys[key]] = record
            else:
                pending_keys[key] = len(pending)
                pending.append(record)
        return list(matches.values()), pending


class AppendOnly(ReconciliationStrategy):
    name = "append"

    def _apply(self, writer, handle, records, primary_key_index, headers):
        last_row = self._ensure_header(writer, handle, headers, writer.get_last_row(handle))
        appended = self._append(writer, handle, records, last_row + 1)
        logger.info("Appended %d records to %s", appended, handle.title)
        return UpdateResult(
            status=UpdateStatus.SUCCESS,
            sheet_name=handle.title,
            records_processed=len(records),
            records_appended=appended,
            total_rows_in_sheet=last_row + appended,
        )


class MergeByKey(ReconciliationStrategy):
    name = "merge"

    def _apply(self, writer, handle, records, primary_key_index, headers):
        existing = writer.read_range(handle)
        last_row = self._ensure_header(writer, handle, headers, len(existing))
        matches, pending = self._split(
            handle.title, records, self._index_existing(existing, primary_key_index), primary_key_index
        )
        updates = {
            row_number: _padded(record, len(existing_row)) for row_number, existing_row, record in matches
        }
        if updates:
            writer.write_rows(handle, updates)
        appended = self._append(writer, handle, pending, last_row + 1)
        logger.info(
            "Merged %d records into %s: %d updated, %d appended",
            len(records),
            handle.title,
            len(updates),
            appended,
        )
        return UpdateResult(
            status=UpdateStatus.SUCCESS,
            sheet_name=handle.title,
            records_processed=len(records),
            records_updated=len(updates),
            records_appended=appended,
            total_rows_in_sheet=last_row + appended,
        )


class SelectiveRefresh(ReconciliationStrategy):
    name = "selective"

    def _comparable(self, row: Sequence[Any]) -> List[Any]:
        return ["" if index in self.ignore_columns else value for index, value in enumerate(row)]

    def _apply(self, writer, handle, records, primary_key_index, headers):
        existing = writer.read_range(handle)
        last_row = self._ensure_header(writer, handle, headers, len(existing))
        matches, pending = self._split(
            handle.title, records, self._index_existing(existing, primary_key_index), primary_key_index
        )
        updates: Dict[int, List[Any]] = {}
        unchanged = 0
        for row_number, existing_row, record in matches:
            if row_hash(self._comparable(existing_row)) == row_hash(self._comparable(record)):
                unchanged += 1
                continue
            updates[row_number] = _padded(record, len(existing_row))
        if updates:
            writer.write_rows(handle, updates)
        appended = self._append(writer, handle, pending, last_row + 1)
        logger.info(
            "Selective refresh of %s: %d changed, %d unchanged, %d appended",
            handle.title,
            len(updates),
            unchanged,
            appended,
        )
        return UpdateResult(
            status=UpdateStatus.SUCCESS,
            sheet_name=handle.title,
            records_processed=len(records),
            records_changed=len(updates),
            records_unchanged=unchanged,
            records_appended=appended,
            total_rows_in_sheet=last_row + appended,
        )


class FullOverwrite(ReconciliationStrategy):
    name = "overwrite"
    skip_empty = False

    def apply(self, writer, sheet_name, records, primary_key_index=0, *, headers=None):
        if headers is not None and not list(headers):
            logger.error("Refusing to overwrite %s without headers", sheet_name)
            return UpdateResult(status=UpdateStatus.ERROR, sheet_name=sheet_name, error="Headers are required")
        return super().apply(writer, sheet_name, records, primary_key_index, headers=headers)

    def _apply(self, writer, handle, records, primary_key_index, headers):
        writer.clear(handle)
        writer.write_range(handle, 1, 1, [headers])
        written = self._append(writer, handle, records, 2)
        logger.info("Wrote %d records to %s", written, handle.title)
        return UpdateResult(
            status=UpdateStatus.SUCCESS,
            sheet_name=handle.title,
            records_processed=len(records),
            records_written=written,
            total_rows_in_sheet=1 + written,
        )


STRATEGIES: Mapping[str, Type[ReconciliationStrategy]] = {
    AppendOnly.name: AppendOnly,
    MergeByKey.name: MergeByKey,
    SelectiveRefresh.name: SelectiveRefresh,
    FullOverwrite.name: FullOverwrite,
}

SHEET_STRATEGIES: Mapping[str, str] = {
    "LOGS": AppendOnly.name,
    "BQ_DATASETS": MergeByKey.name,
    "BQ_GA4_TABLES": SelectiveRefresh.name,
    "BQ_TABLES": SelectiveRefresh.name,
    "BQ_ANOMALIES": FullOverwrite.name,
    "BQ_PARAM_HEALTH": FullOverwrite.name,
    "BQ_DATA_INVENTORY": FullOverwrite.name,
    "CONFIG_AUDIT": FullOverwrite.name,
    "_AUDIT_METADATA": FullOverwrite.name,
}


def strategy_for(
    sheet_name: str,
    overrides: Optional[Mapping[str, str]] = None,
    **kwargs: Any,
) -> ReconciliationStrategy:
    """Return the configured strategy for ``sheet_name`` (merge-by-key by default)."""

    configured = dict(SHEET_STRATEGIES)
    if overrides:
        configured.update(overrides)
    name = configured.get(sheet_name, MergeByKey.name)
    try:
        strategy_cls = STRATEGIES[name]
    except KeyError:
        raise ValueError(f"Unknown reconciliation strategy {name!r} for {sheet_name}") from None
    return strategy_cls(**kwargs)


# ---------------------------------------------------------------------------
# Functional entry points
# ---------------------------------------------------------------------------
def append_new_records(
    writer: SheetWriter,
    sheet_name: str,
    records: Sequence[Row],
    *,
    headers: Optional[Sequence[str]] = None,
    **kwargs: Any,
) -> UpdateResult:
    return AppendOnly(**kwargs).apply(writer, sheet_name, records, headers=headers)


def merge_update_records(
    writer: SheetWriter,
    sheet_name: str,
    records: Sequence[Row],
    primary_key_index: int = 0,
    *,
    headers: Optional[Sequence[str]] = None,
    **kwargs: Any,
) -> UpdateResult:
    return MergeByKey(**kwargs).apply(writer, sheet_name, records, primary_key_index, headers=headers)


def selective_refresh_records(
    writer: SheetWriter,
    sheet_name: str,
    records: Sequence[Row],
    primary_key_index: int = 0,
    *,
    headers: Optional[Sequence[str]] = None,
    **kwargs: Any,
) -> UpdateResult:
    return SelectiveRefresh(**kwargs).apply(writer, sheet_name, records, primary_key_index, headers=headers)


def write_data_to_sheet(
    writer: SheetWriter,
    sheet_name: str,
    headers: Sequence[str],
    data: Sequence[Row],
    **kwargs: Any,
) -> UpdateResult:
    """Replace the whole content of ``sheet_name`` with ``headers`` and ``data``."""

    return FullOverwrite(**kwargs).apply(writer, sheet_name, data, headers=list(headers))


def get_sheet_record_count(writer: SheetWriter, sheet_name: str) -> int:
    """Return the number of data rows (header excluded), 0 for a missing sheet."""

    try:
        handle = writer.get_sheet(sheet_name)
        if handle is None:
            return 0
        return max(0, writer.get_last_row(handle) - 1)
    except Exception as exc:
        logger.warning("Could not get record count for %s: %s", sheet_name, exc)
        return 0


def clear_sheet_data(writer: SheetWriter, sheet_name: str) -> bool:
    """Remove every data row from ``sheet_name`` while keeping its header row."""

    try:
        handle = writer.get_sheet(sheet_name)
        if handle is None:
            return False
        writer.clear(handle, start_row=2)
    except Exception as exc:
        logger.warning("Could not clear %s: %s", sheet_name, exc)
        return False
    logger.info("Cleared data rows from %s", sheet_name)
    return True


__all__ = [
    "AppendOnly",
    "DEFAULT_HEADERS",
    "FALLBACK_HEADERS",
    "FullOverwrite",
    "MergeByKey",
    "ReconciliationStrategy",
    "SHEET_OPS_BATCH_SIZE",
    "SHEET_OPS_PAUSE_SECONDS",
    "SHEET_STRATEGIES",
    "STRATEGIES",
    "SelectiveRefresh",
    "UpdateResult",
    "UpdateStatus",
    "append_new_records",
    "clear_sheet_data",
    "default_headers",
    "get_sheet_record_count",
    "merge_update_records",
    "selective_refresh_records",
    "strategy_for",
    "write_data_to_sheet",
]
