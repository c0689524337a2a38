"""Turn finished BigQuery result sets into classified sheet snapshots.

Every analysis result is a point-in-time snapshot, so each family replaces
its sheet wholesale via :func:`stackaudit.sheet_ops.write_data_to_sheet` and
then records a SUCCESS sync state for ``BIGQUERY/<family>``. Severity
classification is done here rather than trusted from the SQL so that the
configured thresholds always apply.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from stackaudit.queries import (
    DEFAULT_CRITICAL_THRESHOLD,
    DEFAULT_WARNING_THRESHOLD,
    STANDARD_PARAMETERS,
    AuditRule,
)
from stackaudit.sheet_ops import UpdateResult, UpdateStatus, write_data_to_sheet
from stackaudit.sheets_client import SheetWriter
from stackaudit.sync_state import SyncMode, SyncStateStore, SyncStatus, utc_now

logger = logging.getLogger(__name__)

BIGQUERY_SERVICE = "BIGQUERY"

ANOMALIES_SHEET = "BQ_ANOMALIES"
PARAM_HEALTH_SHEET = "BQ_PARAM_HEALTH"
DATA_INVENTORY_SHEET = "BQ_DATA_INVENTORY"
CONFIG_AUDIT_SHEET = "CONFIG_AUDIT"

HEARTBEAT_HEADERS: List[str] = [
    "Platform", "Event Name", "Event Date", "Actual",
    "Prev Day", "vs D-1 %",
    "Same Weekday", "vs D-7 %",
    "Last Year", "vs D-364 %",
    "Week Avg", "vs Avg %",
    "Alert Level", "Sync Date",
]
PARAM_HEALTH_HEADERS: List[str] = [
    "Event", "Parameter", "Expected Platform", "Actual Platform",
    "Min Fill Rate", "Total Events", "With Param", "Fill Rate %", "Status", "Sync Date",
]
DATA_INVENTORY_HEADERS: List[str] = [
    "Event", "Parameter", "Data Type", "Platform", "Usage Count",
    "Days Active", "First Seen", "Last Seen", "Status", "Category", "Sync Date",
]
CONFIG_AUDIT_HEADERS: List[str] = [
    "Event Name", "Parameter Name", "Platform", "Min Fill Rate %", "Alert Type", "Active",
]
SMART_DISCOVERY_HEADERS: List[str] = CONFIG_AUDIT_HEADERS + ["Priority Score", "Usage Count"]

EXAMPLE_RULES: List[List[Any]] = [
    ["purchase", "im_store_id", "ALL", 95, "DROP", True],
    ["page_view", "im_page_type", "ALL", 90, "DROP", True],
    ["add_to_cart", "item_id", "ALL", 99, "DROP", True],
]

SYNC_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class FinalizeError(RuntimeError):
    """Raised when a result snapshot could not be written."""


@dataclass(slots=True)
class FinalizeSummary:
    family: str
    sheet_name: str
    total: int
    counts: Dict[str, int] = field(default_factory=dict)
    message: str = ""
    update: Optional[UpdateResult] = None


# ---------------------------------------------------------------------------
# Parsing and classification
# ---------------------------------------------------------------------------
def result_rows(results: Mapping[str, Any]) -> List[List[Any]]:
    """Flatten BigQuery's ``rows[].f[].v`` cells into plain lists."""

    rows: List[List[Any]] = []
    for row in results.get("rows") or []:
        cells = row.get("f") if isinstance(row, Mapping) else None
        rows.append([cell.get("v") if isinstance(cell, Mapping) else None for cell in cells or []])
    return rows


def _cell(row: Sequence[Any], index: int) -> Any:
    return row[index] if index < len(row) else None


def _text(row: Sequence[Any], index: int, default: str = "") -> str:
    value = _cell(row, index)
    return str(value) if value not in (None, "") else default


def _int(row: Sequence[Any], index: int) -> int:
    try:
        return int(float(_cell(row, index)))
    except (TypeError, ValueError):
        return 0


def _float(row: Sequence[Any], index: int) -> float:
    try:
        return float(_cell(row, index))
    except (TypeError, ValueError):
        return 0.0


def classify_heartbeat(
    vs_week_avg_pct: float,
    warning: float = DEFAULT_WARNING_THRESHOLD,
    critical: float = DEFAULT_CRITICAL_THRESHOLD,
) -> str:
    deviation = abs(vs_week_avg_pct)
    if deviation > critical:
        return "CRITICAL"
    if deviation > warning:
        return "WARNING"
    return "NORMAL"


def classify_fill_rate(fill_rate: float, min_fill_rate: float) -> str:
    if fill_rate < min_fill_rate - 10:
        return "CRITICAL"
    if fill_rate < min_fill_rate:
        return "WARNING"
    return "OK"


def classify_inventory(days_active: int, usage_count: int) -> str:
    if days_active == 1:
        return "NEW"
    if days_active < 7:
        return "RECENT"
    if usage_count < 100:
        return "LOW_USAGE"
    return "ACTIVE"


def parameter_category(parameter_name: str) -> str:
    return "STANDARD" if parameter_name in STANDARD_PARAMETERS else "CUSTOM"


@dataclass(slots=True)
class DiscoveredRule:
    event_name: str
    param_name: str
    platform: str
    usage_count: int
    days_active: int
    current_fill_rate: float
    priority_score: int
    suggested_threshold: int


def consolidate_rules(rules: Sequence[DiscoveredRule]) -> List[DiscoveredRule]:
    """Merge per-platform suggestions into one ``ALL`` rule per event/parameter."""

    grouped: Dict[tuple, DiscoveredRule] = {}
    for rule in rules:
        key = (rule.event_name, rule.param_name)
        current = grouped.get(key)
        if current is None:
            grouped[key] = DiscoveredRule(
                event_name=rule.event_name,
                param_name=rule.param_name,
                platform="ALL",
                usage_count=rule.usage_count,
                days_active=rule.days_active,
                current_fill_rate=rule.current_fill_rate,
                priority_score=rule.priority_score,
                suggested_threshold=rule.suggested_threshold,
            )
            continue
        current.suggested_threshold = max(current.suggested_threshold, rule.suggested_threshold)
        current.priority_score = max(current.priority_score, rule.priority_score)
        current.usage_count += rule.usage_count
    return list(grouped.values())


# ---------------------------------------------------------------------------
# CONFIG_AUDIT rules
# ---------------------------------------------------------------------------
def _is_active(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().upper() == "TRUE"


def load_audit_rules(writer: SheetWriter) -> List[AuditRule]:
    """Return the active rules of ``CONFIG_AUDIT``.

    A missing sheet is created with example rules and yields no rules, so the
    first run never queries on rules the user has not reviewed.
    """

    handle = writer.get_sheet(CONFIG_AUDIT_SHEET)
    if handle is None:
        handle, _created = writer.get_or_create_sheet(CONFIG_AUDIT_SHEET, CONFIG_AUDIT_HEADERS)
        writer.write_range(handle, 2, 1, EXAMPLE_RULES)
        logger.info("Created %s sheet with template rules", CONFIG_AUDIT_SHEET)
        return []

    rules: List[AuditRule] = []
    for row in writer.read_range(handle)[1:]:
        event_name = _text(row, 0).strip()
        param_name = _text(row, 1).strip()
        if not event_name or not param_name or not _is_active(_cell(row, 5)):
            continue
        min_fill_rate = _float(row, 3) or 90.0
        rules.append(
            AuditRule(
                event_name=event_name,
                param_name=param_name,
                platform=_text(row, 2).strip().upper() or "ALL",
                min_fill_rate=min_fill_rate,
                alert_type=_text(row, 4).strip() or "DROP",
            )
        )
    return rules


# ---------------------------------------------------------------------------
# Finalizer
# ---------------------------------------------------------------------------
class ResultFinalizer:
    def __init__(
        self,
        writer: SheetWriter,
        states: SyncStateStore,
        *,
        warning_threshold: float = DEFAULT_WARNING_THRESHOLD,
        critical_threshold: float = DEFAULT_CRITICAL_THRESHOLD,
        clock: Callable[[], datetime] = utc_now,
        write_options: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._writer = writer
        self._states = states
        self._warning = warning_threshold
        self._critical = critical_threshold
        self._clock = clock
        self._write_options = dict(write_options or {})

    def _sync_date(self) -> str:
        return self._clock().strftime(SYNC_DATE_FORMAT)

    def _publish(
        self,
        family: str,
        sheet_name: str,
        headers: Sequence[str],
        data: List[List[Any]],
        counts: Mapping[str, int],
        message: str,
    ) -> FinalizeSummary:
        update = write_data_to_sheet(self._writer, sheet_name, headers, data, **self._write_options)
        if update.status is UpdateStatus.ERROR:
            raise FinalizeError(f"Could not write {sheet_name}: {update.error}")
        self._states.record_sync_state(
            BIGQUERY_SERVICE, family, len(data), SyncStatus.SUCCESS, SyncMode.FULL
        )
        logger.info("%s complete: %s", family, message)
        return FinalizeSummary(
            family=family,
            sheet_name=sheet_name,
            total=len(data),
            counts=dict(counts),
            message=message,
            update=update,
        )

    def finalize_heartbeat(self, results: Mapping[str, Any]) -> FinalizeSummary:
        sync_date = self._sync_date()
        data: List[List[Any]] = []
        for row in result_rows(results):
            vs_week_avg = _float(row, 11)
            data.append(
                [
                    _text(row, 0),
                    _text(row, 1),
                    _text(row, 2),
                    _int(row, 3),
                    _int(row, 4),
                    _float(row, 5),
                    _int(row, 6),
                    _float(row, 7),
                    _int(row, 8),
                    _float(row, 9),
                    _int(row, 10),
                    vs_week_avg,
                    classify_heartbeat(vs_week_avg, self._warning, self._critical),
                    sync_date,
                ]
            )
        counts = Counter(row[12] for row in data)
        message = f"{counts.get('CRITICAL', 0)} critical, {counts.get('WARNING', 0)} warnings"
        return self._publish("HEARTBEAT", ANOMALIES_SHEET, HEARTBEAT_HEADERS, data, counts, message)

    def finalize_dimensional_health(self, results: Mapping[str, Any]) -> FinalizeSummary:
        sync_date = self._sync_date()
        data: List[List[Any]] = []
        for row in result_rows(results):
            min_fill_rate = _float(row, 4)
            fill_rate = _float(row, 7)
            data.append(
                [
                    _text(row, 0),
                    _text(row, 1),
                    _text(row, 2),
                    _text(row, 3),
                    min_fill_rate,
                    _int(row, 5),
                    _int(row, 6),
                    fill_rate,
                    classify_fill_rate(fill_rate, min_fill_rate),
                    sync_date,
                ]
            )
        counts = Counter(row[8] for row in data)
        message = f"{counts.get('CRITICAL', 0)} critical, {counts.get('WARNING', 0)} warnings"
        return self._publish(
            "DIMENSIONAL_HEALTH", PARAM_HEALTH_SHEET, PARAM_HEALTH_HEADERS, data, counts, message
        )

    def finalize_data_inventory(self, results: Mapping[str, Any]) -> FinalizeSummary:
        sync_date = self._sync_date()
        data: List[List[Any]] = []
        for row in result_rows(results):
            parameter = _text(row, 1)
            usage_count = _int(row, 4)
            days_active = _int(row, 5)
            data.append(
                [
                    _text(row, 0),
                    parameter,
                    _text(row, 2),
                    _text(row, 3),
                    usage_count,
                    days_active,
                    _text(row, 6),
                    _text(row, 7),
                    classify_inventory(days_active, usage_count),
                    parameter_category(parameter),
                    sync_date,
                ]
            )
        counts = Counter(row[8] for row in data)
        custom = sum(1 for row in data if row[9] == "CUSTOM")
        counts["CUSTOM"] = custom
        message = (
            f"{len(data)} params ({counts.get('NEW', 0)} new, "
            f"{counts.get('LOW_USAGE', 0)} low-usage, {custom} custom)"
        )
        return self._publish(
            "DATA_INVENTORY", DATA_INVENTORY_SHEET, DATA_INVENTORY_HEADERS, data, counts, message
        )

    def finalize_smart_discovery(self, results: Mapping[str, Any]) -> FinalizeSummary:
        discovered = [
            DiscoveredRule(
                event_name=_text(row, 0),
                param_name=_text(row, 1),
                platform=_text(row, 2, "ALL"),
                usage_count=_int(row, 3),
                days_active=_int(row, 4),
                current_fill_rate=_float(row, 5),
                priority_score=_int(row, 6),
                suggested_threshold=_int(row, 7) or 90,
            )
            for row in result_rows(results)
        ]
        if not discovered:
            # Keep whatever rules the user already maintains.
            message = "no high-priority event/parameter combinations found"
            self._states.record_sync_state(BIGQUERY_SERVICE, "SMART_DISCOVERY", 0, SyncStatus.SUCCESS, SyncMode.FULL)
            logger.info("SMART_DISCOVERY complete: %s", message)
            return FinalizeSummary(family="SMART_DISCOVERY", sheet_name=CONFIG_AUDIT_SHEET, total=0, message=message)

        rules = consolidate_rules(discovered)
        data = [
            [
                rule.event_name,
                rule.param_name,
                rule.platform,
                rule.suggested_threshold,
                "DROP",
                True,
                rule.priority_score,
                rule.usage_count,
            ]
            for rule in rules
        ]
        counts = Counter(str(rule.priority_score) for rule in rules)
        message = f"auto-populated {CONFIG_AUDIT_SHEET} with {len(rules)} rules"
        return self._publish(
            "SMART_DISCOVERY", CONFIG_AUDIT_SHEET, SMART_DISCOVERY_HEADERS, data, counts, message
        )


__all__ = [
    "ANOMALIES_SHEET",
    "CONFIG_AUDIT_HEADERS",
    "CONFIG_AUDIT_SHEET",
    "DATA_INVENTORY_HEADERS",
    "DATA_INVENTORY_SHEET",
    "DiscoveredRule",
    "EXAMPLE_RULES",
    "FinalizeError",
    "FinalizeSummary",
    "HEARTBEAT_HEADERS",
    "PARAM_HEALTH_HEADERS",
    "PARAM_HEALTH_SHEET",
    "ResultFinalizer",
    "SMART_DISCOVERY_HEADERS",
    "classify_fill_rate",
    "classify_heartbeat",
    "classify_inventory",
    "consolidate_rules",
    "load_audit_rules",
    "parameter_category",
    "result_rows",
]
