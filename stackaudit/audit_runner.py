"""Run synchronous resource audits with FULL/INCREMENTAL selection.

A resource audit fetches rows, narrows them to what changed since the last
watermark when running incrementally, reconciles them onto the resource's
sheet and only then records the sync state. Resources are isolated from each
other: one failing resource is recorded as ERROR and the rest still run.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from stackaudit.audit_mode import (
    DEFAULT_WATERMARK_MARGIN_SECONDS,
    AuditMode,
    effective_mode,
    filter_modified_since,
    get_audit_mode,
)
from stackaudit.sheet_ops import FullOverwrite, UpdateResult, UpdateStatus, strategy_for
from stackaudit.sheets_client import SheetWriter
from stackaudit.sync_state import SyncMode, SyncStateStore, SyncStatus

logger = logging.getLogger(__name__)

Row = List[Any]


@dataclass
class ResourceSpec:
    """How to fetch and store one ``(service, resource_type)`` pair."""

    service: str
    resource_type: str
    sheet_name: str
    headers: Sequence[str]
    fetch: Callable[[], Sequence[Row]]
    primary_key_index: int = 0
    modified_column: Optional[int] = None
    strategy: Optional[str] = None
    ignore_columns: Sequence[int] = ()


@dataclass(slots=True)
class ResourceResult:
    service: str
    resource_type: str
    mode: AuditMode
    status: SyncStatus
    fetched: int = 0
    records: int = 0
    update: Optional[UpdateResult] = None
    error: Optional[str] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "resource_type": self.resource_type,
            "mode": self.mode.value,
            "status": self.status.value,
            "fetched": self.fetched,
            "records": self.records,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "update": self.update.to_dict() if self.update else None,
        }


@dataclass(slots=True)
class RunReport:
    status: SyncStatus
    results: List[ResourceResult] = field(default_factory=list)

    @property
    def records(self) -> int:
        return sum(result.records for result in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "records": self.records,
            "results": [result.to_dict() for result in self.results],
        }


def aggregate_status(results: Sequence[ResourceResult]) -> SyncStatus:
    if not results:
        return SyncStatus.SUCCESS
    failed = sum(1 for result in results if result.status is SyncStatus.ERROR)
    if failed == 0:
        return SyncStatus.SUCCESS
    if failed == len(results):
        return SyncStatus.ERROR
    return SyncStatus.PARTIAL


class AuditRunner:
    def __init__(
        self,
        writer: SheetWriter,
        states: SyncStateStore,
        *,
        incremental_enabled: bool = True,
        force_full_audit: bool = False,
        margin_seconds: float = DEFAULT_WATERMARK_MARGIN_SECONDS,
        write_options: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._writer = writer
        self._states = states
        self._incremental_enabled = incremental_enabled
        self._force_full_audit = force_full_audit
        self._margin_seconds = margin_seconds
        self._write_options = dict(write_options or {})

    def mode_for(self, spec: ResourceSpec, force_full_audit: Optional[bool] = None) -> AuditMode:
        force = self._force_full_audit if force_full_audit is None else force_full_audit
        selected = effective_mode(
            get_audit_mode(self._states, spec.service, spec.resource_type, force),
            self._incremental_enabled,
        )
        if selected is AuditMode.INCREMENTAL:
            previous = self._states.get_sync_state(spec.service, spec.resource_type)
            # The watermark of a failed attempt does not cover the rows it missed.
            if previous is not None and previous.last_sync_status is not SyncStatus.SUCCESS:
                logger.info(
                    "%s/%s: last sync was %s, running FULL",
                    spec.service,
                    spec.resource_type,
                    previous.last_sync_status.value,
                )
                return AuditMode.FULL
        return selected

    def _strategy(self, spec: ResourceSpec, mode: AuditMode):
        if mode is AuditMode.FULL:
            return FullOverwrite(**self._write_options)
        overrides = {spec.sheet_name: spec.strategy} if spec.strategy else None
        return strategy_for(
            spec.sheet_name, overrides, ignore_columns=spec.ignore_columns, **self._write_options
        )

    def run_resource(self, spec: ResourceSpec, *, force_full_audit: Optional[bool] = None) -> ResourceResult:
        """Audit one resource. Fetch errors propagate; write errors are recorded."""

        started = time.monotonic()
        mode = self.mode_for(spec, force_full_audit)
        logger.info("%s/%s: starting %s audit", spec.service, spec.resource_type, mode.value)

        records = [list(row) for row in spec.fetch()]
        fetched = len(records)
        if mode is AuditMode.INCREMENTAL and spec.modified_column is not None:
            column = spec.modified_column
            records = filter_modified_since(
                records,
                self._states.get_last_sync_timestamp(spec.service, spec.resource_type),
                lambda row: row[column] if column < len(row) else None,
                self._margin_seconds,
            )

        update = self._strategy(spec, mode).apply(
            self._writer, spec.sheet_name, records, spec.primary_key_index, headers=spec.headers
        )
        duration_ms = int((time.monotonic() - started) * 1000)
        status = SyncStatus.ERROR if update.status is UpdateStatus.ERROR else SyncStatus.SUCCESS
        self._states.record_sync_state(
            spec.service,
            spec.resource_type,
            len(records),
            status,
            SyncMode(mode.value),
            duration_ms=duration_ms,
        )
        return ResourceResult(
            service=spec.service,
            resource_type=spec.resource_type,
            mode=mode,
            status=status,
            fetched=fetched,
            records=len(records),
            update=update,
            error=update.error,
            duration_ms=duration_ms,
        )

    def run(self, specs: Sequence[ResourceSpec], *, force_full_audit: Optional[bool] = None) -> RunReport:
        results: List[ResourceResult] = []
        for spec in specs:
            started = time.monotonic()
            try:
                results.append(self.run_resource(spec, force_full_audit=force_full_audit))
            except Exception as exc:
                logger.exception("%s/%s audit failed", spec.service, spec.resource_type)
                duration_ms = int((time.monotonic() - started) * 1000)
                self._states.record_sync_state(
                    spec.service, spec.resource_type, 0, SyncStatus.ERROR, SyncMode.FULL, duration_ms=duration_ms
                )
                results.append(
                    ResourceResult(
                        service=spec.service,
                        resource_type=spec.resource_type,
                        mode=AuditMode.FULL,
                        status=SyncStatus.ERROR,
                        error=str(exc),
                        duration_ms=duration_ms,
                    )
                )
        report = RunReport(status=aggregate_status(results), results=results)
        logger.info("Audit run finished: %s (%d records)", report.status.value, report.records)
        return report


__all__ = [
    "AuditRunner",
    "ResourceResult",
    "ResourceSpec",
    "RunReport",
    "aggregate_status",
]
