"""Wire settings, storage and Google clients into ready-to-use services."""
from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from stackaudit.alerts import AlertSuite
from stackaudit.audit_runner import AuditRunner, RunReport
from stackaudit.bigquery_client import BigQueryClient
from stackaudit.bigquery_inventory import BigQueryInventory
from stackaudit.finalizers import ResultFinalizer
from stackaudit.jobs import JobHandleRepository, JobOrchestrator
from stackaudit.logging_config import SheetLogHandler
from stackaudit.scheduling import TriggerRunner, TriggerScheduler
from stackaudit.settings import AuditSettings
from stackaudit.sheet_ops import UpdateResult
from stackaudit.sheets_client import GoogleSheetsWriter, SheetsClientError, SheetWriter
from stackaudit.storage import KeyValueStore, SqliteKeyValueStore
from stackaudit.sync_state import SyncStateStore

logger = logging.getLogger(__name__)


class StackAudit:
    """Lazily build every collaborator from one :class:`AuditSettings`.

    Collaborators may be injected, which is how tests swap in in-memory
    stores and fake Google services.
    """

    def __init__(
        self,
        settings: AuditSettings,
        *,
        store: Optional[KeyValueStore] = None,
        writer: Optional[SheetWriter] = None,
        bigquery: Optional[BigQueryClient] = None,
        scheduler: Optional[TriggerScheduler] = None,
    ) -> None:
        self.settings = settings
        self._store = store
        self._writer = writer
        self._bigquery = bigquery
        self._scheduler = scheduler
        self._states: Optional[SyncStateStore] = None
        self._alerts: Optional[AlertSuite] = None

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------
    @property
    def store(self) -> KeyValueStore:
        if self._store is None:
            self._store = SqliteKeyValueStore(self.settings.state_db_path)
        return self._store

    @property
    def states(self) -> SyncStateStore:
        if self._states is None:
            self._states = SyncStateStore(self.store)
        return self._states

    @property
    def scheduler(self) -> TriggerScheduler:
        if self._scheduler is None:
            self._scheduler = TriggerScheduler(self.store)
        return self._scheduler

    @property
    def writer(self) -> SheetWriter:
        if self._writer is None:
            if not self.settings.spreadsheet_id:
                raise SheetsClientError("No spreadsheet configured (spreadsheet_id).")
            self._writer = GoogleSheetsWriter(
                self.settings.spreadsheet_id,
                self.settings.credential_path,
                batch_size=self.settings.batch_size,
            )
        return self._writer

    @property
    def bigquery(self) -> BigQueryClient:
        if self._bigquery is None:
            self._bigquery = BigQueryClient(self.settings.credential_path)
        return self._bigquery

    @property
    def alerts(self) -> AlertSuite:
        if self._alerts is None:
            settings = self.settings
            finalizer = ResultFinalizer(
                self.writer,
                self.states,
                warning_threshold=settings.warning_threshold,
                critical_threshold=settings.critical_threshold,
                write_options=settings.write_options(),
            )
            orchestrator = JobOrchestrator(
                self.bigquery,
                JobHandleRepository(self.store),
                self.scheduler,
                self.states,
                poll_delay_seconds=settings.poll_delay_seconds,
            )
            self._alerts = AlertSuite(self.bigquery, self.writer, orchestrator, finalizer, settings)
        return self._alerts

    def runner(self, *, force_full_audit: Optional[bool] = None) -> AuditRunner:
        settings = self.settings
        return AuditRunner(
            self.writer,
            self.states,
            incremental_enabled=settings.incremental_enabled,
            force_full_audit=settings.force_full_audit if force_full_audit is None else force_full_audit,
            margin_seconds=settings.watermark_margin_seconds,
            write_options=settings.write_options(),
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def handlers(self) -> Dict[str, Callable[[], object]]:
        return dict(self.alerts.handlers())

    def run_triggers(self) -> int:
        return self.scheduler.run_due(self.handlers())

    def trigger_runner(self, interval_seconds: float = 5.0) -> TriggerRunner:
        return TriggerRunner(self.scheduler, self.handlers(), interval_seconds=interval_seconds)

    def audit_bigquery(self, *, full: bool = False) -> RunReport:
        if not self.settings.bq_project_id:
            raise ValueError("No BigQuery project id configured (bq_project_id).")
        inventory = BigQueryInventory(
            self.bigquery,
            self.settings.bq_project_id,
            table_date_range_days=self.settings.table_date_range_days,
        )
        return self.runner(force_full_audit=full or None).run(inventory.resource_specs())

    def update_metadata(self) -> UpdateResult:
        return self.states.update_audit_metadata_sheet(self.writer)

    def attach_sheet_logging(self) -> SheetLogHandler:
        handler = SheetLogHandler(self.writer)
        logging.getLogger().addHandler(handler)
        return handler


__all__ = ["StackAudit"]
