"""The four GA4 export analyses wired onto the job orchestrator.

``run_*`` methods submit a job; ``check_*_job_status`` methods are the
scheduled entry points. Their names double as trigger function names, so the
handler table returned by :meth:`AlertSuite.handlers` is what
``stackaudit run-triggers`` dispatches on.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from stackaudit.bigquery_client import BigQueryClient, BigQueryError, CostEstimate
from stackaudit.finalizers import ResultFinalizer, load_audit_rules
from stackaudit.jobs import JobFamily, JobHandle, JobOrchestrator, JobSubmissionError, PollOutcome
from stackaudit.queries import (
    build_data_inventory_query,
    build_dimensional_health_query,
    build_heartbeat_query,
    build_smart_discovery_query,
)
from stackaudit.settings import AuditSettings
from stackaudit.sheets_client import SheetWriter

logger = logging.getLogger(__name__)

HEARTBEAT = "heartbeat"
DIMENSIONAL_HEALTH = "dimensional-health"
DATA_INVENTORY = "data-inventory"
SMART_DISCOVERY = "smart-discovery"

FAMILY_NAMES: List[str] = [HEARTBEAT, DIMENSIONAL_HEALTH, DATA_INVENTORY, SMART_DISCOVERY]
FAMILY_KEYS: Dict[str, str] = {
    HEARTBEAT: "BQ_HEARTBEAT",
    DIMENSIONAL_HEALTH: "BQ_DIMHEALTH",
    DATA_INVENTORY: "BQ_INVENTORY",
    SMART_DISCOVERY: "BQ_SMART",
}


class AlertSuite:
    def __init__(
        self,
        client: BigQueryClient,
        writer: SheetWriter,
        orchestrator: JobOrchestrator,
        finalizer: ResultFinalizer,
        settings: AuditSettings,
    ) -> None:
        self._client = client
        self._writer = writer
        self._orchestrator = orchestrator
        self._finalizer = finalizer
        self._settings = settings
        self._families: Dict[str, JobFamily] = {
            HEARTBEAT: JobFamily(
                name=HEARTBEAT,
                key=FAMILY_KEYS[HEARTBEAT],
                check_function="check_heartbeat_job_status",
                build_query=self._heartbeat_query,
                finalize=finalizer.finalize_heartbeat,
            ),
            DIMENSIONAL_HEALTH: JobFamily(
                name=DIMENSIONAL_HEALTH,
                key=FAMILY_KEYS[DIMENSIONAL_HEALTH],
                check_function="check_dimensional_health_job_status",
                build_query=self._dimensional_health_query,
                finalize=finalizer.finalize_dimensional_health,
            ),
            DATA_INVENTORY: JobFamily(
                name=DATA_INVENTORY,
                key=FAMILY_KEYS[DATA_INVENTORY],
                check_function="check_data_inventory_job_status",
                build_query=self._data_inventory_query,
                finalize=finalizer.finalize_data_inventory,
            ),
            SMART_DISCOVERY: JobFamily(
                name=SMART_DISCOVERY,
                key=FAMILY_KEYS[SMART_DISCOVERY],
                check_function="check_smart_discovery_job_status",
                build_query=self._smart_discovery_query,
                finalize=finalizer.finalize_smart_discovery,
            ),
        }

    @property
    def orchestrator(self) -> JobOrchestrator:
        return self._orchestrator

    def family(self, name: str) -> JobFamily:
        try:
            return self._families[name]
        except KeyError:
            raise ValueError(f"Unknown job family {name!r}; expected one of {', '.join(FAMILY_NAMES)}") from None

    def families(self) -> List[JobFamily]:
        return [self._families[name] for name in FAMILY_NAMES]

    # ------------------------------------------------------------------
    # Query builders
    # ------------------------------------------------------------------
    def _dataset(self, project_id: str) -> str:
        dataset_id = self._client.find_ga4_dataset(project_id)
        if not dataset_id:
            raise BigQueryError(
                "No GA4 export dataset found. Ensure BigQuery export is enabled for your GA4 property."
            )
        return dataset_id

    def _heartbeat_query(self, project_id: str) -> str:
        settings = self._settings
        return build_heartbeat_query(
            project_id,
            self._dataset(project_id),
            warning_threshold=settings.warning_threshold,
            critical_threshold=settings.critical_threshold,
            min_event_count=settings.min_event_count,
            lookback_days=settings.lookback_days,
        )

    def _dimensional_health_query(self, project_id: str) -> str:
        rules = load_audit_rules(self._writer)
        if not rules:
            raise ValueError("No active audit rules. Add event/parameter rules to the CONFIG_AUDIT sheet first.")
        logger.info("Dimensional health check with %d rules", len(rules))
        return build_dimensional_health_query(project_id, self._dataset(project_id), rules)

    def _data_inventory_query(self, project_id: str) -> str:
        return build_data_inventory_query(project_id, self._dataset(project_id))

    def _smart_discovery_query(self, project_id: str) -> str:
        return build_smart_discovery_query(project_id, self._dataset(project_id))

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def submit(self, name: str, *, replace: bool = False) -> JobHandle:
        project_id = self._settings.bq_project_id
        if not project_id:
            raise JobSubmissionError("No BigQuery project id configured (bq_project_id).")
        return self._orchestrator.submit(self.family(name), project_id, replace=replace)

    def check(self, name: str) -> PollOutcome:
        return self._orchestrator.check_status(self.family(name))

    def reset(self, name: str) -> bool:
        return self._orchestrator.reset(self.family(name))

    def run_heartbeat_alert(self, *, replace: bool = False) -> JobHandle:
        return self.submit(HEARTBEAT, replace=replace)

    def run_dimensional_health_check(self, *, replace: bool = False) -> JobHandle:
        return self.submit(DIMENSIONAL_HEALTH, replace=replace)

    def run_data_inventory(self, *, replace: bool = False) -> JobHandle:
        return self.submit(DATA_INVENTORY, replace=replace)

    def run_smart_discovery(self, *, replace: bool = False) -> JobHandle:
        return self.submit(SMART_DISCOVERY, replace=replace)

    def check_heartbeat_job_status(self) -> PollOutcome:
        return self.check(HEARTBEAT)

    def check_dimensional_health_job_status(self) -> PollOutcome:
        return self.check(DIMENSIONAL_HEALTH)

    def check_data_inventory_job_status(self) -> PollOutcome:
        return self.check(DATA_INVENTORY)

    def check_smart_discovery_job_status(self) -> PollOutcome:
        return self.check(SMART_DISCOVERY)

    def handlers(self) -> Dict[str, Callable[[], PollOutcome]]:
        return {family.check_function: getattr(self, family.check_function) for family in self.families()}

    def estimate_cost(self, name: str = HEARTBEAT, project_id: Optional[str] = None) -> CostEstimate:
        project = project_id or self._settings.bq_project_id
        if not project:
            raise BigQueryError("No BigQuery project id configured (bq_project_id).")
        sql = self.family(name).build_query(project)
        return self._client.estimate_query_cost(sql, project)


__all__ = [
    "AlertSuite",
    "DATA_INVENTORY",
    "DIMENSIONAL_HEALTH",
    "FAMILY_KEYS",
    "FAMILY_NAMES",
    "HEARTBEAT",
    "SMART_DISCOVERY",
]
