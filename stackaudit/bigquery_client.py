"""Thin wrapper around the BigQuery v2 discovery service.

Only the calls the audits need are exposed: job submission and polling, result
pagination, and the dataset/table listings used by the inventory audit. HTTP
failures surface as :class:`BigQueryError` after the shared retry policy has
had its chance.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from googleapiclient.errors import HttpError

from stackaudit.google_credentials import BIGQUERY_SCOPE, CredentialsFileInvalidError, build_service
from stackaudit.retry import call_with_retry

logger = logging.getLogger(__name__)

SCOPES: Sequence[str] = (BIGQUERY_SCOPE,)
GA4_DATASET_PREFIX = "analytics_"
BYTES_PER_GB = 1024 ** 3
USD_PER_GB = 0.005

IN_FLIGHT_STATES = frozenset({"PENDING", "RUNNING"})


class BigQueryError(RuntimeError):
    """Raised when a BigQuery API call fails or returns an unusable payload."""


@dataclass(slots=True)
class JobStatus:
    state: str
    error_message: Optional[str] = None
    error_reason: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.state == "DONE"

    @property
    def in_flight(self) -> bool:
        return self.state in IN_FLIGHT_STATES

    @property
    def failed(self) -> bool:
        return self.done and self.error_message is not None


@dataclass(slots=True)
class CostEstimate:
    bytes_processed: int
    gb_processed: float
    estimated_cost_usd: float

    def describe(self) -> str:
        return f"{self.gb_processed:.2f} GB processed, about ${self.estimated_cost_usd:.4f}"


def _query_body(sql: str, *, dry_run: bool = False) -> Dict[str, Any]:
    configuration: Dict[str, Any] = {"query": {"query": sql, "useLegacySql": False}}
    if dry_run:
        configuration["dryRun"] = True
    return {"configuration": configuration}


class BigQueryClient:
    def __init__(
        self,
        credential_path: Union[str, Path, None] = None,
        *,
        service=None,
    ) -> None:
        if service is None:
            if credential_path is None:
                raise BigQueryError("A credential path is required to reach BigQuery.")
            try:
                service = build_service("bigquery", "v2", credential_path, scopes=SCOPES)
            except CredentialsFileInvalidError as exc:
                raise BigQueryError(str(exc)) from exc
        self._service = service

    def _execute(self, request, description: str) -> Dict[str, Any]:
        try:
            response = call_with_retry(request.execute, description)
        except HttpError as exc:
            raise BigQueryError(f"BigQuery {description} failed: {exc}") from exc
        return response or {}

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------
    def submit_query(self, sql: str, project_id: str) -> str:
        """Insert a standard SQL query job and return its job id."""

        request = self._service.jobs().insert(projectId=project_id, body=_query_body(sql))
        response = self._execute(request, "jobs.insert")
        job_id = (response.get("jobReference") or {}).get("jobId")
        if not job_id:
            raise BigQueryError("jobs.insert response did not include a job id")
        logger.info("Submitted BigQuery job %s in %s", job_id, project_id)
        return job_id

    def get_job_status(self, project_id: str, job_id: str) -> JobStatus:
        request = self._service.jobs().get(projectId=project_id, jobId=job_id)
        status = self._execute(request, "jobs.get").get("status") or {}
        error = status.get("errorResult") or {}
        return JobStatus(
            state=str(status.get("state") or "PENDING"),
            error_message=(error.get("message") or error.get("reason") or "unknown error") if error else None,
            error_reason=error.get("reason") if error else None,
        )

    def get_job_results(self, project_id: str, job_id: str, *, page_size: Optional[int] = None) -> Dict[str, Any]:
        """Return ``{"schema", "rows", "totalRows"}`` with every result page merged."""

        rows: List[Dict[str, Any]] = []
        schema: Dict[str, Any] = {}
        total_rows = 0
        page_token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"projectId": project_id, "jobId": job_id}
            if page_token:
                params["pageToken"] = page_token
            if page_size:
                params["maxResults"] = page_size
            response = self._execute(self._service.jobs().getQueryResults(**params), "jobs.getQueryResults")
            if response.get("jobComplete") is False:
                raise BigQueryError(f"Results for job {job_id} are not ready")
            schema = response.get("schema") or schema
            rows.extend(response.get("rows") or [])
            total_rows = int(response.get("totalRows") or len(rows))
            page_token = response.get("pageToken")
            if not page_token:
                break
        logger.debug("Fetched %d result rows for job %s", len(rows), job_id)
        return {"schema": schema, "rows": rows, "totalRows": total_rows}

    def cancel_job(self, project_id: str, job_id: str) -> None:
        self._execute(self._service.jobs().cancel(projectId=project_id, jobId=job_id), "jobs.cancel")
        logger.info("Requested cancellation of BigQuery job %s", job_id)

    def estimate_query_cost(self, sql: str, project_id: str) -> CostEstimate:
        """Dry-run ``sql`` and price the scanned bytes at on-demand rates."""

        request = self._service.jobs().insert(projectId=project_id, body=_query_body(sql, dry_run=True))
        statistics = self._execute(request, "jobs.insert(dryRun)").get("statistics") or {}
        try:
            processed = int(statistics.get("totalBytesProcessed") or 0)
        except (TypeError, ValueError):
            processed = 0
        gb_processed = processed / BYTES_PER_GB
        return CostEstimate(
            bytes_processed=processed,
            gb_processed=gb_processed,
            estimated_cost_usd=gb_processed * USD_PER_GB,
        )

    # ------------------------------------------------------------------
    # Datasets and tables
    # ------------------------------------------------------------------
    def _paginate(self, build_request, collection: str, description: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            response = self._execute(build_request(page_token), description)
            items.extend(response.get(collection) or [])
            page_token = response.get("nextPageToken")
            if not page_token:
                return items

    def list_datasets(self, project_id: str) -> List[Dict[str, Any]]:
        datasets = self._service.datasets()

        def build(page_token):
            params = {"projectId": project_id}
            if page_token:
                params["pageToken"] = page_token
            return datasets.list(**params)

        return self._paginate(build, "datasets", "datasets.list")

    def get_dataset(self, project_id: str, dataset_id: str) -> Dict[str, Any]:
        request = self._service.datasets().get(projectId=project_id, datasetId=dataset_id)
        return self._execute(request, "datasets.get")

    def list_tables(self, project_id: str, dataset_id: str) -> List[Dict[str, Any]]:
        tables = self._service.tables()

        def build(page_token):
            params = {"projectId": project_id, "datasetId": dataset_id}
            if page_token:
                params["pageToken"] = page_token
            return tables.list(**params)

        return self._paginate(build, "tables", "tables.list")

    def get_table(self, project_id: str, dataset_id: str, table_id: str) -> Dict[str, Any]:
        request = self._service.tables().get(projectId=project_id, datasetId=dataset_id, tableId=table_id)
        return self._execute(request, "tables.get")

    def find_ga4_dataset(self, project_id: str) -> Optional[str]:
        """Return the first GA4 export dataset (``analytics_<property>``) of the project."""

        for dataset in self.list_datasets(project_id):
            dataset_id = (dataset.get("datasetReference") or {}).get("datasetId") or ""
            if dataset_id.startswith(GA4_DATASET_PREFIX):
                return dataset_id
        return None


__all__ = [
    "BigQueryClient",
    "BigQueryError",
    "CostEstimate",
    "GA4_DATASET_PREFIX",
    "IN_FLIGHT_STATES",
    "JobStatus",
    "SCOPES",
    "USD_PER_GB",
]
