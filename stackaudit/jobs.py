"""Submit long BigQuery jobs and poll them to completion without blocking.

Each job family (heartbeat, dimensional health, ...) owns one persisted
:class:`JobHandle` and one named check function. Submitting inserts the job,
stores the handle and schedules the check function; every check either
reschedules itself or reaches a terminal state, at which point the handle is
deleted and every pending trigger of that family's check function is removed.

The handle is always written before the first check is scheduled, and the
finalizer runs before the handle is deleted, so a process killed at any point
leaves either a handle that the next check resumes or no trace at all.
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from stackaudit.bigquery_client import JobStatus
from stackaudit.scheduling import Scheduler
from stackaudit.storage import KeyValueStore, StorageError
from stackaudit.sync_state import SyncMode, SyncStateStore, SyncStatus

logger = logging.getLogger(__name__)

DEFAULT_POLL_DELAY_SECONDS = 10
BIGQUERY_SERVICE = "BIGQUERY"


class JobSubmissionError(RuntimeError):
    """Raised when a job could not be built, inserted or scheduled."""


class JobAlreadyRunningError(JobSubmissionError):
    """Raised when a family already has a job in flight."""


class QueryEngine(Protocol):
    def submit_query(self, sql: str, project_id: str) -> str:
        ...

    def get_job_status(self, project_id: str, job_id: str) -> JobStatus:
        ...

    def get_job_results(self, project_id: str, job_id: str) -> Dict[str, Any]:
        ...

    def cancel_job(self, project_id: str, job_id: str) -> None:
        ...


@dataclass(slots=True)
class JobHandle:
    job_id: str
    project_id: str


@dataclass(frozen=True)
class JobFamily:
    """A named kind of long-running query and the callables that serve it."""

    name: str
    key: str
    check_function: str
    build_query: Callable[[str], str]
    finalize: Callable[[Mapping[str, Any]], Any]

    @property
    def resource_type(self) -> str:
        return self.name.replace("-", "_").upper()


class PollOutcome(Enum):
    NO_JOB = "NO_JOB"
    RESCHEDULED = "RESCHEDULED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    BUSY = "BUSY"


# ---------------------------------------------------------------------------
# Handle persistence
# ---------------------------------------------------------------------------
class JobHandleRepository:
    """Store handles under ``<FAMILY_KEY>_JOB_ID`` and ``<FAMILY_KEY>_PROJECT_ID``."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    @staticmethod
    def job_id_key(family_key: str) -> str:
        return f"{family_key}_JOB_ID"

    @staticmethod
    def project_id_key(family_key: str) -> str:
        return f"{family_key}_PROJECT_ID"

    def _read(self, key: str) -> Optional[str]:
        raw = self._store.get(key)
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        return str(value) if value else None

    def load(self, family_key: str) -> Optional[JobHandle]:
        job_id = self._read(self.job_id_key(family_key))
        project_id = self._read(self.project_id_key(family_key))
        if not job_id or not project_id:
            return None
        return JobHandle(job_id=job_id, project_id=project_id)

    def save(self, family_key: str, handle: JobHandle) -> None:
        self._store.set(self.job_id_key(family_key), json.dumps(handle.job_id))
        self._store.set(self.project_id_key(family_key), json.dumps(handle.project_id))

    def delete(self, family_key: str) -> None:
        self._store.delete(self.job_id_key(family_key))
        self._store.delete(self.project_id_key(family_key))


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------
class JobOrchestrator:
    def __init__(
        self,
        engine: QueryEngine,
        handles: JobHandleRepository,
        scheduler: Scheduler,
        states: SyncStateStore,
        *,
        poll_delay_seconds: float = DEFAULT_POLL_DELAY_SECONDS,
    ) -> None:
        self._engine = engine
        self._handles = handles
        self._scheduler = scheduler
        self._states = states
        self._poll_delay = max(1.0, float(poll_delay_seconds))
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, family: JobFamily) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(family.key, threading.Lock())

    def pending_handle(self, family: JobFamily) -> Optional[JobHandle]:
        try:
            return self._handles.load(family.key)
        except StorageError as exc:
            logger.warning("Could not read %s job handle: %s", family.name, exc)
            return None

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------
    def submit(self, family: JobFamily, project_id: str, *, replace: bool = False) -> JobHandle:
        """Insert a job for ``family`` and schedule its first status check.

        Raises :class:`JobAlreadyRunningError` when a handle already exists and
        ``replace`` is false. With ``replace`` the previous job is cancelled on
        a best-effort basis first.
        """

        if not project_id:
            raise JobSubmissionError("A BigQuery project id is required.")

        with self._lock_for(family):
            try:
                existing = self._handles.load(family.key)
            except StorageError as exc:
                logger.error("Cannot read %s job handle: %s", family.name, exc)
                raise JobSubmissionError(f"{family.name}: job state unavailable: {exc}") from exc

            if existing is not None:
                if not replace:
                    raise JobAlreadyRunningError(
                        f"{family.name} job {existing.job_id} is still pending; reset it or submit with replace"
                    )
                logger.warning("Replacing pending %s job %s", family.name, existing.job_id)
                self._cancel_engine_job(family, existing)
                self._finish(family)

            try:
                sql = family.build_query(project_id)
                job_id = self._engine.submit_query(sql, project_id)
            except Exception as exc:
                logger.error("%s submission failed: %s", family.name, exc)
                raise JobSubmissionError(f"{family.name} submission failed: {exc}") from exc

            handle = JobHandle(job_id=job_id, project_id=project_id)
            try:
                self._handles.save(family.key, handle)
                self._scheduler.schedule_callback(family.check_function, self._poll_delay)
            except Exception as exc:
                logger.error("Could not track %s job %s: %s", family.name, job_id, exc)
                self._cancel_engine_job(family, handle)
                self._delete_handle(family)
                raise JobSubmissionError(f"{family.name} job {job_id} could not be tracked: {exc}") from exc

            logger.info("%s job %s submitted to %s", family.name, job_id, project_id)
            return handle

    # ------------------------------------------------------------------
    # Check
    # ------------------------------------------------------------------
    def check_status(self, family: JobFamily) -> PollOutcome:
        """Poll the family's job once; the entry point of its scheduled check."""

        lock = self._lock_for(family)
        if not lock.acquire(blocking=False):
            logger.debug("%s check already in progress", family.name)
            return PollOutcome.BUSY
        try:
            return self._check(family)
        finally:
            lock.release()

    def _check(self, family: JobFamily) -> PollOutcome:
        try:
            handle = self._handles.load(family.key)
            if handle is None:
                logger.warning("No pending %s job found", family.name)
                self.cleanup(family)
                return PollOutcome.NO_JOB

            status = self._engine.get_job_status(handle.project_id, handle.job_id)
            logger.info("%s job %s status: %s", family.name, handle.job_id, status.state)

            if not status.done:
                if not status.in_flight:
                    logger.warning("Unexpected %s job state %s; polling again", family.name, status.state)
                self._scheduler.schedule_callback(family.check_function, self._poll_delay)
                return PollOutcome.RESCHEDULED

            if status.failed:
                logger.error("%s job %s failed: %s", family.name, handle.job_id, status.error_message)
                self._finish(family)
                self._record_failure(family)
                return PollOutcome.FAILED

            results = self._engine.get_job_results(handle.project_id, handle.job_id)
            family.finalize(results)
            self._finish(family)
            return PollOutcome.COMPLETED
        except Exception:
            logger.exception("Error checking %s job", family.name)
            self._finish(family)
            self._record_failure(family)
            return PollOutcome.FAILED

    # ------------------------------------------------------------------
    # Cleanup and reset
    # ------------------------------------------------------------------
    def cleanup(self, family: JobFamily) -> int:
        """Cancel every pending trigger of this family's check function."""

        removed = 0
        try:
            for callback in self._scheduler.list_scheduled_callbacks():
                if callback.function_name == family.check_function:
                    self._scheduler.cancel_scheduled_callback(callback.id)
                    removed += 1
        except Exception as exc:
            logger.warning("Could not clean up %s triggers: %s", family.name, exc)
        if removed:
            logger.debug("Removed %d %s triggers", removed, family.check_function)
        return removed

    def reset(self, family: JobFamily, *, cancel_job: bool = True) -> bool:
        """Forget a stuck job. Returns True when a handle was present."""

        with self._lock_for(family):
            handle = self.pending_handle(family)
            if handle is not None and cancel_job:
                self._cancel_engine_job(family, handle)
            self._finish(family)
        logger.info("Reset %s job state (handle present: %s)", family.name, handle is not None)
        return handle is not None

    def _finish(self, family: JobFamily) -> None:
        self._delete_handle(family)
        self.cleanup(family)

    def _delete_handle(self, family: JobFamily) -> None:
        try:
            self._handles.delete(family.key)
        except StorageError as exc:
            logger.error("Could not delete %s job handle: %s", family.name, exc)

    def _cancel_engine_job(self, family: JobFamily, handle: JobHandle) -> None:
        try:
            self._engine.cancel_job(handle.project_id, handle.job_id)
        except Exception as exc:
            logger.warning("Could not cancel %s job %s: %s", family.name, handle.job_id, exc)

    def _record_failure(self, family: JobFamily) -> None:
        self._states.record_sync_state(
            BIGQUERY_SERVICE, family.resource_type, 0, SyncStatus.ERROR, SyncMode.FULL
        )


__all__ = [
    "BIGQUERY_SERVICE",
    "DEFAULT_POLL_DELAY_SECONDS",
    "JobAlreadyRunningError",
    "JobFamily",
    "JobHandle",
    "JobHandleRepository",
    "JobOrchestrator",
    "JobSubmissionError",
    "PollOutcome",
    "QueryEngine",
]
