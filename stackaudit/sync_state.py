"""Per-resource sync watermarks enabling incremental audits.

Every ``(service, resource_type)`` pair audited by stackaudit gets a
:class:`SyncState` describing the last completed attempt. The state is only
written once an attempt finishes, so a run killed mid-way leaves the previous
watermark in place and the next run simply redoes the work.

Storage problems never escape this module: reads degrade to "never synced"
(which forces a FULL audit) and writes degrade to ``None`` plus a logged
error.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Union

from stackaudit.sheet_ops import UpdateResult, write_data_to_sheet
from stackaudit.storage import KeyValueStore, StorageError

if TYPE_CHECKING:  # pragma: no cover - annotations only
    from stackaudit.sheets_client import SheetWriter

logger = logging.getLogger(__name__)

STATE_PREFIX = "SYNC_STATE_"
HISTORY_PREFIX = "SYNC_HISTORY_"
HISTORY_LIMIT = 10
METADATA_SHEET = "_AUDIT_METADATA"
METADATA_HEADERS: List[str] = [
    "Service",
    "Resource Type",
    "Last Sync Timestamp",
    "Record Count",
    "Status",
    "Sync Mode",
]

_STATE_KEY_RE = re.compile(r"^SYNC_STATE_([A-Z0-9]+)_([A-Z0-9_]+)$")


class SyncStatus(Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    ERROR = "ERROR"


class SyncMode(Enum):
    FULL = "FULL"
    DELTA = "DELTA"
    INCREMENTAL = "INCREMENTAL"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, returning an aware UTC ``datetime``."""

    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True)
class SyncState:
    """Outcome of the last completed sync for one service/resource pair."""

    service: str
    resource_type: str
    last_sync_timestamp: Optional[datetime]
    last_sync_count: int
    last_sync_status: SyncStatus
    sync_mode: SyncMode
    sync_duration_ms: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "resourceType": self.resource_type,
            "lastSyncTimestamp": (
                format_timestamp(self.last_sync_timestamp) if self.last_sync_timestamp else None
            ),
            "lastSyncCount": self.last_sync_count,
            "lastSyncStatus": self.last_sync_status.value,
            "syncMode": self.sync_mode.value,
            "syncDurationMs": self.sync_duration_ms,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SyncState":
        """Build a state from its JSON form, raising ``ValueError`` when malformed."""

        if not isinstance(payload, Mapping):
            raise ValueError("sync state payload must be an object")
        service = payload.get("service")
        resource_type = payload.get("resourceType")
        if not isinstance(service, str) or not isinstance(resource_type, str):
            raise ValueError("sync state payload is missing service/resourceType")
        try:
            count = int(payload.get("lastSyncCount") or 0)
            duration = int(payload.get("syncDurationMs") or 0)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid sync state counters: {exc}") from exc
        return cls(
            service=service.upper(),
            resource_type=resource_type.upper(),
            last_sync_timestamp=parse_timestamp(payload.get("lastSyncTimestamp")),
            last_sync_count=max(0, count),
            last_sync_status=SyncStatus(payload.get("lastSyncStatus", "SUCCESS")),
            sync_mode=SyncMode(payload.get("syncMode", "DELTA")),
            sync_duration_ms=max(0, duration),
        )


def _normalise(value: Optional[str]) -> str:
    return (value or "").strip().upper()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------
class SyncStateRepository:
    """Typed access to the ``SYNC_STATE_*`` and ``SYNC_HISTORY_*`` namespaces.

    Methods raise :class:`StorageError` for store failures and ``ValueError``
    for corrupt payloads; :class:`SyncStateStore` turns both into safe
    defaults.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    @staticmethod
    def state_key(service: str, resource_type: str) -> str:
        return f"{STATE_PREFIX}{_normalise(service)}_{_normalise(resource_type)}"

    @staticmethod
    def history_key(service: str, resource_type: str) -> str:
        return f"{HISTORY_PREFIX}{_normalise(service)}_{_normalise(resource_type)}"

    def load(self, service: str, resource_type: str) -> Optional[SyncState]:
        raw = self._store.get(self.state_key(service, resource_type))
        if raw is None:
            return None
        return SyncState.from_payload(json.loads(raw))

    def load_key(self, key: str) -> Optional[SyncState]:
        raw = self._store.get(key)
        if raw is None:
            return None
        return SyncState.from_payload(json.loads(raw))

    def save(self, state: SyncState) -> None:
        key = self.state_key(state.service, state.resource_type)
        self._store.set(key, json.dumps(state.to_payload()))

    def delete_key(self, key: str) -> None:
        self._store.delete(key)

    def state_keys(self) -> List[str]:
        return [key for key in self._store.list_keys() if key.startswith(STATE_PREFIX)]

    def load_history(self, service: str, resource_type: str) -> List[Dict[str, Any]]:
        raw = self._store.get(self.history_key(service, resource_type))
        if raw is None:
            return []
        history = json.loads(raw)
        if not isinstance(history, list):
            return []
        return [entry for entry in history if isinstance(entry, dict)]

    def append_history(self, state: SyncState, limit: int = HISTORY_LIMIT) -> None:
        try:
            history = self.load_history(state.service, state.resource_type)
        except ValueError:
            history = []
        history.append(state.to_payload())
        if len(history) > limit:
            history = history[-limit:]
        self._store.set(self.history_key(state.service, state.resource_type), json.dumps(history))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
class SyncStateStore:
    """Record and query sync watermarks without ever raising storage errors."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        history_limit: int = HISTORY_LIMIT,
    ) -> None:
        self._repository = SyncStateRepository(store)
        self._clock = clock
        self._history_limit = max(1, history_limit)

    @property
    def repository(self) -> SyncStateRepository:
        return self._repository

    def record_sync_state(
        self,
        service: str,
        resource_type: str,
        record_count: int,
        status: Union[SyncStatus, str] = SyncStatus.SUCCESS,
        sync_mode: Union[SyncMode, str] = SyncMode.DELTA,
        *,
        duration_ms: int = 0,
    ) -> Optional[SyncState]:
        """Persist the outcome of a completed sync.

        Returns the stored state, or ``None`` when the state could not be
        recorded. Callers must treat ``None`` as "assume the worst on the
        next read".
        """

        try:
            if not _normalise(service) or not _normalise(resource_type):
                raise ValueError("service and resource_type are required")
            state = SyncState(
                service=_normalise(service),
                resource_type=_normalise(resource_type),
                last_sync_timestamp=self._clock(),
                last_sync_count=max(0, int(record_count or 0)),
                last_sync_status=SyncStatus(status) if isinstance(status, str) else status,
                sync_mode=SyncMode(sync_mode) if isinstance(sync_mode, str) else sync_mode,
                sync_duration_ms=max(0, int(duration_ms or 0)),
            )
            self._repository.save(state)
        except (StorageError, ValueError, TypeError) as exc:
            logger.error("Failed to record sync state for %s/%s: %s", service, resource_type, exc)
            return None

        try:
            self._repository.append_history(state, self._history_limit)
        except (StorageError, ValueError, TypeError) as exc:
            logger.warning(
                "Could not store sync history for %s/%s: %s", state.service, state.resource_type, exc
            )

        logger.info(
            "%s/%s: %s | %d records | Mode: %s",
            state.service,
            state.resource_type,
            state.last_sync_status.value,
            state.last_sync_count,
            state.sync_mode.value,
        )
        return state

    def get_sync_state(self, service: str, resource_type: str) -> Optional[SyncState]:
        if not _normalise(service) or not _normalise(resource_type):
            return None
        try:
            return self._repository.load(service, resource_type)
        except StorageError as exc:
            logger.warning("Sync state unavailable for %s/%s: %s", service, resource_type, exc)
        except (ValueError, TypeError) as exc:
            logger.warning("Ignoring corrupt sync state for %s/%s: %s", service, resource_type, exc)
        return None

    def is_first_sync(self, service: str, resource_type: str) -> bool:
        state = self.get_sync_state(service, resource_type)
        return state is None or state.last_sync_timestamp is None

    def get_last_sync_timestamp(self, service: str, resource_type: str) -> Optional[datetime]:
        state = self.get_sync_state(service, resource_type)
        if state is None:
            return None
        return state.last_sync_timestamp

    def clear_sync_state(self, service: str, resource_type: Optional[str] = None) -> bool:
        """Forget the watermark for one resource, or for every resource of ``service``.

        Clearing state that does not exist is not an error.
        """

        service_key = _normalise(service)
        if not service_key:
            logger.error("clear_sync_state called without a service")
            return False
        try:
            if resource_type:
                self._repository.delete_key(SyncStateRepository.state_key(service_key, resource_type))
                logger.info("Cleared sync state for %s/%s", service_key, _normalise(resource_type))
                return True

            prefix = f"{STATE_PREFIX}{service_key}_"
            removed = 0
            for key in self._repository.state_keys():
                if not key.startswith(prefix):
                    continue
                try:
                    state = self._repository.load_key(key)
                except (ValueError, TypeError):
                    state = None
                if state is not None and state.service != service_key:
                    continue
                self._repository.delete_key(key)
                removed += 1
            logger.info("Cleared %d sync states for %s", removed, service_key)
            return True
        except StorageError as exc:
            logger.error("Failed to clear sync state for %s: %s", service_key, exc)
            return False

    def get_all_sync_states(self, service: Optional[str] = None) -> Dict[str, Dict[str, SyncState]]:
        wanted = _normalise(service) if service else None
        states: Dict[str, Dict[str, SyncState]] = {}
        try:
            keys = self._repository.state_keys()
        except StorageError as exc:
            logger.error("Failed to enumerate sync states: %s", exc)
            return {}

        for key in keys:
            if not _STATE_KEY_RE.match(key):
                continue
            try:
                state = self._repository.load_key(key)
            except (StorageError, ValueError, TypeError):
                logger.debug("Skipping unreadable sync state %s", key, exc_info=True)
                continue
            if state is None or SyncStateRepository.state_key(state.service, state.resource_type) != key:
                continue
            if wanted and state.service != wanted:
                continue
            states.setdefault(state.service, {})[state.resource_type] = state
        return states

    def get_sync_history(self, service: str, resource_type: str) -> List[SyncState]:
        try:
            entries = self._repository.load_history(service, resource_type)
        except (StorageError, ValueError, TypeError) as exc:
            logger.warning("Sync history unavailable for %s/%s: %s", service, resource_type, exc)
            return []
        history: List[SyncState] = []
        for entry in entries:
            try:
                history.append(SyncState.from_payload(entry))
            except (ValueError, TypeError):
                continue
        return history

    # ------------------------------------------------------------------
    # Metadata sheet
    # ------------------------------------------------------------------
    def sync_state_rows(self) -> List[List[Any]]:
        """Return one diagnostics row per recorded state, ordered by key."""

        rows: List[List[Any]] = []
        for service, resources in sorted(self.get_all_sync_states().items()):
            for resource_type, state in sorted(resources.items()):
                rows.append(
                    [
                        service,
                        resource_type,
                        format_timestamp(state.last_sync_timestamp) if state.last_sync_timestamp else "",
                        state.last_sync_count,
                        state.last_sync_status.value,
                        state.sync_mode.value,
                    ]
                )
        return rows

    def update_audit_metadata_sheet(self, writer: "SheetWriter") -> UpdateResult:
        """Rewrite ``_AUDIT_METADATA`` from the current sync states."""

        return write_data_to_sheet(writer, METADATA_SHEET, METADATA_HEADERS, self.sync_state_rows())


__all__ = [
    "HISTORY_LIMIT",
    "METADATA_HEADERS",
    "METADATA_SHEET",
    "SyncMode",
    "SyncState",
    "SyncStateRepository",
    "SyncStateStore",
    "SyncStatus",
    "format_timestamp",
    "parse_timestamp",
    "utc_now",
]
