"""Choose between FULL and INCREMENTAL fetches for each audited resource."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, TypeVar, Union

from stackaudit.sync_state import SyncStateStore, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_WATERMARK_MARGIN_SECONDS = 300

T = TypeVar("T")
Timestamp = Union[datetime, str, None]


class AuditMode(Enum):
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


def get_audit_mode(
    states: SyncStateStore,
    service: str,
    resource_type: str,
    force_full_audit: bool = False,
) -> AuditMode:
    """Return ``FULL`` when forced or when the resource was never synced."""

    if force_full_audit:
        return AuditMode.FULL
    if states.is_first_sync(service, resource_type):
        return AuditMode.FULL
    return AuditMode.INCREMENTAL


def effective_mode(mode: AuditMode, incremental_enabled: bool) -> AuditMode:
    """Apply the user-level kill switch on top of the selector's answer."""

    if mode is AuditMode.INCREMENTAL and incremental_enabled:
        return AuditMode.INCREMENTAL
    return AuditMode.FULL


def _as_datetime(value: Timestamp) -> Optional[datetime]:
    if isinstance(value, datetime):
        return parse_timestamp(value.isoformat())
    return parse_timestamp(value)


def filter_modified_since(
    records: Iterable[T],
    watermark: Optional[datetime],
    modified_at: Callable[[T], Any],
    margin_seconds: float = DEFAULT_WATERMARK_MARGIN_SECONDS,
) -> List[T]:
    """Keep records modified strictly after ``watermark - margin_seconds``.

    Records whose timestamp is missing or unparseable are always kept. A
    ``watermark`` of ``None`` keeps everything.
    """

    items = list(records)
    if watermark is None:
        return items

    cutoff = _as_datetime(watermark)
    if cutoff is None:
        return items
    if margin_seconds > 0:
        cutoff = cutoff - timedelta(seconds=margin_seconds)

    kept: List[T] = []
    undated = 0
    for record in items:
        modified = _as_datetime(modified_at(record))
        if modified is None:
            undated += 1
            kept.append(record)
        elif modified > cutoff:
            kept.append(record)
    if undated:
        logger.debug("Kept %d records without a modification time", undated)
    logger.info("Incremental filter kept %d of %d records", len(kept), len(items))
    return kept


__all__ = [
    "AuditMode",
    "DEFAULT_WATERMARK_MARGIN_SECONDS",
    "effective_mode",
    "filter_modified_since",
    "get_audit_mode",
]
