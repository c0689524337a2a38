"""Bounded retry with exponential backoff for Google API calls."""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Collection, List, Optional

from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

RETRIABLE_STATUSES: Collection[int] = frozenset({429, 500, 502, 503, 504})
MAX_RETRY_ATTEMPTS = 5


def http_status(exc: HttpError) -> int:
    status = getattr(exc, "status_code", None)
    if status is not None:
        try:
            return int(status)
        except (TypeError, ValueError):
            return 0
    resp = getattr(exc, "resp", None)
    if resp is not None:
        try:
            return int(getattr(resp, "status", 0))
        except (TypeError, ValueError):
            return 0
    return 0


class BackoffController:
    def __init__(self, base: float = 1.0, maximum: float = 16.0, attempts: int = MAX_RETRY_ATTEMPTS) -> None:
        self.base = base
        self.maximum = maximum
        self.attempts = max(1, attempts)

    def schedule(self) -> List[float]:
        delays: List[float] = []
        for attempt in range(self.attempts - 1):
            delays.append(min(self.base * (2**attempt), self.maximum))
        return delays


def call_with_retry(
    func: Callable[[], Any],
    description: str,
    *,
    backoff: Optional[BackoffController] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> Any:
    """Execute ``func`` retrying rate limit and server errors.

    Only HTTP 429 and 5xx responses are retried. Anything else, and the last
    retriable failure once the schedule is exhausted, propagates unchanged.
    """

    delays = (backoff or BackoffController()).schedule()
    pause = sleep or time.sleep
    attempt = 0
    while True:
        try:
            return func()
        except HttpError as exc:
            status = http_status(exc)
            if status not in RETRIABLE_STATUSES or attempt >= len(delays):
                raise
            delay = delays[attempt]
            attempt += 1
            logger.warning(
                "Google API %s error (%s). Retrying in %ss (%d/%d)",
                description,
                status,
                delay,
                attempt,
                len(delays),
            )
            pause(delay)


__all__ = [
    "BackoffController",
    "MAX_RETRY_ATTEMPTS",
    "RETRIABLE_STATUSES",
    "call_with_retry",
    "http_status",
]
