"""Deferred one-shot callbacks that let long jobs be polled without blocking.

A callback is only a function *name* plus a due time. Names are resolved
against a handler table when the trigger fires, so triggers survive process
restarts: ``stackaudit run-triggers`` (from cron) or a :class:`TriggerRunner`
thread drains whatever is due.
"""
from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from stackaudit.storage import KeyValueStore
from stackaudit.sync_state import format_timestamp, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

TRIGGER_PREFIX = "SCHEDULED_TRIGGER_"

Handler = Callable[[], Any]


@dataclass(slots=True)
class ScheduledCallback:
    id: str
    function_name: str
    due_at: datetime

    def to_payload(self) -> Dict[str, str]:
        return {"functionName": self.function_name, "dueAt": format_timestamp(self.due_at)}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Optional["ScheduledCallback"]:
        callback_id = payload.get("id")
        name = payload.get("functionName")
        due_at = parse_timestamp(payload.get("dueAt"))
        if not callback_id or not name or due_at is None:
            return None
        return cls(id=str(callback_id), function_name=str(name), due_at=due_at)


class Scheduler(Protocol):
    def schedule_callback(self, function_name: str, delay_seconds: float) -> str:
        ...

    def list_scheduled_callbacks(self) -> List[ScheduledCallback]:
        ...

    def cancel_scheduled_callback(self, callback_id: str) -> None:
        ...


class TriggerScheduler:
    """Scheduler persisting each trigger under its own key in the key/value store.

    One key per trigger keeps ``schedule`` and ``cancel`` to a single write,
    so several processes sharing one store never overwrite each other.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        prefix: str = TRIGGER_PREFIX,
    ) -> None:
        self._store = store
        self._clock = clock
        self._prefix = prefix

    def trigger_key(self, callback_id: str) -> str:
        return f"{self._prefix}{callback_id}"

    def _load(self, key: str) -> Optional[ScheduledCallback]:
        raw = self._store.get(key)
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable trigger %s", key)
            self._store.delete(key)
            return None
        if not isinstance(payload, dict):
            return None
        return ScheduledCallback.from_payload({**payload, "id": key[len(self._prefix):]})

    # ------------------------------------------------------------------
    # Scheduler protocol
    # ------------------------------------------------------------------
    def schedule_callback(self, function_name: str, delay_seconds: float) -> str:
        if not function_name:
            raise ValueError("function_name is required")
        callback = ScheduledCallback(
            id=uuid.uuid4().hex,
            function_name=function_name,
            due_at=self._clock() + timedelta(seconds=max(0.0, float(delay_seconds))),
        )
        self._store.set(self.trigger_key(callback.id), json.dumps(callback.to_payload()))
        logger.debug("Scheduled %s at %s", function_name, format_timestamp(callback.due_at))
        return callback.id

    def list_scheduled_callbacks(self) -> List[ScheduledCallback]:
        callbacks: List[ScheduledCallback] = []
        for key in self._store.list_keys():
            if not key.startswith(self._prefix):
                continue
            callback = self._load(key)
            if callback is not None:
                callbacks.append(callback)
        return sorted(callbacks, key=lambda callback: (callback.due_at, callback.id))

    def cancel_scheduled_callback(self, callback_id: str) -> None:
        self._store.delete(self.trigger_key(callback_id))

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------
    def due_callbacks(self, now: Optional[datetime] = None) -> List[ScheduledCallback]:
        moment = now or self._clock()
        return [callback for callback in self.list_scheduled_callbacks() if callback.due_at <= moment]

    def next_due(self) -> Optional[datetime]:
        callbacks = self.list_scheduled_callbacks()
        return callbacks[0].due_at if callbacks else None

    def run_due(self, handlers: Mapping[str, Handler], now: Optional[datetime] = None) -> int:
        """Fire every due trigger once and return how many handlers ran.

        Each trigger is removed before its handler runs, so a handler that
        reschedules itself adds a fresh trigger rather than refiring this one.
        """

        fired = 0
        for callback in self.due_callbacks(now):
            key = self.trigger_key(callback.id)
            if self._store.get(key) is None:
                # already drained by another runner
                continue
            self._store.delete(key)
            handler = handlers.get(callback.function_name)
            if handler is None:
                logger.warning("Dropping trigger for unknown function %s", callback.function_name)
                continue
            try:
                handler()
            except Exception:
                logger.exception("Trigger %s failed", callback.function_name)
            fired += 1
        return fired


class TriggerRunner:
    """Drain due triggers on a daemon thread until stopped."""

    def __init__(
        self,
        scheduler: TriggerScheduler,
        handlers: Mapping[str, Handler],
        *,
        interval_seconds: float = 5.0,
    ) -> None:
        self._scheduler = scheduler
        self._handlers = dict(handlers)
        self._interval = max(1.0, interval_seconds)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="stackaudit-triggers", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2)
            self._thread = None

    def run_once(self) -> int:
        return self._scheduler.run_due(self._handlers)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Trigger runner tick failed")
            self._stop_event.wait(self._interval)


__all__ = [
    "Handler",
    "ScheduledCallback",
    "Scheduler",
    "TRIGGER_PREFIX",
    "TriggerRunner",
    "TriggerScheduler",
]
