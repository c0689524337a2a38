"""Application-wide logging configuration utilities."""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from stackaudit import app_paths
from stackaudit.sheet_ops import UpdateStatus, strategy_for

if TYPE_CHECKING:  # pragma: no cover - import only used for annotations
    from stackaudit.sheets_client import SheetWriter

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOGS_SHEET = "LOGS"
LOGS_HEADERS: List[str] = ["Timestamp", "Level", "Module", "Message", "Details"]

_LOG_PATH: Optional[Path] = None


def configure_logging(level: int = logging.INFO, log_path: Optional[Path] = None) -> Path:
    """Configure logging to write to the stackaudit log file.

    Parameters
    ----------
    level:
        The minimum logging level for the root logger. ``logging.INFO`` is used
        by default which captures job transitions and sync summaries without
        the per-request chatter of the Google client libraries.
    log_path:
        Optional override for the log file location. Defaults to
        ``<app dir>/logs/stackaudit.log``.

    Returns
    -------
    pathlib.Path
        The path to the log file.
    """

    global _LOG_PATH

    if _LOG_PATH is not None:
        return _LOG_PATH

    target = Path(log_path) if log_path else app_paths.logs_path("stackaudit.log")
    target.parent.mkdir(parents=True, exist_ok=True)
    try:
        target.touch(exist_ok=True)
    except OSError:
        pass

    root_logger = logging.getLogger()
    if not root_logger.handlers:
        root_logger.setLevel(level)
    else:
        root_logger.setLevel(min(root_logger.level, level))

    already_configured = any(
        isinstance(handler, logging.FileHandler)
        and getattr(handler, "baseFilename", None) == str(target)
        for handler in root_logger.handlers
    )
    if not already_configured:
        file_handler = logging.FileHandler(target, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(file_handler)

    # googleapiclient logs every discovery lookup at INFO
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)

    _LOG_PATH = target
    root_logger.debug("Logging configured. Writing to %s", target)
    return target


def get_log_path() -> Path:
    """Return the path to the stackaudit log file, configuring logging if needed."""

    if _LOG_PATH is None:
        return configure_logging()
    return _LOG_PATH


class SheetLogHandler(logging.Handler):
    """Buffer log records and flush them to the ``LOGS`` worksheet.

    Records are written in batches once ``capacity`` entries are buffered or
    when :meth:`flush` is called explicitly (typically at the end of a run).
    Rows go through the append-only strategy configured for ``LOGS``.
    Write failures are reported on the module logger at debug level and the
    buffer is dropped; the sheet log never interrupts an audit.
    """

    def __init__(
        self,
        writer: "SheetWriter",
        *,
        sheet_name: str = LOGS_SHEET,
        capacity: int = 50,
        level: int = logging.INFO,
    ) -> None:
        super().__init__(level=level)
        self._writer = writer
        self._sheet_name = sheet_name
        self._capacity = max(1, capacity)
        self._buffer: List[List[str]] = []
        self._buffer_lock = threading.Lock()
        self._flushing = False
        # set on the thread running a flush so records it logs are not re-buffered
        self._in_flush = threading.local()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def emit(self, record: logging.LogRecord) -> None:
        if record.name.startswith(__name__) or getattr(self._in_flush, "active", False):
            return
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        details = ""
        if record.exc_info and record.exc_info[1] is not None:
            details = repr(record.exc_info[1])
        row = [
            timestamp.replace(microsecond=0).isoformat(),
            record.levelname,
            record.name,
            record.getMessage(),
            details,
        ]
        with self._buffer_lock:
            self._buffer.append(row)
            should_flush = len(self._buffer) >= self._capacity
        if should_flush:
            self.flush()

    def flush(self) -> None:
        with self._buffer_lock:
            if self._flushing or not self._buffer:
                return
            rows = list(self._buffer)
            self._buffer.clear()
            self._flushing = True
        self._in_flush.active = True
        try:
            result = strategy_for(LOGS_SHEET).apply(
                self._writer, self._sheet_name, rows, headers=LOGS_HEADERS
            )
            if result.status is UpdateStatus.ERROR:
                logging.getLogger(__name__).debug("Unable to flush sheet log: %s", result.error)
        except Exception:
            logging.getLogger(__name__).debug("Unable to flush sheet log", exc_info=True)
        finally:
            self._in_flush.active = False
            with self._buffer_lock:
                self._flushing = False

    def close(self) -> None:
        try:
            self.flush()
        finally:
            super().close()


__all__ = [
    "LOG_FORMAT",
    "LOGS_HEADERS",
    "LOGS_SHEET",
    "SheetLogHandler",
    "configure_logging",
    "get_log_path",
]
