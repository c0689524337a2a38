"""Configuration for stackaudit audits, stored as JSON in the app directory."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from stackaudit import app_paths

logger = logging.getLogger(__name__)

SETTINGS_PATH = str(app_paths.SETTINGS_FILE)

DEFAULT_SPREADSHEET_ID = os.getenv("STACKAUDIT_SPREADSHEET_ID", "")
DEFAULT_CREDENTIALS_PATH = os.getenv(
    "STACKAUDIT_CREDENTIALS_PATH",
    str(app_paths.CREDENTIALS_FILE),
)
DEFAULT_BQ_PROJECT_ID = os.getenv("STACKAUDIT_BQ_PROJECT_ID", "")
DEFAULT_STATE_DB_PATH = os.getenv(
    "STACKAUDIT_STATE_DB",
    str(app_paths.STATE_DB_FILE),
)
DEFAULT_LOG_LEVEL = os.getenv("STACKAUDIT_LOG_LEVEL", "INFO")

ALL_TABLES = -1
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class AuditSettings:
    spreadsheet_id: str = DEFAULT_SPREADSHEET_ID
    credential_path: str = DEFAULT_CREDENTIALS_PATH
    bq_project_id: str = DEFAULT_BQ_PROJECT_ID
    incremental_enabled: bool = True
    force_full_audit: bool = False
    watermark_margin_seconds: int = 300
    poll_delay_seconds: int = 10
    batch_size: int = 500
    batch_pause_ms: int = 100
    warning_threshold: float = 30.0
    critical_threshold: float = 50.0
    min_event_count: int = 100
    lookback_days: int = 400
    table_date_range_days: int = 30
    state_db_path: str = DEFAULT_STATE_DB_PATH
    log_level: str = DEFAULT_LOG_LEVEL

    @property
    def batch_pause_seconds(self) -> float:
        return self.batch_pause_ms / 1000.0

    def write_options(self) -> Dict[str, Any]:
        """Keyword arguments for the reconciliation strategies."""

        return {"batch_size": self.batch_size, "pause_seconds": self.batch_pause_seconds}

    def to_json(self) -> Dict[str, object]:
        return asdict(self)


def _default_payload() -> Dict[str, object]:
    return AuditSettings().to_json()


def _as_bool(value: object) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off"}:
            return False
    return None


def _clamped(cast: Callable[[Any], Any], low: float, high: float) -> Callable[[Any], Any]:
    def convert(value: Any) -> Any:
        return max(low, min(high, cast(value)))

    return convert


def _table_range(value: Any) -> int:
    if isinstance(value, str) and value.strip().lower() == "all":
        return ALL_TABLES
    days = int(value)
    if days < 0:
        return ALL_TABLES
    return max(1, min(3650, days))


def _log_level(value: Any) -> str:
    level = str(value).strip().upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"unknown log level {value!r}")
    return level


_NUMERIC_FIELDS: Dict[str, Callable[[Any], Any]] = {
    "watermark_margin_seconds": _clamped(int, 0, 86400),
    "poll_delay_seconds": _clamped(int, 1, 600),
    "batch_size": _clamped(int, 1, 500),
    "batch_pause_ms": _clamped(int, 0, 10000),
    "warning_threshold": _clamped(float, 0.0, 1000.0),
    "critical_threshold": _clamped(float, 0.0, 1000.0),
    "min_event_count": _clamped(int, 0, 10_000_000),
    "lookback_days": _clamped(int, 366, 3650),
    "table_date_range_days": _table_range,
    "log_level": _log_level,
}
_BOOL_FIELDS = ("incremental_enabled", "force_full_audit")


def _ensure_settings(path: str = SETTINGS_PATH) -> Dict[str, object]:
    default_settings = _default_payload()
    if not os.path.exists(path):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(default_settings, handle, indent=2)
        return dict(default_settings)

    with open(path, "r", encoding="utf-8") as handle:
        try:
            data = json.load(handle)
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring unreadable settings file %s: %s", path, exc)
            data = {}
    if not isinstance(data, dict):
        data = {}

    merged: Dict[str, object] = dict(default_settings)
    for key, value in data.items():
        if key not in merged:
            continue
        if key in _BOOL_FIELDS:
            flag = _as_bool(value)
            if flag is not None:
                merged[key] = flag
        elif key in _NUMERIC_FIELDS:
            try:
                merged[key] = _NUMERIC_FIELDS[key](value)
            except (TypeError, ValueError):
                merged[key] = default_settings[key]
        elif isinstance(value, str):
            merged[key] = value.strip()

    if float(merged["critical_threshold"]) < float(merged["warning_threshold"]):
        logger.warning("critical_threshold below warning_threshold; using warning_threshold")
        merged["critical_threshold"] = merged["warning_threshold"]
    return merged


def load_settings(path: str = SETTINGS_PATH) -> AuditSettings:
    data = _ensure_settings(path)
    return AuditSettings(**data)


def save_settings(settings: AuditSettings, path: str = SETTINGS_PATH) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(path, "w", encoding="utf-8") as handle:
        json.dump(settings.to_json(), handle, indent=2)


__all__ = [
    "ALL_TABLES",
    "AuditSettings",
    "SETTINGS_PATH",
    "load_settings",
    "save_settings",
]
