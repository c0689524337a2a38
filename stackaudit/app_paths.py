"""Where stackaudit keeps settings, state, tokens and logs."""
from __future__ import annotations

import os
from pathlib import Path

HOME_ENV_VAR = "STACKAUDIT_HOME"


def _detect_base_directory() -> Path:
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser().resolve()
    return Path.home().resolve() / ".stackaudit"


APP_DIR: Path = _detect_base_directory()
SETTINGS_FILE: Path = APP_DIR / "settings.json"
CREDENTIALS_FILE: Path = APP_DIR / "credentials.json"
STATE_DB_FILE: Path = APP_DIR / "state.sqlite3"


def data_path(*parts: str) -> Path:
    """Return ``APP_DIR/<parts>``, creating its parent directory on demand."""

    target = APP_DIR.joinpath(*parts)
    target.parent.mkdir(parents=True, exist_ok=True)
    return target


def logs_path(name: str) -> Path:
    return data_path("logs", name)


def token_path(name: str) -> Path:
    return data_path("tokens", name)


__all__ = [
    "APP_DIR",
    "CREDENTIALS_FILE",
    "HOME_ENV_VAR",
    "SETTINGS_FILE",
    "STATE_DB_FILE",
    "data_path",
    "logs_path",
    "token_path",
]
