"""Helpers for loading Google credentials and building discovery clients.

Two credential shapes are accepted:

* a service account key file (``"type": "service_account"``), validated and
  normalised before use;
* an OAuth client secret file (``"installed"``/``"web"``) for running as the
  auditing user. The authorised token is cached next to the application data
  and refreshed automatically.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, Iterable, Mapping, Sequence, Union

from google.auth.transport.requests import Request
from google.oauth2 import service_account
from google.oauth2.credentials import Credentials as UserCredentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build

from stackaudit import app_paths

logger = logging.getLogger(__name__)

SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
BIGQUERY_SCOPE = "https://www.googleapis.com/auth/bigquery"
DEFAULT_SCOPES: Sequence[str] = (SHEETS_SCOPE, BIGQUERY_SCOPE)

__all__ = [
    "BIGQUERY_SCOPE",
    "CredentialsFileInvalidError",
    "DEFAULT_SCOPES",
    "REQUIRED_FIELDS",
    "SHEETS_SCOPE",
    "build_service",
    "ensure_service_account_file",
    "load_credentials",
    "load_service_account_data",
]


class CredentialsFileInvalidError(Exception):
    """Raised when a credentials JSON file is missing or lacks required data."""


# google-auth only needs these to mint tokens; project_id seeds BigQuery defaults
REQUIRED_FIELDS: Iterable[str] = ("client_email", "private_key", "project_id", "token_uri")
SERVICE_ACCOUNT_TYPE = "service_account"


def _fix_key_newlines(key: str) -> str:
    # keys pasted through env vars or web forms arrive with literal "\n"
    lines = key.replace("\\n", "\n").splitlines()
    return "\n".join(line.rstrip("\r") for line in lines) + "\n"


def _read_json_object(path: Path) -> Mapping[str, object]:
    try:
        text = path.read_text(encoding="utf-8-sig").strip()
    except OSError as exc:
        raise CredentialsFileInvalidError(f"Unable to read JSON file: {exc}") from exc
    if not text:
        raise CredentialsFileInvalidError(f"Credentials JSON is empty: {path}")

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CredentialsFileInvalidError(f"JSON parse error at line {exc.lineno}: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise CredentialsFileInvalidError("Credentials JSON must contain an object.")
    return payload


def _service_account_info(payload: Mapping[str, object]) -> Dict[str, object]:
    problems = sorted(
        name for name in REQUIRED_FIELDS if not str(payload.get(name) or "").strip()
    )
    if payload.get("type") != SERVICE_ACCOUNT_TYPE:
        problems.insert(0, "type")
    if problems:
        raise CredentialsFileInvalidError(f"JSON missing fields: {', '.join(problems)}")

    info = dict(payload)
    info["private_key"] = _fix_key_newlines(str(info["private_key"]))
    return info


def load_service_account_data(path: Path) -> Dict[str, object]:
    """Return validated service account data without modifying ``path``."""

    return _service_account_info(_read_json_object(Path(path)))


def ensure_service_account_file(path: Path) -> Dict[str, object]:
    """Validate ``path`` and rewrite it with a normalised private key."""

    info = load_service_account_data(path)
    Path(path).write_text(json.dumps(info, indent=2), encoding="utf-8")
    return info


def _is_client_secret(payload: Mapping[str, object]) -> bool:
    return "installed" in payload or "web" in payload


def _user_credentials(secret_path: Path, token_path: Path, scopes: Sequence[str]):
    credentials = None
    if token_path.exists():
        credentials = UserCredentials.from_authorized_user_file(str(token_path), list(scopes))

    if not credentials or not credentials.valid:
        if credentials and credentials.expired and credentials.refresh_token:
            logger.info("Refreshing cached OAuth token %s", token_path)
            credentials.refresh(Request())
        else:
            flow = InstalledAppFlow.from_client_secrets_file(str(secret_path), list(scopes))
            credentials = flow.run_local_server(port=0)
        token_path.parent.mkdir(parents=True, exist_ok=True)
        with token_path.open("w", encoding="utf-8") as handle:
            handle.write(credentials.to_json())
    return credentials


def load_credentials(
    credential_path: Union[str, Path],
    *,
    scopes: Sequence[str] = DEFAULT_SCOPES,
    token_path: Union[str, Path, None] = None,
):
    """Return Google credentials for the key or client secret at ``credential_path``."""

    path = Path(os.path.expanduser(str(credential_path))).resolve()
    if not path.exists():
        raise CredentialsFileInvalidError(f"Credentials file not found: {path}")

    payload = _read_json_object(path)
    if _is_client_secret(payload):
        target = Path(token_path) if token_path else app_paths.token_path("oauth_token.json")
        return _user_credentials(path, target, scopes)

    data = _service_account_info(payload)
    try:
        return service_account.Credentials.from_service_account_info(data, scopes=list(scopes))
    except ValueError as exc:
        raise CredentialsFileInvalidError(str(exc) or "JSON missing fields: private_key") from exc


def build_service(
    api: str,
    version: str,
    credential_path: Union[str, Path],
    *,
    scopes: Sequence[str] = DEFAULT_SCOPES,
    token_path: Union[str, Path, None] = None,
):
    """Build an authenticated discovery client such as ``("sheets", "v4")``."""

    credentials = load_credentials(credential_path, scopes=scopes, token_path=token_path)
    return build(api, version, credentials=credentials, cache_discovery=False)
