"""Google Sheets writer used by the reconciliation strategies.

This module centralises every direct interaction with the Google Sheets API.
The rest of the package only sees the :class:`SheetWriter` protocol: look up
or create a worksheet, read its values, write a block of cells, and ask for
the last used row. The implementation focuses on three goals:

* Normalising worksheet titles and A1 ranges so that "Unable to parse range"
  errors are eliminated.
* Retrying rate limit and server errors with exponential backoff
  (:func:`stackaudit.retry.call_with_retry`).
* Providing a clean failure surface. All public entry points raise subclasses
  of :class:`SheetsClientError`.

Values are read with ``UNFORMATTED_VALUE`` so that numbers and booleans come
back typed, which keeps primary keys and row hashes comparable with freshly
fetched records.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableSequence, Optional, Protocol, Sequence, Tuple, Union

from googleapiclient.errors import HttpError

from stackaudit.google_credentials import (
    SHEETS_SCOPE,
    CredentialsFileInvalidError,
    build_service,
)
from stackaudit.retry import call_with_retry

logger = logging.getLogger(__name__)

SCOPES: Sequence[str] = (SHEETS_SCOPE,)
DEFAULT_COLUMN_COUNT = 26

_SPREADSHEET_URL_RE = re.compile(r"/spreadsheets/d/([a-zA-Z0-9-_]+)")


@dataclass(slots=True)
class SheetHandle:
    """Identity of a worksheet inside the configured spreadsheet."""

    title: str
    sheet_id: int
    column_count: int = DEFAULT_COLUMN_COUNT


class SheetsClientError(RuntimeError):
    """Base error raised for Sheets API failures."""


class SheetsCredentialsError(SheetsClientError):
    """Raised when the provided credential file is invalid or missing."""


class SheetsApiResponseError(SheetsClientError):
    """Raised when the Google API returns an error response."""


class SheetWriter(Protocol):
    def get_sheet(self, name: str) -> Optional[SheetHandle]:
        ...

    def get_or_create_sheet(
        self, name: str, headers: Optional[Sequence[str]] = None
    ) -> Tuple[SheetHandle, bool]:
        ...

    def read_range(self, handle: SheetHandle) -> List[List[Any]]:
        ...

    def write_range(self, handle: SheetHandle, row: int, col: int, values: Sequence[Sequence[Any]]) -> None:
        ...

    def write_rows(self, handle: SheetHandle, rows: Mapping[int, Sequence[Any]]) -> None:
        ...

    def get_last_row(self, handle: SheetHandle) -> int:
        ...

    def clear(self, handle: SheetHandle, *, start_row: int = 1) -> None:
        ...


# ---------------------------------------------------------------------------
# A1 helpers
# ---------------------------------------------------------------------------
def parse_spreadsheet_id(value: str) -> str:
    """Accept either a bare spreadsheet id or a full Sheets URL."""

    candidate = (value or "").strip()
    match = _SPREADSHEET_URL_RE.search(candidate)
    if match:
        return match.group(1)
    return candidate


def normalise_title(title: str) -> str:
    """Return a worksheet title quoted according to A1 notation rules."""

    safe = (title or "").strip()
    if not safe:
        raise SheetsClientError("Worksheet title must not be empty.")
    safe = safe.replace("'", "''")
    return f"'{safe}'"


def column_letter(index: int) -> str:
    if index < 1:
        raise ValueError("Column index must be >= 1")
    letters: MutableSequence[str] = []
    while index:
        index, remainder = divmod(index - 1, 26)
        letters.append(chr(65 + remainder))
    return "".join(reversed(letters))


def a1_block_range(title: str, row: int, col: int, rows: int, columns: int) -> str:
    """Return the A1 range of a ``rows`` x ``columns`` block anchored at ``(row, col)``."""

    if row < 1 or col < 1:
        raise ValueError("Row and column must be >= 1")
    last_row = row + max(1, rows) - 1
    last_col = col + max(1, columns) - 1
    return f"{normalise_title(title)}!{column_letter(col)}{row}:{column_letter(last_col)}{last_row}"


def a1_row_range(title: str, row_index: int, *, columns: int) -> str:
    """Return an A1 range covering ``row_index`` for ``title``."""

    return a1_block_range(title, row_index, 1, 1, columns)


def _block_width(values: Sequence[Sequence[Any]]) -> int:
    return max((len(row) for row in values), default=1) or 1


class GoogleSheetsWriter:
    """Concrete :class:`SheetWriter` talking to the Sheets REST API."""

    def __init__(
        self,
        spreadsheet_id: str,
        credential_path: Union[str, Path, None] = None,
        *,
        service=None,
        batch_size: int = 500,
    ) -> None:
        self._spreadsheet_id = parse_spreadsheet_id(spreadsheet_id)
        if not self._spreadsheet_id:
            raise SheetsClientError("A spreadsheet id is required.")
        if service is None:
            if credential_path is None:
                raise SheetsCredentialsError("A credential path is required to reach Google Sheets.")
            try:
                service = build_service("sheets", "v4", credential_path, scopes=SCOPES)
            except CredentialsFileInvalidError as exc:
                raise SheetsCredentialsError(str(exc)) from exc
        self._service = service
        self._batch_size = max(1, batch_size)
        self._handles: Optional[Dict[str, SheetHandle]] = None

    @property
    def spreadsheet_id(self) -> str:
        return self._spreadsheet_id

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _execute(self, request, description: str):
        try:
            return call_with_retry(request.execute, description)
        except HttpError as exc:
            raise SheetsApiResponseError(f"Sheets API {description} failed: {exc}") from exc

    def _load_handles(self) -> Dict[str, SheetHandle]:
        if self._handles is None:
            request = self._service.spreadsheets().get(
                spreadsheetId=self._spreadsheet_id,
                includeGridData=False,
                fields="sheets.properties(sheetId,title,gridProperties)",
            )
            metadata = self._execute(request, "spreadsheets.get") or {}
            handles: Dict[str, SheetHandle] = {}
            for sheet in metadata.get("sheets", []):
                properties = sheet.get("properties", {})
                title = properties.get("title")
                if not title:
                    continue
                grid = properties.get("gridProperties", {})
                handles[title] = SheetHandle(
                    title=title,
                    sheet_id=int(properties.get("sheetId", 0)),
                    column_count=int(grid.get("columnCount", DEFAULT_COLUMN_COUNT)),
                )
            self._handles = handles
        return self._handles

    def _add_sheet(self, name: str, headers: Sequence[str]) -> SheetHandle:
        column_count = max(DEFAULT_COLUMN_COUNT, len(headers))
        body = {
            "requests": [
                {
                    "addSheet": {
                        "properties": {
                            "title": name,
                            "gridProperties": {
                                "columnCount": column_count,
                                "frozenRowCount": 1 if headers else 0,
                            },
                        }
                    }
                }
            ]
        }
        request = self._service.spreadsheets().batchUpdate(spreadsheetId=self._spreadsheet_id, body=body)
        response = self._execute(request, "spreadsheets.batchUpdate") or {}
        replies = response.get("replies") or [{}]
        properties = replies[0].get("addSheet", {}).get("properties", {})
        handle = SheetHandle(
            title=properties.get("title", name),
            sheet_id=int(properties.get("sheetId", 0)),
            column_count=column_count,
        )
        self._load_handles()[handle.title] = handle
        logger.info("Created sheet %s", handle.title)
        return handle

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def health_check(self) -> None:
        """Confirm the spreadsheet is reachable, refreshing the sheet cache."""

        self._handles = None
        self._load_handles()

    def get_sheet(self, name: str) -> Optional[SheetHandle]:
        return self._load_handles().get(name)

    def get_or_create_sheet(
        self, name: str, headers: Optional[Sequence[str]] = None
    ) -> Tuple[SheetHandle, bool]:
        handle = self.get_sheet(name)
        if handle is not None:
            return handle, False
        headers = list(headers or [])
        handle = self._add_sheet(name, headers)
        if headers:
            self.write_range(handle, 1, 1, [headers])
        return handle, True

    def read_range(self, handle: SheetHandle) -> List[List[Any]]:
        request = self._service.spreadsheets().values().get(
            spreadsheetId=self._spreadsheet_id,
            range=normalise_title(handle.title),
            majorDimension="ROWS",
            valueRenderOption="UNFORMATTED_VALUE",
            dateTimeRenderOption="FORMATTED_STRING",
        )
        response = self._execute(request, "values.get") or {}
        return [list(row) for row in response.get("values", [])]

    def write_range(self, handle: SheetHandle, row: int, col: int, values: Sequence[Sequence[Any]]) -> None:
        if not values:
            return
        rows = [list(entry) for entry in values]
        request = self._service.spreadsheets().values().update(
            spreadsheetId=self._spreadsheet_id,
            range=a1_block_range(handle.title, row, col, len(rows), _block_width(rows)),
            valueInputOption="RAW",
            body={"values": rows, "majorDimension": "ROWS"},
        )
        self._execute(request, "values.update")

    def write_rows(self, handle: SheetHandle, rows: Mapping[int, Sequence[Any]]) -> None:
        """Overwrite whole rows in place, grouped into ``values.batchUpdate`` calls."""

        ordered = sorted(rows.items())
        for start in range(0, len(ordered), self._batch_size):
            chunk = ordered[start : start + self._batch_size]
            data = [
                {
                    "range": a1_row_range(handle.title, row_index, columns=max(1, len(values))),
                    "values": [list(values)],
                    "majorDimension": "ROWS",
                }
                for row_index, values in chunk
            ]
            request = self._service.spreadsheets().values().batchUpdate(
                spreadsheetId=self._spreadsheet_id,
                body={"valueInputOption": "RAW", "data": data},
            )
            self._execute(request, "values.batchUpdate")

    def get_last_row(self, handle: SheetHandle) -> int:
        return len(self.read_range(handle))

    def clear(self, handle: SheetHandle, *, start_row: int = 1) -> None:
        if start_row <= 1:
            range_spec = normalise_title(handle.title)
        else:
            last_column = column_letter(max(1, handle.column_count))
            range_spec = f"{normalise_title(handle.title)}!A{start_row}:{last_column}"
        request = self._service.spreadsheets().values().clear(
            spreadsheetId=self._spreadsheet_id,
            range=range_spec,
            body={},
        )
        self._execute(request, "values.clear")


__all__ = [
    "GoogleSheetsWriter",
    "SCOPES",
    "SheetHandle",
    "SheetWriter",
    "SheetsApiResponseError",
    "SheetsClientError",
    "SheetsCredentialsError",
    "a1_block_range",
    "a1_row_range",
    "column_letter",
    "normalise_title",
    "parse_spreadsheet_id",
]
