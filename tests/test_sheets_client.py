from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Any, Dict, List

import httplib2
import pytest
from googleapiclient.errors import HttpError

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from stackaudit import retry
from stackaudit.sheets_client import (
    GoogleSheetsWriter,
    SheetsApiResponseError,
    SheetsClientError,
    SheetsCredentialsError,
    a1_block_range,
    column_letter,
    normalise_title,
    parse_spreadsheet_id,
)


class _FakeRequest:
    def __init__(self, callback):
        self._callback = callback

    def execute(self):
        return self._callback()


class _FakeValues:
    def __init__(self, service: "_FakeService") -> None:
        self._service = service

    def get(self, spreadsheetId: str, range: str, **kwargs):  # noqa: N803 - API compatibility
        return _FakeRequest(lambda: self._service._handle_get(range))

    def update(self, spreadsheetId: str, range: str, valueInputOption: str, body: Dict[str, Any]):  # noqa: N803
        return _FakeRequest(lambda: self._service._handle_update(range, body["values"]))

    def batchUpdate(self, spreadsheetId: str, body: Dict[str, Any]):  # noqa: N802,N803 - API compatibility
        def apply():
            self._service.batch_requests.append(body)
            for entry in body["data"]:
                self._service._handle_update(entry["range"], entry["values"])
            return {}

        return _FakeRequest(apply)

    def clear(self, spreadsheetId: str, range: str, body: Dict[str, Any]):  # noqa: N803 - API compatibility
        return _FakeRequest(lambda: self._service._handle_clear(range))


class _FakeSpreadsheets:
    def __init__(self, service: "_FakeService") -> None:
        self._service = service

    def get(self, spreadsheetId: str, **kwargs):  # noqa: N803 - API compatibility
        return _FakeRequest(self._service._handle_metadata)

    def batchUpdate(self, spreadsheetId: str, body: Dict[str, Any]):  # noqa: N802,N803 - API compatibility
        return _FakeRequest(lambda: self._service._handle_add_sheet(body))

    def values(self) -> _FakeValues:
        return _FakeValues(self._service)


class _FakeService:
    def __init__(self, sheets: Dict[str, List[List[Any]]] | None = None) -> None:
        self.sheets: Dict[str, List[List[Any]]] = {name: [list(r) for r in rows] for name, rows in (sheets or {}).items()}
        self.batch_requests: List[Dict[str, Any]] = []
        self.ranges: List[str] = []
        self.metadata_calls = 0
        self.fail_metadata: Exception | None = None

    def spreadsheets(self) -> _FakeSpreadsheets:
        return _FakeSpreadsheets(self)

    # Internal helpers -------------------------------------------------
    def _handle_metadata(self) -> Dict[str, Any]:
        self.metadata_calls += 1
        if self.fail_metadata is not None:
            raise self.fail_metadata
        return {
            "sheets": [
                {"properties": {"title": name, "sheetId": index, "gridProperties": {"columnCount": 26}}}
                for index, name in enumerate(self.sheets)
            ]
        }

    def _handle_add_sheet(self, body: Dict[str, Any]) -> Dict[str, Any]:
        properties = body["requests"][0]["addSheet"]["properties"]
        self.sheets[properties["title"]] = []
        return {"replies": [{"addSheet": {"properties": {"title": properties["title"], "sheetId": 99}}}]}

    def _handle_get(self, range_spec: str) -> Dict[str, Any]:
        sheet, _cells = self._split_range(range_spec)
        return {"values": [list(row) for row in self.sheets[sheet]]}

    def _handle_update(self, range_spec: str, values: List[List[Any]]) -> Dict[str, Any]:
        self.ranges.append(range_spec)
        sheet, cells = self._split_range(range_spec)
        match = re.match(r"([A-Z]+)(\d+):([A-Z]+)(\d+)", cells)
        start = int(match.group(2)) - 1
        grid = self.sheets[sheet]
        for offset, row in enumerate(values):
            while len(grid) <= start + offset:
                grid.append([])
            grid[start + offset] = list(row)
        return {}

    def _handle_clear(self, range_spec: str) -> Dict[str, Any]:
        self.ranges.append(range_spec)
        sheet, cells = self._split_range(range_spec)
        match = re.match(r"A(\d+):", cells)
        start = int(match.group(1)) - 1 if match else 0
        del self.sheets[sheet][start:]
        return {}

    @staticmethod
    def _split_range(range_spec: str) -> tuple[str, str]:
        sheet, _, cell_range = range_spec.partition("!")
        sheet = sheet.strip()
        if sheet.startswith("'") and sheet.endswith("'") and len(sheet) >= 2:
            sheet = sheet[1:-1].replace("''", "'")
        return sheet, cell_range


@pytest.fixture(autouse=True)
def _no_backoff_sleep(monkeypatch):
    monkeypatch.setattr(retry.time, "sleep", lambda seconds: None)


def _writer(sheets=None, **kwargs):
    service = _FakeService(sheets)
    return service, GoogleSheetsWriter("sheet-id", service=service, **kwargs)


def test_a1_helpers_quote_titles_and_compute_ranges() -> None:
    assert normalise_title("Bob's Sheet") == "'Bob''s Sheet'"
    assert column_letter(1) == "A"
    assert column_letter(27) == "AA"
    assert a1_block_range("BQ_DATASETS", 2, 1, 3, 9) == "'BQ_DATASETS'!A2:I4"
    with pytest.raises(SheetsClientError):
        normalise_title("  ")


def test_parse_spreadsheet_id_accepts_urls() -> None:
    url = "https://docs.google.com/spreadsheets/d/1AbC-d_9/edit#gid=0"

    assert parse_spreadsheet_id(url) == "1AbC-d_9"
    assert parse_spreadsheet_id(" 1AbC ") == "1AbC"


def test_get_or_create_sheet_adds_missing_sheet_with_headers() -> None:
    service, writer = _writer({"Existing": [["A"]]})

    handle, created = writer.get_or_create_sheet("BQ_DATASETS", ["Project ID", "Dataset ID"])
    again, created_again = writer.get_or_create_sheet("BQ_DATASETS", ["ignored"])

    assert created is True
    assert created_again is False
    assert handle.sheet_id == 99
    assert again is handle
    assert service.sheets["BQ_DATASETS"] == [["Project ID", "Dataset ID"]]
    assert service.metadata_calls == 1


def test_read_and_last_row() -> None:
    service, writer = _writer({"LOGS": [["Timestamp"], ["t1"], ["t2"]]})
    handle = writer.get_sheet("LOGS")

    assert writer.read_range(handle) == [["Timestamp"], ["t1"], ["t2"]]
    assert writer.get_last_row(handle) == 3
    assert writer.get_sheet("Missing") is None


def test_write_range_targets_the_block() -> None:
    service, writer = _writer({"LOGS": [["Timestamp", "Level"]]})
    handle = writer.get_sheet("LOGS")

    writer.write_range(handle, 2, 1, [["t1", "INFO"], ["t2", "ERROR", "extra"]])

    assert service.ranges[-1] == "'LOGS'!A2:C3"
    assert service.sheets["LOGS"][2] == ["t2", "ERROR", "extra"]


def test_write_rows_chunks_batch_updates() -> None:
    service, writer = _writer({"T": [["ID"]] + [[f"r{i}"] for i in range(5)]}, batch_size=2)
    handle = writer.get_sheet("T")

    writer.write_rows(handle, {6: ["R5"], 2: ["R1"], 4: ["R3"]})

    assert len(service.batch_requests) == 2
    assert [entry["range"] for entry in service.batch_requests[0]["data"]] == ["'T'!A2:A2", "'T'!A4:A4"]
    assert service.sheets["T"][1] == ["R1"]
    assert service.sheets["T"][5] == ["R5"]


def test_clear_keeps_header_when_starting_below_it() -> None:
    service, writer = _writer({"T": [["ID"], ["r1"], ["r2"]]})
    handle = writer.get_sheet("T")

    writer.clear(handle, start_row=2)

    assert service.ranges[-1] == "'T'!A2:Z"
    assert service.sheets["T"] == [["ID"]]


def test_api_errors_are_wrapped() -> None:
    service, writer = _writer()
    service.fail_metadata = HttpError(httplib2.Response({"status": 404}), b"{}")

    with pytest.raises(SheetsApiResponseError):
        writer.get_sheet("Anything")


def test_missing_credentials_and_spreadsheet() -> None:
    with pytest.raises(SheetsCredentialsError):
        GoogleSheetsWriter("sheet-id")
    with pytest.raises(SheetsClientError):
        GoogleSheetsWriter("", service=object())
