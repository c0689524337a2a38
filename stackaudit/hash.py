"""Row hashing used for change detection during selective refresh."""
from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, List, Sequence

FNV_OFFSET_BASIS_64 = 0xCBF29CE484222325
FNV_PRIME_64 = 0x100000001B3
_MASK_64 = 0xFFFFFFFFFFFFFFFF


def canonical_cell(value: Any) -> Any:
    """Return a JSON-friendly form of ``value`` that survives a Sheets round trip."""

    if value is None:
        return ""
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        return value
    if isinstance(value, (int, str)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def canonical_row(row: Sequence[Any]) -> List[Any]:
    """Canonicalise every cell and drop trailing blanks, which Sheets never returns."""

    cells = [canonical_cell(value) for value in row]
    while cells and cells[-1] == "":
        cells.pop()
    return cells


def canonical_key(value: Any) -> str:
    cell = canonical_cell(value)
    if isinstance(cell, str):
        return cell.strip()
    return json.dumps(cell)


def fnv1a_64(data: bytes) -> int:
    """Return the 64-bit FNV-1a hash of ``data``."""

    value = FNV_OFFSET_BASIS_64
    for byte in data:
        value ^= byte
        value = (value * FNV_PRIME_64) & _MASK_64
    return value


def row_hash(row: Sequence[Any]) -> str:
    """Return a deterministic, non-cryptographic hash of a sheet row."""

    payload = json.dumps(canonical_row(row), ensure_ascii=False, separators=(",", ":"))
    return f"{fnv1a_64(payload.encode('utf-8')):016x}"


__all__ = ["canonical_cell", "canonical_key", "canonical_row", "fnv1a_64", "row_hash"]
