"""
CSV import of customer names and CSV export of result rows, backed by polars.
"""

from __future__ import annotations

import io
from typing import Optional

import polars as pl


CSV_SEPARATORS = [",", ";", "\t", "|"]
NAME_COLUMN_HINTS = ["name", "customer", "client", "lead"]
NULL_VALUES = ["", "null", "NULL", "n/a", "N/A", "na", "NA"]

EXPORT_COLUMNS = [
    "query",
    "lead_id",
    "lead_name",
    "contract_id",
    "subtotal",
    "total",
    "total_status",
    "rep_discount",
    "ach_discount",
    "discount_rate",
]
EXPORT_TEXT_COLUMNS = {"query", "lead_id", "lead_name", "contract_id", "total_status"}


SNIFF_BYTES = 4096
SNIFF_LINES = 5


def detect_csv_separator(raw: bytes) -> str:
    """Pick the separator used most in the header and first data lines; comma when none appears."""
    head = raw[:SNIFF_BYTES].decode("utf-8-sig", errors="replace")
    sample = [line for line in head.splitlines() if line.strip()][:SNIFF_LINES]
    usage = {sep: sum(line.count(sep) for line in sample) for sep in CSV_SEPARATORS}
    separator = max(CSV_SEPARATORS, key=usage.__getitem__)
    return separator if usage[separator] else ","


def read_csv_bytes(raw: bytes) -> pl.DataFrame:
    """Read CSV bytes with delimiter detection; every column is read as text."""
    return pl.read_csv(
        io.BytesIO(raw),
        separator=detect_csv_separator(raw),
        infer_schema_length=0,
        truncate_ragged_lines=True,
        ignore_errors=True,
        null_values=NULL_VALUES,
    )


def infer_name_column(columns: list[str]) -> Optional[str]:
    for hint in NAME_COLUMN_HINTS:
        for col in columns:
            if hint in str(col or "").lower():
                return col
    return columns[0] if columns else None


def names_from_csv(raw: bytes, column: Optional[str] = None) -> tuple[str, list[str]]:
    """
    Extract the name column from CSV bytes.

    Returns the chosen column and its non-empty values. Raises ValueError when
    the file has no usable column.
    """
    df = read_csv_bytes(raw)
    if df.width == 0:
        raise ValueError("Input file has no columns.")

    selected = column if column in df.columns else infer_name_column(df.columns)
    if not selected:
        raise ValueError("Unable to infer a name column from input.")

    values = df[selected].cast(pl.Utf8, strict=False).fill_null("").to_list()
    return selected, [str(value).strip() for value in values if str(value or "").strip()]


def rows_to_csv_bytes(rows: list[dict]) -> bytes:
    """Write snake_case result rows as CSV with a fixed column order."""
    data = {}
    for col in EXPORT_COLUMNS:
        values = [row.get(col) for row in rows]
        if col in EXPORT_TEXT_COLUMNS:
            data[col] = pl.Series(col, [None if v is None else str(v) for v in values], dtype=pl.Utf8)
        else:
            data[col] = pl.Series(col, [None if v is None else float(v) for v in values], dtype=pl.Float64)
    buf = io.BytesIO()
    pl.DataFrame(data).write_csv(buf)
    return buf.getvalue()
