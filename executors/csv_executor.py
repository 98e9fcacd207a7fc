"""CSV executor: quote-aware parsing with header-row detection."""

from __future__ import annotations

import csv
import io
import json
from pathlib import Path
import re
from typing import List, Tuple

from sources.http import decode_content
from utils.exceptions import ExtractionError

from .types import ExecutorOutput, RawRecord

MAX_RECORDS = 300
HEADER_SCAN_ROWS = 8
DELIMITERS = (",", "\t", ";")

_WEEKDAY = re.compile(r"月|火|水|木|金|土|日|monday|tuesday|wednesday|thursday|friday|saturday|sunday", re.IGNORECASE)
_FULL_WIDTH_DIGITS = str.maketrans("０１２３４５６７８９", "0123456789")


def normalize_full_width_digits(value: str) -> str:
    return value.translate(_FULL_WIDTH_DIGITS)


def _normalize_cell(value: str) -> str:
    return normalize_full_width_digits(value).replace("\ufeff", "").replace("\r", "").strip()


def is_weekday_cell(value: str) -> bool:
    return bool(_WEEKDAY.search(value))


def detect_header_index(rows: List[List[str]]) -> int:
    """Index of the best header among the first 8 rows: ``non_empty + 2 * weekday_hits``; first wins ties."""
    best_index, best_score = 0, -1
    for index, row in enumerate(rows[:HEADER_SCAN_ROWS]):
        non_empty = sum(1 for cell in row if cell.strip())
        weekday_hits = sum(1 for cell in row if is_weekday_cell(cell))
        score = non_empty + weekday_hits * 2
        if score > best_score:
            best_index, best_score = index, score
    return best_index


def detect_delimiter(content: str) -> str:
    """Most frequent of comma, tab and semicolon on the first non-blank line; comma on ties."""
    first = next((line for line in content.splitlines() if line.strip()), "")
    return max(DELIMITERS, key=lambda delimiter: (first.count(delimiter), delimiter == ","))


def parse_csv(content: str) -> Tuple[List[str], List[List[str]]]:
    """Return ``(headers, body_rows)``; blank rows are dropped before header detection."""
    reader = csv.reader(io.StringIO(content), delimiter=detect_delimiter(content))
    rows = [[_normalize_cell(cell) for cell in row] for row in reader]
    rows = [row for row in rows if any(cell for cell in row)]
    if not rows:
        return [], []
    header_index = detect_header_index(rows)
    return rows[header_index], rows[header_index + 1 :]


def run_csv_executor(source_path: str, target: str) -> ExecutorOutput:
    try:
        headers, rows = parse_csv(decode_content(Path(source_path).read_bytes()))
    except csv.Error as exc:
        raise ExtractionError(f"CSV parse failed for {source_path}: {exc}", cause=exc, retryable=False) from exc
    records: List[RawRecord] = []
    for row in rows[:MAX_RECORDS]:
        fields = {}
        for index, header in enumerate(headers):
            fields[header or f"col_{index + 1}"] = row[index] if index < len(row) else ""
        records.append(RawRecord(fields=fields, row=row))

    preview = json.dumps(
        {"headers": headers, "sampleRows": rows[:10], "rowCount": len(rows)},
        ensure_ascii=False,
        indent=2,
    )
    return ExecutorOutput(
        target=target,
        source_type="csv",
        source_path=source_path,
        preview=preview,
        records=records,
        headers=headers,
    )
