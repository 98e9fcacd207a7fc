"""JSON/API executor."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List

from sources.http import decode_content
from utils.exceptions import ExtractionError

from .types import ExecutorOutput, RawRecord

MAX_RECORDS = 300


def _flatten(item: Any) -> Dict[str, str]:
    if isinstance(item, dict):
        return {
            str(key): value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
            for key, value in item.items()
        }
    return {"value": json.dumps(item, ensure_ascii=False)}


def run_api_executor(source_path: str, target: str) -> ExecutorOutput:
    """Body is an array of records or a single object; top-level keys become string fields."""
    raw = decode_content(Path(source_path).read_bytes())
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ExtractionError(f"Invalid JSON in {source_path}: {exc}", cause=exc, retryable=False) from exc

    items: List[Any] = parsed if isinstance(parsed, list) else [parsed]
    return ExecutorOutput(
        target=target,
        source_type="api",
        source_path=source_path,
        preview=json.dumps(items[:5], ensure_ascii=False, indent=2),
        records=[RawRecord(fields=_flatten(item)) for item in items[:MAX_RECORDS]],
    )
