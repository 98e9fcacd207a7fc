"""Atomic JSON/NDJSON helpers and tolerant JSON extraction from model text."""

from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Iterable, List, Optional

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def _jsonable(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")  # type: ignore[no-any-return]
    return value


def atomic_write_bytes(path: str | Path, data: bytes) -> None:
    """Write bytes via temp file + rename so readers never see a partial file."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.tmp-{os.getpid()}-")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp, target)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


def write_json_atomic(path: str | Path, payload: Any) -> None:
    text = json.dumps(_jsonable(payload), ensure_ascii=False, indent=2, default=str) + "\n"
    atomic_write_bytes(path, text.encode("utf-8"))


def write_ndjson_atomic(path: str | Path, rows: Iterable[Any]) -> None:
    lines = [json.dumps(_jsonable(row), ensure_ascii=False, default=str) for row in rows]
    text = "\n".join(lines) + ("\n" if lines else "")
    atomic_write_bytes(path, text.encode("utf-8"))


def read_json_file(path: str | Path) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def read_ndjson_file(path: str | Path) -> List[Any]:
    target = Path(path)
    if not target.exists():
        return []
    rows: List[Any] = []
    for line in target.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line:
            rows.append(json.loads(line))
    return rows


def extract_json_from_text(text: str) -> Optional[Any]:
    """
    Pull a JSON value out of free-form model text.

    A fenced ```json block wins; otherwise the outermost ``{...}`` span is tried.
    Returns None when nothing parses.
    """
    raw = str(text or "")
    fenced = _FENCED_JSON.search(raw)
    if fenced:
        try:
            return json.loads(fenced.group(1).strip())
        except json.JSONDecodeError:
            pass

    start = raw.find("{")
    end = raw.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        return json.loads(raw[start : end + 1])
    except json.JSONDecodeError:
        return None
