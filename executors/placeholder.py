"""Stub executor for binary types without a local parser (xlsx, pdf, image)."""

from __future__ import annotations

from pathlib import Path

from .types import ExecutorOutput


def run_placeholder_executor(source_path: str, target: str, source_type: str) -> ExecutorOutput:
    """Never fabricates records; cleanup will fail the source with ``no-clean-records``."""
    size = Path(source_path).stat().st_size
    return ExecutorOutput(
        target=target,
        source_type=source_type,
        source_path=source_path,
        preview=f"Binary source ({source_type}) at {source_path}, size={size}",
        records=[],
    )
