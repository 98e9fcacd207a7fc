"""Executor output shapes shared by every local parser."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class RawRecord:
    fields: Dict[str, str]
    row: Optional[List[str]] = None

    def line(self) -> str:
        """The record's display line: ``fields["line"]``, else the joined row."""
        if self.fields.get("line"):
            return self.fields["line"]
        if self.row:
            return " | ".join(self.row)
        return ""


@dataclass
class ExtractedLinkCandidate:
    url: str
    text: str
    type: str
    score: float
    reasons: List[str] = field(default_factory=list)


@dataclass
class ExtractionDiagnostics:
    parser: str
    table_count: int = 0
    table_row_count: int = 0
    text_block_count: int = 0
    skipped_noise_blocks: int = 0
    link_candidate_count: int = 0
    followed_source_ids: List[str] = field(default_factory=list)


@dataclass
class ExecutorOutput:
    target: str
    source_type: str
    source_path: str
    preview: str
    records: List[RawRecord] = field(default_factory=list)
    headers: Optional[List[str]] = None
    link_candidates: List[ExtractedLinkCandidate] = field(default_factory=list)
    diagnostics: Optional[ExtractionDiagnostics] = None
