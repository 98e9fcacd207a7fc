"""
Cleanup phase: canonicalize and filter extracted records, optionally
escalating ambiguous lines to a chunked model review, then gate the
source on the resulting metrics.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
import unicodedata
from typing import TYPE_CHECKING, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from core import CleanupCandidateRecord, CleanupMetrics, CleanupResultRecord
from intelligence.llm import BaseLLM, Message
from intelligence.model import decode_structured, run_model_text
from orchestrator.events import EventSink
from orchestrator.retry import CancellationToken
from utils.exceptions import SchemaError

from .quality import ratio

if TYPE_CHECKING:
    from executors.types import ExecutorOutput, RawRecord

logger = logging.getLogger(__name__)

RECORD_OVERHEAD_BYTES = 40
LLM_CLEANUP_TYPES = frozenset({"html", "pdf", "image"})
ACTION_RANK = {"keep": 0, "rename": 1, "drop": 2}

NOISE_PATTERNS = (
    re.compile(r"(トップ|ホーム|サイトマップ|language|cookie|privacy|利用規約|検索|メニュー)", re.IGNORECASE),
    re.compile(r"(手続き|施設案内|区政情報|問い合わせ|アクセシビリティ|広告)", re.IGNORECASE),
    re.compile(r"(ページ先頭|本文へ移動|Google Tag|JavaScript)", re.IGNORECASE),
)

TARGET_SIGNALS = {
    "schedule": re.compile(r"収集|曜日|毎週|第[1-5]|可燃|不燃|資源|粗大|ごみ|ゴミ"),
    "separation": re.compile(r"分別|出し方|回収|可燃|不燃|資源|粗大|有害|容器|包装|ごみ|ゴミ"),
}

REQUIRED_TEXT_SIGNALS = {
    "schedule": re.compile(r"第[1-5]|[月火水木金土日]|曜日"),
    "separation": re.compile(r"ごみ|ゴミ|分別|出し方|回収"),
}

SCHEDULE_FIELD_KEYS = ("地区", "地域", "area", "曜日", "収集", "分類", "category", "ごみ", "ゴミ")
SEPARATION_FIELD_KEYS = ("分類", "品目", "category", "item", "出し方", "処理", "備考", "ごみ", "ゴミ")

MIN_SCHEMA_SIGNAL_RATE = {"schedule": 0.18, "separation": 0.2}

_WHITESPACE = re.compile(r"\s+")
_NUMERIC_PREFIX = re.compile(r"^[0-9０-９]+[\s_\-.:：]+")
_BULLET_PREFIX = re.compile(r"^[#＊*]+")
_DIGITS_ONLY = re.compile(r"^[0-9０-９]+$")
_PUNCTUATION_ONLY = re.compile(r"^[\-*・_|:：.。、]+$")
_SEPARATION_INDEX_LINE = re.compile(r"^(?:[あ-わ]行で始まる資源・ごみ|資源・ごみ品目一覧(?:表)?|一覧ページ|タグ|目次)$")


# --- model decisions ----------------------------------------------------------


class CleanupDecision(BaseModel):
    id: str = Field(min_length=1)
    action: Literal["keep", "drop", "rename"]
    normalized_text: Optional[str] = None
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    reason_tags: List[str] = Field(default_factory=list, max_length=8)


class CleanupDecisionBatch(BaseModel):
    decisions: List[CleanupDecision] = Field(default_factory=list, max_length=400)


# --- text normalization -------------------------------------------------------


def normalize_value(value: str) -> str:
    """NFKC (which also folds full-width digits), collapse whitespace, trim."""
    return _WHITESPACE.sub(" ", unicodedata.normalize("NFKC", str(value))).strip()


def canonicalize_text(text: str) -> str:
    """Normalize, then strip leading numeric prefixes and bullet markers. Idempotent."""
    normalized = normalize_value(text)
    # stripping can expose another prefix ("1. 2. foo"); repeat until stable
    while True:
        stripped = _BULLET_PREFIX.sub("", _NUMERIC_PREFIX.sub("", normalized, count=1), count=1).strip()
        if stripped == normalized:
            return stripped
        normalized = stripped


def is_likely_noise_line(text: str, target: str) -> bool:
    if not text or len(text) <= 1:
        return True
    if _DIGITS_ONLY.match(text) or _PUNCTUATION_ONLY.match(text):
        return True
    if any(pattern.search(text) for pattern in NOISE_PATTERNS):
        return True
    if target == "separation":
        compact = _WHITESPACE.sub(" ", re.sub(r"[\[\]|]", " ", text)).strip()
        if _SEPARATION_INDEX_LINE.match(compact):
            return True
    return False


def has_target_signal(text: str, fields: Dict[str, str], target: str) -> bool:
    pattern = TARGET_SIGNALS[target]
    if pattern.search(text):
        return True
    return any(pattern.search(f"{key} {value}") for key, value in fields.items())


def has_required_field_signal(fields: Dict[str, str], text: str, target: str) -> bool:
    hints = SCHEDULE_FIELD_KEYS if target == "schedule" else SEPARATION_FIELD_KEYS
    for key in fields:
        lowered = key.lower()
        if any(hint.lower() in lowered for hint in hints):
            return True
    return bool(REQUIRED_TEXT_SIGNALS[target].search(text))


def classify_flags(original: str, canonical: str, target: str) -> List[str]:
    flags: List[str] = []
    if not canonical:
        flags.append("empty")
    if original != canonical:
        flags.append("canonicalized")
    if is_likely_noise_line(canonical, target):
        flags.append("noise")
    if canonical and not has_target_signal(canonical, {}, target):
        flags.append("ambiguous")
    if "|" in canonical or canonical.startswith("- "):
        flags.append("layout-like")
    return flags


def extract_raw_text(record: "RawRecord") -> str:
    line = record.fields.get("line") or ""
    if line.strip():
        return normalize_value(line)
    values = [normalize_value(value) for value in record.fields.values()]
    values = [value for value in values if value]
    if values:
        return " | ".join(values)
    if record.row:
        return " | ".join(value for value in (normalize_value(cell) for cell in record.row) if value)
    return ""


def normalize_fields(fields: Dict[str, str]) -> Dict[str, str]:
    normalized: Dict[str, str] = {}
    for key, value in fields.items():
        normalized_key = normalize_value(key)
        if normalized_key:
            normalized[normalized_key] = normalize_value(value)
    return normalized


# --- deterministic pass -------------------------------------------------------


def build_candidate_records(
    output: "ExecutorOutput", source_id: str, source_type: str, target: str
) -> List[CleanupCandidateRecord]:
    records: List[CleanupCandidateRecord] = []
    for index, record in enumerate(output.records):
        text = extract_raw_text(record)
        canonical = canonicalize_text(text)
        records.append(
            CleanupCandidateRecord(
                id=f"{source_id}:{target}:{index + 1}",
                source_id=source_id,
                source_type=source_type,
                target=target,
                source_record_index=index,
                text=text,
                canonical_text=canonical,
                fields=normalize_fields(record.fields or {}),
                flags=classify_flags(text, canonical, target),
            )
        )
    return records


def deterministic_decision(candidate: CleanupCandidateRecord) -> CleanupResultRecord:
    action = "keep"
    reason_tags: List[str] = []
    if not candidate.canonical_text or is_likely_noise_line(candidate.canonical_text, candidate.target):
        action = "drop"
        reason_tags.append("noise")
    if candidate.text != candidate.canonical_text:
        reason_tags.append("canonicalized")
        if action == "keep":
            action = "rename"

    return CleanupResultRecord(
        id=candidate.id,
        source_id=candidate.source_id,
        source_type=candidate.source_type,
        target=candidate.target,
        source_record_index=candidate.source_record_index,
        action=action,
        text=candidate.canonical_text,
        normalized_fields={**candidate.fields, "line": candidate.canonical_text},
        confidence=0.98 if action == "drop" else 0.78,
        reason_tags=reason_tags,
        flags=list(candidate.flags),
    )


def apply_model_decisions(
    records: List[CleanupResultRecord], decisions: List[CleanupDecision]
) -> List[CleanupResultRecord]:
    """
    Merge model decisions into ``records``, returning new records.

    A decision may only move a record forward along keep -> rename -> drop;
    a backward decision is ignored. An empty rename becomes a drop.
    """
    by_id = {decision.id: decision for decision in decisions}
    merged: List[CleanupResultRecord] = []
    for record in records:
        decision = by_id.get(record.id)
        if decision is None or ACTION_RANK[decision.action] < ACTION_RANK[record.action]:
            merged.append(record)
            continue

        tags = list(dict.fromkeys([*record.reason_tags, *decision.reason_tags]))
        text = record.text
        action = decision.action
        if action == "rename" and decision.normalized_text:
            canonical = canonicalize_text(decision.normalized_text)
            if canonical:
                text = canonical
            else:
                action = "drop"
                tags.append("empty-rename")
        merged.append(
            record.model_copy(
                update={
                    "action": action,
                    "confidence": decision.confidence,
                    "reason_tags": tags,
                    "text": text,
                    "normalized_fields": {**record.normalized_fields, "line": text},
                },
                deep=True,
            )
        )
    return merged


def finalize_record(record: CleanupResultRecord) -> CleanupResultRecord:
    text = canonicalize_text(record.text)
    if not text:
        return record.model_copy(
            update={
                "action": "drop",
                "text": "",
                "normalized_fields": {**record.normalized_fields, "line": ""},
                "reason_tags": list(dict.fromkeys([*record.reason_tags, "empty-after-normalization"])),
            },
            deep=True,
        )
    action = record.action
    if action == "keep" and record.text != text:
        action = "rename"
    return record.model_copy(
        update={"action": action, "text": text, "normalized_fields": {**record.normalized_fields, "line": text}},
        deep=True,
    )


def chunk_by_bytes(records: List[CleanupResultRecord], max_chunk_bytes: int) -> List[List[CleanupResultRecord]]:
    chunks: List[List[CleanupResultRecord]] = []
    current: List[CleanupResultRecord] = []
    size = 0
    for record in records:
        next_size = len(record.text.encode("utf-8")) + RECORD_OVERHEAD_BYTES
        if current and size + next_size > max_chunk_bytes:
            chunks.append(current)
            current, size = [], 0
        current.append(record)
        size += next_size
    if current:
        chunks.append(current)
    return chunks


def evaluate_cleanup_gate(
    *,
    pass_rate: float,
    noise_ratio: float,
    schema_signal_rate: float,
    clean_count: int,
    target: str,
    min_pass_rate: float,
    max_noise_ratio: float,
) -> List[str]:
    """Return veto reasons; empty means the source passes."""
    reasons: List[str] = []
    min_signal = MIN_SCHEMA_SIGNAL_RATE[target]
    if clean_count < 1:
        reasons.append("no-clean-records")
    if pass_rate < min_pass_rate:
        reasons.append(f"pass-rate-below-threshold:{pass_rate:.3f}<{min_pass_rate}")
    if noise_ratio > max_noise_ratio:
        reasons.append(f"noise-ratio-above-threshold:{noise_ratio:.3f}>{max_noise_ratio}")
    if schema_signal_rate < min_signal:
        reasons.append(f"schema-signal-below-threshold:{schema_signal_rate:.3f}<{min_signal}")
    return reasons


# --- model pass ---------------------------------------------------------------


def build_cleanup_prompt(target: str, records: List[CleanupResultRecord]) -> str:
    if target == "schedule":
        hint = "Keep only lines relevant to municipal collection schedules: area, category, weekday/monthly pickup expressions."
    else:
        hint = "Keep only lines relevant to garbage separation rules: category/item/disposal guidance."
    body = "\n".join(f"{record.id}\t{record.text}" for record in records)
    return f"""You are a strict municipal data cleanup judge.

Task:
- {hint}
- For each record id, choose action: keep | drop | rename.
- Use "rename" only when a short deterministic clean text is obvious.
- Never invent facts. Keep Japanese text.
- Keep output concise.

Output JSON:
{{
  "decisions": [
    {{
      "id": "record-id",
      "action": "keep|drop|rename",
      "normalized_text": "optional when rename",
      "confidence": 0.0-1.0,
      "reason_tags": ["noise|menu|header|valid_schedule|valid_separation|ambiguous"]
    }}
  ]
}}

Records:
{body}"""


@dataclass
class CleanupInput:
    source_id: str
    source_type: str
    target: str
    output: "ExecutorOutput"
    mode: str = "hybrid"
    max_model_ms: int = 8_000
    max_chunk_bytes: int = 6_000
    max_chunks: int = 8
    min_pass_rate: float = 0.9
    max_noise_ratio: float = 0.08
    llm: Optional[BaseLLM] = None
    events: Optional[EventSink] = None
    token: Optional[CancellationToken] = None


@dataclass
class CleanupOutcome:
    status: Literal["applied", "degraded", "failed"]
    metrics: CleanupMetrics
    raw_records: List[CleanupCandidateRecord] = field(default_factory=list)
    candidate_records: List[CleanupCandidateRecord] = field(default_factory=list)
    clean_records: List[CleanupResultRecord] = field(default_factory=list)
    reason: Optional[str] = None


async def _review_chunk(
    params: CleanupInput, llm: BaseLLM, chunk: List[CleanupResultRecord], index: int
) -> List[CleanupDecision]:
    response = await run_model_text(
        f"extract.cleanup.{params.target}.{params.source_id}.{index}",
        lambda: llm.acomplete(
            [Message.user(build_cleanup_prompt(params.target, chunk))],
            json_schema=CleanupDecisionBatch.model_json_schema(),
            temperature=0,
        ),
        events=params.events,
        max_model_ms=params.max_model_ms,
        token=params.token,
        major=False,
    )
    decoded = decode_structured(response.content, CleanupDecisionBatch)
    if not decoded.ok:
        raise SchemaError(f"Cleanup decisions not decodable: {decoded.error}")
    if decoded.variant == "extracted":
        logger.info("Cleanup chunk %s decoded from embedded JSON", index)
    return decoded.value.decisions


def _emit(events: Optional[EventSink], level: str, event_type: str, message: str, **extras) -> None:
    if events is not None:
        events.emit(level, event_type, message, **extras)


async def run_cleanup_phase(params: CleanupInput) -> CleanupOutcome:
    """Run the deterministic pass, the optional model pass, then metrics and the gate."""
    events = params.events
    raw_records = build_candidate_records(params.output, params.source_id, params.source_type, params.target)
    candidates = [record for record in raw_records if record.canonical_text]
    decisions = [deterministic_decision(candidate) for candidate in candidates]

    _emit(
        events,
        "info",
        "cleanup.lifecycle",
        "Cleanup phase started",
        phase="start",
        sourceId=params.source_id,
        sourceType=params.source_type,
        target=params.target,
        mode=params.mode,
        rawCount=len(raw_records),
        candidateCount=len(candidates),
    )

    chunks_processed = llm_chunks = fallback_chunks = 0
    degraded = False
    if (
        params.mode == "hybrid"
        and params.source_type in LLM_CLEANUP_TYPES
        and params.llm is not None
        and decisions
    ):
        reviewable = [
            record
            for record in decisions
            if record.action != "drop" and ("ambiguous" in record.flags or "layout-like" in record.flags)
        ]
        chunks = chunk_by_bytes(reviewable, params.max_chunk_bytes)[: params.max_chunks]
        for index, chunk in enumerate(chunks, start=1):
            chunks_processed += 1
            _emit(
                events,
                "info",
                "cleanup.chunk",
                "Cleanup chunk started",
                phase="start",
                sourceId=params.source_id,
                target=params.target,
                chunkIndex=index,
                chunkSize=len(chunk),
                major=False,
            )
            try:
                model_decisions = await _review_chunk(params, params.llm, chunk, index)
            except Exception as exc:
                degraded = True
                fallback_chunks += 1
                logger.warning("Cleanup chunk %s failed for %s: %s", index, params.source_id, exc)
                _emit(
                    events,
                    "warn",
                    "cleanup.chunk",
                    "Cleanup chunk failed; deterministic fallback applied",
                    phase="fail",
                    sourceId=params.source_id,
                    target=params.target,
                    chunkIndex=index,
                    errorMessage=str(exc),
                    major=False,
                )
                continue
            llm_chunks += 1
            decisions = apply_model_decisions(decisions, model_decisions)
            _emit(
                events,
                "info",
                "cleanup.chunk",
                "Cleanup chunk completed",
                phase="end",
                sourceId=params.source_id,
                target=params.target,
                chunkIndex=index,
                produced=len(model_decisions),
                major=False,
            )

    finalized = [finalize_record(record) for record in decisions]
    clean = [record for record in finalized if record.action != "drop" and record.text]
    deterministic_drops = sum(1 for record in decisions if record.action == "drop")
    signal_matches = sum(
        1 for record in clean if has_target_signal(record.text, record.normalized_fields, params.target)
    )
    required = sum(
        1 for record in clean if has_required_field_signal(record.normalized_fields, record.text, params.target)
    )
    pass_rate = ratio(len(clean), len(candidates))
    noise_ratio = ratio(deterministic_drops, max(len(candidates), 1))
    schema_signal_rate = ratio(signal_matches, max(len(clean), 1))
    required_coverage = ratio(required, max(len(clean), 1))
    veto_reasons = evaluate_cleanup_gate(
        pass_rate=pass_rate,
        noise_ratio=noise_ratio,
        schema_signal_rate=schema_signal_rate,
        clean_count=len(clean),
        target=params.target,
        min_pass_rate=params.min_pass_rate,
        max_noise_ratio=params.max_noise_ratio,
    )

    metrics = CleanupMetrics(
        source_id=params.source_id,
        source_type=params.source_type,
        target=params.target,
        raw_count=len(raw_records),
        candidate_count=len(candidates),
        clean_count=len(clean),
        dropped_count=max(0, len(candidates) - len(clean)),
        pass_rate=pass_rate,
        noise_ratio=noise_ratio,
        schema_signal_rate=schema_signal_rate,
        required_field_coverage=required_coverage,
        chunks_processed=chunks_processed,
        llm_chunks=llm_chunks,
        fallback_chunks=fallback_chunks,
        deterministic_drops=deterministic_drops,
        degraded=degraded,
        veto_reasons=veto_reasons,
    )

    if veto_reasons:
        _emit(
            events,
            "warn",
            "cleanup.veto",
            "Cleanup quality gate vetoed source",
            sourceId=params.source_id,
            target=params.target,
            reasons=veto_reasons,
            passRate=pass_rate,
            noiseRatio=noise_ratio,
            schemaSignalRate=schema_signal_rate,
        )
    _emit(
        events,
        "info",
        "cleanup.summary",
        "Cleanup phase finished",
        phase="fail" if veto_reasons else "end",
        sourceId=params.source_id,
        target=params.target,
        cleanCount=len(clean),
        candidateCount=len(candidates),
        passRate=pass_rate,
        noiseRatio=noise_ratio,
        schemaSignalRate=schema_signal_rate,
        chunksProcessed=chunks_processed,
        llmChunks=llm_chunks,
        fallbackChunks=fallback_chunks,
    )

    outcome = CleanupOutcome(
        status="applied",
        metrics=metrics,
        raw_records=raw_records,
        candidate_records=candidates,
        clean_records=clean,
    )
    if not candidates:
        outcome.status = "failed"
        outcome.reason = "no candidate records after canonicalization"
    elif not clean:
        outcome.status = "failed"
        outcome.reason = "cleanup produced no clean records"
    elif degraded:
        outcome.status = "degraded"
    return outcome
