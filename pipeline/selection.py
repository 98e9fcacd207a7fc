"""
Primary source selection per target.

Candidates are gated on their cleanup metrics, ranked by a fixed weighted
score, optionally re-ordered by the model among the top-K, then walked
through a post-rank preflight gate until one passes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from pathlib import Path
from time import time
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from core import (
    TARGETS,
    ExecutionReport,
    ExtractionPlan,
    GenerateOptions,
    PrimarySelectionDecision,
    QualityGateSnapshot,
    SelectionReport,
    SourceCandidate,
    SourceQualityScore,
)
from intelligence.llm import BaseLLM, Message
from intelligence.model import decode_structured, run_model_text
from orchestrator.artifacts import SELECTION_REPORT_FILE
from orchestrator.events import EventSink
from orchestrator.retry import CancellationToken
from storage.json_io import read_ndjson_file, write_json_atomic
from utils.exceptions import PipelineError, SchemaError

from .cleanup import MIN_SCHEMA_SIGNAL_RATE
from .quality import fallback_quality_score

logger = logging.getLogger(__name__)

DETERMINISTIC_REASON = "deterministic-score-ranking-with-cleanup-metrics"
EVIDENCE_SAMPLE_RECORDS = 40
PREFLIGHT_MAX_NOISE_PENALTY = 0.55
PREFLIGHT_MIN_PARSE_SUCCESS = 0.05

SELECTION_WEIGHTS = {
    "officialness": 0.22,
    "parse_success": 0.16,
    "schema_coverage": 0.14,
    "noise_penalty": 0.08,
    "cleanup_pass_rate": 0.16,
    "noise_ratio": 0.10,
    "schema_signal_rate": 0.08,
    "required_field_coverage": 0.04,
    "confidence": 0.02,
}


class SelectionChoice(BaseModel):
    primary_source_id: str
    secondary_source_ids: List[str] = Field(default_factory=list, max_length=5)
    reason: str = ""
    rationale_tags: List[str] = Field(default_factory=list, max_length=8)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


@dataclass
class SelectionPolicy:
    mode: str = "hybrid"
    top_k: int = 3
    max_model_ms: int = 12_000
    confidence_threshold: float = 0.7
    evidence_bytes: int = 12_000
    min_pass_rate: float = 0.9
    max_noise_ratio: float = 0.08

    @classmethod
    def from_options(cls, options: GenerateOptions, *, max_model_ms: Optional[int] = None) -> "SelectionPolicy":
        return cls(
            mode=options.selection_mode,
            top_k=options.selection_top_k,
            max_model_ms=max_model_ms if max_model_ms is not None else options.selection_max_model_ms,
            confidence_threshold=options.selection_confidence_threshold,
            evidence_bytes=options.selection_evidence_bytes,
            min_pass_rate=options.cleanup_min_pass_rate,
            max_noise_ratio=options.cleanup_max_noise_ratio,
        )

    def gate_snapshot(self) -> QualityGateSnapshot:
        return QualityGateSnapshot(
            confidence_threshold=self.confidence_threshold,
            min_pass_rate=self.min_pass_rate,
            max_noise_ratio=self.max_noise_ratio,
            min_schema_signal_rate=MIN_SCHEMA_SIGNAL_RATE["schedule"],
        )


@dataclass
class SelectionResult:
    decisions: Dict[str, PrimarySelectionDecision]
    candidates: Dict[str, List[SourceCandidate]] = field(default_factory=dict)
    report_path: Optional[str] = None


def deterministic_selection_score(score: SourceQualityScore) -> float:
    return (
        score.officialness * SELECTION_WEIGHTS["officialness"]
        + score.parse_success * SELECTION_WEIGHTS["parse_success"]
        + score.schema_coverage * SELECTION_WEIGHTS["schema_coverage"]
        + (1 - score.noise_penalty) * SELECTION_WEIGHTS["noise_penalty"]
        + score.cleanup_pass_rate * SELECTION_WEIGHTS["cleanup_pass_rate"]
        + (1 - score.noise_ratio) * SELECTION_WEIGHTS["noise_ratio"]
        + score.schema_signal_rate * SELECTION_WEIGHTS["schema_signal_rate"]
        + score.required_field_coverage * SELECTION_WEIGHTS["required_field_coverage"]
        + score.confidence * SELECTION_WEIGHTS["confidence"]
    )


def evaluate_candidate_gate(
    score: SourceQualityScore, records: int, target: str, policy: SelectionPolicy
) -> List[str]:
    """Reasons a candidate is excluded before ranking."""
    reasons: List[str] = []
    if records < 1:
        reasons.append("records=0")
    if score.confidence < policy.confidence_threshold:
        reasons.append("confidence-below-threshold")
    if score.cleanup_pass_rate < policy.min_pass_rate:
        reasons.append("cleanup-pass-rate-below-threshold")
    if score.noise_ratio > policy.max_noise_ratio:
        reasons.append("cleanup-noise-ratio-above-threshold")
    if score.schema_signal_rate < MIN_SCHEMA_SIGNAL_RATE[target]:
        reasons.append("schema-signal-rate-below-threshold")
    return reasons


def passes_preflight_gate(score: SourceQualityScore, records: int, confidence_threshold: float) -> bool:
    return (
        records >= 1
        and score.confidence >= confidence_threshold
        and score.noise_penalty <= PREFLIGHT_MAX_NOISE_PENALTY
        and score.parse_success >= PREFLIGHT_MIN_PARSE_SUCCESS
    )


def rank_candidates(candidates: Sequence[SourceCandidate]) -> List[SourceCandidate]:
    """Highest rank score first; ties keep their input order."""
    return sorted(candidates, key=lambda item: -item.score)


def deterministic_decision(target: str, candidates: Sequence[SourceCandidate]) -> PrimarySelectionDecision:
    ranked = rank_candidates(candidates)
    return PrimarySelectionDecision(
        target=target,
        primary_source_id=ranked[0].source_id,
        secondary_source_ids=[item.source_id for item in ranked[1:]],
        reason=DETERMINISTIC_REASON,
    )


def normalize_model_choice(
    target: str,
    candidates: Sequence[SourceCandidate],
    choice: SelectionChoice,
    fallback: PrimarySelectionDecision,
) -> PrimarySelectionDecision:
    """Accept the model's pick only when every id it names is one of ``candidates``."""
    allowed = {item.source_id for item in candidates}
    if choice.primary_source_id not in allowed:
        return fallback
    secondary = [
        source_id
        for source_id in choice.secondary_source_ids
        if source_id in allowed and source_id != choice.primary_source_id
    ]
    return PrimarySelectionDecision(
        target=target,
        primary_source_id=choice.primary_source_id,
        secondary_source_ids=list(dict.fromkeys(secondary)),
        reason=choice.reason or fallback.reason,
    )


def _read_evidence(path: Optional[str], max_bytes: int) -> str:
    if not path or not Path(path).exists():
        return ""
    return Path(path).read_text(encoding="utf-8")[:max_bytes]


def build_selection_prompt(target: str, candidates: Sequence[SourceCandidate], evidence_bytes: int) -> str:
    blocks = []
    for index, candidate in enumerate(candidates, start=1):
        blocks.append(
            f"{index}. source_id={candidate.source_id}, source_type={candidate.source_type}\n"
            f"score={json.dumps(candidate.features.model_dump(mode='json'))}\n"
            f"tags={','.join(candidate.tags)}\n"
            f"evidence:\n{_read_evidence(candidate.sample_evidence_path, evidence_bytes)}"
        )
    body = "\n\n---\n\n".join(blocks)
    return f"""Choose the best primary source for {target} data conversion.

Rules:
- Prefer structured and clean sources with high cleanup quality metrics.
- Do not choose noisy or low-signal candidates.
- Return only listed source IDs.

Candidates:
{body}"""


def write_candidate_evidence(
    work_dir: str | Path,
    source_id: str,
    target: str,
    clean_path: str,
    score: SourceQualityScore,
    evidence_bytes: int,
) -> str:
    """Write a truncated sample of the clean records to ``candidates/<target>/<source_id>.json``."""
    sample = [
        {
            "id": record.get("id"),
            "text": record.get("text"),
            "confidence": record.get("confidence"),
            "reason_tags": record.get("reason_tags", []),
        }
        for record in read_ndjson_file(clean_path)[:EVIDENCE_SAMPLE_RECORDS]
    ]
    raw = json.dumps(
        {"source_id": source_id, "target": target, "score": score.model_dump(mode="json"), "sample": sample},
        ensure_ascii=False,
        indent=2,
    )[:evidence_bytes]
    path = Path(work_dir) / "candidates" / target / f"{source_id}.json"
    write_json_atomic(path, {"source_id": source_id, "target": target, "sample": raw})
    return str(path)


def build_candidate_tags(source_type: str, cleanup_applied: bool, cleanup_status: Optional[str]) -> List[str]:
    tags = [f"source:{source_type}"]
    if cleanup_applied:
        tags.append("cleanup:applied")
    if cleanup_status:
        tags.append(f"cleanup:{cleanup_status}")
    return tags


def collect_candidates(
    plan: ExtractionPlan,
    report: ExecutionReport,
    policy: SelectionPolicy,
    *,
    work_dir: str | Path,
    events: Optional[EventSink] = None,
) -> Dict[str, List[SourceCandidate]]:
    """Gate every succeeded result, write its evidence and return ranked candidates per target."""
    by_source = {source.id: source for source in plan.sources}
    candidates: Dict[str, List[SourceCandidate]] = {target: [] for target in TARGETS}

    for result in report.results:
        if result.status != "succeeded" or not result.output_path:
            continue
        source = by_source.get(result.source_id)
        if source is None or not Path(result.output_path).exists():
            continue

        quality = result.source_quality or fallback_quality_score(
            confidence=result.confidence,
            records_extracted=result.records_extracted,
            metrics=result.cleanup_metrics,
        )
        gate_reasons = evaluate_candidate_gate(quality, result.records_extracted, result.target, policy)
        if gate_reasons:
            if events is not None:
                events.warn(
                    "source.selection.veto",
                    "Source vetoed before ranking by quality gate",
                    target=result.target,
                    sourceId=result.source_id,
                    reason=", ".join(gate_reasons),
                )
            continue

        rank_score = deterministic_selection_score(quality)
        candidates[result.target].append(
            SourceCandidate(
                source_id=result.source_id,
                source_type=source.type,
                target=result.target,
                score=rank_score,
                features=quality,
                records=result.records_extracted,
                confidence=quality.confidence,
                tags=build_candidate_tags(source.type, result.cleanup_applied, result.cleanup_status),
                sample_evidence_path=write_candidate_evidence(
                    work_dir, result.source_id, result.target, result.output_path, quality, policy.evidence_bytes
                ),
            )
        )
        if events is not None:
            events.info(
                "source.scored",
                "Source scored for target",
                target=result.target,
                sourceId=result.source_id,
                sourceType=source.type,
                confidence=quality.confidence,
                rankScore=rank_score,
            )

    return {target: rank_candidates(items) for target, items in candidates.items()}


async def _ask_model(
    target: str,
    top: Sequence[SourceCandidate],
    policy: SelectionPolicy,
    llm: BaseLLM,
    events: Optional[EventSink],
    token: Optional[CancellationToken],
) -> SelectionChoice:
    response = await run_model_text(
        f"selection.{target}.generateObject",
        lambda: llm.acomplete(
            [Message.user(build_selection_prompt(target, top, policy.evidence_bytes))],
            json_schema=SelectionChoice.model_json_schema(),
            temperature=0,
        ),
        events=events,
        max_model_ms=policy.max_model_ms,
        token=token,
        major=False,
    )
    decoded = decode_structured(response.content, SelectionChoice)
    if not decoded.ok:
        raise SchemaError(f"Selection answer not decodable: {decoded.error}")
    if decoded.variant == "extracted":
        logger.info("Selection answer for %s decoded from embedded JSON", target)
    return decoded.value


async def choose_target_primary(
    target: str,
    candidates: Sequence[SourceCandidate],
    policy: SelectionPolicy,
    *,
    llm: Optional[BaseLLM] = None,
    events: Optional[EventSink] = None,
    token: Optional[CancellationToken] = None,
) -> PrimarySelectionDecision:
    """
    Pick the primary source for one target.

    Raises ``NO_SOURCE_CANDIDATE`` when nothing survived the cleanup gates and
    ``NO_VALID_SOURCE_AFTER_VETO`` when every queued candidate fails preflight.
    """
    if not candidates:
        raise PipelineError(
            f"No candidates available for {target} after cleanup quality gates",
            "NO_SOURCE_CANDIDATE",
            False,
            target=target,
        )

    top = rank_candidates(candidates)[: max(1, policy.top_k)]
    by_id = {item.source_id: item for item in candidates}
    chosen = deterministic_decision(target, top)
    trace_id: Optional[str] = None

    if policy.mode in ("llm-first", "hybrid") and llm is not None:
        try:
            choice = await _ask_model(target, top, policy, llm, events, token)
        except Exception as exc:  # provider errors fall back too
            logger.info("Model selection failed for %s: %s", target, exc)
            if events is not None:
                events.warn(
                    "source.selection.fallback",
                    "LLM selection failed; falling back to deterministic ranking",
                    target=target,
                    reason=str(exc),
                )
        else:
            trace_id = f"selection-{target}-{int(time() * 1000)}"
            chosen = normalize_model_choice(target, top, choice, chosen)

    veto_reasons: List[str] = []
    queue = [chosen.primary_source_id, *chosen.secondary_source_ids]
    for position, source_id in enumerate(queue):
        candidate = by_id.get(source_id)
        if candidate is None:
            continue
        if passes_preflight_gate(candidate.features, candidate.records, policy.confidence_threshold):
            decision = PrimarySelectionDecision(
                target=target,
                primary_source_id=source_id,
                secondary_source_ids=queue[position + 1 :],
                reason=chosen.reason,
                llm_decision_trace_id=trace_id,
                vetoed=bool(veto_reasons),
                veto_reasons=veto_reasons,
                quality_gate_snapshot=policy.gate_snapshot(),
            )
            if events is not None:
                if veto_reasons:
                    events.info(
                        "source.selection.fallback",
                        "Using fallback source after veto",
                        target=target,
                        sourceId=source_id,
                    )
                events.info(
                    "source.selection",
                    "Primary source selected",
                    target=target,
                    sourceId=source_id,
                    secondarySourceIds=decision.secondary_source_ids,
                    confidence=candidate.confidence,
                    reason=decision.reason,
                )
            return decision

        reason = f"post-rank gate failed for {source_id}"
        veto_reasons.append(reason)
        if events is not None:
            events.warn(
                "source.selection.veto",
                "Primary source vetoed by preflight quality gate",
                target=target,
                sourceId=source_id,
                confidence=candidate.confidence,
                reason=reason,
            )

    raise PipelineError(
        f"No valid source candidate remained after veto for {target}",
        "NO_VALID_SOURCE_AFTER_VETO",
        False,
        target=target,
        veto_reasons=veto_reasons,
    )


async def select_primary_sources(
    plan: ExtractionPlan,
    report: ExecutionReport,
    policy: SelectionPolicy,
    *,
    run_id: str,
    work_dir: str | Path,
    llm: Optional[BaseLLM] = None,
    events: Optional[EventSink] = None,
    token: Optional[CancellationToken] = None,
) -> SelectionResult:
    """Select a primary per target independently and write ``selection-report.json``."""
    candidates = collect_candidates(plan, report, policy, work_dir=work_dir, events=events)
    decisions: Dict[str, PrimarySelectionDecision] = {}
    for target in TARGETS:
        decisions[target] = await choose_target_primary(
            target, candidates[target], policy, llm=llm, events=events, token=token
        )

    report_path = Path(work_dir) / SELECTION_REPORT_FILE
    write_json_atomic(
        report_path,
        SelectionReport(
            run_id=run_id,
            mode=policy.mode,
            top_k=policy.top_k,
            quality_gate_snapshot=policy.gate_snapshot(),
            candidates=candidates,
            decisions=decisions,
        ),
    )
    return SelectionResult(decisions=decisions, candidates=candidates, report_path=str(report_path))
