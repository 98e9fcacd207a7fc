"""
Plan execution: run each extraction task through its local parser, merge
linked sources found in HTML, clean the records, and apply the configured
policy when a source fails its cleanup gate.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
from pathlib import Path
import re
from time import perf_counter
from typing import Dict, List, Optional, Sequence, Set, Tuple
from urllib.parse import urlsplit

from core import (
    CleanupCandidateRecord,
    CleanupReportEntry,
    CleanupResultRecord,
    ExecutionReport,
    ExecutorResult,
    ExtractionPlan,
    ExtractionTask,
    GenerateOptions,
    SourceDescriptor,
    utcnow_iso,
)
from intelligence.llm import BaseLLM
from orchestrator.events import EventSink
from orchestrator.retry import CancellationToken
from pipeline.cleanup import CleanupInput, run_cleanup_phase
from pipeline.quality import compute_source_quality, ratio
from planner.capability import capability_for
from storage.json_io import write_ndjson_atomic
from utils.exceptions import ExtractionError, PipelineError

from .api_executor import run_api_executor
from .csv_executor import run_csv_executor
from .html_executor import HtmlExecutorOptions, run_html_executor
from .placeholder import run_placeholder_executor
from .types import ExecutorOutput, ExtractedLinkCandidate, ExtractionDiagnostics, RawRecord

logger = logging.getLogger(__name__)

PLACEHOLDER_EXECUTORS = frozenset({"xlsx", "pdf", "image"})
RAW_FALLBACK_CONFIDENCE = 0.6
_WHITESPACE = re.compile(r"\s+")


@dataclass
class RunPlanSettings:
    cleanup_mode: str = "hybrid"
    failure_policy: str = "skip-source"
    cleanup_max_model_ms: int = 8_000
    cleanup_chunk_bytes: int = 6_000
    cleanup_max_chunks: int = 8
    cleanup_min_pass_rate: float = 0.9
    cleanup_max_noise_ratio: float = 0.08
    follow_links: bool = True
    max_follow_links: int = 2
    link_types: Set[str] = field(default_factory=lambda: {"html", "csv", "xlsx", "pdf", "api"})
    min_block_score: Optional[float] = None

    @classmethod
    def from_options(cls, options: GenerateOptions, *, max_model_ms: Optional[int] = None) -> "RunPlanSettings":
        return cls(
            cleanup_mode=options.cleanup_mode,
            failure_policy=options.html_cleanup_failure_policy,
            cleanup_max_model_ms=max_model_ms if max_model_ms is not None else options.cleanup_max_model_ms,
            cleanup_chunk_bytes=options.cleanup_chunk_bytes,
            cleanup_max_chunks=options.cleanup_max_chunks,
            cleanup_min_pass_rate=options.cleanup_min_pass_rate,
            cleanup_max_noise_ratio=options.cleanup_max_noise_ratio,
            follow_links=options.html_follow_links,
            max_follow_links=options.html_max_follow_links,
            link_types=set(options.html_link_types),
            min_block_score=options.html_min_block_score,
        )


# --- local dispatch -----------------------------------------------------------


def run_local_executor(
    executor_type: str,
    source: SourceDescriptor,
    target: str,
    html_options: Optional[HtmlExecutorOptions] = None,
) -> ExecutorOutput:
    if executor_type == "csv":
        return run_csv_executor(source.local_path, target)
    if executor_type == "html":
        options = html_options or HtmlExecutorOptions()
        return run_html_executor(source.local_path, target, replace(options, source_url=options.source_url or source.url))
    if executor_type == "api":
        return run_api_executor(source.local_path, target)
    if executor_type in PLACEHOLDER_EXECUTORS:
        return run_placeholder_executor(source.local_path, target, executor_type)
    raise PipelineError(f"Unsupported local adapter for {executor_type}", "LOCAL_ADAPTER_UNSUPPORTED", False)


def run_task_executor(
    task: ExtractionTask,
    source: SourceDescriptor,
    html_options: HtmlExecutorOptions,
    events: Optional[EventSink] = None,
) -> Tuple[ExecutorOutput, str]:
    """Run the task's primary executor, then its fallbacks in order when a parser raises."""
    chain = [task.executor_type, *(item.executor_type for item in task.fallback)]
    last_error: Optional[ExtractionError] = None
    for executor_type in chain:
        try:
            return run_local_executor(executor_type, source, task.target, html_options), executor_type
        except ExtractionError as exc:
            last_error = exc
            logger.info("Executor %s failed for %s: %s", executor_type, task.source_id, exc)
            if events is not None:
                events.info(
                    "extractor.decision",
                    "Executor failed; trying fallback",
                    sourceId=task.source_id,
                    executorType=executor_type,
                    errorMessage=str(exc),
                    major=False,
                )
    if last_error is None:
        raise ExtractionError(f"No executor configured for task {task.id}", retryable=False)
    raise last_error


# --- link follow --------------------------------------------------------------


def source_url_keys(url: str) -> List[str]:
    """Lookup keys from most to least specific: full URL without fragment, origin+path, path."""
    parsed = urlsplit(url)
    if not parsed.scheme or not parsed.netloc:
        return [url.lower()]
    origin_path = f"{parsed.scheme}://{parsed.netloc}{parsed.path}".lower()
    href = url.split("#", 1)[0].lower()
    return [href, origin_path, parsed.path.lower()]


def build_source_url_index(sources: Sequence[SourceDescriptor]) -> Dict[str, str]:
    index: Dict[str, str] = {}
    for source in sources:
        for key in source_url_keys(source.url):
            index.setdefault(key, source.id)
    return index


def resolve_linked_source_id(url: str, index: Dict[str, str]) -> Optional[str]:
    for key in source_url_keys(url):
        if key in index:
            return index[key]
    return None


def _normalize_line(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip().lower()


def merge_records_with_source(
    base: List[RawRecord], incoming: List[RawRecord], source_id: str, source_url: str
) -> List[RawRecord]:
    """Append unseen lines from ``incoming``, tagged with the source they came from."""
    seen = {line for line in (_normalize_line(record.line()) for record in base) if line}
    merged = list(base)
    for record in incoming:
        line = _normalize_line(record.line())
        if not line or line in seen:
            continue
        seen.add(line)
        fields = dict(record.fields)
        fields["line"] = line
        fields["source_id"] = fields.get("source_id") or source_id
        fields["source_url"] = fields.get("source_url") or source_url
        merged.append(RawRecord(fields=fields, row=record.row))
    return merged


def merge_link_candidates(
    left: Sequence[ExtractedLinkCandidate], right: Sequence[ExtractedLinkCandidate]
) -> List[ExtractedLinkCandidate]:
    best: Dict[str, ExtractedLinkCandidate] = {}
    for candidate in [*left, *right]:
        current = best.get(candidate.url)
        if current is None or candidate.score > current.score:
            best[candidate.url] = candidate
    return sorted(best.values(), key=lambda item: -item.score)


def expand_via_linked_sources(
    *,
    task: ExtractionTask,
    output: ExecutorOutput,
    plan: ExtractionPlan,
    source_by_id: Dict[str, SourceDescriptor],
    url_index: Dict[str, str],
    html_options: HtmlExecutorOptions,
    max_follow_links: int,
    allowed_link_types: Set[str],
    events: Optional[EventSink] = None,
) -> ExecutorOutput:
    """
    Follow the best-scored links of an HTML page to sources that are part of
    the plan for the same target, merging their records into ``output``.
    """
    links = sorted((item for item in output.link_candidates if item.score > 0), key=lambda item: -item.score)
    if not links or max_follow_links <= 0:
        return output

    planned = {(item.source_id, item.target) for item in plan.tasks}
    followed: List[str] = []
    records = list(output.records)
    merged_links = list(links)

    for candidate in links:
        if len(followed) >= max_follow_links:
            break
        if candidate.type not in allowed_link_types:
            continue
        linked_id = resolve_linked_source_id(candidate.url, url_index)
        if not linked_id or linked_id == task.source_id or linked_id in followed:
            continue
        linked = source_by_id.get(linked_id)
        if linked is None or (linked.id, task.target) not in planned:
            continue

        if events is not None:
            events.info(
                "extractor.decision",
                "Following linked source from HTML",
                sourceId=task.source_id,
                linkedSourceId=linked.id,
                linkedSourceType=linked.type,
                url=candidate.url,
                reason="|".join(candidate.reasons),
                major=False,
            )
        try:
            linked_output = run_local_executor(
                capability_for(linked.type).primary,
                linked,
                task.target,
                replace(html_options, source_url=linked.url),
            )
        except ExtractionError as exc:
            logger.info("Linked source %s could not be parsed: %s", linked.id, exc)
            continue
        if not linked_output.records:
            continue

        records = merge_records_with_source(records, linked_output.records, linked.id, linked.url)
        merged_links = merge_link_candidates(merged_links, linked_output.link_candidates)
        followed.append(linked.id)

    if not followed:
        return output

    if events is not None:
        events.info(
            "extractor.decision",
            "HTML link-follow merge completed",
            sourceId=task.source_id,
            followedSourceIds=followed,
            mergedRecords=len(records),
            major=False,
        )
    diagnostics = output.diagnostics or ExtractionDiagnostics(parser="html-structured-v2")
    return replace(
        output,
        records=records,
        link_candidates=merged_links,
        diagnostics=replace(diagnostics, link_candidate_count=len(merged_links), followed_source_ids=followed),
    )


def raw_fallback_records(candidates: Sequence[CleanupCandidateRecord]) -> List[CleanupResultRecord]:
    return [
        CleanupResultRecord(
            id=candidate.id,
            source_id=candidate.source_id,
            source_type=candidate.source_type,
            target=candidate.target,
            source_record_index=candidate.source_record_index,
            action="keep",
            text=candidate.canonical_text,
            normalized_fields={**candidate.fields, "line": candidate.canonical_text},
            confidence=RAW_FALLBACK_CONFIDENCE,
            reason_tags=["raw-fallback"],
            flags=list(candidate.flags),
        )
        for candidate in candidates
        if candidate.canonical_text
    ]


# --- plan execution -----------------------------------------------------------


def _elapsed_ms(started: float) -> int:
    return int((perf_counter() - started) * 1000)


async def run_extraction_plan(
    plan: ExtractionPlan,
    *,
    artifacts_dir: str | Path,
    settings: RunPlanSettings,
    llm: Optional[BaseLLM] = None,
    events: Optional[EventSink] = None,
    token: Optional[CancellationToken] = None,
) -> ExecutionReport:
    """
    Execute every task of ``plan`` in order.

    Each (source, target) writes ``raw``, ``candidates`` and ``clean`` NDJSON
    under ``artifacts_dir/<source_id>/<target>/``. A failed task becomes a
    ``failed`` result; only the ``fail-run`` policy aborts the whole plan.
    """
    started_at = utcnow_iso()
    results: List[ExecutorResult] = []
    cleanup_report: List[CleanupReportEntry] = []
    source_by_id = {source.id: source for source in plan.sources}
    url_index = build_source_url_index(plan.sources)
    html_options = HtmlExecutorOptions(
        min_block_score=settings.min_block_score,
        allowed_link_types=set(settings.link_types),
    )

    for task in plan.tasks:
        if token is not None:
            token.raise_if_cancelled()
        source = source_by_id.get(task.source_id)
        if source is None:
            results.append(
                ExecutorResult(
                    task_id=task.id,
                    source_id=task.source_id,
                    executor_type=task.executor_type,
                    target=task.target,
                    status="failed",
                    errors=[f"Source not found: {task.source_id}"],
                )
            )
            continue

        started = perf_counter()
        if events is not None:
            events.info(
                "skills.execution",
                "Executor task started",
                phase="start",
                action=task.id,
                sourceId=task.source_id,
                executorType=task.executor_type,
                executionPath="local",
                requiredFeatures=task.required_features,
                major=False,
            )

        try:
            output, executor_used = run_task_executor(task, source, html_options, events)
            if executor_used == "html" and settings.follow_links:
                output = expand_via_linked_sources(
                    task=task,
                    output=output,
                    plan=plan,
                    source_by_id=source_by_id,
                    url_index=url_index,
                    html_options=html_options,
                    max_follow_links=settings.max_follow_links,
                    allowed_link_types=settings.link_types,
                    events=events,
                )

            task_dir = Path(artifacts_dir) / task.source_id / task.target
            raw_path = task_dir / "raw.ndjson"
            candidate_path = task_dir / "candidates.ndjson"
            clean_path = task_dir / "clean.ndjson"

            cleanup = await run_cleanup_phase(
                CleanupInput(
                    source_id=task.source_id,
                    source_type=task.source_type,
                    target=task.target,
                    output=output,
                    mode=settings.cleanup_mode,
                    max_model_ms=settings.cleanup_max_model_ms,
                    max_chunk_bytes=settings.cleanup_chunk_bytes,
                    max_chunks=settings.cleanup_max_chunks,
                    min_pass_rate=settings.cleanup_min_pass_rate,
                    max_noise_ratio=settings.cleanup_max_noise_ratio,
                    llm=llm,
                    events=events,
                    token=token,
                )
            )
            write_ndjson_atomic(raw_path, cleanup.raw_records)
            write_ndjson_atomic(candidate_path, cleanup.candidate_records)
            write_ndjson_atomic(clean_path, cleanup.clean_records)
            paths = {"raw_path": str(raw_path), "candidate_path": str(candidate_path), "clean_path": str(clean_path)}

            cleanup_report.append(
                CleanupReportEntry(
                    source_id=task.source_id,
                    source_type=executor_used,
                    target=task.target,
                    status=cleanup.status,
                    reason=cleanup.reason,
                    metrics=cleanup.metrics,
                    paths=paths,
                )
            )

            gate_reasons = cleanup.metrics.veto_reasons
            if cleanup.status == "failed" or gate_reasons:
                reason = cleanup.reason or ", ".join(gate_reasons) or "cleanup quality gate failed"
                if events is not None:
                    events.warn(
                        "cleanup.veto",
                        "Source skipped by cleanup gate",
                        sourceId=task.source_id,
                        target=task.target,
                        reasons=gate_reasons,
                        reason=reason,
                        policy=settings.failure_policy,
                    )

                if settings.failure_policy == "fail-run":
                    raise PipelineError(
                        f"Cleanup gate failed for {task.source_id}/{task.target}: {reason}",
                        "CLEANUP_GATE_FAILED",
                        False,
                        source_id=task.source_id,
                        target=task.target,
                    )

                if settings.failure_policy == "raw-fallback":
                    fallback_clean = raw_fallback_records(cleanup.candidate_records)
                    write_ndjson_atomic(clean_path, fallback_clean)
                    metrics = cleanup.metrics.model_copy(
                        update={
                            "clean_count": len(fallback_clean),
                            "pass_rate": ratio(len(fallback_clean), max(cleanup.metrics.candidate_count, 1)),
                            "veto_reasons": [],
                        }
                    )
                    quality = compute_source_quality(
                        source_trust=source.trust_score,
                        executor_type=executor_used,
                        target=task.target,
                        duration_ms=_elapsed_ms(started),
                        metrics=metrics,
                    )
                    results.append(
                        ExecutorResult(
                            task_id=task.id,
                            source_id=task.source_id,
                            executor_type=executor_used,
                            target=task.target,
                            status="succeeded",
                            records_extracted=len(fallback_clean),
                            confidence=quality.confidence,
                            source_quality=quality,
                            duration_ms=_elapsed_ms(started),
                            output_path=str(clean_path),
                            raw_path=str(raw_path),
                            candidate_path=str(candidate_path),
                            clean_path=str(clean_path),
                            cleanup_applied=False,
                            cleanup_status="skipped",
                            cleanup_metrics=metrics,
                        )
                    )
                    continue

                results.append(
                    ExecutorResult(
                        task_id=task.id,
                        source_id=task.source_id,
                        executor_type=executor_used,
                        target=task.target,
                        status="skipped",
                        records_extracted=len(cleanup.clean_records),
                        confidence=0.0,
                        source_quality=compute_source_quality(
                            source_trust=source.trust_score,
                            executor_type=executor_used,
                            target=task.target,
                            duration_ms=_elapsed_ms(started),
                            metrics=cleanup.metrics,
                        ),
                        duration_ms=_elapsed_ms(started),
                        errors=[reason],
                        output_path=str(clean_path),
                        raw_path=str(raw_path),
                        candidate_path=str(candidate_path),
                        clean_path=str(clean_path),
                        cleanup_applied=False,
                        cleanup_status="failed",
                        cleanup_metrics=cleanup.metrics,
                        skip_reason=reason,
                    )
                )
                continue

            quality = compute_source_quality(
                source_trust=source.trust_score,
                executor_type=executor_used,
                target=task.target,
                duration_ms=_elapsed_ms(started),
                metrics=cleanup.metrics,
            )
            results.append(
                ExecutorResult(
                    task_id=task.id,
                    source_id=task.source_id,
                    executor_type=executor_used,
                    target=task.target,
                    status="succeeded",
                    records_extracted=len(cleanup.clean_records),
                    confidence=quality.confidence,
                    source_quality=quality,
                    duration_ms=_elapsed_ms(started),
                    output_path=str(clean_path),
                    raw_path=str(raw_path),
                    candidate_path=str(candidate_path),
                    clean_path=str(clean_path),
                    cleanup_applied=True,
                    cleanup_status="skipped" if cleanup.status == "degraded" else "applied",
                    cleanup_metrics=cleanup.metrics,
                )
            )
            if events is not None:
                events.info(
                    "skills.execution",
                    "Executor task completed",
                    phase="end",
                    action=task.id,
                    sourceId=task.source_id,
                    executorType=executor_used,
                    durationMs=_elapsed_ms(started),
                    records=len(cleanup.clean_records),
                    cleanupStatus=cleanup.status,
                    major=False,
                )
        except PipelineError as exc:
            if exc.code == "CLEANUP_GATE_FAILED":
                raise
            _record_failure(results, task, started, exc, events)
        except (OSError, ValueError) as exc:
            _record_failure(results, task, started, exc, events)

    return ExecutionReport(
        run_id=plan.run_id,
        started_at=started_at,
        finished_at=utcnow_iso(),
        results=sorted(results, key=lambda item: item.task_id),
        cleanup_report=cleanup_report,
    )


def _record_failure(
    results: List[ExecutorResult],
    task: ExtractionTask,
    started: float,
    exc: Exception,
    events: Optional[EventSink],
) -> None:
    logger.warning("Executor task %s failed: %s", task.id, exc)
    results.append(
        ExecutorResult(
            task_id=task.id,
            source_id=task.source_id,
            executor_type=task.executor_type,
            target=task.target,
            status="failed",
            duration_ms=_elapsed_ms(started),
            errors=[str(exc)],
            cleanup_applied=False,
            cleanup_status="failed",
        )
    )
    if events is not None:
        events.warn(
            "skills.failure",
            "Executor task failed",
            phase="fail",
            action=task.id,
            sourceId=task.source_id,
            executorType=task.executor_type,
            durationMs=_elapsed_ms(started),
            errorMessage=str(exc),
            major=False,
        )
