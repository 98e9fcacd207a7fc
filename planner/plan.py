"""
Extraction planning: one task per (downloaded source, target hint), ordered
by the source's discovery rank for that target.
"""

from __future__ import annotations

from pathlib import Path
import sys
from typing import Dict, List, Optional, Sequence, Tuple

from core import (
    TARGETS,
    DiscoverOutput,
    ExtractionFallback,
    ExtractionPlan,
    ExtractionTask,
    SourceDescriptor,
    SourceManifestEntry,
    TargetSelection,
)
from utils.exceptions import PipelineError

from .capability import capability_for, required_features_for_source_type

UNRANKED_PRIORITY = 99_999
MIN_TASK_TIMEOUT_MS = 5_000
MAX_TASK_TIMEOUT_MS = 40_000


def task_timeout_ms(max_step_ms: int) -> int:
    return max(MIN_TASK_TIMEOUT_MS, min(max_step_ms, MAX_TASK_TIMEOUT_MS))


def build_priority_index(selected: TargetSelection) -> Dict[Tuple[str, str], int]:
    """``(target, source_id) -> 1-based rank`` in the discover selection."""
    index: Dict[Tuple[str, str], int] = {}
    for target in TARGETS:
        for rank, source_id in enumerate(selected.for_target(target), start=1):
            index[(target, source_id)] = rank
    return index


def build_extraction_plan(
    *,
    run_id: str,
    discover: DiscoverOutput,
    source_manifest: Sequence[SourceManifestEntry],
    max_step_ms: int,
    source_type_filter: Optional[Sequence[str]] = None,
) -> ExtractionPlan:
    """
    Build the extraction plan from the download manifest.

    Failed or missing downloads are skipped, as are sources outside
    ``source_type_filter`` when one is given. A source with no target hints
    gets a task for each target. Raises a non-retryable
    ``EXTRACTION_PLAN_EMPTY`` when nothing is left to extract.
    """
    priority_index = build_priority_index(discover.selected)
    descriptors: List[SourceDescriptor] = []
    ranked_tasks: List[Tuple[int, ExtractionTask]] = []

    for entry in source_manifest:
        if entry.status != "downloaded" or not entry.local_path or not Path(entry.local_path).exists():
            continue
        if source_type_filter and entry.type not in source_type_filter:
            continue

        candidate = discover.candidate(entry.source_id)
        targets = list(entry.target_hints) or list(TARGETS)
        ranks = [priority_index[(target, entry.source_id)] for target in targets if (target, entry.source_id) in priority_index]
        descriptors.append(
            SourceDescriptor(
                id=entry.source_id,
                type=entry.type,
                url=entry.url,
                mime=entry.content_type,
                last_modified=entry.last_modified,
                local_path=entry.local_path,
                priority=min(ranks) if ranks else UNRANKED_PRIORITY,
                trust_score=candidate.officialness if candidate else 0.6,
            )
        )

        capability = capability_for(entry.type)
        for target in targets:
            task = ExtractionTask(
                id=f"task-{target}-{entry.source_id}",
                source_id=entry.source_id,
                source_type=entry.type,
                executor_type=capability.primary,
                target=target,
                output_schema="schedule-raw" if target == "schedule" else "separation-raw",
                timeout_ms=task_timeout_ms(max_step_ms),
                fallback=[
                    ExtractionFallback(executor_type=executor, reason=f"fallback from {entry.type}")
                    for executor in capability.fallback
                ],
                required_features=required_features_for_source_type(entry.type),
                preferred_path="local",
            )
            ranked_tasks.append((priority_index.get((target, entry.source_id), sys.maxsize), task))

    if not ranked_tasks:
        raise PipelineError("Planner produced no extraction tasks", "EXTRACTION_PLAN_EMPTY", False)

    ranked_tasks.sort(key=lambda item: (item[0], item[1].id))
    return ExtractionPlan(
        run_id=run_id,
        sources=sorted(descriptors, key=lambda descriptor: descriptor.priority),
        tasks=[task for _, task in ranked_tasks],
        candidate_rankings={target: discover.selected.for_target(target) for target in TARGETS},
    )
