"""Discover step: run the multi-round discovery engine and persist its reports."""

from __future__ import annotations

import logging

from core import MACHINE_READABLE_TYPES, utcnow_iso
from discover.engine import map_stop_diagnostic, run_discover_engine
from orchestrator.artifacts import DISCOVER_REPORT_FILE
from orchestrator.retry import CancellationToken
from storage.json_io import write_json_atomic, write_ndjson_atomic

from ..context import PipelineContext

logger = logging.getLogger(__name__)

CANDIDATE_EVENT_LIMIT = 12
DISCOVER_CANDIDATES_FILE = "discover-candidates.ndjson"
DISCOVER_SELECTED_FILE = "discover-selected.json"


async def run_discover_step(context: PipelineContext, token: CancellationToken) -> None:
    options = context.options
    events = context.events
    store = context.store

    events.info("reasoning", "Running bounded multi-round source discovery")
    store.set_step_message("discover", "Running discover rounds")
    result = await run_discover_engine(context, token)

    for artifact in result.http_artifacts:
        store.add_http_artifact(artifact)
    store.set_sources(result.discover)
    store.set_step_message("discover", "Persisted discover output")

    work_dir = context.work_dir
    report_path = work_dir / DISCOVER_REPORT_FILE
    stop_reason = result.rounds[-1].decision_reason if result.rounds else "unknown"
    selected = result.discover.selected

    write_json_atomic(
        report_path,
        {
            "run_id": options.run_id,
            "city": options.city,
            "prefecture": options.prefecture,
            "created_at": utcnow_iso(),
            "rounds": [round_report.model_dump(mode="json") for round_report in result.rounds],
            "stop_reason": stop_reason,
            "stop_diagnostic": map_stop_diagnostic(stop_reason),
            "selected": selected.model_dump(mode="json"),
            "selected_primary": {
                "schedule": selected.schedule[0] if selected.schedule else None,
                "separation": selected.separation[0] if selected.separation else None,
            },
            "rejected": [
                {
                    "id": entry.id,
                    "url": entry.url,
                    "reject_reason": entry.reject_reason,
                    "score": entry.score,
                }
                for entry in result.rejected
            ],
            "output": result.discover.model_dump(mode="json"),
        },
    )
    write_ndjson_atomic(work_dir / DISCOVER_CANDIDATES_FILE, result.discover.candidates)
    write_json_atomic(work_dir / DISCOVER_SELECTED_FILE, selected)
    store.set_pointer("discover_report_path", str(report_path))

    for candidate in result.discover.candidates[:CANDIDATE_EVENT_LIMIT]:
        events.info(
            "discover.candidate",
            "Discover candidate curated",
            sourceId=candidate.id,
            sourceType=candidate.type,
            targetHints=candidate.target_hints,
            score=candidate.score,
            url=candidate.url,
            rejected=candidate.rejected,
            rejectReason=candidate.reject_reason,
        )

    schedule_primary = result.discover.candidate(selected.schedule[0]) if selected.schedule else None
    events.info(
        "discover.finalize",
        "Discover finalized",
        stopReason=stop_reason,
        machineReadableSchedule=bool(schedule_primary and schedule_primary.type in MACHINE_READABLE_TYPES),
        scheduleSelected=len(selected.schedule),
        separationSelected=len(selected.separation),
        candidateCount=len(result.discover.candidates),
        reportPath=str(report_path),
    )
    logger.info(
        "discover finished for %s/%s: %s candidates, stop=%s",
        options.prefecture,
        options.city,
        len(result.discover.candidates),
        stop_reason,
    )
