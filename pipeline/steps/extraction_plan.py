"""Extraction-plan step: map downloaded sources onto executor tasks."""

from __future__ import annotations

from core import SourceManifest
from orchestrator.artifacts import EXTRACTION_PLAN_FILE, SOURCE_MANIFEST_FILE
from orchestrator.retry import CancellationToken
from planner.plan import build_extraction_plan
from storage.json_io import read_json_file, write_json_atomic
from utils.exceptions import PipelineError

from ..context import PipelineContext


async def run_extraction_plan_step(context: PipelineContext, token: CancellationToken) -> None:
    options = context.options
    store = context.store
    state = store.state
    if state.sources is None:
        raise PipelineError("Discover sources are missing before extraction-plan step", "MISSING_ARTIFACT")

    manifest_path = state.source_manifest_path or str(context.work_dir / SOURCE_MANIFEST_FILE)
    manifest = SourceManifest.model_validate(read_json_file(manifest_path))

    store.set_step_message("extraction-plan", "Building extraction plan from downloaded sources")
    plan = build_extraction_plan(
        run_id=options.run_id,
        discover=state.sources,
        source_manifest=manifest.entries,
        max_step_ms=options.max_step_ms,
        source_type_filter=options.source_types,
    )

    path = context.work_dir / EXTRACTION_PLAN_FILE
    write_json_atomic(path, plan)
    store.set_pointer("extraction_plan_path", str(path))

    for task in plan.tasks:
        context.events.info(
            "extractor.decision",
            "Extractor selected for source",
            sourceId=task.source_id,
            sourceType=task.source_type,
            executorType=task.executor_type,
            target=task.target,
            preferredPath=task.preferred_path,
            requiredFeatures=task.required_features,
        )
    context.events.info(
        "planner.lifecycle",
        "Extraction plan generated",
        phase="end",
        sourceCount=len(plan.sources),
        taskCount=len(plan.tasks),
        path=str(path),
    )
