"""Extract step: execute the plan, clean every source and write the reports."""

from __future__ import annotations

from core import ExtractionPlan, utcnow_iso
from executors.run_plan import RunPlanSettings, run_extraction_plan
from orchestrator.artifacts import EXECUTION_REPORT_FILE, EXTRACTION_PLAN_FILE
from orchestrator.retry import CancellationToken
from storage.json_io import read_json_file, write_json_atomic
from utils.exceptions import ExtractionError

from ..context import PipelineContext

CLEANUP_REPORT_FILE = "cleanup-report.json"
ARTIFACTS_DIR = "artifacts"


async def run_extract_step(context: PipelineContext, token: CancellationToken) -> None:
    options = context.options
    store = context.store
    plan_path = store.state.extraction_plan_path or str(context.work_dir / EXTRACTION_PLAN_FILE)
    plan = ExtractionPlan.model_validate(read_json_file(plan_path))

    store.set_step_message("extract", "Running extractor tasks")
    artifacts_dir = context.work_dir / ARTIFACTS_DIR
    artifacts_dir.mkdir(parents=True, exist_ok=True)

    llm = context.require_llm() if options.cleanup_mode == "hybrid" else context.llm
    report = await run_extraction_plan(
        plan,
        artifacts_dir=artifacts_dir,
        settings=RunPlanSettings.from_options(
            options, max_model_ms=context.model_timeout_ms(options.cleanup_max_model_ms)
        ),
        llm=llm,
        events=context.events,
        token=token,
    )

    report_path = context.work_dir / EXECUTION_REPORT_FILE
    cleanup_report_path = context.work_dir / CLEANUP_REPORT_FILE
    write_json_atomic(report_path, report)
    write_json_atomic(
        cleanup_report_path,
        {
            "run_id": options.run_id,
            "created_at": utcnow_iso(),
            "sources": [entry.model_dump(mode="json") for entry in report.cleanup_report],
        },
    )
    store.set_pointer("execution_report_path", str(report_path))

    failed = [result for result in report.results if result.status == "failed"]
    skipped = [result for result in report.results if result.status == "skipped"]
    vetoed = [entry for entry in report.cleanup_report if entry.metrics.veto_reasons]
    context.events.info(
        "cleanup.summary",
        "Cleanup summary",
        sourceCount=len(report.cleanup_report),
        vetoedSources=len(vetoed),
        skippedTasks=len(skipped),
        cleanupReportPath=str(cleanup_report_path),
    )
    context.events.info(
        "executor.lifecycle",
        "Extraction tasks completed",
        phase="end",
        totalTasks=len(report.results),
        failedTasks=len(failed),
        skippedTasks=len(skipped),
        reportPath=str(report_path),
    )

    if failed and options.mode == "fast":
        summary = "; ".join(f"{result.source_id}:{','.join(result.errors)}" for result in failed)
        raise ExtractionError(f"Extractor failed in fast mode: {summary}")
