"""End-to-end city generation runtime: options in, committed dataset out."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config.settings import HttpSettings
from core import STEP_ORDER, GenerateOptions, utcnow_iso
from intelligence.llm import BaseLLM
from orchestrator.artifacts import assert_step_inputs_available, hydrate_artifact_pointers
from orchestrator.budget import BudgetManager
from orchestrator.events import EventSink
from orchestrator.retry import CancellationToken
from orchestrator.step_runner import StepDefinition, run_step
from orchestrator.store import RunStateStore, run_state_path
from storage.json_io import write_json_atomic
from storage.paths import staging_city_dir
from utils.exceptions import PipelineError
from utils.logger import get_logger

from .context import Converter, PipelineContext, RuntimeDirs, Validator
from .steps import (
    run_convert_step,
    run_discover_step,
    run_download_step,
    run_extract_step,
    run_extraction_plan_step,
    run_select_step,
    run_validate_step,
)

logger = logging.getLogger(__name__)

EVENTS_FILE = "events.jsonl"
SUMMARY_FILE = "summary.json"
PLANNER_ONLY_TERMINAL_STEP = "extraction-plan"
EXECUTOR_ONLY_START_STEP = "extract"
CONVERTER_STEPS = ("convert", "validate")

StepFn = Callable[[PipelineContext, CancellationToken], Awaitable[None]]


@dataclass
class PipelineStep:
    name: str
    timeout_ms: int
    max_attempts: int
    run: StepFn


PIPELINE_STEPS: List[PipelineStep] = [
    PipelineStep("discover", 4 * 60_000, 3, run_discover_step),
    PipelineStep("download", 3 * 60_000, 2, run_download_step),
    PipelineStep("extraction-plan", 45_000, 2, run_extraction_plan_step),
    PipelineStep("extract", 90_000, 2, run_extract_step),
    PipelineStep("select", 90_000, 2, run_select_step),
    PipelineStep("convert", 90_000, 2, run_convert_step),
    PipelineStep("validate", 5 * 60_000, 1, run_validate_step),
]


def should_run_step(
    skip_to: Optional[str],
    stop_after: Optional[str],
    step: str,
    options: GenerateOptions,
) -> bool:
    """
    Whether ``step`` is inside the requested window.

    ``planner_only`` ends the window at extraction-plan; ``executor_only``
    starts it no earlier than extract.
    """
    skip_index = STEP_ORDER.index(skip_to) if skip_to else 0
    stop_index = STEP_ORDER.index(stop_after) if stop_after else len(STEP_ORDER) - 1
    step_index = STEP_ORDER.index(step)
    if step_index > stop_index:
        return False
    if options.planner_only:
        return skip_index <= step_index <= STEP_ORDER.index(PLANNER_ONLY_TERMINAL_STEP)
    if options.executor_only:
        return step_index >= max(skip_index, STEP_ORDER.index(EXECUTOR_ONLY_START_STEP))
    return step_index >= skip_index


def sync_staging_dir(context: PipelineContext) -> None:
    """Move staging under the dataset root once discover has fixed the city ids."""
    sources = context.store.state.sources
    if sources is None:
        return
    context.dirs.staging_dir = staging_city_dir(
        context.options.data_root,
        context.options.run_id,
        sources.prefecture_id,
        sources.city_id,
    )
    context.dirs.staging_dir.mkdir(parents=True, exist_ok=True)


def _guarded(step: PipelineStep) -> StepFn:
    async def run(context: PipelineContext, token: CancellationToken) -> None:
        assert_step_inputs_available(
            step.name,
            context.store,
            context.work_dir,
            context.dirs.staging_dir,
            context.events,
        )
        await step.run(context, token)

    return run


def build_summary(context: PipelineContext, error: Optional[BaseException] = None) -> Dict[str, Any]:
    state = context.store.state
    summary: Dict[str, Any] = {
        "run_id": context.options.run_id,
        "city": context.options.city,
        "prefecture": context.options.prefecture,
        "work_dir": str(context.work_dir),
        "finished_at": utcnow_iso(),
        "ok": error is None,
        "step_statuses": {name: step.model_dump(mode="json") for name, step in state.step_statuses.items()},
        "artifacts": state.artifacts.model_dump(mode="json"),
        "sources": state.sources.model_dump(mode="json") if state.sources else None,
        "source_manifest_path": state.source_manifest_path,
        "discover_report_path": state.discover_report_path,
        "extraction_plan_path": state.extraction_plan_path,
        "execution_report_path": state.execution_report_path,
        "selection_report_path": state.selection_report_path,
    }
    if error is not None:
        summary["error"] = {
            "code": getattr(error, "code", error.__class__.__name__),
            "message": str(error),
        }
    return summary


def _prepare_work_dir(context: PipelineContext) -> None:
    hydrate_artifact_pointers(context.store, context.work_dir, context.events)
    options = context.options
    if not should_run_step(options.skip_to, options.stop_after, "discover", options):
        context.events.info(
            "validation",
            "Discover step skipped; expecting discover artifacts in work dir",
            step="discover",
            workDir=str(context.work_dir),
        )
    download_dir = context.dirs.download_dir
    if not should_run_step(options.skip_to, options.stop_after, "download", options) and not any(
        download_dir.iterdir()
    ):
        context.events.info(
            "validation",
            "Download step skipped with empty downloads directory",
            step="download",
            workDir=str(context.work_dir),
        )
    sync_staging_dir(context)


async def generate_city(
    options: GenerateOptions,
    *,
    llm: Optional[BaseLLM] = None,
    converter: Optional[Converter] = None,
    validator: Optional[Validator] = None,
    http: Optional[HttpSettings] = None,
) -> Dict[str, Any]:
    """
    Run the city generation pipeline and return the run summary.

    ``summary.json`` is written whether the run succeeds or fails; a failed
    step's error propagates after the summary is on disk. Without a
    ``converter`` the convert and validate steps are skipped.
    """
    work_dir = Path(options.work_dir)
    work_dir.mkdir(parents=True, exist_ok=True)

    events = EventSink(
        options.run_id,
        event_file=options.event_file or work_dir / EVENTS_FILE,
        log_format=options.log_format,
        logger=get_logger("gomi_collector.events"),
    )

    state_path = run_state_path(work_dir)
    if options.resume and not state_path.exists():
        raise PipelineError(f"Resume requested but run-state not found: {state_path}", "RUN_STATE_MISSING")

    store = RunStateStore.load_or_create(options, events=events)
    store.ensure_pending_for_forced_steps(options.force_steps)
    budget = BudgetManager(options.max_total_ms, options.max_step_ms, events=events)

    if http is None:
        from config import get_http_settings

        http = get_http_settings()

    dirs = RuntimeDirs(
        download_dir=work_dir / "downloads",
        staging_dir=work_dir / "staging",
        summary_path=work_dir / SUMMARY_FILE,
    )
    dirs.download_dir.mkdir(parents=True, exist_ok=True)
    context = PipelineContext(
        options=options,
        events=events,
        store=store,
        budget=budget,
        dirs=dirs,
        http=http,
        llm=llm,
        converter=converter,
        validator=validator,
    )

    events.info(
        "summary",
        "Pipeline starting",
        city=options.city,
        prefecture=options.prefecture,
        workDir=str(work_dir),
        mode=options.mode,
        skipTo=options.skip_to,
        stopAfter=options.stop_after,
        resume=options.resume,
        maxTotalMs=options.max_total_ms,
        maxStepMs=options.max_step_ms,
        maxModelMs=options.max_model_ms,
        discoverStopMode=options.discover_stop_mode,
        selectionMode=options.selection_mode,
        cleanupMode=options.cleanup_mode,
    )

    failure: Optional[BaseException] = None
    try:
        _prepare_work_dir(context)
        for step in PIPELINE_STEPS:
            budget.enforce_total_budget(step.name)
            should_run = should_run_step(options.skip_to, options.stop_after, step.name, options)
            if step.name in CONVERTER_STEPS and converter is None:
                should_run = False
            await run_step(
                StepDefinition(step.name, step.timeout_ms, step.max_attempts, _guarded(step)),
                context,
                store,
                events,
                budget,
                should_run=should_run,
                force=step.name in options.force_steps,
            )
            if step.name == "discover":
                sync_staging_dir(context)
    except BaseException as exc:
        failure = exc
        raise
    finally:
        store.mark_finished()
        summary = build_summary(context, failure)
        write_json_atomic(dirs.summary_path, summary)
        if failure is None:
            events.info("summary", "Pipeline completed", summaryPath=str(dirs.summary_path))
        else:
            events.error(
                "summary",
                "Pipeline failed",
                summaryPath=str(dirs.summary_path),
                errorCode=getattr(failure, "code", None),
            )
            logger.debug("run %s failed: %s", options.run_id, failure)

    return summary
