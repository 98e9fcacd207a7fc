"""Select step: choose one primary source per target."""

from __future__ import annotations

from core import ExecutionReport, ExtractionPlan
from orchestrator.artifacts import EXECUTION_REPORT_FILE, EXTRACTION_PLAN_FILE
from orchestrator.retry import CancellationToken
from storage.json_io import read_json_file

from ..context import PipelineContext
from ..selection import SelectionPolicy, select_primary_sources


async def run_select_step(context: PipelineContext, token: CancellationToken) -> None:
    options = context.options
    state = context.store.state
    plan = ExtractionPlan.model_validate(
        read_json_file(state.extraction_plan_path or context.work_dir / EXTRACTION_PLAN_FILE)
    )
    report = ExecutionReport.model_validate(
        read_json_file(state.execution_report_path or context.work_dir / EXECUTION_REPORT_FILE)
    )

    context.store.set_step_message("select", "Selecting primary sources per target")
    policy = SelectionPolicy.from_options(
        options, max_model_ms=context.model_timeout_ms(options.selection_max_model_ms)
    )
    llm = context.require_llm() if policy.mode in ("hybrid", "llm-first") else None
    result = await select_primary_sources(
        plan,
        report,
        policy,
        run_id=options.run_id,
        work_dir=context.work_dir,
        llm=llm,
        events=context.events,
        token=token,
    )
    context.store.set_pointer("selection_report_path", result.report_path)
    context.store.set_step_message(
        "select",
        ", ".join(f"{target}={decision.primary_source_id}" for target, decision in result.decisions.items()),
    )
