"""Convert step: hand the selection report to the injected converter."""

from __future__ import annotations

from orchestrator.artifacts import SELECTION_REPORT_FILE
from orchestrator.retry import CancellationToken
from storage.json_io import read_json_file
from utils.exceptions import PipelineError

from ..context import PipelineContext


async def run_convert_step(context: PipelineContext, token: CancellationToken) -> None:
    if context.converter is None:
        raise PipelineError("No converter configured for convert step", "CONVERTER_MISSING")

    state = context.store.state
    selection_report = read_json_file(state.selection_report_path or context.work_dir / SELECTION_REPORT_FILE)
    context.dirs.staging_dir.mkdir(parents=True, exist_ok=True)
    context.store.set_step_message("convert", "Converting selected records into canonical outputs")
    token.raise_if_cancelled()
    staged = await context.converter(context, selection_report)
    context.events.info(
        "convert",
        "Staged converted outputs",
        stagingDir=str(context.dirs.staging_dir),
        files=[str(path) for path in staged],
    )
