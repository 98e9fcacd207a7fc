"""Validate step: check staged output, commit it and register the city."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from core import CityEntry
from orchestrator.retry import CancellationToken
from storage.commit import STAGED_FILES, commit_staged_city_data, update_cities_json_atomic
from storage.json_io import read_json_file
from storage.paths import city_output_dir
from utils.exceptions import ValidationFailure

from ..context import PipelineContext
from .extract import CLEANUP_REPORT_FILE


def summarize_cleanup_diagnosis(work_dir: str | Path) -> Optional[str]:
    """One line naming the vetoed source/targets, or ``None`` when cleanup vetoed nothing."""
    path = Path(work_dir) / CLEANUP_REPORT_FILE
    if not path.exists():
        return None
    sources = read_json_file(path).get("sources") or []
    vetoed = [entry for entry in sources if (entry.get("metrics") or {}).get("veto_reasons")]
    if not vetoed:
        return None
    first = vetoed[0]
    reason = first["metrics"]["veto_reasons"][0]
    return f"{len(vetoed)} vetoed source-target(s), first={first.get('source_id')}/{first.get('target')}:{reason}"


async def run_validate_step(context: PipelineContext, token: CancellationToken) -> None:
    options = context.options
    store = context.store
    sources = store.state.sources
    if sources is None:
        raise ValidationFailure("Discover sources missing before validate step")

    staging_dir = context.dirs.staging_dir
    final_dir = city_output_dir(options.data_root, sources.prefecture_id, sources.city_id)
    staged_files = [str(staging_dir / name) for name in STAGED_FILES]

    store.set_step_message("validate", "Validating staged outputs")
    if context.validator is not None:
        try:
            await context.validator(context, staged_files)
        except ValidationFailure as exc:
            diagnosis = summarize_cleanup_diagnosis(context.work_dir)
            context.events.error(
                "validation",
                "Validation failed",
                phase="fail",
                errorCode=exc.code,
                cleanupDiagnosis=diagnosis,
            )
            if diagnosis:
                raise ValidationFailure(f"{exc.message}; cleanup={diagnosis}", cause=exc) from exc
            raise
    context.events.info("validation", "Validation passed")

    token.raise_if_cancelled()
    store.set_step_message("validate", f"Committing staged files to {final_dir}")
    for path in commit_staged_city_data(staging_dir, final_dir):
        store.add_output_path(path)

    store.set_step_message("validate", "Updating cities.json")
    await update_cities_json_atomic(
        options.data_root,
        CityEntry(
            id=f"{sources.prefecture_id}/{sources.city_id}",
            name_ja=options.city,
            prefecture_ja=options.prefecture,
            source_url=sources.official_url or options.url or "",
            data_path=f"jp/{sources.prefecture_id}/{sources.city_id}",
            last_verified=datetime.now(timezone.utc).date().isoformat(),
        ),
    )
    context.events.info("validation", "Updated cities.json and committed city data", finalDir=str(final_dir))
