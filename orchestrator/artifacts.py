"""Artifact pointer hydration and per-step input preconditions."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from utils.exceptions import PipelineError

from .events import EventSink
from .store import RunStateStore

SOURCE_MANIFEST_FILE = "source-manifest.json"
DISCOVER_REPORT_FILE = "discover-report.json"
EXTRACTION_PLAN_FILE = "extraction-plan.json"
EXECUTION_REPORT_FILE = "execution-report.json"
SELECTION_REPORT_FILE = "selection-report.json"

_POINTER_FILES = {
    "source_manifest_path": SOURCE_MANIFEST_FILE,
    "discover_report_path": DISCOVER_REPORT_FILE,
    "extraction_plan_path": EXTRACTION_PLAN_FILE,
    "execution_report_path": EXECUTION_REPORT_FILE,
    "selection_report_path": SELECTION_REPORT_FILE,
}


@dataclass
class ArtifactRequirement:
    label: str
    producer_step: str
    canonical_path: Path
    pointer: Optional[str] = None


def _resolve_pointer(store: RunStateStore, pointer: str, canonical: Path) -> Optional[str]:
    pointed = getattr(store.state, pointer)
    if pointed and Path(pointed).exists():
        return pointed
    if canonical.exists():
        store.set_pointer(pointer, str(canonical))
        return str(canonical)
    return None


def hydrate_artifact_pointers(store: RunStateStore, work_dir: str | Path, events: Optional[EventSink] = None) -> None:
    """Point run-state at artifacts already present in ``work_dir`` (used on resume)."""
    for pointer, filename in _POINTER_FILES.items():
        resolved = _resolve_pointer(store, pointer, Path(work_dir) / filename)
        if resolved and events is not None:
            events.info("validation", "Using artifact", step="system", artifact=filename, path=resolved)


def missing_artifact_error(step: str, missing: str, producer_step: str, details: str) -> PipelineError:
    return PipelineError(
        f'Missing required artifact for step "{step}": {missing} ({details}). '
        f'This is produced by "{producer_step}". '
        f"If you used skip_to={step}, run from an earlier step with the same work dir or drop skip_to.",
        "MISSING_ARTIFACT",
        False,
    )


def _requirements(step: str, work_dir: Path, staging_dir: Path) -> List[ArtifactRequirement]:
    plan = ArtifactRequirement("extraction plan", "extraction-plan", work_dir / EXTRACTION_PLAN_FILE, "extraction_plan_path")
    report = ArtifactRequirement("execution report", "extract", work_dir / EXECUTION_REPORT_FILE, "execution_report_path")
    if step == "extraction-plan":
        return [ArtifactRequirement("source manifest", "download", work_dir / SOURCE_MANIFEST_FILE, "source_manifest_path")]
    if step == "extract":
        return [plan]
    if step == "select":
        return [plan, report]
    if step == "convert":
        return [
            plan,
            report,
            ArtifactRequirement("selection report", "select", work_dir / SELECTION_REPORT_FILE, "selection_report_path"),
        ]
    if step == "validate":
        return [
            ArtifactRequirement("staged schedule output", "convert", staging_dir / "schedule.json"),
            ArtifactRequirement("staged separation output", "convert", staging_dir / "separation.json"),
        ]
    return []


def assert_step_inputs_available(
    step: str,
    store: RunStateStore,
    work_dir: str | Path,
    staging_dir: str | Path,
    events: Optional[EventSink] = None,
) -> None:
    """Raise ``MISSING_ARTIFACT`` unless everything ``step`` reads exists."""
    if step == "discover":
        return
    if store.state.sources is None:
        raise missing_artifact_error(step, "discover output", "discover", "run-state.sources is not set")

    for requirement in _requirements(step, Path(work_dir), Path(staging_dir)):
        resolved: Optional[str] = None
        if requirement.pointer:
            resolved = _resolve_pointer(store, requirement.pointer, requirement.canonical_path)
        elif requirement.canonical_path.exists():
            resolved = str(requirement.canonical_path)
        if resolved is None:
            raise missing_artifact_error(
                step, requirement.label, requirement.producer_step, str(requirement.canonical_path)
            )
        if events is not None:
            events.info("validation", "Using artifact", artifact=requirement.label, path=resolved)
