from __future__ import annotations

from pathlib import Path

import pytest

from core import DiscoverOutput, GenerateOptions
from orchestrator.artifacts import (
    EXECUTION_REPORT_FILE,
    EXTRACTION_PLAN_FILE,
    SOURCE_MANIFEST_FILE,
    assert_step_inputs_available,
    hydrate_artifact_pointers,
)
from orchestrator.store import RunStateStore
from utils.exceptions import PipelineError


def _store(work_dir: Path, with_sources: bool = True) -> RunStateStore:
    store = RunStateStore.load_or_create(
        GenerateOptions(city="川崎市", prefecture="神奈川県", run_id="run-1", work_dir=str(work_dir))
    )
    if with_sources:
        store.set_sources(DiscoverOutput(city_id="kawasaki", prefecture_id="kanagawa"))
    return store


def test_discover_has_no_preconditions(work_dir: Path) -> None:
    assert_step_inputs_available("discover", _store(work_dir, with_sources=False), work_dir, work_dir / "staging")


def test_later_steps_need_discover_output(work_dir: Path) -> None:
    store = _store(work_dir, with_sources=False)

    with pytest.raises(PipelineError) as excinfo:
        assert_step_inputs_available("download", store, work_dir, work_dir / "staging")

    assert excinfo.value.code == "MISSING_ARTIFACT"
    assert "discover output" in excinfo.value.message


def test_missing_plan_names_producer_step(work_dir: Path) -> None:
    store = _store(work_dir)

    with pytest.raises(PipelineError) as excinfo:
        assert_step_inputs_available("extract", store, work_dir, work_dir / "staging")

    assert excinfo.value.code == "MISSING_ARTIFACT"
    assert 'produced by "extraction-plan"' in excinfo.value.message
    assert "skip_to=extract" in excinfo.value.message


def test_canonical_files_satisfy_and_hydrate_pointers(work_dir: Path) -> None:
    store = _store(work_dir)
    (work_dir / EXTRACTION_PLAN_FILE).write_text("{}", encoding="utf-8")
    (work_dir / EXECUTION_REPORT_FILE).write_text("{}", encoding="utf-8")

    assert_step_inputs_available("select", store, work_dir, work_dir / "staging")

    state = store.state
    assert state.extraction_plan_path == str(work_dir / EXTRACTION_PLAN_FILE)
    assert state.execution_report_path == str(work_dir / EXECUTION_REPORT_FILE)


def test_hydrate_points_at_existing_artifacts_only(work_dir: Path) -> None:
    store = _store(work_dir)
    (work_dir / SOURCE_MANIFEST_FILE).write_text("{}", encoding="utf-8")

    hydrate_artifact_pointers(store, work_dir)

    state = store.state
    assert state.source_manifest_path == str(work_dir / SOURCE_MANIFEST_FILE)
    assert state.extraction_plan_path is None


def test_validate_needs_both_staged_files(work_dir: Path) -> None:
    store = _store(work_dir)
    staging = work_dir / "staging"
    staging.mkdir()
    (staging / "schedule.json").write_text("{}", encoding="utf-8")

    with pytest.raises(PipelineError) as excinfo:
        assert_step_inputs_available("validate", store, work_dir, staging)
    assert "staged separation output" in excinfo.value.message

    (staging / "separation.json").write_text("{}", encoding="utf-8")
    assert_step_inputs_available("validate", store, work_dir, staging)
