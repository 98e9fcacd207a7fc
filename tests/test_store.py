from __future__ import annotations

from pathlib import Path

import pytest

from core import STEP_ORDER, DiscoverOutput, GenerateOptions, HttpArtifact, StepStatus
from orchestrator.store import RunStateStore, run_state_path
from storage.json_io import read_json_file
from utils.exceptions import RunStateMismatchError


def _options(work_dir: Path, **overrides) -> GenerateOptions:
    values = dict(city="川崎市", prefecture="神奈川県", run_id="run-1", work_dir=str(work_dir))
    values.update(overrides)
    return GenerateOptions(**values)


def test_new_store_starts_with_every_step_pending(work_dir: Path) -> None:
    store = RunStateStore.load_or_create(_options(work_dir))

    state = store.state
    assert run_state_path(work_dir).exists()
    assert list(state.step_statuses) == list(STEP_ORDER)
    assert all(step.status == StepStatus.PENDING for step in state.step_statuses.values())
    assert state.finished_at is None


def test_existing_state_for_another_run_is_rejected(work_dir: Path) -> None:
    RunStateStore.load_or_create(_options(work_dir))

    with pytest.raises(RunStateMismatchError):
        RunStateStore.load_or_create(_options(work_dir, city="横浜市"))
    with pytest.raises(RunStateMismatchError):
        RunStateStore.load_or_create(_options(work_dir, run_id="run-2"))


def test_attempt_history_survives_reload(work_dir: Path) -> None:
    store = RunStateStore.load_or_create(_options(work_dir))
    store.mark_step_attempt_start("discover", 1)
    store.mark_step_attempt_result("discover", 1, False, "NETWORK_ERROR", "connection reset")
    store.mark_step_attempt_start("discover", 2)
    store.mark_step_attempt_result("discover", 2, True)

    reloaded = RunStateStore.load_or_create(_options(work_dir)).step("discover")

    assert reloaded.status == StepStatus.SUCCEEDED
    assert reloaded.attempts == 2
    assert [record.status for record in reloaded.history] == ["failed", "succeeded"]
    assert reloaded.history[0].error_code == "NETWORK_ERROR"
    assert reloaded.last_error_code is None
    assert reloaded.message == "Succeeded on attempt 2"


def test_state_reads_are_copies(work_dir: Path) -> None:
    store = RunStateStore.load_or_create(_options(work_dir))

    store.state.step_statuses["discover"].status = StepStatus.FAILED
    store.step("download").attempts = 9

    assert store.step("discover").status == StepStatus.PENDING
    assert store.step("download").attempts == 0


def test_mutations_are_persisted(work_dir: Path) -> None:
    store = RunStateStore.load_or_create(_options(work_dir))
    store.add_downloaded_file("downloads/a.csv")
    store.add_downloaded_file("downloads/a.csv")
    store.add_http_artifact(HttpArtifact(step="download", url="https://example.lg.jp/a.csv", status=200, ok=True))
    store.set_sources(DiscoverOutput(city_id="kawasaki", prefecture_id="kanagawa"))
    store.set_pointer("discover_report_path", "discover-report.json")
    store.mark_step_status("convert", StepStatus.SKIPPED)
    store.mark_finished()

    raw = read_json_file(run_state_path(work_dir))

    assert raw["artifacts"]["downloaded_files"] == ["downloads/a.csv"]
    assert raw["artifacts"]["http"][0]["status"] == 200
    assert raw["sources"]["city_id"] == "kawasaki"
    assert raw["discover_report_path"] == "discover-report.json"
    assert raw["step_statuses"]["convert"]["status"] == "skipped"
    assert raw["step_statuses"]["convert"]["message"] == "Skipped"
    assert raw["finished_at"]


def test_unknown_pointer_is_refused(work_dir: Path) -> None:
    store = RunStateStore.load_or_create(_options(work_dir))
    with pytest.raises(KeyError):
        store.set_pointer("summary_path", "x.json")


def test_forced_steps_return_to_pending(work_dir: Path) -> None:
    store = RunStateStore.load_or_create(_options(work_dir))
    store.mark_step_attempt_start("discover", 1)
    store.mark_step_attempt_result("discover", 1, True)

    store.ensure_pending_for_forced_steps(["discover"])

    assert store.step("discover").status == StepStatus.PENDING
    assert store.step("discover").attempts == 1
