from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import List

import pytest

from core import GenerateOptions, StepStatus
from orchestrator.budget import BudgetManager
from orchestrator.events import EventSink
from orchestrator.retry import CancellationToken
from orchestrator.step_runner import StepDefinition, run_step
from orchestrator.store import RunStateStore
from utils.exceptions import ExtractionError, PipelineError, StepTimeoutError


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("orchestrator.retry.calculate_backoff_ms", lambda *args, **kwargs: 0)


def _runtime(work_dir: Path, max_total_ms: int = 60_000):
    events = EventSink("run-1", event_file=work_dir / "events.jsonl")
    options = GenerateOptions(city="川崎市", prefecture="神奈川県", run_id="run-1", work_dir=str(work_dir))
    store = RunStateStore.load_or_create(options, events=events)
    budget = BudgetManager(max_total_ms, 60_000, events=events)
    return store, events, budget


@pytest.mark.asyncio
async def test_retryable_failure_then_success(work_dir: Path) -> None:
    store, events, budget = _runtime(work_dir)
    calls: List[int] = []

    async def flaky(context, token: CancellationToken) -> None:
        calls.append(len(calls) + 1)
        if len(calls) < 3:
            raise ValueError("transient")

    await run_step(StepDefinition("download", 5_000, 3, flaky), None, store, events, budget)

    state = store.step("download")
    assert calls == [1, 2, 3]
    assert state.status == StepStatus.SUCCEEDED
    assert state.attempts == 3
    assert [record.status for record in state.history] == ["failed", "failed", "succeeded"]
    assert state.history[0].error_code == "STEP_ERROR"


@pytest.mark.asyncio
async def test_non_retryable_failure_stops_immediately(work_dir: Path) -> None:
    store, events, budget = _runtime(work_dir)
    calls: List[int] = []

    async def broken(context, token: CancellationToken) -> None:
        calls.append(1)
        raise ExtractionError("bad payload", retryable=False)

    with pytest.raises(ExtractionError):
        await run_step(StepDefinition("extract", 5_000, 3, broken), None, store, events, budget)

    state = store.step("extract")
    assert len(calls) == 1
    assert state.status == StepStatus.FAILED
    assert state.last_error_code == "EXTRACTION_ERROR"


@pytest.mark.asyncio
async def test_attempt_timeout_cancels_token(work_dir: Path) -> None:
    store, events, budget = _runtime(work_dir)
    tokens: List[CancellationToken] = []

    async def slow(context, token: CancellationToken) -> None:
        tokens.append(token)
        await asyncio.sleep(5)

    with pytest.raises(StepTimeoutError) as excinfo:
        await run_step(StepDefinition("select", 50, 1, slow), None, store, events, budget)

    assert excinfo.value.code == "STEP_TIMEOUT"
    assert tokens[0].cancelled is True
    assert store.step("select").last_error_code == "STEP_TIMEOUT"


@pytest.mark.asyncio
async def test_skipped_and_succeeded_steps_do_not_run(work_dir: Path) -> None:
    store, events, budget = _runtime(work_dir)
    calls: List[str] = []

    async def record(context, token: CancellationToken) -> None:
        calls.append("run")

    await run_step(StepDefinition("convert", 5_000, 1, record), None, store, events, budget, should_run=False)
    assert store.step("convert").status == StepStatus.SKIPPED

    await run_step(StepDefinition("discover", 5_000, 1, record), None, store, events, budget)
    await run_step(StepDefinition("discover", 5_000, 1, record), None, store, events, budget)
    assert calls == ["run"]

    await run_step(StepDefinition("discover", 5_000, 1, record), None, store, events, budget, force=True)
    assert calls == ["run", "run"]
    assert [record.attempt for record in store.step("discover").history] == [1, 2]


@pytest.mark.asyncio
async def test_exhausted_budget_fails_before_running(work_dir: Path) -> None:
    store, events, budget = _runtime(work_dir, max_total_ms=0)

    async def never(context, token: CancellationToken) -> None:
        raise AssertionError("must not run")

    with pytest.raises(PipelineError) as excinfo:
        await run_step(StepDefinition("discover", 5_000, 2, never), None, store, events, budget)

    assert excinfo.value.code == "BUDGET_EXCEEDED"
    assert store.step("discover").attempts == 0


@pytest.mark.asyncio
async def test_backoff_never_outlasts_the_run_budget(work_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("orchestrator.retry.calculate_backoff_ms", lambda *args, **kwargs: 60_000)
    store, events, budget = _runtime(work_dir, max_total_ms=300)

    async def flaky(context, token: CancellationToken) -> None:
        raise ValueError("transient")

    started = time.monotonic()
    with pytest.raises(PipelineError):
        await run_step(StepDefinition("download", 5_000, 2, flaky), None, store, events, budget)

    assert time.monotonic() - started < 5
    lines = (work_dir / "events.jsonl").read_text(encoding="utf-8").splitlines()
    retries = [json.loads(line) for line in lines if '"step.retry"' in line]
    assert len(retries) == 1
    assert retries[0]["backoffMs"] <= 300
