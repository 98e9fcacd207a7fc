from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import FakeLLM
from core import (
    CleanupMetrics,
    ExecutionReport,
    ExecutorResult,
    ExtractionPlan,
    SourceCandidate,
    SourceDescriptor,
    SourceQualityScore,
)
from pipeline.selection import (
    DETERMINISTIC_REASON,
    SelectionPolicy,
    choose_target_primary,
    collect_candidates,
    select_primary_sources,
)
from storage.json_io import read_json_file, write_ndjson_atomic
from utils.exceptions import PipelineError


def _features(**overrides) -> SourceQualityScore:
    values = dict(
        officialness=1.0,
        parse_success=1.0,
        schema_coverage=0.9,
        noise_penalty=0.0,
        cleanup_pass_rate=1.0,
        noise_ratio=0.0,
        schema_signal_rate=1.0,
        required_field_coverage=1.0,
        freshness=0.7,
        latency_cost=1.0,
        completeness=1.0,
        confidence=0.9,
    )
    values.update(overrides)
    return SourceQualityScore(**values)


def _candidate(source_id: str, score: float, target: str = "schedule", **features) -> SourceCandidate:
    quality = _features(**features)
    return SourceCandidate(
        source_id=source_id,
        source_type="csv",
        target=target,
        score=score,
        features=quality,
        records=10,
        confidence=quality.confidence,
    )


@pytest.mark.asyncio
async def test_deterministic_mode_takes_highest_score() -> None:
    llm = FakeLLM(["{}"])
    candidates = [_candidate("a", 0.5), _candidate("b", 0.9), _candidate("c", 0.7)]

    decision = await choose_target_primary(
        "schedule", candidates, SelectionPolicy(mode="deterministic"), llm=llm
    )

    assert decision.primary_source_id == "b"
    assert decision.secondary_source_ids == ["c", "a"]
    assert decision.reason == DETERMINISTIC_REASON
    assert decision.vetoed is False
    assert decision.quality_gate_snapshot.min_pass_rate == 0.9
    assert llm.calls == []


@pytest.mark.asyncio
async def test_model_choice_is_accepted_when_it_names_listed_ids() -> None:
    reply = json.dumps({"primary_source_id": "a", "secondary_source_ids": ["b", "zzz", "a"], "reason": "cleaner table"})
    llm = FakeLLM([reply])

    decision = await choose_target_primary(
        "schedule", [_candidate("a", 0.5), _candidate("b", 0.9)], SelectionPolicy(mode="hybrid"), llm=llm
    )

    assert decision.primary_source_id == "a"
    assert decision.secondary_source_ids == ["b"]
    assert decision.reason == "cleaner table"
    assert decision.llm_decision_trace_id.startswith("selection-schedule-")


@pytest.mark.asyncio
async def test_model_choice_outside_top_k_falls_back() -> None:
    llm = FakeLLM([json.dumps({"primary_source_id": "c"})])
    candidates = [_candidate("a", 0.9), _candidate("b", 0.8), _candidate("c", 0.1)]

    decision = await choose_target_primary(
        "schedule", candidates, SelectionPolicy(mode="llm-first", top_k=2), llm=llm
    )

    prompt = llm.calls[0][0].content
    assert "source_id=c" not in prompt
    assert decision.primary_source_id == "a"
    assert decision.reason == DETERMINISTIC_REASON


@pytest.mark.asyncio
async def test_model_failure_falls_back_to_ranking() -> None:
    llm = FakeLLM([RuntimeError("rate limited")])

    decision = await choose_target_primary(
        "separation",
        [_candidate("a", 0.4, "separation"), _candidate("b", 0.6, "separation")],
        SelectionPolicy(mode="hybrid"),
        llm=llm,
    )

    assert decision.primary_source_id == "b"
    assert decision.llm_decision_trace_id is None


@pytest.mark.asyncio
async def test_preflight_veto_moves_to_next_candidate() -> None:
    candidates = [_candidate("noisy", 0.9, noise_penalty=0.9), _candidate("clean", 0.6)]

    decision = await choose_target_primary("schedule", candidates, SelectionPolicy(mode="deterministic"))

    assert decision.primary_source_id == "clean"
    assert decision.vetoed is True
    assert decision.veto_reasons == ["post-rank gate failed for noisy"]
    assert decision.secondary_source_ids == []


@pytest.mark.asyncio
async def test_no_candidates_and_all_vetoed_raise() -> None:
    policy = SelectionPolicy(mode="deterministic")

    with pytest.raises(PipelineError) as empty:
        await choose_target_primary("schedule", [], policy)
    assert empty.value.code == "NO_SOURCE_CANDIDATE"

    with pytest.raises(PipelineError) as vetoed:
        await choose_target_primary("schedule", [_candidate("a", 0.9, confidence=0.1)], policy)
    assert vetoed.value.code == "NO_VALID_SOURCE_AFTER_VETO"


def _result(tmp_path: Path, source_id: str, target: str, **features) -> ExecutorResult:
    clean_path = tmp_path / "artifacts" / source_id / target / "clean.ndjson"
    write_ndjson_atomic(clean_path, [{"id": f"{source_id}:1", "text": "可燃ごみ 月曜日", "confidence": 0.8}])
    quality = _features(**features)
    return ExecutorResult(
        task_id=f"task-{target}-{source_id}",
        source_id=source_id,
        executor_type="csv",
        target=target,
        status="succeeded",
        records_extracted=5,
        confidence=quality.confidence,
        source_quality=quality,
        output_path=str(clean_path),
        clean_path=str(clean_path),
        cleanup_applied=True,
        cleanup_status="applied",
        cleanup_metrics=CleanupMetrics(source_id=source_id, source_type="csv", target=target),
    )


def _plan_and_report(tmp_path: Path):
    plan = ExtractionPlan(
        run_id="run-1",
        sources=[
            SourceDescriptor(id=source_id, type="csv", url=f"https://example.lg.jp/{source_id}.csv", local_path="x")
            for source_id in ("sched", "sep", "dirty")
        ],
    )
    report = ExecutionReport(
        run_id="run-1",
        started_at="2026-10-19T00:00:00+00:00",
        finished_at="2026-10-19T00:00:01+00:00",
        results=[
            _result(tmp_path, "sched", "schedule"),
            _result(tmp_path, "sep", "separation"),
            _result(tmp_path, "dirty", "schedule", cleanup_pass_rate=0.4),
        ],
    )
    return plan, report


def test_collect_candidates_gates_and_writes_evidence(tmp_path: Path) -> None:
    plan, report = _plan_and_report(tmp_path)

    candidates = collect_candidates(plan, report, SelectionPolicy(), work_dir=tmp_path)

    assert [item.source_id for item in candidates["schedule"]] == ["sched"]
    assert [item.source_id for item in candidates["separation"]] == ["sep"]
    evidence = read_json_file(candidates["schedule"][0].sample_evidence_path)
    assert evidence["source_id"] == "sched"
    assert "可燃ごみ 月曜日" in evidence["sample"]
    assert "source:csv" in candidates["schedule"][0].tags


@pytest.mark.asyncio
async def test_targets_are_selected_independently(tmp_path: Path) -> None:
    plan, report = _plan_and_report(tmp_path)

    result = await select_primary_sources(
        plan, report, SelectionPolicy(mode="deterministic"), run_id="run-1", work_dir=tmp_path
    )

    assert result.decisions["schedule"].primary_source_id == "sched"
    assert result.decisions["separation"].primary_source_id == "sep"
    written = read_json_file(result.report_path)
    assert written["decisions"]["separation"]["primary_source_id"] == "sep"
    assert written["mode"] == "deterministic"
