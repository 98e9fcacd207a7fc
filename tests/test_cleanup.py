from __future__ import annotations

import json

import pytest

from conftest import FakeLLM
from core import CleanupResultRecord
from executors.types import ExecutorOutput, RawRecord
from pipeline.cleanup import (
    CleanupDecision,
    CleanupInput,
    apply_model_decisions,
    canonicalize_text,
    chunk_by_bytes,
    evaluate_cleanup_gate,
    run_cleanup_phase,
)


def _result(record_id: str, action: str, text: str) -> CleanupResultRecord:
    return CleanupResultRecord(
        id=record_id,
        source_id="src",
        source_type="html",
        target="schedule",
        source_record_index=0,
        action=action,
        text=text,
        confidence=0.8,
    )


def _output(lines, source_type: str = "csv") -> ExecutorOutput:
    return ExecutorOutput(
        target="schedule",
        source_type=source_type,
        source_path=f"/tmp/source.{source_type}",
        preview="",
        records=[RawRecord(fields={"line": line}) for line in lines],
    )


@pytest.mark.parametrize(
    "text,expected",
    [
        ("1. 2. 可燃ごみ", "可燃ごみ"),
        ("＊ 資源ごみ", "資源ごみ"),
        ("##  3: 粗大ごみ", "粗大ごみ"),
        ("　不燃ごみ　 第２水曜日 ", "不燃ごみ 第2水曜日"),
        ("可燃ごみ 毎週月曜日", "可燃ごみ 毎週月曜日"),
    ],
)
def test_canonicalize_text_strips_prefixes(text: str, expected: str) -> None:
    assert canonicalize_text(text) == expected


@pytest.mark.parametrize("text", ["1. 2. 可燃ごみ", "## 3: 粗大ごみ", "- 4 - 有害ごみ", "１２３", "", "  "])
def test_canonicalize_text_is_idempotent(text: str) -> None:
    once = canonicalize_text(text)
    assert canonicalize_text(once) == once


def test_model_decisions_only_move_forward() -> None:
    records = [
        _result("a", "keep", "可燃ごみ 月曜日"),
        _result("b", "drop", "ホーム"),
        _result("c", "keep", "お知らせ"),
        _result("d", "keep", "1. 燃えるごみ"),
    ]
    decisions = [
        CleanupDecision(id="a", action="drop", reason_tags=["menu"]),
        CleanupDecision(id="b", action="keep"),
        CleanupDecision(id="c", action="rename", normalized_text="   "),
        CleanupDecision(id="d", action="rename", normalized_text="1. 燃えるごみ 火曜日"),
    ]

    merged = {record.id: record for record in apply_model_decisions(records, decisions)}

    assert merged["a"].action == "drop"
    assert "menu" in merged["a"].reason_tags
    assert merged["b"].action == "drop"
    assert merged["c"].action == "drop"
    assert "empty-rename" in merged["c"].reason_tags
    assert merged["d"].action == "rename"
    assert merged["d"].text == "燃えるごみ 火曜日"
    assert merged["d"].normalized_fields["line"] == "燃えるごみ 火曜日"
    # inputs are not mutated
    assert records[0].action == "keep"


def test_chunk_by_bytes_never_splits_a_single_record() -> None:
    records = [_result(str(index), "keep", "ごみ" * 30) for index in range(5)]

    chunks = chunk_by_bytes(records, max_chunk_bytes=10)

    assert len(chunks) == 5
    assert all(len(chunk) == 1 for chunk in chunks)
    assert sum(len(chunk) for chunk in chunk_by_bytes(records, max_chunk_bytes=10_000)) == 5


def test_cleanup_gate_reasons() -> None:
    assert (
        evaluate_cleanup_gate(
            pass_rate=1.0,
            noise_ratio=0.0,
            schema_signal_rate=0.5,
            clean_count=3,
            target="schedule",
            min_pass_rate=0.9,
            max_noise_ratio=0.08,
        )
        == []
    )

    reasons = evaluate_cleanup_gate(
        pass_rate=0.5,
        noise_ratio=0.2,
        schema_signal_rate=0.1,
        clean_count=0,
        target="separation",
        min_pass_rate=0.9,
        max_noise_ratio=0.08,
    )
    assert reasons == [
        "no-clean-records",
        "pass-rate-below-threshold:0.500<0.9",
        "noise-ratio-above-threshold:0.200>0.08",
        "schema-signal-below-threshold:0.100<0.2",
    ]


@pytest.mark.parametrize("pass_rate", [0.0, 0.85, 0.9, 1.0])
@pytest.mark.parametrize("noise_ratio", [0.0, 0.08, 0.3])
@pytest.mark.parametrize("signal", [0.0, 0.18, 0.6])
def test_cleanup_gate_passes_only_when_every_threshold_holds(pass_rate: float, noise_ratio: float, signal: float) -> None:
    reasons = evaluate_cleanup_gate(
        pass_rate=pass_rate,
        noise_ratio=noise_ratio,
        schema_signal_rate=signal,
        clean_count=4,
        target="schedule",
        min_pass_rate=0.9,
        max_noise_ratio=0.08,
    )
    expected_pass = pass_rate >= 0.9 and noise_ratio <= 0.08 and signal >= 0.18
    assert (reasons == []) is expected_pass


@pytest.mark.asyncio
async def test_deterministic_cleanup_keeps_schedule_lines() -> None:
    output = _output(["可燃ごみ 毎週月曜日・木曜日", "1. 不燃ごみ 第2水曜日", "資源ごみ 毎週金曜日"])

    outcome = await run_cleanup_phase(
        CleanupInput(source_id="src", source_type="csv", target="schedule", output=output, mode="deterministic")
    )

    assert outcome.status == "applied"
    assert outcome.metrics.clean_count == 3
    assert outcome.metrics.pass_rate == 1.0
    assert outcome.metrics.noise_ratio == 0.0
    assert outcome.metrics.veto_reasons == []
    assert [record.text for record in outcome.clean_records][1] == "不燃ごみ 第2水曜日"
    assert outcome.clean_records[1].action == "rename"
    assert outcome.clean_records[0].id == "src:schedule:1"


@pytest.mark.asyncio
async def test_noisy_source_is_vetoed_by_gate() -> None:
    output = _output(["可燃ごみ 毎週月曜日", "ホーム", "サイトマップ", "不燃ごみ 第2水曜日", "資源ごみ 毎週金曜日"])

    outcome = await run_cleanup_phase(
        CleanupInput(source_id="src", source_type="csv", target="schedule", output=output, mode="deterministic")
    )

    assert outcome.metrics.deterministic_drops == 2
    assert outcome.metrics.clean_count == 3
    assert any(reason.startswith("pass-rate-below-threshold") for reason in outcome.metrics.veto_reasons)
    assert any(reason.startswith("noise-ratio-above-threshold") for reason in outcome.metrics.veto_reasons)


@pytest.mark.asyncio
async def test_empty_output_fails_cleanup() -> None:
    outcome = await run_cleanup_phase(
        CleanupInput(source_id="src", source_type="pdf", target="schedule", output=_output([], "pdf"))
    )

    assert outcome.status == "failed"
    assert outcome.reason == "no candidate records after canonicalization"
    assert "no-clean-records" in outcome.metrics.veto_reasons


@pytest.mark.asyncio
async def test_hybrid_cleanup_sends_only_ambiguous_records_to_model() -> None:
    reply = json.dumps(
        {"decisions": [{"id": "src:schedule:2", "action": "drop", "confidence": 0.9, "reason_tags": ["header"]}]}
    )
    llm = FakeLLM([reply])
    output = _output(["可燃ごみ 毎週月曜日", "お知らせ 令和6年度版"], "html")

    outcome = await run_cleanup_phase(
        CleanupInput(source_id="src", source_type="html", target="schedule", output=output, mode="hybrid", llm=llm)
    )

    assert len(llm.calls) == 1
    prompt = llm.calls[0][0].content
    assert "src:schedule:2" in prompt
    assert "src:schedule:1\t" not in prompt
    assert outcome.status == "applied"
    assert outcome.metrics.llm_chunks == 1
    assert [record.id for record in outcome.clean_records] == ["src:schedule:1"]


@pytest.mark.asyncio
async def test_failed_model_chunk_degrades_to_deterministic_result() -> None:
    llm = FakeLLM([RuntimeError("provider unavailable")])
    output = _output(["可燃ごみ 毎週月曜日", "お知らせ 令和6年度版"], "html")

    outcome = await run_cleanup_phase(
        CleanupInput(source_id="src", source_type="html", target="schedule", output=output, mode="hybrid", llm=llm)
    )

    assert outcome.status == "degraded"
    assert outcome.metrics.degraded is True
    assert outcome.metrics.fallback_chunks == 1
    assert outcome.metrics.clean_count == 2


@pytest.mark.asyncio
async def test_machine_readable_sources_skip_model_review() -> None:
    llm = FakeLLM(["{}"])
    output = _output(["お知らせ 令和6年度版", "可燃ごみ 毎週月曜日"], "csv")

    outcome = await run_cleanup_phase(
        CleanupInput(source_id="src", source_type="csv", target="schedule", output=output, mode="hybrid", llm=llm)
    )

    assert llm.calls == []
    assert outcome.metrics.chunks_processed == 0
