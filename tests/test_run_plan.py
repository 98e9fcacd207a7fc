from __future__ import annotations

from pathlib import Path
from typing import List

import pytest

from core import DiscoverOutput, ExtractionPlan, GenerateOptions, SourceManifestEntry, TargetSelection
from executors import RunPlanSettings, run_extraction_plan
from planner import build_extraction_plan
from storage.json_io import read_ndjson_file
from utils.exceptions import PipelineError

BASE_URL = "https://www.city.example.lg.jp/gomi"
SCHEDULE_CSV = "地区,曜日,分類\n川崎区,月・木,可燃ごみ\n幸区,火・金,可燃ごみ\n"
NOISY_SEPARATION_CSV = "品目,出し方\nトップページ,戻る\nホーム,メニュー\n空き缶,資源ごみ\n"
LINKING_PAGE = """
<html><body><div id="contents-detail">
  <p>可燃ごみの収集日は地区ごとに異なります</p>
  <a href="/gomi/schedule.csv">収集日 CSV</a>
</div></body></html>
"""


def _source(tmp_path: Path, source_id: str, filename: str, content: str, target: str) -> SourceManifestEntry:
    path = tmp_path / "downloads" / filename
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return SourceManifestEntry(
        source_id=source_id,
        url=f"{BASE_URL}/{filename}",
        type="html" if filename.endswith(".html") else "csv",
        target_hints=[target],
        local_path=str(path),
        status="downloaded",
    )


def _plan(manifest: List[SourceManifestEntry]) -> ExtractionPlan:
    schedule = [entry.source_id for entry in manifest if "schedule" in entry.target_hints]
    separation = [entry.source_id for entry in manifest if "separation" in entry.target_hints]
    discover = DiscoverOutput(
        city_id="kawasaki",
        prefecture_id="kanagawa",
        selected=TargetSelection(schedule=schedule, separation=separation),
    )
    return build_extraction_plan(run_id="run-1", discover=discover, source_manifest=manifest, max_step_ms=60_000)


def _two_source_plan(tmp_path: Path) -> ExtractionPlan:
    return _plan(
        [
            _source(tmp_path, "src-sched", "schedule.csv", SCHEDULE_CSV, "schedule"),
            _source(tmp_path, "src-sep", "bunbetsu.csv", NOISY_SEPARATION_CSV, "separation"),
        ]
    )


def test_settings_follow_options() -> None:
    options = GenerateOptions(
        city="川崎市",
        prefecture="神奈川県",
        cleanup_mode="deterministic",
        html_cleanup_failure_policy="raw-fallback",
        html_link_types=["csv"],
    )

    settings = RunPlanSettings.from_options(options, max_model_ms=1_234)

    assert settings.cleanup_mode == "deterministic"
    assert settings.failure_policy == "raw-fallback"
    assert settings.cleanup_max_model_ms == 1_234
    assert settings.link_types == {"csv"}


@pytest.mark.asyncio
async def test_skip_source_policy_keeps_clean_sources(tmp_path: Path) -> None:
    artifacts = tmp_path / "artifacts"

    report = await run_extraction_plan(
        _two_source_plan(tmp_path),
        artifacts_dir=artifacts,
        settings=RunPlanSettings(cleanup_mode="deterministic"),
    )

    by_source = {result.source_id: result for result in report.results}
    schedule = by_source["src-sched"]
    separation = by_source["src-sep"]

    assert schedule.status == "succeeded"
    assert schedule.records_extracted == 2
    assert schedule.cleanup_status == "applied"
    assert 0.0 < schedule.confidence <= 1.0
    assert (artifacts / "src-sched" / "schedule" / "raw.ndjson").exists()
    assert len(read_ndjson_file(schedule.clean_path)) == 2

    assert separation.status == "skipped"
    assert separation.cleanup_status == "failed"
    assert "pass-rate-below-threshold" in separation.skip_reason
    assert len(report.cleanup_report) == 2


@pytest.mark.asyncio
async def test_fail_run_policy_aborts(tmp_path: Path) -> None:
    with pytest.raises(PipelineError) as excinfo:
        await run_extraction_plan(
            _two_source_plan(tmp_path),
            artifacts_dir=tmp_path / "artifacts",
            settings=RunPlanSettings(cleanup_mode="deterministic", failure_policy="fail-run"),
        )

    assert excinfo.value.code == "CLEANUP_GATE_FAILED"


@pytest.mark.asyncio
async def test_raw_fallback_policy_keeps_every_candidate(tmp_path: Path) -> None:
    report = await run_extraction_plan(
        _two_source_plan(tmp_path),
        artifacts_dir=tmp_path / "artifacts",
        settings=RunPlanSettings(cleanup_mode="deterministic", failure_policy="raw-fallback"),
    )

    separation = next(result for result in report.results if result.source_id == "src-sep")
    rows = read_ndjson_file(separation.clean_path)

    assert separation.status == "succeeded"
    assert separation.cleanup_status == "skipped"
    assert separation.records_extracted == 3
    assert all("raw-fallback" in row["reason_tags"] for row in rows)
    assert separation.cleanup_metrics.veto_reasons == []


@pytest.mark.asyncio
async def test_unreadable_source_becomes_failed_result(tmp_path: Path) -> None:
    plan = _two_source_plan(tmp_path)
    Path(plan.sources[0].local_path).unlink()

    report = await run_extraction_plan(
        plan,
        artifacts_dir=tmp_path / "artifacts",
        settings=RunPlanSettings(cleanup_mode="deterministic"),
    )

    failed = [result for result in report.results if result.status == "failed"]
    assert [result.source_id for result in failed] == [plan.sources[0].id]
    assert failed[0].errors


@pytest.mark.asyncio
async def test_html_page_merges_linked_planned_source(tmp_path: Path) -> None:
    plan = _plan(
        [
            _source(tmp_path, "src-page", "index.html", LINKING_PAGE, "schedule"),
            _source(tmp_path, "src-csv", "schedule.csv", SCHEDULE_CSV, "schedule"),
        ]
    )

    report = await run_extraction_plan(
        plan,
        artifacts_dir=tmp_path / "artifacts",
        settings=RunPlanSettings(cleanup_mode="deterministic"),
    )

    page = next(result for result in report.results if result.source_id == "src-page")
    texts = [row["text"] for row in read_ndjson_file(page.clean_path)]

    assert page.executor_type == "html"
    assert any("川崎区" in text for text in texts)
    assert any("可燃ごみの収集日" in text for text in texts)


@pytest.mark.asyncio
async def test_csv_parse_error_stays_inside_the_task(tmp_path: Path) -> None:
    oversized = '品目,出し方\n"' + "x" * 200_000 + '",資源ごみ\n'
    plan = _plan(
        [
            _source(tmp_path, "src-sched", "schedule.csv", SCHEDULE_CSV, "schedule"),
            _source(tmp_path, "src-big", "bunbetsu.csv", oversized, "separation"),
        ]
    )

    report = await run_extraction_plan(
        plan,
        artifacts_dir=tmp_path / "artifacts",
        settings=RunPlanSettings(cleanup_mode="deterministic"),
    )

    by_source = {result.source_id: result for result in report.results}
    assert set(by_source) == {"src-sched", "src-big"}
    assert by_source["src-sched"].status == "succeeded"
    assert by_source["src-big"].executor_type == "html"
