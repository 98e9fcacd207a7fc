from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest

from config.settings import HttpSettings
from conftest import FakeLLM
from core import DiscoverDomainLockPolicy, DiscoverTimeoutPolicy, GenerateOptions
from discover.curation import CandidateEnrichment
from discover.engine import DiscoverEngine, parse_round_response
from discover.tools import DiscoverToolbox, run_tool_loop
from intelligence.llm import LLMResponse, Message, ToolCall
from orchestrator.budget import BudgetManager
from orchestrator.events import EventSink
from sources.http import FetchTextResult
from sources.search import SearchResult
from utils.exceptions import PipelineError

OFFICIAL = "https://www.city.example.lg.jp/"
SCHEDULE_URL = "https://www.city.example.lg.jp/gomi/syusyubi.csv"
SEPARATION_URL = "https://www.city.example.lg.jp/gomi/bunbetsu.html"
SEPARATION_PAGE = "<html><head><title>ごみの分別 品目一覧</title></head><body><p>品目ごとの出し方</p></body></html>"

PAGES: Dict[str, FetchTextResult] = {
    SCHEDULE_URL: FetchTextResult(
        ok=True, status=200, content_type="text/csv", body="地区,曜日\n川崎区,月\n", final_url=SCHEDULE_URL
    ),
    SEPARATION_URL: FetchTextResult(
        ok=True, status=200, content_type="text/html", body=SEPARATION_PAGE, final_url=SEPARATION_URL
    ),
}


def _round_reply(*urls: str) -> str:
    return json.dumps(
        {
            "city_id": "example",
            "prefecture_id": "example-pref",
            "official_url": OFFICIAL,
            "candidate_urls": [
                {"url": SCHEDULE_URL, "target": "schedule", "reason_tags": ["ごみ収集日"]}
                if url == SCHEDULE_URL
                else {"url": url, "target": "separation", "reason_tags": ["ごみ分別"]}
                for url in urls
            ],
        },
        ensure_ascii=False,
    )


def _context(tmp_path: Path, llm: Optional[FakeLLM] = None, **overrides) -> SimpleNamespace:
    values = dict(
        city="川崎市",
        prefecture="神奈川県",
        run_id="run-discover",
        work_dir=str(tmp_path),
        url=OFFICIAL,
        discover_max_rounds=2,
        discover_stop_mode="coverage",
    )
    values.update(overrides)
    options = GenerateOptions(**values)
    llm = llm or FakeLLM(["{}"])
    return SimpleNamespace(
        options=options,
        events=EventSink(options.run_id, event_file=tmp_path / "events.jsonl"),
        http=HttpSettings(),
        budget=BudgetManager(60_000, 60_000),
        llm=llm,
        require_llm=lambda: llm,
    )


@pytest.fixture
def fetched(monkeypatch: pytest.MonkeyPatch) -> List[str]:
    urls: List[str] = []

    async def fake_fetch(url: str, **kwargs) -> FetchTextResult:
        urls.append(url)
        return PAGES.get(url) or FetchTextResult(ok=False, status=404, error="HTTP 404", final_url=url)

    monkeypatch.setattr("discover.engine.fetch_text_with_limits", fake_fetch)
    monkeypatch.setattr("discover.tools.fetch_text_with_limits", fake_fetch)
    return urls


def _model_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    async def timed_out(action, op, **kwargs):
        raise PipelineError(f"Model call timed out for {action}", "MODEL_TIMEOUT", False)

    monkeypatch.setattr("discover.engine.run_model_text", timed_out)


def test_undecodable_round_response_yields_no_candidates() -> None:
    assert parse_round_response("I could not find anything useful.", 20).candidates == []
    assert parse_round_response('{"candidate_urls": "not-a-list"}', 20).candidates == []

    wrapped = parse_round_response(f"Here you go:\n```json\n{_round_reply(SCHEDULE_URL)}\n```", 20)
    assert [candidate.url for candidate in wrapped.candidates] == [SCHEDULE_URL]
    assert wrapped.candidates[0].target_hints == ["schedule"]


@pytest.mark.asyncio
async def test_round_stops_once_both_targets_are_covered(tmp_path: Path, fetched: List[str]) -> None:
    llm = FakeLLM([_round_reply(SCHEDULE_URL, SEPARATION_URL)])
    engine = DiscoverEngine(_context(tmp_path, llm))

    result = await engine.run()

    assert len(llm.calls) == 1
    assert sorted(fetched) == sorted([SCHEDULE_URL, SEPARATION_URL])
    assert len(result.http_artifacts) == 2
    assert result.rounds[0].decision_reason == "coverage-pass"
    assert result.rounds[0].domain_locked is True
    assert result.discover.city_id == "example"
    schedule_ids = result.discover.selected.schedule
    assert result.discover.candidate(schedule_ids[0]).url == SCHEDULE_URL
    assert result.discover.selected.separation


@pytest.mark.asyncio
async def test_quality_policy_unmet_after_last_round(tmp_path: Path, fetched: List[str]) -> None:
    llm = FakeLLM([_round_reply(SEPARATION_URL)])
    engine = DiscoverEngine(_context(tmp_path, llm, discover_max_rounds=1, discover_stop_mode="quality"))

    with pytest.raises(PipelineError) as excinfo:
        await engine.run()

    assert excinfo.value.code == "DISCOVER_QUALITY_UNMET"
    assert excinfo.value.retryable is False
    assert len(engine.rounds) == 1


@pytest.mark.asyncio
async def test_emergency_bursts_consume_rounds(tmp_path: Path, fetched: List[str]) -> None:
    llm = FakeLLM(["no json here"])
    engine = DiscoverEngine(_context(tmp_path, llm, discover_max_rounds=3))

    with pytest.raises(PipelineError) as excinfo:
        await engine.run()

    assert excinfo.value.code == "DISCOVER_NO_OFFICIAL_DOMAIN"
    assert len(llm.calls) == 3
    assert [report.decision_reason for report in engine.rounds] == ["no-official-domain-emergency-burst"] * 2
    assert "site:lg.jp 川崎市 ごみ CSV" in llm.calls[1][0].content
    assert fetched == []


@pytest.mark.asyncio
async def test_fail_fast_domain_lock_stops_in_first_round(tmp_path: Path, fetched: List[str]) -> None:
    llm = FakeLLM(["no json here"])
    context = _context(
        tmp_path,
        llm,
        discover_max_rounds=3,
        discover_domain_lock_policy=DiscoverDomainLockPolicy(no_official_domain_strategy="fail-fast"),
    )

    with pytest.raises(PipelineError) as excinfo:
        await DiscoverEngine(context).run()

    assert excinfo.value.code == "DISCOVER_NO_OFFICIAL_DOMAIN"
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_model_timeout_recovers_from_curated_pool(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _model_timeout(monkeypatch)
    engine = DiscoverEngine(_context(tmp_path))
    engine.pool = {
        SCHEDULE_URL: CandidateEnrichment(url=SCHEDULE_URL, title="ごみ収集日 地区別 曜日一覧", content_type="text/csv"),
        SEPARATION_URL: CandidateEnrichment(url=SEPARATION_URL, title="ごみの分別 品目一覧", content_type="text/html"),
    }

    result = await engine.run()

    assert len(result.rounds) == 1
    assert result.rounds[0].timed_out is True
    assert result.rounds[0].budget_exit_reason == "timeout-before-structured-output"
    assert result.discover.selected.schedule and result.discover.selected.separation


@pytest.mark.asyncio
async def test_model_timeout_without_recoverable_pool_is_fatal(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _model_timeout(monkeypatch)
    engine = DiscoverEngine(_context(tmp_path, discover_max_rounds=2))

    with pytest.raises(PipelineError) as excinfo:
        await engine.run()

    assert excinfo.value.code == "MODEL_TIMEOUT"
    assert excinfo.value.retryable is False
    assert "did not meet coverage stop policy" in excinfo.value.message
    assert [report.timed_out for report in engine.rounds] == [True, True]


@pytest.mark.asyncio
async def test_model_timeout_without_soft_fail_keeps_trying(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _model_timeout(monkeypatch)
    context = _context(tmp_path, discover_max_rounds=2, discover_timeout_policy=DiscoverTimeoutPolicy(soft_fail=False))
    engine = DiscoverEngine(context)
    engine.pool = {
        SCHEDULE_URL: CandidateEnrichment(url=SCHEDULE_URL, title="ごみ収集日 地区別 曜日一覧", content_type="text/csv"),
        SEPARATION_URL: CandidateEnrichment(url=SEPARATION_URL, title="ごみの分別 品目一覧", content_type="text/html"),
    }

    with pytest.raises(PipelineError) as excinfo:
        await engine.run()

    assert excinfo.value.code == "MODEL_TIMEOUT"
    assert len(engine.rounds) == 2


@pytest.mark.asyncio
async def test_failed_fetch_keeps_seed_untouched(tmp_path: Path, fetched: List[str]) -> None:
    engine = DiscoverEngine(_context(tmp_path))
    seed = CandidateEnrichment(url="https://www.city.example.lg.jp/gomi/missing.csv#top", target_hints=["schedule"])

    output, fetch_used, exit_reason = await engine._enrich([seed], ["www.city.example.lg.jp"])

    assert fetch_used == 1
    assert exit_reason is None
    assert output[0].url == "https://www.city.example.lg.jp/gomi/missing.csv"
    assert output[0] is not seed
    assert seed.url == "https://www.city.example.lg.jp/gomi/missing.csv#top"
    assert engine.http_artifacts[0].ok is False


def _toolbox(**overrides) -> DiscoverToolbox:
    values = dict(
        search_cap=3,
        fetch_cap=12,
        max_query_dup_ratio=0.15,
        timeout_ms=5_000,
        max_download_bytes=1_000_000,
        user_agent="test-agent",
        search_user_agent="test-search-agent",
    )
    values.update(overrides)
    return DiscoverToolbox(**values)


@pytest.fixture
def searches(monkeypatch: pytest.MonkeyPatch) -> List[str]:
    queries: List[str] = []

    async def fake_search(query: str, **kwargs) -> List[SearchResult]:
        queries.append(query)
        return [SearchResult(title="ごみ収集日", url=SCHEDULE_URL, snippet="地区別の収集日")]

    monkeypatch.setattr("discover.tools.web_search", fake_search)
    return queries


@pytest.mark.asyncio
async def test_search_cap_blocks_extra_queries(searches: List[str]) -> None:
    toolbox = _toolbox(search_cap=1, max_query_dup_ratio=None)

    first = await toolbox.web_search("川崎市 ごみ 収集日")
    second = await toolbox.web_search("川崎市 分別")

    assert SCHEDULE_URL in first
    assert second == "Search blocked: per-round search cap reached."
    assert searches == ["川崎市 ごみ 収集日"]
    assert toolbox.search_used == 1
    assert toolbox.budget_exit_reason == "search-cap-reached"


@pytest.mark.asyncio
async def test_reordered_duplicate_query_is_blocked(searches: List[str]) -> None:
    toolbox = _toolbox()

    await toolbox.web_search("川崎市 ごみ CSV")
    blocked = await toolbox.web_search("CSV 川崎市 ごみ")

    assert blocked == "Search blocked: duplicate query ratio exceeded."
    assert searches == ["川崎市 ごみ CSV"]
    assert toolbox.query_dup_ratio == 0.5
    assert toolbox.budget_exit_reason == "query-dup-ratio-exceeded"


@pytest.mark.asyncio
async def test_fetch_cap_blocks_extra_pages(fetched: List[str]) -> None:
    toolbox = _toolbox(fetch_cap=1)

    page = json.loads(await toolbox.fetch_page(SEPARATION_URL))
    blocked = await toolbox.fetch_page(SCHEDULE_URL)

    assert page["title"] == "ごみの分別 品目一覧"
    assert page["statusCode"] == 200
    assert blocked == "Fetch blocked: per-round fetch cap reached."
    assert fetched == [SEPARATION_URL]
    assert toolbox.budget_exit_reason == "fetch-cap-reached"


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_to_the_model() -> None:
    assert await _toolbox().execute("delete_everything", {}) == "Unknown tool: delete_everything"


@pytest.mark.asyncio
async def test_tool_loop_returns_first_plain_answer(searches: List[str]) -> None:
    llm = FakeLLM(['{"candidate_urls": []}'])

    response = await run_tool_loop(llm, [Message.user("find sources")], _toolbox(), max_steps=3)

    assert response.content == '{"candidate_urls": []}'
    assert len(llm.calls) == 1
    assert llm.requests[0]["tools"] is not None
    assert searches == []


@pytest.mark.asyncio
async def test_tool_loop_asks_for_final_json_when_steps_run_out(searches: List[str]) -> None:
    tool_turn = LLMResponse(
        content="",
        model="fake-model",
        tool_calls=[ToolCall(id="call-1", name="web_search", arguments={"query": "川崎市 ごみ"})],
    )
    llm = FakeLLM([tool_turn, '{"candidate_urls": []}'])
    messages = [Message.user("find sources")]
    schema = {"type": "object"}

    response = await run_tool_loop(llm, messages, _toolbox(), max_steps=1, json_schema=schema)

    assert response.content == '{"candidate_urls": []}'
    assert searches == ["川崎市 ごみ"]
    assert len(llm.calls) == 2
    assert llm.requests[1] == {"tools": None, "json_schema": schema}
    final_prompt = [message.content for message in llm.calls[1]]
    assert any(content.startswith("[web_search result]") for content in final_prompt)
    assert final_prompt[-1] == "Tool budget exhausted. Return the final JSON answer now."
