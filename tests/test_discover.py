from __future__ import annotations

from core import DiscoverCandidate, DiscoverEvidenceMetrics, DiscoverOutput, DiscoverQualityPolicy, TargetSelection
from discover.curation import (
    CandidateEnrichment,
    curate_candidates,
    derive_official_domains,
    detect_source_type,
    evaluate_discover_stop,
    get_reject_reason,
    normalize_url,
    source_id_from_url,
)
from discover.domain_lock import LOCK_TRUST_THRESHOLD, compute_domain_lock, host_trust
from discover.engine import calculate_discover_round_timeout, map_stop_diagnostic
from discover.link_graph import extract_candidate_links
from discover.query_policy import apply_query_policy, normalize_query

OFFICIAL = "https://www.city.example.lg.jp/"


def _evidence(**overrides) -> DiscoverEvidenceMetrics:
    values = dict(
        coverage_schedule=0.9,
        coverage_separation=0.9,
        noise_ratio=0.02,
        cleanup_pass_rate=0.95,
        freshness_score=0.8,
        parse_success=0.95,
        officialness=1.0,
    )
    values.update(overrides)
    return DiscoverEvidenceMetrics(**values)


def _output(schedule_type: str, score: float = 0.95) -> DiscoverOutput:
    schedule = DiscoverCandidate(
        id="sched",
        url=f"https://www.city.example.lg.jp/gomi/schedule.{schedule_type}",
        type=schedule_type,
        target_hints=["schedule"],
        score=score,
        evidence_metrics=_evidence(),
    )
    separation = DiscoverCandidate(
        id="sep",
        url="https://www.city.example.lg.jp/gomi/bunbetsu.html",
        type="html",
        target_hints=["separation"],
        score=0.9,
        evidence_metrics=_evidence(),
    )
    return DiscoverOutput(
        city_id="example",
        prefecture_id="example-pref",
        candidates=[schedule, separation],
        selected=TargetSelection(schedule=["sched"], separation=["sep"]),
    )


def test_round_timeout_schedule() -> None:
    timeouts = [calculate_discover_round_timeout(35_000, 10_000, 50_000, round_number) for round_number in (1, 2, 3)]
    assert timeouts == [35_000, 45_000, 50_000]
    assert calculate_discover_round_timeout(60_000, 10_000, 50_000, 1) == 50_000


def test_quality_stop_requires_machine_readable_schedule() -> None:
    policy = DiscoverQualityPolicy()

    html_decision = evaluate_discover_stop(_output("html"), policy, "quality")
    csv_decision = evaluate_discover_stop(_output("csv"), policy, "quality")

    assert html_decision.ready is False
    assert html_decision.reason == "quality-schedule-not-machine-readable"
    assert html_decision.gate_failures == [{"target": "schedule", "reason": "not-machine-readable"}]
    assert map_stop_diagnostic(html_decision.reason) == "machine-readable-schedule-unmet"
    assert csv_decision.ready is True
    assert csv_decision.reason == "quality-pass"


def test_quality_stop_without_machine_readable_requirement() -> None:
    policy = DiscoverQualityPolicy(require_machine_readable_schedule=False)
    assert evaluate_discover_stop(_output("html"), policy, "quality").ready is True


def test_quality_stop_checks_score_before_type() -> None:
    decision = evaluate_discover_stop(_output("html", score=0.5), DiscoverQualityPolicy(), "quality")
    assert decision.reason == "quality-schedule-below-threshold"


def test_coverage_mode_only_needs_both_targets() -> None:
    output = _output("html", score=0.1)
    assert evaluate_discover_stop(output, DiscoverQualityPolicy(), "coverage").reason == "coverage-pass"

    output.selected = TargetSelection(schedule=["sched"])
    assert evaluate_discover_stop(output, DiscoverQualityPolicy(), "coverage").ready is False


def test_domain_lock_prefers_trusted_frequent_hosts() -> None:
    urls = [
        "https://www.city.kawasaki.jp/a",
        "https://www.city.kawasaki.jp/b",
        "https://opendata.example.org/x",
        "https://blog.example.com/y",
    ]

    result = compute_domain_lock(urls, ["city.kawasaki.jp"], max_host_switches=4)
    narrow = compute_domain_lock(urls, ["city.kawasaki.jp"], max_host_switches=1)

    assert result.locked is True
    assert result.locked_hosts == ["www.city.kawasaki.jp", "opendata.example.org"]
    assert result.host_switches == 2
    assert narrow.locked_hosts == ["www.city.kawasaki.jp"]
    assert all(host_trust(host, ["city.kawasaki.jp"]) >= LOCK_TRUST_THRESHOLD for host in result.locked_hosts)


def test_domain_lock_does_not_form_on_untrusted_hosts() -> None:
    result = compute_domain_lock(["https://blog.example.com/a", "https://news.example.net/b"], [], max_host_switches=4)
    assert result.locked is False
    assert result.locked_hosts == []


def test_host_trust_levels() -> None:
    assert host_trust("www.city.example.lg.jp", ["city.example.lg.jp"]) == 1.0
    assert host_trust("www.pref.example.lg.jp", []) == 0.9
    assert host_trust("opendata.example.org", []) == 0.7
    assert host_trust("blog.example.com", []) == 0.2
    assert host_trust("", []) == 0.0


def test_reject_reasons_in_order() -> None:
    assert (
        get_reject_reason(
            url="https://www.city.example.lg.jp/sitemap.html",
            officialness=0.1,
            relevance=0.0,
            source_type="html",
            target_hints=[],
        )
        == "utility-navigation-page"
    )
    assert (
        get_reject_reason(
            url="https://blog.example.com/gomi.html",
            officialness=0.2,
            relevance=0.8,
            source_type="html",
            target_hints=["schedule"],
        )
        == "low-trust-host"
    )
    assert (
        get_reject_reason(
            url="https://www.city.example.lg.jp/gomi/data",
            officialness=1.0,
            relevance=0.8,
            source_type="api",
            target_hints=["schedule"],
        )
        == "not-direct-machine-readable"
    )


def test_curation_ranks_and_selects_per_target() -> None:
    seeds = [
        CandidateEnrichment(
            url="https://www.city.example.lg.jp/gomi/syusyubi.csv#top",
            title="ごみ収集日 地区別 曜日一覧",
            content_type="text/csv",
        ),
        CandidateEnrichment(
            url="https://www.city.example.lg.jp/gomi/bunbetsu.html",
            title="ごみの分別 品目一覧",
            content_type="text/html",
        ),
        CandidateEnrichment(url="https://blog.example.com/gomi.html", title="ごみ 分別のコツ"),
        CandidateEnrichment(url="not a url"),
    ]
    domains = derive_official_domains(OFFICIAL)

    result = curate_candidates(
        seeds,
        official_domains=domains,
        city_id="example",
        prefecture_id="example-pref",
        official_url=OFFICIAL,
        max_candidates=10,
    )

    csv_id = source_id_from_url("https://www.city.example.lg.jp/gomi/syusyubi.csv")
    assert result.output.selected.schedule[0] == csv_id
    assert source_id_from_url("https://www.city.example.lg.jp/gomi/bunbetsu.html") in result.output.selected.separation
    assert [candidate.reject_reason for candidate in result.rejected] == ["low-trust-host"]
    assert len(result.output.candidates) == 3


def test_url_helpers() -> None:
    assert normalize_url("https://example.lg.jp/a#frag") == "https://example.lg.jp/a"
    assert normalize_url("https://example.lg.jp") == "https://example.lg.jp/"
    assert normalize_url("ftp://example.lg.jp/file") is None
    assert detect_source_type("https://example.lg.jp/a.xlsx") == "xlsx"
    assert detect_source_type("https://example.lg.jp/api/v1/gomi") == "api"
    assert detect_source_type("https://example.lg.jp/page", "text/html; charset=utf-8") == "html"
    assert source_id_from_url("https://example.lg.jp/a") == source_id_from_url("https://example.lg.jp/a")
    assert "www.example.lg.jp" in derive_official_domains("https://www.example.lg.jp/")


def test_query_policy_deduplicates_reordered_queries() -> None:
    result = apply_query_policy(["川崎市 ごみ CSV", "CSV　川崎市 ごみ", "川崎市 分別"], seed_count=3)

    assert result.queries == ["川崎市 ごみ CSV", "川崎市 分別"]
    assert result.duplicate_ratio == 1 / 3
    assert normalize_query("Ｇｏｍｉ, Schedule!") == "gomi schedule"


def test_link_graph_keeps_data_links_and_drops_utility_links() -> None:
    html = """
    <html><body>
      <a href="/gomi/syusyubi.csv">ごみ収集日 CSV</a>
      <a href="/sitemap.html">サイトマップ</a>
      <a href="/gomi/syusyubi.csv">duplicate</a>
      <a href="https://www.city.example.lg.jp/gomi/bunbetsu.html">ごみの分別</a>
    </body></html>
    """

    links = extract_candidate_links(html, OFFICIAL, depth=0, max_links=12, target_hints=["schedule"])

    assert [link.url for link in links] == [
        "https://www.city.example.lg.jp/gomi/syusyubi.csv",
        "https://www.city.example.lg.jp/gomi/bunbetsu.html",
    ]
    assert all(link.depth == 1 and link.discovered_from == OFFICIAL for link in links)
