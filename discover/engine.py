"""
Discover engine: bounded, multi-round, tool-augmented source discovery.

Each round asks the model (with web_search/fetch_page tools) for candidate
URLs, fetches them (plus one hop of promising links), re-curates the whole
pool and checks the stop decision. The pool is cumulative across rounds.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import hashlib
import logging
import re
from typing import Any, Dict, List, Literal, Optional, Sequence, Union
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from core import DiscoverCandidate, DiscoverOutput, HttpArtifact, TargetSelection
from intelligence.llm import Message
from intelligence.model import decode_structured, run_model_text
from orchestrator.retry import CancellationToken
from sources.http import fetch_text_with_limits, looks_like_html, strip_html_to_text
from sources.search import extract_title
from utils.exceptions import PipelineError

from .curation import (
    CandidateEnrichment,
    CurationResult,
    DiscoverStopDecision,
    curate_candidates,
    derive_official_domains,
    evaluate_discover_stop,
    normalize_url,
)
from .domain_lock import DomainLockResult, compute_domain_lock
from .link_graph import extract_candidate_links
from .query_policy import apply_query_policy
from .tools import DiscoverToolbox, run_tool_loop

logger = logging.getLogger(__name__)

LINKS_PER_PAGE = 12
PREVIEW_CHARS = 1200
TITLE_CHARS = 160


class RoundCandidate(BaseModel):
    url: str
    target: Optional[Literal["schedule", "separation", "both"]] = None
    reason_tags: List[str] = Field(default_factory=list)


class RoundResponse(BaseModel):
    """JSON the model must return at the end of a discover round."""

    city_id: Optional[str] = None
    prefecture_id: Optional[str] = None
    official_url: Optional[str] = None
    candidate_urls: List[Union[str, RoundCandidate]] = Field(default_factory=list)


class DiscoverRoundReport(BaseModel):
    round: int
    timeout_ms: int
    timed_out: bool
    candidate_count: int
    accepted_count: int
    rejected_count: int
    coverage: Dict[str, int]
    missing_targets: List[str]
    quality_ready: bool
    schedule_primary_score: Optional[float] = None
    separation_primary_score: Optional[float] = None
    schedule_primary_type: Optional[str] = None
    separation_primary_type: Optional[str] = None
    schedule_top_evidence: Optional[Dict[str, Any]] = None
    separation_top_evidence: Optional[Dict[str, Any]] = None
    stop_gate_failures: List[Dict[str, str]] = Field(default_factory=list)
    search_used: int = 0
    fetch_used: int = 0
    domain_locked: bool = False
    locked_hosts: List[str] = Field(default_factory=list)
    query_dup_ratio: float = 0.0
    host_switches: int = 0
    budget_exit_reason: Optional[str] = None
    decision_reason: str


@dataclass
class RoundOutput:
    candidates: List[CandidateEnrichment]
    city_id: Optional[str] = None
    prefecture_id: Optional[str] = None
    official_url: Optional[str] = None
    search_used: int = 0
    fetch_used: int = 0
    query_dup_ratio: float = 0.0
    budget_exit_reason: Optional[str] = None


@dataclass
class DiscoverEngineResult:
    discover: DiscoverOutput
    rounds: List[DiscoverRoundReport]
    rejected: List[DiscoverCandidate]
    http_artifacts: List[HttpArtifact] = field(default_factory=list)


def calculate_discover_round_timeout(base_ms: int, step_ms: int, max_ms: int, round_number: int) -> int:
    """Round 1 gets ``base``; each later round adds ``step``; never above ``max``."""
    if round_number <= 1:
        return min(base_ms, max_ms)
    return min(base_ms + (round_number - 1) * step_ms, max_ms)


def default_queries(city: str, prefecture: str) -> List[str]:
    return [
        f"{city} ごみ収集日 CSV",
        f"{city} オープンデータ ごみ",
        f"{city} ごみ収集カレンダー",
        f"{city} ごみ 分別 一覧",
        f"{prefecture} オープンデータカタログ ごみ",
    ]


def followup_queries(city: str, prefecture: str, missing: Sequence[str]) -> List[str]:
    queries: List[str] = []
    if "schedule" in missing:
        queries += [f"{city} ごみ収集 曜日 地区", f"{city} garbage schedule open data"]
    if "separation" in missing:
        queries += [f"{city} ごみ 分別 品目", f"{city} 資源ごみ 出し方"]
    return queries or [f"{city} {prefecture} ごみ"]


def emergency_queries(city: str, prefecture: str) -> List[str]:
    return [
        f"{city} {prefecture} 公式 ごみ オープンデータ",
        f"site:lg.jp {city} ごみ CSV",
        f"site:go.jp {city} ごみ オープンデータ",
    ]


def fallback_id(value: str, prefix: str) -> str:
    ascii_slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")[:24]
    if ascii_slug:
        return ascii_slug
    return f"{prefix}-{hashlib.sha1(value.encode('utf-8')).hexdigest()[:6]}"


def missing_targets(selected: TargetSelection) -> List[str]:
    return [target for target in ("schedule", "separation") if not selected.for_target(target)]


def is_allowed_host(url: str, allowed_hosts: Sequence[str]) -> bool:
    if not allowed_hosts:
        return True
    host = (urlparse(url).hostname or "").lower()
    return any(host == entry.lower() or host.endswith(f".{entry.lower()}") for entry in allowed_hosts)


def parse_round_response(text: str, max_candidates: int) -> RoundOutput:
    """Decode the model's answer; anything undecodable becomes an empty candidate list."""
    decoded = decode_structured(text, RoundResponse)
    if not decoded.ok:
        logger.warning("Discover round response not decodable: %s", decoded.error)
        return RoundOutput(candidates=[])
    if decoded.variant == "extracted":
        logger.info("Discover round response decoded from embedded JSON")

    response = decoded.value
    candidates: List[CandidateEnrichment] = []
    for entry in response.candidate_urls:
        if isinstance(entry, str):
            candidates.append(CandidateEnrichment(url=entry, depth=0))
            continue
        hints = ["schedule", "separation"] if entry.target == "both" else ([entry.target] if entry.target else [])
        candidates.append(
            CandidateEnrichment(
                url=entry.url,
                target_hints=hints,
                depth=0,
                title=", ".join(entry.reason_tags) or None,
            )
        )
    return RoundOutput(
        candidates=candidates[: max(0, max_candidates)],
        city_id=response.city_id,
        prefecture_id=response.prefecture_id,
        official_url=response.official_url,
    )


def build_round_prompt(
    *,
    city: str,
    prefecture: str,
    round_number: int,
    queries: Sequence[str],
    previous: Sequence[CandidateEnrichment],
    official_url: str,
    search_cap: int,
    fetch_cap: int,
) -> str:
    previous_lines = "\n".join(f"- {candidate.url}" for candidate in list(previous)[:12]) or "- none"
    query_lines = "\n".join(f"- {query}" for query in queries)
    known = f"Known official URL: {official_url}\n" if official_url else ""
    return (
        f"You are discovering official garbage data sources for {city} ({prefecture}).\n\n"
        f"Round: {round_number}\n{known}\n"
        "Use tools (web_search + fetch_page) and return JSON only.\n\n"
        "Required JSON schema:\n"
        "{\n"
        '  "city_id": "romanized-kebab-case city id",\n'
        '  "prefecture_id": "romanized-kebab-case prefecture id",\n'
        '  "official_url": "official garbage top page URL",\n'
        '  "candidate_urls": [\n'
        '    {"url": "https://...", "target": "schedule|separation|both", "reason_tags": ["short-tag"]}\n'
        "  ]\n"
        "}\n\n"
        "Constraints:\n"
        f"- Use at most {search_cap} web_search calls in this round.\n"
        f"- After seed searches, spend effort on fetch_page and in-site navigation (up to {fetch_cap} fetches).\n"
        "- Avoid repeated synonymous queries.\n"
        "- Prefer official or official-open-data hosts\n"
        "- Include direct machine-readable schedule assets when available (csv/xlsx/json/api)\n"
        "- Include separation pages with detailed item/category content\n"
        "- Exclude utility pages (sitemap/privacy/search/login)\n"
        "- Candidate URL count <= 20\n\n"
        f"Queries to consider:\n{query_lines}\n\n"
        f"Previously seen candidates:\n{previous_lines}\n"
    )


def map_stop_diagnostic(reason: Optional[str]) -> str:
    if not reason:
        return "unknown"
    if "timeout" in reason:
        return "timeout-before-structured-output"
    if "not-machine-readable" in reason:
        return "machine-readable-schedule-unmet"
    if "no-official-domain" in reason:
        return "no-official-domain"
    return reason


class DiscoverEngine:
    """
    Runs up to ``discover_max_rounds`` rounds for one pipeline context.

    Repeated emergency bursts each consume a normal round; the round cap is
    never extended.
    """

    def __init__(self, context: Any, token: Optional[CancellationToken] = None) -> None:
        self.context = context
        self.options = context.options
        self.events = context.events
        self.token = token
        self.pool: Dict[str, CandidateEnrichment] = {}
        self.fetched: set = set()
        self.http_artifacts: List[HttpArtifact] = []
        self.rounds: List[DiscoverRoundReport] = []
        self.official_url = self.options.url or ""
        self.city_id = ""
        self.prefecture_id = ""

    # --- helpers -----------------------------------------------------------

    def _curate(self) -> CurationResult:
        options = self.options
        return curate_candidates(
            list(self.pool.values()),
            official_domains=derive_official_domains(self.official_url or options.url),
            city_id=self.city_id or fallback_id(options.city, "city"),
            prefecture_id=self.prefecture_id or fallback_id(options.prefecture, "pref"),
            official_url=self.official_url or options.url or "",
            max_candidates=options.discover_max_candidates,
            quality_policy=options.discover_quality_policy,
        )

    def _seed(self, queries: Sequence[str]) -> List[str]:
        return apply_query_policy(queries, self.options.discover_tool_budget_policy.seed_query_count).queries

    def _record_round(
        self,
        round_number: int,
        timeout_ms: int,
        timed_out: bool,
        curated: CurationResult,
        decision: DiscoverStopDecision,
        *,
        round_output: Optional[RoundOutput] = None,
        domain_lock: Optional[DomainLockResult] = None,
        fetch_used: int = 0,
        budget_exit_reason: Optional[str] = None,
        decision_reason: Optional[str] = None,
    ) -> DiscoverRoundReport:
        output = curated.output
        metrics = decision.metrics
        report = DiscoverRoundReport(
            round=round_number,
            timeout_ms=timeout_ms,
            timed_out=timed_out,
            candidate_count=len(output.candidates),
            accepted_count=sum(1 for entry in output.candidates if not entry.rejected),
            rejected_count=sum(1 for entry in output.candidates if entry.rejected),
            coverage={"schedule": len(output.selected.schedule), "separation": len(output.selected.separation)},
            missing_targets=missing_targets(output.selected),
            quality_ready=decision.ready,
            schedule_primary_score=metrics.get("schedule_primary_score"),
            separation_primary_score=metrics.get("separation_primary_score"),
            schedule_primary_type=metrics.get("schedule_primary_type"),
            separation_primary_type=metrics.get("separation_primary_type"),
            schedule_top_evidence=metrics.get("schedule_top_evidence"),
            separation_top_evidence=metrics.get("separation_top_evidence"),
            stop_gate_failures=decision.gate_failures,
            search_used=round_output.search_used if round_output else 0,
            fetch_used=(round_output.fetch_used if round_output else 0) + fetch_used,
            domain_locked=domain_lock.locked if domain_lock else False,
            locked_hosts=domain_lock.locked_hosts if domain_lock else [],
            query_dup_ratio=round_output.query_dup_ratio if round_output else 0.0,
            host_switches=domain_lock.host_switches if domain_lock else 0,
            budget_exit_reason=budget_exit_reason,
            decision_reason=decision_reason or decision.reason,
        )
        self.rounds.append(report)
        self.events.info(
            "discover.quality",
            "Discover quality evaluated",
            round=round_number,
            qualityReady=decision.ready,
            decisionReason=report.decision_reason,
            schedulePrimaryScore=report.schedule_primary_score,
            separationPrimaryScore=report.separation_primary_score,
            schedulePrimaryType=report.schedule_primary_type,
            separationPrimaryType=report.separation_primary_type,
            missingTargets=report.missing_targets,
            gateFailures=decision.gate_failures,
        )
        return report

    def _result(self, curated: CurationResult) -> DiscoverEngineResult:
        return DiscoverEngineResult(
            discover=curated.output,
            rounds=list(self.rounds),
            rejected=curated.rejected,
            http_artifacts=list(self.http_artifacts),
        )

    # --- main loop ---------------------------------------------------------

    async def run(self) -> DiscoverEngineResult:
        options = self.options
        timeout_policy = options.discover_timeout_policy
        budget_policy = options.discover_tool_budget_policy
        lock_policy = options.discover_domain_lock_policy
        query_plan = self._seed(default_queries(options.city, options.prefecture))

        for round_number in range(1, options.discover_max_rounds + 1):
            timeout_ms = calculate_discover_round_timeout(
                timeout_policy.base_ms, timeout_policy.step_ms, timeout_policy.max_ms, round_number
            )
            self.events.info(
                "discover.round",
                "Discover round started",
                phase="start",
                round=round_number,
                timeoutMs=timeout_ms,
                queryCount=len(query_plan),
                knownCandidates=len(self.pool),
            )

            try:
                round_output = await self._run_round(round_number, query_plan, timeout_ms)
            except PipelineError as exc:
                if exc.code != "MODEL_TIMEOUT":
                    raise
                curated = self._curate()
                decision = evaluate_discover_stop(curated.output, options.discover_quality_policy, options.discover_stop_mode)
                self._record_round(
                    round_number,
                    timeout_ms,
                    True,
                    curated,
                    decision,
                    budget_exit_reason="timeout-before-structured-output",
                )
                self.events.warn(
                    "discover.round",
                    "Discover model round timed out",
                    phase="fail",
                    round=round_number,
                    timeoutMs=timeout_ms,
                    errorCode="MODEL_TIMEOUT",
                    decisionReason=decision.reason,
                )
                if timeout_policy.soft_fail and decision.ready:
                    self.events.warn(
                        "discover.timeout.recovered",
                        "Discover timeout recovered from existing curated pool",
                        round=round_number,
                        decisionReason=decision.reason,
                    )
                    self.events.info("discover.stop", "Discover stop condition reached", round=round_number, decisionReason="timeout-recovered")
                    return self._result(curated)
                if round_number >= options.discover_max_rounds:
                    self.events.error(
                        "discover.timeout.fatal",
                        "Discover timeout could not be recovered",
                        round=round_number,
                        decisionReason=decision.reason,
                        missingTargets=missing_targets(curated.output.selected),
                    )
                    raise PipelineError(
                        f"Discover timed out and did not meet {options.discover_stop_mode} stop policy "
                        f"(reason={decision.reason})",
                        "MODEL_TIMEOUT",
                        False,
                        cause=exc,
                    ) from exc
                query_plan = self._seed(followup_queries(options.city, options.prefecture, missing_targets(curated.output.selected)))
                continue

            self.city_id = self.city_id or (round_output.city_id or "")
            self.prefecture_id = self.prefecture_id or (round_output.prefecture_id or "")
            self.official_url = self.official_url or (round_output.official_url or "")

            official_domains = derive_official_domains(self.official_url or options.url)
            domain_lock = compute_domain_lock(
                [candidate.url for candidate in round_output.candidates],
                official_domains,
                budget_policy.max_host_switches,
            )
            self.events.info(
                "discover.domain_lock",
                "Discover domain lock evaluated",
                round=round_number,
                domainLocked=domain_lock.locked,
                lockedHosts=domain_lock.locked_hosts,
                hostSwitches=domain_lock.host_switches,
            )

            if lock_policy.require_official_domain and not domain_lock.locked:
                burst = lock_policy.no_official_domain_strategy == "emergency-burst"
                if burst and round_number < options.discover_max_rounds:
                    self.events.warn(
                        "discover.domain_lock",
                        "No official domain lock yet; trying emergency burst next round",
                        phase="fail",
                        round=round_number,
                        decisionReason="no-official-domain-emergency-burst",
                    )
                    curated = self._curate()
                    decision = evaluate_discover_stop(curated.output, options.discover_quality_policy, options.discover_stop_mode)
                    self._record_round(
                        round_number,
                        timeout_ms,
                        False,
                        curated,
                        decision,
                        round_output=round_output,
                        domain_lock=domain_lock,
                        budget_exit_reason=round_output.budget_exit_reason,
                        decision_reason="no-official-domain-emergency-burst",
                    )
                    query_plan = self._seed(emergency_queries(options.city, options.prefecture))
                    continue
                raise PipelineError(
                    "Discover failed: no official/open-data domain lock established",
                    "DISCOVER_NO_OFFICIAL_DOMAIN",
                    False,
                )

            allow_hosts = domain_lock.locked_hosts if domain_lock.locked else (options.discover_allow_hosts or official_domains)
            enriched, fetch_used, enrich_exit = await self._enrich(round_output.candidates, allow_hosts)
            for candidate in enriched:
                self.pool[candidate.url] = candidate

            curated = self._curate()
            decision = evaluate_discover_stop(curated.output, options.discover_quality_policy, options.discover_stop_mode)
            report = self._record_round(
                round_number,
                timeout_ms,
                False,
                curated,
                decision,
                round_output=round_output,
                domain_lock=domain_lock,
                fetch_used=fetch_used,
                budget_exit_reason=round_output.budget_exit_reason or enrich_exit,
            )
            self.events.info(
                "discover.budget",
                "Discover budget snapshot",
                round=round_number,
                searchUsed=report.search_used,
                searchCap=budget_policy.search_cap,
                fetchUsed=report.fetch_used,
                fetchCap=budget_policy.fetch_cap,
                queryDupRatio=report.query_dup_ratio,
                maxQueryDupRatio=budget_policy.max_query_dup_ratio,
                budgetExitReason=report.budget_exit_reason,
            )

            if decision.ready:
                self.events.info("discover.stop", "Discover stop condition reached", round=round_number, decisionReason=decision.reason)
                return self._result(curated)

            query_plan = self._seed(followup_queries(options.city, options.prefecture, missing_targets(curated.output.selected)))

        final = self._curate()
        decision = evaluate_discover_stop(final.output, options.discover_quality_policy, options.discover_stop_mode)
        if not decision.ready:
            raise PipelineError(
                f"Discover {options.discover_stop_mode} stop policy not met (reason={decision.reason}, "
                f"schedule={len(final.output.selected.schedule)}, separation={len(final.output.selected.separation)})",
                "DISCOVER_QUALITY_UNMET",
                False,
                missing=missing_targets(final.output.selected),
            )
        self.events.info(
            "discover.stop",
            "Discover stop condition reached",
            round=options.discover_max_rounds,
            decisionReason=decision.reason,
        )
        return self._result(final)

    async def _run_round(self, round_number: int, queries: Sequence[str], timeout_ms: int) -> RoundOutput:
        options = self.options
        budget_policy = options.discover_tool_budget_policy
        http = self.context.http
        toolbox = DiscoverToolbox(
            search_cap=budget_policy.search_cap,
            fetch_cap=budget_policy.fetch_cap,
            max_query_dup_ratio=budget_policy.max_query_dup_ratio,
            timeout_ms=options.http_timeout_ms,
            max_download_bytes=options.max_download_bytes,
            user_agent=http.user_agent,
            search_user_agent=http.search_user_agent,
            allowed_hosts=options.discover_allow_hosts,
            events=self.events,
            token=self.token,
        )
        prompt = build_round_prompt(
            city=options.city,
            prefecture=options.prefecture,
            round_number=round_number,
            queries=queries,
            previous=list(self.pool.values()),
            official_url=self.official_url,
            search_cap=budget_policy.search_cap,
            fetch_cap=budget_policy.fetch_cap,
        )
        max_steps = max(3, min(options.discover_max_steps, budget_policy.search_cap + budget_policy.fetch_cap + 2))
        llm = self.context.require_llm()
        response = await run_model_text(
            f"discover.round.{round_number}.generateText",
            lambda: run_tool_loop(
                llm,
                [Message.user(prompt)],
                toolbox,
                max_steps=max_steps,
                json_schema=RoundResponse.model_json_schema(),
            ),
            events=self.events,
            max_model_ms=self.context.budget.effective_step_timeout(timeout_ms),
            token=self.token,
            major=True,
        )

        output = parse_round_response(response.content, options.discover_max_candidates)
        output.search_used = toolbox.search_used
        output.fetch_used = toolbox.fetch_used
        output.query_dup_ratio = toolbox.query_dup_ratio
        output.budget_exit_reason = toolbox.budget_exit_reason
        return output

    async def _enrich(self, raw: Sequence[CandidateEnrichment], allow_hosts: Sequence[str]) -> tuple:
        """Fetch candidates breadth-first, queueing one hop of scored links from HTML pages."""
        options = self.options
        fetch_cap = options.discover_tool_budget_policy.fetch_cap
        queue: List[CandidateEnrichment] = list(raw)
        output: List[CandidateEnrichment] = []
        fetch_used = 0
        exit_reason: Optional[str] = None

        while queue and len(self.http_artifacts) < options.discover_max_fetches:
            if fetch_used >= fetch_cap:
                exit_reason = "fetch-cap-reached"
                break
            current = queue.pop(0)
            url = normalize_url(current.url)
            if url is None or url in self.fetched:
                continue
            self.fetched.add(url)
            fetch_used += 1

            result = await fetch_text_with_limits(
                url,
                timeout_ms=options.http_timeout_ms,
                max_bytes=options.max_download_bytes,
                token=self.token,
                user_agent=self.context.http.user_agent,
                events=self.events,
            )
            self.http_artifacts.append(
                HttpArtifact(
                    step="discover",
                    url=url,
                    final_url=result.final_url,
                    status=result.status,
                    content_type=result.content_type,
                    last_modified=result.last_modified,
                    content_length=result.content_length,
                    bytes_read=result.bytes_read,
                    ok=result.ok,
                    error=result.error,
                )
            )
            if not result.ok or not result.body:
                output.append(replace(current, url=url))
                continue

            is_html = looks_like_html(result.content_type, url)
            title = extract_title(result.body) if is_html else None
            preview = strip_html_to_text(result.body) if is_html else result.body
            output.append(
                CandidateEnrichment(
                    url=url,
                    content_type=result.content_type,
                    title=title[:TITLE_CHARS] if title else current.title,
                    preview=preview[:PREVIEW_CHARS],
                    target_hints=list(current.target_hints),
                    discovered_from=current.discovered_from,
                    depth=current.depth,
                    last_modified=result.last_modified,
                    status=result.status,
                    bytes_read=result.bytes_read,
                    content_length=result.content_length,
                )
            )

            if current.depth >= options.discover_link_depth or not is_html:
                continue
            for link in extract_candidate_links(
                result.body,
                url,
                depth=current.depth,
                max_links=LINKS_PER_PAGE,
                target_hints=current.target_hints,
            ):
                if is_allowed_host(link.url, allow_hosts) and link.url not in self.pool:
                    queue.append(link)

        return output, fetch_used, exit_reason


async def run_discover_engine(context: Any, token: Optional[CancellationToken] = None) -> DiscoverEngineResult:
    return await DiscoverEngine(context, token).run()
