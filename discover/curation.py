"""
Candidate curation: pure scoring of discovered URLs and the discover stop decision.

Nothing here performs I/O; the engine feeds in what it fetched and gets back
a fresh ``DiscoverOutput`` every time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
import hashlib
import math
import re
from typing import Dict, List, Optional, Sequence
from urllib.parse import urlparse, urlunparse

from core import (
    MACHINE_READABLE_TYPES,
    DiscoverCandidate,
    DiscoverEvidenceMetrics,
    DiscoverOutput,
    DiscoverQualityPolicy,
    TargetSelection,
)

from .domain_lock import host_trust, safe_host

UTILITY_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"sitemap",
        r"privacy",
        r"cookie",
        r"policy",
        r"search",
        r"login",
        r"accessibility",
        r"contact",
        r"お問い合わせ",
        r"サイトマップ",
        r"プライバシー",
    )
]
GARBAGE_KEYWORDS = ("ごみ", "ゴミ", "garbage", "recycle", "資源", "収集", "分別", "品目", "出し方")
SCHEDULE_KEYWORDS = ("収集", "収集日", "曜日", "カレンダー", "schedule", "calendar")
SEPARATION_KEYWORDS = ("分別", "品目", "出し方", "recycle", "recycling")

BASE_OFFICIAL_DOMAINS = (
    "lg.jp",
    "go.jp",
    "data.go.jp",
    "opendata.metro.tokyo.lg.jp",
    "catalog.data.metro.tokyo.lg.jp",
)
SELECTED_PER_TARGET = 5

_AREA_SIGNAL = re.compile(r"地区|エリア|町|丁目|一覧|list")
_DAY_SIGNAL = re.compile(r"曜日|月曜|火曜|水曜|木曜|金曜|土曜|日曜|週|隔週|毎月|collection")
_CATEGORY_SIGNAL = re.compile(r"分別|品目|カテゴリ|可燃|不燃|資源|recycle")
_NAV_SIGNAL = re.compile(r"menu|breadcrumb|サイト内検索|戻る|トップページ")


@dataclass
class CandidateEnrichment:
    """What discovery knows about a URL before it is scored."""

    url: str
    content_type: Optional[str] = None
    title: Optional[str] = None
    preview: Optional[str] = None
    target_hints: List[str] = field(default_factory=list)
    discovered_from: Optional[str] = None
    depth: int = 0
    last_modified: Optional[str] = None
    status: Optional[int] = None
    bytes_read: Optional[int] = None
    content_length: Optional[int] = None


@dataclass
class CurationResult:
    output: DiscoverOutput
    rejected: List[DiscoverCandidate]
    selected_candidates: List[DiscoverCandidate]


@dataclass
class DiscoverStopDecision:
    ready: bool
    reason: str
    metrics: Dict[str, object] = field(default_factory=dict)
    gate_failures: List[Dict[str, str]] = field(default_factory=list)


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def _path(url: str) -> str:
    try:
        return (urlparse(url).path or "").lower()
    except ValueError:
        return ""


def normalize_url(value: str) -> Optional[str]:
    """Drop the fragment; ``None`` for anything that is not an absolute http(s) URL."""
    try:
        parsed = urlparse(str(value or "").strip())
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return urlunparse(parsed._replace(fragment="", path=parsed.path or "/"))


def source_id_from_url(url: str) -> str:
    return "src-" + hashlib.sha1(url.encode("utf-8")).hexdigest()[:10]


def derive_official_domains(official_url: Optional[str]) -> List[str]:
    domains = list(BASE_OFFICIAL_DOMAINS)
    host = safe_host(official_url or "")
    if host:
        for domain in (host, ".".join(host.split(".")[-2:])):
            if domain and domain not in domains:
                domains.append(domain)
    return domains


def detect_source_type(url: str, content_type: Optional[str] = None) -> str:
    path = _path(url)
    content_type = (content_type or "").lower()
    if path.endswith(".csv") or "csv" in content_type:
        return "csv"
    if path.endswith(".xlsx") or path.endswith(".xls"):
        return "xlsx"
    if path.endswith(".pdf") or "pdf" in content_type:
        return "pdf"
    if path.endswith((".png", ".jpg", ".jpeg", ".webp")):
        return "image"
    if path.endswith(".json") or "/api/" in path or "json" in content_type:
        return "api"
    if path.endswith(".html") or path.endswith(".htm") or "html" in content_type:
        return "html"
    return "unknown"


def _contains_any(signal: str, keywords: Sequence[str]) -> bool:
    return any(keyword.lower() in signal for keyword in keywords)


def infer_target_hints(
    url: str,
    preview: Optional[str] = None,
    title: Optional[str] = None,
    provided: Optional[Sequence[str]] = None,
) -> List[str]:
    hints: List[str] = [hint for hint in (provided or []) if hint in ("schedule", "separation")]
    signal = f"{url} {title or ''} {preview or ''}".lower()
    if _contains_any(signal, SCHEDULE_KEYWORDS) and "schedule" not in hints:
        hints.append("schedule")
    if _contains_any(signal, SEPARATION_KEYWORDS) and "separation" not in hints:
        hints.append("separation")
    if not hints and _contains_any(signal, GARBAGE_KEYWORDS):
        hints = ["schedule", "separation"]
    return hints


def score_officialness(host: str, official_domains: Sequence[str]) -> float:
    return host_trust(host, official_domains)


def score_directness(source_type: str, url: str, content_type: Optional[str] = None) -> float:
    path = _path(url)
    if source_type == "csv":
        return 1.0 if path.endswith(".csv") or "csv" in (content_type or "") else 0.75
    if source_type == "xlsx":
        return 0.95 if path.endswith(".xlsx") or path.endswith(".xls") else 0.7
    if source_type == "api":
        return 0.92 if path.endswith(".json") or "/api/" in path else 0.65
    return {"pdf": 0.55, "html": 0.28, "image": 0.22}.get(source_type, 0.1)


def score_relevance(url: str, title: Optional[str], preview: Optional[str], target_hints: Sequence[str]) -> float:
    signal = f"{url} {title or ''} {preview or ''}".lower()
    score = 0.0
    if _contains_any(signal, GARBAGE_KEYWORDS):
        score += 0.55
    if _contains_any(signal, SCHEDULE_KEYWORDS):
        score += 0.2
    if _contains_any(signal, SEPARATION_KEYWORDS):
        score += 0.2
    if len(target_hints) == 2:
        score += 0.05
    return clamp01(score)


def composite_score_for_target(target: str, evidence: DiscoverEvidenceMetrics, max_noise_ratio: float) -> float:
    """``coverage*.3 + cleanup-quality*.25 + freshness*.15 + parse*.15 + officialness*.15``."""
    coverage = evidence.coverage_schedule if target == "schedule" else evidence.coverage_separation
    noise_penalty = 1 - min(1.0, evidence.noise_ratio / max(0.0001, max_noise_ratio))
    cleanup_quality = (evidence.cleanup_pass_rate + noise_penalty) / 2
    return (
        coverage * 0.3
        + cleanup_quality * 0.25
        + evidence.freshness_score * 0.15
        + evidence.parse_success * 0.15
        + evidence.officialness * 0.15
    )


def estimate_noise_ratio(signal: str) -> float:
    utility_hits = sum(1 for pattern in UTILITY_PATTERNS if pattern.search(signal))
    nav_hits = 1 if _NAV_SIGNAL.search(signal) else 0
    return clamp01(utility_hits * 0.12 + nav_hits * 0.1)


def estimate_parse_success(source_type: str, content_type: Optional[str], directness: float) -> float:
    if source_type in MACHINE_READABLE_TYPES:
        return clamp01(0.9 + directness * 0.1)
    if source_type == "html":
        return 0.75 if "html" in (content_type or "") else 0.6
    return {"pdf": 0.5, "image": 0.35}.get(source_type, 0.4)


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        parsed = None
    if parsed is None:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def estimate_freshness_score(last_modified: Optional[str], half_life_days: int, now: Optional[datetime] = None) -> float:
    """Exponential decay from ``Last-Modified``; 0.5 when unknown, 1.0 for future dates."""
    if not last_modified:
        return 0.5
    parsed = _parse_timestamp(str(last_modified))
    if parsed is None:
        return 0.5
    age_days = ((now or datetime.now(timezone.utc)) - parsed).total_seconds() / 86_400
    if age_days <= 0:
        return 1.0
    decay = math.log(2) / max(1, half_life_days)
    return clamp01(math.exp(-decay * age_days))


def build_evidence_metrics(
    *,
    source_type: str,
    title: Optional[str],
    preview: Optional[str],
    content_type: Optional[str],
    last_modified: Optional[str],
    officialness: float,
    directness: float,
    relevance: float,
    policy: DiscoverQualityPolicy,
) -> DiscoverEvidenceMetrics:
    signal = f"{title or ''} {preview or ''}".lower()
    area = 1 if _AREA_SIGNAL.search(signal) else 0
    day = 1 if _DAY_SIGNAL.search(signal) else 0
    category = 1 if _CATEGORY_SIGNAL.search(signal) else 0
    noise_ratio = estimate_noise_ratio(signal)
    return DiscoverEvidenceMetrics(
        coverage_schedule=clamp01(0.45 * area + 0.55 * day + relevance * 0.2),
        coverage_separation=clamp01(0.6 * category + 0.2 * area + relevance * 0.2),
        noise_ratio=noise_ratio,
        cleanup_pass_rate=clamp01(1 - noise_ratio * 0.8),
        freshness_score=estimate_freshness_score(last_modified, policy.freshness_half_life_days),
        parse_success=estimate_parse_success(source_type, content_type, directness),
        officialness=officialness,
    )


def get_reject_reason(
    *,
    url: str,
    officialness: float,
    relevance: float,
    source_type: str,
    target_hints: Sequence[str],
    title: Optional[str] = None,
    preview: Optional[str] = None,
) -> Optional[str]:
    """First failing check wins; ``None`` means the candidate is accepted."""
    signal = f"{url} {title or ''} {preview or ''}"
    if any(pattern.search(signal) for pattern in UTILITY_PATTERNS):
        return "utility-navigation-page"
    if officialness < 0.25:
        return "low-trust-host"
    if relevance < 0.2:
        return "low-relevance"
    if not target_hints:
        return "unknown-target"
    if (
        "schedule" in target_hints
        and source_type in MACHINE_READABLE_TYPES
        and score_directness(source_type, url) < 0.7
    ):
        return "not-direct-machine-readable"
    return None


def _score_candidate(seed: CandidateEnrichment, official_domains: Sequence[str], policy: DiscoverQualityPolicy) -> Optional[DiscoverCandidate]:
    url = normalize_url(seed.url)
    if url is None:
        return None

    host = safe_host(url)
    source_type = detect_source_type(url, seed.content_type)
    target_hints = infer_target_hints(url, seed.preview, seed.title, seed.target_hints)
    officialness = score_officialness(host, official_domains)
    directness = score_directness(source_type, url, seed.content_type)
    relevance = score_relevance(url, seed.title, seed.preview, target_hints)
    evidence = build_evidence_metrics(
        source_type=source_type,
        title=seed.title,
        preview=seed.preview,
        content_type=seed.content_type,
        last_modified=seed.last_modified,
        officialness=officialness,
        directness=directness,
        relevance=relevance,
        policy=policy,
    )
    schedule_score = composite_score_for_target("schedule", evidence, policy.max_noise_ratio)
    separation_score = composite_score_for_target("separation", evidence, policy.max_noise_ratio)
    reject_reason = get_reject_reason(
        url=url,
        officialness=officialness,
        relevance=relevance,
        source_type=source_type,
        target_hints=target_hints,
        title=seed.title,
        preview=seed.preview,
    )

    return DiscoverCandidate(
        id=source_id_from_url(url),
        url=url,
        type=source_type,
        target_hints=target_hints,
        host=host,
        depth=max(0, seed.depth or 0),
        discovered_from=seed.discovered_from,
        officialness=officialness,
        directness=directness,
        relevance=relevance,
        score=max(schedule_score, separation_score),
        reasons=[
            f"type={source_type}",
            f"officialness={officialness:.2f}",
            f"directness={directness:.2f}",
            f"relevance={relevance:.2f}",
            f"scheduleScore={schedule_score:.2f}",
            f"separationScore={separation_score:.2f}",
            f"noiseRatio={evidence.noise_ratio:.2f}",
        ],
        evidence_metrics=evidence,
        content_type=seed.content_type,
        title=seed.title,
        preview=seed.preview,
        rejected=reject_reason is not None,
        reject_reason=reject_reason,
    )


def _target_sort_key(target: str, candidate: DiscoverCandidate, policy: DiscoverQualityPolicy) -> tuple:
    evidence = candidate.evidence_metrics
    if evidence is None:
        return (0.0, 0.0, -1.0, 0.0, 0.0, candidate.officialness)
    coverage = evidence.coverage_schedule if target == "schedule" else evidence.coverage_separation
    # composite differences under 0.01 count as ties
    composite = round(composite_score_for_target(target, evidence, policy.max_noise_ratio), 2)
    return (
        composite,
        coverage,
        -evidence.noise_ratio,
        evidence.cleanup_pass_rate,
        evidence.freshness_score,
        candidate.officialness,
    )


def rank_for_target(target: str, candidates: Sequence[DiscoverCandidate], policy: DiscoverQualityPolicy) -> List[DiscoverCandidate]:
    """Best first; remaining ties resolve by URL ascending."""
    by_url = sorted(candidates, key=lambda candidate: candidate.url)
    return sorted(by_url, key=lambda candidate: _target_sort_key(target, candidate, policy), reverse=True)


def select_per_target(candidates: Sequence[DiscoverCandidate], policy: DiscoverQualityPolicy) -> TargetSelection:
    selection: Dict[str, List[str]] = {}
    for target in ("schedule", "separation"):
        eligible = [candidate for candidate in candidates if target in candidate.target_hints]
        selection[target] = [candidate.id for candidate in rank_for_target(target, eligible, policy)[:SELECTED_PER_TARGET]]
    return TargetSelection(**selection)


def curate_candidates(
    seeds: Sequence[CandidateEnrichment],
    *,
    official_domains: Sequence[str],
    city_id: str,
    prefecture_id: str,
    official_url: Optional[str],
    max_candidates: int,
    quality_policy: Optional[DiscoverQualityPolicy] = None,
) -> CurationResult:
    """
    Score every seed, keep the best-scoring entry per canonical URL, and pick
    up to five ranked ids per target from the accepted candidates.
    """
    policy = quality_policy or DiscoverQualityPolicy()
    by_url: Dict[str, DiscoverCandidate] = {}
    for seed in seeds:
        candidate = _score_candidate(seed, official_domains, policy)
        if candidate is None:
            continue
        existing = by_url.get(candidate.url)
        if existing is None or candidate.score > existing.score:
            by_url[candidate.url] = candidate

    ranked = sorted(
        by_url.values(),
        key=lambda candidate: (
            _target_sort_key("schedule", candidate, policy),
            _target_sort_key("separation", candidate, policy),
        ),
        reverse=True,
    )[: max(0, max_candidates)]
    accepted = [candidate for candidate in ranked if not candidate.rejected]
    rejected = [candidate for candidate in ranked if candidate.rejected]
    selected = select_per_target(accepted, policy)
    selected_ids = set(selected.schedule) | set(selected.separation)

    output = DiscoverOutput(
        city_id=city_id,
        prefecture_id=prefecture_id,
        official_url=official_url,
        official_domains=list(official_domains),
        candidates=ranked,
        selected=selected,
    )
    return CurationResult(
        output=output,
        rejected=rejected,
        selected_candidates=[candidate for candidate in accepted if candidate.id in selected_ids],
    )


def has_target_coverage(selected: TargetSelection) -> bool:
    return bool(selected.schedule) and bool(selected.separation)


def evaluate_discover_stop(output: DiscoverOutput, policy: DiscoverQualityPolicy, mode: str) -> DiscoverStopDecision:
    """
    Decide whether discovery may stop.

    ``coverage`` needs one selected candidate per target. ``quality`` checks,
    in order and schedule before separation: a primary exists, it has
    evidence, its score clears the threshold, coverage, cleanup pass rate and
    noise clear their limits, and (when required) the schedule primary is
    machine readable.
    """
    schedule = output.candidate(output.selected.schedule[0]) if output.selected.schedule else None
    separation = output.candidate(output.selected.separation[0]) if output.selected.separation else None
    metrics: Dict[str, object] = {
        "schedule_primary_score": schedule.score if schedule else None,
        "separation_primary_score": separation.score if separation else None,
        "schedule_primary_type": schedule.type if schedule else None,
        "separation_primary_type": separation.type if separation else None,
        "schedule_top_evidence": schedule.evidence_metrics.model_dump() if schedule and schedule.evidence_metrics else None,
        "separation_top_evidence": separation.evidence_metrics.model_dump() if separation and separation.evidence_metrics else None,
    }

    def fail(target: str, gate: str, reason: str) -> DiscoverStopDecision:
        return DiscoverStopDecision(False, reason, metrics, [{"target": target, "reason": gate}])

    if mode == "coverage":
        if has_target_coverage(output.selected):
            return DiscoverStopDecision(True, "coverage-pass", metrics)
        return DiscoverStopDecision(False, "coverage-missing-target", metrics)

    if schedule is None:
        return fail("schedule", "missing-primary", "quality-missing-schedule-primary")
    if separation is None:
        return fail("separation", "missing-primary", "quality-missing-separation-primary")
    if schedule.evidence_metrics is None:
        return fail("schedule", "missing-evidence", "quality-schedule-missing-evidence")
    if separation.evidence_metrics is None:
        return fail("separation", "missing-evidence", "quality-separation-missing-evidence")

    schedule_evidence = schedule.evidence_metrics
    separation_evidence = separation.evidence_metrics
    checks = [
        ("schedule", schedule.score < policy.schedule_threshold, "score-below-threshold", "below-threshold"),
        ("separation", separation.score < policy.separation_threshold, "score-below-threshold", "below-threshold"),
        ("schedule", schedule_evidence.coverage_schedule < policy.min_coverage_schedule, "coverage-below-min", "coverage-below-min"),
        ("separation", separation_evidence.coverage_separation < policy.min_coverage_separation, "coverage-below-min", "coverage-below-min"),
        ("schedule", schedule_evidence.cleanup_pass_rate < policy.min_cleanup_pass_rate, "cleanup-pass-rate-below-min", "cleanup-pass-rate-below-min"),
        ("separation", separation_evidence.cleanup_pass_rate < policy.min_cleanup_pass_rate, "cleanup-pass-rate-below-min", "cleanup-pass-rate-below-min"),
        ("schedule", schedule_evidence.noise_ratio > policy.max_noise_ratio, "noise-ratio-above-max", "noise-ratio-above-max"),
        ("separation", separation_evidence.noise_ratio > policy.max_noise_ratio, "noise-ratio-above-max", "noise-ratio-above-max"),
        (
            "schedule",
            policy.require_machine_readable_schedule and schedule.type not in MACHINE_READABLE_TYPES,
            "not-machine-readable",
            "not-machine-readable",
        ),
    ]
    for target, failed, gate, suffix in checks:
        if failed:
            return fail(target, gate, f"quality-{target}-{suffix}")
    return DiscoverStopDecision(True, "quality-pass", metrics)
