"""Source quality composite shared by extraction results and selection."""

from __future__ import annotations

import math

from core import CleanupMetrics, SourceQualityScore

FRESHNESS_DEFAULT = 0.7
COMPLETENESS_RECORDS = 300
LATENCY_HORIZON_MS = 60_000


def ratio(numerator: float, denominator: float) -> float:
    """``numerator / denominator`` clamped to [0, 1]; 0 for non-finite or non-positive denominators."""
    if not math.isfinite(numerator) or not math.isfinite(denominator) or denominator <= 0:
        return 0.0
    return max(0.0, min(1.0, numerator / denominator))


def estimate_schema_coverage(executor_type: str, target: str) -> float:
    if target == "schedule":
        if executor_type in ("api", "xlsx", "csv"):
            return 0.9
        if executor_type == "html":
            return 0.68
        return 0.5
    if executor_type in ("api", "html"):
        return 0.9
    if executor_type in ("csv", "xlsx"):
        return 0.58
    return 0.52


def compute_source_quality(
    *,
    source_trust: float,
    executor_type: str,
    target: str,
    duration_ms: int,
    metrics: CleanupMetrics,
) -> SourceQualityScore:
    parse_success = ratio(metrics.clean_count, max(metrics.raw_count, 1))
    schema_coverage = estimate_schema_coverage(executor_type, target)
    noise_penalty = max(0.0, min(1.0, metrics.noise_ratio * 0.8 + (1 - metrics.pass_rate) * 0.2))
    confidence = (
        source_trust * 0.2
        + parse_success * 0.16
        + schema_coverage * 0.15
        + (1 - noise_penalty) * 0.1
        + metrics.pass_rate * 0.14
        + (1 - metrics.noise_ratio) * 0.1
        + metrics.schema_signal_rate * 0.08
        + metrics.required_field_coverage * 0.07
    )
    return SourceQualityScore(
        officialness=source_trust,
        parse_success=parse_success,
        schema_coverage=schema_coverage,
        noise_penalty=noise_penalty,
        cleanup_pass_rate=metrics.pass_rate,
        noise_ratio=metrics.noise_ratio,
        schema_signal_rate=metrics.schema_signal_rate,
        required_field_coverage=metrics.required_field_coverage,
        freshness=FRESHNESS_DEFAULT,
        latency_cost=max(0.0, min(1.0, 1 - duration_ms / LATENCY_HORIZON_MS)),
        completeness=ratio(metrics.clean_count, COMPLETENESS_RECORDS),
        confidence=max(0.0, min(1.0, confidence)),
    )


def fallback_quality_score(
    *,
    confidence: float,
    records_extracted: int,
    metrics: CleanupMetrics | None,
) -> SourceQualityScore:
    """Quality estimate for results that carry no score of their own."""
    parse_success = ratio(records_extracted, COMPLETENESS_RECORDS)
    return SourceQualityScore(
        officialness=confidence,
        parse_success=parse_success,
        schema_coverage=parse_success,
        noise_penalty=1 - parse_success,
        cleanup_pass_rate=metrics.pass_rate if metrics else 0.0,
        noise_ratio=metrics.noise_ratio if metrics else 1.0,
        schema_signal_rate=metrics.schema_signal_rate if metrics else 0.0,
        required_field_coverage=metrics.required_field_coverage if metrics else 0.0,
        freshness=0.6,
        latency_cost=0.6,
        completeness=parse_success,
        confidence=max(0.0, min(1.0, confidence)),
    )
