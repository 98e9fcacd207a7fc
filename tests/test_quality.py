from __future__ import annotations

import math

from core import CleanupMetrics
from pipeline.quality import compute_source_quality, estimate_schema_coverage, fallback_quality_score, ratio


def _metrics(**overrides) -> CleanupMetrics:
    values = dict(
        source_id="src",
        source_type="csv",
        target="schedule",
        raw_count=100,
        candidate_count=100,
        clean_count=100,
        pass_rate=1.0,
        noise_ratio=0.0,
        schema_signal_rate=1.0,
        required_field_coverage=1.0,
    )
    values.update(overrides)
    return CleanupMetrics(**values)


def test_ratio_is_clamped_and_safe() -> None:
    assert ratio(1, 0) == 0.0
    assert ratio(1, -3) == 0.0
    assert ratio(5, 2) == 1.0
    assert ratio(-1, 2) == 0.0
    assert ratio(math.nan, 2) == 0.0
    assert ratio(1, math.inf) == 0.0
    assert ratio(1, 4) == 0.25


def test_schema_coverage_prefers_machine_readable_schedules() -> None:
    assert estimate_schema_coverage("csv", "schedule") > estimate_schema_coverage("html", "schedule")
    assert estimate_schema_coverage("html", "separation") > estimate_schema_coverage("csv", "separation")


def test_quality_score_is_bounded() -> None:
    score = compute_source_quality(
        source_trust=1.0, executor_type="csv", target="schedule", duration_ms=0, metrics=_metrics(clean_count=400)
    )

    assert score.latency_cost == 1.0
    assert score.completeness == 1.0
    assert score.parse_success == 1.0
    assert 0.0 <= score.confidence <= 1.0
    assert score.freshness == 0.7


def test_noisy_slow_source_scores_lower() -> None:
    clean = compute_source_quality(
        source_trust=0.9, executor_type="csv", target="schedule", duration_ms=500, metrics=_metrics()
    )
    noisy = compute_source_quality(
        source_trust=0.9,
        executor_type="csv",
        target="schedule",
        duration_ms=120_000,
        metrics=_metrics(clean_count=40, pass_rate=0.4, noise_ratio=0.6, schema_signal_rate=0.1),
    )

    assert noisy.confidence < clean.confidence
    assert noisy.latency_cost == 0.0
    assert noisy.noise_penalty > clean.noise_penalty


def test_fallback_score_without_metrics() -> None:
    score = fallback_quality_score(confidence=0.6, records_extracted=150, metrics=None)

    assert score.parse_success == 0.5
    assert score.noise_ratio == 1.0
    assert score.cleanup_pass_rate == 0.0
    assert score.confidence == 0.6
