"""Per-run options for a city generation run."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from .contracts import (
    STEP_ORDER,
    DiscoverDomainLockPolicy,
    DiscoverQualityPolicy,
    DiscoverTimeoutPolicy,
    DiscoverToolBudgetPolicy,
)


def new_run_id() -> str:
    return f"run_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}_{uuid4().hex[:8]}"


class GenerateOptions(BaseModel):
    """Every knob one pipeline run reads. Built from settings plus overrides."""

    city: str
    prefecture: str
    run_id: str = Field(default_factory=new_run_id)
    work_dir: str = ""
    data_root: str = "data"
    url: Optional[str] = None
    event_file: Optional[str] = None
    log_format: Literal["pretty", "compact"] = "pretty"

    resume: bool = False
    mode: Literal["fast", "thorough"] = "fast"
    skip_to: Optional[str] = None
    stop_after: Optional[str] = None
    force_steps: List[str] = Field(default_factory=list)
    planner_only: bool = False
    executor_only: bool = False
    source_types: Optional[List[str]] = None

    max_total_ms: int = 20 * 60_000
    max_step_ms: int = 5 * 60_000
    max_model_ms: int = 60_000
    http_timeout_ms: int = 20_000
    max_download_bytes: int = 20 * 1024 * 1024

    discover_max_steps: int = 20
    discover_max_rounds: int = 3
    discover_max_candidates: int = 30
    discover_max_fetches: int = 20
    discover_link_depth: int = 1
    discover_allow_hosts: Optional[List[str]] = None
    discover_stop_mode: Literal["coverage", "quality"] = "quality"
    discover_quality_policy: DiscoverQualityPolicy = Field(default_factory=DiscoverQualityPolicy)
    discover_timeout_policy: DiscoverTimeoutPolicy = Field(default_factory=DiscoverTimeoutPolicy)
    discover_tool_budget_policy: DiscoverToolBudgetPolicy = Field(default_factory=DiscoverToolBudgetPolicy)
    discover_domain_lock_policy: DiscoverDomainLockPolicy = Field(default_factory=DiscoverDomainLockPolicy)

    selection_mode: Literal["hybrid", "deterministic", "llm-first"] = "hybrid"
    selection_top_k: int = 3
    selection_max_model_ms: int = 12_000
    selection_confidence_threshold: float = 0.7
    selection_evidence_bytes: int = 12_000

    cleanup_mode: Literal["deterministic", "hybrid"] = "hybrid"
    cleanup_max_model_ms: int = 8_000
    cleanup_chunk_bytes: int = 6_000
    cleanup_max_chunks: int = 8
    cleanup_min_pass_rate: float = 0.9
    cleanup_max_noise_ratio: float = 0.08

    html_follow_links: bool = True
    html_max_follow_links: int = 2
    html_link_types: List[str] = Field(default_factory=lambda: ["html", "csv", "xlsx", "pdf", "api"])
    html_min_block_score: float = 1.8
    html_cleanup_failure_policy: Literal["skip-source", "fail-run", "raw-fallback"] = "skip-source"

    @field_validator("city", "prefecture", mode="before")
    @classmethod
    def _non_empty_text(cls, value: Any) -> str:
        text = str(value or "").strip()
        if not text:
            raise ValueError("value is required")
        return text

    @field_validator("skip_to", "stop_after", mode="before")
    @classmethod
    def _known_step(cls, value: Any) -> Optional[str]:
        text = str(value or "").strip()
        if not text:
            return None
        if text not in STEP_ORDER:
            raise ValueError(f"unknown step: {text}")
        return text

    @field_validator("force_steps", mode="before")
    @classmethod
    def _known_steps(cls, value: Any) -> List[str]:
        steps = [str(item or "").strip() for item in list(value or []) if str(item or "").strip()]
        unknown = [step for step in steps if step not in STEP_ORDER]
        if unknown:
            raise ValueError(f"unknown steps: {', '.join(unknown)}")
        return steps

    @classmethod
    def from_settings(cls, city: str, prefecture: str, settings: Any = None, **overrides: Any) -> "GenerateOptions":
        """Build options from the environment settings, then apply explicit overrides."""
        if settings is None:
            from config import get_settings

            settings = get_settings()

        pipeline = settings.pipeline
        discover = settings.discover
        cleanup = settings.cleanup
        html = settings.html
        selection = settings.selection

        values = {
            "city": city,
            "prefecture": prefecture,
            "data_root": pipeline.data_root,
            "log_format": pipeline.log_format,
            "mode": pipeline.mode,
            "max_total_ms": pipeline.max_total_ms,
            "max_step_ms": pipeline.max_step_ms,
            "max_model_ms": pipeline.max_model_ms,
            "http_timeout_ms": settings.http.timeout_ms,
            "max_download_bytes": settings.http.max_download_bytes,
            "discover_max_steps": discover.max_steps,
            "discover_max_rounds": discover.max_rounds,
            "discover_max_candidates": discover.max_candidates,
            "discover_max_fetches": discover.max_fetches,
            "discover_link_depth": discover.link_depth,
            "discover_stop_mode": discover.stop_mode,
            "discover_quality_policy": DiscoverQualityPolicy(
                schedule_threshold=discover.schedule_threshold,
                separation_threshold=discover.separation_threshold,
                require_machine_readable_schedule=discover.require_machine_readable_schedule,
                min_coverage_schedule=discover.min_coverage_schedule,
                min_coverage_separation=discover.min_coverage_separation,
                max_noise_ratio=discover.max_noise_ratio,
                min_cleanup_pass_rate=discover.min_cleanup_pass_rate,
                freshness_half_life_days=discover.freshness_half_life_days,
            ),
            "discover_timeout_policy": DiscoverTimeoutPolicy(
                base_ms=discover.timeout_base_ms,
                step_ms=discover.timeout_step_ms,
                max_ms=discover.timeout_max_ms,
                soft_fail=discover.soft_fail,
            ),
            "discover_tool_budget_policy": DiscoverToolBudgetPolicy(
                search_cap=discover.search_cap,
                fetch_cap=discover.fetch_cap,
                seed_query_count=discover.seed_query_count,
                max_host_switches=discover.max_host_switches,
                max_query_dup_ratio=discover.max_query_dup_ratio,
            ),
            "discover_domain_lock_policy": DiscoverDomainLockPolicy(
                require_official_domain=discover.require_official_domain,
                no_official_domain_strategy=discover.no_official_domain_strategy,
            ),
            "selection_mode": selection.mode,
            "selection_top_k": selection.top_k,
            "selection_max_model_ms": selection.max_model_ms,
            "selection_confidence_threshold": selection.confidence_threshold,
            "selection_evidence_bytes": selection.evidence_bytes,
            "cleanup_mode": cleanup.mode,
            "cleanup_max_model_ms": cleanup.max_model_ms,
            "cleanup_chunk_bytes": cleanup.chunk_bytes,
            "cleanup_max_chunks": cleanup.max_chunks,
            "cleanup_min_pass_rate": cleanup.min_pass_rate,
            "cleanup_max_noise_ratio": cleanup.max_noise_ratio,
            "html_follow_links": html.follow_links,
            "html_max_follow_links": html.max_follow_links,
            "html_link_types": [item.strip() for item in html.link_types.split(",") if item.strip()],
            "html_min_block_score": html.min_block_score,
            "html_cleanup_failure_policy": html.cleanup_failure_policy,
        }
        values.update(overrides)
        options = cls(**values)
        if not options.work_dir:
            options.work_dir = f"{pipeline.work_root.rstrip('/')}/{options.run_id}"
        return options
