"""Canonical data contracts for the acquisition pipeline."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


Target = Literal["schedule", "separation"]
SourceType = Literal["csv", "xlsx", "pdf", "image", "html", "api", "unknown"]
ExecutorType = Literal["csv", "xlsx", "pdf", "image", "html", "api"]
StepName = Literal["discover", "download", "extraction-plan", "extract", "select", "convert", "validate"]

TARGETS: tuple = ("schedule", "separation")
STEP_ORDER: tuple = ("discover", "download", "extraction-plan", "extract", "select", "convert", "validate")
MACHINE_READABLE_TYPES = frozenset({"csv", "xlsx", "api"})


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


class StepStatus(str, Enum):
    """Lifecycle of one pipeline step."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepAttemptRecord(BaseModel):
    attempt: int
    started_at: str
    ended_at: Optional[str] = None
    status: Literal["running", "succeeded", "failed"] = "running"
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class StepState(BaseModel):
    """Persisted status of one step, including its attempt history."""

    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    message: Optional[str] = None
    message_updated_at: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    last_error_code: Optional[str] = None
    last_error_message: Optional[str] = None
    history: List[StepAttemptRecord] = Field(default_factory=list)


class HttpArtifact(BaseModel):
    """Record of one HTTP fetch performed during a step."""

    step: str
    url: str
    final_url: Optional[str] = None
    filename: Optional[str] = None
    status: Optional[int] = None
    content_type: Optional[str] = None
    last_modified: Optional[str] = None
    content_length: Optional[int] = None
    bytes_read: Optional[int] = None
    parser_hints: List[str] = Field(default_factory=list)
    ok: bool = False
    error: Optional[str] = None
    timestamp: str = Field(default_factory=utcnow_iso)


class RunArtifacts(BaseModel):
    downloaded_files: List[str] = Field(default_factory=list)
    output_paths: List[str] = Field(default_factory=list)
    http: List[HttpArtifact] = Field(default_factory=list)


# --- discover -----------------------------------------------------------------


class DiscoverEvidenceMetrics(BaseModel):
    """Per-candidate estimate of how useful the source will be, all in [0, 1]."""

    coverage_schedule: float = 0.0
    coverage_separation: float = 0.0
    noise_ratio: float = 0.0
    cleanup_pass_rate: float = 0.0
    freshness_score: float = 0.5
    parse_success: float = 0.0
    officialness: float = 0.0


class DiscoverCandidate(BaseModel):
    """A scored URL. Identity is the canonical URL (``id`` is derived from it)."""

    id: str
    url: str
    type: SourceType = "unknown"
    target_hints: List[Target] = Field(default_factory=list)
    host: str = ""
    depth: int = 0
    discovered_from: Optional[str] = None
    officialness: float = 0.0
    directness: float = 0.0
    relevance: float = 0.0
    score: float = 0.0
    reasons: List[str] = Field(default_factory=list)
    content_type: Optional[str] = None
    title: Optional[str] = None
    preview: Optional[str] = None
    rejected: bool = False
    reject_reason: Optional[str] = None
    evidence_metrics: Optional[DiscoverEvidenceMetrics] = None


class TargetSelection(BaseModel):
    schedule: List[str] = Field(default_factory=list)
    separation: List[str] = Field(default_factory=list)

    def for_target(self, target: str) -> List[str]:
        return list(self.schedule if target == "schedule" else self.separation)


class DiscoverOutput(BaseModel):
    """Result of discovery; ``selected`` holds ranked ids, not objects."""

    version: str = "2.0.0"
    city_id: str
    prefecture_id: str
    official_url: Optional[str] = None
    official_domains: List[str] = Field(default_factory=list)
    candidates: List[DiscoverCandidate] = Field(default_factory=list)
    selected: TargetSelection = Field(default_factory=TargetSelection)

    def candidate(self, candidate_id: str) -> Optional[DiscoverCandidate]:
        for item in self.candidates:
            if item.id == candidate_id:
                return item
        return None


class DiscoverQualityPolicy(BaseModel):
    schedule_threshold: float = 0.82
    separation_threshold: float = 0.78
    require_machine_readable_schedule: bool = True
    scoring_mode: Literal["evidence-v1"] = "evidence-v1"
    min_coverage_schedule: float = 0.75
    min_coverage_separation: float = 0.7
    max_noise_ratio: float = 0.12
    min_cleanup_pass_rate: float = 0.85
    freshness_half_life_days: int = 365


class DiscoverTimeoutPolicy(BaseModel):
    base_ms: int = 35_000
    step_ms: int = 10_000
    max_ms: int = 90_000
    soft_fail: bool = True


class DiscoverToolBudgetPolicy(BaseModel):
    search_cap: int = 3
    fetch_cap: int = 12
    seed_query_count: int = 3
    max_host_switches: int = 4
    max_query_dup_ratio: float = 0.15


class DiscoverDomainLockPolicy(BaseModel):
    require_official_domain: bool = True
    no_official_domain_strategy: Literal["fail-fast", "emergency-burst"] = "emergency-burst"


# --- download / plan ----------------------------------------------------------


class SourceManifestEntry(BaseModel):
    source_id: str
    url: str
    type: SourceType
    target_hints: List[Target] = Field(default_factory=list)
    local_path: Optional[str] = None
    filename: Optional[str] = None
    status: Literal["downloaded", "failed"]
    final_url: Optional[str] = None
    content_type: Optional[str] = None
    last_modified: Optional[str] = None
    content_length: Optional[int] = None
    bytes_read: Optional[int] = None
    error: Optional[str] = None


class SourceManifest(BaseModel):
    run_id: str
    created_at: str = Field(default_factory=utcnow_iso)
    entries: List[SourceManifestEntry] = Field(default_factory=list)


class SourceDescriptor(BaseModel):
    id: str
    type: SourceType
    url: str
    mime: Optional[str] = None
    last_modified: Optional[str] = None
    local_path: str
    priority: int = 99_999
    trust_score: float = 0.6


class ExtractionFallback(BaseModel):
    executor_type: ExecutorType
    reason: str


class ExtractionTask(BaseModel):
    """One (source, target) unit of extraction work."""

    id: str
    source_id: str
    source_type: SourceType
    executor_type: ExecutorType
    target: Target
    output_schema: Literal["schedule-raw", "separation-raw"]
    timeout_ms: int
    fallback: List[ExtractionFallback] = Field(default_factory=list)
    required_features: List[str] = Field(default_factory=list)
    preferred_path: Literal["local", "native"] = "local"


class ExtractionPlan(BaseModel):
    version: str = "2.0.0"
    run_id: str
    created_at: str = Field(default_factory=utcnow_iso)
    sources: List[SourceDescriptor] = Field(default_factory=list)
    tasks: List[ExtractionTask] = Field(default_factory=list)
    candidate_rankings: Dict[str, List[str]] = Field(default_factory=dict)


# --- cleanup / quality --------------------------------------------------------


class SourceQualityScore(BaseModel):
    """Weighted quality composite shared by extraction and selection."""

    officialness: float
    parse_success: float
    schema_coverage: float
    noise_penalty: float
    cleanup_pass_rate: float = 0.0
    noise_ratio: float = 0.0
    schema_signal_rate: float = 0.0
    required_field_coverage: float = 0.0
    freshness: float
    latency_cost: float
    completeness: float
    confidence: float


class CleanupCandidateRecord(BaseModel):
    id: str
    source_id: str
    source_type: SourceType
    target: Target
    source_record_index: int
    text: str
    canonical_text: str
    fields: Dict[str, str] = Field(default_factory=dict)
    flags: List[str] = Field(default_factory=list)


class CleanupResultRecord(BaseModel):
    id: str
    source_id: str
    source_type: SourceType
    target: Target
    source_record_index: int
    action: Literal["keep", "drop", "rename"]
    text: str
    normalized_fields: Dict[str, str] = Field(default_factory=dict)
    confidence: float
    reason_tags: List[str] = Field(default_factory=list)
    flags: List[str] = Field(default_factory=list)


class CleanupMetrics(BaseModel):
    source_id: str
    source_type: SourceType
    target: Target
    raw_count: int = 0
    candidate_count: int = 0
    clean_count: int = 0
    dropped_count: int = 0
    pass_rate: float = 0.0
    noise_ratio: float = 0.0
    schema_signal_rate: float = 0.0
    required_field_coverage: float = 0.0
    chunks_processed: int = 0
    llm_chunks: int = 0
    fallback_chunks: int = 0
    deterministic_drops: int = 0
    degraded: bool = False
    veto_reasons: List[str] = Field(default_factory=list)


class CleanupReportEntry(BaseModel):
    source_id: str
    source_type: str
    target: Target
    status: Literal["applied", "degraded", "failed"]
    reason: Optional[str] = None
    metrics: CleanupMetrics
    paths: Dict[str, str] = Field(default_factory=dict)


class ExecutorResult(BaseModel):
    task_id: str
    source_id: str
    executor_type: str
    target: Target
    status: Literal["succeeded", "failed", "skipped"]
    records_extracted: int = 0
    confidence: float = 0.0
    source_quality: Optional[SourceQualityScore] = None
    duration_ms: int = 0
    errors: List[str] = Field(default_factory=list)
    output_path: Optional[str] = None
    raw_path: Optional[str] = None
    candidate_path: Optional[str] = None
    clean_path: Optional[str] = None
    cleanup_applied: bool = False
    cleanup_status: Optional[Literal["applied", "skipped", "failed"]] = None
    cleanup_metrics: Optional[CleanupMetrics] = None
    skip_reason: Optional[str] = None


class ExecutionReport(BaseModel):
    run_id: str
    started_at: str
    finished_at: str
    results: List[ExecutorResult] = Field(default_factory=list)
    cleanup_report: List[CleanupReportEntry] = Field(default_factory=list)


# --- selection ----------------------------------------------------------------


class QualityGateSnapshot(BaseModel):
    confidence_threshold: float
    min_pass_rate: float
    max_noise_ratio: float
    min_schema_signal_rate: float


class SourceCandidate(BaseModel):
    """A cleaned source competing for one target; ``score`` is its rank score."""

    source_id: str
    source_type: str
    target: Target
    score: float
    features: SourceQualityScore
    records: int = 0
    confidence: float = 0.0
    tags: List[str] = Field(default_factory=list)
    sample_evidence_path: Optional[str] = None


class PrimarySelectionDecision(BaseModel):
    """Final per-target source choice; never revised once returned."""

    target: Target
    primary_source_id: str
    secondary_source_ids: List[str] = Field(default_factory=list)
    reason: str
    llm_decision_trace_id: Optional[str] = None
    vetoed: bool = False
    veto_reasons: List[str] = Field(default_factory=list)
    quality_gate_snapshot: Optional[QualityGateSnapshot] = None


class SelectionReport(BaseModel):
    run_id: str
    created_at: str = Field(default_factory=utcnow_iso)
    mode: str
    top_k: int
    quality_gate_snapshot: QualityGateSnapshot
    candidates: Dict[str, List[SourceCandidate]] = Field(default_factory=dict)
    decisions: Dict[str, PrimarySelectionDecision] = Field(default_factory=dict)


# --- run state ----------------------------------------------------------------


class RunState(BaseModel):
    """Durable record of one run; the only state a resumed run trusts."""

    version: str = "2.0.0"
    run_id: str
    city: str
    prefecture: str
    started_at: str = Field(default_factory=utcnow_iso)
    finished_at: Optional[str] = None
    step_statuses: Dict[str, StepState] = Field(default_factory=dict)
    artifacts: RunArtifacts = Field(default_factory=RunArtifacts)
    sources: Optional[DiscoverOutput] = None
    source_manifest_path: Optional[str] = None
    discover_report_path: Optional[str] = None
    extraction_plan_path: Optional[str] = None
    execution_report_path: Optional[str] = None
    selection_report_path: Optional[str] = None


class CityEntry(BaseModel):
    """Registry row in ``data/cities.json``."""

    id: str
    name_ja: str
    prefecture_ja: str
    source_url: str = ""
    data_path: str
    last_verified: str

    @field_validator("id", "name_ja", "prefecture_ja", "data_path", mode="before")
    @classmethod
    def _non_empty_text(cls, value: Any) -> str:
        text = str(value or "").strip()
        if not text:
            raise ValueError("value is required")
        return text
