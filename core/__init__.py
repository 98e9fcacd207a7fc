"""Core contracts and shared types for the acquisition pipeline."""

from .contracts import (
    MACHINE_READABLE_TYPES,
    STEP_ORDER,
    TARGETS,
    CityEntry,
    CleanupCandidateRecord,
    CleanupMetrics,
    CleanupReportEntry,
    CleanupResultRecord,
    DiscoverCandidate,
    DiscoverDomainLockPolicy,
    DiscoverEvidenceMetrics,
    DiscoverOutput,
    DiscoverQualityPolicy,
    DiscoverTimeoutPolicy,
    DiscoverToolBudgetPolicy,
    ExecutionReport,
    ExecutorResult,
    ExtractionFallback,
    ExtractionPlan,
    ExtractionTask,
    HttpArtifact,
    PrimarySelectionDecision,
    QualityGateSnapshot,
    RunArtifacts,
    RunState,
    SelectionReport,
    SourceCandidate,
    SourceDescriptor,
    SourceManifest,
    SourceManifestEntry,
    SourceQualityScore,
    StepAttemptRecord,
    StepState,
    StepStatus,
    TargetSelection,
    utcnow_iso,
)
from .options import GenerateOptions, new_run_id

__all__ = [
    "MACHINE_READABLE_TYPES",
    "STEP_ORDER",
    "TARGETS",
    "CityEntry",
    "CleanupCandidateRecord",
    "CleanupMetrics",
    "CleanupReportEntry",
    "CleanupResultRecord",
    "DiscoverCandidate",
    "DiscoverDomainLockPolicy",
    "DiscoverEvidenceMetrics",
    "DiscoverOutput",
    "DiscoverQualityPolicy",
    "DiscoverTimeoutPolicy",
    "DiscoverToolBudgetPolicy",
    "ExecutionReport",
    "ExecutorResult",
    "ExtractionFallback",
    "ExtractionPlan",
    "ExtractionTask",
    "GenerateOptions",
    "HttpArtifact",
    "PrimarySelectionDecision",
    "QualityGateSnapshot",
    "RunArtifacts",
    "RunState",
    "SelectionReport",
    "SourceCandidate",
    "SourceDescriptor",
    "SourceManifest",
    "SourceManifestEntry",
    "SourceQualityScore",
    "StepAttemptRecord",
    "StepState",
    "StepStatus",
    "TargetSelection",
    "new_run_id",
    "utcnow_iso",
]
