"""
Pipeline Module
Run context, cleanup, quality scoring and primary source selection.

The step modules and :func:`pipeline.runtime.generate_city` are imported
from their own modules; they depend on ``executors`` which in turn uses
the cleanup phase defined here.
"""
from .context import Converter, PipelineContext, RuntimeDirs, Validator
from .quality import compute_source_quality, fallback_quality_score, ratio
from .cleanup import (
    CleanupInput,
    CleanupOutcome,
    apply_model_decisions,
    canonicalize_text,
    evaluate_cleanup_gate,
    run_cleanup_phase,
)
from .selection import (
    SelectionPolicy,
    SelectionResult,
    choose_target_primary,
    collect_candidates,
    select_primary_sources,
)

__all__ = [
    "CleanupInput",
    "CleanupOutcome",
    "Converter",
    "PipelineContext",
    "RuntimeDirs",
    "SelectionPolicy",
    "SelectionResult",
    "Validator",
    "apply_model_decisions",
    "canonicalize_text",
    "choose_target_primary",
    "collect_candidates",
    "compute_source_quality",
    "evaluate_cleanup_gate",
    "fallback_quality_score",
    "ratio",
    "run_cleanup_phase",
    "select_primary_sources",
]
