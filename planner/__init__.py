"""
Planner Module
Maps downloaded sources to executor tasks.
"""
from .capability import CAPABILITY_MATRIX, CapabilityEntry, capability_for, required_features_for_source_type
from .plan import build_extraction_plan, build_priority_index, task_timeout_ms

__all__ = [
    "CAPABILITY_MATRIX",
    "CapabilityEntry",
    "build_extraction_plan",
    "build_priority_index",
    "capability_for",
    "required_features_for_source_type",
    "task_timeout_ms",
]
