"""
Discover Module
Multi-round, tool-augmented discovery of candidate data sources.
"""
from .query_policy import QueryPolicyResult, apply_query_policy, normalize_query
from .domain_lock import DomainLockResult, compute_domain_lock, host_trust, safe_host
from .curation import (
    CandidateEnrichment,
    CurationResult,
    DiscoverStopDecision,
    curate_candidates,
    derive_official_domains,
    detect_source_type,
    evaluate_discover_stop,
    normalize_url,
    source_id_from_url,
)
from .link_graph import extract_candidate_links, score_link
from .tools import DiscoverToolbox, run_tool_loop
from .engine import (
    DiscoverEngine,
    DiscoverEngineResult,
    DiscoverRoundReport,
    calculate_discover_round_timeout,
    map_stop_diagnostic,
    run_discover_engine,
)

__all__ = [
    "CandidateEnrichment",
    "CurationResult",
    "DiscoverEngine",
    "DiscoverEngineResult",
    "DiscoverRoundReport",
    "DiscoverStopDecision",
    "DiscoverToolbox",
    "DomainLockResult",
    "QueryPolicyResult",
    "apply_query_policy",
    "calculate_discover_round_timeout",
    "compute_domain_lock",
    "curate_candidates",
    "derive_official_domains",
    "detect_source_type",
    "evaluate_discover_stop",
    "extract_candidate_links",
    "host_trust",
    "map_stop_diagnostic",
    "normalize_query",
    "normalize_url",
    "run_discover_engine",
    "run_tool_loop",
    "safe_host",
    "score_link",
    "source_id_from_url",
]
