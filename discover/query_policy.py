"""Search-query normalization and seed-query deduplication."""

from __future__ import annotations

from dataclasses import dataclass
import re
import unicodedata
from typing import Iterable, List

_NON_WORD = re.compile(r"[\W_]+", re.UNICODE)


def normalize_query(query: str) -> str:
    """NFKC, lowercase, punctuation to spaces, tokens sorted so word order does not matter."""
    text = unicodedata.normalize("NFKC", str(query or "")).lower()
    tokens = [token for token in _NON_WORD.sub(" ", text).split() if token]
    return " ".join(sorted(tokens))


@dataclass
class QueryPolicyResult:
    queries: List[str]
    duplicate_ratio: float


def apply_query_policy(queries: Iterable[str], seed_count: int) -> QueryPolicyResult:
    """Keep the first ``seed_count`` distinct queries, counting duplicates seen on the way."""
    seen = set()
    output: List[str] = []
    duplicates = 0
    for query in queries:
        normalized = normalize_query(query)
        if not normalized:
            continue
        if normalized in seen:
            duplicates += 1
            continue
        seen.add(normalized)
        output.append(str(query).strip())
        if len(output) >= seed_count:
            break

    total = max(1, len(output) + duplicates)
    return QueryPolicyResult(queries=output, duplicate_ratio=duplicates / total)
