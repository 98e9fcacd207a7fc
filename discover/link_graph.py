"""Single-hop outbound link extraction for discover enrichment."""

from __future__ import annotations

import re
from typing import Dict, List, Optional, Sequence

from sources.search import extract_links

from .curation import CandidateEnrichment, detect_source_type

GARBAGE_KEYWORD = re.compile(r"ごみ|ゴミ|garbage|recycle|資源|収集|分別|品目|出し方", re.IGNORECASE)
DIRECT_DATA_HINT = re.compile(r"resource|download|dataset|api|opendata|csv|xlsx|json", re.IGNORECASE)
DIRECT_DATA_PATH = re.compile(r"resource/[a-f0-9-]{16,}|download|api/|dataset/", re.IGNORECASE)
UTILITY_LINK = re.compile(r"sitemap|privacy|cookie|login|問い合わせ", re.IGNORECASE)
MIN_LINK_SCORE = 1.0


def score_link(url: str, text: str) -> float:
    signal = f"{url} {text}"
    source_type = detect_source_type(url)
    score = 0.0
    if source_type in ("csv", "xlsx", "api"):
        score += 2.2
    elif source_type == "pdf":
        score += 1.1
    elif source_type == "html":
        score += 0.8
    if GARBAGE_KEYWORD.search(signal):
        score += 1.3
    if DIRECT_DATA_HINT.search(signal):
        score += 1.2
    if DIRECT_DATA_PATH.search(url):
        score += 1.0
    if UTILITY_LINK.search(signal):
        score -= 1.6
    return score


def extract_candidate_links(
    html: str,
    base_url: str,
    *,
    depth: int,
    max_links: int,
    target_hints: Optional[Sequence[str]] = None,
) -> List[CandidateEnrichment]:
    """Links scoring at least 1.0, in document order, deduplicated, one hop deeper than the page."""
    found: Dict[str, CandidateEnrichment] = {}
    for link in extract_links(html, base_url):
        url = link["url"]
        if url in found or score_link(url, link["text"]) < MIN_LINK_SCORE:
            continue
        found[url] = CandidateEnrichment(
            url=url,
            discovered_from=base_url,
            depth=depth + 1,
            target_hints=list(target_hints or []),
            title=link["text"][:120],
        )
        if len(found) >= max_links:
            break
    return list(found.values())
