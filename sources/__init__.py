"""Web fetch and search collaborators."""

from .http import (
    FetchTextResult,
    decode_content,
    fetch_text_with_limits,
    looks_like_html,
    strip_html_to_text,
    validate_allowed_host,
)
from .search import (
    SearchResult,
    extract_links,
    extract_title,
    format_search_results,
    parse_search_results,
    web_search,
)

__all__ = [
    "FetchTextResult",
    "SearchResult",
    "decode_content",
    "extract_links",
    "extract_title",
    "fetch_text_with_limits",
    "format_search_results",
    "looks_like_html",
    "parse_search_results",
    "strip_html_to_text",
    "validate_allowed_host",
    "web_search",
]
