"""Discover tools (web_search, fetch_page) with per-round budgets, and the tool-calling loop."""

from __future__ import annotations

import json
import logging
from time import perf_counter
from typing import Any, Dict, List, Optional, Sequence

import httpx

from intelligence.llm import BaseLLM, LLMResponse, Message
from orchestrator.events import EventSink
from orchestrator.retry import CancellationToken
from sources.http import fetch_text_with_limits, strip_html_to_text
from sources.search import extract_links, extract_title, format_search_results, web_search
from utils.exceptions import NetworkError

from .query_policy import normalize_query

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 3000
TITLE_CHARS = 180
TOP_LINKS = 10


def _tool_definition(*, name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


DISCOVER_TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    _tool_definition(
        name="web_search",
        description="Search the web for information. Returns list of titles, URLs and snippets.",
        properties={"query": {"type": "string", "description": "The search query"}},
        required=["query"],
    ),
    _tool_definition(
        name="fetch_page",
        description="Fetch a web page and return readable text content. Useful for official municipal pages.",
        properties={
            "url": {"type": "string", "description": "The URL to fetch"},
            "max_length": {"type": "integer", "description": "Maximum characters to return", "default": 50000},
        },
        required=["url"],
    ),
]


class DiscoverToolbox:
    """
    Tool executor for one discover round.

    Enforces the search cap, the fetch cap and the duplicate-query ratio.
    Blocked calls return an explanatory string to the model instead of raising.
    """

    def __init__(
        self,
        *,
        search_cap: int,
        fetch_cap: int,
        max_query_dup_ratio: Optional[float],
        timeout_ms: int,
        max_download_bytes: int,
        user_agent: str,
        search_user_agent: str,
        allowed_hosts: Optional[Sequence[str]] = None,
        events: Optional[EventSink] = None,
        token: Optional[CancellationToken] = None,
    ) -> None:
        self.search_cap = search_cap
        self.fetch_cap = fetch_cap
        self.max_query_dup_ratio = max_query_dup_ratio
        self.timeout_ms = timeout_ms
        self.max_download_bytes = max_download_bytes
        self.user_agent = user_agent
        self.search_user_agent = search_user_agent
        self.allowed_hosts = list(allowed_hosts or [])
        self.events = events
        self.token = token

        self.search_used = 0
        self.fetch_used = 0
        self.query_dup_ratio = 0.0
        self.budget_exit_reason: Optional[str] = None
        self._seen_queries: set = set()
        self._duplicate_queries = 0

    @property
    def definitions(self) -> List[Dict[str, Any]]:
        return DISCOVER_TOOL_DEFINITIONS

    async def execute(self, name: str, arguments: Dict[str, Any]) -> str:
        if name == "web_search":
            return await self.web_search(str(arguments.get("query") or ""))
        if name == "fetch_page":
            max_length = arguments.get("max_length")
            return await self.fetch_page(str(arguments.get("url") or ""), int(max_length) if max_length else 50_000)
        return f"Unknown tool: {name}"

    def _emit(self, level: str, event_type: str, message: str, **extras: Any) -> None:
        if self.events is not None:
            self.events.emit(level, event_type, message, major=False, **extras)

    async def web_search(self, query: str) -> str:
        started = perf_counter()
        normalized = normalize_query(query)
        if normalized in self._seen_queries:
            self._duplicate_queries += 1
        else:
            self._seen_queries.add(normalized)

        candidate_used = self.search_used + 1
        self.query_dup_ratio = self._duplicate_queries / candidate_used
        blocked_by_dup = self.max_query_dup_ratio is not None and self.query_dup_ratio > self.max_query_dup_ratio
        blocked_by_cap = self.search_used >= self.search_cap
        if blocked_by_cap or blocked_by_dup:
            if self.budget_exit_reason is None:
                self.budget_exit_reason = "search-cap-reached" if blocked_by_cap else "query-dup-ratio-exceeded"
            self._emit(
                "warn",
                "tool.web_search",
                "web_search tool blocked by discover policy",
                phase="fail",
                tool="web_search",
                query=query,
                errorCode="SEARCH_CAP_REACHED" if blocked_by_cap else "SEARCH_DUP_RATIO_EXCEEDED",
                dupRatio=self.query_dup_ratio,
                searchCap=self.search_cap,
            )
            if blocked_by_cap:
                return "Search blocked: per-round search cap reached."
            return "Search blocked: duplicate query ratio exceeded."

        self.search_used = candidate_used
        self._emit("info", "tool.web_search", "web_search tool start", phase="start", tool="web_search", query=query)
        try:
            results = await web_search(query, user_agent=self.search_user_agent, timeout_ms=self.timeout_ms)
        except httpx.HTTPError as exc:
            self._emit("warn", "tool.web_search", "web_search tool failed", phase="fail", tool="web_search", errorMessage=str(exc))
            return f"Search failed: {exc}"
        text = format_search_results(query, results)
        self._emit(
            "info",
            "tool.web_search",
            "web_search tool end",
            phase="end",
            tool="web_search",
            durationMs=int((perf_counter() - started) * 1000),
            bytes=len(text),
        )
        return text

    async def fetch_page(self, url: str, max_length: int = 50_000) -> str:
        started = perf_counter()
        if self.fetch_used >= self.fetch_cap:
            if self.budget_exit_reason is None:
                self.budget_exit_reason = "fetch-cap-reached"
            self._emit(
                "warn",
                "tool.fetch_page",
                "fetch_page tool blocked by discover policy",
                phase="fail",
                tool="fetch_page",
                url=url,
                errorCode="FETCH_CAP_REACHED",
                fetchCap=self.fetch_cap,
            )
            return "Fetch blocked: per-round fetch cap reached."

        self.fetch_used += 1
        self._emit("info", "tool.fetch_page", "fetch_page tool start", phase="start", tool="fetch_page", url=url)
        try:
            result = await fetch_text_with_limits(
                url,
                timeout_ms=self.timeout_ms,
                max_bytes=self.max_download_bytes,
                token=self.token,
                allowed_hosts=self.allowed_hosts,
                user_agent=self.user_agent,
                events=self.events,
            )
        except NetworkError as exc:
            # blocked host; the model gets the reason and may pick another URL
            return f"Fetch failed: {exc.message}"

        if not result.ok:
            self._emit(
                "warn",
                "tool.fetch_page",
                "fetch_page tool failed",
                phase="fail",
                tool="fetch_page",
                durationMs=int((perf_counter() - started) * 1000),
                errorMessage=result.error,
            )
            return f"Fetch failed: {result.error}"

        body = result.body or ""
        limit = min(max_length, PREVIEW_CHARS)
        is_html = "html" in (result.content_type or "")
        preview = strip_html_to_text(body)[:limit] if is_html else body[:limit]
        title = extract_title(body) if is_html else None
        summary = {
            "url": url,
            "statusCode": result.status,
            "contentType": result.content_type,
            "title": title[:TITLE_CHARS] if title else None,
            "preview": preview,
            "topLinks": [link["url"] for link in extract_links(body, url, limit=TOP_LINKS)] if is_html else [],
        }
        self._emit(
            "info",
            "tool.fetch_page",
            "fetch_page tool end",
            phase="end",
            tool="fetch_page",
            durationMs=int((perf_counter() - started) * 1000),
            bytes=len(body),
            statusCode=result.status,
        )
        return json.dumps(summary, ensure_ascii=False)


async def run_tool_loop(
    llm: BaseLLM,
    messages: List[Message],
    toolbox: DiscoverToolbox,
    *,
    max_steps: int,
    json_schema: Optional[Dict[str, Any]] = None,
) -> LLMResponse:
    """
    Let the model call tools until it answers without one or ``max_steps`` runs out.

    Each tool result is fed back as a user observation. When the step budget
    is spent, one last call without tools asks for the final answer.
    """
    for step in range(1, max(1, max_steps) + 1):
        response = await llm.acomplete(messages, tools=toolbox.definitions)
        if not response.has_tool_calls:
            return response

        for tool_call in response.tool_calls or []:
            observation = await toolbox.execute(tool_call.name, tool_call.arguments or {})
            logger.debug("tool step=%d name=%s bytes=%d", step, tool_call.name, len(observation))
            messages.append(Message.assistant(response.content or f"call {tool_call.name}"))
            messages.append(Message.user(f"[{tool_call.name} result]\n{observation}"))

    messages.append(Message.user("Tool budget exhausted. Return the final JSON answer now."))
    return await llm.acomplete(messages, json_schema=json_schema)
