"""
Web search and page summaries for the discover tool loop.
DuckDuckGo's HTML endpoint is parsed with BeautifulSoup.
"""
from dataclasses import dataclass
import logging
import re
from typing import Dict, List, Optional
from urllib.parse import parse_qs, quote_plus, urljoin, urlparse

from bs4 import BeautifulSoup
import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

DUCKDUCKGO_HTML_URL = "https://html.duckduckgo.com/html/?q="
MAX_SEARCH_RESULTS = 10


@dataclass
class SearchResult:
    title: str
    url: str
    snippet: str = ""


def _unwrap_result_url(href: str) -> str:
    """DuckDuckGo wraps outbound links in ``/l/?uddg=<target>``."""
    raw = str(href or "").strip()
    if raw.startswith("//"):
        raw = f"https:{raw}"
    parsed = urlparse(raw)
    if "duckduckgo.com" in (parsed.netloc or "") or raw.startswith("/l/"):
        target = parse_qs(parsed.query).get("uddg")
        if target:
            return target[0]
    return raw


def parse_search_results(html: str, max_results: int = MAX_SEARCH_RESULTS) -> List[SearchResult]:
    soup = BeautifulSoup(html or "", "lxml")
    results: List[SearchResult] = []
    for anchor in soup.select("a.result__a"):
        url = _unwrap_result_url(anchor.get("href", ""))
        if not url.startswith("http"):
            continue
        container = anchor.find_parent(class_="result") or anchor.parent
        snippet_node = container.select_one(".result__snippet") if container is not None else None
        results.append(
            SearchResult(
                title=anchor.get_text(" ", strip=True),
                url=url,
                snippet=snippet_node.get_text(" ", strip=True) if snippet_node is not None else "",
            )
        )
        if len(results) >= max_results:
            break
    return results


def format_search_results(query: str, results: List[SearchResult]) -> str:
    if not results:
        return f"No results found for \"{query}\""
    return "\n\n".join(
        f"{index}. {item.title}\n   {item.url}\n   {item.snippet}" for index, item in enumerate(results, start=1)
    )


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)
async def web_search(query: str, *, user_agent: str, timeout_ms: int = 20_000) -> List[SearchResult]:
    """Run one search query and return up to ten parsed results."""
    timeout = httpx.Timeout(timeout_ms / 1000.0)
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        response = await client.get(f"{DUCKDUCKGO_HTML_URL}{quote_plus(query)}", headers={"User-Agent": user_agent})
        response.raise_for_status()
        html = str(response.text or "")
    results = parse_search_results(html)
    logger.debug("web_search query=%s results=%d", query, len(results))
    return results


def extract_title(html: str) -> Optional[str]:
    soup = BeautifulSoup(html or "", "lxml")
    if soup.title is None:
        return None
    title = soup.title.get_text(" ", strip=True)
    return title or None


def extract_links(html: str, base_url: str, limit: Optional[int] = None) -> List[Dict[str, str]]:
    """Absolute http(s) links with their anchor text, first occurrence wins."""
    soup = BeautifulSoup(html or "", "lxml")
    seen = set()
    links: List[Dict[str, str]] = []
    for anchor in soup.find_all("a", href=True):
        href = str(anchor["href"]).strip()
        if not href or href.startswith(("#", "javascript:", "mailto:", "tel:")):
            continue
        absolute = urljoin(base_url, href).split("#", 1)[0]
        if not absolute.startswith(("http://", "https://")) or absolute in seen:
            continue
        seen.add(absolute)
        links.append({"url": absolute, "text": re.sub(r"\s+", " ", anchor.get_text(" ", strip=True))})
        if limit is not None and len(links) >= limit:
            break
    return links
