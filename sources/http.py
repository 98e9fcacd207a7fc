"""Bounded HTTP fetches for discovery, download and the fetch_page tool."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import html as html_lib
import logging
import re
from time import perf_counter
from typing import List, Optional, Sequence
from urllib.parse import urlparse

import httpx

from orchestrator.events import EventSink
from orchestrator.retry import CancellationToken, run_cancellable
from utils.exceptions import NetworkError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; gomi-data-collector/2.0)"


@dataclass
class FetchTextResult:
    ok: bool
    status: Optional[int] = None
    content_type: Optional[str] = None
    content_length: Optional[int] = None
    last_modified: Optional[str] = None
    bytes_read: int = 0
    body: Optional[str] = None
    content: bytes = b""
    error: Optional[str] = None
    final_url: Optional[str] = None
    retryable: bool = False
    headers: dict = field(default_factory=dict)


def validate_allowed_host(url: str, allowed_hosts: Optional[Sequence[str]] = None) -> None:
    """Raise a non-retryable ``NetworkError`` when ``url`` is outside ``allowed_hosts``."""
    if not allowed_hosts:
        return
    host = (urlparse(url).hostname or "").lower()
    for candidate in allowed_hosts:
        normalized = str(candidate or "").lower()
        if normalized and (host == normalized or host.endswith(f".{normalized}")):
            return
    raise NetworkError(
        f"Blocked host {host}. Allowed hosts: {', '.join(allowed_hosts)}",
        retryable=False,
    )


def decode_content(data: bytes) -> str:
    """UTF-8 strict, then Shift-JIS, then lossy UTF-8."""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        pass
    try:
        return data.decode("shift_jis")
    except UnicodeDecodeError:
        return data.decode("utf-8", errors="replace")


def looks_like_html(content_type: Optional[str], url: str) -> bool:
    if content_type and "text/html" in content_type:
        return True
    return bool(re.search(r"\.html?$", urlparse(url).path or ""))


_STRIP_RULES: List[tuple] = [
    (re.compile(r"<(script|style|noscript)[^>]*>[\s\S]*?</\1>", re.I), " "),
    (re.compile(r"</t[hd]>", re.I), " | "),
    (re.compile(r"</tr>", re.I), "\n"),
    (re.compile(r"<li[^>]*>", re.I), "- "),
    (re.compile(r"</li>", re.I), "\n"),
    (re.compile(r"<h[1-6][^>]*>", re.I), "\n## "),
    (re.compile(r"</h[1-6]>", re.I), "\n"),
    (re.compile(r"<br\s*/?>", re.I), "\n"),
    (re.compile(r"</p>", re.I), "\n\n"),
    (re.compile(r"</div>", re.I), "\n"),
    (re.compile(r"<[^>]+>"), ""),
]


def strip_html_to_text(html: str) -> str:
    text = str(html or "")
    for pattern, replacement in _STRIP_RULES:
        text = pattern.sub(replacement, text)
    text = html_lib.unescape(text).replace("\xa0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


async def _stream_get(url: str, *, timeout_ms: int, max_bytes: int, user_agent: str) -> FetchTextResult:
    timeout = httpx.Timeout(max(0.001, timeout_ms / 1000.0))
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        async with client.stream("GET", url, headers={"User-Agent": user_agent}) as response:
            content_type = response.headers.get("content-type")
            length_header = response.headers.get("content-length")
            content_length = int(length_header) if length_header and length_header.isdigit() else None
            last_modified = response.headers.get("last-modified")

            if response.status_code >= 400:
                retryable = response.status_code == 429 or response.status_code >= 500
                raise NetworkError(
                    f"HTTP {response.status_code} {response.reason_phrase} for {url}",
                    retryable=retryable,
                    status=response.status_code,
                )
            if content_length is not None and content_length > max_bytes:
                raise NetworkError(
                    f"Response too large for {url}: {content_length} bytes > {max_bytes} bytes",
                    retryable=False,
                )

            chunks: List[bytes] = []
            bytes_read = 0
            async for chunk in response.aiter_bytes():
                bytes_read += len(chunk)
                if bytes_read > max_bytes:
                    raise NetworkError(
                        f"Response too large for {url}: {bytes_read} bytes > {max_bytes} bytes",
                        retryable=False,
                    )
                chunks.append(chunk)

            return FetchTextResult(
                ok=True,
                status=response.status_code,
                content_type=content_type,
                content_length=content_length,
                last_modified=last_modified,
                bytes_read=bytes_read,
                content=b"".join(chunks),
                final_url=str(response.url),
            )


async def fetch_text_with_limits(
    url: str,
    *,
    timeout_ms: int,
    max_bytes: int,
    token: Optional[CancellationToken] = None,
    allowed_hosts: Optional[Sequence[str]] = None,
    strip_html: bool = False,
    user_agent: str = DEFAULT_USER_AGENT,
    events: Optional[EventSink] = None,
) -> FetchTextResult:
    """
    GET ``url`` with a timeout and a byte cap.

    Transport failures are returned as ``ok=False`` results rather than raised;
    only a host outside ``allowed_hosts`` raises. The body is decoded with
    :func:`decode_content` and the raw bytes are kept in ``content``.
    """
    validate_allowed_host(url, allowed_hosts)
    started = perf_counter()
    if events is not None:
        events.debug("http.request", "HTTP request start", phase="start", action="GET", url=url)

    try:
        result = await run_cancellable(
            asyncio.wait_for(
                _stream_get(url, timeout_ms=timeout_ms, max_bytes=max_bytes, user_agent=user_agent),
                timeout=max(0.001, timeout_ms / 1000.0),
            ),
            token,
        )
    except NetworkError as exc:
        _log_failure(events, started, exc.message, exc.retryable)
        return FetchTextResult(ok=False, error=exc.message, retryable=exc.retryable, status=exc.details.get("status"))
    except asyncio.TimeoutError:
        message = f"Timed out after {timeout_ms}ms: {url}"
        _log_failure(events, started, message, True)
        return FetchTextResult(ok=False, error=message, retryable=True)
    except httpx.HTTPError as exc:
        message = f"{exc.__class__.__name__}: {exc}"
        _log_failure(events, started, message, True)
        return FetchTextResult(ok=False, error=message, retryable=True)

    body = decode_content(result.content)
    if strip_html and looks_like_html(result.content_type, url):
        body = strip_html_to_text(body)
    result.body = body
    if events is not None:
        events.info(
            "http.response",
            "HTTP request success",
            phase="end",
            durationMs=int((perf_counter() - started) * 1000),
            statusCode=result.status,
            bytes=result.bytes_read,
        )
    return result


def _log_failure(events: Optional[EventSink], started: float, message: str, retryable: bool) -> None:
    logger.debug("fetch failed: %s", message)
    if events is None:
        return
    events.warn(
        "http.response",
        "HTTP request failed",
        phase="fail",
        durationMs=int((perf_counter() - started) * 1000),
        errorMessage=message,
        retryable=retryable,
    )
