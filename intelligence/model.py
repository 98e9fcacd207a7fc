"""
Model call wrappers: lifecycle events, bounded timeouts and tagged decoding
of structured output.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
from time import perf_counter
from typing import Any, Awaitable, Callable, Generic, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from orchestrator.events import EventSink
from orchestrator.retry import CancellationToken, run_cancellable
from storage.json_io import extract_json_from_text
from utils.exceptions import PipelineError

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


def _safe_size(value: Any) -> Optional[int]:
    content = getattr(value, "content", value)
    try:
        return len(content if isinstance(content, str) else json.dumps(content, default=str))
    except (TypeError, ValueError):
        return None


async def run_model_text(
    action: str,
    op: Callable[[], Awaitable[T]],
    *,
    events: Optional[EventSink] = None,
    max_model_ms: Optional[int] = None,
    token: Optional[CancellationToken] = None,
    major: bool = True,
) -> T:
    """
    Run one model call with ``model.lifecycle`` start/end/fail events.

    ``max_model_ms`` bounds the call; exceeding it raises a non-retryable
    ``MODEL_TIMEOUT`` so callers can decide whether to salvage.
    """
    started = perf_counter()
    if events is not None:
        events.info("model.lifecycle", "Model call started", phase="start", action=action, major=major)

    try:
        work = op()
        if max_model_ms and max_model_ms > 0:
            work = asyncio.wait_for(work, timeout=max_model_ms / 1000.0)
        result = await run_cancellable(work, token)
    except asyncio.TimeoutError as exc:
        error = PipelineError(
            f"Model call timed out for {action} after {max_model_ms}ms",
            "MODEL_TIMEOUT",
            False,
            cause=exc,
        )
        _emit_failure(events, action, started, error, major)
        raise error from exc
    except Exception as exc:
        _emit_failure(events, action, started, exc, major)
        raise

    if events is not None:
        events.info(
            "model.lifecycle",
            "Model call completed",
            phase="end",
            action=action,
            durationMs=int((perf_counter() - started) * 1000),
            bytes=_safe_size(result),
            major=major,
        )
    return result


def _emit_failure(events: Optional[EventSink], action: str, started: float, exc: BaseException, major: bool) -> None:
    logger.debug("model call failed action=%s error=%s", action, exc)
    if events is None:
        return
    events.error(
        "model.lifecycle",
        "Model call failed",
        phase="fail",
        action=action,
        durationMs=int((perf_counter() - started) * 1000),
        errorCode=getattr(exc, "code", "MODEL_CALL_FAILED"),
        errorMessage=str(exc),
        major=major,
    )


@dataclass
class DecodeResult(Generic[M]):
    """Outcome of decoding model text into ``M``; ``variant`` says which path produced it."""

    variant: Literal["strict", "extracted", "failed"]
    value: Optional[M] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.value is not None


def decode_structured(text: str, model_cls: Type[M]) -> DecodeResult[M]:
    """
    Strict decode first (the whole text is the JSON document); only if that
    fails, extract the first JSON object from the text and validate that.
    """
    raw = str(text or "").strip()
    try:
        return DecodeResult("strict", model_cls.model_validate_json(raw))
    except ValidationError as exc:
        strict_error = str(exc).splitlines()[0]

    candidate = extract_json_from_text(raw)
    if candidate is None:
        return DecodeResult("failed", error=f"no JSON object found ({strict_error})")
    try:
        return DecodeResult("extracted", model_cls.model_validate(candidate))
    except ValidationError as exc:
        return DecodeResult("failed", error=str(exc).splitlines()[0])
