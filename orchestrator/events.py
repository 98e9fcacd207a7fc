"""Structured pipeline events with redaction and request-scoped step context."""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_STEP: ContextVar[str] = ContextVar("pipeline_step", default="system")
_ATTEMPT: ContextVar[int] = ContextVar("pipeline_attempt", default=0)

_SENSITIVE_MARKERS = ("token", "apikey", "api_key", "secret", "password", "authorization", "cookie")
_URL_ALLOW_QUERY_KEYS = {"page", "id", "lang"}
_RESERVED = ("ts", "runId", "level", "step", "attempt", "eventType", "message")
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}
_QUIET_EVENT_TYPES = {"state.update", "file.read", "file.write", "http.request"}


@contextmanager
def telemetry_scope(step: str, attempt: int) -> Iterator[None]:
    """Bind ``step``/``attempt`` for every event emitted inside the block."""
    step_token = _STEP.set(step)
    attempt_token = _ATTEMPT.set(attempt)
    try:
        yield
    finally:
        _ATTEMPT.reset(attempt_token)
        _STEP.reset(step_token)


def current_telemetry() -> Tuple[str, int]:
    return _STEP.get(), _ATTEMPT.get()


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return f"{value[:limit]}...[truncated]"


def _redact_url(value: str) -> str:
    try:
        parts = urlsplit(value)
    except ValueError:
        return _truncate(value, 240)
    kept = [
        (key, _truncate(val, 40))
        for key, val in parse_qsl(parts.query, keep_blank_values=True)
        if key.lower() in _URL_ALLOW_QUERY_KEYS
    ]
    return urlunsplit((parts.scheme, parts.netloc, parts.path or "/", urlencode(kept), ""))


def redact_value(key: str, value: Any) -> Any:
    if value is None:
        return None
    lowered = str(key).lower()
    if any(marker in lowered for marker in _SENSITIVE_MARKERS):
        return "[REDACTED]"
    if isinstance(value, str):
        if value.startswith("http://") or value.startswith("https://"):
            return _redact_url(value)
        return _truncate(value, 240)
    if isinstance(value, (list, tuple)):
        return [redact_value(key, item) for item in value]
    if isinstance(value, dict):
        return {k: redact_value(k, v) for k, v in value.items()}
    return value


def redact_event(event: Dict[str, Any]) -> Dict[str, Any]:
    return {key: redact_value(key, value) for key, value in event.items()}


def should_print(event: Dict[str, Any], verbose: bool) -> bool:
    if verbose or event.get("level") == "error":
        return True
    if event.get("level") == "debug":
        return False
    event_type = event.get("eventType")
    phase = event.get("phase")
    if event_type in _QUIET_EVENT_TYPES:
        return False
    if event_type == "http.response":
        return phase == "fail" or event.get("level") == "warn"
    if event_type == "model.lifecycle":
        return phase == "fail" or event.get("major") is True
    if event_type in ("tool.web_search", "tool.fetch_page"):
        return phase == "fail"
    return True


class EventSink:
    """
    Explicit event sink for one run.

    Every event is redacted, appended as one JSON line to ``event_file`` and
    rendered through the standard logger. ``step``/``attempt`` default to the
    values bound by :func:`telemetry_scope`.
    """

    def __init__(
        self,
        run_id: str,
        *,
        event_file: Optional[str | Path] = None,
        log_format: str = "pretty",
        verbose: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.run_id = run_id
        self.event_file = Path(event_file) if event_file else None
        self.log_format = log_format
        self.verbose = verbose
        self._logger = logger or logging.getLogger("gomi_collector.events")
        self._lock = Lock()

    def emit(self, level: str, event_type: str, message: str, **extras: Any) -> Dict[str, Any]:
        step, attempt = current_telemetry()
        event: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "runId": self.run_id,
            "level": level,
            "step": extras.pop("step", None) or step,
            "attempt": extras.pop("attempt", None) or attempt,
            "eventType": event_type,
            "message": message,
        }
        event.update({key: value for key, value in extras.items() if value is not None})
        event = redact_event(event)

        if self.event_file is not None:
            line = json.dumps(event, ensure_ascii=False, default=str)
            with self._lock:
                self.event_file.parent.mkdir(parents=True, exist_ok=True)
                with self.event_file.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")

        if should_print(event, self.verbose):
            self._logger.log(_LEVELS.get(level, logging.INFO), self.render(event))
        return event

    def debug(self, event_type: str, message: str, **extras: Any) -> Dict[str, Any]:
        return self.emit("debug", event_type, message, **extras)

    def info(self, event_type: str, message: str, **extras: Any) -> Dict[str, Any]:
        return self.emit("info", event_type, message, **extras)

    def warn(self, event_type: str, message: str, **extras: Any) -> Dict[str, Any]:
        return self.emit("warn", event_type, message, **extras)

    def error(self, event_type: str, message: str, **extras: Any) -> Dict[str, Any]:
        return self.emit("error", event_type, message, **extras)

    def render(self, event: Dict[str, Any]) -> str:
        if self.log_format == "compact":
            return self.render_compact(event)
        return self.render_pretty(event)

    @staticmethod
    def render_pretty(event: Dict[str, Any]) -> str:
        prefix = f"[{event.get('step')}/{event.get('attempt')}] [{event.get('eventType')}]"
        extras = " ".join(
            f"{key}={json.dumps(value, ensure_ascii=False, default=str)}"
            for key, value in event.items()
            if key not in _RESERVED and value not in (None, "")
        )
        return f"{prefix} {event.get('message')}" + (f" {extras}" if extras else "")

    @staticmethod
    def render_compact(event: Dict[str, Any]) -> str:
        phase = f" {event['phase']}" if event.get("phase") else ""
        keys = ("statusCode", "durationMs", "backoffMs", "errorCode", "retryable")
        extras = " ".join(f"{key}={event[key]}" for key in keys if event.get(key) is not None)
        line = f"{event.get('step')}#{event.get('attempt')}{phase} {event.get('message')}"
        return f"{line} {extras}" if extras else line
