"""Runs one named pipeline step with bounded attempts, timeouts and backoff."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Awaitable, Callable

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from core import StepStatus
from utils.exceptions import PipelineError, StepTimeoutError

from .budget import BudgetManager
from . import retry as retry_policy
from .events import EventSink, telemetry_scope
from .retry import CancellationToken
from .store import RunStateStore

PROGRESS_HEARTBEAT_SECONDS = 15.0

StepFn = Callable[[Any, CancellationToken], Awaitable[None]]


@dataclass
class StepDefinition:
    name: str
    timeout_ms: int
    max_attempts: int
    run: StepFn


def normalize_step_error(exc: BaseException, step: str, timeout_ms: int, token: CancellationToken) -> PipelineError:
    """Map any failure to a ``PipelineError`` the retry policy can reason about."""
    if isinstance(exc, PipelineError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, asyncio.CancelledError)) and token.cancelled:
        return StepTimeoutError(step, timeout_ms)
    message = str(exc) or exc.__class__.__name__
    return PipelineError(message, "STEP_ERROR", True, cause=exc)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, PipelineError) and exc.retryable


async def _heartbeat(events: EventSink, step: str, started: float) -> None:
    while True:
        await asyncio.sleep(PROGRESS_HEARTBEAT_SECONDS)
        events.debug(
            "step.lifecycle",
            f"Step {step} still running",
            phase="progress",
            durationMs=int((perf_counter() - started) * 1000),
        )


async def run_step(
    step: StepDefinition,
    context: Any,
    store: RunStateStore,
    events: EventSink,
    budget: BudgetManager,
    *,
    should_run: bool = True,
    force: bool = False,
) -> None:
    """
    Execute ``step`` against ``context``.

    - ``should_run=False`` turns a pending step into ``skipped`` and leaves any
      other status untouched.
    - A step that already succeeded is a no-op unless ``force`` is set.
    - Attempt numbers continue from the persisted attempt count so resumed runs
      keep a monotonic history.
    - Only ``PipelineError`` with ``retryable=True`` is retried; everything else
      propagates after the first failure.
    """
    current = store.step(step.name)
    if not should_run:
        if current.status == StepStatus.PENDING:
            store.mark_step_status(step.name, StepStatus.SKIPPED)
            events.info("step.lifecycle", "Step skipped by run plan", step=step.name, phase="skip")
        else:
            events.info(
                "step.lifecycle",
                "Step left unchanged by run plan",
                step=step.name,
                status=current.status.value,
            )
        return

    if current.status == StepStatus.SUCCEEDED and not force:
        events.info("step.lifecycle", "Step already succeeded; no-op", step=step.name)
        return

    attempt_base = current.attempts
    if budget.effective_step_timeout(step.timeout_ms) <= 0:
        raise PipelineError(f"No budget remaining before step {step.name}", "BUDGET_EXCEEDED", False)

    def _wait(retry_state: RetryCallState) -> float:
        backoff_ms = retry_policy.calculate_backoff_ms(attempt_base + retry_state.attempt_number)
        return min(backoff_ms, budget.remaining_total_ms()) / 1000.0

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        backoff_ms = int((retry_state.next_action.sleep if retry_state.next_action else 0) * 1000)
        events.warn(
            "step.retry",
            f"Retrying step {step.name} after failure",
            step=step.name,
            attempt=attempt_base + retry_state.attempt_number,
            backoffMs=backoff_ms,
            errorCode=getattr(exc, "code", None),
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, step.max_attempts)),
        wait=_wait,
        retry=retry_if_exception(_is_retryable),
        before_sleep=_before_sleep,
        reraise=True,
    )
    async for attempt_state in retrying:
        with attempt_state:
            await _run_attempt(step, context, store, events, budget, attempt_base + attempt_state.retry_state.attempt_number)


async def _run_attempt(
    step: StepDefinition,
    context: Any,
    store: RunStateStore,
    events: EventSink,
    budget: BudgetManager,
    attempt: int,
) -> None:
    timeout_ms = budget.effective_step_timeout(step.timeout_ms)
    if timeout_ms <= 0:
        raise PipelineError(f"No budget remaining before step {step.name}", "BUDGET_EXCEEDED", False)

    with telemetry_scope(step.name, attempt):
        store.mark_step_attempt_start(step.name, attempt)
        events.info("step.lifecycle", f"Step {step.name} started", phase="start", timeoutMs=timeout_ms)

        token = CancellationToken()
        started = perf_counter()
        heartbeat = asyncio.create_task(_heartbeat(events, step.name, started))
        error: PipelineError | None = None
        try:
            await asyncio.wait_for(step.run(context, token), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            token.cancel("timeout")
            error = StepTimeoutError(step.name, timeout_ms)
        except asyncio.CancelledError as exc:
            if not token.cancelled:
                raise
            error = normalize_step_error(exc, step.name, timeout_ms, token)
        except Exception as exc:
            error = normalize_step_error(exc, step.name, timeout_ms, token)
        finally:
            heartbeat.cancel()
            token.cancel("attempt finished")

        duration_ms = int((perf_counter() - started) * 1000)
        if error is None:
            store.mark_step_attempt_result(step.name, attempt, True)
            events.info("step.lifecycle", f"Step {step.name} succeeded", phase="end", durationMs=duration_ms)
            return

        store.mark_step_attempt_result(step.name, attempt, False, error.code, error.message)
        events.error(
            "step.lifecycle",
            f"Step {step.name} failed: {error.message}",
            phase="fail",
            durationMs=duration_ms,
            errorCode=error.code,
            retryable=error.retryable,
        )
        raise error
