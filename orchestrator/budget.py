"""Process-wide time budget for one run."""

from __future__ import annotations

from time import perf_counter
from typing import Optional

from utils.exceptions import PipelineError

from .events import EventSink


class BudgetManager:
    """Tracks the total run budget and derives per-operation timeouts."""

    def __init__(self, max_total_ms: int, max_step_ms: int, *, events: Optional[EventSink] = None) -> None:
        self.max_total_ms = int(max_total_ms)
        self.max_step_ms = int(max_step_ms)
        self._events = events
        self._started = perf_counter()

    def elapsed_ms(self) -> int:
        return int((perf_counter() - self._started) * 1000)

    def remaining_total_ms(self) -> int:
        return max(0, self.max_total_ms - self.elapsed_ms())

    def effective_step_timeout(self, configured_ms: int) -> int:
        """``min(configured, max_step, remaining)``; nested calls never outlive the run."""
        return min(min(int(configured_ms), self.max_step_ms), self.remaining_total_ms())

    def enforce_total_budget(self, where: str) -> None:
        if self.remaining_total_ms() > 0:
            return
        if self._events is not None:
            self._events.error(
                "budget.enforced",
                f"Total budget exhausted before {where}",
                errorCode="BUDGET_EXCEEDED",
                maxTotalMs=self.max_total_ms,
                elapsedMs=self.elapsed_ms(),
            )
        raise PipelineError(f"Total budget exceeded before {where}", "BUDGET_EXCEEDED", False)
