"""Step-execution framework: budget, run-state, retries and telemetry."""

from .budget import BudgetManager
from .events import EventSink, current_telemetry, redact_event, telemetry_scope
from .retry import CancellationToken, calculate_backoff_ms, sleep_ms
from .store import RunStateStore, run_state_path
from .step_runner import StepDefinition, run_step
from .artifacts import assert_step_inputs_available, hydrate_artifact_pointers

__all__ = [
    "BudgetManager",
    "CancellationToken",
    "EventSink",
    "RunStateStore",
    "StepDefinition",
    "assert_step_inputs_available",
    "calculate_backoff_ms",
    "current_telemetry",
    "hydrate_artifact_pointers",
    "redact_event",
    "run_state_path",
    "run_step",
    "sleep_ms",
    "telemetry_scope",
]
