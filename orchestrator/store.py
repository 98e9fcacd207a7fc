"""Disk-backed run-state store; every mutation is persisted atomically."""

from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import Iterable, Optional

from core import (
    STEP_ORDER,
    DiscoverOutput,
    GenerateOptions,
    HttpArtifact,
    RunState,
    StepAttemptRecord,
    StepState,
    StepStatus,
    utcnow_iso,
)
from storage.json_io import read_json_file, write_json_atomic
from utils.exceptions import RunStateMismatchError

from .events import EventSink

RUN_STATE_FILE = "run-state.json"
_POINTER_FIELDS = (
    "source_manifest_path",
    "discover_report_path",
    "extraction_plan_path",
    "execution_report_path",
    "selection_report_path",
)


def run_state_path(work_dir: str | Path) -> Path:
    return Path(work_dir) / RUN_STATE_FILE


class RunStateStore:
    """Thread-safe owner of one run's ``run-state.json``."""

    def __init__(self, path: str | Path, state: RunState, *, events: Optional[EventSink] = None) -> None:
        self.path = Path(path)
        self._state = state
        self._events = events
        self._lock = Lock()

    @classmethod
    def load_or_create(cls, options: GenerateOptions, *, events: Optional[EventSink] = None) -> "RunStateStore":
        """
        Resume an existing run-state or create a fresh one.

        Raises ``RunStateMismatchError`` when the file on disk belongs to a
        different run id, city or prefecture. Steps missing from an older file
        are backfilled as pending.
        """
        path = run_state_path(options.work_dir)
        if path.exists():
            existing = RunState.model_validate(read_json_file(path))
            if (existing.run_id, existing.city, existing.prefecture) != (
                options.run_id,
                options.city,
                options.prefecture,
            ):
                raise RunStateMismatchError(
                    "Existing run-state does not match requested run",
                    {
                        "path": str(path),
                        "existing": f"{existing.run_id}/{existing.city}/{existing.prefecture}",
                        "requested": f"{options.run_id}/{options.city}/{options.prefecture}",
                    },
                )
            for step in STEP_ORDER:
                existing.step_statuses.setdefault(step, StepState())
            return cls(path, existing, events=events)

        state = RunState(
            run_id=options.run_id,
            city=options.city,
            prefecture=options.prefecture,
            step_statuses={step: StepState() for step in STEP_ORDER},
        )
        store = cls(path, state, events=events)
        store.persist()
        return store

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state.model_copy(deep=True)

    def step(self, step: str) -> StepState:
        with self._lock:
            return self._state.step_statuses[step].model_copy(deep=True)

    def persist(self) -> None:
        write_json_atomic(self.path, self._state)

    def mark_step_status(self, step: str, status: StepStatus) -> None:
        with self._lock:
            target = self._state.step_statuses[step]
            now = utcnow_iso()
            target.status = status
            if status == StepStatus.RUNNING and not target.started_at:
                target.started_at = now
            if status in (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED):
                target.ended_at = now
            if status == StepStatus.SKIPPED:
                target.message = "Skipped"
                target.message_updated_at = now
            self.persist()

    def mark_step_attempt_start(self, step: str, attempt: int) -> None:
        with self._lock:
            target = self._state.step_statuses[step]
            now = utcnow_iso()
            target.status = StepStatus.RUNNING
            target.attempts = max(target.attempts, attempt)
            target.message = f"Running attempt {attempt}"
            target.message_updated_at = now
            target.started_at = target.started_at or now
            target.history.append(StepAttemptRecord(attempt=attempt, started_at=now))
            self.persist()

    def mark_step_attempt_result(
        self,
        step: str,
        attempt: int,
        ok: bool,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        with self._lock:
            target = self._state.step_statuses[step]
            now = utcnow_iso()
            for record in reversed(target.history):
                if record.attempt == attempt:
                    record.ended_at = now
                    record.status = "succeeded" if ok else "failed"
                    if not ok:
                        record.error_code = error_code
                        record.error_message = error_message
                    break
            target.ended_at = now
            target.message_updated_at = now
            if ok:
                target.status = StepStatus.SUCCEEDED
                target.message = f"Succeeded on attempt {attempt}"
                target.last_error_code = None
                target.last_error_message = None
            else:
                target.status = StepStatus.FAILED
                target.message = f"Failed on attempt {attempt}: {error_message or 'unknown error'}"
                target.last_error_code = error_code
                target.last_error_message = error_message
            self.persist()

    def set_step_message(self, step: str, message: str) -> None:
        with self._lock:
            target = self._state.step_statuses[step]
            target.message = message
            target.message_updated_at = utcnow_iso()
            attempts = target.attempts
            self.persist()
        if self._events is not None:
            self._events.info("state.update", "Step message updated", step=step, attempt=attempts, action=message)

    def add_downloaded_file(self, path: str) -> None:
        with self._lock:
            if path not in self._state.artifacts.downloaded_files:
                self._state.artifacts.downloaded_files.append(path)
                self.persist()

    def add_output_path(self, path: str) -> None:
        with self._lock:
            if path not in self._state.artifacts.output_paths:
                self._state.artifacts.output_paths.append(path)
                self.persist()

    def add_http_artifact(self, artifact: HttpArtifact) -> None:
        with self._lock:
            self._state.artifacts.http.append(artifact.model_copy(deep=True))
            self.persist()

    def set_sources(self, sources: DiscoverOutput) -> None:
        with self._lock:
            self._state.sources = sources.model_copy(deep=True)
            self.persist()

    def set_pointer(self, name: str, path: Optional[str]) -> None:
        if name not in _POINTER_FIELDS:
            raise KeyError(f"unknown artifact pointer: {name}")
        with self._lock:
            setattr(self._state, name, path)
            self.persist()

    def ensure_pending_for_forced_steps(self, forced_steps: Iterable[str]) -> None:
        forced = set(forced_steps)
        with self._lock:
            for step in STEP_ORDER:
                if step in forced:
                    self._state.step_statuses[step].status = StepStatus.PENDING
            self.persist()

    def mark_finished(self) -> None:
        with self._lock:
            self._state.finished_at = utcnow_iso()
            self.persist()
