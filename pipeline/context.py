"""Everything a step needs, built once per run and passed explicitly."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from config.settings import HttpSettings
from core import GenerateOptions
from intelligence.llm import BaseLLM
from orchestrator.budget import BudgetManager
from orchestrator.events import EventSink
from orchestrator.store import RunStateStore


class Converter(Protocol):
    """Turns the selected primary records into staged ``schedule.json``/``separation.json``."""

    async def __call__(self, context: "PipelineContext", selection_report: Dict[str, Any]) -> List[str]:
        ...


class Validator(Protocol):
    """Checks staged output before commit; raises ``ValidationFailure`` on bad data."""

    async def __call__(self, context: "PipelineContext", staged_files: List[str]) -> None:
        ...


@dataclass
class RuntimeDirs:
    download_dir: Path
    staging_dir: Path
    summary_path: Path


@dataclass
class PipelineContext:
    options: GenerateOptions
    events: EventSink
    store: RunStateStore
    budget: BudgetManager
    dirs: RuntimeDirs
    http: HttpSettings
    llm: Optional[BaseLLM] = None
    converter: Optional[Converter] = None
    validator: Optional[Validator] = None

    @property
    def work_dir(self) -> Path:
        return Path(self.options.work_dir)

    def model_timeout_ms(self, configured_ms: int) -> int:
        """A model call may never outlive its own cap, the step cap or the run budget."""
        return self.budget.effective_step_timeout(min(configured_ms, self.options.max_model_ms))

    def require_llm(self) -> BaseLLM:
        if self.llm is None:
            from intelligence.llm import get_llm

            self.llm = get_llm()
        return self.llm
