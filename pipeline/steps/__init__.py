"""One coroutine per pipeline step, each ``async (context, token) -> None``."""

from .discover import run_discover_step
from .download import run_download_step
from .extraction_plan import run_extraction_plan_step
from .extract import run_extract_step
from .select import run_select_step
from .convert import run_convert_step
from .validate import run_validate_step

__all__ = [
    "run_convert_step",
    "run_discover_step",
    "run_download_step",
    "run_extract_step",
    "run_extraction_plan_step",
    "run_select_step",
    "run_validate_step",
]
