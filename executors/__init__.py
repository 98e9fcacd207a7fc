"""
Executors
Local parsers that turn one downloaded file into field-tagged records,
and the plan runner that drives them.
"""
from .types import ExecutorOutput, ExtractedLinkCandidate, ExtractionDiagnostics, RawRecord
from .csv_executor import parse_csv, run_csv_executor
from .html_executor import HtmlExecutorOptions, extract_html, run_html_executor
from .api_executor import run_api_executor
from .placeholder import run_placeholder_executor
from .run_plan import RunPlanSettings, run_extraction_plan, run_local_executor

__all__ = [
    "ExecutorOutput",
    "ExtractedLinkCandidate",
    "ExtractionDiagnostics",
    "HtmlExecutorOptions",
    "RawRecord",
    "RunPlanSettings",
    "extract_html",
    "parse_csv",
    "run_api_executor",
    "run_csv_executor",
    "run_extraction_plan",
    "run_html_executor",
    "run_local_executor",
    "run_placeholder_executor",
]
