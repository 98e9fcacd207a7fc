"""
Utils Module
Shared helpers
"""
from .logger import setup_logger, get_logger, get_pipeline_logger
from .exceptions import (
    CollectorError,
    ConfigurationError,
    ExtractionError,
    FileLockTimeoutError,
    LLMError,
    NetworkError,
    PipelineError,
    RunStateMismatchError,
    SchemaError,
    StepTimeoutError,
    ValidationFailure,
)

__all__ = [
    "setup_logger",
    "get_logger",
    "get_pipeline_logger",
    "CollectorError",
    "ConfigurationError",
    "ExtractionError",
    "FileLockTimeoutError",
    "LLMError",
    "NetworkError",
    "PipelineError",
    "RunStateMismatchError",
    "SchemaError",
    "StepTimeoutError",
    "ValidationFailure",
]
