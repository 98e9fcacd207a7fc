"""
Custom Exceptions
Typed failures shared by every pipeline stage.
"""
from typing import Optional


class CollectorError(Exception):
    """Base exception for the collector."""

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(CollectorError):
    """Configuration error"""
    pass


class PipelineError(CollectorError):
    """
    Pipeline failure carrying a stable error code and a retry hint.

    The step runner only retries errors whose ``retryable`` flag is set.
    """

    def __init__(
        self,
        message: str,
        code: str = "PIPELINE_ERROR",
        retryable: bool = False,
        cause: Optional[BaseException] = None,
        **kwargs,
    ):
        super().__init__(message, kwargs)
        self.code = code
        self.retryable = retryable
        self.cause = cause

    def __str__(self):
        return self.message


class NetworkError(PipelineError):
    """HTTP/transport failure"""

    def __init__(self, message: str, cause: Optional[BaseException] = None, retryable: bool = True, **kwargs):
        super().__init__(message, "NETWORK_ERROR", retryable, cause, **kwargs)


class SchemaError(PipelineError):
    """Model output or artifact does not match its schema"""

    def __init__(self, message: str, cause: Optional[BaseException] = None, **kwargs):
        super().__init__(message, "SCHEMA_ERROR", False, cause, **kwargs)


class ExtractionError(PipelineError):
    """Source could not be turned into records"""

    def __init__(self, message: str, cause: Optional[BaseException] = None, retryable: bool = True, **kwargs):
        super().__init__(message, "EXTRACTION_ERROR", retryable, cause, **kwargs)


class ValidationFailure(PipelineError):
    """Staged output failed validation"""

    def __init__(self, message: str, cause: Optional[BaseException] = None, retryable: bool = False, **kwargs):
        super().__init__(message, "VALIDATION_ERROR", retryable, cause, **kwargs)


class StepTimeoutError(PipelineError):
    """A step attempt ran past its effective timeout"""

    def __init__(self, step: str, timeout_ms: int):
        super().__init__(f"Step {step} timed out after {timeout_ms}ms", "STEP_TIMEOUT", True)
        self.step = step
        self.timeout_ms = timeout_ms


class RunStateMismatchError(CollectorError):
    """Persisted run-state belongs to a different run"""
    pass


class FileLockTimeoutError(CollectorError):
    """Advisory lock could not be acquired in time"""

    def __init__(self, message: str, lock_path: str = None, **kwargs):
        super().__init__(message, kwargs)
        self.lock_path = lock_path


class LLMError(CollectorError):
    """LLM call error"""

    def __init__(self, message: str, provider: str = None, **kwargs):
        super().__init__(message, kwargs)
        self.provider = provider
