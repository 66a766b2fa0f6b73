"""
Typed failures surfaced by the background-removal pipeline.

Every error that reaches a caller carries a `kind` (what went wrong: input,
size, model, processing or upstream API) and a human-readable message.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional, Tuple


class ErrorKind(str, Enum):
    INVALID_IMAGE = "invalid-image"
    SIZE_LIMIT_EXCEEDED = "size-limit-exceeded"
    MODEL_LOAD_FAILED = "model-load-failed"
    PROCESSING_FAILED = "processing-failed"
    API_ERROR = "api-error"


class ProcessingError(Exception):
    """Base class for all pipeline failures."""

    kind: ErrorKind = ErrorKind.PROCESSING_FAILED

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"type": self.kind.value, "message": self.message}


class InvalidImageError(ProcessingError):
    kind = ErrorKind.INVALID_IMAGE


class SizeLimitExceededError(ProcessingError):
    kind = ErrorKind.SIZE_LIMIT_EXCEEDED


class ModelLoadError(ProcessingError):
    """Raised when no model candidate could be initialized."""

    kind = ErrorKind.MODEL_LOAD_FAILED

    def __init__(self, message: str, failures: Optional[List[Tuple[str, str]]] = None) -> None:
        super().__init__(message)
        # (candidate description, error message) in attempt order
        self.failures = list(failures or [])


class ProcessingFailedError(ProcessingError):
    kind = ErrorKind.PROCESSING_FAILED


class SessionReleasedError(ProcessingFailedError):
    """The inference session was disposed and can no longer be used."""


class EngineBusyError(ProcessingFailedError):
    """Re-initialization was requested while the engine was loading or running."""


class ApiError(ProcessingError):
    kind = ErrorKind.API_ERROR

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["statusCode"] = self.status_code
        return data


class ProcessingCancelled(Exception):
    """Raised when a caller aborted an invocation; no result is delivered."""
