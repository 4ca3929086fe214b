"""
Custom exception classes and error handling.

Two families live here:
- API exceptions: consistent HTTP error responses for the routers.
- Pipeline exceptions: the error taxonomy of the generation jobs, which
  decides between cancel, retry and fail-fast.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class ValidationError(APIException):
    """Validation error."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
            error_code=error_code
        )


class ConflictError(APIException):
    """Resource conflict (e.g., a generation job already running)."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code="CONFLICT"
        )


class FeatureDisabledError(APIException):
    """Feature switched off by an administrator."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
            error_code="FEATURE_DISABLED"
        )


class UpstreamError(APIException):
    """The language model provider failed a synchronous request."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=detail,
            error_code="AI_PROVIDER_ERROR"
        )


# ---------------------------------------------------------------------------
# Pipeline errors
# ---------------------------------------------------------------------------

class PipelineError(Exception):
    """Base class for generation pipeline errors."""


class GenerationCancelled(PipelineError):
    """
    Control-flow signal: the job is no longer wanted.

    Raised when the report left PROCESSING, disappeared, or was taken over
    by a newer job. Never retried and never turns a report FAILED.
    """

    def __init__(self, reason: str = "status_changed", detail: Optional[str] = None):
        self.reason = reason
        super().__init__(detail or f"Generation cancelled ({reason})")


class ProviderError(PipelineError):
    """Transient completion-service failure (network, auth, rate limit, timeout)."""

    def __init__(self, message: str, provider: Optional[str] = None, model: Optional[str] = None):
        self.provider = provider
        self.model = model
        super().__init__(message)


class CompletionParseError(PipelineError):
    """The model returned text that cannot be coerced into the expected shape."""

    def __init__(self, message: str, raw_text: Optional[str] = None):
        self.raw_text = raw_text
        super().__init__(message)


class DataIntegrityError(PipelineError):
    """
    Missing or broken configuration (report, dictionary, prompts, prior phase).

    Retrying cannot fix these, so jobs fail fast on the first attempt.
    """


class IngestionError(PipelineError):
    """A source document could not be read or stored."""


class UnsupportedFormatError(IngestionError):
    """The file type has no text extractor. Uploading it again will not help."""


def is_retryable(exc: BaseException) -> bool:
    """Whether the job queue should redeliver a job that raised ``exc``."""
    return not isinstance(exc, (GenerationCancelled, DataIntegrityError, UnsupportedFormatError))
