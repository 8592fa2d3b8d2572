"""
Pipeline error taxonomy.

  validation         — missing metadata, unsupported format, oversized file.
                       Fails fast, never retried.
  transient provider — timeout / throttling from OCR or AI provider.
                       Retried by the Celery wrapper with linear backoff.
  data integrity     — duplicates, entity-not-found during cleanup.
                       Handled as explicit branches, not exceptions.
  unexpected         — anything else. Logged with job/file context, the
                       stage halts and the File is marked failed.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised deliberately by the processing core."""

    def __init__(
        self,
        message: str,
        code: str = "PIPELINE_ERROR",
        is_retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.is_retryable = is_retryable

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationError(PipelineError):
    def __init__(self, message: str, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message, code=code, is_retryable=False)


class MissingMetadataError(ValidationError):
    """A stage found its job metadata absent or lacking a required field."""

    def __init__(self, job_id: str, field: str) -> None:
        super().__init__(
            f"Job {job_id} metadata is missing required field '{field}'",
            code="MISSING_METADATA",
        )
        self.job_id = job_id
        self.field = field


class UnsupportedFormatError(ValidationError):
    def __init__(self, detected: str) -> None:
        super().__init__(
            f"Unsupported file format '{detected}'. Allowed: PDF, PNG, JPEG, TIFF.",
            code="UNSUPPORTED_FORMAT",
        )
        self.detected = detected


class FileTooLargeError(ValidationError):
    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        super().__init__(
            f"File is {size_bytes:,} bytes; provider limit is {limit_bytes:,} bytes",
            code="FILE_TOO_LARGE",
        )
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


class EmptyFileError(ValidationError):
    def __init__(self, path: str = "") -> None:
        super().__init__(f"File is empty: {path}" if path else "File is empty", code="EMPTY_FILE")


class StageInputError(ValidationError):
    """A stage's inputs exist but cannot be used (e.g. no entity to enrich)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="STAGE_INPUT_ERROR")


# ---------------------------------------------------------------------------
# Transient provider
# ---------------------------------------------------------------------------

class TransientProviderError(PipelineError):
    def __init__(self, provider: str, message: str) -> None:
        super().__init__(
            f"{provider}: {message}",
            code="PROVIDER_UNAVAILABLE",
            is_retryable=True,
        )
        self.provider = provider


class StageTimeoutError(PipelineError):
    """A stage exceeded its soft time limit; the attempt is cancelled and retried."""

    def __init__(self, stage: str, seconds: float) -> None:
        super().__init__(
            f"Stage {stage} exceeded {seconds:g}s",
            code="STAGE_TIMEOUT",
            is_retryable=True,
        )
        self.stage = stage
