"""
File Upload — Pydantic Request/Response Schemas

Covers the upload entry point of the processing core:
  - Success response (202 Accepted, processing queued)
  - Structured error bodies (400, 409, 413, 500)
  - Duplicate conflict payload identifying the existing file

Design decisions:
  - file GUID is always server-generated (UUID4); never client-supplied.
  - file_hash is SHA-256 of the raw bytes, computed server-side.
  - processing_status is the async pipeline state, separate from HTTP status.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from app.core.config import settings

# ---------------------------------------------------------------------------
# Upload limits
# ---------------------------------------------------------------------------

ALLOWED_EXTENSIONS: dict[str, frozenset[str]] = {
    "receipt":  frozenset({"pdf", "png", "jpg", "jpeg", "tif", "tiff"}),
    "document": frozenset({"pdf", "png", "jpg", "jpeg", "tif", "tiff", "docx", "txt", "md"}),
}

MAX_FILE_SIZE_BYTES: int = settings.max_upload_bytes


class ProcessingStatus(str, Enum):
    """Maps to files.status."""
    PENDING     = "pending"
    PROCESSING  = "processing"
    COMPLETED   = "completed"
    FAILED      = "failed"


# ---------------------------------------------------------------------------
# Upload success response: 202 Accepted
# ---------------------------------------------------------------------------

class FileUploadResponse(BaseModel):
    file_id:           int
    file_guid:         UUID
    file_type:         str
    job_id:            str | None = Field(None, description="None when the chain could not be queued")
    file_hash:         str        = Field(..., description="SHA-256 hex digest of the uploaded bytes")
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    storage_path:      str
    size_bytes:        int
    created_at:        datetime


# ---------------------------------------------------------------------------
# Duplicate conflict: 409
# ---------------------------------------------------------------------------

class DuplicateConflict(BaseModel):
    """Identifies the file (and its extracted entity) that the upload duplicates."""
    file_id:      int
    file_guid:    UUID
    file_hash:    str
    status:       str
    entity_type:  str | None = None
    entity_id:    int | None = None
    entity_title: str | None = None


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str
    message:    str
    details:    list[ErrorDetail] = Field(default_factory=list)
    conflict:   DuplicateConflict | None = None


class UploadErrors:
    """Factories for every documented error case."""

    @staticmethod
    def unsupported_file_type(filename: str, ext: str, file_type: str) -> ErrorResponse:
        allowed = ", ".join(sorted(ALLOWED_EXTENSIONS.get(file_type, ())))
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message=f"File type '{ext}' is not supported for {file_type} uploads.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"'{filename}' has an unsupported extension '{ext}'. Allowed: {allowed}.",
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def invalid_file_type(file_type: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_FILE_TYPE",
            message=f"'{file_type}' is not a valid file type. Use 'receipt' or 'document'.",
            details=[ErrorDetail(field="file_type", message="Must be receipt or document.", code="INVALID_FILE_TYPE")],
        )

    @staticmethod
    def file_too_large(size_bytes: int) -> ErrorResponse:
        max_mb = MAX_FILE_SIZE_BYTES // (1024 * 1024)
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {max_mb} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {MAX_FILE_SIZE_BYTES:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file was provided in the request.",
            details=[ErrorDetail(field="file", message="The 'file' multipart field is required.", code="MISSING_FILE")],
        )

    @staticmethod
    def duplicate_file(conflict: DuplicateConflict) -> ErrorResponse:
        what = f"{conflict.entity_type} '{conflict.entity_title}'" if conflict.entity_type else "a file"
        return ErrorResponse(
            error_code="DUPLICATE_FILE",
            message=f"This file has already been uploaded as {what}.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Existing file {conflict.file_guid} has the same SHA-256 digest.",
                    code="DUPLICATE_FILE",
                )
            ],
            conflict=conflict,
        )

    @staticmethod
    def storage_error(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="STORAGE_ERROR",
            message="Failed to store the file. Please retry.",
            details=[ErrorDetail(field=None, message=detail, code="STORAGE_ERROR")] if detail else [],
        )

    @staticmethod
    def concurrent_duplicate(digest: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="DUPLICATE_FILE",
            message="An identical file was uploaded at the same time. Please retry.",
            details=[
                ErrorDetail(field="file", message=f"SHA-256 {digest} is already being processed.", code="DUPLICATE_FILE")
            ],
        )
