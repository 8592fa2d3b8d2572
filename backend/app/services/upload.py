"""
File Upload Service

Orchestrates the upload entry point of the processing core:
  1. Validate file type, extension and size
  2. SHA-256 digest of the raw bytes
  3. Duplicate check scoped to the owner → 409 with the existing file
  4. Store the original under {kind}s/{user}/{guid}/original.{ext}
  5. Insert the File row (status=pending) inside a savepoint
  6. Start the processing chain
  7. Return the 202 payload

Invariants:
  - user_id always comes from the caller's verified identity, never the body.
  - The blob path is built server-side; the client filename is only stored.
  - The digest check is read-then-decide; the partial unique index on
    (user_id, file_hash) turns a concurrent duplicate insert into an
    IntegrityError, reported as the same 409 after the stored bytes are removed.
  - A queueing failure is not fatal: the File is stored and the stale-pending
    beat task starts it later.
"""

from __future__ import annotations

import logging
import mimetypes
import re
import uuid
from datetime import datetime, timezone

from fastapi import HTTPException, UploadFile, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.files import File, FileStatus, FileType
from app.processing.conversion import OCR_EXTENSIONS
from app.processing.ocr import detect_format
from app.schemas.files import (
    ALLOWED_EXTENSIONS,
    MAX_FILE_SIZE_BYTES,
    FileUploadResponse,
    ProcessingStatus,
    UploadErrors,
)
from app.schemas.jobs import JobContext, JobSource
from app.services.dispatcher import JobChainDispatcher, job_name_for
from app.services.duplication import DuplicationService
from app.storage.s3 import BlobStore, Variant

logger = logging.getLogger(__name__)

_FILENAME_RE = re.compile(r'[^\w.\- ]+')


def _get_extension(filename: str) -> str:
    _, dot, ext = filename.rpartition(".")
    return ext.lower() if dot else ""


def _sanitize_filename(filename: str) -> str:
    """Strip any path components and characters outside a conservative set."""
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    name = _FILENAME_RE.sub("_", name).strip(" .")
    return name[:255] or "upload"


class UploadService:
    """One instance per request; collaborators are injected for tests."""

    def __init__(
        self,
        db:         AsyncSession,
        storage:    BlobStore,
        dispatcher: JobChainDispatcher,
    ) -> None:
        self._db = db
        self._storage = storage
        self._dispatcher = dispatcher
        self._dedup = DuplicationService(db, storage)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def upload(
        self,
        file:      UploadFile,
        user_id:   uuid.UUID,
        file_type: str,
        tag_ids:   list[int] | None = None,
    ) -> FileUploadResponse:
        """HTTP upload. Raises HTTPException with a structured ErrorResponse."""
        data = await self._read_upload(file)
        return await self.ingest_bytes(
            data, file.filename or "upload", user_id, file_type, tag_ids=tag_ids,
        )

    async def ingest_bytes(
        self,
        data:             bytes,
        filename:         str,
        user_id:          uuid.UUID,
        file_type:        str,
        tag_ids:          list[int] | None = None,
        source:           JobSource = "upload",
        import_source_id: int | None = None,
        local_path:       str | None = None,
    ) -> FileUploadResponse:
        """
        Shared by HTTP uploads and external imports. `local_path` names a
        scratch copy that is removed if the bytes turn out to be a duplicate.
        """
        if file_type not in FileType.ALL:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.invalid_file_type(file_type).model_dump(mode="json"),
            )
        self._check_size(data)

        safe_filename = _sanitize_filename(filename)
        ext = _get_extension(safe_filename)
        if ext not in ALLOWED_EXTENSIONS[file_type] or (
            ext in OCR_EXTENSIONS and detect_format(data) is None
        ):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.unsupported_file_type(safe_filename, ext, file_type).model_dump(mode="json"),
            )

        # ---- Duplicate check ------------------------------------------
        check = await self._dedup.check(data, user_id)
        if check.is_duplicate:
            await self._dedup.cleanup_duplicate(local_path=local_path)
            await self._raise_duplicate(check.existing_file, check.digest)

        logger.info(
            "Upload start | user=%s type=%s file=%s size=%d digest=%s source=%s",
            user_id, file_type, safe_filename, len(data), check.digest[:12], source,
        )

        # ---- Store original -------------------------------------------
        guid = uuid.uuid4()
        try:
            blob_path = await self._storage.store(data, user_id, guid, file_type, Variant.ORIGINAL, ext)
        except Exception as exc:
            logger.exception("Blob store failed | user=%s guid=%s", user_id, guid)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=UploadErrors.storage_error(str(exc)).model_dump(mode="json"),
            ) from exc

        # ---- Persist File row ----------------------------------------
        record = File(
            guid=guid,
            user_id=user_id,
            file_type=file_type,
            status=FileStatus.PENDING,
            original_filename=safe_filename,
            extension=ext,
            mime_type=mimetypes.guess_type(safe_filename)[0] or "application/octet-stream",
            size_bytes=len(data),
            file_hash=check.digest,
            s3_original_path=blob_path,
            file_metadata={"source": source},
        )
        try:
            async with self._db.begin_nested():
                self._db.add(record)
                await self._db.flush()
        except IntegrityError:
            # Concurrent upload of the same bytes committed first
            logger.warning("Duplicate insert race | user=%s digest=%s", user_id, check.digest[:12])
            await self._dedup.cleanup_duplicate(blob_path=blob_path, local_path=local_path)
            existing = await self._dedup.find_duplicate(check.digest, user_id)
            await self._raise_duplicate(existing, check.digest)

        # ---- Start processing ----------------------------------------
        job_id: str | None = str(uuid.uuid4())
        context = JobContext(
            job_id=job_id,
            job_name=job_name_for(file_type),
            file_id=record.id,
            file_guid=str(guid),
            user_id=user_id,
            file_type=file_type,
            file_path=blob_path,
            file_extension=ext,
            source=source,
            tag_ids=tag_ids or [],
            import_source_id=import_source_id,
        )
        try:
            await self._dispatcher.start_job(self._db, context)
        except Exception as exc:
            # Non-fatal: the File is stored; the stale-pending task restarts it
            logger.error("Failed to queue processing | file=%s job=%s error=%s", record.id, job_id, exc)
            job_id = None

        return FileUploadResponse(
            file_id=record.id,
            file_guid=guid,
            file_type=file_type,
            job_id=job_id,
            file_hash=check.digest,
            processing_status=ProcessingStatus.PENDING,
            storage_path=blob_path,
            size_bytes=len(data),
            created_at=datetime.now(timezone.utc),
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _raise_duplicate(self, existing: File | None, digest: str) -> None:
        if existing is None:
            # The racing row is gone again; report without a conflict payload
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=UploadErrors.concurrent_duplicate(digest).model_dump(mode="json"),
            )
        conflict = await self._dedup.describe_conflict(existing, digest)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=UploadErrors.duplicate_file(conflict).model_dump(mode="json"),
        )

    async def _read_upload(self, file: UploadFile | None) -> bytes:
        """Read the upload into memory; size is checked by ingest_bytes."""
        if file is None or file.filename is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.missing_file().model_dump(mode="json"),
            )

        return await file.read()

    @staticmethod
    def _check_size(data: bytes) -> None:
        """Empty bytes are a missing file (400); above the ceiling is 413."""
        if not data:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.missing_file().model_dump(mode="json"),
            )

        if len(data) > MAX_FILE_SIZE_BYTES:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=UploadErrors.file_too_large(len(data)).model_dump(mode="json"),
            )
