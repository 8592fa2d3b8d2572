"""
Reprocessing Service

reprocess_file(file, force)
  1. re-read the File under a row lock (SELECT … FOR UPDATE)
  2. eligibility: a retained original blob; unless force, not pending,
     processing or completed
  3. flip status to pending inside a savepoint; the partial unique index
     rejects the flip while another in-flight file has the same content
  4. soft-delete and unindex the current entities
  5. new job id + JobContext(reprocessing=True, previous_entities=…);
     rows left soft-deleted by an earlier reprocess that failed are
     carried into previous_entities too
  6. reset derived paths and dispatch

The soft-deleted entities are only hard-deleted by the terminal stage of
the new chain, so a failed reprocess leaves them recoverable.

Two reprocess calls for the same file serialize on the row lock; the
second sees 'pending' and is refused unless forced.
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.files import File, FileStatus, FileType, utcnow
from app.schemas.files import ALLOWED_EXTENSIONS
from app.schemas.jobs import BatchReprocessResult, JobContext, JobSource, ReprocessResult
from app.search.index import NullSearchIndex, SearchIndex
from app.services.dispatcher import JobChainDispatcher, job_name_for
from app.services.entity_cleanup import EntityCleanupService
from app.storage.s3 import BlobStore, Variant, build_path

logger = logging.getLogger(__name__)

_SKIP_MARKERS = ("already", "currently")


def reset_processing_state(file: File) -> None:
    """Clear everything derived from a previous run; the original is kept."""
    file.s3_processed_path = None
    file.s3_archive_path = None
    file.s3_image_path = None
    file.processed_at = None
    file.error_message = None
    meta = dict(file.file_metadata or {})
    meta.pop("last_processing_error", None)
    file.file_metadata = meta


class ReprocessingService:
    def __init__(
        self,
        db: AsyncSession,
        cleanup: EntityCleanupService | None = None,
        dispatcher: JobChainDispatcher | None = None,
        storage: BlobStore | None = None,
        search: SearchIndex | None = None,
    ) -> None:
        self._db = db
        self._cleanup = cleanup or EntityCleanupService(db, search or NullSearchIndex())
        self._dispatcher = dispatcher or JobChainDispatcher()
        self._storage = storage or BlobStore()

    # ------------------------------------------------------------------
    # Single file
    # ------------------------------------------------------------------

    async def reprocess_file(
        self,
        file: File,
        force: bool = False,
        source: JobSource = "reprocess",
    ) -> ReprocessResult:
        locked = await self._lock(file.id)
        if locked is None:
            return ReprocessResult(success=False, message=f"File {file.id} not found")

        refusal = self._refusal(locked, force)
        if refusal:
            logger.info("Reprocess refused | file=%s status=%s reason=%s", locked.id, locked.status, refusal)
            return ReprocessResult(success=False, message=refusal)

        if not await self._storage.exists(locked.s3_original_path):
            logger.warning("Reprocess refused | file=%s missing original=%s", locked.id, locked.s3_original_path)
            return ReprocessResult(
                success=False, message=f"Original file is missing from storage: {locked.s3_original_path}",
            )

        original_status = locked.status
        file_id = locked.id
        try:
            async with self._db.begin_nested():
                locked.status = FileStatus.PENDING
                locked.updated_at = utcnow()
                await self._db.flush()
        except IntegrityError:
            logger.warning("Reprocess refused | file=%s identical content in flight", file_id)
            return ReprocessResult(
                success=False,
                message="Another copy of this file is currently being processed",
            )

        carried = await self._cleanup.awaiting_purge(locked)
        deleted = await self._cleanup.soft_delete_and_unindex(locked)
        reset_processing_state(locked)
        await self._db.flush()

        job_id = str(uuid.uuid4())
        context = JobContext(
            job_id=job_id,
            job_name=job_name_for(locked.file_type, reprocessing=True),
            file_id=locked.id,
            file_guid=str(locked.guid),
            user_id=locked.user_id,
            file_type=locked.file_type,
            file_path=locked.s3_original_path,
            file_extension=locked.extension,
            source=source,
            reprocessing=True,
            force=force,
            previous_entities=carried + deleted.entities,
            original_status=original_status,
            original_uploaded_at=locked.uploaded_at,
        )

        try:
            await self._dispatcher.start_job(self._db, context, name=context.job_name)
        except Exception as exc:
            # File stays pending; the stale-pending beat task restarts it
            logger.error("Reprocess dispatch failed | file=%s job=%s error=%s", locked.id, job_id, exc)
            return ReprocessResult(success=False, job_id=job_id, message=f"Failed to queue reprocessing: {exc}")

        logger.info(
            "Reprocess started | file=%s job=%s type=%s from_status=%s soft_deleted=%d force=%s",
            locked.id, job_id, locked.file_type, original_status, deleted.count, force,
        )
        return ReprocessResult(success=True, job_id=job_id, message="Reprocessing started")

    async def _lock(self, file_id: int) -> File | None:
        return (
            await self._db.execute(
                select(File)
                .where(File.id == file_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalars().first()

    def _refusal(self, file: File, force: bool) -> str | None:
        if not file.has_original:
            return "File has no stored original and cannot be reprocessed"
        if force:
            return None
        if file.status in (FileStatus.PROCESSING, FileStatus.PENDING):
            return f"File is currently {file.status}; use force to restart it"
        if file.status == FileStatus.COMPLETED:
            return "File is already completed; use force to reprocess it"
        return None

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def reprocess_files(self, files: Iterable[File], force: bool = False) -> BatchReprocessResult:
        summary = BatchReprocessResult()
        for file in files:
            result = await self.reprocess_file(file, force=force)
            summary.results[file.id] = result
            if result.success:
                summary.successful += 1
            elif any(marker in result.message for marker in _SKIP_MARKERS):
                summary.skipped += 1
            else:
                summary.failed += 1

        logger.info(
            "Batch reprocess | successful=%d failed=%d skipped=%d",
            summary.successful, summary.failed, summary.skipped,
        )
        return summary

    # ------------------------------------------------------------------
    # Type change
    # ------------------------------------------------------------------

    async def change_type_and_reprocess(
        self,
        file: File,
        new_type: str,
        force: bool = False,
    ) -> ReprocessResult:
        if new_type not in FileType.ALL:
            return ReprocessResult(success=False, message=f"'{new_type}' is not a valid file type")

        locked = await self._lock(file.id)
        if locked is None:
            return ReprocessResult(success=False, message=f"File {file.id} not found")
        file = locked
        if new_type == file.file_type:
            return await self.reprocess_file(file, force=force)
        if file.extension not in ALLOWED_EXTENSIONS[new_type]:
            return ReprocessResult(
                success=False, message=f"'{file.extension}' files cannot be processed as {new_type}",
            )

        refusal = self._refusal(file, force)
        if refusal:
            return ReprocessResult(success=False, message=refusal)

        destination = build_path(new_type, file.user_id, file.guid, Variant.ORIGINAL, file.extension)
        if destination != file.s3_original_path:
            await self._storage.move(file.s3_original_path, destination)

        old_type = file.file_type
        file.file_type = new_type
        file.s3_original_path = destination
        reset_processing_state(file)
        await self._db.flush()

        logger.info("File type changed | file=%s from=%s to=%s", file.id, old_type, new_type)
        # Eligibility was checked against the pre-change status
        return await self.reprocess_file(file, force=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def find_reprocessable_files(
        self,
        file_type: str | None = None,
        status: str | None = None,
        user_id: uuid.UUID | None = None,
        limit: int = 100,
    ) -> list[File]:
        stmt = select(File).where(File.s3_original_path.is_not(None))
        if file_type:
            stmt = stmt.where(File.file_type == file_type)
        if status:
            stmt = stmt.where(File.status == status)
        if user_id:
            stmt = stmt.where(File.user_id == user_id)
        stmt = stmt.order_by(File.uploaded_at.desc()).limit(limit)
        return list((await self._db.execute(stmt)).scalars().all())

    async def reprocessing_stats(self) -> dict:
        """File counts by status × type, restricted to files with a retained original."""
        rows = (
            await self._db.execute(
                select(File.file_type, File.status, func.count())
                .where(File.s3_original_path.is_not(None))
                .group_by(File.file_type, File.status)
            )
        ).all()

        by_type: dict[str, dict[str, int]] = {t: {} for t in FileType.ALL}
        by_status: dict[str, int] = {}
        total = 0
        for file_type, status, count in rows:
            by_type.setdefault(file_type, {})[status] = count
            by_status[status] = by_status.get(status, 0) + count
            total += count
        return {"total": total, "by_status": by_status, "by_type": by_type}
