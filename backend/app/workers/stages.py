"""
Pipeline Stages

Every stage follows the same contract (BaseStage.run):

  1. load the JobContext for job_id from the metadata store
  2. open a JobHistory row for this attempt
  3. validate the fields the stage needs; a missing one fails fast with
     MissingMetadataError naming it
  4. do the work (handle), bounded by the stage soft time limit
  5. write progress and any context fields later stages need
  6. on any exception: record it on the history row, mark the File failed
     when the error is not retryable or this was the last attempt, and
     re-raise so the chain halts

Stages are plain async classes with injected collaborators; the Celery
wrappers in app.workers.tasks only translate task state (attempt number,
task id) and apply the retry policy.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, ClassVar

from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy import and_, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    EmptyFileError,
    MissingMetadataError,
    PipelineError,
    StageInputError,
    StageTimeoutError,
)
from app.db.session import get_admin_db
from app.models.entities import Document, LineItem, Receipt
from app.models.files import (
    EntityTag,
    ExtractionLink,
    File,
    FileStatus,
    ImportSourceFile,
    Tag,
)
from app.processing.conversion import (
    extract_local_text,
    remove_stale_working_files,
    remove_working_files,
    write_working_copy,
)
from app.processing.extractor import FieldExtractor, get_field_extractor
from app.processing.ocr import OCRProvider, TextractProvider
from app.processing.textract_blocks import BlockGraphResult
from app.schemas.jobs import JobContext, ReceiptMeta
from app.search.index import NullSearchIndex, SearchIndex, index_quietly, unindex_quietly
from app.services.entity_cleanup import EntityCleanupService
from app.services.jobs import JobHistoryRecorder, JobMetadataStore, get_job_metadata_store
from app.services.merchants import MerchantMatcher, normalize_name
from app.storage.s3 import BlobStore, Variant

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractAsyncContextManager[AsyncSession]]

# Error types retried besides PipelineError(is_retryable=True)
_RETRYABLE_TYPES: tuple[type[BaseException], ...] = (SoftTimeLimitExceeded, OperationalError)

# Scratch files older than this are removed when a job's metadata has expired
STALE_WORKING_FILE_SECONDS = 3600


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "is_retryable", False)) or isinstance(exc, _RETRYABLE_TYPES)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

@dataclass
class StageDependencies:
    store:         JobMetadataStore
    blob_store:    BlobStore
    ocr:           OCRProvider
    extractor:     FieldExtractor
    search:        SearchIndex = field(default_factory=NullSearchIndex)
    history:       JobHistoryRecorder = field(default_factory=JobHistoryRecorder)
    session_scope: SessionScope = get_admin_db


def default_dependencies() -> StageDependencies:
    return StageDependencies(
        store=get_job_metadata_store(),
        blob_store=BlobStore(),
        ocr=TextractProvider(),
        extractor=get_field_extractor(),
    )


# ---------------------------------------------------------------------------
# Base stage
# ---------------------------------------------------------------------------

class BaseStage(ABC):
    name: ClassVar[str]
    required_fields: ClassVar[tuple[str, ...]] = ("file_id", "file_guid", "user_id", "file_path")
    # False for stages that must still run after the metadata TTL expired
    requires_context: ClassVar[bool] = True

    def __init__(
        self,
        job_id: str,
        deps: StageDependencies,
        attempt: int = 1,
        max_attempts: int | None = None,
        task_id: str | None = None,
        queue: str | None = None,
        timeout_seconds: float | None = None,
        **params: Any,
    ) -> None:
        self.job_id = job_id
        self.deps = deps
        self.attempt = attempt
        self.max_attempts = max_attempts or settings.stage_max_attempts
        self.task_id = task_id
        self.queue = queue
        self.timeout_seconds = timeout_seconds or settings.stage_soft_time_limit_seconds
        self.params = params
        self._row_uuid: str | None = None
        self.file_id: int | None = None

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    # ------------------------------------------------------------------
    # Template
    # ------------------------------------------------------------------

    async def run(self) -> dict[str, Any]:
        if not self.job_id:
            raise MissingMetadataError("<none>", "job_id")

        context = await self.deps.store.get(self.job_id)
        self.file_id = context.file_id if context else await self._file_id_without_context()
        await self._open_attempt(self.file_id)

        try:
            self.validate(context)
            result = await asyncio.wait_for(self.handle(context), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            error = StageTimeoutError(self.name, self.timeout_seconds)
            await self._record_failure(context, error)
            raise error from exc
        except Exception as exc:
            await self._record_failure(context, exc)
            raise

        async with self.deps.session_scope() as session:
            await self.deps.history.complete(session, self._row_uuid)

        logger.info(
            "Stage complete | job=%s stage=%s file=%s attempt=%d",
            self.job_id, self.name, self.file_id or "?", self.attempt,
        )
        return result or {}

    def validate(self, context: JobContext | None) -> None:
        if context is None:
            if self.requires_context:
                raise MissingMetadataError(self.job_id, "file")
            return
        for name in self.required_fields:
            value = getattr(context, name, None)
            if value is None or value == "":
                raise MissingMetadataError(self.job_id, name)

    @abstractmethod
    async def handle(self, context: JobContext | None) -> dict[str, Any] | None: ...

    # ------------------------------------------------------------------
    # Helpers available to every stage
    # ------------------------------------------------------------------

    async def report_progress(self, progress: int) -> None:
        async with self.deps.session_scope() as session:
            await self.deps.history.update_progress(session, self._row_uuid, progress)

    async def save_context(self, context: JobContext) -> None:
        await self.deps.store.put(self.job_id, context)

    async def read_source(self, context: JobContext) -> bytes:
        """The working copy when this host has one, else the original blob."""
        if context.working_path:
            path = Path(context.working_path)
            if path.exists():
                return path.read_bytes()
        return await self.deps.blob_store.read(context.file_path)

    async def _from_earlier_attempt(self, session: AsyncSession, context: JobContext, model, entity_type: str):
        """Live entity this job already committed for the file, if a prior attempt got that far."""
        entity = (
            await session.execute(
                select(model)
                .join(
                    ExtractionLink,
                    and_(ExtractionLink.entity_type == entity_type, ExtractionLink.entity_id == model.id),
                )
                .where(
                    ExtractionLink.file_id == context.file_id,
                    ExtractionLink.job_id == self.job_id,
                    ExtractionLink.deleted_at.is_(None),
                    model.deleted_at.is_(None),
                )
                .order_by(model.id.desc())
                .limit(1)
            )
        ).scalars().first()
        if entity is not None:
            logger.info(
                "Reusing entity from earlier attempt | job=%s stage=%s %s=%s attempt=%d",
                self.job_id, self.name, entity_type, entity.id, self.attempt,
            )
        return entity

    async def _open_attempt(self, file_id: int | None) -> None:
        async with self.deps.session_scope() as session:
            row = await self.deps.history.start_attempt(
                session,
                job_id=self.job_id,
                stage_name=self.name,
                attempt=self.attempt,
                task_id=self.task_id,
                queue=self.queue,
                file_id=file_id,
            )
            self._row_uuid = row.uuid
        logger.info(
            "Stage start | job=%s stage=%s file=%s attempt=%d/%d",
            self.job_id, self.name, file_id, self.attempt, self.max_attempts,
        )

    async def _file_id_without_context(self) -> int | None:
        """Task arguments first, then the job's parent history row."""
        if self.params.get("file_id") is not None:
            return self.params["file_id"]
        async with self.deps.session_scope() as session:
            return await self.deps.history.job_file_id(session, self.job_id)

    async def _record_failure(self, context: JobContext | None, exc: BaseException) -> None:
        retryable = is_retryable(exc)
        final = not retryable or self.is_last_attempt
        file_id = self.file_id

        if isinstance(exc, PipelineError):
            logger.error(
                "Stage failed | job=%s stage=%s file=%s attempt=%d retryable=%s code=%s error=%s",
                self.job_id, self.name, file_id, self.attempt, retryable, exc.code, exc,
            )
        else:
            logger.exception(
                "Stage crashed | job=%s stage=%s file=%s attempt=%d",
                self.job_id, self.name, file_id, self.attempt,
            )

        # Tail stages that tolerate expired metadata run after the File completed
        mark_file = final and file_id is not None and (context is not None or self.requires_context)

        try:
            async with self.deps.session_scope() as session:
                if self._row_uuid:
                    await self.deps.history.fail(session, self._row_uuid, f"{type(exc).__name__}: {exc}")
                if mark_file:
                    await self._mark_file_failed(
                        session, file_id, exc, context.import_source_id if context else None,
                    )
        except SQLAlchemyError:
            # Keep the original error as the one that halts the chain
            logger.exception("Failure bookkeeping failed | job=%s stage=%s", self.job_id, self.name)

    async def _mark_file_failed(
        self,
        session: AsyncSession,
        file_id: int,
        exc: BaseException,
        import_source_id: int | None = None,
    ) -> None:
        file = await session.get(File, file_id)
        if file is not None:
            file.status = FileStatus.FAILED
            file.error_message = str(exc)
            meta = dict(file.file_metadata or {})
            meta["last_processing_error"] = {
                "stage":      self.name,
                "job_id":     self.job_id,
                "error":      str(exc),
                "error_type": type(exc).__name__,
                "attempt":    self.attempt,
                "failed_at":  _now().isoformat(),
            }
            file.file_metadata = meta
            logger.warning("File marked failed | file=%s job=%s stage=%s", file.id, self.job_id, self.name)

        if import_source_id is not None:
            source = await session.get(ImportSourceFile, import_source_id)
            if source is not None:
                source.status = FileStatus.FAILED
                source.error_message = str(exc)
                source.processed_at = _now()


# ---------------------------------------------------------------------------
# Convert
# ---------------------------------------------------------------------------

class ConvertStage(BaseStage):
    """Mark the file processing, copy the original to scratch, pre-extract text."""

    name = "Convert"
    required_fields = BaseStage.required_fields + ("file_extension",)

    async def handle(self, context: JobContext) -> dict[str, Any]:
        async with self.deps.session_scope() as session:
            file = await session.get(File, context.file_id)
            if file is None:
                raise StageInputError(f"File {context.file_id} no longer exists")
            file.status = FileStatus.PROCESSING
            file.error_message = None

        if not await self.deps.blob_store.exists(context.file_path):
            raise StageInputError(f"Original blob missing: {context.file_path}")

        data = await self.deps.blob_store.read(context.file_path)
        if not data:
            raise EmptyFileError(context.file_path)
        await self.report_progress(30)

        working = write_working_copy(context.file_guid, context.file_extension, data)
        context.working_path = str(working)

        loop = asyncio.get_running_loop()
        context.extracted_text = await loop.run_in_executor(
            None, extract_local_text, data, context.file_extension,
        )
        await self.report_progress(70)

        processed_path = await self.deps.blob_store.store(
            data,
            context.user_id,
            context.file_guid,
            context.file_type,
            Variant.PROCESSED,
            context.file_extension,
        )
        async with self.deps.session_scope() as session:
            file = await session.get(File, context.file_id)
            if file is not None:
                file.s3_processed_path = processed_path

        await self.save_context(context)
        return {
            "working_path": context.working_path,
            "local_text":   context.extracted_text is not None,
        }


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------

class ExtractReceiptFieldsStage(BaseStage):
    """OCR the receipt, extract its fields and persist Receipt + line items."""

    name = "ExtractReceiptFields"

    async def _ocr(self, context: JobContext) -> BlockGraphResult:
        if context.extracted_text:
            lines = [line for line in context.extracted_text.splitlines() if line.strip()]
            return BlockGraphResult(
                text=context.extracted_text.strip(), confidence=1.0, pages=[1], line_count=len(lines),
            )
        return await self.deps.ocr.analyze(await self.read_source(context))

    async def handle(self, context: JobContext) -> dict[str, Any]:
        ocr = await self._ocr(context)
        if not ocr.text and not ocr.forms:
            raise StageInputError(f"No text recognized in file {context.file_id}")
        await self.report_progress(40)

        extraction = await self.deps.extractor.extract_receipt(ocr)
        await self.report_progress(70)

        async with self.deps.session_scope() as session:
            receipt = await self._from_earlier_attempt(session, context, Receipt, "receipt")
            reused = receipt is not None
            if receipt is None:
                receipt = Receipt(file_id=context.file_id, user_id=context.user_id)
                session.add(receipt)
            else:
                stale = (
                    await session.execute(select(LineItem).where(LineItem.receipt_id == receipt.id))
                ).scalars().all()
                for item in stale:
                    await unindex_quietly(self.deps.search, item)
                    await session.delete(item)

            receipt.merchant_name = extraction.merchant_name
            receipt.receipt_date = extraction.receipt_date
            receipt.total_amount = extraction.total_amount
            receipt.tax_amount = extraction.tax_amount
            receipt.currency = extraction.currency
            receipt.category = extraction.category
            receipt.summary = extraction.summary
            receipt.raw_text = ocr.text
            receipt.ocr_confidence = ocr.confidence
            await session.flush()

            items = [
                LineItem(
                    receipt_id=receipt.id,
                    description=item.description,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    total_price=item.total_price,
                )
                for item in extraction.line_items
            ]
            session.add_all(items)
            if not reused:
                session.add(
                    ExtractionLink(
                        file_id=context.file_id, entity_type="receipt", entity_id=receipt.id,
                        is_primary=True, job_id=self.job_id,
                    )
                )
            await session.flush()

            await index_quietly(self.deps.search, receipt)
            for item in items:
                await index_quietly(self.deps.search, item)

        context.entity_type = "receipt"
        context.entity_id = receipt.id
        context.page_count = len(ocr.pages) or 1
        context.ocr_confidence = ocr.confidence
        await self.save_context(context)
        await self.deps.store.put_receipt(
            self.job_id,
            ReceiptMeta(
                receipt_id=receipt.id,
                merchant_name=extraction.merchant_name,
                merchant_address=extraction.merchant_address,
                vat_number=extraction.vat_number,
            ),
        )

        logger.info(
            "Receipt extracted | job=%s file=%s receipt=%s merchant=%r total=%s items=%d",
            self.job_id, context.file_id, receipt.id, extraction.merchant_name,
            extraction.total_amount, len(items),
        )
        return {"entity_type": "receipt", "entity_id": receipt.id, "line_items": len(items)}


class MatchMerchantStage(BaseStage):
    """Link the receipt to an existing or new Merchant by fuzzy name match."""

    name = "MatchMerchant"
    required_fields = BaseStage.required_fields + ("entity_id",)

    async def handle(self, context: JobContext) -> dict[str, Any]:
        meta = await self.deps.store.get_receipt(self.job_id)
        if meta is None:
            raise MissingMetadataError(self.job_id, "receipt")

        if not meta.merchant_name or not normalize_name(meta.merchant_name):
            logger.info("No merchant name | job=%s receipt=%s", self.job_id, meta.receipt_id)
            return {"merchant_id": None}

        async with self.deps.session_scope() as session:
            receipt = await session.get(Receipt, meta.receipt_id)
            if receipt is None or receipt.is_deleted:
                raise StageInputError(f"Receipt {meta.receipt_id} not found for merchant matching")

            merchant = await MerchantMatcher(session).match_or_create(
                receipt.user_id, meta.merchant_name, meta.merchant_address, meta.vat_number,
            )
            receipt.merchant_id = merchant.id
            await session.flush()
            await index_quietly(self.deps.search, receipt)

        return {"merchant_id": merchant.id}


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class ExtractDocumentFieldsStage(BaseStage):
    """Persist a Document with its full text (local extraction or OCR with inline tables)."""

    name = "ExtractDocumentFields"

    async def handle(self, context: JobContext) -> dict[str, Any]:
        if context.extracted_text:
            text, confidence, page_count = context.extracted_text, None, 1
        else:
            ocr = await self.deps.ocr.analyze(await self.read_source(context), inline_tables=True)
            text, confidence, page_count = ocr.text, ocr.confidence, len(ocr.pages) or 1
        if not text.strip():
            raise StageInputError(f"No text recognized in file {context.file_id}")
        await self.report_progress(60)

        async with self.deps.session_scope() as session:
            document = await self._from_earlier_attempt(session, context, Document, "document")
            reused = document is not None
            if document is None:
                document = Document(file_id=context.file_id, user_id=context.user_id)
                session.add(document)
            document.content = text
            document.page_count = page_count
            document.ocr_confidence = confidence
            await session.flush()
            if not reused:
                session.add(
                    ExtractionLink(
                        file_id=context.file_id, entity_type="document", entity_id=document.id,
                        is_primary=True, job_id=self.job_id,
                    )
                )
            await session.flush()
            await index_quietly(self.deps.search, document)

        context.entity_type = "document"
        context.entity_id = document.id
        context.page_count = page_count
        context.ocr_confidence = confidence
        await self.save_context(context)

        logger.info(
            "Document extracted | job=%s file=%s document=%s pages=%d chars=%d",
            self.job_id, context.file_id, document.id, page_count, len(text),
        )
        return {"entity_type": "document", "entity_id": document.id}


class AnalyzeDocumentStage(BaseStage):
    """AI enrichment: title, type, summary, language and topical tags."""

    name = "AnalyzeDocument"
    required_fields = BaseStage.required_fields + ("entity_type", "entity_id")

    async def handle(self, context: JobContext) -> dict[str, Any]:
        if context.entity_type != "document":
            raise StageInputError(f"Expected a document entity, got '{context.entity_type}'")

        async with self.deps.session_scope() as session:
            document = await session.get(Document, context.entity_id)
            if document is None or document.is_deleted:
                raise StageInputError(f"Document {context.entity_id} not found for analysis")
            content = document.content or ""

        analysis = await self.deps.extractor.analyze_document(content)
        await self.report_progress(80)

        async with self.deps.session_scope() as session:
            document = await session.get(Document, context.entity_id)
            document.document_title = analysis.title
            document.document_type = analysis.document_type
            document.summary = analysis.summary
            document.language = analysis.language
            document.ai_metadata = {
                **(document.ai_metadata or {}),
                "tags":        analysis.tags,
                "analyzed_at": _now().isoformat(),
            }
            await session.flush()
            await index_quietly(self.deps.search, document)

        return {"document_type": analysis.document_type, "title": analysis.title}


# ---------------------------------------------------------------------------
# Shared tail stages
# ---------------------------------------------------------------------------

class ApplyTagsStage(BaseStage):
    name = "ApplyTags"
    required_fields = BaseStage.required_fields + ("entity_type", "entity_id")

    async def handle(self, context: JobContext) -> dict[str, Any]:
        if not context.tag_ids:
            return {"applied": 0}

        async with self.deps.session_scope() as session:
            tags = (
                await session.execute(
                    select(Tag).where(Tag.id.in_(context.tag_ids), Tag.user_id == context.user_id)
                )
            ).scalars().all()
            missing = set(context.tag_ids) - {tag.id for tag in tags}
            if missing:
                logger.warning("Tags not found for owner | job=%s tags=%s", self.job_id, sorted(missing))

            existing = set(
                (
                    await session.execute(
                        select(EntityTag.tag_id).where(
                            EntityTag.entity_type == context.entity_type,
                            EntityTag.entity_id == context.entity_id,
                        )
                    )
                ).scalars().all()
            )
            new = [
                EntityTag(tag_id=tag.id, entity_type=context.entity_type, entity_id=context.entity_id)
                for tag in tags
                if tag.id not in existing
            ]
            session.add_all(new)

        logger.info(
            "Tags applied | job=%s entity=%s:%s applied=%d",
            self.job_id, context.entity_type, context.entity_id, len(new),
        )
        return {"applied": len(new)}


class DeleteWorkingFilesStage(BaseStage):
    """
    Terminal stage: remove scratch files, purge entities replaced by a
    reprocess, mark the File completed and forget the job's metadata.
    """

    name = "DeleteWorkingFiles"
    required_fields = ("file_id", "file_guid")
    requires_context = False

    async def handle(self, context: JobContext | None) -> dict[str, Any]:
        if context is None:
            removed = remove_stale_working_files(STALE_WORKING_FILE_SECONDS)
            await self.deps.store.forget(self.job_id)
            logger.warning(
                "Job metadata expired | job=%s stale_files_removed=%d", self.job_id, removed,
            )
            return {"status": "metadata_expired", "removed": removed}

        removed = remove_working_files(context.file_guid)

        purged: dict[str, int] = {}
        if context.reprocessing and context.previous_entities:
            async with self.deps.session_scope() as session:
                purged = await EntityCleanupService(session, self.deps.search).hard_delete(
                    context.previous_entities
                )

        async with self.deps.session_scope() as session:
            file = await session.get(File, context.file_id)
            if file is None:
                raise StageInputError(f"File {context.file_id} no longer exists")
            file.status = FileStatus.COMPLETED
            file.processed_at = _now()
            file.error_message = None
            meta = dict(file.file_metadata or {})
            meta.pop("last_processing_error", None)
            meta["last_job_id"] = self.job_id
            file.file_metadata = meta

        await self.deps.store.forget(self.job_id)
        logger.info(
            "File completed | job=%s file=%s working_files_removed=%d purged=%s",
            self.job_id, context.file_id, removed, purged,
        )
        return {"status": FileStatus.COMPLETED, "removed": removed, "purged": purged}


class UpdateImportSourceStatusStage(BaseStage):
    """Record the import outcome; arguments arrive with the task, not the metadata store."""

    name = "UpdateImportSourceStatus"
    required_fields = ()
    requires_context = False

    async def handle(self, context: JobContext | None) -> dict[str, Any]:
        source_id = self.params.get("import_source_id")
        file_id = self.params.get("file_id")
        if source_id is None or file_id is None:
            raise MissingMetadataError(self.job_id, "import_source_id" if source_id is None else "file_id")

        async with self.deps.session_scope() as session:
            source = await session.get(ImportSourceFile, source_id)
            if source is None:
                raise StageInputError(f"Import source file {source_id} not found")

            link = (
                await session.execute(
                    select(ExtractionLink)
                    .where(ExtractionLink.file_id == file_id, ExtractionLink.deleted_at.is_(None))
                    .order_by(ExtractionLink.is_primary.desc(), ExtractionLink.extracted_at.desc())
                    .limit(1)
                )
            ).scalars().first()

            source.file_id = file_id
            source.processed_at = _now()
            if link is not None:
                source.status = FileStatus.COMPLETED
                source.entity_type = link.entity_type
                source.entity_id = link.entity_id
                source.error_message = None
            else:
                source.status = FileStatus.FAILED
                source.error_message = f"No entity was extracted from file {file_id}"

        logger.info(
            "Import source updated | job=%s source=%s file=%s status=%s",
            self.job_id, source_id, file_id, source.status,
        )
        return {"status": source.status, "entity_type": source.entity_type, "entity_id": source.entity_id}


STAGES: dict[str, type[BaseStage]] = {
    stage.name: stage
    for stage in (
        ConvertStage,
        ExtractReceiptFieldsStage,
        MatchMerchantStage,
        ExtractDocumentFieldsStage,
        AnalyzeDocumentStage,
        ApplyTagsStage,
        DeleteWorkingFilesStage,
        UpdateImportSourceStatusStage,
    )
}
