"""
Integration Tests — Pipeline stages end-to-end
══════════════════════════════════════════════
Runs every stage of a chain in order, in-process, against a real SQLite
database with the in-memory metadata store, blob store and OCR fakes.
Celery is not involved: each stage is invoked exactly as the task
wrapper would invoke it.

Coverage targets:
  ✅ Receipt chain: Receipt + merchant + tags, File completed, metadata forgotten
  ✅ Document chain (text file): OCR skipped, AI analysis applied
  ✅ Import-sourced file: import source row completed with the entity
  ✅ Non-retryable failure: File failed with last_processing_error, chain halts
  ✅ Retryable failure: File left alone until the last attempt
  ✅ Stage timeout mapped to a retryable StageTimeoutError
  ✅ Missing metadata fails fast; DeleteWorkingFiles tolerates expiry
  ✅ Reprocess: old entities hard-deleted only when the new chain completes
  ✅ Reprocess after a failed reprocess purges the rows both runs replaced
  ✅ Retry after a committed extraction reuses its entity and link
  ✅ Expired metadata mid-chain still marks the File failed
"""

from __future__ import annotations

import asyncio
import uuid
from unittest.mock import patch

import pytest
from sqlalchemy import select

from app.core.exceptions import (
    MissingMetadataError,
    StageInputError,
    StageTimeoutError,
    TransientProviderError,
    UnsupportedFormatError,
)
from app.models.entities import Document, LineItem, Receipt
from app.models.files import (
    EntityTag,
    ExtractionLink,
    File,
    FileStatus,
    ImportSourceFile,
    JobHistory,
    JobStatus,
    Merchant,
    Tag,
)
from app.processing.conversion import working_path_for
from app.schemas.jobs import JobContext
from app.services.dispatcher import JobChainDispatcher, job_name_for, plan_stages
from app.services.jobs import JobHistoryRecorder
from app.services.reprocessing import ReprocessingService
from app.workers.stages import STAGES, DeleteWorkingFilesStage, ExtractReceiptFieldsStage


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

async def _start(session_scope, metadata_store, file: File, **overrides) -> JobContext:
    """Write the job's context and parent history row the way start_job does."""
    context = JobContext(
        job_id=str(uuid.uuid4()),
        job_name=job_name_for(file.file_type),
        file_id=file.id,
        file_guid=str(file.guid),
        user_id=file.user_id,
        file_type=file.file_type,
        file_path=file.s3_original_path,
        file_extension=file.extension,
        **overrides,
    )
    await metadata_store.put(context.job_id, context)
    async with session_scope() as session:
        await JobHistoryRecorder().create_parent(
            session, job_id=context.job_id, name=context.job_name,
            stage_count=len(plan_stages(context)), file_id=file.id,
        )
    return context


async def _run_chain(context: JobContext, deps) -> list[dict]:
    """Run every planned stage in order; a raising stage halts the chain."""
    results = []
    for plan in plan_stages(context):
        stage = STAGES[plan.name](deps=deps, **plan.kwargs)
        results.append(await stage.run())
    return results


async def _file(session_scope, file_id: int) -> File:
    async with session_scope() as session:
        return await session.get(File, file_id)


async def _parent(session_scope, job_id: str) -> JobHistory:
    async with session_scope() as session:
        return (
            await session.execute(
                select(JobHistory).where(JobHistory.job_id == job_id, JobHistory.order_in_chain == 0)
            )
        ).scalars().one()


# ─────────────────────────────────────────────────────────────────────────────
# Happy paths
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestReceiptChain:

    async def test_full_chain(self, session_scope, metadata_store, stage_deps, blob_store, ocr_provider,
                              search_index, make_file, user_id):
        file = await make_file(status=FileStatus.PENDING)
        async with session_scope() as session:
            tag = Tag(user_id=user_id, name="groceries")
            foreign = Tag(user_id=uuid.uuid4(), name="not mine")
            session.add_all([tag, foreign])
        context = await _start(session_scope, metadata_store, file, tag_ids=[tag.id, foreign.id])

        results = await _run_chain(context, stage_deps)

        assert [r.get("status") for r in results][-1] == FileStatus.COMPLETED
        assert len(ocr_provider.calls) == 1

        async with session_scope() as session:
            receipt = (await session.execute(select(Receipt).where(Receipt.file_id == file.id))).scalars().one()
            assert receipt.merchant_name == "REMA 1000"
            assert str(receipt.total_amount) == "56.40"
            assert receipt.ocr_confidence == pytest.approx(0.97)

            merchant = await session.get(Merchant, receipt.merchant_id)
            assert merchant.normalized_name == "rema 1000"

            tags = (await session.execute(select(EntityTag.tag_id).where(EntityTag.entity_id == receipt.id))).scalars().all()
            assert tags == [tag.id]

        stored = await _file(session_scope, file.id)
        assert stored.status == FileStatus.COMPLETED
        assert stored.processed_at is not None
        assert stored.s3_processed_path in blob_store.objects
        assert stored.file_metadata["last_job_id"] == context.job_id

        parent = await _parent(session_scope, context.job_id)
        assert parent.status == JobStatus.COMPLETED
        assert parent.progress == 100

        assert ("receipt", receipt.id) in search_index.indexed
        assert await metadata_store.get(context.job_id) is None
        assert not working_path_for(str(file.guid), "png").exists()

    async def test_import_sourced_file(self, session_scope, metadata_store, stage_deps, make_file, user_id):
        file = await make_file(status=FileStatus.PENDING)
        async with session_scope() as session:
            source = ImportSourceFile(user_id=user_id, remote_path="/scans/receipt.png")
            session.add(source)
        context = await _start(session_scope, metadata_store, file, source="import", import_source_id=source.id)

        await _run_chain(context, stage_deps)

        async with session_scope() as session:
            row = await session.get(ImportSourceFile, source.id)
            assert row.status == FileStatus.COMPLETED
            assert row.file_id == file.id
            assert row.entity_type == "receipt"
            assert row.entity_id is not None


@pytest.mark.integration
class TestDocumentChain:

    async def test_text_document_skips_ocr(self, session_scope, metadata_store, stage_deps, ocr_provider,
                                           make_file, sample_txt_bytes):
        file = await make_file(status=FileStatus.PENDING, file_type="document", ext="txt", content=sample_txt_bytes)
        context = await _start(session_scope, metadata_store, file)

        await _run_chain(context, stage_deps)

        assert ocr_provider.calls == []
        async with session_scope() as session:
            document = (await session.execute(select(Document).where(Document.file_id == file.id))).scalars().one()
            assert document.title == "Lease agreement"
            assert document.document_type == "other"
            assert "Between Alice and Bob" in document.content
            assert "analyzed_at" in document.ai_metadata
        assert (await _file(session_scope, file.id)).status == FileStatus.COMPLETED

    async def test_scanned_document_uses_ocr_with_inline_tables(self, session_scope, metadata_store, stage_deps,
                                                                ocr_provider, make_file):
        file = await make_file(status=FileStatus.PENDING, file_type="document")
        context = await _start(session_scope, metadata_store, file)

        await _run_chain(context, stage_deps)

        assert ocr_provider.calls[0]["inline_tables"] is True


# ─────────────────────────────────────────────────────────────────────────────
# Failures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestFailures:

    async def test_permanent_failure_marks_file_and_halts(self, session_scope, metadata_store, stage_deps,
                                                          ocr_provider, make_file):
        ocr_provider.error = UnsupportedFormatError("47494638")
        file = await make_file(status=FileStatus.PENDING)
        context = await _start(session_scope, metadata_store, file)

        with pytest.raises(UnsupportedFormatError):
            await _run_chain(context, stage_deps)

        stored = await _file(session_scope, file.id)
        assert stored.status == FileStatus.FAILED
        error = stored.file_metadata["last_processing_error"]
        assert error["stage"] == "ExtractReceiptFields"
        assert error["job_id"] == context.job_id
        assert error["error_type"] == "UnsupportedFormatError"

        parent = await _parent(session_scope, context.job_id)
        assert parent.status == JobStatus.FAILED
        async with session_scope() as session:
            names = (await session.execute(select(JobHistory.name).where(JobHistory.job_id == context.job_id))).scalars().all()
        assert "MatchMerchant" not in names
        assert await metadata_store.get(context.job_id) is not None

    async def test_retryable_failure_waits_for_last_attempt(self, session_scope, metadata_store, stage_deps,
                                                            ocr_provider, make_file):
        ocr_provider.error = TransientProviderError("textract", "ThrottlingException")
        file = await make_file(status=FileStatus.PROCESSING)
        context = await _start(session_scope, metadata_store, file)

        with pytest.raises(TransientProviderError):
            await ExtractReceiptFieldsStage(context.job_id, stage_deps, attempt=1, max_attempts=3).run()
        assert (await _file(session_scope, file.id)).status == FileStatus.PROCESSING

        with pytest.raises(TransientProviderError):
            await ExtractReceiptFieldsStage(context.job_id, stage_deps, attempt=3, max_attempts=3).run()
        assert (await _file(session_scope, file.id)).status == FileStatus.FAILED

        async with session_scope() as session:
            attempts = (
                await session.execute(
                    select(JobHistory.attempt).where(
                        JobHistory.job_id == context.job_id, JobHistory.name == "ExtractReceiptFields",
                    )
                )
            ).scalars().all()
        assert sorted(attempts) == [1, 3]

    async def test_stage_timeout(self, session_scope, metadata_store, stage_deps, make_file):
        async def hang(data, features=("TABLES", "FORMS"), inline_tables=False):
            await asyncio.sleep(5)

        stage_deps.ocr.analyze = hang
        file = await make_file(status=FileStatus.PROCESSING)
        context = await _start(session_scope, metadata_store, file)

        with pytest.raises(StageTimeoutError) as exc_info:
            await ExtractReceiptFieldsStage(context.job_id, stage_deps, timeout_seconds=0.05).run()

        assert exc_info.value.is_retryable
        assert (await _file(session_scope, file.id)).status == FileStatus.PROCESSING

    async def test_missing_metadata_fails_fast(self, stage_deps, ocr_provider):
        with pytest.raises(MissingMetadataError) as exc_info:
            await ExtractReceiptFieldsStage("expired-job", stage_deps).run()

        assert exc_info.value.field == "file"
        assert ocr_provider.calls == []

    async def test_missing_required_field(self, session_scope, metadata_store, stage_deps, make_file):
        file = await make_file(status=FileStatus.PROCESSING)
        context = await _start(session_scope, metadata_store, file)

        with pytest.raises(MissingMetadataError) as exc_info:
            await STAGES["MatchMerchant"](context.job_id, stage_deps).run()

        assert exc_info.value.field == "entity_id"

    async def test_delete_working_files_after_expiry(self, stage_deps, metadata_store):
        result = await DeleteWorkingFilesStage("expired-job", stage_deps).run()

        assert result["status"] == "metadata_expired"

    async def test_retry_after_commit_reuses_receipt(self, session_scope, metadata_store, stage_deps, make_file):
        async def hang(job_id, meta, ttl=None):
            await asyncio.sleep(10)

        file = await make_file(status=FileStatus.PROCESSING)
        context = await _start(session_scope, metadata_store, file)

        with patch.object(metadata_store, "put_receipt", hang):
            with pytest.raises(StageTimeoutError):
                await ExtractReceiptFieldsStage(context.job_id, stage_deps, attempt=1, timeout_seconds=1).run()
        async with session_scope() as session:
            first = (await session.execute(select(Receipt.id).where(Receipt.file_id == file.id))).scalars().one()

        result = await ExtractReceiptFieldsStage(context.job_id, stage_deps, attempt=2).run()

        assert result["entity_id"] == first
        async with session_scope() as session:
            receipts = (await session.execute(select(Receipt).where(Receipt.file_id == file.id))).scalars().all()
            links = (
                await session.execute(select(ExtractionLink).where(ExtractionLink.file_id == file.id))
            ).scalars().all()
            items = (await session.execute(select(LineItem).where(LineItem.receipt_id == first))).scalars().all()
        assert len(receipts) == 1
        assert len(links) == 1
        assert links[0].is_primary and links[0].job_id == context.job_id
        assert len(items) == result["line_items"]

    async def test_retry_after_commit_reuses_document(self, session_scope, metadata_store, stage_deps, make_file):
        real_put = metadata_store.put

        async def hang(job_id, context, ttl=None):
            if context.entity_id is not None:
                await asyncio.sleep(10)
            await real_put(job_id, context, ttl)

        file = await make_file(status=FileStatus.PROCESSING, file_type="document")
        context = await _start(session_scope, metadata_store, file)
        stage = STAGES["ExtractDocumentFields"]

        with patch.object(metadata_store, "put", hang):
            with pytest.raises(StageTimeoutError):
                await stage(context.job_id, stage_deps, attempt=1, timeout_seconds=1).run()
        result = await stage(context.job_id, stage_deps, attempt=2).run()

        async with session_scope() as session:
            documents = (await session.execute(select(Document).where(Document.file_id == file.id))).scalars().all()
            links = (
                await session.execute(select(ExtractionLink).where(ExtractionLink.file_id == file.id))
            ).scalars().all()
        assert [d.id for d in documents] == [result["entity_id"]]
        assert len(links) == 1

    async def test_expired_metadata_mid_chain_marks_file_failed(self, session_scope, metadata_store, stage_deps,
                                                                ocr_provider, make_file):
        file = await make_file(status=FileStatus.PENDING)
        context = await _start(session_scope, metadata_store, file)
        await STAGES["Convert"](context.job_id, stage_deps).run()
        await metadata_store.forget(context.job_id)

        with pytest.raises(MissingMetadataError):
            await ExtractReceiptFieldsStage(context.job_id, stage_deps).run()

        assert ocr_provider.calls == []
        stored = await _file(session_scope, file.id)
        assert stored.status == FileStatus.FAILED
        assert stored.file_metadata["last_processing_error"]["stage"] == "ExtractReceiptFields"
        assert stored.file_metadata["last_processing_error"]["error_type"] == "MissingMetadataError"
        assert (await _parent(session_scope, context.job_id)).status == JobStatus.FAILED

    async def test_expired_metadata_after_completion_leaves_file(self, session_scope, metadata_store, stage_deps,
                                                                 make_file):
        file = await make_file(status=FileStatus.PENDING)
        context = await _start(session_scope, metadata_store, file)
        await _run_chain(context, stage_deps)

        with patch.object(DeleteWorkingFilesStage, "handle", side_effect=RuntimeError("disk gone")):
            with pytest.raises(RuntimeError):
                await DeleteWorkingFilesStage(context.job_id, stage_deps, max_attempts=1).run()

        assert (await _file(session_scope, file.id)).status == FileStatus.COMPLETED
    async def test_missing_original_blob(self, session_scope, metadata_store, stage_deps, make_file):
        file = await make_file(status=FileStatus.PENDING, store_original=False)
        context = await _start(session_scope, metadata_store, file)

        with pytest.raises(StageInputError, match="Original blob missing"):
            await _run_chain(context, stage_deps)

        assert (await _file(session_scope, file.id)).status == FileStatus.FAILED


# ─────────────────────────────────────────────────────────────────────────────
# Reprocessing
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestReprocessFlow:

    async def _reprocess(self, session_scope, metadata_store, blob_store, search_index, file) -> JobContext:
        dispatcher = JobChainDispatcher(store=metadata_store, start_delay=0)
        async with session_scope() as session:
            with patch("app.services.dispatcher.chain"):
                result = await ReprocessingService(
                    session, dispatcher=dispatcher, storage=blob_store, search=search_index,
                ).reprocess_file(file, force=True)
        assert result.success, result.message
        return await metadata_store.get(result.job_id)

    async def test_old_entities_purged_on_completion(self, session_scope, metadata_store, stage_deps,
                                                     blob_store, search_index, make_file):
        file = await make_file(status=FileStatus.PENDING)
        first = await _start(session_scope, metadata_store, file)
        await _run_chain(first, stage_deps)
        async with session_scope() as session:
            old = (await session.execute(select(Receipt).where(Receipt.file_id == file.id))).scalars().one()

        context = await self._reprocess(session_scope, metadata_store, blob_store, search_index, file)

        assert context.reprocessing is True
        async with session_scope() as session:
            soft = await session.get(Receipt, old.id)
            assert soft.deleted_reason == "reprocess"
        assert (await _file(session_scope, file.id)).status == FileStatus.PENDING

        await _run_chain(context, stage_deps)

        async with session_scope() as session:
            assert await session.get(Receipt, old.id) is None
            live = (await session.execute(select(Receipt).where(Receipt.file_id == file.id))).scalars().all()
            assert len(live) == 1
            assert live[0].deleted_at is None
        assert (await _file(session_scope, file.id)).status == FileStatus.COMPLETED

    async def test_failed_reprocess_keeps_old_entities(self, session_scope, metadata_store, stage_deps,
                                                       blob_store, search_index, ocr_provider, make_file):
        file = await make_file(status=FileStatus.PENDING)
        await _run_chain(await _start(session_scope, metadata_store, file), stage_deps)
        async with session_scope() as session:
            old = (await session.execute(select(Receipt).where(Receipt.file_id == file.id))).scalars().one()

        context = await self._reprocess(session_scope, metadata_store, blob_store, search_index, file)
        ocr_provider.error = UnsupportedFormatError("00000000")
        with pytest.raises(UnsupportedFormatError):
            await _run_chain(context, stage_deps)

        async with session_scope() as session:
            kept = await session.get(Receipt, old.id)
            assert kept is not None
            assert kept.deleted_reason == "reprocess"
            items = (await session.execute(select(LineItem).where(LineItem.receipt_id == old.id))).scalars().all()
            assert all(item.deleted_at is not None for item in items)
        assert (await _file(session_scope, file.id)).status == FileStatus.FAILED


    async def test_rows_from_failed_reprocess_purged_by_next_success(self, session_scope, metadata_store,
                                                                      stage_deps, blob_store, search_index,
                                                                      ocr_provider, make_file):
        file = await make_file(status=FileStatus.PENDING)
        await _run_chain(await _start(session_scope, metadata_store, file), stage_deps)
        async with session_scope() as session:
            old = (await session.execute(select(Receipt).where(Receipt.file_id == file.id))).scalars().one()

        failing = await self._reprocess(session_scope, metadata_store, blob_store, search_index, file)
        ocr_provider.error = UnsupportedFormatError("00000000")
        with pytest.raises(UnsupportedFormatError):
            await _run_chain(failing, stage_deps)

        ocr_provider.error = None
        context = await self._reprocess(session_scope, metadata_store, blob_store, search_index, file)
        assert ("receipt", old.id) in {ref.as_tuple() for ref in context.previous_entities}
        await _run_chain(context, stage_deps)

        async with session_scope() as session:
            assert await session.get(Receipt, old.id) is None
            assert (await session.execute(select(LineItem).where(LineItem.receipt_id == old.id))).scalars().all() == []
            receipts = (await session.execute(select(Receipt).where(Receipt.file_id == file.id))).scalars().all()
            links = (
                await session.execute(select(ExtractionLink).where(ExtractionLink.file_id == file.id))
            ).scalars().all()
        assert len(receipts) == 1 and receipts[0].deleted_at is None
        assert [link.entity_id for link in links] == [receipts[0].id]
        assert (await _file(session_scope, file.id)).status == FileStatus.COMPLETED
