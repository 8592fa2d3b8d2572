"""
Job Chain Dispatcher

dispatch(job_id, file_type)
  Reads the JobContext for job_id, builds the stage sequence for the file
  type and submits it as one Celery chain: stage N+1 is only enqueued after
  stage N returns, and a stage that raises halts the chain.

Sequences (hardcoded per file type; STAGE_ORDER in app.services.jobs is
for history only):

  receipt   Convert → ExtractReceiptFields → MatchMerchant
            → [ApplyTags] → DeleteWorkingFiles → [UpdateImportSourceStatus]
  document  Convert → ExtractDocumentFields → AnalyzeDocument
            → [ApplyTags] → DeleteWorkingFiles → [UpdateImportSourceStatus]

  ApplyTags runs only when the context carries tag ids.
  UpdateImportSourceStatus runs only for files pulled from an import source,
  and receives its arguments in the signature because DeleteWorkingFiles
  forgets the job's metadata before it runs.

Signatures are immutable (.si) so no stage receives its predecessor's
return value; everything a stage needs comes from the metadata store.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from celery import chain
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import MissingMetadataError, StageInputError
from app.models.files import FileType
from app.schemas.jobs import JobContext
from app.services.jobs import JobHistoryRecorder, JobMetadataStore, get_job_metadata_store

logger = logging.getLogger(__name__)

# Stage name → registered Celery task name
STAGE_TASKS: dict[str, str] = {
    "Convert":                  "app.workers.tasks.convert",
    "ExtractReceiptFields":     "app.workers.tasks.extract_receipt_fields",
    "ExtractDocumentFields":    "app.workers.tasks.extract_document_fields",
    "MatchMerchant":            "app.workers.tasks.match_merchant",
    "AnalyzeDocument":          "app.workers.tasks.analyze_document",
    "ApplyTags":                "app.workers.tasks.apply_tags",
    "DeleteWorkingFiles":       "app.workers.tasks.delete_working_files",
    "UpdateImportSourceStatus": "app.workers.tasks.update_import_source_status",
}

_CORE_STAGES: dict[str, tuple[str, ...]] = {
    FileType.RECEIPT:  ("Convert", "ExtractReceiptFields", "MatchMerchant"),
    FileType.DOCUMENT: ("Convert", "ExtractDocumentFields", "AnalyzeDocument"),
}


@dataclass(frozen=True)
class StagePlan:
    name:   str
    kwargs: dict[str, Any] = field(default_factory=dict)

    @property
    def task_name(self) -> str:
        return STAGE_TASKS[self.name]


def queue_for(file_type: str) -> str:
    return settings.receipt_queue if file_type == FileType.RECEIPT else settings.document_queue


def job_name_for(file_type: str, reprocessing: bool = False) -> str:
    return f"{'Reprocess' if reprocessing else 'Process'} {file_type.capitalize()}"


def plan_stages(context: JobContext) -> list[StagePlan]:
    """Ordered stage list for one job. Mandatory stages are never skipped."""
    try:
        core = _CORE_STAGES[context.file_type]
    except KeyError:
        raise StageInputError(f"No stage sequence for file type '{context.file_type}'") from None

    plans = [StagePlan(name, {"job_id": context.job_id}) for name in core]
    if context.tag_ids:
        plans.append(StagePlan("ApplyTags", {"job_id": context.job_id}))
    plans.append(StagePlan("DeleteWorkingFiles", {"job_id": context.job_id}))
    if context.source == "import" and context.import_source_id is not None:
        plans.append(
            StagePlan(
                "UpdateImportSourceStatus",
                {
                    "job_id":           context.job_id,
                    "import_source_id": context.import_source_id,
                    "file_id":          context.file_id,
                },
            )
        )
    return plans


def stage_names(context: JobContext) -> list[str]:
    return [plan.name for plan in plan_stages(context)]


class JobChainDispatcher:
    def __init__(
        self,
        store: JobMetadataStore | None = None,
        history: JobHistoryRecorder | None = None,
        start_delay: int | None = None,
    ) -> None:
        self._store = store or get_job_metadata_store()
        self._history = history or JobHistoryRecorder()
        self._start_delay = settings.chain_start_delay_seconds if start_delay is None else start_delay

    def build_signatures(self, context: JobContext) -> list:
        """One immutable signature per stage, routed to the file type's queue."""
        from app.workers.celery_app import celery_app

        queue = queue_for(context.file_type)
        return [
            celery_app.signature(plan.task_name, kwargs=plan.kwargs, immutable=True).set(queue=queue)
            for plan in plan_stages(context)
        ]

    async def dispatch(self, job_id: str, file_type: str) -> list[str]:
        """Submit the chain for job_id; returns the dispatched stage names."""
        context = await self._store.get(job_id)
        if context is None:
            raise MissingMetadataError(job_id, "file")
        if context.file_type != file_type:
            raise StageInputError(
                f"Job {job_id} was prepared for '{context.file_type}', not '{file_type}'"
            )

        signatures = self.build_signatures(context)
        names = stage_names(context)
        workflow = chain(*signatures)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, lambda: workflow.apply_async(countdown=self._start_delay),
        )
        logger.info(
            "Chain dispatched | job=%s file=%s type=%s queue=%s stages=%s",
            job_id, context.file_id, file_type, queue_for(file_type), ",".join(names),
        )
        return names

    async def start_job(
        self,
        session: AsyncSession,
        context: JobContext,
        name: str | None = None,
    ) -> list[str]:
        """
        Persist the context, open the parent history row, commit the caller's
        session, then dispatch. The chain is only published once the File and
        parent rows are visible to workers.
        """
        name = name or job_name_for(context.file_type, context.reprocessing)
        stages = plan_stages(context)
        await self._store.put(context.job_id, context)
        await self._history.create_parent(
            session,
            job_id=context.job_id,
            name=name,
            stage_count=len(stages),
            file_id=context.file_id,
            queue=queue_for(context.file_type),
        )
        await session.commit()
        return await self.dispatch(context.job_id, context.file_type)
