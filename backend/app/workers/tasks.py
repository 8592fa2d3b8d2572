"""
Celery Tasks — Pipeline Stages & Maintenance

Stage tasks (one per stage, chained by app.services.dispatcher):
  convert, extract_receipt_fields, match_merchant, extract_document_fields,
  analyze_document, apply_tags, delete_working_files,
  update_import_source_status

  Each wrapper builds the stage with the current attempt number and runs
  it on a fresh event loop. A retryable failure (provider timeout,
  throttling, stage timeout) is retried with linear backoff
  (stage_retry_delay_seconds × attempt) up to stage_max_attempts; anything
  else propagates immediately and the chain stops.

Maintenance (Celery Beat, maintenance queue):
  requeue_stale_pending_files   restart files stuck in 'pending'
  purge_soft_deleted_entities   retention purge of user/account deletions
  health_check
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any

from celery import Task
from sqlalchemy import select

from app.core.config import settings
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    # Already inside a loop (eager mode under an async caller)
    with ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


def retry_countdown(retries: int) -> int:
    """Linear backoff: delay × attempt number of the attempt that just failed."""
    return settings.stage_retry_delay_seconds * (retries + 1)


def _run_stage(task: Task, stage_name: str, job_id: str, **params: Any) -> dict[str, Any]:
    from app.workers.stages import STAGES, default_dependencies, is_retryable

    stage = STAGES[stage_name](
        job_id,
        deps=default_dependencies(),
        attempt=task.request.retries + 1,
        max_attempts=task.max_retries + 1,
        task_id=task.request.id,
        queue=(task.request.delivery_info or {}).get("routing_key"),
        **params,
    )
    try:
        return run_async(stage.run())
    except Exception as exc:
        if is_retryable(exc) and task.request.retries < task.max_retries:
            raise task.retry(exc=exc, countdown=retry_countdown(task.request.retries))
        raise


_STAGE_TASK_OPTIONS: dict[str, Any] = dict(
    bind=True,
    max_retries=settings.stage_max_attempts - 1,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=settings.stage_time_limit_seconds,
    time_limit=settings.stage_time_limit_seconds + 60,
)


# ---------------------------------------------------------------------------
# Stage tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.tasks.convert", **_STAGE_TASK_OPTIONS)
def convert(self: Task, *, job_id: str) -> dict[str, Any]:
    return _run_stage(self, "Convert", job_id)


@celery_app.task(name="app.workers.tasks.extract_receipt_fields", **_STAGE_TASK_OPTIONS)
def extract_receipt_fields(self: Task, *, job_id: str) -> dict[str, Any]:
    return _run_stage(self, "ExtractReceiptFields", job_id)


@celery_app.task(name="app.workers.tasks.match_merchant", **_STAGE_TASK_OPTIONS)
def match_merchant(self: Task, *, job_id: str) -> dict[str, Any]:
    return _run_stage(self, "MatchMerchant", job_id)


@celery_app.task(name="app.workers.tasks.extract_document_fields", **_STAGE_TASK_OPTIONS)
def extract_document_fields(self: Task, *, job_id: str) -> dict[str, Any]:
    return _run_stage(self, "ExtractDocumentFields", job_id)


@celery_app.task(name="app.workers.tasks.analyze_document", **_STAGE_TASK_OPTIONS)
def analyze_document(self: Task, *, job_id: str) -> dict[str, Any]:
    return _run_stage(self, "AnalyzeDocument", job_id)


@celery_app.task(name="app.workers.tasks.apply_tags", **_STAGE_TASK_OPTIONS)
def apply_tags(self: Task, *, job_id: str) -> dict[str, Any]:
    return _run_stage(self, "ApplyTags", job_id)


@celery_app.task(name="app.workers.tasks.delete_working_files", **_STAGE_TASK_OPTIONS)
def delete_working_files(self: Task, *, job_id: str) -> dict[str, Any]:
    return _run_stage(self, "DeleteWorkingFiles", job_id)


@celery_app.task(name="app.workers.tasks.update_import_source_status", **_STAGE_TASK_OPTIONS)
def update_import_source_status(
    self: Task,
    *,
    job_id: str,
    import_source_id: int,
    file_id: int,
) -> dict[str, Any]:
    return _run_stage(
        self, "UpdateImportSourceStatus", job_id,
        import_source_id=import_source_id, file_id=file_id,
    )


# ---------------------------------------------------------------------------
# Stale-pending requeue: runs every 5 minutes via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="app.workers.tasks.requeue_stale_pending_files",
    bind=False,
    acks_late=True,
    soft_time_limit=240,
    time_limit=270,
)
def requeue_stale_pending_files(limit: int = 50) -> dict[str, int]:
    """
    Restart files stuck in 'pending' past stale_pending_minutes.
    Covers broker outages during upload and chains whose metadata expired.
    """
    return run_async(_requeue_stale_pending_async(limit))


async def _requeue_stale_pending_async(limit: int) -> dict[str, int]:
    from app.db.session import get_admin_db
    from app.models.files import File, FileStatus
    from app.services.reprocessing import ReprocessingService

    cutoff = datetime.now(timezone.utc) - timedelta(minutes=settings.stale_pending_minutes)
    requeued = failed = 0

    async with get_admin_db() as db:
        stale = (
            await db.execute(
                select(File)
                .where(
                    File.status == FileStatus.PENDING,
                    File.updated_at < cutoff,
                    File.s3_original_path.is_not(None),
                )
                .order_by(File.updated_at)
                .limit(limit)
            )
        ).scalars().all()

        service = ReprocessingService(db)
        for file in stale:
            result = await service.reprocess_file(file, force=True, source="requeue")
            # Releases the row lock on refusals; successful restarts committed before dispatch
            await db.commit()
            if result.success:
                requeued += 1
                logger.info("Re-queued stale file | file=%s job=%s", file.id, result.job_id)
            else:
                failed += 1
                logger.warning("Stale file requeue failed | file=%s reason=%s", file.id, result.message)

    return {"requeued": requeued, "failed": failed}


# ---------------------------------------------------------------------------
# Retention purge: daily via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="app.workers.tasks.purge_soft_deleted_entities",
    bind=False,
    acks_late=True,
    soft_time_limit=1800,
    time_limit=1860,
)
def purge_soft_deleted_entities(
    older_than_days: int | None = None,
    include_reprocess: bool = False,
    dry_run: bool = False,
) -> dict[str, int]:
    return run_async(_purge_soft_deleted_async(older_than_days, include_reprocess, dry_run))


async def _purge_soft_deleted_async(
    older_than_days: int | None,
    include_reprocess: bool,
    dry_run: bool,
) -> dict[str, int]:
    from app.db.session import get_admin_db
    from app.models.entities import DeletedReason
    from app.search.index import NullSearchIndex
    from app.services.entity_cleanup import EntityCleanupService

    reasons = [DeletedReason.USER_DELETE, DeletedReason.ACCOUNT_DELETE]
    if include_reprocess:
        reasons.append(DeletedReason.REPROCESS)

    async with get_admin_db() as db:
        return await EntityCleanupService(db, NullSearchIndex()).purge_soft_deleted(
            older_than_days=older_than_days, reasons=reasons, dry_run=dry_run,
        )


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.tasks.health_check")
def health_check() -> dict[str, Any]:
    from app.db.session import check_db_health

    return {"status": "ok", "worker": "healthy", "database": run_async(check_db_health())}
