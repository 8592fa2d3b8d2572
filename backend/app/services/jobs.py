"""
Job Metadata Store & Job History

JobMetadataStore
  Keyed, TTL-bound store for the typed JobContext passed between stages.
  Stages run in separate worker processes, so the context lives outside
  the process: Redis in production, an in-memory dict for eager/test runs.

  Keys are namespaced per job and sub-key so stages never collide:
      job:{job_id}:file     → JobContext (written at dispatch, updated by stages)
      job:{job_id}:receipt  → ReceiptMeta (written by ExtractReceiptFields)

  If a stage never runs the record expires after the TTL and the chain
  cannot resume from stale state; the stale-pending beat task restarts it.

JobHistoryRecorder
  Persisted observability rows. One parent row (order 0) per job plus one
  row per stage attempt, keyed by (job_id, order_in_chain, attempt).
  A retry inserts a new row; a broker redelivery of the same attempt
  reuses its row.
"""

from __future__ import annotations

import logging
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from functools import lru_cache

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.files import JobHistory, JobStatus
from app.schemas.jobs import JobContext, ReceiptMeta

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Stage ordering (observability only; the dispatcher owns sequencing)
# ---------------------------------------------------------------------------

STAGE_ORDER: dict[str, int] = {
    "Convert":                  1,
    "ExtractReceiptFields":     2,
    "ExtractDocumentFields":    2,
    "MatchMerchant":            3,
    "AnalyzeDocument":          3,
    "ApplyTags":                4,
    "DeleteWorkingFiles":       5,
    "UpdateImportSourceStatus": 6,
}

PARENT_ORDER = 0


def stage_order(name: str) -> int:
    return STAGE_ORDER.get(name, 99)


# ---------------------------------------------------------------------------
# Metadata backends
# ---------------------------------------------------------------------------

class MetadataBackend(ABC):
    @abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None: ...

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def delete(self, *keys: str) -> None: ...


class RedisMetadataBackend(MetadataBackend):
    """
    One short-lived client per call: each Celery task runs its own event
    loop, and redis.asyncio connections cannot cross loops.
    """

    def __init__(self, url: str | None = None) -> None:
        self._url = url or settings.job_metadata_redis_url

    def _client(self):
        import redis.asyncio as aioredis

        return aioredis.from_url(self._url, decode_responses=True)

    async def set(self, key: str, value: str, ttl: int) -> None:
        async with self._client() as r:
            await r.set(key, value, ex=ttl)

    async def get(self, key: str) -> str | None:
        async with self._client() as r:
            return await r.get(key)

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        async with self._client() as r:
            await r.delete(*keys)


class InMemoryMetadataBackend(MetadataBackend):
    """Single-process store for eager Celery runs and tests."""

    def __init__(self, clock=time.monotonic) -> None:
        self._data: dict[str, tuple[str, float]] = {}
        self._clock = clock

    async def set(self, key: str, value: str, ttl: int) -> None:
        self._data[key] = (value, self._clock() + ttl)

    async def get(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._data.pop(key, None)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class JobMetadataStore:
    def __init__(self, backend: MetadataBackend, ttl_seconds: int | None = None) -> None:
        self._backend = backend
        self._ttl = ttl_seconds or settings.job_metadata_ttl_seconds

    @staticmethod
    def file_key(job_id: str) -> str:
        return f"job:{job_id}:file"

    @staticmethod
    def receipt_key(job_id: str) -> str:
        return f"job:{job_id}:receipt"

    async def put(self, job_id: str, context: JobContext, ttl: int | None = None) -> None:
        if context.job_id != job_id:
            raise ValueError(f"Context belongs to job {context.job_id}, not {job_id}")
        await self._backend.set(self.file_key(job_id), context.model_dump_json(), ttl or self._ttl)

    async def get(self, job_id: str) -> JobContext | None:
        raw = await self._backend.get(self.file_key(job_id))
        return JobContext.model_validate_json(raw) if raw else None

    async def put_receipt(self, job_id: str, meta: ReceiptMeta, ttl: int | None = None) -> None:
        await self._backend.set(self.receipt_key(job_id), meta.model_dump_json(), ttl or self._ttl)

    async def get_receipt(self, job_id: str) -> ReceiptMeta | None:
        raw = await self._backend.get(self.receipt_key(job_id))
        return ReceiptMeta.model_validate_json(raw) if raw else None

    async def forget(self, job_id: str) -> None:
        await self._backend.delete(self.file_key(job_id), self.receipt_key(job_id))
        logger.debug("Job metadata purged | job=%s", job_id)


@lru_cache(maxsize=1)
def get_job_metadata_store() -> JobMetadataStore:
    backend: MetadataBackend
    if settings.job_metadata_backend == "memory":
        backend = InMemoryMetadataBackend()
    else:
        backend = RedisMetadataBackend()
    return JobMetadataStore(backend)


# ---------------------------------------------------------------------------
# Job history
# ---------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobHistoryRecorder:
    """All methods take the caller's session; the caller owns the transaction."""

    async def create_parent(
        self,
        session: AsyncSession,
        job_id: str,
        name: str,
        stage_count: int,
        file_id: int | None = None,
        queue: str | None = None,
    ) -> JobHistory:
        row = JobHistory(
            uuid=job_id,
            job_id=job_id,
            parent_uuid=None,
            name=name,
            queue=queue,
            order_in_chain=PARENT_ORDER,
            stage_count=stage_count,
            status=JobStatus.PENDING,
            attempt=1,
            progress=0,
            file_id=file_id,
        )
        session.add(row)
        await session.flush()
        return row

    async def start_attempt(
        self,
        session: AsyncSession,
        job_id: str,
        stage_name: str,
        attempt: int,
        task_id: str | None = None,
        queue: str | None = None,
        file_id: int | None = None,
    ) -> JobHistory:
        order = stage_order(stage_name)
        existing = (
            await session.execute(
                select(JobHistory).where(
                    JobHistory.job_id == job_id,
                    JobHistory.order_in_chain == order,
                    JobHistory.attempt == attempt,
                )
            )
        ).scalars().first()

        if existing is not None:
            logger.info(
                "Stage redelivered | job=%s stage=%s attempt=%d", job_id, stage_name, attempt,
            )
            existing.status = JobStatus.PROCESSING
            existing.started_at = _now()
            existing.exception = None
            row = existing
        else:
            row = JobHistory(
                uuid=str(uuid.uuid4()),
                job_id=job_id,
                parent_uuid=job_id,
                task_id=task_id,
                name=stage_name,
                queue=queue,
                order_in_chain=order,
                status=JobStatus.PROCESSING,
                attempt=attempt,
                progress=0,
                file_id=file_id,
                started_at=_now(),
            )
            session.add(row)

        await session.flush()
        await self.refresh_parent(session, job_id)
        return row

    async def update_progress(self, session: AsyncSession, row_uuid: str, progress: int) -> None:
        row = await self._by_uuid(session, row_uuid)
        if row is None:
            return
        row.progress = max(0, min(100, int(progress)))
        await session.flush()
        await self.refresh_parent(session, row.job_id)

    async def complete(self, session: AsyncSession, row_uuid: str) -> None:
        row = await self._by_uuid(session, row_uuid)
        if row is None:
            return
        row.status = JobStatus.COMPLETED
        row.progress = 100
        row.finished_at = _now()
        await session.flush()
        await self.refresh_parent(session, row.job_id)

    async def fail(self, session: AsyncSession, row_uuid: str, exception: str) -> None:
        row = await self._by_uuid(session, row_uuid)
        if row is None:
            return
        row.status = JobStatus.FAILED
        row.exception = exception
        row.finished_at = _now()
        await session.flush()
        await self.refresh_parent(session, row.job_id)

    async def refresh_parent(self, session: AsyncSession, job_id: str) -> JobHistory | None:
        """
        Recompute the parent row from the latest attempt of each stage:
        failed if any latest attempt failed, completed once every dispatched
        stage completed, processing otherwise.
        """
        rows = (
            await session.execute(select(JobHistory).where(JobHistory.job_id == job_id))
        ).scalars().all()
        parent = next((r for r in rows if r.order_in_chain == PARENT_ORDER), None)
        if parent is None:
            return None

        latest: dict[int, JobHistory] = {}
        for row in rows:
            if row.order_in_chain == PARENT_ORDER:
                continue
            current = latest.get(row.order_in_chain)
            if current is None or row.attempt > current.attempt:
                latest[row.order_in_chain] = row

        stages = list(latest.values())
        expected = parent.stage_count or len(stages) or 1
        completed = sum(1 for r in stages if r.status == JobStatus.COMPLETED)

        if any(r.status == JobStatus.FAILED for r in stages):
            parent.status = JobStatus.FAILED
            parent.exception = next(r.exception for r in stages if r.status == JobStatus.FAILED)
            parent.finished_at = _now()
        elif stages and completed >= expected:
            parent.status = JobStatus.COMPLETED
            parent.finished_at = _now()
        elif stages:
            parent.status = JobStatus.PROCESSING
            parent.started_at = parent.started_at or _now()

        parent.progress = min(100, sum(r.progress for r in stages) // expected)
        await session.flush()
        return parent

    async def job_file_id(self, session: AsyncSession, job_id: str) -> int | None:
        """File the job was started for, as recorded on its parent row."""
        parent = await self._by_uuid(session, job_id)
        return parent.file_id if parent is not None else None

    async def _by_uuid(self, session: AsyncSession, row_uuid: str) -> JobHistory | None:
        return (
            await session.execute(select(JobHistory).where(JobHistory.uuid == row_uuid))
        ).scalars().first()
