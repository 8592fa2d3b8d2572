"""
Duplicate Detection Service

  hash(bytes)                     SHA-256 hex digest of the raw uploaded bytes
                                  (never of a converted/normalized form)
  find_duplicate(digest, owner)   File with the same digest owned by the same
                                  user that is either not completed, or
                                  completed with at least one live entity
  check(bytes, owner)             DuplicateCheck(is_duplicate, digest, existing_file)

A completed File whose entities have all been deleted counts as deleted for
dedup purposes, so the same bytes can be uploaded again.

The check is read-then-decide. Two concurrent uploads of identical bytes can
both pass it; the partial unique index on files(user_id, file_hash) turns the
second insert into an IntegrityError that the upload path reports as a 409.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import and_, exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.entities.registry import ENTITY_REGISTRY
from app.models.files import ExtractionLink, File, FileStatus
from app.schemas.files import DuplicateConflict
from app.storage.s3 import BlobStore

logger = logging.getLogger(__name__)


@dataclass
class DuplicateCheck:
    is_duplicate:  bool
    digest:        str
    existing_file: File | None = None


class DuplicationService:
    def __init__(self, db: AsyncSession, storage: BlobStore | None = None) -> None:
        self._db = db
        self._storage = storage

    @staticmethod
    def hash(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def _has_live_entity(self):
        """OR of EXISTS(live entity with file_id = files.id) over every registered type."""
        clauses = [
            exists().where(
                and_(handler.model.file_id == File.id, handler.model.deleted_at.is_(None))
            )
            for handler in ENTITY_REGISTRY.values()
        ]
        return or_(*clauses)

    async def find_duplicate(self, digest: str, owner_id: UUID) -> File | None:
        stmt = (
            select(File)
            .where(
                File.user_id == owner_id,
                File.file_hash == digest,
                or_(File.status != FileStatus.COMPLETED, self._has_live_entity()),
            )
            .order_by(File.id)
            .limit(1)
        )
        return (await self._db.execute(stmt)).scalars().first()

    async def check(self, data: bytes, owner_id: UUID) -> DuplicateCheck:
        digest = self.hash(data)
        existing = await self.find_duplicate(digest, owner_id)
        if existing is not None:
            logger.info(
                "Duplicate detected | user=%s digest=%s existing_file=%s status=%s",
                owner_id, digest[:12], existing.id, existing.status,
            )
        return DuplicateCheck(is_duplicate=existing is not None, digest=digest, existing_file=existing)

    async def describe_conflict(self, existing: File, digest: str) -> DuplicateConflict:
        """Structured conflict payload naming the existing file and its primary entity."""
        entity_type, entity = await self.primary_entity(existing)
        return DuplicateConflict(
            file_id=existing.id,
            file_guid=existing.guid,
            file_hash=digest,
            status=existing.status,
            entity_type=entity_type,
            entity_id=getattr(entity, "id", None),
            entity_title=getattr(entity, "title", None),
        )

    async def primary_entity(self, file: File) -> tuple[str | None, object | None]:
        """The live primary entity via the extraction link, else any live entity."""
        links = (
            await self._db.execute(
                select(ExtractionLink)
                .where(ExtractionLink.file_id == file.id, ExtractionLink.deleted_at.is_(None))
                .order_by(ExtractionLink.is_primary.desc(), ExtractionLink.extracted_at.desc())
            )
        ).scalars().all()
        for link in links:
            handler = ENTITY_REGISTRY.get(link.entity_type)
            if handler is None:
                continue
            entity = await self._db.get(handler.model, link.entity_id)
            if entity is not None and entity.deleted_at is None:
                return link.entity_type, entity

        for type_tag, handler in ENTITY_REGISTRY.items():
            entity = (
                await self._db.execute(
                    select(handler.model)
                    .where(handler.model.file_id == file.id, handler.model.deleted_at.is_(None))
                    .limit(1)
                )
            ).scalars().first()
            if entity is not None:
                return type_tag, entity
        return None, None

    async def cleanup_duplicate(self, blob_path: str | None = None, local_path: str | None = None) -> bool:
        """
        Remove bytes stored for an upload that turned out to be a duplicate.
        Failures are logged and reported as False, never raised.
        """
        ok = True
        if blob_path and self._storage is not None:
            try:
                if await self._storage.exists(blob_path):
                    await self._storage.delete(blob_path)
            except Exception as exc:
                logger.warning("Duplicate blob cleanup failed | path=%s error=%s", blob_path, exc)
                ok = False
        if local_path:
            try:
                if os.path.exists(local_path):
                    os.remove(local_path)
            except OSError as exc:
                logger.warning("Duplicate scratch cleanup failed | path=%s error=%s", local_path, exc)
                ok = False
        return ok
