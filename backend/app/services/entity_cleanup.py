"""
Entity Cleanup Service

Replaces a file's structured entities safely when it is reprocessed:

  1. soft_delete_and_unindex(file)
       For every registered entity type, query by owning file id directly
       (never through a cached relationship) so accidental duplicates left
       by earlier runs are caught too. For each entity: unindex and
       soft-delete its child line items, unindex the parent, then stamp
       deleted_reason and deleted_at on it. Finally soft-delete the file's
       extraction links. Returns every affected (type, id).

  2. hard_delete(entities)
       Only after a later chain for the same file has completed. Purges the
       returned (type, id) pairs in dependency order: children, parents,
       extraction links. Every purge is filtered on deleted_reason =
       'reprocess' so unrelated soft-deleted rows are never touched. A failing
       type is logged and skipped; rerunning the whole call is safe.

If the new chain fails, step 2 never runs and the old rows stay recoverable.

purge_soft_deleted() is the retention sweep for rows deleted by users or
account closure.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Iterable, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.entities.registry import (
    ENTITY_REGISTRY,
    EXTRACTION_LINK,
    HARD_DELETE_ORDER,
    model_for,
)
from app.models.entities import DeletedReason
from app.models.files import EntityTag, ExtractionLink, File
from app.schemas.jobs import DeletedEntities, EntityRef
from app.search.index import SearchIndex, unindex_quietly

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EntityCleanupService:
    def __init__(self, db: AsyncSession, search: SearchIndex) -> None:
        self._db = db
        self._search = search

    # ------------------------------------------------------------------
    # Soft delete
    # ------------------------------------------------------------------

    async def soft_delete_and_unindex(
        self,
        file: File,
        reason: str = DeletedReason.REPROCESS,
    ) -> DeletedEntities:
        stamped_at = _now()
        refs: list[EntityRef] = []

        for type_tag, handler in ENTITY_REGISTRY.items():
            model = handler.model
            entities = (
                await self._db.execute(
                    select(model)
                    .where(model.file_id == file.id, model.deleted_at.is_(None))
                    .order_by(model.id)
                )
            ).scalars().all()

            for entity in entities:
                for child_spec in handler.children:
                    children = (
                        await self._db.execute(
                            select(child_spec.model).where(
                                child_spec.parent_column() == entity.id,
                                child_spec.model.deleted_at.is_(None),
                            )
                        )
                    ).scalars().all()
                    for child in children:
                        await unindex_quietly(self._search, child)
                        child.deleted_reason = reason
                        child.deleted_at = stamped_at
                        refs.append(EntityRef(type=child_spec.type_tag, id=child.id))

                if handler.searchable:
                    await unindex_quietly(self._search, entity)
                entity.deleted_reason = reason
                entity.deleted_at = stamped_at
                refs.append(EntityRef(type=type_tag, id=entity.id))

        links = (
            await self._db.execute(
                select(ExtractionLink).where(
                    ExtractionLink.file_id == file.id,
                    ExtractionLink.deleted_at.is_(None),
                )
            )
        ).scalars().all()
        for link in links:
            link.deleted_reason = reason
            link.deleted_at = stamped_at
            refs.append(EntityRef(type=EXTRACTION_LINK, id=link.id))

        await self._db.flush()

        logger.info(
            "Soft-deleted entities | file=%s reason=%s count=%d",
            file.id, reason, len(refs),
        )
        return DeletedEntities(entities=refs, count=len(refs))

    async def awaiting_purge(self, file: File) -> list[EntityRef]:
        """Rows of `file` soft-deleted by an earlier reprocess whose chain never completed."""
        refs: list[EntityRef] = []

        for type_tag, handler in ENTITY_REGISTRY.items():
            model = handler.model
            parent_ids = select(model.id).where(model.file_id == file.id)
            for child_spec in handler.children:
                child_ids = (
                    await self._db.execute(
                        select(child_spec.model.id).where(
                            child_spec.parent_column().in_(parent_ids),
                            child_spec.model.deleted_at.is_not(None),
                            child_spec.model.deleted_reason == DeletedReason.REPROCESS,
                        )
                    )
                ).scalars().all()
                refs.extend(EntityRef(type=child_spec.type_tag, id=i) for i in child_ids)

            ids = (
                await self._db.execute(
                    select(model.id).where(
                        model.file_id == file.id,
                        model.deleted_at.is_not(None),
                        model.deleted_reason == DeletedReason.REPROCESS,
                    )
                )
            ).scalars().all()
            refs.extend(EntityRef(type=type_tag, id=i) for i in ids)

        link_ids = (
            await self._db.execute(
                select(ExtractionLink.id).where(
                    ExtractionLink.file_id == file.id,
                    ExtractionLink.deleted_at.is_not(None),
                    ExtractionLink.deleted_reason == DeletedReason.REPROCESS,
                )
            )
        ).scalars().all()
        refs.extend(EntityRef(type=EXTRACTION_LINK, id=i) for i in link_ids)

        if refs:
            logger.info("Earlier reprocess left rows | file=%s count=%d", file.id, len(refs))
        return refs

    # ------------------------------------------------------------------
    # Hard delete
    # ------------------------------------------------------------------

    async def hard_delete(
        self,
        entities: Iterable[EntityRef | tuple[str, int]],
    ) -> dict[str, int]:
        """Permanently purge reprocess-soft-deleted rows; returns rows removed per type."""
        grouped: dict[str, set[int]] = defaultdict(set)
        for ref in entities:
            type_tag, entity_id = ref.as_tuple() if isinstance(ref, EntityRef) else ref
            grouped[type_tag].add(int(entity_id))

        unknown = set(grouped) - set(HARD_DELETE_ORDER)
        for type_tag in sorted(unknown):
            logger.warning("Hard delete skipped unknown type | type=%s ids=%s", type_tag, sorted(grouped[type_tag]))

        purged: dict[str, int] = {}
        for type_tag in HARD_DELETE_ORDER:
            ids = grouped.get(type_tag)
            if not ids:
                continue
            try:
                purged[type_tag] = await self._purge(
                    type_tag,
                    model_for(type_tag).id.in_(ids),
                    model_for(type_tag).deleted_reason == DeletedReason.REPROCESS,
                )
            except SQLAlchemyError as exc:
                logger.warning("Hard delete failed | type=%s ids=%s error=%s", type_tag, sorted(ids), exc)

        logger.info("Hard-deleted reprocessed entities | purged=%s", purged)
        return purged

    # ------------------------------------------------------------------
    # Retention sweep
    # ------------------------------------------------------------------

    async def purge_soft_deleted(
        self,
        older_than_days: int | None = None,
        reasons: Sequence[str] = (DeletedReason.USER_DELETE, DeletedReason.ACCOUNT_DELETE),
        dry_run: bool = False,
    ) -> dict[str, int]:
        """Permanently remove rows soft-deleted for `reasons` before the retention cutoff."""
        days = settings.soft_delete_retention_days if older_than_days is None else older_than_days
        cutoff = _now() - timedelta(days=days)
        reasons = list(reasons)

        counts: dict[str, int] = {}
        for type_tag in HARD_DELETE_ORDER:
            model = model_for(type_tag)
            conditions = (
                model.deleted_at.is_not(None),
                model.deleted_at < cutoff,
                model.deleted_reason.in_(reasons),
            )
            try:
                if dry_run:
                    counts[type_tag] = (
                        await self._db.execute(select(func.count()).select_from(model).where(*conditions))
                    ).scalar_one()
                else:
                    counts[type_tag] = await self._purge(type_tag, *conditions)
            except SQLAlchemyError as exc:
                logger.warning("Retention purge failed | type=%s error=%s", type_tag, exc)

        logger.info(
            "Retention purge | cutoff=%s reasons=%s dry_run=%s counts=%s",
            cutoff.isoformat(), reasons, dry_run, {k: v for k, v in counts.items() if v},
        )
        return counts

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _purge(self, type_tag: str, *conditions) -> int:
        """DELETE one type inside a savepoint so a failure leaves the outer transaction usable."""
        model = model_for(type_tag)
        async with self._db.begin_nested():
            if type_tag in ENTITY_REGISTRY:
                doomed = select(model.id).where(*conditions)
                await self._db.execute(
                    delete(EntityTag)
                    .where(EntityTag.entity_type == type_tag, EntityTag.entity_id.in_(doomed))
                    .execution_options(synchronize_session=False)
                )
            result = await self._db.execute(
                delete(model).where(*conditions).execution_options(synchronize_session=False)
            )
        return result.rowcount or 0
