"""
Search Index — Abstract Base

Entities are pushed to / removed from an external full-text index.
Synchronization is best-effort: callers go through index_quietly() /
unindex_quietly(), which log failures at WARNING and never raise.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from app.entities.registry import type_tag_for

logger = logging.getLogger(__name__)


class SearchIndex(ABC):
    """Index/unindex a single structured entity or child line item."""

    @abstractmethod
    async def index(self, entity: object) -> None: ...

    @abstractmethod
    async def unindex(self, entity: object) -> None: ...


class NullSearchIndex(SearchIndex):
    """Used when no search backend is configured."""

    async def index(self, entity: object) -> None:
        logger.debug("Search index disabled | skip index %s", _describe(entity))

    async def unindex(self, entity: object) -> None:
        logger.debug("Search index disabled | skip unindex %s", _describe(entity))


def _describe(entity: object) -> str:
    try:
        return f"{type_tag_for(entity)}:{getattr(entity, 'id', '?')}"
    except KeyError:
        return f"{type(entity).__name__}:{getattr(entity, 'id', '?')}"


async def index_quietly(search: SearchIndex, entity: object) -> bool:
    try:
        await search.index(entity)
        return True
    except Exception as exc:
        logger.warning("Search index failed | entity=%s error=%s", _describe(entity), exc)
        return False


async def unindex_quietly(search: SearchIndex, entity: object) -> bool:
    try:
        await search.unindex(entity)
        return True
    except Exception as exc:
        logger.warning("Search unindex failed | entity=%s error=%s", _describe(entity), exc)
        return False
