"""
Merchant matching for the MatchMerchant stage.

Receipts name their merchant in whatever form the till printed it
("REMA 1000 Grünerløkka", "Rema1000"). Each user owns a list of
Merchant rows; an extracted name is matched against that list by
normalized-name similarity and a new Merchant is created when nothing
scores above settings.merchant_match_threshold.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from difflib import SequenceMatcher
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.files import Merchant

logger = logging.getLogger(__name__)

_LEGAL_SUFFIXES = ("as", "asa", "ab", "gmbh", "ltd", "llc", "inc", "co", "corp", "sa", "bv", "oy")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9 ]+")
_SPACES_RE = re.compile(r"\s+")


def normalize_name(name: str) -> str:
    """Lowercase, strip accents/punctuation and trailing legal-form suffixes."""
    folded = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    cleaned = _SPACES_RE.sub(" ", _NON_ALNUM_RE.sub(" ", folded.lower())).strip()
    words = cleaned.split(" ")
    while len(words) > 1 and words[-1] in _LEGAL_SUFFIXES:
        words.pop()
    return " ".join(words)


def similarity(a: str, b: str) -> float:
    """Similarity of two normalized names in [0, 1]; spacing is ignored."""
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a.replace(" ", ""), b.replace(" ", "")).ratio()


class MerchantMatcher:
    def __init__(self, db: AsyncSession, threshold: float | None = None) -> None:
        self._db = db
        self._threshold = settings.merchant_match_threshold if threshold is None else threshold

    async def best_match(self, user_id: UUID, name: str) -> tuple[Merchant | None, float]:
        normalized = normalize_name(name)
        candidates = (
            await self._db.execute(select(Merchant).where(Merchant.user_id == user_id))
        ).scalars().all()

        best: Merchant | None = None
        best_score = 0.0
        for merchant in candidates:
            score = 1.0 if merchant.normalized_name == normalized else similarity(
                normalized, merchant.normalized_name,
            )
            if score > best_score:
                best, best_score = merchant, score
        return best, best_score

    async def match_or_create(
        self,
        user_id: UUID,
        name: str,
        address: str | None = None,
        vat_number: str | None = None,
    ) -> Merchant:
        merchant, score = await self.best_match(user_id, name)
        if merchant is not None and score >= self._threshold:
            # Fill gaps on an existing merchant, never overwrite
            if address and not merchant.address:
                merchant.address = address
            if vat_number and not merchant.vat_number:
                merchant.vat_number = vat_number
            logger.info(
                "Merchant matched | user=%s name=%r merchant=%s score=%.2f",
                user_id, name, merchant.id, score,
            )
            return merchant

        merchant = Merchant(
            user_id=user_id,
            name=name.strip(),
            normalized_name=normalize_name(name),
            address=address,
            vat_number=vat_number,
        )
        self._db.add(merchant)
        await self._db.flush()
        logger.info("Merchant created | user=%s name=%r merchant=%s", user_id, name, merchant.id)
        return merchant
