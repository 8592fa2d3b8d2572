"""
Pipeline Schemas — job context, extraction payloads, service results

JobContext is the single typed shape threaded between stages through the
job metadata store. Each stage owns specific fields by convention:

  dispatcher / upload   job_id, file_*, user_id, source, tag_ids, import_source_id
  reprocessing          reprocessing, force, previous_entities, original_*
  Convert               working_path, extracted_text
  Extract*              entity_type, entity_id, page_count, ocr_confidence
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Entity references
# ---------------------------------------------------------------------------

class EntityRef(BaseModel):
    """(type tag, id) pair — serializable handle on an entity, child or link row."""
    type: str
    id:   int

    def as_tuple(self) -> tuple[str, int]:
        return (self.type, self.id)


class DeletedEntities(BaseModel):
    """Result of soft_delete_and_unindex()."""
    entities: list[EntityRef] = Field(default_factory=list)
    count:    int = 0


# ---------------------------------------------------------------------------
# Job context
# ---------------------------------------------------------------------------

JobSource = Literal["upload", "import", "reprocess", "requeue"]


class JobContext(BaseModel):
    job_id:         str
    job_name:       str = "Process File"

    file_id:        int
    file_guid:      str
    user_id:        UUID
    file_type:      Literal["receipt", "document"]
    file_path:      str                       # blob path of the original
    file_extension: str

    source:           JobSource = "upload"
    tag_ids:          list[int] = Field(default_factory=list)
    import_source_id: Optional[int] = None

    reprocessing:         bool = False
    force:                bool = False
    previous_entities:    list[EntityRef] = Field(default_factory=list)
    original_status:      Optional[str] = None
    original_uploaded_at: Optional[datetime] = None

    working_path:   Optional[str] = None
    extracted_text: Optional[str] = None

    entity_type:    Optional[str] = None
    entity_id:      Optional[int] = None
    page_count:     int = 0
    ocr_confidence: Optional[float] = None

    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("file_extension")
    @classmethod
    def _normalize_ext(cls, v: str) -> str:
        return v.lstrip(".").lower()


class ReceiptMeta(BaseModel):
    """Receipt fields cached by extraction for the merchant-matching stage."""
    receipt_id:       int
    merchant_name:    Optional[str] = None
    merchant_address: Optional[str] = None
    vat_number:       Optional[str] = None


# ---------------------------------------------------------------------------
# Extraction payloads
# ---------------------------------------------------------------------------

class LineItemData(BaseModel):
    description: str
    quantity:    float = 1.0
    unit_price:  Optional[Decimal] = None
    total_price: Optional[Decimal] = None


class ReceiptExtraction(BaseModel):
    merchant_name:    Optional[str] = None
    merchant_address: Optional[str] = None
    vat_number:       Optional[str] = None
    receipt_date:     Optional[date] = None
    total_amount:     Optional[Decimal] = None
    tax_amount:       Optional[Decimal] = None
    currency:         Optional[str] = Field(None, max_length=3)
    category:         Optional[str] = None
    summary:          Optional[str] = None
    line_items:       list[LineItemData] = Field(default_factory=list)


class DocumentAnalysis(BaseModel):
    title:         Optional[str] = None
    document_type: Optional[str] = None
    summary:       Optional[str] = None
    language:      Optional[str] = Field(None, max_length=8)
    tags:          list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Service results
# ---------------------------------------------------------------------------

class ReprocessResult(BaseModel):
    success: bool
    job_id:  Optional[str] = None
    message: str


class BatchReprocessResult(BaseModel):
    successful: int = 0
    failed:     int = 0
    skipped:    int = 0
    results:    dict[int, ReprocessResult] = Field(default_factory=dict)
