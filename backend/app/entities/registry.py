"""
Structured entity registry.

A closed set of entity variants keyed by type tag. Cleanup, duplicate
detection and conflict reporting iterate this registry instead of
branching per type; the only per-type knowledge outside it is the
hard-delete ordering table below.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from app.models.entities import (
    BankStatement,
    BankTransaction,
    Contract,
    Document,
    Invoice,
    InvoiceLineItem,
    LineItem,
    Receipt,
    ReturnPolicy,
    Voucher,
    Warranty,
)
from app.models.files import ExtractionLink

EXTRACTION_LINK = "extraction_link"


@dataclass(frozen=True)
class ChildSpec:
    """A child line-item table owned by one parent entity type."""
    type_tag:  str
    model:     type
    parent_fk: str   # column on the child pointing at the parent id

    def parent_column(self):
        return getattr(self.model, self.parent_fk)


@dataclass(frozen=True)
class EntityHandler:
    type_tag:   str
    model:      type
    children:   tuple[ChildSpec, ...] = field(default_factory=tuple)
    searchable: bool = True


ENTITY_REGISTRY: dict[str, EntityHandler] = {
    handler.type_tag: handler
    for handler in (
        EntityHandler(
            "receipt", Receipt,
            children=(ChildSpec("line_item", LineItem, "receipt_id"),),
        ),
        EntityHandler("document", Document),
        EntityHandler(
            "invoice", Invoice,
            children=(ChildSpec("invoice_line_item", InvoiceLineItem, "invoice_id"),),
        ),
        EntityHandler("contract", Contract),
        EntityHandler("voucher", Voucher),
        EntityHandler("warranty", Warranty),
        EntityHandler(
            "bank_statement", BankStatement,
            children=(ChildSpec("bank_transaction", BankTransaction, "bank_statement_id"),),
        ),
        EntityHandler("return_policy", ReturnPolicy),
    )
}

CHILD_REGISTRY: dict[str, ChildSpec] = {
    child.type_tag: child
    for handler in ENTITY_REGISTRY.values()
    for child in handler.children
}

# Permanent purge order: children → parents → junction
HARD_DELETE_ORDER: tuple[str, ...] = (
    "line_item",
    "invoice_line_item",
    "bank_transaction",
    "receipt",
    "document",
    "invoice",
    "contract",
    "voucher",
    "warranty",
    "bank_statement",
    "return_policy",
    EXTRACTION_LINK,
)


def model_for(type_tag: str) -> type:
    """Resolve a type tag (entity, child or junction) to its ORM model."""
    if type_tag in ENTITY_REGISTRY:
        return ENTITY_REGISTRY[type_tag].model
    if type_tag in CHILD_REGISTRY:
        return CHILD_REGISTRY[type_tag].model
    if type_tag == EXTRACTION_LINK:
        return ExtractionLink
    raise KeyError(f"Unknown entity type '{type_tag}'")


def type_tag_for(entity: object) -> str:
    for handler in ENTITY_REGISTRY.values():
        if isinstance(entity, handler.model):
            return handler.type_tag
    for child in CHILD_REGISTRY.values():
        if isinstance(entity, child.model):
            return child.type_tag
    raise KeyError(f"{type(entity).__name__} is not a registered entity")
