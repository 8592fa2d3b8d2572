"""
SQLAlchemy ORM Models — Structured Entities & Child Line Items

Every structured entity (Receipt, Document, Invoice, Contract, Voucher,
Warranty, BankStatement, ReturnPolicy) carries the same lifecycle columns
via EntityMixin: owning file, owner, soft-delete timestamp and reason.

Child line items (LineItem, InvoiceLineItem, BankTransaction) belong to
exactly one parent and share its soft-delete lifecycle via ChildMixin.

Soft-delete reasons:
    reprocess       — replaced by a reprocessing run; purged once the new
                      chain completes
    user_delete     — removed by the owner
    account_delete  — owner account closed
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from app.models.files import Base, JSONType, PKType, utcnow


class DeletedReason:
    REPROCESS = "reprocess"
    USER_DELETE = "user_delete"
    ACCOUNT_DELETE = "account_delete"

    ALL = (REPROCESS, USER_DELETE, ACCOUNT_DELETE)


# ---------------------------------------------------------------------------
# Mixins
# ---------------------------------------------------------------------------

class SoftDeleteMixin:
    deleted_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class EntityMixin(SoftDeleteMixin):
    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)

    @declared_attr
    def file_id(cls) -> Mapped[int]:
        return mapped_column(
            ForeignKey("files.id", ondelete="CASCADE"), nullable=False, index=True,
        )

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow,
    )

    @property
    def title(self) -> str:
        return f"{type(self).__name__} #{self.id}"


class ChildMixin(SoftDeleteMixin):
    id: Mapped[int] = mapped_column(PKType, primary_key=True, autoincrement=True)


# ---------------------------------------------------------------------------
# Structured entities
# ---------------------------------------------------------------------------

class Receipt(EntityMixin, Base):
    __tablename__ = "receipts"

    merchant_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("merchants.id", ondelete="SET NULL"), nullable=True,
    )
    merchant_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    receipt_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    total_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    tax_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ocr_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    @property
    def title(self) -> str:
        when = self.receipt_date.isoformat() if self.receipt_date else "undated"
        return f"{self.merchant_name or 'Unknown merchant'} ({when})"


class Document(EntityMixin, Base):
    __tablename__ = "documents"

    document_title: Mapped[Optional[str]] = mapped_column("title", Text, nullable=True)
    document_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    language: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    page_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ocr_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ai_metadata: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    @property
    def title(self) -> str:
        return self.document_title or f"Document #{self.id}"


class Invoice(EntityMixin, Base):
    __tablename__ = "invoices"

    invoice_number: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    vendor_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    invoice_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    total_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)

    @property
    def title(self) -> str:
        return f"Invoice {self.invoice_number or self.id} - {self.vendor_name or 'unknown vendor'}"


class Contract(EntityMixin, Base):
    __tablename__ = "contracts"

    contract_title: Mapped[Optional[str]] = mapped_column("title", Text, nullable=True)
    contract_number: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    parties: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    effective_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    expiration_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    @property
    def title(self) -> str:
        return self.contract_title or f"Contract #{self.id}"


class Voucher(EntityMixin, Base):
    __tablename__ = "vouchers"

    code: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    issuer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    value: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    expiry_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    @property
    def title(self) -> str:
        return f"Voucher {self.code or self.id} ({self.issuer or 'unknown issuer'})"


class Warranty(EntityMixin, Base):
    __tablename__ = "warranties"

    product_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    manufacturer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    purchase_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    warranty_end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    @property
    def title(self) -> str:
        return f"Warranty: {self.product_name or self.id}"


class BankStatement(EntityMixin, Base):
    __tablename__ = "bank_statements"

    bank_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    account_number_masked: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    period_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    period_end: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    opening_balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    closing_balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)

    @property
    def title(self) -> str:
        return f"{self.bank_name or 'Bank'} statement {self.period_start or ''}".strip()


class ReturnPolicy(EntityMixin, Base):
    __tablename__ = "return_policies"

    merchant_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    return_deadline: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    conditions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    @property
    def title(self) -> str:
        return f"Return policy: {self.merchant_name or self.id}"


# ---------------------------------------------------------------------------
# Child line items
# ---------------------------------------------------------------------------

class LineItem(ChildMixin, Base):
    __tablename__ = "line_items"

    receipt_id: Mapped[int] = mapped_column(
        ForeignKey("receipts.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    unit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    total_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)


class InvoiceLineItem(ChildMixin, Base):
    __tablename__ = "invoice_line_items"

    invoice_id: Mapped[int] = mapped_column(
        ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    unit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    total_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)


class BankTransaction(ChildMixin, Base):
    __tablename__ = "bank_transactions"

    bank_statement_id: Mapped[int] = mapped_column(
        ForeignKey("bank_statements.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    transaction_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    balance_after: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
