"""Uploaded document model (receipts, invoices and bank statements)."""

from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import DECIMAL, Date, DateTime, Enum, Float, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from bookkeeping.database import Base
from bookkeeping.models.base import BusinessOwnedMixin, JSONType, TimestampMixin, UUIDMixin


class DocumentType(str, enum.Enum):
    RECEIPT = "RECEIPT"
    INVOICE = "INVOICE"
    BANK_STATEMENT = "BANK_STATEMENT"
    OTHER = "OTHER"


class DocumentProcessingStatus(str, enum.Enum):
    """Processing lifecycle shared by extraction and statement import."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Document(Base, UUIDMixin, BusinessOwnedMixin, TimestampMixin):
    """
    Uploaded file owned by a business.

    Receipts and invoices carry extracted fields and may link to one
    transaction. Bank statements carry the import outcome in
    ``processing_metadata``.
    """

    __tablename__ = "documents"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    document_type: Mapped[DocumentType] = mapped_column(
        Enum(
            DocumentType,
            name="document_type_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        default=DocumentType.RECEIPT,
    )
    url: Mapped[str] = mapped_column(String(1000), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    processing_status: Mapped[DocumentProcessingStatus] = mapped_column(
        Enum(
            DocumentProcessingStatus,
            name="document_processing_status_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        default=DocumentProcessingStatus.PENDING,
        index=True,
    )
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    extracted_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    extracted_vendor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    extracted_amount: Mapped[Decimal | None] = mapped_column(DECIMAL(18, 2), nullable=True)
    extracted_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    extracted_tax: Mapped[Decimal | None] = mapped_column(DECIMAL(18, 2), nullable=True)
    extracted_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    # Scores are non-monetary; floats are acceptable.
    extraction_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)

    transaction_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
