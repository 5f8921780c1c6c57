"""Imported bank transaction model."""

from __future__ import annotations

import enum
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import DECIMAL, Date, Enum, ForeignKey, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bookkeeping.database import Base
from bookkeeping.models.base import BusinessOwnedMixin, TimestampMixin, UUIDMixin

if TYPE_CHECKING:
    from bookkeeping.models.journal import JournalEntry
    from bookkeeping.models.reconciliation import DocumentMatch, ReconciliationStatus


class TransactionType(str, enum.Enum):
    """Semantic type of a raw bank transaction."""

    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    TRANSFER = "TRANSFER"


class Transaction(Base, UUIDMixin, BusinessOwnedMixin, TimestampMixin):
    """
    A bank transaction persisted by the import pipeline.

    ``amount`` keeps the sign it was imported with; journal lines carry the
    absolute value with an explicit direction. Only ``category_id`` may change
    after creation.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("business_id", "external_id", name="uq_transactions_business_external_id"),
    )

    bank_account_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    category_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("ledger_accounts.id"), nullable=True
    )
    created_by_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    txn_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(DECIMAL(18, 2), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        Enum(
            TransactionType,
            name="transaction_type_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
    )
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    vendor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tax_amount: Mapped[Decimal | None] = mapped_column(DECIMAL(18, 2), nullable=True)
    principal_amount: Mapped[Decimal | None] = mapped_column(DECIMAL(18, 2), nullable=True)
    interest_amount: Mapped[Decimal | None] = mapped_column(DECIMAL(18, 2), nullable=True)
    suggested_category: Mapped[str | None] = mapped_column(String(255), nullable=True)
    import_document_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)

    journal_entries: Mapped[list[JournalEntry]] = relationship(
        "JournalEntry", back_populates="transaction", cascade="all, delete-orphan"
    )
    matches: Mapped[list[DocumentMatch]] = relationship(
        "DocumentMatch", back_populates="transaction", cascade="all, delete-orphan"
    )
    reconciliation: Mapped[ReconciliationStatus | None] = relationship(
        "ReconciliationStatus", back_populates="transaction", uselist=False
    )

    def __repr__(self) -> str:
        return f"<Transaction {self.txn_date} {self.amount} {self.type.value}>"
