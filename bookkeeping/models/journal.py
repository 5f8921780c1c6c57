"""Journal entry model for double-entry bookkeeping."""

from __future__ import annotations

import enum
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import DECIMAL, CheckConstraint, Enum, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bookkeeping.database import Base
from bookkeeping.models.base import TimestampMixin, UUIDMixin

if TYPE_CHECKING:
    from bookkeeping.models.transaction import Transaction


class Direction(str, enum.Enum):
    """Debit or credit direction."""

    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


class JournalEntry(Base, UUIDMixin, TimestampMixin):
    """
    Individual debit or credit line belonging to one transaction.

    Amount must always be positive. Per transaction, debits equal credits
    exactly; the import pipeline validates this before anything is written.
    """

    __tablename__ = "journal_entries"
    __table_args__ = (CheckConstraint("amount > 0", name="positive_amount"),)

    transaction_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("ledger_accounts.id"), nullable=False, index=True
    )
    direction: Mapped[Direction] = mapped_column(
        Enum(
            Direction,
            name="journal_entry_direction_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(DECIMAL(18, 2), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    transaction: Mapped[Transaction] = relationship("Transaction", back_populates="journal_entries")
