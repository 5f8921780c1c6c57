"""Reconciliation models: document match suggestions and per-transaction status."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, DateTime, Enum, Float, ForeignKey, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bookkeeping.database import Base
from bookkeeping.models.base import TimestampMixin, UUIDMixin

if TYPE_CHECKING:
    from bookkeeping.models.transaction import Transaction


class MatchStatus(str, enum.Enum):
    """Status of a document/transaction match."""

    SUGGESTED = "SUGGESTED"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    MANUAL = "MANUAL"


class ReconciliationState(str, enum.Enum):
    """Reconciliation state of a transaction. A missing row means UNMATCHED."""

    UNMATCHED = "UNMATCHED"
    MATCHED = "MATCHED"
    PARTIALLY_MATCHED = "PARTIALLY_MATCHED"
    PENDING_REVIEW = "PENDING_REVIEW"
    MANUALLY_MATCHED = "MANUALLY_MATCHED"
    EXCLUDED = "EXCLUDED"


class DocumentMatch(Base, UUIDMixin, TimestampMixin):
    """Scored pairing of a document with a candidate transaction."""

    __tablename__ = "document_matches"
    __table_args__ = (
        UniqueConstraint("document_id", "transaction_id", name="uq_document_matches_pair"),
    )

    document_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    transaction_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Scores are non-monetary; floats are acceptable.
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[MatchStatus] = mapped_column(
        Enum(
            MatchStatus,
            name="document_match_status_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        default=MatchStatus.SUGGESTED,
    )
    match_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_user_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    transaction: Mapped[Transaction] = relationship("Transaction", back_populates="matches")


class ReconciliationStatus(Base, UUIDMixin, TimestampMixin):
    """
    Reconciliation record for one transaction.

    Created lazily. When ``document_id`` is set, that document's
    ``transaction_id`` points back at ``transaction_id``.
    """

    __tablename__ = "reconciliation_statuses"

    transaction_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    status: Mapped[ReconciliationState] = mapped_column(
        Enum(
            ReconciliationState,
            name="reconciliation_state_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        default=ReconciliationState.UNMATCHED,
        index=True,
    )
    document_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("documents.id", ondelete="SET NULL"), nullable=True
    )
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    manually_set: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reviewed_by: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    transaction: Mapped[Transaction] = relationship("Transaction", back_populates="reconciliation")
