"""Pydantic schemas for reconciliation operations."""

from decimal import Decimal
from typing import Annotated
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from bookkeeping.models.reconciliation import ReconciliationState
from bookkeeping.schemas.base import BaseResponse


class RankedMatch(BaseModel):
    """A scored candidate transaction for one document."""

    transaction_id: UUID
    confidence: Annotated[float, Field(ge=0, le=1)]
    match_reason: str
    # Scores are non-monetary; floats are acceptable for display/analysis.
    score_breakdown: dict[str, float] = Field(default_factory=dict)


class DocumentProcessingResult(BaseModel):
    document_id: UUID
    matches: list[RankedMatch] = Field(default_factory=list)
    linked_transaction_id: UUID | None = None


class BulkReconcileItem(BaseModel):
    transaction_id: UUID
    document_id: UUID
    confidence: Annotated[float, Field(ge=0, le=1)] = 1.0


class BulkReconcileRequest(BaseModel):
    """Validated list of manual pairings applied in one bulk insert."""

    items: Annotated[list[BulkReconcileItem], Field(min_length=1)]

    @model_validator(mode="after")
    def validate_unique_pairs(self) -> "BulkReconcileRequest":
        """Each transaction and each document may appear at most once."""
        transaction_ids = [item.transaction_id for item in self.items]
        document_ids = [item.document_id for item in self.items]
        if len(set(transaction_ids)) != len(transaction_ids):
            raise ValueError("Each transaction may appear only once in a bulk reconcile")
        if len(set(document_ids)) != len(document_ids):
            raise ValueError("Each document may appear only once in a bulk reconcile")
        return self


class BulkReconcileResult(BaseModel):
    processed: int
    created: int
    skipped: int


class AutoReconcileResult(BaseModel):
    matched: int
    transaction_ids: list[UUID] = Field(default_factory=list)


class ReconciliationStatusResponse(BaseResponse):
    transaction_id: UUID
    status: ReconciliationState
    document_id: UUID | None = None
    confidence: float | None = None
    manually_set: bool = False
    reviewed_by: UUID | None = None
    notes: str | None = None


class ReconciliationSummary(BaseModel):
    """Reconciliation progress over a date range."""

    total_transactions: int
    matched_transactions: int
    unmatched_transactions: int
    pending_review: int
    excluded_transactions: int
    matched_percentage: float
    total_amount: Decimal
    matched_amount: Decimal
    unmatched_amount: Decimal
