"""Pydantic schemas for the batch import pipeline."""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from bookkeeping.models.transaction import TransactionType


class RawTransaction(BaseModel):
    """One bank row as received from a statement upload or bank feed."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    txn_date: date = Field(alias="date")
    description: Annotated[str, Field(min_length=1)]
    amount: Decimal
    type: TransactionType
    bank_account_id: UUID
    external_id: str | None = None
    vendor: str | None = None
    tax_amount: Annotated[Decimal | None, Field(None, ge=0)] = None
    principal_amount: Annotated[Decimal | None, Field(None, ge=0)] = None
    interest_amount: Annotated[Decimal | None, Field(None, ge=0)] = None
    suggested_category: str | None = None
    category_id: UUID | None = None


class BatchStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ProcessingErrorEntry(BaseModel):
    """Structured error row. ``index`` is the row position in the submitted batch."""

    code: str
    message: str
    chunk: int | None = None
    index: int | None = None
    external_id: str | None = None
    count: int | None = None


class ProcessingProgress(BaseModel):
    """Progress event emitted at each chunk boundary."""

    stage: Literal["processing", "completed", "failed"]
    processed: int
    total: int
    current_chunk: int
    total_chunks: int
    imported: int = 0
    failed: int = 0
    skipped: int = 0
    message: str | None = None


class ProcessingResult(BaseModel):
    """Aggregated outcome of a batch import."""

    status: BatchStatus
    imported: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[ProcessingErrorEntry] = Field(default_factory=list)
    transaction_ids: list[UUID] = Field(default_factory=list)
