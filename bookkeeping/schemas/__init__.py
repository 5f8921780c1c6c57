"""Pydantic schemas."""

from bookkeeping.schemas.base import BaseResponse, ServiceResult
from bookkeeping.schemas.extraction import ExtractedDocument, ExtractedLineItem
from bookkeeping.schemas.imports import (
    BatchStatus,
    ProcessingErrorEntry,
    ProcessingProgress,
    ProcessingResult,
    RawTransaction,
)
from bookkeeping.schemas.reconciliation import (
    AutoReconcileResult,
    BulkReconcileItem,
    BulkReconcileRequest,
    BulkReconcileResult,
    DocumentProcessingResult,
    RankedMatch,
    ReconciliationStatusResponse,
    ReconciliationSummary,
)

__all__ = [
    "AutoReconcileResult",
    "BaseResponse",
    "BatchStatus",
    "BulkReconcileItem",
    "BulkReconcileRequest",
    "BulkReconcileResult",
    "DocumentProcessingResult",
    "ExtractedDocument",
    "ExtractedLineItem",
    "ProcessingErrorEntry",
    "ProcessingProgress",
    "ProcessingResult",
    "RankedMatch",
    "RawTransaction",
    "ReconciliationStatusResponse",
    "ReconciliationSummary",
    "ServiceResult",
]
