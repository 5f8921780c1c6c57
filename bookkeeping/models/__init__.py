"""SQLAlchemy models."""

from bookkeeping.models.account import AccountType, LedgerAccount
from bookkeeping.models.document import Document, DocumentProcessingStatus, DocumentType
from bookkeeping.models.journal import Direction, JournalEntry
from bookkeeping.models.reconciliation import (
    DocumentMatch,
    MatchStatus,
    ReconciliationState,
    ReconciliationStatus,
)
from bookkeeping.models.transaction import Transaction, TransactionType
from bookkeeping.models.usage import UsageRecord

__all__ = [
    "AccountType",
    "Direction",
    "Document",
    "DocumentMatch",
    "DocumentProcessingStatus",
    "DocumentType",
    "JournalEntry",
    "LedgerAccount",
    "MatchStatus",
    "ReconciliationState",
    "ReconciliationStatus",
    "Transaction",
    "TransactionType",
    "UsageRecord",
]
