"""Persistence port and its SQLAlchemy implementation."""

from bookkeeping.persistence.base import (
    AccountRecord,
    AutoReconcileCandidate,
    CandidateTransaction,
    Entity,
    LedgerStore,
    Row,
    StatusAmount,
    StoreTransaction,
)
from bookkeeping.persistence.sqlalchemy_store import SqlAlchemyLedgerStore, SqlAlchemyStoreTransaction

__all__ = [
    "AccountRecord",
    "AutoReconcileCandidate",
    "CandidateTransaction",
    "Entity",
    "LedgerStore",
    "Row",
    "SqlAlchemyLedgerStore",
    "SqlAlchemyStoreTransaction",
    "StatusAmount",
    "StoreTransaction",
]
