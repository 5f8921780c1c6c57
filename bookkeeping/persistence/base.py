"""Storage port used by the import and reconciliation core.

Services only see ``LedgerStore`` and the ``StoreTransaction`` it yields; rows
cross the boundary as plain mappings keyed by column name.
"""

from __future__ import annotations

import enum
from collections.abc import Collection, Mapping, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from bookkeeping.models.account import AccountType
from bookkeeping.models.reconciliation import ReconciliationState

Row = dict[str, Any]


class Entity(str, enum.Enum):
    """Persisted record kinds addressable through the port."""

    TRANSACTION = "transaction"
    JOURNAL_ENTRY = "journal_entry"
    DOCUMENT = "document"
    DOCUMENT_MATCH = "document_match"
    RECONCILIATION_STATUS = "reconciliation_status"
    USAGE_RECORD = "usage_record"


@dataclass(frozen=True, slots=True)
class AccountRecord:
    id: UUID
    code: str
    name: str
    type: AccountType
    is_active: bool = True
    description: str | None = None


@dataclass(frozen=True, slots=True)
class CandidateTransaction:
    """Transaction fields the matcher scores against."""

    id: UUID
    amount: Decimal
    txn_date: date
    description: str


@dataclass(frozen=True, slots=True)
class AutoReconcileCandidate:
    match_id: UUID
    transaction_id: UUID
    document_id: UUID
    confidence: float


@dataclass(frozen=True, slots=True)
class StatusAmount:
    amount: Decimal
    status: ReconciliationState | None


class StoreTransaction(Protocol):
    """Unit of work inside one bounded database transaction."""

    async def bulk_insert(
        self,
        entity: Entity,
        rows: Sequence[Mapping[str, Any]],
        *,
        skip_duplicates: bool = False,
    ) -> list[UUID]:
        """Insert rows and return the ids actually written, in input order."""
        ...

    async def upsert_by_key(
        self, entity: Entity, key: Mapping[str, Any], values: Mapping[str, Any]
    ) -> UUID:
        """Insert or update the row identified by the entity's unique key."""
        ...

    async def update_where(
        self, entity: Entity, criteria: Mapping[str, Any], values: Mapping[str, Any]
    ) -> int: ...

    async def fetch_one(self, entity: Entity, criteria: Mapping[str, Any]) -> Row | None: ...

    async def fetch_all(self, entity: Entity, criteria: Mapping[str, Any]) -> list[Row]: ...


class LedgerStore(Protocol):
    """Relational store with bounded transactions and business-scoped queries."""

    def begin_bounded_transaction(
        self, timeout: float | None = None
    ) -> AbstractAsyncContextManager[StoreTransaction]:
        """Open a transaction that is rolled back if it outlives ``timeout`` seconds.

        Storage and timeout failures surface as ``PersistenceError``.
        """
        ...

    async def list_ledger_accounts(self, business_id: UUID) -> list[AccountRecord]: ...

    async def find_existing_external_ids(
        self, business_id: UUID, external_ids: Collection[str]
    ) -> set[str]: ...

    async def list_transactions_between(
        self, business_id: UUID, start: date, end: date
    ) -> list[CandidateTransaction]: ...

    async def list_auto_reconcile_candidates(
        self, business_id: UUID, threshold: float
    ) -> list[AutoReconcileCandidate]:
        """Best SUGGESTED match at or above ``threshold`` per transaction without a status."""
        ...

    async def list_status_amounts(
        self, business_id: UUID, start: date, end: date
    ) -> list[StatusAmount]: ...

    async def increment_transaction_count(self, business_id: UUID, count: int) -> None: ...
