"""SQLAlchemy implementation of the ledger storage port."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Collection, Mapping, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import Table, and_, insert, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookkeeping.config import settings
from bookkeeping.logger import get_logger
from bookkeeping.models import (
    Document,
    DocumentMatch,
    JournalEntry,
    LedgerAccount,
    MatchStatus,
    ReconciliationStatus,
    Transaction,
    UsageRecord,
)
from bookkeeping.persistence.base import (
    AccountRecord,
    AutoReconcileCandidate,
    CandidateTransaction,
    Entity,
    Row,
    StatusAmount,
)
from bookkeeping.utils.exceptions import PersistenceError

logger = get_logger(__name__)

_MODELS: dict[Entity, Any] = {
    Entity.TRANSACTION: Transaction,
    Entity.JOURNAL_ENTRY: JournalEntry,
    Entity.DOCUMENT: Document,
    Entity.DOCUMENT_MATCH: DocumentMatch,
    Entity.RECONCILIATION_STATUS: ReconciliationStatus,
    Entity.USAGE_RECORD: UsageRecord,
}

# Unique keys used for duplicate-skip and upsert conflict targets.
_CONFLICT_KEYS: dict[Entity, tuple[str, ...]] = {
    Entity.TRANSACTION: ("business_id", "external_id"),
    Entity.JOURNAL_ENTRY: ("id",),
    Entity.DOCUMENT: ("id",),
    Entity.DOCUMENT_MATCH: ("document_id", "transaction_id"),
    Entity.RECONCILIATION_STATUS: ("transaction_id",),
    Entity.USAGE_RECORD: ("business_id", "month"),
}


def _table(entity: Entity) -> Table:
    return _MODELS[entity].__table__


def _dialect_insert(session: AsyncSession, table: Table):
    """Return a dialect ``insert`` that supports ON CONFLICT clauses."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(table)
    if dialect == "sqlite":
        return sqlite_insert(table)
    raise PersistenceError(f"Upserts are not supported on {dialect}", retryable=False)


def _with_defaults(table: Table, row: Mapping[str, Any]) -> dict[str, Any]:
    """Fill id and timestamps up front so multi-row VALUES inserts stay uniform."""
    now = datetime.now(UTC)
    values: dict[str, Any] = {"id": uuid4()}
    for column_name in ("created_at", "updated_at"):
        if column_name in table.c:
            values[column_name] = now
    values.update(row)
    return values


def _where(table: Table, criteria: Mapping[str, Any]):
    clauses = []
    for column_name, value in criteria.items():
        column = table.c[column_name]
        if value is None:
            clauses.append(column.is_(None))
        elif isinstance(value, (list, tuple, set, frozenset)):
            clauses.append(column.in_(list(value)))
        else:
            clauses.append(column == value)
    return and_(*clauses)


class SqlAlchemyStoreTransaction:
    """``StoreTransaction`` bound to one ``AsyncSession`` inside ``session.begin()``."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def bulk_insert(
        self,
        entity: Entity,
        rows: Sequence[Mapping[str, Any]],
        *,
        skip_duplicates: bool = False,
    ) -> list[UUID]:
        if not rows:
            return []
        table = _table(entity)
        payload = [_with_defaults(table, row) for row in rows]
        ids = [row["id"] for row in payload]

        if not skip_duplicates:
            await self.session.execute(insert(table), payload)
            return ids

        stmt = (
            _dialect_insert(self.session, table)
            .values(payload)
            .on_conflict_do_nothing(index_elements=list(_CONFLICT_KEYS[entity]))
            .returning(table.c.id)
        )
        result = await self.session.execute(stmt)
        inserted = set(result.scalars().all())
        return [row_id for row_id in ids if row_id in inserted]

    async def upsert_by_key(
        self, entity: Entity, key: Mapping[str, Any], values: Mapping[str, Any]
    ) -> UUID:
        table = _table(entity)
        key_columns = _CONFLICT_KEYS[entity]
        if set(key) != set(key_columns):
            raise ValueError(f"{entity.value} upserts are keyed on {key_columns}, got {tuple(key)}")

        update_values = dict(values)
        if "updated_at" in table.c:
            update_values["updated_at"] = datetime.now(UTC)
        stmt = (
            _dialect_insert(self.session, table)
            .values(_with_defaults(table, {**key, **values}))
            .on_conflict_do_update(index_elements=list(key_columns), set_=update_values)
            .returning(table.c.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def update_where(
        self, entity: Entity, criteria: Mapping[str, Any], values: Mapping[str, Any]
    ) -> int:
        table = _table(entity)
        result = await self.session.execute(
            update(table).where(_where(table, criteria)).values(**values)
        )
        return result.rowcount

    async def fetch_one(self, entity: Entity, criteria: Mapping[str, Any]) -> Row | None:
        table = _table(entity)
        result = await self.session.execute(select(table).where(_where(table, criteria)).limit(1))
        row = result.first()
        return dict(row._mapping) if row is not None else None

    async def fetch_all(self, entity: Entity, criteria: Mapping[str, Any]) -> list[Row]:
        table = _table(entity)
        result = await self.session.execute(select(table).where(_where(table, criteria)))
        return [dict(row._mapping) for row in result]


class SqlAlchemyLedgerStore:
    """``LedgerStore`` backed by an async session factory."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        default_timeout: float | None = None,
    ):
        self._session_maker = session_maker
        self._default_timeout = (
            default_timeout
            if default_timeout is not None
            else settings.import_transaction_timeout_seconds
        )

    @asynccontextmanager
    async def begin_bounded_transaction(
        self, timeout: float | None = None
    ) -> AsyncIterator[SqlAlchemyStoreTransaction]:
        seconds = self._default_timeout if timeout is None else timeout
        try:
            async with asyncio.timeout(seconds):
                async with self._session_maker() as session:
                    async with session.begin():
                        if session.get_bind().dialect.name == "postgresql":
                            await session.execute(
                                text(f"SET LOCAL statement_timeout = {int(seconds * 1000)}")
                            )
                        yield SqlAlchemyStoreTransaction(session)
        except TimeoutError as exc:
            raise PersistenceError(f"Database transaction exceeded {seconds}s timeout") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Database error: {exc.__class__.__name__}: {exc}") from exc

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Session for work outside a bounded transaction; storage errors become PersistenceError."""
        try:
            async with self._session_maker() as session:
                yield session
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Database error: {exc.__class__.__name__}: {exc}") from exc

    async def list_ledger_accounts(self, business_id: UUID) -> list[AccountRecord]:
        async with self._session() as session:
            result = await session.execute(
                select(LedgerAccount)
                .where(LedgerAccount.business_id == business_id)
                .order_by(LedgerAccount.code)
            )
            return [
                AccountRecord(
                    id=account.id,
                    code=account.code,
                    name=account.name,
                    type=account.type,
                    is_active=account.is_active,
                    description=account.description,
                )
                for account in result.scalars()
            ]

    async def find_existing_external_ids(
        self, business_id: UUID, external_ids: Collection[str]
    ) -> set[str]:
        if not external_ids:
            return set()
        async with self._session() as session:
            result = await session.execute(
                select(Transaction.external_id).where(
                    Transaction.business_id == business_id,
                    Transaction.external_id.in_(list(external_ids)),
                )
            )
            return set(result.scalars().all())

    async def list_transactions_between(
        self, business_id: UUID, start: date, end: date
    ) -> list[CandidateTransaction]:
        async with self._session() as session:
            result = await session.execute(
                select(
                    Transaction.id,
                    Transaction.amount,
                    Transaction.txn_date,
                    Transaction.description,
                )
                .where(
                    Transaction.business_id == business_id,
                    Transaction.txn_date >= start,
                    Transaction.txn_date <= end,
                )
                .order_by(Transaction.txn_date, Transaction.created_at, Transaction.id)
            )
            return [
                CandidateTransaction(
                    id=row.id,
                    amount=row.amount,
                    txn_date=row.txn_date,
                    description=row.description,
                )
                for row in result
            ]

    async def list_auto_reconcile_candidates(
        self, business_id: UUID, threshold: float
    ) -> list[AutoReconcileCandidate]:
        async with self._session() as session:
            result = await session.execute(
                select(
                    DocumentMatch.id,
                    DocumentMatch.transaction_id,
                    DocumentMatch.document_id,
                    DocumentMatch.confidence,
                )
                .join(Transaction, Transaction.id == DocumentMatch.transaction_id)
                .outerjoin(
                    ReconciliationStatus,
                    ReconciliationStatus.transaction_id == Transaction.id,
                )
                .where(
                    Transaction.business_id == business_id,
                    DocumentMatch.status == MatchStatus.SUGGESTED,
                    DocumentMatch.confidence >= threshold,
                    ReconciliationStatus.id.is_(None),
                )
                .order_by(
                    Transaction.txn_date,
                    Transaction.id,
                    DocumentMatch.confidence.desc(),
                    DocumentMatch.created_at,
                    DocumentMatch.id,
                )
            )
            best: dict[UUID, AutoReconcileCandidate] = {}
            for row in result:
                if row.transaction_id not in best:
                    best[row.transaction_id] = AutoReconcileCandidate(
                        match_id=row.id,
                        transaction_id=row.transaction_id,
                        document_id=row.document_id,
                        confidence=row.confidence,
                    )
            return list(best.values())

    async def list_status_amounts(
        self, business_id: UUID, start: date, end: date
    ) -> list[StatusAmount]:
        async with self._session() as session:
            result = await session.execute(
                select(Transaction.amount, ReconciliationStatus.status)
                .outerjoin(
                    ReconciliationStatus,
                    ReconciliationStatus.transaction_id == Transaction.id,
                )
                .where(
                    Transaction.business_id == business_id,
                    Transaction.txn_date >= start,
                    Transaction.txn_date <= end,
                )
            )
            return [StatusAmount(amount=row.amount, status=row.status) for row in result]

    async def increment_transaction_count(self, business_id: UUID, count: int) -> None:
        """Add ``count`` to the current month's usage row, creating it if needed."""
        month = datetime.now(UTC).date().replace(day=1)
        table = _table(Entity.USAGE_RECORD)
        async with self._session() as session:
            async with session.begin():
                stmt = _dialect_insert(session, table).values(
                    id=uuid4(),
                    business_id=business_id,
                    month=month,
                    transaction_count=count,
                    created_at=datetime.now(UTC),
                    updated_at=datetime.now(UTC),
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["business_id", "month"],
                    set_={
                        "transaction_count": table.c.transaction_count + stmt.excluded.transaction_count,
                        "updated_at": datetime.now(UTC),
                    },
                )
                await session.execute(stmt)
        logger.debug("Usage incremented", business_id=str(business_id), count=count)
