"""Reconciliation state machine.

Moves transactions between reconciliation states and keeps the document link
consistent in both directions: whenever a status row references a document,
that document's ``transaction_id`` points back at the status's transaction.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from pydantic import ValidationError

from bookkeeping.config import settings
from bookkeeping.logger import get_logger, log_exception
from bookkeeping.models import MatchStatus, ReconciliationState
from bookkeeping.persistence.base import (
    AutoReconcileCandidate,
    Entity,
    LedgerStore,
    Row,
    StoreTransaction,
)
from bookkeeping.schemas.base import ServiceResult
from bookkeeping.schemas.reconciliation import (
    AutoReconcileResult,
    BulkReconcileRequest,
    BulkReconcileResult,
    ReconciliationStatusResponse,
    ReconciliationSummary,
)
from bookkeeping.services.accounting import ZERO
from bookkeeping.utils.exceptions import (
    BookkeepingError,
    InvalidTransitionError,
    PersistenceError,
    raise_forbidden,
    raise_not_found,
)

logger = get_logger(__name__)

ScopeGuard = Callable[[UUID, UUID], bool]

S = ReconciliationState

ALLOWED_TRANSITIONS: dict[ReconciliationState, frozenset[ReconciliationState]] = {
    S.UNMATCHED: frozenset(
        {S.UNMATCHED, S.PENDING_REVIEW, S.MATCHED, S.MANUALLY_MATCHED, S.PARTIALLY_MATCHED, S.EXCLUDED}
    ),
    S.PENDING_REVIEW: frozenset(
        {S.UNMATCHED, S.PENDING_REVIEW, S.MATCHED, S.MANUALLY_MATCHED, S.PARTIALLY_MATCHED, S.EXCLUDED}
    ),
    S.MATCHED: frozenset({S.UNMATCHED, S.MANUALLY_MATCHED, S.EXCLUDED}),
    S.MANUALLY_MATCHED: frozenset({S.UNMATCHED, S.MANUALLY_MATCHED, S.EXCLUDED}),
    S.PARTIALLY_MATCHED: frozenset({S.UNMATCHED, S.PARTIALLY_MATCHED, S.MANUALLY_MATCHED, S.EXCLUDED}),
    S.EXCLUDED: frozenset({S.UNMATCHED, S.MANUALLY_MATCHED, S.EXCLUDED}),
}

MATCHED_STATES = frozenset({S.MATCHED, S.MANUALLY_MATCHED})


def current_state(status_row: Mapping[str, Any] | None) -> ReconciliationState:
    """A transaction without a status row is UNMATCHED."""
    return status_row["status"] if status_row is not None else S.UNMATCHED


def ensure_transition(current: ReconciliationState, target: ReconciliationState) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move reconciliation status from {current.value} to {target.value}"
        )


class ReconciliationService:
    """Reconciliation operations for one store.

    Every operation checks ``scope_guard(user_id, business_id)`` and loads the
    target rows scoped to the business before writing anything. Failures come
    back as ``ServiceResult(success=False)``.
    """

    def __init__(
        self,
        store: LedgerStore,
        scope_guard: ScopeGuard,
        *,
        auto_reconcile_threshold: float | None = None,
        summary_default_days: int | None = None,
    ):
        self.store = store
        self.scope_guard = scope_guard
        self.auto_reconcile_threshold = (
            auto_reconcile_threshold
            if auto_reconcile_threshold is not None
            else settings.auto_reconcile_threshold
        )
        self.summary_default_days = summary_default_days or settings.summary_default_days

    # ------------------------------------------------------------------
    # Auto reconcile
    # ------------------------------------------------------------------

    async def auto_reconcile(
        self, user_id: UUID, business_id: UUID
    ) -> ServiceResult[AutoReconcileResult]:
        """
        Accept the best SUGGESTED match at or above the threshold for every
        transaction that has no reconciliation status yet.

        Each transaction is committed on its own; rows that gained a status in
        the meantime are left alone.
        """
        try:
            self._authorize(user_id, business_id)
            candidates = await self.store.list_auto_reconcile_candidates(
                business_id, self.auto_reconcile_threshold
            )
        except BookkeepingError as exc:
            return self._failure(exc, "auto_reconcile", business_id=business_id)

        matched: list[UUID] = []
        for candidate in candidates:
            try:
                async with self.store.begin_bounded_transaction() as tx:
                    if await self._auto_match(tx, business_id, candidate):
                        matched.append(candidate.transaction_id)
            except PersistenceError as exc:
                log_exception(
                    logger,
                    exc,
                    "Auto-reconcile failed for transaction",
                    level="warning",
                    include_traceback=False,
                    transaction_id=str(candidate.transaction_id),
                )

        logger.info(
            "Auto-reconcile finished",
            business_id=str(business_id),
            candidates=len(candidates),
            matched=len(matched),
        )
        return ServiceResult[AutoReconcileResult].ok(
            AutoReconcileResult(matched=len(matched), transaction_ids=matched)
        )

    async def _auto_match(
        self, tx: StoreTransaction, business_id: UUID, candidate: AutoReconcileCandidate
    ) -> bool:
        transaction_id = candidate.transaction_id
        if await tx.fetch_one(Entity.RECONCILIATION_STATUS, {"transaction_id": transaction_id}):
            return False
        document = await tx.fetch_one(
            Entity.DOCUMENT, {"id": candidate.document_id, "business_id": business_id}
        )
        if document is None:
            return False
        linked_to = document["transaction_id"]
        if linked_to is not None and linked_to != transaction_id:
            return False
        if await tx.fetch_one(Entity.RECONCILIATION_STATUS, {"document_id": candidate.document_id}):
            return False

        inserted = await tx.bulk_insert(
            Entity.RECONCILIATION_STATUS,
            [
                self._status_row(
                    transaction_id,
                    S.MATCHED,
                    document_id=candidate.document_id,
                    confidence=candidate.confidence,
                    manually_set=False,
                    reviewed_by=None,
                    notes="Auto-reconciled",
                )
            ],
            skip_duplicates=True,
        )
        if not inserted:
            return False
        await tx.update_where(
            Entity.DOCUMENT_MATCH, {"id": candidate.match_id}, {"status": MatchStatus.CONFIRMED}
        )
        await tx.update_where(
            Entity.DOCUMENT,
            {"id": candidate.document_id, "business_id": business_id},
            {"transaction_id": transaction_id},
        )
        return True

    # ------------------------------------------------------------------
    # Manual transitions
    # ------------------------------------------------------------------

    async def manual_match(
        self,
        user_id: UUID,
        business_id: UUID,
        transaction_id: UUID,
        document_id: UUID,
        *,
        notes: str | None = None,
    ) -> ServiceResult[ReconciliationStatusResponse]:
        """Link a document to a transaction as MANUALLY_MATCHED. Idempotent."""
        return await self._link(
            user_id,
            business_id,
            transaction_id,
            document_id,
            target=S.MANUALLY_MATCHED,
            confidence=1.0,
            notes=notes,
            operation="manual_match",
        )

    async def mark_partially_matched(
        self,
        user_id: UUID,
        business_id: UUID,
        transaction_id: UUID,
        document_id: UUID,
        confidence: float,
        *,
        notes: str | None = None,
    ) -> ServiceResult[ReconciliationStatusResponse]:
        """Record a document covering only part of a transaction (split scenarios)."""
        return await self._link(
            user_id,
            business_id,
            transaction_id,
            document_id,
            target=S.PARTIALLY_MATCHED,
            confidence=confidence,
            notes=notes,
            operation="mark_partially_matched",
        )

    async def unmatch(
        self,
        user_id: UUID,
        business_id: UUID,
        transaction_id: UUID,
        *,
        notes: str | None = None,
    ) -> ServiceResult[ReconciliationStatusResponse]:
        """Return a transaction to UNMATCHED and clear the document link both ways."""
        return await self._unlink(
            user_id, business_id, transaction_id, S.UNMATCHED, notes, "unmatch"
        )

    async def exclude(
        self,
        user_id: UUID,
        business_id: UUID,
        transaction_id: UUID,
        *,
        notes: str | None = None,
    ) -> ServiceResult[ReconciliationStatusResponse]:
        """Exclude a transaction from reconciliation (e.g. internal transfers)."""
        return await self._unlink(
            user_id, business_id, transaction_id, S.EXCLUDED, notes, "exclude"
        )

    async def flag_for_review(
        self, user_id: UUID, business_id: UUID, transaction_id: UUID
    ) -> ServiceResult[ReconciliationStatusResponse | None]:
        """
        Move a transaction with SUGGESTED matches into PENDING_REVIEW.

        Returns ``data=None`` when the transaction has no suggestions.
        """
        try:
            self._authorize(user_id, business_id)
            async with self.store.begin_bounded_transaction() as tx:
                await self._load_transaction(tx, business_id, transaction_id)
                suggestions = await tx.fetch_all(
                    Entity.DOCUMENT_MATCH,
                    {"transaction_id": transaction_id, "status": MatchStatus.SUGGESTED},
                )
                if not suggestions:
                    return ServiceResult[ReconciliationStatusResponse | None].ok(None)
                current = await tx.fetch_one(
                    Entity.RECONCILIATION_STATUS, {"transaction_id": transaction_id}
                )
                ensure_transition(current_state(current), S.PENDING_REVIEW)
                await tx.upsert_by_key(
                    Entity.RECONCILIATION_STATUS,
                    {"transaction_id": transaction_id},
                    {
                        "status": S.PENDING_REVIEW,
                        "document_id": None,
                        "confidence": max(row["confidence"] for row in suggestions),
                        "manually_set": bool(current and current["manually_set"]),
                    },
                )
                row = await tx.fetch_one(
                    Entity.RECONCILIATION_STATUS, {"transaction_id": transaction_id}
                )
        except BookkeepingError as exc:
            return self._failure(exc, "flag_for_review", transaction_id=transaction_id)
        return ServiceResult[ReconciliationStatusResponse | None].ok(
            ReconciliationStatusResponse.model_validate(row)
        )

    async def bulk_reconcile(
        self,
        user_id: UUID,
        business_id: UUID,
        request: BulkReconcileRequest | Sequence[Mapping[str, Any]],
    ) -> ServiceResult[BulkReconcileResult]:
        """
        Apply manual matches for many pairs at once.

        Statuses go in with one bulk insert that skips transactions already
        carrying a status; only newly created pairs get their document link
        and MANUAL match.
        """
        try:
            if not isinstance(request, BulkReconcileRequest):
                request = BulkReconcileRequest.model_validate({"items": list(request)})
        except ValidationError as exc:
            logger.warning("Invalid bulk reconcile request", errors=exc.error_count())
            return ServiceResult[BulkReconcileResult].fail(str(exc), "validation")

        items = request.items
        transaction_ids = [item.transaction_id for item in items]
        document_ids = [item.document_id for item in items]
        try:
            self._authorize(user_id, business_id)
            async with self.store.begin_bounded_transaction() as tx:
                transactions = await tx.fetch_all(
                    Entity.TRANSACTION, {"id": transaction_ids, "business_id": business_id}
                )
                if len(transactions) != len(set(transaction_ids)):
                    raise_not_found("Transaction")
                documents = await tx.fetch_all(
                    Entity.DOCUMENT, {"id": document_ids, "business_id": business_id}
                )
                if len(documents) != len(set(document_ids)):
                    raise_not_found("Document")

                wanted = {item.document_id: item.transaction_id for item in items}
                for status_row in await tx.fetch_all(
                    Entity.RECONCILIATION_STATUS, {"document_id": document_ids}
                ):
                    if status_row["transaction_id"] != wanted[status_row["document_id"]]:
                        raise InvalidTransitionError(
                            f"Document {status_row['document_id']} is already matched to another transaction"
                        )

                status_rows = [
                    {
                        "id": uuid4(),
                        **self._status_row(
                            item.transaction_id,
                            S.MANUALLY_MATCHED,
                            document_id=item.document_id,
                            confidence=item.confidence,
                            manually_set=True,
                            reviewed_by=user_id,
                        ),
                    }
                    for item in items
                ]
                inserted = set(
                    await tx.bulk_insert(
                        Entity.RECONCILIATION_STATUS, status_rows, skip_duplicates=True
                    )
                )
                created = [item for item, row in zip(items, status_rows) if row["id"] in inserted]
                for item in created:
                    await tx.upsert_by_key(
                        Entity.DOCUMENT_MATCH,
                        {"document_id": item.document_id, "transaction_id": item.transaction_id},
                        {
                            "confidence": item.confidence,
                            "status": MatchStatus.MANUAL,
                            "match_reason": "Bulk reconciled",
                            "is_user_confirmed": True,
                        },
                    )
                    await tx.update_where(
                        Entity.DOCUMENT,
                        {"id": item.document_id, "business_id": business_id},
                        {"transaction_id": item.transaction_id},
                    )
        except BookkeepingError as exc:
            return self._failure(exc, "bulk_reconcile", business_id=business_id, items=len(items))

        logger.info(
            "Bulk reconcile finished",
            business_id=str(business_id),
            processed=len(items),
            created=len(created),
        )
        return ServiceResult[BulkReconcileResult].ok(
            BulkReconcileResult(
                processed=len(items), created=len(created), skipped=len(items) - len(created)
            )
        )

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    async def reconciliation_summary(
        self,
        user_id: UUID,
        business_id: UUID,
        start: date | None = None,
        end: date | None = None,
    ) -> ServiceResult[ReconciliationSummary]:
        """Counts and absolute amounts per reconciliation bucket; defaults to the last 90 days."""
        end = end or datetime.now(UTC).date()
        start = start or end - timedelta(days=self.summary_default_days)
        try:
            self._authorize(user_id, business_id)
            rows = await self.store.list_status_amounts(business_id, start, end)
        except BookkeepingError as exc:
            return self._failure(exc, "reconciliation_summary", business_id=business_id)

        total_amount = matched_amount = unmatched_amount = ZERO
        matched = unmatched = pending = excluded = 0
        for row in rows:
            amount = abs(Decimal(row.amount))
            total_amount += amount
            if row.status in MATCHED_STATES:
                matched += 1
                matched_amount += amount
            elif row.status is None or row.status == S.UNMATCHED:
                unmatched += 1
                unmatched_amount += amount
            elif row.status == S.PENDING_REVIEW:
                pending += 1
            elif row.status == S.EXCLUDED:
                excluded += 1

        total = len(rows)
        return ServiceResult[ReconciliationSummary].ok(
            ReconciliationSummary(
                total_transactions=total,
                matched_transactions=matched,
                unmatched_transactions=unmatched,
                pending_review=pending,
                excluded_transactions=excluded,
                matched_percentage=round(matched / total * 100, 2) if total else 0.0,
                total_amount=total_amount,
                matched_amount=matched_amount,
                unmatched_amount=unmatched_amount,
            )
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _link(
        self,
        user_id: UUID,
        business_id: UUID,
        transaction_id: UUID,
        document_id: UUID,
        *,
        target: ReconciliationState,
        confidence: float,
        notes: str | None,
        operation: str,
    ) -> ServiceResult[ReconciliationStatusResponse]:
        try:
            self._authorize(user_id, business_id)
            async with self.store.begin_bounded_transaction() as tx:
                await self._load_transaction(tx, business_id, transaction_id)
                document = await tx.fetch_one(
                    Entity.DOCUMENT, {"id": document_id, "business_id": business_id}
                )
                if document is None:
                    raise_not_found("Document")
                current = await tx.fetch_one(
                    Entity.RECONCILIATION_STATUS, {"transaction_id": transaction_id}
                )
                ensure_transition(current_state(current), target)

                owner = await tx.fetch_one(
                    Entity.RECONCILIATION_STATUS, {"document_id": document_id}
                )
                if owner is not None and owner["transaction_id"] != transaction_id:
                    raise InvalidTransitionError("Document is already matched to another transaction")

                previous_document = current["document_id"] if current is not None else None
                if previous_document is not None and previous_document != document_id:
                    await tx.update_where(
                        Entity.DOCUMENT,
                        {"id": previous_document, "transaction_id": transaction_id},
                        {"transaction_id": None},
                    )

                await tx.upsert_by_key(
                    Entity.RECONCILIATION_STATUS,
                    {"transaction_id": transaction_id},
                    self._status_row(
                        transaction_id,
                        target,
                        document_id=document_id,
                        confidence=confidence,
                        manually_set=True,
                        reviewed_by=user_id,
                        notes=notes,
                        include_key=False,
                    ),
                )
                await tx.upsert_by_key(
                    Entity.DOCUMENT_MATCH,
                    {"document_id": document_id, "transaction_id": transaction_id},
                    {
                        "confidence": confidence,
                        "status": MatchStatus.MANUAL,
                        "match_reason": "Manually matched",
                        "is_user_confirmed": True,
                    },
                )
                await tx.update_where(
                    Entity.DOCUMENT,
                    {"id": document_id, "business_id": business_id},
                    {"transaction_id": transaction_id},
                )
                row = await tx.fetch_one(
                    Entity.RECONCILIATION_STATUS, {"transaction_id": transaction_id}
                )
        except BookkeepingError as exc:
            return self._failure(
                exc, operation, transaction_id=transaction_id, document_id=document_id
            )

        logger.info(
            "Transaction linked to document",
            operation=operation,
            transaction_id=str(transaction_id),
            document_id=str(document_id),
            status=target.value,
        )
        return ServiceResult[ReconciliationStatusResponse].ok(
            ReconciliationStatusResponse.model_validate(row)
        )

    async def _unlink(
        self,
        user_id: UUID,
        business_id: UUID,
        transaction_id: UUID,
        target: ReconciliationState,
        notes: str | None,
        operation: str,
    ) -> ServiceResult[ReconciliationStatusResponse]:
        try:
            self._authorize(user_id, business_id)
            async with self.store.begin_bounded_transaction() as tx:
                await self._load_transaction(tx, business_id, transaction_id)
                current = await tx.fetch_one(
                    Entity.RECONCILIATION_STATUS, {"transaction_id": transaction_id}
                )
                ensure_transition(current_state(current), target)

                await tx.update_where(
                    Entity.DOCUMENT,
                    {"transaction_id": transaction_id, "business_id": business_id},
                    {"transaction_id": None},
                )
                await tx.upsert_by_key(
                    Entity.RECONCILIATION_STATUS,
                    {"transaction_id": transaction_id},
                    self._status_row(
                        transaction_id,
                        target,
                        document_id=None,
                        confidence=None,
                        manually_set=True,
                        reviewed_by=user_id,
                        notes=notes,
                        include_key=False,
                    ),
                )
                row = await tx.fetch_one(
                    Entity.RECONCILIATION_STATUS, {"transaction_id": transaction_id}
                )
        except BookkeepingError as exc:
            return self._failure(exc, operation, transaction_id=transaction_id)

        logger.info(
            "Transaction unlinked",
            operation=operation,
            transaction_id=str(transaction_id),
            status=target.value,
        )
        return ServiceResult[ReconciliationStatusResponse].ok(
            ReconciliationStatusResponse.model_validate(row)
        )

    def _authorize(self, user_id: UUID, business_id: UUID) -> None:
        if not self.scope_guard(user_id, business_id):
            raise_forbidden("Transaction")

    @staticmethod
    async def _load_transaction(tx: StoreTransaction, business_id: UUID, transaction_id: UUID) -> Row:
        row = await tx.fetch_one(
            Entity.TRANSACTION, {"id": transaction_id, "business_id": business_id}
        )
        if row is None:
            raise_not_found("Transaction")
        return row

    @staticmethod
    def _status_row(
        transaction_id: UUID,
        status: ReconciliationState,
        *,
        document_id: UUID | None,
        confidence: float | None,
        manually_set: bool,
        reviewed_by: UUID | None,
        notes: str | None = None,
        include_key: bool = True,
    ) -> dict[str, Any]:
        row: dict[str, Any] = {
            "status": status,
            "document_id": document_id,
            "confidence": confidence,
            "manually_set": manually_set,
            "reviewed_by": reviewed_by,
            "reviewed_at": datetime.now(UTC),
            "notes": notes,
        }
        if include_key:
            row["transaction_id"] = transaction_id
        return row

    @staticmethod
    def _failure(exc: BookkeepingError, operation: str, **context: Any) -> ServiceResult[Any]:
        log_exception(
            logger,
            exc,
            f"Reconciliation {operation} failed",
            level="warning",
            include_traceback=False,
            **{key: str(value) for key, value in context.items()},
        )
        return ServiceResult.fail(str(exc), exc.code)
