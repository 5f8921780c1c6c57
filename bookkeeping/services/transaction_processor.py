"""Batch transaction processor.

Imports a batch of raw bank transactions in fixed-size chunks. Each chunk is
persisted (transactions plus journal lines) inside one bounded database
transaction and retried with exponential backoff on storage failures.
Per-transaction problems are recorded and never retried.
"""

import asyncio
from collections.abc import Awaitable, Callable, Collection, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from bookkeeping.config import Settings, settings
from bookkeeping.logger import async_log_timing, bind_ledger_context, get_logger, log_exception
from bookkeeping.models import DocumentProcessingStatus
from bookkeeping.persistence.base import AccountRecord, Entity, LedgerStore
from bookkeeping.schemas.base import ServiceResult
from bookkeeping.schemas.imports import (
    BatchStatus,
    ProcessingErrorEntry,
    ProcessingProgress,
    ProcessingResult,
    RawTransaction,
)
from bookkeeping.services.accounting import round_money
from bookkeeping.services.chart_of_accounts import (
    ChartOfAccountsMap,
    build_account_map,
    check_fallbacks,
    match_suggested_category,
    resolve_account,
)
from bookkeeping.services.journal_factory import JournalEntryFactory, JournalEntrySet
from bookkeeping.services.usage_tracking import UsageDispatcher
from bookkeeping.utils.exceptions import ConfigurationError, PersistenceError, TransactionSemanticError

logger = get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class ProcessorConfig:
    """Chunking and retry parameters for a batch import."""

    batch_size: int = 10
    transaction_timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_base_seconds: float = 2.0

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt ``attempt`` (1-based): base, 2*base, 4*base..."""
        return self.backoff_base_seconds * 2 ** (attempt - 1)

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "ProcessorConfig":
        source = source or settings
        return cls(
            batch_size=source.import_batch_size,
            transaction_timeout_seconds=source.import_transaction_timeout_seconds,
            max_retries=source.import_max_retries,
            backoff_base_seconds=source.import_backoff_base_seconds,
        )


@dataclass(frozen=True)
class ProcessingContext:
    """Who is importing, for which business, and from which statement document."""

    business_id: UUID
    user_id: UUID
    document_id: UUID | None = None
    # Bank account id -> ledger account used for the cash leg.
    bank_account_ledger_ids: Mapping[UUID, UUID] = field(default_factory=dict)


@dataclass
class _PreparedTransaction:
    index: int
    transaction: RawTransaction
    category_id: UUID | None
    entries: JournalEntrySet
    transaction_id: UUID


@dataclass
class _ChunkPlan:
    prepared: list[_PreparedTransaction] = field(default_factory=list)
    rejected: list[ProcessingErrorEntry] = field(default_factory=list)
    external_ids: set[str] = field(default_factory=set)
    skipped: int = 0


@dataclass
class _BatchTally:
    imported: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[ProcessingErrorEntry] = field(default_factory=list)
    transaction_ids: list[UUID] = field(default_factory=list)


class TransactionProcessor:
    """Chunked, retrying importer of raw bank transactions."""

    def __init__(
        self,
        store: LedgerStore,
        config: ProcessorConfig | None = None,
        *,
        usage: UsageDispatcher | None = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.store = store
        self.config = config or ProcessorConfig.from_settings()
        self.usage = usage
        self._sleep = sleep

    async def process_transactions(
        self,
        transactions: Sequence[RawTransaction],
        context: ProcessingContext,
        progress: asyncio.Queue[ProcessingProgress] | None = None,
    ) -> ServiceResult[ProcessingResult]:
        """
        Import a batch and return the aggregated result.

        Configuration problems and failures to read the chart of accounts fail
        the whole batch before anything is written. Otherwise the result is a
        success carrying imported/failed/skipped counts, even when some rows or
        chunks failed.
        """
        with bind_ledger_context(business_id=context.business_id, document_id=context.document_id):
            return await self._import(transactions, context, progress)

    async def _import(
        self,
        transactions: Sequence[RawTransaction],
        context: ProcessingContext,
        progress: asyncio.Queue[ProcessingProgress] | None,
    ) -> ServiceResult[ProcessingResult]:
        total = len(transactions)
        batch_size = self.config.batch_size
        offsets = range(0, total, batch_size)
        logger.info("Starting transaction import", total=total, chunks=len(offsets))

        try:
            accounts = await self.store.list_ledger_accounts(context.business_id)
            account_map = build_account_map(accounts)
            resolved = [self._apply_suggested_category(txn, accounts) for txn in transactions]
            check_fallbacks(resolved, account_map)
        except (ConfigurationError, PersistenceError) as exc:
            log_exception(logger, exc, "Transaction import aborted", include_traceback=False)
            await self._finish_document(context, BatchStatus.FAILED, _BatchTally(), error=str(exc))
            await self._emit(
                progress,
                ProcessingProgress(
                    stage="failed",
                    processed=0,
                    total=total,
                    current_chunk=0,
                    total_chunks=len(offsets),
                    message=str(exc),
                ),
            )
            return ServiceResult[ProcessingResult].fail(str(exc), exc.code)

        await self._mark_document_processing(context)

        known_account_ids = frozenset(account.id for account in accounts if account.is_active)
        factory = JournalEntryFactory(account_map, context.bank_account_ledger_ids)
        tally = _BatchTally()
        seen_external_ids: set[str] = set()

        for chunk_number, offset in enumerate(offsets, start=1):
            chunk = resolved[offset : offset + batch_size]
            await self._process_chunk(
                chunk_number,
                offset,
                chunk,
                context,
                account_map,
                known_account_ids,
                factory,
                seen_external_ids,
                tally,
            )
            await self._emit(
                progress,
                ProcessingProgress(
                    stage="processing",
                    processed=min(offset + len(chunk), total),
                    total=total,
                    current_chunk=chunk_number,
                    total_chunks=len(offsets),
                    imported=tally.imported,
                    failed=tally.failed,
                    skipped=tally.skipped,
                ),
            )

        status = BatchStatus.FAILED if tally.failed else BatchStatus.COMPLETED
        result = ProcessingResult(
            status=status,
            imported=tally.imported,
            failed=tally.failed,
            skipped=tally.skipped,
            errors=tally.errors,
            transaction_ids=tally.transaction_ids,
        )
        await self._finish_document(context, status, tally)
        await self._emit(
            progress,
            ProcessingProgress(
                stage="completed",
                processed=total,
                total=total,
                current_chunk=len(offsets),
                total_chunks=len(offsets),
                imported=tally.imported,
                failed=tally.failed,
                skipped=tally.skipped,
            ),
        )
        logger.info(
            "Transaction import finished",
            status=status.value,
            imported=tally.imported,
            failed=tally.failed,
            skipped=tally.skipped,
        )
        return ServiceResult[ProcessingResult].ok(result)

    async def _process_chunk(
        self,
        chunk_number: int,
        offset: int,
        chunk: Sequence[RawTransaction],
        context: ProcessingContext,
        account_map: ChartOfAccountsMap,
        known_account_ids: frozenset[UUID],
        factory: JournalEntryFactory,
        seen_external_ids: set[str],
        tally: _BatchTally,
    ) -> None:
        external_ids = {txn.external_id for txn in chunk if txn.external_id}
        # Retries rebuild the plan but keep each row's transaction id.
        transaction_ids: dict[int, UUID] = {}
        plan: _ChunkPlan | None = None

        async def attempt() -> list[UUID]:
            nonlocal plan
            existing = await self.store.find_existing_external_ids(context.business_id, external_ids)
            plan = self._plan_chunk(
                chunk_number,
                offset,
                chunk,
                account_map,
                known_account_ids,
                factory,
                existing | seen_external_ids,
                transaction_ids,
            )
            return await self._persist_chunk(plan.prepared, context)

        try:
            inserted = await self._with_retry(chunk_number, context, attempt)
        except PersistenceError as exc:
            if plan is None:
                plan = self._plan_chunk(
                    chunk_number,
                    offset,
                    chunk,
                    account_map,
                    known_account_ids,
                    factory,
                    seen_external_ids,
                    transaction_ids,
                )
            self._record_rejections(plan, tally)
            tally.skipped += plan.skipped
            if plan.prepared:
                tally.failed += len(plan.prepared)
                tally.errors.append(
                    ProcessingErrorEntry(
                        code=exc.code,
                        message=f"Chunk failed after retries: {exc}",
                        chunk=chunk_number,
                        count=len(plan.prepared),
                    )
                )
            return

        assert plan is not None
        self._record_rejections(plan, tally)
        raced = len(plan.prepared) - len(inserted)
        if raced:
            logger.info("Skipped transactions imported concurrently", chunk=chunk_number, count=raced)
        tally.skipped += plan.skipped + raced
        seen_external_ids.update(plan.external_ids)
        tally.imported += len(inserted)
        tally.transaction_ids.extend(inserted)
        if inserted and self.usage is not None:
            self.usage.dispatch(context.business_id, len(inserted))

    @staticmethod
    def _plan_chunk(
        chunk_number: int,
        offset: int,
        chunk: Sequence[RawTransaction],
        account_map: ChartOfAccountsMap,
        known_account_ids: frozenset[UUID],
        factory: JournalEntryFactory,
        known_external_ids: Collection[str],
        transaction_ids: dict[int, UUID],
    ) -> _ChunkPlan:
        plan = _ChunkPlan()
        for position, txn in enumerate(chunk):
            index = offset + position
            if txn.external_id and (
                txn.external_id in known_external_ids or txn.external_id in plan.external_ids
            ):
                plan.skipped += 1
                logger.debug("Skipping duplicate transaction", external_id=txn.external_id, index=index)
                continue
            try:
                category_id = resolve_account(txn, account_map, known_account_ids)
                entries = factory.create_journal_entries(txn, category_id)
            except TransactionSemanticError as exc:
                plan.rejected.append(
                    ProcessingErrorEntry(
                        code=exc.code,
                        message=str(exc),
                        chunk=chunk_number,
                        index=index,
                        external_id=txn.external_id,
                    )
                )
                continue
            if txn.external_id:
                plan.external_ids.add(txn.external_id)
            transaction_id = transaction_ids.setdefault(index, uuid4())
            plan.prepared.append(_PreparedTransaction(index, txn, category_id, entries, transaction_id))
        return plan

    @staticmethod
    def _record_rejections(plan: _ChunkPlan, tally: _BatchTally) -> None:
        for error in plan.rejected:
            logger.warning(
                "Transaction rejected",
                chunk=error.chunk,
                index=error.index,
                error=error.message,
                error_type=error.code,
            )
        tally.failed += len(plan.rejected)
        tally.errors.extend(plan.rejected)

    async def _with_retry(
        self,
        chunk_number: int,
        context: ProcessingContext,
        operation: Callable[[], Awaitable[list[UUID]]],
    ) -> list[UUID]:
        max_retries = self.config.max_retries
        for attempt in range(1, max_retries + 1):
            try:
                async with async_log_timing(
                    "persist_chunk",
                    logger=logger,
                    business_id=str(context.business_id),
                    chunk=chunk_number,
                    attempt=attempt,
                ):
                    return await operation()
            except PersistenceError as exc:
                log_exception(
                    logger,
                    exc,
                    "Chunk persistence failed",
                    level="warning",
                    include_traceback=False,
                    chunk=chunk_number,
                    attempt=attempt,
                    max_retries=max_retries,
                )
                if not exc.retryable or attempt >= max_retries:
                    raise
                await self._sleep(self.config.backoff_delay(attempt))
        raise PersistenceError(f"Chunk {chunk_number} was not attempted")

    async def _persist_chunk(
        self, prepared: list[_PreparedTransaction], context: ProcessingContext
    ) -> list[UUID]:
        """Write the chunk and return the ids actually inserted.

        Rows whose external id was committed by a concurrent import since the
        duplicate lookup are dropped by the insert instead of failing the chunk.
        """
        if not prepared:
            return []
        transaction_rows: list[dict[str, Any]] = []
        for item in prepared:
            txn = item.transaction
            transaction_rows.append(
                {
                    "id": item.transaction_id,
                    "business_id": context.business_id,
                    "bank_account_id": txn.bank_account_id,
                    "category_id": item.category_id,
                    "created_by_id": context.user_id,
                    "txn_date": txn.txn_date,
                    "description": txn.description,
                    "amount": round_money(txn.amount),
                    "type": txn.type,
                    "external_id": txn.external_id,
                    "vendor": txn.vendor,
                    "tax_amount": txn.tax_amount,
                    "principal_amount": txn.principal_amount,
                    "interest_amount": txn.interest_amount,
                    "suggested_category": txn.suggested_category,
                    "import_document_id": context.document_id,
                }
            )

        async with self.store.begin_bounded_transaction(
            self.config.transaction_timeout_seconds
        ) as tx:
            inserted = set(
                await tx.bulk_insert(Entity.TRANSACTION, transaction_rows, skip_duplicates=True)
            )
            journal_rows = [
                {
                    "transaction_id": item.transaction_id,
                    "account_id": line.account_id,
                    "direction": line.direction,
                    "amount": line.amount,
                    "description": line.description,
                }
                for item in prepared
                if item.transaction_id in inserted
                for line in item.entries.entries
            ]
            if journal_rows:
                await tx.bulk_insert(Entity.JOURNAL_ENTRY, journal_rows)
        return [item.transaction_id for item in prepared if item.transaction_id in inserted]

    @staticmethod
    def _apply_suggested_category(
        txn: RawTransaction, accounts: Sequence[AccountRecord]
    ) -> RawTransaction:
        if txn.category_id is not None or not txn.suggested_category:
            return txn
        category_id = match_suggested_category(txn.suggested_category, accounts, txn.type)
        if category_id is None:
            return txn
        return txn.model_copy(update={"category_id": category_id})

    async def _mark_document_processing(self, context: ProcessingContext) -> None:
        if context.document_id is None:
            return
        await self._update_document(
            context,
            {"processing_status": DocumentProcessingStatus.PROCESSING, "processing_error": None},
        )

    async def _finish_document(
        self,
        context: ProcessingContext,
        status: BatchStatus,
        tally: _BatchTally,
        error: str | None = None,
    ) -> None:
        if context.document_id is None:
            return
        failed = status == BatchStatus.FAILED
        if error is None and tally.errors:
            error = tally.errors[0].message
        await self._update_document(
            context,
            {
                "processing_status": (
                    DocumentProcessingStatus.FAILED if failed else DocumentProcessingStatus.COMPLETED
                ),
                "processing_error": error if failed else None,
                "processing_metadata": {
                    "importedAt": datetime.now(UTC).isoformat(),
                    "importedTransactions": tally.imported,
                    "failedTransactions": tally.failed,
                    "skippedTransactions": tally.skipped,
                    "errors": [entry.model_dump(mode="json", exclude_none=True) for entry in tally.errors],
                },
            },
        )

    async def _update_document(self, context: ProcessingContext, values: dict[str, Any]) -> None:
        try:
            async with self.store.begin_bounded_transaction(
                self.config.transaction_timeout_seconds
            ) as tx:
                await tx.update_where(
                    Entity.DOCUMENT,
                    {"id": context.document_id, "business_id": context.business_id},
                    values,
                )
        except PersistenceError as exc:
            # Ledger rows are already committed; only the status display is stale.
            log_exception(
                logger,
                exc,
                "Import document status update failed",
                level="warning",
                document_id=str(context.document_id),
            )

    @staticmethod
    async def _emit(
        progress: asyncio.Queue[ProcessingProgress] | None, event: ProcessingProgress
    ) -> None:
        if progress is not None:
            await progress.put(event)


async def process_transactions(
    store: LedgerStore,
    transactions: Sequence[RawTransaction],
    context: ProcessingContext,
    config: ProcessorConfig | None = None,
    *,
    progress: asyncio.Queue[ProcessingProgress] | None = None,
    usage: UsageDispatcher | None = None,
) -> ServiceResult[ProcessingResult]:
    """Convenience wrapper around ``TransactionProcessor.process_transactions``."""
    processor = TransactionProcessor(store, config, usage=usage)
    return await processor.process_transactions(transactions, context, progress)
