"""Document processing - extract a receipt, then match it against transactions."""

from collections.abc import Mapping
from datetime import timedelta
from typing import Any
from uuid import UUID

from pydantic import ValidationError

from bookkeeping.config import settings
from bookkeeping.logger import bind_ledger_context, get_logger, log_exception, log_timing
from bookkeeping.models import DocumentProcessingStatus, MatchStatus
from bookkeeping.persistence.base import Entity, LedgerStore, StoreTransaction
from bookkeeping.schemas.base import ServiceResult
from bookkeeping.schemas.extraction import ExtractedDocument
from bookkeeping.schemas.reconciliation import DocumentProcessingResult, RankedMatch
from bookkeeping.services.extraction import ExtractFn
from bookkeeping.services.matching import (
    MatchingConfig,
    find_matches,
    load_matching_config,
    match_status_for,
)
from bookkeeping.services.reconciliation import ReconciliationService, ScopeGuard
from bookkeeping.utils.exceptions import BookkeepingError, ExtractionError, raise_forbidden, raise_not_found

logger = get_logger(__name__)

# Matches a user already decided on are never rescored.
_USER_DECIDED = frozenset({MatchStatus.MANUAL, MatchStatus.REJECTED})


class DocumentProcessor:
    """Runs extraction and matching for uploaded receipts and invoices."""

    def __init__(
        self,
        store: LedgerStore,
        extract_fn: ExtractFn,
        scope_guard: ScopeGuard,
        *,
        config: MatchingConfig | None = None,
        lookback_days: int | None = None,
        reconciliation: ReconciliationService | None = None,
    ):
        self.store = store
        self.extract_fn = extract_fn
        self.scope_guard = scope_guard
        self.config = config or load_matching_config()
        self.lookback_days = lookback_days or settings.match_lookback_days
        self.reconciliation = reconciliation or ReconciliationService(store, scope_guard)

    async def process_document(
        self, user_id: UUID, business_id: UUID, document_id: UUID
    ) -> ServiceResult[DocumentProcessingResult]:
        """
        Extract a document, store the fields, and persist its best matches.

        The top matches are upserted as DocumentMatch rows. When the best one
        clears the confirm threshold the document is linked to that
        transaction; otherwise the best transaction is flagged for review.
        """
        with bind_ledger_context(business_id=business_id, document_id=document_id):
            return await self._process(user_id, business_id, document_id)

    async def _process(
        self, user_id: UUID, business_id: UUID, document_id: UUID
    ) -> ServiceResult[DocumentProcessingResult]:
        try:
            if not self.scope_guard(user_id, business_id):
                raise_forbidden("Document")
            async with self.store.begin_bounded_transaction() as tx:
                document = await tx.fetch_one(
                    Entity.DOCUMENT, {"id": document_id, "business_id": business_id}
                )
                if document is None:
                    raise_not_found("Document")
                await tx.update_where(
                    Entity.DOCUMENT,
                    {"id": document_id},
                    {"processing_status": DocumentProcessingStatus.PROCESSING, "processing_error": None},
                )
        except BookkeepingError as exc:
            return self._failure(exc, document_id)

        try:
            extracted = await self._extract(document["url"], document["mime_type"])
        except Exception as exc:
            # The extraction function is external; any failure marks the document.
            log_exception(logger, exc, "Document extraction failed", document_id=str(document_id))
            message = str(exc) or type(exc).__name__
            await self._mark_failed(business_id, document_id, message)
            return ServiceResult[DocumentProcessingResult].fail(message, ExtractionError.code)

        try:
            result = await self._store_and_match(business_id, document_id, extracted)
        except BookkeepingError as exc:
            await self._mark_failed(business_id, document_id, str(exc))
            return self._failure(exc, document_id)

        best = result.matches[0] if result.matches else None
        if best is not None and result.linked_transaction_id is None:
            flagged = await self.reconciliation.flag_for_review(
                user_id, business_id, best.transaction_id
            )
            if not flagged.success:
                logger.debug(
                    "Best match not flagged for review",
                    transaction_id=str(best.transaction_id),
                    reason=flagged.error,
                )
        return ServiceResult[DocumentProcessingResult].ok(result)

    async def _extract(self, url: str, mime_type: str) -> ExtractedDocument:
        raw = await self.extract_fn(url, mime_type)
        if isinstance(raw, ExtractedDocument):
            return raw
        if not isinstance(raw, Mapping):
            raise ExtractionError(f"Extraction returned {type(raw).__name__}, expected a mapping")
        try:
            return ExtractedDocument.model_validate(raw)
        except ValidationError as exc:
            raise ExtractionError(f"Extraction output failed validation: {exc}") from exc

    async def _store_and_match(
        self, business_id: UUID, document_id: UUID, extracted: ExtractedDocument
    ) -> DocumentProcessingResult:
        matches: list[RankedMatch] = []
        if extracted.amount is not None and extracted.document_date is not None:
            window = timedelta(days=self.lookback_days)
            candidates = await self.store.list_transactions_between(
                business_id,
                extracted.document_date - window,
                extracted.document_date + window,
            )
            with log_timing(
                "rank_candidates",
                logger=logger,
                level="debug",
                document_id=str(document_id),
                candidates=len(candidates),
            ):
                matches = find_matches(extracted, candidates, self.config)[: self.config.persist_limit]

        linked_transaction_id: UUID | None = None
        async with self.store.begin_bounded_transaction() as tx:
            await tx.update_where(
                Entity.DOCUMENT,
                {"id": document_id, "business_id": business_id},
                self._extraction_values(extracted),
            )
            saved = [await self._save_match(tx, document_id, match) for match in matches]
            best_confirmed = (
                bool(matches)
                and saved[0]
                and match_status_for(matches[0].confidence, self.config) == MatchStatus.CONFIRMED
            )
            if best_confirmed and await self._link_document(
                tx, business_id, document_id, matches[0].transaction_id
            ):
                linked_transaction_id = matches[0].transaction_id

        logger.info(
            "Document processed",
            document_id=str(document_id),
            matches=len(matches),
            best_confidence=matches[0].confidence if matches else None,
            linked=linked_transaction_id is not None,
        )
        return DocumentProcessingResult(
            document_id=document_id,
            matches=matches,
            linked_transaction_id=linked_transaction_id,
        )

    async def _save_match(self, tx: StoreTransaction, document_id: UUID, match: RankedMatch) -> bool:
        """Upsert the scored pair; returns False when the user already decided it."""
        pair = {"document_id": document_id, "transaction_id": match.transaction_id}
        existing = await tx.fetch_one(Entity.DOCUMENT_MATCH, pair)
        if existing is not None and (existing["status"] in _USER_DECIDED or existing["is_user_confirmed"]):
            return False
        await tx.upsert_by_key(
            Entity.DOCUMENT_MATCH,
            pair,
            {
                "confidence": match.confidence,
                "status": match_status_for(match.confidence, self.config),
                "match_reason": match.match_reason,
                "is_user_confirmed": False,
            },
        )
        return True

    @staticmethod
    async def _link_document(
        tx: StoreTransaction, business_id: UUID, document_id: UUID, transaction_id: UUID
    ) -> bool:
        owner = await tx.fetch_one(Entity.RECONCILIATION_STATUS, {"document_id": document_id})
        if owner is not None and owner["transaction_id"] != transaction_id:
            return False
        await tx.update_where(
            Entity.DOCUMENT,
            {"id": document_id, "business_id": business_id},
            {"transaction_id": transaction_id},
        )
        return True

    @staticmethod
    def _extraction_values(extracted: ExtractedDocument) -> dict[str, Any]:
        return {
            "extracted_data": extracted.model_dump(mode="json", by_alias=True),
            "extracted_vendor": extracted.vendor,
            "extracted_amount": extracted.amount,
            "extracted_date": extracted.document_date,
            "extracted_tax": extracted.tax,
            "extracted_currency": extracted.currency,
            "extraction_confidence": extracted.confidence,
            "processing_status": DocumentProcessingStatus.COMPLETED,
            "processing_error": None,
        }

    async def _mark_failed(self, business_id: UUID, document_id: UUID, message: str) -> None:
        try:
            async with self.store.begin_bounded_transaction() as tx:
                await tx.update_where(
                    Entity.DOCUMENT,
                    {"id": document_id, "business_id": business_id},
                    {"processing_status": DocumentProcessingStatus.FAILED, "processing_error": message},
                )
        except BookkeepingError as exc:
            log_exception(
                logger, exc, "Failed to record document failure", document_id=str(document_id)
            )

    @staticmethod
    def _failure(exc: BookkeepingError, document_id: UUID) -> ServiceResult[DocumentProcessingResult]:
        log_exception(
            logger,
            exc,
            "Document processing failed",
            level="warning",
            include_traceback=False,
            document_id=str(document_id),
        )
        return ServiceResult[DocumentProcessingResult].fail(str(exc), exc.code)


async def process_document(
    store: LedgerStore,
    extract_fn: ExtractFn,
    scope_guard: ScopeGuard,
    user_id: UUID,
    business_id: UUID,
    document_id: UUID,
) -> ServiceResult[DocumentProcessingResult]:
    """Convenience wrapper around ``DocumentProcessor.process_document``."""
    processor = DocumentProcessor(store, extract_fn, scope_guard)
    return await processor.process_document(user_id, business_id, document_id)
