"""Tests for the reconciliation state machine."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from bookkeeping.models import (
    Document,
    DocumentMatch,
    MatchStatus,
    ReconciliationState,
    ReconciliationStatus,
)
from bookkeeping.services.reconciliation import ReconciliationService, ensure_transition
from bookkeeping.utils.exceptions import InvalidTransitionError
from tests.factories import (
    DocumentFactory,
    DocumentMatchFactory,
    ReconciliationStatusFactory,
    TransactionFactory,
)


@pytest.fixture
def service(store, allow_all):
    return ReconciliationService(store, allow_all, auto_reconcile_threshold=0.8)


async def _seed_pair(db, business_id, **transaction_fields):
    txn = await TransactionFactory.create_async(db, business_id=business_id, **transaction_fields)
    doc = await DocumentFactory.create_async(db, business_id=business_id)
    return txn, doc


async def _status(fetch_one, transaction_id):
    return await fetch_one(ReconciliationStatus, ReconciliationStatus.transaction_id == transaction_id)


async def _document(fetch_one, document_id):
    return await fetch_one(Document, Document.id == document_id)


class TestTransitions:
    def test_matched_cannot_go_to_review(self):
        with pytest.raises(InvalidTransitionError):
            ensure_transition(ReconciliationState.MATCHED, ReconciliationState.PENDING_REVIEW)

    @pytest.mark.parametrize("state", list(ReconciliationState))
    def test_every_state_can_be_unmatched(self, state):
        ensure_transition(state, ReconciliationState.UNMATCHED)

    def test_excluded_can_be_manually_matched(self):
        ensure_transition(ReconciliationState.EXCLUDED, ReconciliationState.MANUALLY_MATCHED)


class TestManualMatch:
    async def test_manual_match_then_unmatch_restores_unmatched(
        self, service, db, business_id, user_id, fetch_one, fetch_all
    ):
        txn, doc = await _seed_pair(db, business_id)
        await db.commit()

        matched = await service.manual_match(user_id, business_id, txn.id, doc.id)

        assert matched.success
        assert matched.data.status == ReconciliationState.MANUALLY_MATCHED
        assert matched.data.document_id == doc.id
        assert matched.data.manually_set is True
        assert (await _document(fetch_one, doc.id)).transaction_id == txn.id
        [match] = await fetch_all(DocumentMatch, DocumentMatch.transaction_id == txn.id)
        assert match.status == MatchStatus.MANUAL
        assert match.is_user_confirmed is True

        unmatched = await service.unmatch(user_id, business_id, txn.id)

        assert unmatched.success
        assert unmatched.data.status == ReconciliationState.UNMATCHED
        assert unmatched.data.document_id is None
        assert (await _document(fetch_one, doc.id)).transaction_id is None

    async def test_manual_match_is_idempotent(
        self, service, db, business_id, user_id, fetch_all
    ):
        txn, doc = await _seed_pair(db, business_id)
        await db.commit()

        first = await service.manual_match(user_id, business_id, txn.id, doc.id)
        second = await service.manual_match(user_id, business_id, txn.id, doc.id)

        assert first.success and second.success
        assert second.data.status == ReconciliationState.MANUALLY_MATCHED
        assert len(await fetch_all(ReconciliationStatus, ReconciliationStatus.transaction_id == txn.id)) == 1
        assert len(await fetch_all(DocumentMatch, DocumentMatch.transaction_id == txn.id)) == 1

    async def test_relinking_clears_previous_document(
        self, service, db, business_id, user_id, fetch_one
    ):
        txn, first_doc = await _seed_pair(db, business_id)
        second_doc = await DocumentFactory.create_async(db, business_id=business_id)
        await db.commit()

        await service.manual_match(user_id, business_id, txn.id, first_doc.id)
        result = await service.manual_match(user_id, business_id, txn.id, second_doc.id)

        assert result.data.document_id == second_doc.id
        assert (await _document(fetch_one, first_doc.id)).transaction_id is None
        assert (await _document(fetch_one, second_doc.id)).transaction_id == txn.id

    async def test_document_owned_by_other_transaction_is_rejected(
        self, service, db, business_id, user_id, fetch_one
    ):
        txn, doc = await _seed_pair(db, business_id)
        other = await TransactionFactory.create_async(db, business_id=business_id)
        await db.commit()
        await service.manual_match(user_id, business_id, txn.id, doc.id)

        result = await service.manual_match(user_id, business_id, other.id, doc.id)

        assert result.success is False
        assert result.error_code == "invalid_transition"
        assert await _status(fetch_one, other.id) is None

    async def test_partial_match_keeps_confidence(
        self, service, db, business_id, user_id
    ):
        txn, doc = await _seed_pair(db, business_id)
        await db.commit()

        result = await service.mark_partially_matched(user_id, business_id, txn.id, doc.id, 0.6)

        assert result.data.status == ReconciliationState.PARTIALLY_MATCHED
        assert result.data.confidence == 0.6

    async def test_exclude_clears_document_link(
        self, service, db, business_id, user_id, fetch_one
    ):
        txn, doc = await _seed_pair(db, business_id)
        await db.commit()
        await service.manual_match(user_id, business_id, txn.id, doc.id)

        result = await service.exclude(user_id, business_id, txn.id, notes="Owner transfer")

        assert result.data.status == ReconciliationState.EXCLUDED
        assert result.data.notes == "Owner transfer"
        assert (await _document(fetch_one, doc.id)).transaction_id is None


class TestScoping:
    async def test_denied_user_gets_authorization_error(
        self, store, db, business_id, user_id, fetch_one
    ):
        service = ReconciliationService(store, lambda user, business: False)
        txn, doc = await _seed_pair(db, business_id)
        await db.commit()

        result = await service.manual_match(user_id, business_id, txn.id, doc.id)

        assert result.success is False
        assert result.error_code == "authorization"
        assert result.error == "Transaction not found"
        assert await _status(fetch_one, txn.id) is None

    async def test_transaction_of_another_business_is_not_found(
        self, service, db, business_id, user_id, fetch_one
    ):
        foreign = await TransactionFactory.create_async(db, business_id=uuid4())
        doc = await DocumentFactory.create_async(db, business_id=business_id)
        await db.commit()

        result = await service.manual_match(user_id, business_id, foreign.id, doc.id)

        assert result.error_code == "not_found"
        assert (await _document(fetch_one, doc.id)).transaction_id is None


class TestFlagForReview:
    async def test_suggested_match_moves_to_pending_review(
        self, service, db, business_id, user_id
    ):
        txn, doc = await _seed_pair(db, business_id)
        await DocumentMatchFactory.create_async(
            db, document_id=doc.id, transaction_id=txn.id, confidence=0.72
        )
        await db.commit()

        result = await service.flag_for_review(user_id, business_id, txn.id)

        assert result.data.status == ReconciliationState.PENDING_REVIEW
        assert result.data.confidence == 0.72
        assert result.data.document_id is None

    async def test_without_suggestions_nothing_changes(
        self, service, db, business_id, user_id, fetch_one
    ):
        txn = await TransactionFactory.create_async(db, business_id=business_id)
        await db.commit()

        result = await service.flag_for_review(user_id, business_id, txn.id)

        assert result.success
        assert result.data is None
        assert await _status(fetch_one, txn.id) is None

    async def test_manual_unmatch_marker_survives_reflagging(
        self, service, db, business_id, user_id, fetch_one
    ):
        txn, doc = await _seed_pair(db, business_id)
        await ReconciliationStatusFactory.create_async(
            db, transaction_id=txn.id, status=ReconciliationState.UNMATCHED, manually_set=True
        )
        await DocumentMatchFactory.create_async(
            db, document_id=doc.id, transaction_id=txn.id, confidence=0.72
        )
        await db.commit()

        result = await service.flag_for_review(user_id, business_id, txn.id)

        assert result.data.status == ReconciliationState.PENDING_REVIEW
        assert result.data.manually_set is True
        assert (await _status(fetch_one, txn.id)).manually_set is True

    async def test_matched_transaction_cannot_be_flagged(
        self, service, db, business_id, user_id
    ):
        txn, doc = await _seed_pair(db, business_id)
        await DocumentMatchFactory.create_async(db, document_id=doc.id, transaction_id=txn.id)
        await ReconciliationStatusFactory.create_async(
            db, transaction_id=txn.id, status=ReconciliationState.MATCHED, document_id=doc.id
        )
        await db.commit()

        result = await service.flag_for_review(user_id, business_id, txn.id)

        assert result.error_code == "invalid_transition"


class TestAutoReconcile:
    async def test_accepts_best_suggestion_above_threshold(
        self, service, db, business_id, user_id, fetch_one
    ):
        txn, weaker_doc = await _seed_pair(db, business_id)
        best_doc = await DocumentFactory.create_async(db, business_id=business_id)
        best = await DocumentMatchFactory.create_async(
            db, document_id=best_doc.id, transaction_id=txn.id, confidence=0.95
        )
        await DocumentMatchFactory.create_async(
            db, document_id=weaker_doc.id, transaction_id=txn.id, confidence=0.85
        )
        low_txn, low_doc = await _seed_pair(db, business_id)
        await DocumentMatchFactory.create_async(
            db, document_id=low_doc.id, transaction_id=low_txn.id, confidence=0.7
        )
        await db.commit()

        result = await service.auto_reconcile(user_id, business_id)

        assert result.data.matched == 1
        assert result.data.transaction_ids == [txn.id]
        status = await _status(fetch_one, txn.id)
        assert status.status == ReconciliationState.MATCHED
        assert status.document_id == best_doc.id
        assert status.manually_set is False
        assert (await fetch_one(DocumentMatch, DocumentMatch.id == best.id)).status == MatchStatus.CONFIRMED
        assert (await _document(fetch_one, best_doc.id)).transaction_id == txn.id
        assert await _status(fetch_one, low_txn.id) is None

    async def test_never_overwrites_manual_status(
        self, service, db, business_id, user_id, fetch_one
    ):
        txn, manual_doc = await _seed_pair(db, business_id)
        suggested_doc = await DocumentFactory.create_async(db, business_id=business_id)
        await ReconciliationStatusFactory.create_async(
            db,
            transaction_id=txn.id,
            status=ReconciliationState.MANUALLY_MATCHED,
            document_id=manual_doc.id,
            confidence=1.0,
        )
        await DocumentMatchFactory.create_async(
            db, document_id=suggested_doc.id, transaction_id=txn.id, confidence=0.99
        )
        await db.commit()

        result = await service.auto_reconcile(user_id, business_id)

        assert result.data.matched == 0
        status = await _status(fetch_one, txn.id)
        assert status.status == ReconciliationState.MANUALLY_MATCHED
        assert status.document_id == manual_doc.id

    async def test_document_linked_elsewhere_is_not_relinked(
        self, service, db, business_id, user_id, fetch_one
    ):
        linked_txn, doc = await _seed_pair(db, business_id)
        doc.transaction_id = linked_txn.id
        await DocumentMatchFactory.create_async(
            db,
            document_id=doc.id,
            transaction_id=linked_txn.id,
            confidence=1.0,
            status=MatchStatus.CONFIRMED,
        )
        weaker_txn = await TransactionFactory.create_async(db, business_id=business_id)
        weaker = await DocumentMatchFactory.create_async(
            db, document_id=doc.id, transaction_id=weaker_txn.id, confidence=0.84
        )
        await db.commit()

        result = await service.auto_reconcile(user_id, business_id)

        assert result.data.matched == 0
        assert (await _document(fetch_one, doc.id)).transaction_id == linked_txn.id
        assert (await fetch_one(DocumentMatch, DocumentMatch.id == weaker.id)).status == MatchStatus.SUGGESTED
        assert await _status(fetch_one, weaker_txn.id) is None

    async def test_other_business_is_untouched(
        self, service, db, business_id, user_id, fetch_one
    ):
        other_business = uuid4()
        txn, doc = await _seed_pair(db, other_business)
        await DocumentMatchFactory.create_async(
            db, document_id=doc.id, transaction_id=txn.id, confidence=0.95
        )
        await db.commit()

        result = await service.auto_reconcile(user_id, business_id)

        assert result.data.matched == 0
        assert await _status(fetch_one, txn.id) is None


class TestBulkReconcile:
    async def test_creates_missing_statuses_and_skips_existing(
        self, service, db, business_id, user_id, fetch_one
    ):
        fresh_txn, fresh_doc = await _seed_pair(db, business_id)
        done_txn, done_doc = await _seed_pair(db, business_id)
        await ReconciliationStatusFactory.create_async(
            db, transaction_id=done_txn.id, status=ReconciliationState.EXCLUDED
        )
        await db.commit()

        result = await service.bulk_reconcile(
            user_id,
            business_id,
            [
                {"transaction_id": fresh_txn.id, "document_id": fresh_doc.id},
                {"transaction_id": done_txn.id, "document_id": done_doc.id},
            ],
        )

        assert result.success
        assert (result.data.processed, result.data.created, result.data.skipped) == (2, 1, 1)
        created = await _status(fetch_one, fresh_txn.id)
        assert created.status == ReconciliationState.MANUALLY_MATCHED
        assert created.reviewed_by == user_id
        assert (await _document(fetch_one, fresh_doc.id)).transaction_id == fresh_txn.id
        assert (await _status(fetch_one, done_txn.id)).status == ReconciliationState.EXCLUDED
        assert (await _document(fetch_one, done_doc.id)).transaction_id is None

    async def test_foreign_document_rejects_whole_request(
        self, service, db, business_id, user_id, fetch_one
    ):
        txn, doc = await _seed_pair(db, business_id)
        other_txn = await TransactionFactory.create_async(db, business_id=business_id)
        foreign_doc = await DocumentFactory.create_async(db, business_id=uuid4())
        await db.commit()

        result = await service.bulk_reconcile(
            user_id,
            business_id,
            [
                {"transaction_id": txn.id, "document_id": doc.id},
                {"transaction_id": other_txn.id, "document_id": foreign_doc.id},
            ],
        )

        assert result.error_code == "not_found"
        assert await _status(fetch_one, txn.id) is None

    async def test_repeated_transaction_is_a_validation_error(self, service, business_id, user_id):
        txn_id = uuid4()

        result = await service.bulk_reconcile(
            user_id,
            business_id,
            [
                {"transaction_id": txn_id, "document_id": uuid4()},
                {"transaction_id": txn_id, "document_id": uuid4()},
            ],
        )

        assert result.error_code == "validation"


async def test_reconciliation_summary(service, db, business_id, user_id):
    amounts = {
        ReconciliationState.MATCHED: "-100.00",
        ReconciliationState.MANUALLY_MATCHED: "-50.00",
        ReconciliationState.UNMATCHED: "-20.00",
        ReconciliationState.PENDING_REVIEW: "-10.00",
        ReconciliationState.EXCLUDED: "-5.00",
    }
    for state, amount in amounts.items():
        txn = await TransactionFactory.create_async(db, business_id=business_id, amount=Decimal(amount))
        await ReconciliationStatusFactory.create_async(db, transaction_id=txn.id, status=state)
    # No status row at all counts as unmatched.
    await TransactionFactory.create_async(db, business_id=business_id, amount=Decimal("30.00"))
    await TransactionFactory.create_async(
        db, business_id=business_id, amount=Decimal("-999.00"), txn_date=date(2023, 1, 1)
    )
    await db.commit()

    result = await service.reconciliation_summary(
        user_id, business_id, start=date(2024, 1, 1), end=date(2024, 12, 31)
    )

    summary = result.data
    assert summary.total_transactions == 6
    assert summary.matched_transactions == 2
    assert summary.unmatched_transactions == 2
    assert summary.pending_review == 1
    assert summary.excluded_transactions == 1
    assert summary.matched_percentage == pytest.approx(33.33)
    assert summary.total_amount == Decimal("215.00")
    assert summary.matched_amount == Decimal("150.00")
    assert summary.unmatched_amount == Decimal("50.00")
