"""Tests for journal line generation."""

from decimal import Decimal
from uuid import uuid4

import pytest

from bookkeeping.models import Direction, TransactionType
from bookkeeping.services.accounting import line_totals
from bookkeeping.services.chart_of_accounts import ChartOfAccountsMap
from bookkeeping.services.journal_factory import JournalEntryFactory
from bookkeeping.utils.exceptions import JournalGenerationError
from tests.factories import RawTransactionFactory


@pytest.fixture
def account_map() -> ChartOfAccountsMap:
    return ChartOfAccountsMap(
        cash=uuid4(),
        sales_tax_payable=uuid4(),
        loans=uuid4(),
        interest_expense=uuid4(),
        interest_income=uuid4(),
        sales_revenue=uuid4(),
        miscellaneous=uuid4(),
    )


@pytest.fixture
def factory(account_map) -> JournalEntryFactory:
    return JournalEntryFactory(account_map)


def _by_direction(entries, direction):
    return [line for line in entries if line.direction == direction]


def test_expense_debits_category_and_credits_cash(factory, account_map):
    category = uuid4()
    txn = RawTransactionFactory.build(amount=Decimal("-52.30"), type=TransactionType.EXPENSE)

    result = factory.create_journal_entries(txn, category)

    assert len(result.entries) == 2
    debit = _by_direction(result.entries, Direction.DEBIT)[0]
    credit = _by_direction(result.entries, Direction.CREDIT)[0]
    assert (debit.account_id, debit.amount) == (category, Decimal("52.30"))
    assert (credit.account_id, credit.amount) == (account_map.cash, Decimal("52.30"))
    assert result.requires_split_transaction is False


def test_income_debits_cash_and_credits_category(factory, account_map):
    category = uuid4()
    txn = RawTransactionFactory.build(amount=Decimal("1200.00"), type=TransactionType.INCOME)

    result = factory.create_journal_entries(txn, category)

    debit = _by_direction(result.entries, Direction.DEBIT)[0]
    credit = _by_direction(result.entries, Direction.CREDIT)[0]
    assert debit.account_id == account_map.cash
    assert credit.account_id == category


def test_tax_is_split_to_sales_tax_payable(factory, account_map):
    category = uuid4()
    txn = RawTransactionFactory.build(
        amount=Decimal("-108.00"), type=TransactionType.EXPENSE, tax_amount=Decimal("8.00")
    )

    result = factory.create_journal_entries(txn, category)

    debits = {line.account_id: line.amount for line in _by_direction(result.entries, Direction.DEBIT)}
    assert debits == {category: Decimal("100.00"), account_map.sales_tax_payable: Decimal("8.00")}
    assert result.requires_split_transaction is True
    assert [leg.type for leg in result.split_transactions] == ["tax"]
    assert line_totals(result.entries) == (Decimal("108.00"), Decimal("108.00"))


def test_loan_payment_splits_principal_and_interest(factory, account_map):
    category = uuid4()
    txn = RawTransactionFactory.build(
        amount=Decimal("-500.00"),
        type=TransactionType.EXPENSE,
        principal_amount=Decimal("450.00"),
        interest_amount=Decimal("50.00"),
    )

    result = factory.create_journal_entries(txn, category)

    debits = {line.account_id: line.amount for line in _by_direction(result.entries, Direction.DEBIT)}
    # The whole payment is split, so the category leg disappears.
    assert debits == {
        account_map.loans: Decimal("450.00"),
        account_map.interest_expense: Decimal("50.00"),
    }
    assert line_totals(result.entries) == (Decimal("500.00"), Decimal("500.00"))


def test_split_exceeding_amount_is_rejected(factory):
    txn = RawTransactionFactory.build(amount=Decimal("-10.00"), tax_amount=Decimal("12.00"))

    with pytest.raises(JournalGenerationError, match="Split exceeds amount"):
        factory.create_journal_entries(txn, uuid4())


def test_split_without_mapped_account_is_rejected():
    factory = JournalEntryFactory(ChartOfAccountsMap(cash=uuid4()))
    txn = RawTransactionFactory.build(amount=Decimal("-20.00"), tax_amount=Decimal("1.50"))

    with pytest.raises(JournalGenerationError, match="sales tax payable"):
        factory.create_journal_entries(txn, uuid4())


def test_zero_amount_is_rejected(factory):
    txn = RawTransactionFactory.build(amount=Decimal("0.004"))

    with pytest.raises(JournalGenerationError, match="zero"):
        factory.create_journal_entries(txn, uuid4())


def test_bank_account_ledger_mapping_overrides_cash(account_map):
    bank_account_id = uuid4()
    bank_ledger = uuid4()
    factory = JournalEntryFactory(account_map, {bank_account_id: bank_ledger})
    txn = RawTransactionFactory.build(bank_account_id=bank_account_id, amount=Decimal("-5.00"))

    result = factory.create_journal_entries(txn, uuid4())

    assert _by_direction(result.entries, Direction.CREDIT)[0].account_id == bank_ledger


def test_missing_cash_account_is_rejected():
    factory = JournalEntryFactory(ChartOfAccountsMap())
    txn = RawTransactionFactory.build()

    with pytest.raises(JournalGenerationError, match="No cash account"):
        factory.create_journal_entries(txn, uuid4())


def test_uncategorized_transfer_has_no_lines(factory):
    txn = RawTransactionFactory.build(type=TransactionType.TRANSFER, amount=Decimal("-300.00"))

    result = factory.create_journal_entries(txn, None)

    assert result.entries == []


def test_outgoing_transfer_debits_counterpart(factory, account_map):
    counterpart = uuid4()
    txn = RawTransactionFactory.build(type=TransactionType.TRANSFER, amount=Decimal("-300.00"))

    result = factory.create_journal_entries(txn, counterpart)

    assert _by_direction(result.entries, Direction.DEBIT)[0].account_id == counterpart
    assert _by_direction(result.entries, Direction.CREDIT)[0].account_id == account_map.cash


def test_incoming_transfer_debits_cash(factory, account_map):
    counterpart = uuid4()
    txn = RawTransactionFactory.build(type=TransactionType.TRANSFER, amount=Decimal("300.00"))

    result = factory.create_journal_entries(txn, counterpart)

    assert _by_direction(result.entries, Direction.DEBIT)[0].account_id == account_map.cash
