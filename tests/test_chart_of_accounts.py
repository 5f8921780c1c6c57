"""Tests for chart-of-accounts resolution."""

from decimal import Decimal
from uuid import uuid4

import pytest

from bookkeeping.models import AccountType, TransactionType
from bookkeeping.persistence.base import AccountRecord
from bookkeeping.services.chart_of_accounts import (
    ChartOfAccountsMap,
    build_account_map,
    check_fallbacks,
    match_suggested_category,
    resolve_account,
)
from bookkeeping.utils.exceptions import CategoryResolutionError, ConfigurationError
from tests.factories import RawTransactionFactory


def _account(code: str, name: str, account_type: AccountType, **kwargs) -> AccountRecord:
    return AccountRecord(id=uuid4(), code=code, name=name, type=account_type, **kwargs)


@pytest.fixture
def accounts() -> dict[str, AccountRecord]:
    records = [
        _account("1000", "Cash", AccountType.ASSET),
        _account("2300", "Sales Tax Payable", AccountType.LIABILITY),
        _account("4010", "Sales Revenue", AccountType.INCOME),
        _account("4050", "Other Income", AccountType.INCOME),
        _account("5030", "Rent Expense", AccountType.EXPENSE, description="Office and warehouse rent"),
        _account("5100", "Office Supplies", AccountType.EXPENSE, description="Paper, toner, stationery"),
        _account("5900", "Other Expense", AccountType.EXPENSE),
        _account("5999", "Miscellaneous Expense", AccountType.EXPENSE),
    ]
    return {record.code: record for record in records}


class TestBuildAccountMap:
    def test_maps_roles_by_code(self, accounts):
        account_map = build_account_map(accounts.values())

        assert account_map.cash == accounts["1000"].id
        assert account_map.sales_tax_payable == accounts["2300"].id
        assert account_map.sales_revenue == accounts["4010"].id
        assert account_map.other_income == accounts["4050"].id
        assert account_map.miscellaneous == accounts["5999"].id
        assert account_map.loans is None

    def test_earlier_code_wins_for_same_role(self):
        primary = _account("1000", "Cash", AccountType.ASSET)
        secondary = _account("1010", "Petty Cash", AccountType.ASSET)

        assert build_account_map([secondary, primary]).cash == primary.id

    def test_inactive_accounts_are_ignored(self):
        cash = _account("1000", "Cash", AccountType.ASSET, is_active=False)

        assert build_account_map([cash]).cash is None

    def test_falls_back_to_lowest_coded_expense_account(self):
        rent = _account("5030", "Rent Expense", AccountType.EXPENSE)
        supplies = _account("5100", "Office Supplies", AccountType.EXPENSE)

        account_map = build_account_map([supplies, rent])

        assert account_map.miscellaneous == rent.id
        assert account_map.expense_fallback() == rent.id

    def test_no_expense_accounts_leaves_fallback_empty(self):
        account_map = build_account_map([_account("1000", "Cash", AccountType.ASSET)])

        assert account_map.expense_fallback() is None


class TestResolveAccount:
    def test_explicit_category_wins(self, accounts):
        account_map = build_account_map(accounts.values())
        txn = RawTransactionFactory.build(category_id=accounts["5030"].id)

        assert resolve_account(txn, account_map) == accounts["5030"].id

    def test_explicit_category_outside_chart_is_rejected(self, accounts):
        account_map = build_account_map(accounts.values())
        known = frozenset(record.id for record in accounts.values())
        txn = RawTransactionFactory.build(category_id=uuid4())

        with pytest.raises(CategoryResolutionError):
            resolve_account(txn, account_map, known)

    def test_expense_prefers_miscellaneous_over_other_expense(self, accounts):
        account_map = build_account_map(accounts.values())
        txn = RawTransactionFactory.build(type=TransactionType.EXPENSE)

        assert resolve_account(txn, account_map) == accounts["5999"].id

    def test_expense_uses_other_expense_without_miscellaneous(self):
        other = uuid4()
        txn = RawTransactionFactory.build(type=TransactionType.EXPENSE)

        assert resolve_account(txn, ChartOfAccountsMap(other_expense=other)) == other

    def test_income_prefers_other_income_then_sales(self, accounts):
        txn = RawTransactionFactory.build(type=TransactionType.INCOME, amount=Decimal("250.00"))

        assert resolve_account(txn, build_account_map(accounts.values())) == accounts["4050"].id
        sales_only = ChartOfAccountsMap(sales_revenue=accounts["4010"].id)
        assert resolve_account(txn, sales_only) == accounts["4010"].id

    def test_uncategorized_transfer_resolves_to_none(self, accounts):
        txn = RawTransactionFactory.build(type=TransactionType.TRANSFER)

        assert resolve_account(txn, build_account_map(accounts.values())) is None

    def test_missing_fallback_is_configuration_error(self):
        txn = RawTransactionFactory.build(type=TransactionType.INCOME, amount=Decimal("10.00"))

        with pytest.raises(ConfigurationError):
            resolve_account(txn, ChartOfAccountsMap())


class TestCheckFallbacks:
    def test_passes_when_every_row_is_categorized(self):
        rows = [RawTransactionFactory.build(category_id=uuid4()) for _ in range(3)]

        check_fallbacks(rows, ChartOfAccountsMap())

    def test_lists_rows_without_fallback(self):
        category = uuid4()
        rows = [RawTransactionFactory.build(category_id=category) for _ in range(10)]
        rows[5] = RawTransactionFactory.build(category_id=None)

        with pytest.raises(ConfigurationError, match=r"rows \[5\]"):
            check_fallbacks(rows, ChartOfAccountsMap(cash=uuid4()))


class TestMatchSuggestedCategory:
    def test_exact_name_is_case_insensitive(self, accounts):
        result = match_suggested_category(
            "office supplies", list(accounts.values()), TransactionType.EXPENSE
        )

        assert result == accounts["5100"].id

    def test_leading_code(self, accounts):
        result = match_suggested_category(
            "5030 - Rent", list(accounts.values()), TransactionType.EXPENSE
        )

        assert result == accounts["5030"].id

    def test_keyword_scoring_uses_description(self, accounts):
        result = match_suggested_category(
            "toner cartridges", list(accounts.values()), TransactionType.EXPENSE
        )

        assert result == accounts["5100"].id

    def test_keywords_only_match_accounts_of_the_transaction_type(self, accounts):
        result = match_suggested_category(
            "rent", list(accounts.values()), TransactionType.INCOME
        )

        assert result is None

    @pytest.mark.parametrize("suggested", [None, "", "   "])
    def test_blank_suggestion(self, accounts, suggested):
        assert match_suggested_category(
            suggested, list(accounts.values()), TransactionType.EXPENSE
        ) is None
