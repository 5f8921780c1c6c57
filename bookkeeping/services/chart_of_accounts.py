"""Chart-of-accounts resolution.

Maps a transaction's category (explicit, AI-suggested or type fallback) to a
concrete ledger account id. Everything here is pure; the account list is loaded
once per batch by the caller.
"""

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from uuid import UUID

from bookkeeping.logger import get_logger
from bookkeeping.models import AccountType, TransactionType
from bookkeeping.persistence.base import AccountRecord
from bookkeeping.schemas.imports import RawTransaction
from bookkeeping.utils.exceptions import CategoryResolutionError, ConfigurationError

logger = get_logger(__name__)

_LEADING_CODE = re.compile(r"^\d{4}")


@dataclass(frozen=True)
class ChartOfAccountsMap:
    """Well-known accounts of one business, keyed by role."""

    cash: UUID | None = None
    accounts_receivable: UUID | None = None
    inventory: UUID | None = None
    accounts_payable: UUID | None = None
    credit_cards: UUID | None = None
    sales_tax_payable: UUID | None = None
    loans: UUID | None = None
    sales_revenue: UUID | None = None
    service_revenue: UUID | None = None
    interest_income: UUID | None = None
    other_income: UUID | None = None
    interest_expense: UUID | None = None
    other_expense: UUID | None = None
    miscellaneous: UUID | None = None

    def expense_fallback(self) -> UUID | None:
        return self.miscellaneous or self.other_expense

    def income_fallback(self) -> UUID | None:
        return self.other_income or self.sales_revenue


# Earlier codes win when a business has several accounts for the same role.
ACCOUNT_CODES: dict[str, tuple[str, ...]] = {
    "cash": ("1000", "1010"),
    "accounts_receivable": ("1100",),
    "inventory": ("1200",),
    "accounts_payable": ("2000",),
    "credit_cards": ("2110",),
    "sales_tax_payable": ("2300", "2310"),
    "loans": ("2400",),
    "sales_revenue": ("4000", "4010"),
    "service_revenue": ("4020",),
    "interest_income": ("4040",),
    "other_income": ("4050", "4100"),
    "interest_expense": ("5200",),
    "other_expense": ("5900",),
    "miscellaneous": ("5999", "6900"),
}


def build_account_map(accounts: Iterable[AccountRecord]) -> ChartOfAccountsMap:
    """Build the role map from a business's ledger accounts. Inactive accounts are ignored."""
    active = sorted((a for a in accounts if a.is_active), key=lambda a: a.code)
    by_code = {account.code: account.id for account in active}

    values: dict[str, UUID] = {}
    for role, codes in ACCOUNT_CODES.items():
        for code in codes:
            if code in by_code:
                values[role] = by_code[code]
                break

    if "miscellaneous" not in values and "other_expense" not in values:
        fallback = next((a for a in active if a.type == AccountType.EXPENSE), None)
        if fallback is not None:
            values["miscellaneous"] = fallback.id
            logger.warning(
                "Using fallback expense account",
                account_code=fallback.code,
                account_name=fallback.name,
            )
        else:
            logger.warning("No miscellaneous expense account found")

    return ChartOfAccountsMap(**values)


def match_suggested_category(
    suggested: str | None,
    accounts: Sequence[AccountRecord],
    transaction_type: TransactionType,
) -> UUID | None:
    """
    Map an AI-suggested category name to an account id.

    Tries, in order: case-insensitive exact name, a leading 4-digit account
    code (``"5030 - Rent"``), then keyword scoring over INCOME or EXPENSE
    accounts where each keyword found in the name or description scores its
    length. Returns None when nothing matches.
    """
    if not suggested or not suggested.strip():
        return None
    active = [a for a in accounts if a.is_active]
    wanted = suggested.strip().lower()

    for account in active:
        if account.name.lower() == wanted:
            return account.id

    code_match = _LEADING_CODE.match(suggested.strip())
    if code_match:
        for account in active:
            if account.code == code_match.group(0):
                return account.id

    if transaction_type == TransactionType.TRANSFER:
        return None
    account_type = AccountType.INCOME if transaction_type == TransactionType.INCOME else AccountType.EXPENSE
    keywords = wanted.split()

    best_id: UUID | None = None
    best_score = 0
    for account in active:
        if account.type != account_type:
            continue
        text = f"{account.name} {account.description or ''}".lower()
        score = sum(len(keyword) for keyword in keywords if keyword in text)
        if score > best_score:
            best_score = score
            best_id = account.id

    if best_id is None:
        logger.info(
            "No category match for suggestion",
            suggested_category=suggested,
            transaction_type=transaction_type.value,
        )
    return best_id


def resolve_account(
    transaction: RawTransaction,
    account_map: ChartOfAccountsMap,
    known_account_ids: frozenset[UUID] | None = None,
) -> UUID | None:
    """
    Resolve the category account for one transaction.

    An explicit ``category_id`` wins; otherwise EXPENSE falls back to
    miscellaneous then other expense, INCOME to other income then sales
    revenue. TRANSFER rows without a category resolve to None.

    Raises:
        CategoryResolutionError: explicit category is not in the business's chart
        ConfigurationError: the required fallback account is missing
    """
    if transaction.category_id is not None:
        if known_account_ids is not None and transaction.category_id not in known_account_ids:
            raise CategoryResolutionError(
                f"Category {transaction.category_id} is not in the chart of accounts"
            )
        return transaction.category_id

    if transaction.type == TransactionType.TRANSFER:
        return None
    if transaction.type == TransactionType.EXPENSE:
        account_id = account_map.expense_fallback()
        if account_id is None:
            raise ConfigurationError(
                "No miscellaneous or other expense account configured for uncategorized expenses"
            )
        return account_id

    account_id = account_map.income_fallback()
    if account_id is None:
        raise ConfigurationError(
            "No other income or sales revenue account configured for uncategorized income"
        )
    return account_id


def check_fallbacks(
    transactions: Sequence[RawTransaction], account_map: ChartOfAccountsMap
) -> None:
    """
    Verify every uncategorized row has a fallback account before any work starts.

    Raises:
        ConfigurationError: naming the missing fallback and the affected row indexes
    """
    missing_expense = [
        index
        for index, txn in enumerate(transactions)
        if txn.category_id is None and txn.type == TransactionType.EXPENSE
    ]
    missing_income = [
        index
        for index, txn in enumerate(transactions)
        if txn.category_id is None and txn.type == TransactionType.INCOME
    ]

    problems: list[str] = []
    if missing_expense and account_map.expense_fallback() is None:
        problems.append(
            f"no miscellaneous or other expense account for uncategorized expenses at rows {missing_expense}"
        )
    if missing_income and account_map.income_fallback() is None:
        problems.append(
            f"no other income or sales revenue account for uncategorized income at rows {missing_income}"
        )
    if problems:
        raise ConfigurationError("Chart of accounts is incomplete: " + "; ".join(problems))
