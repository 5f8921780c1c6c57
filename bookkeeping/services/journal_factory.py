"""Journal entry factory - turns one bank transaction into balanced journal lines."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from bookkeeping.models import Direction, TransactionType
from bookkeeping.schemas.imports import RawTransaction
from bookkeeping.services.accounting import ZERO, JournalLineDraft, round_money, validate_journal_balance
from bookkeeping.services.chart_of_accounts import ChartOfAccountsMap
from bookkeeping.utils.exceptions import JournalGenerationError


@dataclass(frozen=True, slots=True)
class SplitLeg:
    """Portion of a transaction booked away from its category account."""

    amount: Decimal
    type: str
    account_id: UUID
    description: str


@dataclass(frozen=True)
class JournalEntrySet:
    entries: list[JournalLineDraft]
    requires_split_transaction: bool = False
    split_transactions: list[SplitLeg] = field(default_factory=list)


class JournalEntryFactory:
    """
    Build double-entry lines for imported transactions of one business.

    Expense: debit category, credit cash. Income: debit cash, credit category.
    Tax, principal and interest amounts are split off the category leg into
    sales tax payable, loans and interest accounts; the cash leg always carries
    the full amount.
    """

    def __init__(
        self,
        account_map: ChartOfAccountsMap,
        bank_account_ledger_ids: Mapping[UUID, UUID] | None = None,
    ):
        self.account_map = account_map
        self.bank_account_ledger_ids = dict(bank_account_ledger_ids or {})

    def cash_account_for(self, bank_account_id: UUID) -> UUID:
        account_id = self.bank_account_ledger_ids.get(bank_account_id) or self.account_map.cash
        if account_id is None:
            raise JournalGenerationError(
                f"No cash account mapped for bank account {bank_account_id}"
            )
        return account_id

    def create_journal_entries(
        self, transaction: RawTransaction, category_account_id: UUID | None
    ) -> JournalEntrySet:
        """
        Create journal lines for a transaction whose category is already resolved.

        Raises:
            JournalGenerationError: missing mapped account, zero amount, or
                split legs exceeding the transaction amount
            UnbalancedEntryError: generated lines do not balance exactly
        """
        amount = round_money(abs(transaction.amount))
        if amount == ZERO:
            raise JournalGenerationError("Transaction amount rounds to zero")

        if transaction.type == TransactionType.TRANSFER:
            return self._transfer_entries(transaction, amount, category_account_id)

        if category_account_id is None:
            raise JournalGenerationError("No category account resolved for transaction")
        cash_account_id = self.cash_account_for(transaction.bank_account_id)
        legs = self._split_legs(transaction)

        remainder = amount - sum((leg.amount for leg in legs), ZERO)
        if remainder < ZERO:
            raise JournalGenerationError(
                f"Split exceeds amount: splits={amount - remainder}, amount={amount}"
            )

        is_expense = transaction.type == TransactionType.EXPENSE
        split_direction = Direction.DEBIT if is_expense else Direction.CREDIT
        cash_direction = Direction.CREDIT if is_expense else Direction.DEBIT

        lines: list[JournalLineDraft] = []
        if remainder > ZERO:
            lines.append(
                JournalLineDraft(category_account_id, split_direction, remainder, transaction.description)
            )
        lines.extend(
            JournalLineDraft(leg.account_id, split_direction, leg.amount, leg.description) for leg in legs
        )
        lines.append(JournalLineDraft(cash_account_id, cash_direction, amount, transaction.description))

        validate_journal_balance(lines)
        return JournalEntrySet(
            entries=lines,
            requires_split_transaction=bool(legs),
            split_transactions=legs,
        )

    def _transfer_entries(
        self, transaction: RawTransaction, amount: Decimal, category_account_id: UUID | None
    ) -> JournalEntrySet:
        # Uncategorized transfers are recorded by the counterpart account's import.
        if category_account_id is None:
            return JournalEntrySet(entries=[])

        cash_account_id = self.cash_account_for(transaction.bank_account_id)
        if transaction.amount < 0:
            debit_account, credit_account = category_account_id, cash_account_id
        else:
            debit_account, credit_account = cash_account_id, category_account_id
        lines = [
            JournalLineDraft(debit_account, Direction.DEBIT, amount, transaction.description),
            JournalLineDraft(credit_account, Direction.CREDIT, amount, transaction.description),
        ]
        validate_journal_balance(lines)
        return JournalEntrySet(entries=lines)

    def _split_legs(self, transaction: RawTransaction) -> list[SplitLeg]:
        is_expense = transaction.type == TransactionType.EXPENSE
        interest_account = (
            self.account_map.interest_expense if is_expense else self.account_map.interest_income
        )
        candidates = (
            ("tax", transaction.tax_amount, self.account_map.sales_tax_payable, "sales tax payable"),
            ("principal", transaction.principal_amount, self.account_map.loans, "loans payable"),
            (
                "interest",
                transaction.interest_amount,
                interest_account,
                "interest expense" if is_expense else "interest income",
            ),
        )

        legs: list[SplitLeg] = []
        for leg_type, raw_amount, account_id, account_label in candidates:
            if raw_amount is None:
                continue
            leg_amount = round_money(raw_amount)
            if leg_amount == ZERO:
                continue
            if account_id is None:
                raise JournalGenerationError(f"No {account_label} account configured for {leg_type} split")
            legs.append(
                SplitLeg(
                    amount=leg_amount,
                    type=leg_type,
                    account_id=account_id,
                    description=f"{transaction.description} ({leg_type})",
                )
            )
        return legs
