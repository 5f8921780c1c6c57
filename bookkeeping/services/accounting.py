"""Accounting primitives - money rounding and double-entry balance checks."""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from bookkeeping.models import Direction
from bookkeeping.utils.exceptions import UnbalancedEntryError

MINOR_UNIT = Decimal("0.01")
ZERO = Decimal("0.00")


def round_money(amount: Decimal | int | str) -> Decimal:
    """Round to the currency minor unit, half away from zero."""
    return Decimal(amount).quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True, slots=True)
class JournalLineDraft:
    """A journal line before it is bound to a persisted transaction."""

    account_id: UUID
    direction: Direction
    amount: Decimal
    description: str | None = None


def line_totals(lines: Iterable[JournalLineDraft]) -> tuple[Decimal, Decimal]:
    """Return rounded ``(debits, credits)`` for a set of lines."""
    total_debit = ZERO
    total_credit = ZERO
    for line in lines:
        if line.direction == Direction.DEBIT:
            total_debit += round_money(line.amount)
        else:
            total_credit += round_money(line.amount)
    return total_debit, total_credit


def validate_journal_balance(lines: list[JournalLineDraft]) -> None:
    """
    Validate that journal lines are balanced (debit = credit).

    Amounts are compared after rounding to the minor unit, with no tolerance:
    a one-cent difference is an error.

    Args:
        lines: Journal lines for a single transaction

    Raises:
        UnbalancedEntryError: If there are fewer than 2 lines, a non-positive
            amount, or debits and credits differ
    """
    if len(lines) < 2:
        raise UnbalancedEntryError("Journal entry must have at least 2 lines")

    for line in lines:
        if round_money(line.amount) <= ZERO:
            raise UnbalancedEntryError(f"Journal line amount must be positive, got {line.amount}")

    total_debit, total_credit = line_totals(lines)
    if total_debit != total_credit:
        raise UnbalancedEntryError(
            f"Journal entry not balanced: debit={total_debit}, credit={total_credit}"
        )
