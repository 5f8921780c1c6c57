"""Ledger account model (chart of accounts)."""

from __future__ import annotations

import enum

from sqlalchemy import Boolean, Enum, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from bookkeeping.database import Base
from bookkeeping.models.base import BusinessOwnedMixin, TimestampMixin, UUIDMixin


class AccountType(str, enum.Enum):
    """Account type classification."""

    ASSET = "ASSET"
    LIABILITY = "LIABILITY"
    EQUITY = "EQUITY"
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class LedgerAccount(Base, UUIDMixin, BusinessOwnedMixin, TimestampMixin):
    """
    A node in the business's chart of accounts.

    Created once during chart-of-accounts setup. The import pipeline only reads
    these rows; journal entries reference them by id.
    """

    __tablename__ = "ledger_accounts"
    __table_args__ = (UniqueConstraint("business_id", "code", name="uq_ledger_accounts_business_code"),)

    code: Mapped[str] = mapped_column(String(10), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[AccountType] = mapped_column(
        Enum(AccountType, name="account_type_enum"), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    def __repr__(self) -> str:
        return f"<LedgerAccount {self.code} {self.name} ({self.type.value})>"
