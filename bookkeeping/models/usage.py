"""Monthly usage counter model."""

from datetime import date
from uuid import UUID

from sqlalchemy import Date, Integer, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from bookkeeping.database import Base
from bookkeeping.models.base import TimestampMixin, UUIDMixin


class UsageRecord(Base, UUIDMixin, TimestampMixin):
    """Imported transaction count per business per calendar month."""

    __tablename__ = "usage_records"
    __table_args__ = (UniqueConstraint("business_id", "month", name="uq_usage_records_business_month"),)

    business_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    # First day of the month.
    month: Mapped[date] = mapped_column(Date, nullable=False)
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
