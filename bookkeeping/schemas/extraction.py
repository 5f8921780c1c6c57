"""Pydantic schemas for extracted document data."""

import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

_MONEY_NOISE = re.compile(r"[^\d.\-]")


class ExtractedLineItem(BaseModel):
    description: str
    amount: Decimal | None = None
    quantity: Decimal | None = None


class ExtractedDocument(BaseModel):
    """Validated output of a document extraction function."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    vendor: str | None = None
    amount: Decimal | None = None
    document_date: date | None = Field(None, alias="date")
    tax: Decimal | None = None
    currency: Annotated[str | None, Field(None, max_length=3)] = None
    confidence: Annotated[float, Field(ge=0, le=1)] = 0.0
    items: list[ExtractedLineItem] = Field(default_factory=list)
    category: str | None = None
    notes: str | None = None

    @field_validator("amount", "tax", mode="before")
    @classmethod
    def parse_money(cls, value: Any) -> Any:
        """Accept model output like ``"$1,234.50"``; unparseable strings become None."""
        if isinstance(value, str):
            cleaned = _MONEY_NOISE.sub("", value)
            if not cleaned:
                return None
            try:
                return Decimal(cleaned)
            except InvalidOperation:
                return None
        return value

    @field_validator("vendor", "currency", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value
