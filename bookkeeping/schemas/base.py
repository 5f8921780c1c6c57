"""Base schema classes and generic types."""

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict

T = TypeVar("T")


class BaseResponse(BaseModel):
    """Base for all response schemas with from_attributes config."""

    model_config = ConfigDict(from_attributes=True)


class ServiceResult(BaseModel, Generic[T]):  # noqa: UP046
    """Uniform ``{success, data?, error?}`` envelope returned by public operations.

    ``error_code`` mirrors the exception taxonomy (``configuration``,
    ``authorization``, ``persistence``...) so callers can branch without parsing
    the message.
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> "ServiceResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str | None = None) -> "ServiceResult[T]":
        return cls(success=False, error=error, error_code=code)
