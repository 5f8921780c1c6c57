"""Exception taxonomy for the import and reconciliation core.

Service entry points convert these into ``ServiceResult`` error payloads; nothing
here knows about a transport layer.
"""

from __future__ import annotations

from typing import NoReturn


class BookkeepingError(Exception):
    """Base exception for bookkeeping errors."""

    code = "error"


class ConfigurationError(BookkeepingError):
    """The business's chart of accounts cannot support the requested work.

    Fails the whole batch before anything is written; never retried.
    """

    code = "configuration"


class TransactionSemanticError(BookkeepingError):
    """A single transaction cannot be booked. Isolated to that row, never retried."""

    code = "semantic"


class CategoryResolutionError(TransactionSemanticError):
    code = "category_resolution"


class JournalGenerationError(TransactionSemanticError):
    code = "journal_generation"


class UnbalancedEntryError(JournalGenerationError):
    """Debits and credits differ by at least one minor unit."""

    pass


class PersistenceError(BookkeepingError):
    """Storage failure while persisting a chunk or applying a transition."""

    code = "persistence"

    def __init__(self, message: str, *, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class AuthorizationError(BookkeepingError):
    """The acting user may not touch the target business's records."""

    code = "authorization"


class NotFoundError(BookkeepingError):
    code = "not_found"


class InvalidTransitionError(BookkeepingError):
    """Reconciliation status change not allowed from the current state."""

    code = "invalid_transition"


class ExtractionError(BookkeepingError):
    """Document extraction failed or returned an unusable payload."""

    code = "extraction"


def raise_not_found(resource_name: str, *, cause: Exception | None = None) -> NoReturn:
    raise NotFoundError(f"{resource_name} not found") from cause


def raise_forbidden(resource_name: str, *, cause: Exception | None = None) -> NoReturn:
    # Same wording as not-found so other businesses' ids are not confirmed.
    raise AuthorizationError(f"{resource_name} not found") from cause
