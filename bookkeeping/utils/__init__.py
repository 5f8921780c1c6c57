"""Utility functions and helpers."""

from .exceptions import (
    AuthorizationError,
    BookkeepingError,
    CategoryResolutionError,
    ConfigurationError,
    ExtractionError,
    InvalidTransitionError,
    JournalGenerationError,
    NotFoundError,
    PersistenceError,
    TransactionSemanticError,
    UnbalancedEntryError,
    raise_forbidden,
    raise_not_found,
)

__all__ = [
    "AuthorizationError",
    "BookkeepingError",
    "CategoryResolutionError",
    "ConfigurationError",
    "ExtractionError",
    "InvalidTransitionError",
    "JournalGenerationError",
    "NotFoundError",
    "PersistenceError",
    "TransactionSemanticError",
    "UnbalancedEntryError",
    "raise_forbidden",
    "raise_not_found",
]
