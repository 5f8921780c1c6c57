"""Business logic services."""

from bookkeeping.services.accounting import JournalLineDraft, round_money, validate_journal_balance
from bookkeeping.services.chart_of_accounts import (
    ChartOfAccountsMap,
    build_account_map,
    check_fallbacks,
    match_suggested_category,
    resolve_account,
)
from bookkeeping.services.document_processing import DocumentProcessor, process_document
from bookkeeping.services.extraction import OpenRouterReceiptExtractor
from bookkeeping.services.journal_factory import JournalEntryFactory, JournalEntrySet, SplitLeg
from bookkeeping.services.matching import (
    DEFAULT_CONFIG,
    MatchingConfig,
    find_matches,
    load_matching_config,
    match_status_for,
    string_similarity,
)
from bookkeeping.services.reconciliation import (
    ALLOWED_TRANSITIONS,
    ReconciliationService,
    ScopeGuard,
    ensure_transition,
)
from bookkeeping.services.transaction_processor import (
    ProcessingContext,
    ProcessorConfig,
    TransactionProcessor,
    process_transactions,
)
from bookkeeping.services.usage_tracking import UsageDispatcher, UsageSink

__all__ = [
    "ALLOWED_TRANSITIONS",
    "DEFAULT_CONFIG",
    "ChartOfAccountsMap",
    "DocumentProcessor",
    "JournalEntryFactory",
    "JournalEntrySet",
    "JournalLineDraft",
    "MatchingConfig",
    "OpenRouterReceiptExtractor",
    "ProcessingContext",
    "ProcessorConfig",
    "ReconciliationService",
    "ScopeGuard",
    "SplitLeg",
    "TransactionProcessor",
    "UsageDispatcher",
    "UsageSink",
    "build_account_map",
    "check_fallbacks",
    "ensure_transition",
    "find_matches",
    "load_matching_config",
    "match_status_for",
    "match_suggested_category",
    "process_document",
    "process_transactions",
    "resolve_account",
    "round_money",
    "string_similarity",
    "validate_journal_balance",
]
