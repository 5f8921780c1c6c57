"""Receipt-to-transaction matching engine.

Scores candidate transactions for one extracted document by date proximity,
amount proximity and vendor/description similarity. Pure: no I/O, safe to run
concurrently.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from bookkeeping.config import Settings, settings
from bookkeeping.models import MatchStatus
from bookkeeping.persistence.base import CandidateTransaction
from bookkeeping.schemas.extraction import ExtractedDocument
from bookkeeping.schemas.reconciliation import RankedMatch


@dataclass(frozen=True)
class MatchingConfig:
    """Runtime configuration for match scoring."""

    date_window_days: int
    amount_tolerance: Decimal
    base_score: float
    weight_date: float
    weight_amount: float
    weight_vendor: float
    confirm_threshold: float
    persist_limit: int

    def __post_init__(self) -> None:
        if self.date_window_days < 1:
            raise ValueError("date_window_days must be at least 1")
        if self.amount_tolerance < 0:
            raise ValueError("amount_tolerance must not be negative")
        if not 0 <= self.confirm_threshold <= 1:
            raise ValueError("confirm_threshold must be between 0 and 1")
        if self.persist_limit < 1:
            raise ValueError("persist_limit must be at least 1")


DEFAULT_CONFIG = MatchingConfig(
    date_window_days=7,
    amount_tolerance=Decimal("0.05"),
    base_score=0.5,
    weight_date=0.3,
    weight_amount=0.3,
    weight_vendor=0.2,
    confirm_threshold=0.9,
    persist_limit=3,
)

_config_cache: MatchingConfig | None = None


def load_matching_config(force_reload: bool = False, source: Settings | None = None) -> MatchingConfig:
    """Build the matching configuration from settings.

    Caches the result; pass ``force_reload=True`` after changing settings.
    """
    global _config_cache
    if _config_cache is not None and not force_reload and source is None:
        return _config_cache

    source = source or settings
    config = MatchingConfig(
        date_window_days=source.match_date_window_days,
        amount_tolerance=source.match_amount_tolerance,
        base_score=source.match_base_score,
        weight_date=source.match_weight_date,
        weight_amount=source.match_weight_amount,
        weight_vendor=source.match_weight_vendor,
        confirm_threshold=source.match_confirm_threshold,
        persist_limit=source.match_persist_limit,
    )
    if source is settings:
        _config_cache = config
    return config


def string_similarity(vendor: str, description: str) -> float:
    """
    Character-presence similarity in [0, 1].

    Counts the vendor's characters that also appear anywhere in the
    description and divides by the length of the longer string. Both inputs
    are lower-cased; two empty strings score 1.0.
    """
    vendor = vendor.lower()
    description = description.lower()
    longer = max(len(vendor), len(description))
    if longer == 0:
        return 1.0
    present = set(description)
    hits = sum(1 for char in vendor if char in present)
    return hits / longer


def _days_apart_reason(days: int) -> str:
    if days == 0:
        return "Same date"
    return f"{days} day{'' if days == 1 else 's'} apart"


def score_candidate(
    extracted: ExtractedDocument,
    candidate: CandidateTransaction,
    config: MatchingConfig = DEFAULT_CONFIG,
) -> RankedMatch | None:
    """Score one candidate, or return None when it falls outside the date/amount bounds."""
    if extracted.amount is None or extracted.document_date is None:
        return None

    tx_amount = abs(candidate.amount)
    if tx_amount == 0:
        return None
    receipt_amount = abs(extracted.amount)

    days = abs((extracted.document_date - candidate.txn_date).days)
    if days > config.date_window_days:
        return None
    amount_diff = abs(receipt_amount - tx_amount)
    if amount_diff > config.amount_tolerance * tx_amount:
        return None

    date_score = config.weight_date * (config.date_window_days - days) / config.date_window_days
    amount_score = config.weight_amount * float(1 - amount_diff / tx_amount)
    breakdown = {"base": config.base_score, "date": date_score, "amount": amount_score}

    reason = (
        f"Amount match: ${receipt_amount:.2f} vs ${tx_amount:.2f}, {_days_apart_reason(days)}"
    )
    if extracted.vendor and candidate.description:
        breakdown["vendor"] = config.weight_vendor * string_similarity(
            extracted.vendor, candidate.description
        )
        reason += ", Vendor similarity"

    confidence = min(sum(breakdown.values()), 1.0)
    return RankedMatch(
        transaction_id=candidate.id,
        confidence=confidence,
        match_reason=reason,
        score_breakdown=breakdown,
    )


def find_matches(
    extracted: ExtractedDocument,
    candidates: Iterable[CandidateTransaction],
    config: MatchingConfig = DEFAULT_CONFIG,
) -> list[RankedMatch]:
    """
    Rank eligible candidates by confidence, highest first.

    The sort is stable: equal confidences keep the candidates' input order.
    """
    matches = [
        match
        for match in (score_candidate(extracted, candidate, config) for candidate in candidates)
        if match is not None
    ]
    return sorted(matches, key=lambda match: match.confidence, reverse=True)


def match_status_for(confidence: float, config: MatchingConfig = DEFAULT_CONFIG) -> MatchStatus:
    """Persisted status for a ranked match: CONFIRMED strictly above the threshold."""
    return MatchStatus.CONFIRMED if confidence > config.confirm_threshold else MatchStatus.SUGGESTED
