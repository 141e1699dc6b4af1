"""Match calculator and candidate generator - core business logic for pairing"""

from datetime import date
from typing import Iterable, List, Optional, Sequence

from recon_gateway.domain.currency import currencies_equivalent, normalize_currency
from recon_gateway.domain.models import Document, MatchCandidate, MatchSignals, Transaction
from recon_gateway.domain.signals import score_amount, score_identity, score_reference, score_time

MAX_SCORE = 130
DIRECTION_PENALTY = 20
MIN_CANDIDATE_CONFIDENCE = 40

PASS_THROUGH_MATCH_TYPES = ("exact", "fx_converted", "fee_adjusted")


def confidence_from_score(total_score: float) -> int:
    """Normalize a raw aggregate score onto 0-100"""
    return min(100, max(0, round(total_score / MAX_SCORE * 100)))


def _context_score(
    transaction: Transaction,
    all_amounts: Optional[Sequence[float]],
    cross_currency: bool,
    reference_score: int,
    reasons: List[str],
    warnings: List[str],
) -> int:
    score = 0

    if all_amounts is not None:
        same_amount = sum(1 for amount in all_amounts if abs(abs(amount) - transaction.absolute_amount) < 0.01)
        if same_amount == 1:
            score += 5
            reasons.append("Unique amount (no duplicates)")
        elif same_amount > 3:
            score -= 5
            warnings.append(f"Common amount appears {same_amount} times")

    # A reference hit makes an otherwise risky FX guess trustworthy
    if cross_currency and reference_score >= 20:
        score += 5
        reasons.append("Cross-currency with reference match")

    return score


def calculate_match(
    transaction: Transaction,
    document: Document,
    all_amounts: Optional[Sequence[float]] = None,
) -> MatchCandidate:
    """
    Score one (transaction, document) pair.

    Direction mismatches are penalized, not excluded: refunds and data-entry
    mistakes are real. all_amounts must be a snapshot of the batch taken
    before scoring starts so the duplicate-amount signal is consistent.
    """
    reasons: List[str] = []
    warnings: List[str] = []

    wrong_direction = transaction.direction != document.expected_direction
    if wrong_direction:
        warnings.append(
            f"Direction mismatch: {document.document_type} expects "
            f"{document.expected_direction}, got {transaction.direction}"
        )

    tx_currency = normalize_currency(transaction.currency)
    doc_currency = normalize_currency(document.currency)
    cross_currency = not currencies_equivalent(tx_currency, doc_currency)

    reference = score_reference(transaction.description, document.document_number)
    amount = score_amount(transaction.amount, document.amount_remaining, tx_currency, doc_currency)
    identity = score_identity(transaction.description, document.counterparty_name)
    timing = score_time(transaction.date, document.document_date, document.due_date)

    for reason in (reference.reason, amount.reason, identity.reason, timing.reason):
        if reason:
            reasons.append(reason)

    context = _context_score(transaction, all_amounts, cross_currency, reference.score, reasons, warnings)

    total = reference.score + amount.score + identity.score + timing.score + context
    if wrong_direction:
        total -= DIRECTION_PENALTY

    signals = MatchSignals(
        reference_score=reference.score,
        amount_score=amount.score,
        identity_score=identity.score,
        time_score=timing.score,
        context_score=context,
        amount_difference=amount.difference,
        amount_difference_percent=amount.difference_percent,
        name_similarity=identity.similarity,
        days_from_document=timing.days_from_document,
        cross_currency=cross_currency,
        transaction_currency=tx_currency,
        document_currency=doc_currency,
        reference_found=reference.found,
        fee_pattern_detected=amount.fee_pattern,
        original_amount_before_fees=amount.original_amount_before_fees,
        days_from_due=timing.days_from_due,
        fx_rate_used=amount.fx_rate_used,
        converted_amount=amount.converted_amount,
    )

    # "split" is reserved for multi-transaction combination outside this calculator
    match_type = amount.match_type if amount.match_type in PASS_THROUGH_MATCH_TYPES else "partial"

    return MatchCandidate(
        transaction=transaction,
        document=document,
        score=total,
        confidence=confidence_from_score(total),
        match_type=match_type,
        reasons=reasons,
        warnings=warnings,
        signals=signals,
    )


def _rank_key(candidate: MatchCandidate):
    due = candidate.document.due_date
    return (
        -candidate.confidence,
        -candidate.score,
        due is None,
        due or date.max,
        candidate.document.id,
    )


def rank_candidates(candidates: Iterable[MatchCandidate]) -> List[MatchCandidate]:
    """
    Deterministic ranking.

    Confidence desc, raw score desc, earliest due date (undated last),
    then document id, so store query order never changes the winner.
    """
    return sorted(candidates, key=_rank_key)


def find_matches_for_transaction(
    transaction: Transaction,
    documents: Iterable[Document],
    all_amounts: Optional[Sequence[float]] = None,
    min_confidence: int = MIN_CANDIDATE_CONFIDENCE,
) -> List[MatchCandidate]:
    """Candidates among open documents of the direction-appropriate type"""
    relevant_type = transaction.relevant_document_type
    candidates = []

    for document in documents:
        if document.document_type != relevant_type or document.amount_remaining <= 0:
            continue
        candidate = calculate_match(transaction, document, all_amounts)
        if candidate.confidence >= min_confidence:
            candidates.append(candidate)

    return rank_candidates(candidates)


def find_matches_for_document(
    document: Document,
    transactions: Iterable[Transaction],
    all_amounts: Optional[Sequence[float]] = None,
    min_confidence: int = MIN_CANDIDATE_CONFIDENCE,
) -> List[MatchCandidate]:
    """Candidates among not-yet-matched transactions flowing the right way"""
    candidates = []

    for transaction in transactions:
        if transaction.direction != document.expected_direction:
            continue
        if transaction.reconciliation_status == "matched":
            continue
        candidate = calculate_match(transaction, document, all_amounts)
        if candidate.confidence >= min_confidence:
            candidates.append(candidate)

    # Rank by transaction id on ties here since the document is fixed
    return sorted(candidates, key=lambda c: (-c.confidence, -c.score, c.transaction.id))
