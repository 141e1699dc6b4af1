"""Vendor pattern learning rules (pure - persistence lives in services.pattern_memory)"""

import re
from collections import Counter
from dataclasses import replace
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from recon_gateway.domain.models import ConfirmedMatch, DelayRange, MatchHistory, VendorPattern
from recon_gateway.utils.text_similarity import string_similarity

PATTERN_MATCH_THRESHOLD = 0.7
MAX_PATTERN_KEYWORDS = 15
MAX_EXTRACTED_KEYWORDS = 10
MANUAL_SEED_CONFIDENCE = 70
AUTOMATIC_SEED_CAP = 90
MANUAL_CONFIDENCE_BOOST = 5

LEARNING_STOPWORDS = frozenset({
    "payment", "transfer", "invoice", "bill", "fee", "charge", "credit", "debit",
    "inc", "corp", "llc", "ltd", "co", "company", "services", "solutions", "group", "agency",
    "the", "a", "an", "and", "or", "for", "from", "to", "of", "in", "on", "with", "at", "by",
    "as", "is", "it", "be", "was", "are", "has", "had", "will", "can", "would", "should",
    "this", "that", "these", "those", "my", "your", "his", "her", "its", "our", "their",
    "me", "you", "him", "us", "them", "i", "we", "he", "she", "they",
    "card", "account", "bank", "wire", "ach", "ref", "reference", "transaction",
})

PAYMENT_PROCESSORS = (
    (re.compile(r"stripe", re.IGNORECASE), "Stripe"),
    (re.compile(r"paypal", re.IGNORECASE), "PayPal"),
    (re.compile(r"square", re.IGNORECASE), "Square"),
    (re.compile(r"wise|transferwise", re.IGNORECASE), "Wise"),
    (re.compile(r"\bach\b|wire transfer", re.IGNORECASE), "ACH/Wire"),
    (re.compile(r"sepa", re.IGNORECASE), "SEPA"),
    (re.compile(r"visa|mastercard|amex|discover", re.IGNORECASE), "Card Payment"),
    (re.compile(r"zelle", re.IGNORECASE), "Zelle"),
    (re.compile(r"venmo", re.IGNORECASE), "Venmo"),
)


def extract_pattern_keywords(description: str) -> List[str]:
    words = re.sub(r"[^\w\s]", " ", (description or "").lower()).split()
    keywords = [word for word in words if len(word) > 2 and word not in LEARNING_STOPWORDS]
    return keywords[:MAX_EXTRACTED_KEYWORDS]


def detect_processor(description: str) -> Optional[str]:
    for pattern, name in PAYMENT_PROCESSORS:
        if pattern.search(description or ""):
            return name
    return None


def pattern_similarity(pattern: VendorPattern, vendor_name: str) -> float:
    """Best similarity of vendor_name against the pattern's name or any alias"""
    if pattern.vendor_name.lower() == vendor_name.lower():
        return 1.0
    scores = [string_similarity(pattern.vendor_name, vendor_name)]
    scores.extend(string_similarity(alias, vendor_name) for alias in pattern.vendor_aliases)
    return max(scores)


def select_patterns(patterns: Iterable[VendorPattern], vendor_name: str) -> List[VendorPattern]:
    """Exact or fuzzy (>= 0.7) pattern matches, best first"""
    scored = []
    for pattern in patterns:
        similarity = pattern_similarity(pattern, vendor_name)
        if similarity >= PATTERN_MATCH_THRESHOLD:
            scored.append((similarity, pattern))
    scored.sort(key=lambda item: item[0], reverse=True)
    return [pattern for _, pattern in scored]


def merge_keywords(existing: Sequence[str], new: Sequence[str], limit: int = MAX_PATTERN_KEYWORDS) -> List[str]:
    """Keep the most frequent keywords; ties keep first-seen order"""
    counts = Counter(list(existing) + list(new))
    return [keyword for keyword, _ in counts.most_common(limit)]


def payment_delay_days(match: ConfirmedMatch) -> int:
    return abs((match.transaction_date - match.document_date).days)


def build_history(match: ConfirmedMatch, matched_at: datetime) -> MatchHistory:
    return MatchHistory(
        owner_id=match.owner_id,
        vendor_name=match.vendor_name,
        document_id=match.document_id,
        document_number=match.document_number,
        document_amount=match.document_amount,
        document_currency=match.document_currency,
        document_date=match.document_date,
        transaction_id=match.transaction_id,
        transaction_amount=match.transaction_amount,
        transaction_currency=match.transaction_currency,
        transaction_date=match.transaction_date,
        transaction_description=match.transaction_description,
        match_type=match.match_type,
        amount_difference=abs(match.transaction_amount - match.document_amount),
        days_difference=payment_delay_days(match),
        was_manual=match.was_manual,
        confidence=match.confidence,
        matched_at=matched_at,
    )


def new_pattern(match: ConfirmedMatch, matched_at: datetime) -> VendorPattern:
    delay = payment_delay_days(match)
    return VendorPattern(
        owner_id=match.owner_id,
        vendor_name=match.vendor_name,
        transaction_keywords=extract_pattern_keywords(match.transaction_description),
        typical_payment_delay=float(delay),
        payment_delay_range=DelayRange(min=delay, max=delay),
        payment_processor=detect_processor(match.transaction_description),
        invoice_currency=match.document_currency,
        payment_currency=match.transaction_currency,
        match_count=1,
        confidence=MANUAL_SEED_CONFIDENCE if match.was_manual else min(AUTOMATIC_SEED_CAP, match.confidence),
        last_matched_at=matched_at,
    )


def apply_learning(pattern: VendorPattern, match: ConfirmedMatch, matched_at: datetime) -> VendorPattern:
    """
    Fold one confirmed match into an existing pattern.

    Running average delay: (old_avg * old_count + delay) / new_count.
    Confidence: +5 for manual confirmations, count-weighted blend with the
    match confidence for automatic ones; never above 100.
    """
    delay = payment_delay_days(match)
    old_count = pattern.match_count
    new_count = old_count + 1

    average = ((pattern.typical_payment_delay or 0) * old_count + delay) / new_count

    current_range = pattern.payment_delay_range or DelayRange(min=delay, max=delay)
    delay_range = DelayRange(min=min(current_range.min, delay), max=max(current_range.max, delay))

    if match.was_manual:
        confidence = pattern.confidence + MANUAL_CONFIDENCE_BOOST
    else:
        confidence = (pattern.confidence * old_count + match.confidence) / new_count
    confidence = min(100, round(confidence))

    return replace(
        pattern,
        transaction_keywords=merge_keywords(
            pattern.transaction_keywords, extract_pattern_keywords(match.transaction_description)
        ),
        typical_payment_delay=round(average, 1),
        payment_delay_range=delay_range,
        payment_processor=detect_processor(match.transaction_description) or pattern.payment_processor,
        invoice_currency=match.document_currency or pattern.invoice_currency,
        payment_currency=match.transaction_currency or pattern.payment_currency,
        match_count=new_count,
        confidence=confidence,
        last_matched_at=matched_at,
    )


def add_alias(pattern: VendorPattern, alias: str) -> VendorPattern:
    if alias in pattern.vendor_aliases:
        return pattern
    return replace(pattern, vendor_aliases=[*pattern.vendor_aliases, alias])


def describe_pattern(pattern: VendorPattern, history: Sequence[MatchHistory] = ()) -> str:
    """Human-readable learned context, fed to the reasoning service"""
    lines = [
        f"## Learned Patterns for {pattern.vendor_name}",
        f"- Match confidence: {pattern.confidence}%",
        f"- Total matches: {pattern.match_count}",
    ]
    if pattern.payment_processor:
        lines.append(f"- Payment processor: {pattern.payment_processor}")
    if pattern.typical_payment_delay is not None:
        lines.append(f"- Typical payment delay: {pattern.typical_payment_delay} days")
    if pattern.payment_delay_range:
        lines.append(f"- Payment delay range: {pattern.payment_delay_range.min}-{pattern.payment_delay_range.max} days")
    if pattern.transaction_keywords:
        lines.append(f"- Transaction keywords: {', '.join(pattern.transaction_keywords)}")
    if pattern.vendor_aliases:
        lines.append(f"- Known aliases: {', '.join(pattern.vendor_aliases)}")

    if history:
        lines.append("")
        lines.append("## Recent Matches")
        for item in history:
            lines.append(
                f"- {item.document_number}: {item.document_currency} {item.document_amount:.2f} → "
                f"{item.transaction_description} ({item.days_difference} days, {item.match_type})"
            )

    return "\n".join(lines)
