"""
Signal scorers - independent evidence that a transaction pays a document.

Scores are empirically calibrated constants, not a formula. Relative order
matters more than absolute values:
    exact > reference > fuzzy > partial > nothing

Four signals (maximums):
- Reference number: 40
- Amount / FX: 35
- Counterparty identity: 25
- Time proximity: 20
"""

import re
from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from recon_gateway.domain.currency import currencies_equivalent, get_fx_rate, normalize_currency
from recon_gateway.utils.text_similarity import string_similarity


@dataclass(frozen=True)
class FeePattern:
    name: str
    rate: float  # 0.029 = 2.9%
    fixed: float
    keywords: tuple


FEE_PATTERNS = (
    FeePattern("stripe", 0.029, 0.30, ("stripe",)),
    FeePattern("paypal", 0.029, 0.30, ("paypal", "pp")),
    FeePattern("square", 0.026, 0.10, ("square", "sq")),
    FeePattern("wise", 0.01, 0.0, ("wise", "transferwise")),
    FeePattern("card_3pct", 0.03, 0.0, ("card", "visa", "mastercard", "amex")),
)

# Generic business/banking words that carry no identity signal
STOPWORDS = frozenset({
    "payment", "transfer", "credit", "debit", "invoice", "bill", "fee",
    "inc", "corp", "llc", "ltd", "co", "company", "limited", "services",
    "the", "a", "an", "and", "or", "for", "from", "to", "of", "in", "on",
    "ref", "reference", "ach", "wire", "bank", "account", "number",
})

REFERENCE_PATTERNS = (
    re.compile(r"\b(inv[-.#]?\d+)\b", re.IGNORECASE),
    re.compile(r"\b(invoice[-.#]?\d+)\b", re.IGNORECASE),
    re.compile(r"(?<![\w#])(#\d{4,})\b"),
    re.compile(r"\b(\d{6,})\b"),
)

CLEAN_FRACTIONS = (1 / 2, 1 / 3, 1 / 4, 1 / 5)


def _alphanumeric(text: str) -> str:
    return re.sub(r"[^0-9a-z]", "", (text or "").lower())


def extract_invoice_numbers(description: str) -> List[str]:
    """Pull reference-looking tokens out of free text, normalized and de-duplicated"""
    results: List[str] = []
    for pattern in REFERENCE_PATTERNS:
        for match in pattern.findall(description or ""):
            cleaned = _alphanumeric(match)
            if cleaned and cleaned not in results:
                results.append(cleaned)
    return results


def detect_payment_processor(description: str) -> Optional[str]:
    text = (description or "").lower()
    for pattern in FEE_PATTERNS:
        if any(keyword in text for keyword in pattern.keywords):
            return pattern.name
    return None


# ============================================
# REFERENCE
# ============================================


@dataclass
class ReferenceResult:
    score: int
    found: Optional[str] = None
    reason: Optional[str] = None


def score_reference(description: str, document_number: str) -> ReferenceResult:
    if not document_number or document_number == "Unknown":
        return ReferenceResult(score=0)

    doc_clean = _alphanumeric(document_number)
    desc_clean = _alphanumeric(description)
    if not doc_clean:
        return ReferenceResult(score=0)

    if doc_clean in desc_clean:
        return ReferenceResult(40, document_number, f'Document number "{document_number}" found in transaction')

    if len(doc_clean) >= 6:
        suffix = doc_clean[-6:]
        if suffix in desc_clean:
            return ReferenceResult(25, suffix, f'Document number suffix "{suffix}" found in transaction')

    for ref in extract_invoice_numbers(description):
        if ref == doc_clean:
            return ReferenceResult(35, ref, f'Reference "{ref}" matches document number')
        if ref in doc_clean or doc_clean in ref:
            return ReferenceResult(20, ref, f'Reference "{ref}" partially matches document number')

    return ReferenceResult(score=0)


# ============================================
# AMOUNT / FX
# ============================================


@dataclass
class AmountResult:
    score: int
    match_type: str  # exact | partial | fee_adjusted | fx_converted | none
    difference: float
    difference_percent: float
    reason: Optional[str] = None
    fee_pattern: Optional[str] = None
    original_amount_before_fees: Optional[float] = None
    fx_rate_used: Optional[float] = None
    converted_amount: Optional[float] = None


def score_amount(
    transaction_amount: float,
    document_amount: float,
    transaction_currency: Optional[str] = None,
    document_currency: Optional[str] = None,
) -> AmountResult:
    """
    Compare a transaction amount with what is still owed on a document.

    Cross-currency pairs are converted into the document currency first and
    scored on a wider tolerance with a small penalty. A missing FX path is
    not a rejection: it scores a flat 5.
    """
    tx_amount = abs(transaction_amount)
    doc_amount = abs(document_amount)
    tx_cur = normalize_currency(transaction_currency)
    doc_cur = normalize_currency(document_currency)

    needs_fx = not currencies_equivalent(tx_cur, doc_cur)

    effective = tx_amount
    fx_rate: Optional[float] = None
    converted: Optional[float] = None

    if needs_fx:
        fx_rate = get_fx_rate(tx_cur, doc_cur)
        if fx_rate is None:
            return AmountResult(
                score=5,
                match_type="none",
                difference=abs(tx_amount - doc_amount),
                difference_percent=1.0,
                reason=f"Different currencies ({tx_cur}/{doc_cur}) - no FX rate available",
            )
        converted = tx_amount * fx_rate
        effective = converted

    def result(score: int, match_type: str, difference: float, difference_percent: float, reason: str, **extra) -> AmountResult:
        return AmountResult(
            score=score,
            match_type=match_type,
            difference=difference,
            difference_percent=difference_percent,
            reason=reason,
            fx_rate_used=fx_rate,
            converted_amount=converted,
            **extra,
        )

    diff = abs(effective - doc_amount)
    diff_pct = diff / doc_amount if doc_amount > 0 else 1.0
    fx_label = f"{tx_cur} {tx_amount:.2f} → {doc_cur} {effective:.2f}"

    if diff < 0.01:
        if needs_fx:
            return result(32, "fx_converted", 0.0, 0.0, f"Exact match after FX conversion ({tx_cur}→{doc_cur} @ {fx_rate:.4f})")
        return result(35, "exact", 0.0, 0.0, "Exact amount match")

    # Rounding: 0.5% same currency, 2% across currencies
    rounding_tolerance = 0.02 if needs_fx else 0.005
    if diff_pct < rounding_tolerance:
        if needs_fx:
            return result(28, "fx_converted", diff, diff_pct, f"FX converted match within 2% ({fx_label})")
        return result(32, "exact", diff, diff_pct, f"Amount within 0.5% ({diff:.2f} difference)")

    if needs_fx and diff_pct < 0.05:
        return result(22, "fx_converted", diff, diff_pct, f"FX match within 5% tolerance (rate variance) - {fx_label}")

    for fee in FEE_PATTERNS:
        expected_after_fee = doc_amount * (1 - fee.rate) - fee.fixed
        if abs(effective - expected_after_fee) < 1:
            reason = (
                f"FX + {fee.name} fee match ({tx_cur}→{doc_cur}, -{fee.rate * 100:.1f}%)"
                if needs_fx
                else f"Amount matches after {fee.rate * 100:.1f}% {fee.name} fee"
            )
            return result(
                26 if needs_fx else 30,
                "fee_adjusted",
                doc_amount - effective,
                fee.rate,
                reason,
                fee_pattern=fee.name,
                original_amount_before_fees=doc_amount,
            )

    if not needs_fx and diff_pct < 0.01:
        return result(28, "exact", diff, diff_pct, f"Amount within 1% ({diff:.2f} difference)")

    if not needs_fx and diff_pct < 0.05:
        return result(20, "partial", diff, diff_pct, f"Amount within 5% ({diff:.2f} difference, may include fees)")

    if needs_fx and diff_pct < 0.10:
        return result(15, "fx_converted", diff, diff_pct, f"FX match within 10% (rate fluctuation) - {fx_label}")

    if doc_amount > 0 and doc_amount * 0.5 <= effective < doc_amount:
        share = effective / doc_amount
        clean_split = any(abs(share - fraction) < 0.02 for fraction in CLEAN_FRACTIONS)
        if needs_fx:
            reason = f"Partial FX payment ({share * 100:.0f}%) - {fx_label}"
        elif clean_split:
            reason = f"Partial payment ({share * 100:.0f}% - likely installment)"
        else:
            reason = f"Partial payment ({share * 100:.0f}%)"
        return result(20 if clean_split else 12, "partial", doc_amount - effective, 1 - share, reason)

    if doc_amount > 0 and doc_amount * 0.1 <= effective < doc_amount:
        share = effective / doc_amount
        label = "Small partial FX payment" if needs_fx else "Small partial payment"
        return result(8, "partial", doc_amount - effective, 1 - share, f"{label} ({share * 100:.0f}%)")

    if doc_amount > 0 and doc_amount < effective <= doc_amount * 1.1:
        extra = effective - doc_amount
        if needs_fx:
            return result(15, "fx_converted", extra, extra / doc_amount, f"FX overpayment ({extra:.2f} {doc_cur} extra)")
        return result(15, "exact", extra, extra / doc_amount, f"Slight overpayment ({extra:.2f} extra)")

    return AmountResult(
        score=0,
        match_type="none",
        difference=diff,
        difference_percent=diff_pct,
        fx_rate_used=fx_rate,
        converted_amount=converted,
    )


# ============================================
# IDENTITY
# ============================================


@dataclass
class IdentityResult:
    score: int
    similarity: float
    reason: Optional[str] = None


def score_identity(description: str, counterparty_name: str) -> IdentityResult:
    desc_lower = (description or "").lower()
    name_lower = (counterparty_name or "").lower().strip()

    if not name_lower or name_lower == "unknown":
        return IdentityResult(score=0, similarity=0.0)

    if name_lower in desc_lower:
        return IdentityResult(25, 1.0, "Exact name found in transaction")

    name_words = [
        word for word in re.sub(r"[^\w\s]", "", name_lower).split()
        if len(word) > 2 and word not in STOPWORDS
    ]
    desc_words = re.sub(r"[^\w\s]", "", desc_lower).split()

    matched = 0.0
    for name_word in name_words:
        for desc_word in desc_words:
            if name_word == desc_word:
                matched += 1
                break
            if string_similarity(name_word, desc_word) >= 0.85:
                matched += 0.8
                break

    if name_words:
        ratio = matched / len(name_words)
        summary = f"{matched:.0f}/{len(name_words)} words"
        if ratio >= 0.8:
            return IdentityResult(22, ratio, f"Strong name match ({summary})")
        if ratio >= 0.5:
            return IdentityResult(15, ratio, f"Partial name match ({summary})")
        if ratio > 0:
            return IdentityResult(8, ratio, f"Weak name match ({summary})")

    overall = string_similarity(desc_lower, name_lower)
    if overall >= 0.6:
        return IdentityResult(10, overall, f"Fuzzy name match ({overall * 100:.0f}% similar)")

    return IdentityResult(score=0, similarity=0.0)


# ============================================
# TIME
# ============================================


@dataclass
class TimeResult:
    score: int
    days_from_document: int
    days_from_due: Optional[int] = None
    reason: Optional[str] = None


def score_time(transaction_date: date, document_date: date, due_date: Optional[date] = None) -> TimeResult:
    """
    Score how plausible the payment date is.

    Due date proximity wins over document date proximity when a due date
    exists. Payments more than 30 days before the document are rejected.
    """
    days_from_doc = (transaction_date - document_date).days
    days_from_due = (transaction_date - due_date).days if due_date else None

    def result(score: int, reason: str) -> TimeResult:
        return TimeResult(score, days_from_doc, days_from_due, reason)

    if days_from_doc < 0:
        if days_from_doc >= -30:
            return result(8, "Advance payment (before document date)")
        return result(0, "Payment too early")

    if days_from_due is not None:
        if abs(days_from_due) <= 3:
            return result(20, "Payment within 3 days of due date")
        if abs(days_from_due) <= 7:
            return result(15, "Payment within 1 week of due date")
        if days_from_due <= 30:
            return result(10, "Payment within 30 days of due date")
        if days_from_due <= 60:
            return result(5, "Payment within 60 days of due date")

    if days_from_doc <= 7:
        return result(15, "Payment within 1 week of document")
    if days_from_doc <= 30:
        return result(10, "Payment within 30 days")
    if days_from_doc <= 60:
        return result(5, "Payment within 60 days")
    if days_from_doc <= 90:
        return result(2, "Payment within 90 days")

    return result(0, "Payment too late")
