"""Payment allocation against a document's outstanding balance"""

from typing import Optional

from recon_gateway.domain.currency import convert_currency, currencies_equivalent
from recon_gateway.domain.models import Document, PaymentAllocation

SETTLED_TOLERANCE = 0.01


def payment_status(amount_paid: float, amount_remaining: float) -> str:
    """
    Map a balance to a payment status.

    - remaining <= 0.01:  paid (overpaid when below -0.01)
    - anything paid:      partial
    - otherwise:          unpaid
    """
    if amount_remaining <= SETTLED_TOLERANCE:
        return "overpaid" if amount_remaining < -SETTLED_TOLERANCE else "paid"
    return "partial" if amount_paid > 0 else "unpaid"


def payment_in_document_currency(transaction_amount: float, transaction_currency: Optional[str], document_currency: str) -> float:
    """Absolute payment expressed in the document's currency; unconverted when no rate exists"""
    amount = abs(transaction_amount)
    if transaction_currency is None or currencies_equivalent(transaction_currency, document_currency):
        return amount
    converted = convert_currency(amount, transaction_currency, document_currency)
    return amount if converted is None else converted


def allocate_payment(
    document: Document,
    transaction_amount: float,
    allocation_amount: Optional[float] = None,
    transaction_currency: Optional[str] = None,
) -> PaymentAllocation:
    """
    Apply a payment to a document.

    Defaults to min(transaction amount, amount remaining), with the
    transaction amount first converted into the document's currency. An
    explicit allocation is already in the document's currency and may exceed
    what is owed; the stored remaining is clamped at 0 while the status still
    reports the overpayment.
    """
    if allocation_amount is not None:
        amount = allocation_amount
    else:
        payment = payment_in_document_currency(transaction_amount, transaction_currency, document.currency)
        amount = min(payment, document.amount_remaining)
    already_paid = document.total - document.amount_remaining
    new_paid = already_paid + amount
    new_remaining = document.amount_remaining - amount
    status = payment_status(new_paid, new_remaining)

    return PaymentAllocation(
        amount=amount,
        amount_paid=new_paid,
        amount_remaining=max(0.0, new_remaining),
        payment_status=status,
        reconciliation_status="matched" if status in ("paid", "overpaid") else "partial",
    )


def release_payment(document: Document, amount: float) -> PaymentAllocation:
    """Reverse a previously linked payment (unmatch)"""
    new_paid = max(0.0, document.amount_paid - amount)
    new_remaining = document.total - new_paid
    status = payment_status(new_paid, new_remaining)

    return PaymentAllocation(
        amount=-amount,
        amount_paid=new_paid,
        amount_remaining=max(0.0, new_remaining),
        payment_status=status,
        reconciliation_status={"paid": "matched", "partial": "partial"}.get(status, "unmatched"),
    )
