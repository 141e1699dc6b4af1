"""Unit tests for payment allocation"""

import pytest
from recon_gateway.domain.ledger import allocate_payment, payment_status, release_payment


def test_payment_status_thresholds():
    assert payment_status(0.0, 100.0) == "unpaid"
    assert payment_status(40.0, 60.0) == "partial"
    assert payment_status(100.0, 0.005) == "paid"
    assert payment_status(120.0, -20.0) == "overpaid"


def test_full_payment_settles_document(make_bill):
    allocation = allocate_payment(make_bill(total=100.0, amount_remaining=100.0), -100.0)

    assert allocation.amount == 100.0
    assert allocation.amount_remaining == 0.0
    assert allocation.payment_status == "paid"
    assert allocation.reconciliation_status == "matched"


def test_partial_payment(make_bill):
    allocation = allocate_payment(make_bill(total=100.0, amount_remaining=100.0), -40.0)

    assert allocation.amount_paid == 40.0
    assert allocation.amount_remaining == 60.0
    assert allocation.payment_status == "partial"
    assert allocation.reconciliation_status == "partial"


def test_second_partial_payment_completes(make_bill):
    bill = make_bill(total=100.0, amount_remaining=60.0, amount_paid=40.0)

    allocation = allocate_payment(bill, -60.0)

    assert allocation.amount_paid == pytest.approx(100.0)
    assert allocation.payment_status == "paid"


def test_default_allocation_is_capped_at_remaining(make_bill):
    allocation = allocate_payment(make_bill(total=100.0, amount_remaining=100.0), -150.0)

    assert allocation.amount == 100.0
    assert allocation.payment_status == "paid"


def test_foreign_payment_is_converted_before_allocation(make_invoice):
    invoice = make_invoice(total=14950.0, amount_remaining=14950.0, currency="JPY")

    allocation = allocate_payment(invoice, 100.0, transaction_currency="USD")

    assert allocation.amount == pytest.approx(14950.0)
    assert allocation.payment_status == "paid"


def test_foreign_partial_payment(make_invoice):
    invoice = make_invoice(total=14950.0, amount_remaining=14950.0, currency="JPY")

    allocation = allocate_payment(invoice, 50.0, transaction_currency="USD")

    assert allocation.amount == pytest.approx(7475.0)
    assert allocation.amount_remaining == pytest.approx(7475.0)
    assert allocation.payment_status == "partial"


@pytest.mark.parametrize("currency, expected", [("BSD", 40.0), ("XYZ", 40.0), ("usd", 40.0)])
def test_pegged_or_unknown_currency_is_not_converted(make_bill, currency, expected):
    allocation = allocate_payment(make_bill(total=100.0, amount_remaining=100.0), -40.0, transaction_currency=currency)

    assert allocation.amount == expected


def test_explicit_overpayment_clamps_remaining(make_bill):
    allocation = allocate_payment(make_bill(total=100.0, amount_remaining=100.0), -150.0, allocation_amount=120.0)

    assert allocation.amount_paid == 120.0
    assert allocation.amount_remaining == 0.0
    assert allocation.payment_status == "overpaid"
    assert allocation.reconciliation_status == "matched"


def test_release_partial(make_bill):
    bill = make_bill(total=100.0, amount_remaining=0.0, amount_paid=100.0, payment_status="paid")

    allocation = release_payment(bill, 40.0)

    assert allocation.amount_paid == 60.0
    assert allocation.amount_remaining == 40.0
    assert allocation.payment_status == "partial"
    assert allocation.reconciliation_status == "partial"


def test_release_everything_reopens_document(make_bill):
    bill = make_bill(total=100.0, amount_remaining=0.0, amount_paid=100.0, payment_status="paid")

    allocation = release_payment(bill, 100.0)

    assert allocation.amount_remaining == 100.0
    assert allocation.payment_status == "unpaid"
    assert allocation.reconciliation_status == "unmatched"
