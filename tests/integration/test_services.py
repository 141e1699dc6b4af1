"""Integration tests for pattern memory and manual match confirmation"""

import pytest
from datetime import date, timedelta
from unittest.mock import patch
from recon_gateway.config import Settings
from recon_gateway.domain.exceptions import PatternNotFoundError, TransactionNotFoundError
from recon_gateway.domain.models import ConfirmedMatch, VendorPattern
from recon_gateway.infrastructure.database.models import MatchHistoryRecord
from recon_gateway.infrastructure.database.store import SqlReconciliationStore
from recon_gateway.services.confirmation import MatchConfirmationService
from recon_gateway.services.pattern_memory import PatternMemory

OWNER = "owner_1"
TODAY = date(2024, 3, 15)


@pytest.fixture
def store(db) -> SqlReconciliationStore:
    return SqlReconciliationStore(db)


@pytest.fixture
def memory(store) -> PatternMemory:
    return PatternMemory(store)


@pytest.fixture
def service(store, memory) -> MatchConfirmationService:
    return MatchConfirmationService(store, memory, Settings())


def confirmed(**overrides) -> ConfirmedMatch:
    fields = dict(
        owner_id=OWNER,
        vendor_name="Acme Corp",
        document_id="bill_1",
        document_number="INV-1000",
        document_amount=100.0,
        document_currency="USD",
        document_date=TODAY - timedelta(days=12),
        transaction_id="tx_1",
        transaction_amount=100.0,
        transaction_currency="USD",
        transaction_date=TODAY,
        transaction_description="ACH ACME CORP 1000",
        match_type="exact",
        was_manual=True,
        confidence=100,
    )
    fields.update(overrides)
    return ConfirmedMatch(**fields)


# ============================================
# PATTERN MEMORY
# ============================================


def test_learn_creates_then_updates_pattern(db, memory):
    created = memory.learn(confirmed())
    updated = memory.learn(confirmed(transaction_id="tx_2", document_id="bill_2"))

    assert created.id == updated.id
    assert updated.match_count == 2
    assert updated.confidence == 75
    assert updated.payment_processor == "ACH/Wire"
    assert db.query(MatchHistoryRecord).count() == 2


def test_learn_finds_pattern_by_alias(memory, store):
    store.save_pattern(VendorPattern(owner_id=OWNER, vendor_name="Acme Corporation", vendor_aliases=["Acme Corp"]))

    learned = memory.learn(confirmed())

    assert learned.vendor_name == "Acme Corporation"
    assert len(memory.list_patterns(OWNER)) == 1


def test_patterns_are_owner_scoped(memory):
    memory.learn(confirmed())
    assert memory.list_patterns("owner_2") == []
    assert memory.lookup("owner_2", "Acme Corp") == []


def test_context_for_includes_recent_history(memory):
    memory.learn(confirmed())

    context = memory.context_for(OWNER, ["Acme Corp", "Acme Corp", "Initech", ""])

    assert list(context) == ["Acme Corp"]
    assert "## Learned Patterns for Acme Corp" in context["Acme Corp"]
    assert "## Recent Matches" in context["Acme Corp"]


def test_add_alias_creates_pattern(memory):
    pattern = memory.add_alias(OWNER, "Globex", "GLBX")
    again = memory.add_alias(OWNER, "globex", "GLBX")

    assert pattern.vendor_aliases == ["GLBX"]
    assert again.id == pattern.id
    assert again.vendor_aliases == ["GLBX"]


def test_update_edits_allowed_fields_only(memory):
    pattern = memory.learn(confirmed())

    updated = memory.update(
        OWNER, pattern.id, {"confidence": 40, "match_count": 999, "payment_processor": "Stripe"}, notes="checked"
    )

    assert updated.confidence == 40
    assert updated.payment_processor == "Stripe"
    assert updated.match_count == 1


def test_update_unknown_pattern(memory):
    with pytest.raises(PatternNotFoundError):
        memory.update(OWNER, "missing", {"confidence": 10})


# ============================================
# MANUAL CONFIRMATION
# ============================================


def test_manual_confirm_learns(service, memory, seed_transaction, seed_document):
    tx = seed_transaction(description="ACH ACME CORP 1000")
    doc = seed_document()

    receipt = service.confirm(OWNER, tx.id, doc.id, "user_1")

    assert receipt.allocation.payment_status == "paid"
    assert receipt.match.was_manual is True
    patterns = memory.list_patterns(OWNER)
    assert [p.vendor_name for p in patterns] == ["Acme Corp"]
    assert patterns[0].confidence == 70


def test_manual_confirm_twice_learns_once(service, memory, seed_transaction, seed_document):
    tx = seed_transaction()
    doc = seed_document()

    service.confirm(OWNER, tx.id, doc.id, "user_1")
    receipt = service.confirm(OWNER, tx.id, doc.id, "user_1")

    assert receipt.already_matched is True
    assert memory.list_patterns(OWNER)[0].match_count == 1


def test_manual_partial_allocation(service, seed_transaction, seed_document):
    tx = seed_transaction(amount=-100.0)
    doc = seed_document()

    receipt = service.confirm(OWNER, tx.id, doc.id, "user_1", allocation_amount=30.0)

    assert receipt.match.match_type == "partial"
    assert receipt.allocation.amount_remaining == 70.0
    assert receipt.allocation.payment_status == "partial"


def test_learning_failure_keeps_confirmation(service, memory, seed_transaction, seed_document):
    tx = seed_transaction()
    doc = seed_document()

    with patch.object(memory, "learn", side_effect=RuntimeError("pattern store down")):
        receipt = service.confirm(OWNER, tx.id, doc.id, "user_1")

    assert receipt.allocation.payment_status == "paid"
    assert service.store.get_transaction(OWNER, tx.id).reconciliation_status == "matched"


def test_suggestions_rank_candidates_with_context(service, memory, seed_transaction, seed_document):
    tx = seed_transaction(description="Payment INV-1000 Acme Corp")
    best = seed_document()
    seed_document(document_number="INV-2000", total=100.0, amount_remaining=100.0)
    seed_document(document_type="invoice", document_number="INV-1000")
    memory.learn(confirmed())

    suggestion = service.suggestions(OWNER, tx.id, limit=5)

    assert suggestion.candidates[0].document.id == best.id
    assert all(c.document.document_type == "bill" for c in suggestion.candidates)
    assert "Acme Corp" in suggestion.pattern_context


def test_suggestions_unknown_transaction(service):
    with pytest.raises(TransactionNotFoundError):
        service.suggestions(OWNER, "missing")
