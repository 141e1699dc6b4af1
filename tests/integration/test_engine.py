"""Integration tests for the tiered reconciliation engine"""

import httpx
import pytest
from datetime import date, timedelta
from recon_gateway.config import Settings
from recon_gateway.domain.exceptions import ConfigurationError, InvalidReconcileRequestError
from recon_gateway.domain.models import ReasoningVerdict, VendorPattern
from recon_gateway.infrastructure.clients.reasoning import ReasoningClient
from recon_gateway.infrastructure.database.models import Base, TransactionRecord
from recon_gateway.infrastructure.database.store import SqlReconciliationStore
from recon_gateway.services.reconcile_engine import (
    BUDGET_REASON,
    DEEP_OVERFLOW_REASON,
    FALLBACK_REASON,
    ReconciliationEngine,
)

OWNER = "owner_1"
TODAY = date(2024, 3, 15)


def verdict(item, classification, confidence, document_id=None, reasoning=None):
    return ReasoningVerdict(
        transaction_id=item.transaction.id,
        classification=classification,
        confidence=confidence,
        reasoning=reasoning or [f"{classification} at {confidence}"],
        match_type="exact" if document_id else "none",
        document_id=document_id,
    )


@pytest.fixture
def store(db) -> SqlReconciliationStore:
    return SqlReconciliationStore(db)


@pytest.fixture
def make_engine(store, reasoning_client, test_settings):
    def build(config=None, **kwargs) -> ReconciliationEngine:
        return ReconciliationEngine(store, kwargs.pop("client", reasoning_client), config=config or test_settings, **kwargs)

    return build


def status_of(db, transaction_id):
    return db.get(TransactionRecord, transaction_id, populate_existing=True).reconciliation_status


# ============================================
# QUICK SCAN
# ============================================


async def test_quick_scan_auto_confirms_and_learns(db, store, make_engine, reasoning_client, seed_transaction, seed_document):
    tx = seed_transaction(description="Payment INV-2024-001 Acme Corp", amount=-1000.0)
    bill = seed_document(document_number="INV-2024-001", total=1000.0, amount_remaining=1000.0)

    result = await make_engine().run(OWNER)

    match = result.matches[0]
    assert match.classification == "payment_match"
    assert match.auto_confirmed is True
    assert match.document_id == bill.id
    assert match.thinking_level == "none"
    assert match.confidence >= 93
    assert reasoning_client.calls == []

    assert [s.name for s in result.steps] == ["quick_scan", "ai_matching", "deep_investigation", "learning"]
    assert result.steps[1].status == "skipped"
    assert result.stats.quick_matches == 1
    assert result.stats.auto_confirmed == 1
    assert result.stats.match_rate == 100
    assert result.patterns_learned == ["Acme Corp"]

    assert status_of(db, tx.id) == "matched"
    assert store.list_patterns(OWNER)[0].confidence == 90


async def test_settled_document_is_not_confirmed_twice(db, make_engine, seed_transaction, seed_document):
    """Two identical payments outscore the threshold; only the first may settle the bill"""
    first = seed_transaction(id="tx-a", description="Payment INV-1000 Acme Corp")
    second = seed_transaction(id="tx-b", description="Payment INV-1000 Acme Corp")
    seed_document()

    result = await make_engine().run(OWNER, auto_confirm_threshold=90)

    by_id = {m.transaction_id: m for m in result.matches}
    assert by_id["tx-a"].auto_confirmed is True
    assert by_id["tx-b"].auto_confirmed is False
    assert by_id["tx-b"].classification == "needs_review"
    assert any("already settled" in reason for reason in by_id["tx-b"].reasoning)
    assert status_of(db, first.id) == "matched"
    assert status_of(db, second.id) == "unmatched"
    assert result.stats.auto_confirmed == 1
    assert result.stats.needs_review == 1


async def test_foreign_currency_match_settles_in_document_currency(db, store, make_engine, seed_transaction, seed_document):
    tx = seed_transaction(description="Payment INV-7777 Globex Ltd", amount=100.0, direction="credit", currency="USD")
    invoice = seed_document(
        document_type="invoice",
        document_number="INV-7777",
        counterparty_name="Globex Ltd",
        total=14950.0,
        amount_remaining=14950.0,
        currency="JPY",
    )

    result = await make_engine().run(OWNER)

    match = result.matches[0]
    assert match.auto_confirmed is True
    assert match.match_type == "fx_converted"
    assert status_of(db, tx.id) == "matched"

    document = store.get_document(OWNER, invoice.id)
    assert document.amount_remaining == 0.0
    assert document.amount_paid == pytest.approx(14950.0)
    assert document.payment_status == "paid"


async def test_lower_threshold_never_confirms_fewer(db, make_engine, seed_transaction, seed_document):
    """Same ledger at falling thresholds: 96%, 77% and 65% rule matches"""

    def seed_ledger():
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(table.delete())
        db.commit()
        db.expunge_all()
        seed_transaction(id="tx-strong", description="Payment INV-2001 Acme Corp", amount=-100.0)
        seed_document(id="bill-strong", document_number="INV-2001", total=100.0, amount_remaining=100.0)
        seed_transaction(id="tx-ref", description="Payment INV-3003", amount=-400.0)
        seed_document(id="bill-ref", document_number="INV-3003", counterparty_name="Umbrella", total=400.0, amount_remaining=400.0)
        seed_transaction(id="tx-name", description="Payment Initech", amount=-300.0)
        seed_document(id="bill-name", document_number="Q-9001", counterparty_name="Initech", total=300.0, amount_remaining=300.0)

    counts = []
    for threshold in (93, 80, 60):
        seed_ledger()
        result = await make_engine().run(OWNER, auto_confirm_threshold=threshold)
        counts.append(result.stats.auto_confirmed)

    assert counts == sorted(counts)
    assert counts[0] >= 1
    assert counts[-1] > counts[0]


async def test_no_open_transactions(make_engine):
    result = await make_engine().run(OWNER)

    assert result.matches == []
    assert result.stats.total_transactions == 0
    assert result.stats.match_rate == 100
    assert result.events[-1].text == "No unmatched transactions found"


# ============================================
# AI TIERS
# ============================================


async def test_ai_results_are_routed(make_engine, reasoning_client, seed_transaction):
    for tx_id in ("tx-fee", "tx-transfer", "tx-none", "tx-unsure"):
        seed_transaction(id=tx_id, description=f"Line {tx_id}", direction="credit", amount=12.5)

    def responder(item, effort):
        tx_id = item.transaction.id
        if effort == "high":
            return verdict(item, "needs_review", 50)
        return {
            "tx-fee": verdict(item, "bank_fee", 90),
            "tx-transfer": verdict(item, "transfer", 80),
            "tx-none": verdict(item, "no_match", 0),
            "tx-unsure": verdict(item, "payment_match", 40),
        }[tx_id]

    reasoning_client.responder = responder

    result = await make_engine().run(OWNER)

    by_id = {m.transaction_id: m for m in result.matches}
    assert by_id["tx-fee"].classification == "bank_fee"
    assert by_id["tx-transfer"].classification == "transfer"
    assert by_id["tx-none"].classification == "no_match"
    assert by_id["tx-unsure"].classification == "needs_review"
    assert by_id["tx-unsure"].thinking_level == "high"

    assert [call["effort"] for call in reasoning_client.calls] == ["low", "high"]
    assert reasoning_client.calls[1]["ids"] == ["tx-unsure"]
    assert result.stats.bank_fees == 1
    assert result.stats.no_match == 2
    assert result.stats.needs_review == 1
    assert result.stats.match_rate == 50


async def test_ai_batches_respect_concurrency_cap(make_engine, reasoning_client, seed_transaction):
    for i in range(95):
        seed_transaction(id=f"tx-{i:03d}", description=f"Deposit {i}", direction="credit", amount=10.0 + i)
    reasoning_client.responder = lambda item, effort: verdict(item, "no_match", 0)

    result = await make_engine().run(OWNER)

    low_calls = [c for c in reasoning_client.calls if c["effort"] == "low"]
    assert len(low_calls) == 10
    assert all(len(c["ids"]) <= 10 for c in low_calls)
    assert reasoning_client.peak_in_flight == 4
    assert result.stats.no_match == 95


async def test_ai_matches_confirm_or_suggest(db, store, make_engine, reasoning_client, seed_transaction, seed_document):
    sure = seed_transaction(id="tx-sure", description="Wire 8812", amount=-480.0)
    maybe = seed_transaction(id="tx-maybe", description="Card 5521", amount=-290.0)
    globex = seed_document(id="bill-globex", document_number="PO-77", counterparty_name="Globex Logistics", total=500.0, amount_remaining=500.0)
    initech = seed_document(id="bill-initech", document_number="Q-55", counterparty_name="Initech", total=300.0, amount_remaining=300.0)
    store.save_pattern(VendorPattern(owner_id=OWNER, vendor_name="Globex Logistics", match_count=1, confidence=80))

    def responder(item, effort):
        if item.transaction.id == "tx-sure":
            return verdict(item, "payment_match", 95, document_id=globex.id)
        return verdict(item, "payment_match", 70, document_id=initech.id)

    reasoning_client.responder = responder

    result = await make_engine().run(OWNER)

    by_id = {m.transaction_id: m for m in result.matches}
    assert by_id["tx-sure"].auto_confirmed is True
    assert by_id["tx-sure"].document_number == "PO-77"
    assert by_id["tx-maybe"].auto_confirmed is False
    assert "Globex Logistics" in reasoning_client.calls[0]["context"]

    assert status_of(db, sure.id) == "matched"
    assert db.get(TransactionRecord, sure.id).match_method == "auto_low"
    assert status_of(db, maybe.id) == "suggested"
    assert store.get_document(OWNER, globex.id).payment_status == "partial"

    assert result.stats.ai_matches == 2
    assert result.stats.auto_confirmed == 1
    assert result.stats.needs_review == 1
    assert result.patterns_learned == ["Globex Logistics"]
    assert store.list_patterns(OWNER)[0].match_count == 2


async def test_reasoning_failure_becomes_needs_review(make_engine, reasoning_client, seed_transaction):
    seed_transaction(id="tx-1", direction="credit", amount=10.0)
    reasoning_client.fail_with = "Reasoning API error: 503"

    result = await make_engine().run(OWNER)

    match = result.matches[0]
    assert match.classification == "needs_review"
    assert match.reasoning == [FALLBACK_REASON, "Reasoning API error: 503"]
    assert result.stats.needs_review == 1


async def test_malformed_reasoning_response(make_engine, seed_transaction):
    seed_transaction(id="tx-1", direction="credit", amount=10.0)
    client = ReasoningClient(
        base_url="http://reasoning.test",
        model="mock-model",
        max_retries=1,
        backoff_base=0,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"text": "not json"})),
    )

    result = await make_engine(client=client).run(OWNER)

    assert result.model == "mock-model"
    assert result.matches[0].classification == "needs_review"
    assert result.matches[0].reasoning[0] == FALLBACK_REASON
    assert result.matches[0].thinking_level == "low"


async def test_non_scalar_document_id_degrades_that_item_only(make_engine, seed_transaction):
    seed_transaction(id="tx-1", direction="credit", amount=10.0)
    seed_transaction(id="tx-2", direction="credit", amount=11.0)
    body = {
        "matches": [
            {"transactionId": "tx-1", "classification": "payment_match", "documentId": ["inv-x"], "confidence": 80},
            {"transactionId": "tx-2", "classification": "bank_fee", "confidence": 90, "reasoning": ["Monthly fee"]},
        ]
    }
    client = ReasoningClient(
        base_url="http://reasoning.test",
        model="mock-model",
        max_retries=1,
        backoff_base=0,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)),
    )

    result = await make_engine(client=client).run(OWNER)

    by_id = {m.transaction_id: m for m in result.matches}
    assert by_id["tx-1"].classification == "needs_review"
    assert by_id["tx-1"].document_id is None
    assert any("Malformed document id" in reason for reason in by_id["tx-1"].reasoning)
    assert by_id["tx-2"].classification == "bank_fee"
    assert result.stats.needs_review == 1
    assert result.stats.bank_fees == 1


async def test_unusable_verdict_falls_back_for_that_item(make_engine, reasoning_client, seed_transaction):
    seed_transaction(id="tx-1", direction="credit", amount=10.0)
    seed_transaction(id="tx-2", direction="credit", amount=11.0)

    def responder(item, effort):
        if item.transaction.id == "tx-1":
            return verdict(item, "payment_match", 80, document_id=["inv-x"])
        return verdict(item, "bank_fee", 90)

    reasoning_client.responder = responder

    result = await make_engine().run(OWNER)

    by_id = {m.transaction_id: m for m in result.matches}
    assert by_id["tx-1"].classification == "needs_review"
    assert by_id["tx-1"].reasoning[0] == FALLBACK_REASON
    assert by_id["tx-1"].reasoning[-1].startswith("Unusable verdict")
    assert by_id["tx-2"].classification == "bank_fee"


async def test_missing_verdict_becomes_needs_review(make_engine, reasoning_client, seed_transaction):
    seed_transaction(id="tx-1", direction="credit", amount=10.0)
    seed_transaction(id="tx-2", direction="credit", amount=11.0)
    reasoning_client.responder = lambda item, effort: verdict(item, "bank_fee", 90) if item.transaction.id == "tx-1" else None

    result = await make_engine().run(OWNER)

    by_id = {m.transaction_id: m for m in result.matches}
    assert by_id["tx-1"].classification == "bank_fee"
    assert by_id["tx-2"].classification == "needs_review"
    assert by_id["tx-2"].reasoning[-1] == "No verdict returned for this transaction"


async def test_two_hundred_transaction_run(make_engine, reasoning_client, seed_transaction, seed_document):
    """50 rule matches, 100 unconfirmable AI matches, 40 escalations and 10 no-matches"""
    for i in range(50):
        seed_transaction(id=f"tx-quick-{i:03d}", description=f"Payment INV-10{i:02d} Acme Corp", amount=-(1000.0 + i))
        seed_document(document_number=f"INV-10{i:02d}", total=1000.0 + i, amount_remaining=1000.0 + i)

    older = TODAY - timedelta(days=1)
    groups = (("tx-res", 100), ("tx-esc", 40), ("tx-nom", 10))
    for prefix, count in groups:
        for i in range(count):
            seed_transaction(id=f"{prefix}-{i:03d}", date=older, description=f"Deposit {prefix} {i}", direction="credit", amount=10.0 + i)
    for i in range(5):
        seed_transaction(id=f"tx-old-{i}", date=TODAY - timedelta(days=30), direction="credit", amount=5.0)

    def responder(item, effort):
        tx_id = item.transaction.id
        if effort == "high":
            return verdict(item, "needs_review", 50)
        if tx_id.startswith("tx-res"):
            return verdict(item, "payment_match", 75, reasoning=["Matches an unlisted document"])
        if tx_id.startswith("tx-esc"):
            return verdict(item, "payment_match", 30)
        return verdict(item, "no_match", 0)

    reasoning_client.responder = responder

    result = await make_engine().run(OWNER, max_transactions=500)

    ids = [m.transaction_id for m in result.matches]
    assert len(ids) == 200
    assert len(set(ids)) == 200
    assert not any(tx_id.startswith("tx-old") for tx_id in ids)

    low_calls = [c for c in reasoning_client.calls if c["effort"] == "low"]
    high_calls = [c for c in reasoning_client.calls if c["effort"] == "high"]
    assert len(low_calls) == 15
    assert all(len(c["ids"]) <= 10 for c in low_calls)
    assert len(high_calls) == 10
    assert all(len(c["ids"]) == 1 for c in high_calls)

    overflow = [m for m in result.matches if m.reasoning == [DEEP_OVERFLOW_REASON]]
    assert len(overflow) == 30

    stats = result.stats
    assert stats.total_transactions == 200
    assert stats.quick_matches == 50
    assert stats.ai_matches == 100
    assert stats.auto_confirmed == 50
    assert stats.no_match == 10
    assert stats.needs_review == 140
    assert stats.match_rate == 75
    assert result.stopped_early is False


async def test_time_budget_abandons_remaining_waves(make_engine, reasoning_client, seed_transaction):
    now = [0.0]

    def responder(item, effort):
        now[0] += 3.0
        return verdict(item, "no_match", 0)

    reasoning_client.responder = responder
    for i in range(6):
        seed_transaction(id=f"tx-{i}", direction="credit", amount=10.0 + i)

    config = Settings(ai_wave_delay_seconds=0.0, ai_concurrency=1, ai_batch_size=2, run_budget_seconds=10.0)
    result = await make_engine(config=config, clock=lambda: now[0]).run(OWNER)

    assert len(reasoning_client.calls) == 2
    assert result.stopped_early is True
    assert result.remaining_estimate == 2
    abandoned = [m for m in result.matches if m.reasoning == [BUDGET_REASON]]
    assert len(abandoned) == 2
    assert len(result.matches) == 6


# ============================================
# PROGRESS AND VALIDATION
# ============================================


async def test_progress_is_persisted_with_run_id(db, store, make_engine, progress_sink, seed_transaction, seed_document):
    seed_transaction(description="Payment INV-2024-001 Acme Corp", amount=-1000.0)
    seed_document(document_number="INV-2024-001", total=1000.0, amount_remaining=1000.0)

    result = await make_engine(progress_sink=progress_sink).run(OWNER, run_id="run-1")

    db.expire_all()
    run = store.get_run(OWNER, "run-1")
    assert run.status == "completed"
    assert run.total_transactions == 1
    assert run.total_bills == 1
    assert len(run.events) == len(result.events)
    assert run.events[0]["type"] == "step"
    assert run.events[0]["step"] == "quick_scan"
    assert run.stats["auto_confirmed"] == 1
    assert run.stats["stopped_early"] is False
    assert store.get_run("owner_2", "run-1") is None


async def test_without_run_id_events_stay_in_memory(db, store, make_engine, progress_sink, seed_transaction):
    seed_transaction(direction="credit", amount=10.0)

    result = await make_engine(progress_sink=progress_sink).run(OWNER)

    assert result.run_id is None
    assert result.events
    assert all(event.ts > 0 for event in result.events)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"owner_id": ""},
        {"owner_id": OWNER, "max_transactions": 0},
        {"owner_id": OWNER, "auto_confirm_threshold": 101},
        {"owner_id": OWNER, "transaction_ids": ["tx-1", ""]},
        {"owner_id": OWNER, "run_id": "x" * 65},
    ],
)
async def test_invalid_requests_are_rejected(make_engine, reasoning_client, kwargs):
    with pytest.raises(InvalidReconcileRequestError):
        await make_engine().run(**kwargs)
    assert reasoning_client.calls == []


def test_invalid_configuration(store, reasoning_client):
    with pytest.raises(ConfigurationError):
        ReconciliationEngine(store, reasoning_client, config=Settings(ai_batch_size=0))
