"""Pytest fixtures for testing"""

import asyncio
import pytest
from datetime import date, timedelta
from typing import Callable, Dict, Generator, List, Optional
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from recon_gateway.api.main import create_app
from recon_gateway.api.dependencies import get_progress_sink, get_reasoning_client
from recon_gateway.config import Settings
from recon_gateway.infrastructure.database.models import Base, DocumentRecord, TransactionRecord
from recon_gateway.infrastructure.database.session import get_db
from recon_gateway.domain.exceptions import ReasoningServiceError
from recon_gateway.domain.models import AnalysisItem, Bill, Invoice, ReasoningVerdict, Transaction
from recon_gateway.services.progress import DatabaseProgressSink


# Test database: one shared in-memory connection
TEST_DATABASE_URL = "sqlite://"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False}, poolclass=StaticPool)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

OWNER = "owner_1"
TODAY = date(2024, 3, 15)


class FakeReasoningClient:
    """Records calls and answers from a per-transaction responder"""

    model = "fake-reasoning"

    def __init__(self, responder: Optional[Callable[[AnalysisItem, str], Optional[ReasoningVerdict]]] = None):
        self.responder = responder or (lambda item, effort: None)
        self.calls: List[Dict] = []
        self.fail_with: Optional[str] = None
        self.in_flight = 0
        self.peak_in_flight = 0

    async def match(self, items, effort, pattern_context=None):
        self.calls.append({
            "ids": [item.transaction.id for item in items],
            "effort": effort,
            "context": dict(pattern_context or {}),
        })
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            # Yield so sibling calls in the same wave overlap
            await asyncio.sleep(0)
        finally:
            self.in_flight -= 1
        if self.fail_with:
            raise ReasoningServiceError(self.fail_with)
        verdicts = []
        for item in items:
            verdict = self.responder(item, effort)
            if verdict is not None:
                verdicts.append(verdict)
        return verdicts


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def reasoning_client() -> FakeReasoningClient:
    return FakeReasoningClient()


@pytest.fixture
def progress_sink() -> DatabaseProgressSink:
    return DatabaseProgressSink(TestingSessionLocal)


@pytest.fixture
def test_settings() -> Settings:
    """Engine settings with the inter-wave delay disabled"""
    return Settings(ai_wave_delay_seconds=0.0)


@pytest.fixture
def client(db: Session, reasoning_client: FakeReasoningClient, progress_sink: DatabaseProgressSink) -> TestClient:
    """Create FastAPI test client with test database"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_reasoning_client] = lambda: reasoning_client
    app.dependency_overrides[get_progress_sink] = lambda: progress_sink
    return TestClient(app)


# ============================================
# DOMAIN BUILDERS (no database)
# ============================================


@pytest.fixture
def make_transaction() -> Callable[..., Transaction]:
    def build(**overrides) -> Transaction:
        fields = dict(
            id="tx_1",
            owner_id=OWNER,
            account_id="acct_1",
            date=TODAY,
            description="Payment",
            amount=-100.0,
            direction="debit",
            currency="USD",
        )
        fields.update(overrides)
        return Transaction(**fields)

    return build


@pytest.fixture
def make_bill() -> Callable[..., Bill]:
    def build(**overrides) -> Bill:
        fields = dict(
            id="bill_1",
            owner_id=OWNER,
            document_number="INV-1000",
            counterparty_name="Acme Corp",
            document_date=TODAY - timedelta(days=5),
            total=100.0,
            amount_remaining=100.0,
            currency="USD",
        )
        fields.update(overrides)
        return Bill(**fields)

    return build


@pytest.fixture
def make_invoice() -> Callable[..., Invoice]:
    def build(**overrides) -> Invoice:
        fields = dict(
            id="inv_1",
            owner_id=OWNER,
            document_number="SO-5000",
            counterparty_name="Globex Ltd",
            document_date=TODAY - timedelta(days=5),
            total=100.0,
            amount_remaining=100.0,
            currency="USD",
        )
        fields.update(overrides)
        return Invoice(**fields)

    return build


# ============================================
# DATABASE SEEDERS
# ============================================


@pytest.fixture
def seed_transaction(db: Session) -> Callable[..., TransactionRecord]:
    def seed(**overrides) -> TransactionRecord:
        fields = dict(
            owner_id=OWNER,
            account_id="acct_1",
            date=TODAY,
            description="Payment",
            amount=-100.0,
            direction="debit",
            currency="USD",
            reconciliation_status="unmatched",
        )
        fields.update(overrides)
        record = TransactionRecord(**fields)
        db.add(record)
        db.commit()
        return record

    return seed


@pytest.fixture
def seed_document(db: Session) -> Callable[..., DocumentRecord]:
    def seed(**overrides) -> DocumentRecord:
        fields = dict(
            owner_id=OWNER,
            document_type="bill",
            document_number="INV-1000",
            counterparty_name="Acme Corp",
            document_date=TODAY - timedelta(days=5),
            due_date=TODAY,
            total=100.0,
            amount_paid=0.0,
            amount_remaining=100.0,
            currency="USD",
            payment_status="unpaid",
            reconciliation_status="unmatched",
        )
        fields.update(overrides)
        record = DocumentRecord(**fields)
        db.add(record)
        db.commit()
        return record

    return seed
