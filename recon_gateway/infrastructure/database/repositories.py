"""Data access layer for reconciliation entities"""

from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from recon_gateway.infrastructure.database.models import (
    DocumentPaymentRecord,
    DocumentRecord,
    MatchHistoryRecord,
    ReconciliationMatchRecord,
    ReconciliationRunRecord,
    TransactionRecord,
    VendorPatternRecord,
)
from recon_gateway.domain.currency import normalize_currency
from recon_gateway.utils.date_utils import utc_now
from recon_gateway.domain.models import (
    DelayRange,
    Document,
    MatchHistory,
    Transaction,
    VendorPattern,
    document_class,
)

OPEN_TRANSACTION_STATUSES = ("unmatched", "suggested")
OPEN_PAYMENT_STATUSES = ("unpaid", "partial")


# ============================================
# RECORD <-> DOMAIN MAPPING
# ============================================


def to_transaction(record: TransactionRecord) -> Transaction:
    """Normalize a stored transaction once, at ingestion"""
    return Transaction(
        id=record.id,
        owner_id=record.owner_id,
        account_id=record.account_id or "",
        date=record.date,
        description=record.description or record.description_original or "",
        amount=record.amount,
        direction=record.direction,
        currency=normalize_currency(record.currency),
        reconciliation_status=record.reconciliation_status or "unmatched",
        matched_document_id=record.matched_document_id,
        reference=record.reference,
    )


def to_document(record: DocumentRecord) -> Document:
    """Normalize a stored bill/invoice into its tagged variant"""
    cls = document_class(record.document_type)
    total = record.total or 0.0
    remaining = record.amount_remaining if record.amount_remaining is not None else total
    return cls(
        id=record.id,
        owner_id=record.owner_id,
        document_number=record.document_number or "Unknown",
        counterparty_name=record.counterparty_name or "Unknown",
        document_date=record.document_date or record.created_at.date(),
        due_date=record.due_date,
        total=total,
        amount_remaining=remaining,
        amount_paid=record.amount_paid or 0.0,
        currency=normalize_currency(record.currency),
        payment_status=record.payment_status or "unpaid",
        reconciliation_status=record.reconciliation_status or "unmatched",
        version=record.version,
    )


def to_pattern(record: VendorPatternRecord) -> VendorPattern:
    delay_range = None
    if record.delay_min is not None and record.delay_max is not None:
        delay_range = DelayRange(min=record.delay_min, max=record.delay_max)
    return VendorPattern(
        id=record.id,
        owner_id=record.owner_id,
        vendor_name=record.vendor_name,
        vendor_aliases=list(record.vendor_aliases or []),
        transaction_keywords=list(record.transaction_keywords or []),
        typical_payment_delay=record.typical_payment_delay,
        payment_delay_range=delay_range,
        payment_processor=record.payment_processor,
        invoice_currency=record.invoice_currency,
        payment_currency=record.payment_currency,
        match_count=record.match_count or 0,
        confidence=record.confidence if record.confidence is not None else 50,
        last_matched_at=record.last_matched_at,
    )


def to_history(record: MatchHistoryRecord) -> MatchHistory:
    return MatchHistory(
        owner_id=record.owner_id,
        vendor_name=record.vendor_name,
        document_id=record.document_id,
        document_number=record.document_number or "",
        document_amount=record.document_amount,
        document_currency=record.document_currency or "USD",
        document_date=record.document_date,
        transaction_id=record.transaction_id,
        transaction_amount=record.transaction_amount,
        transaction_currency=record.transaction_currency or "USD",
        transaction_date=record.transaction_date,
        transaction_description=record.transaction_description or "",
        match_type=record.match_type,
        amount_difference=record.amount_difference,
        days_difference=record.days_difference,
        was_manual=record.was_manual,
        confidence=record.confidence,
        matched_at=record.matched_at,
    )


# ============================================
# REPOSITORIES
# ============================================


class TransactionRepository:
    """Repository for bank transactions"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, owner_id: str, transaction_id: str, refresh: bool = False) -> Optional[TransactionRecord]:
        record = self.db.get(TransactionRecord, transaction_id, populate_existing=refresh)
        if record is None or record.owner_id != owner_id:
            return None
        return record

    def list_by_ids(self, owner_id: str, transaction_ids: Sequence[str]) -> List[TransactionRecord]:
        """Fetch specific transactions, silently dropping other owners' rows"""
        records: List[TransactionRecord] = []
        # Chunk IN clauses to keep parameter lists small
        for start in range(0, len(transaction_ids), 30):
            chunk = list(transaction_ids[start:start + 30])
            records.extend(
                self.db.query(TransactionRecord)
                .filter(TransactionRecord.id.in_(chunk), TransactionRecord.owner_id == owner_id)
                .all()
            )
        order = {tx_id: index for index, tx_id in enumerate(transaction_ids)}
        return sorted(records, key=lambda r: order.get(r.id, len(order)))

    def list_open(self, owner_id: str, limit: int) -> List[TransactionRecord]:
        """Most recent unmatched or suggested transactions"""
        return (
            self.db.query(TransactionRecord)
            .filter(TransactionRecord.owner_id == owner_id)
            .filter(
                or_(
                    TransactionRecord.reconciliation_status.is_(None),
                    TransactionRecord.reconciliation_status.in_(OPEN_TRANSACTION_STATUSES),
                )
            )
            .order_by(TransactionRecord.date.desc(), TransactionRecord.id)
            .limit(limit)
            .all()
        )


class DocumentRepository:
    """Repository for bills and invoices"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, owner_id: str, document_id: str, refresh: bool = False) -> Optional[DocumentRecord]:
        record = self.db.get(DocumentRecord, document_id, populate_existing=refresh)
        if record is None or record.owner_id != owner_id:
            return None
        return record

    def list_open(self, owner_id: str, document_type: str, limit: int) -> List[DocumentRecord]:
        return (
            self.db.query(DocumentRecord)
            .filter(
                DocumentRecord.owner_id == owner_id,
                DocumentRecord.document_type == document_type,
                DocumentRecord.payment_status.in_(OPEN_PAYMENT_STATUSES),
            )
            .order_by(DocumentRecord.document_date, DocumentRecord.id)
            .limit(limit)
            .all()
        )

    def add_payment(self, record: DocumentRecord, **fields: Any) -> DocumentPaymentRecord:
        payment = DocumentPaymentRecord(document_id=record.id, **fields)
        record.payments.append(payment)
        return payment

    def find_payment(self, record: DocumentRecord, transaction_id: str) -> Optional[DocumentPaymentRecord]:
        return next((p for p in record.payments if p.transaction_id == transaction_id), None)


class MatchRepository:
    """Repository for confirmed match audit records"""

    def __init__(self, db: Session):
        self.db = db

    def create_match(self, **fields: Any) -> ReconciliationMatchRecord:
        record = ReconciliationMatchRecord(**fields)
        self.db.add(record)
        self.db.flush()
        return record


class PatternRepository:
    """Repository for vendor patterns and match history"""

    def __init__(self, db: Session):
        self.db = db

    def list_by_owner(self, owner_id: str) -> List[VendorPatternRecord]:
        return (
            self.db.query(VendorPatternRecord)
            .filter(VendorPatternRecord.owner_id == owner_id)
            .order_by(VendorPatternRecord.match_count.desc(), VendorPatternRecord.id)
            .all()
        )

    def get(self, owner_id: str, pattern_id: str) -> Optional[VendorPatternRecord]:
        record = self.db.get(VendorPatternRecord, pattern_id)
        if record is None or record.owner_id != owner_id:
            return None
        return record

    def save(self, pattern: VendorPattern) -> VendorPatternRecord:
        """Insert or update from the domain pattern"""
        record = self.get(pattern.owner_id, pattern.id) if pattern.id else None
        if record is None:
            record = VendorPatternRecord(owner_id=pattern.owner_id)
            self.db.add(record)

        record.vendor_name = pattern.vendor_name
        record.vendor_aliases = list(pattern.vendor_aliases)
        record.transaction_keywords = list(pattern.transaction_keywords)
        record.typical_payment_delay = pattern.typical_payment_delay
        record.delay_min = pattern.payment_delay_range.min if pattern.payment_delay_range else None
        record.delay_max = pattern.payment_delay_range.max if pattern.payment_delay_range else None
        record.payment_processor = pattern.payment_processor
        record.invoice_currency = pattern.invoice_currency
        record.payment_currency = pattern.payment_currency
        record.match_count = pattern.match_count
        record.confidence = pattern.confidence
        record.last_matched_at = pattern.last_matched_at
        record.updated_at = utc_now()
        self.db.flush()
        return record

    def add_history(self, history: MatchHistory) -> MatchHistoryRecord:
        record = MatchHistoryRecord(
            owner_id=history.owner_id,
            vendor_name=history.vendor_name,
            document_id=history.document_id,
            document_number=history.document_number,
            document_amount=history.document_amount,
            document_currency=history.document_currency,
            document_date=history.document_date,
            transaction_id=history.transaction_id,
            transaction_amount=history.transaction_amount,
            transaction_currency=history.transaction_currency,
            transaction_date=history.transaction_date,
            transaction_description=history.transaction_description,
            match_type=history.match_type,
            amount_difference=history.amount_difference,
            days_difference=history.days_difference,
            was_manual=history.was_manual,
            confidence=history.confidence,
            matched_at=history.matched_at,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def recent_history(self, owner_id: str, limit: int = 100) -> List[MatchHistoryRecord]:
        return (
            self.db.query(MatchHistoryRecord)
            .filter(MatchHistoryRecord.owner_id == owner_id)
            .order_by(MatchHistoryRecord.matched_at.desc())
            .limit(limit)
            .all()
        )


class RunRepository:
    """Repository for reconciliation progress feeds"""

    def __init__(self, db: Session):
        self.db = db

    def create(self, run_id: str, owner_id: str, totals: Dict[str, int]) -> ReconciliationRunRecord:
        record = self.db.get(ReconciliationRunRecord, run_id)
        if record is None:
            record = ReconciliationRunRecord(id=run_id, owner_id=owner_id)
            self.db.add(record)
        record.status = "running"
        record.events = []
        record.total_transactions = totals.get("transactions", 0)
        record.total_bills = totals.get("bills", 0)
        record.total_invoices = totals.get("invoices", 0)
        record.updated_at = utc_now()
        self.db.flush()
        return record

    def append_events(self, run_id: str, events: List[Dict[str, Any]]) -> None:
        record = self.db.get(ReconciliationRunRecord, run_id)
        if record is None:
            return
        # Reassign so the JSON column is flagged dirty
        record.events = list(record.events or []) + events
        record.updated_at = utc_now()
        self.db.flush()

    def finish(self, run_id: str, status: str, stats: Optional[Dict[str, Any]] = None, error: Optional[str] = None) -> None:
        record = self.db.get(ReconciliationRunRecord, run_id)
        if record is None:
            return
        record.status = status
        record.stats = stats
        record.error_message = error
        record.updated_at = utc_now()
        self.db.flush()

    def get(self, owner_id: str, run_id: str) -> Optional[ReconciliationRunRecord]:
        record = self.db.get(ReconciliationRunRecord, run_id)
        if record is None or record.owner_id != owner_id:
            return None
        return record
