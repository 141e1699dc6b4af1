"""Store facade used by the reconciliation services"""

import logging
from dataclasses import dataclass
from recon_gateway.utils.date_utils import utc_now
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from recon_gateway.domain.exceptions import (
    ConcurrentModificationError,
    DocumentNotFoundError,
    InvalidMatchError,
    TransactionNotFoundError,
)
from recon_gateway.domain.ledger import SETTLED_TOLERANCE, allocate_payment, release_payment
from recon_gateway.domain.models import (
    ConfirmedMatch,
    Document,
    MatchHistory,
    PaymentAllocation,
    Transaction,
    TRANSACTION_CATEGORIES,
    VendorPattern,
)
from recon_gateway.infrastructure.database.models import ReconciliationMatchRecord, ReconciliationRunRecord
from recon_gateway.infrastructure.database.repositories import (
    DocumentRepository,
    MatchRepository,
    PatternRepository,
    RunRepository,
    TransactionRepository,
    to_document,
    to_history,
    to_pattern,
    to_transaction,
)

logger = logging.getLogger(__name__)


@dataclass
class ConfirmReceipt:
    """Result of committing a transaction/document pairing"""

    allocation: PaymentAllocation
    match: ConfirmedMatch
    already_matched: bool = False


class SqlReconciliationStore:
    """
    Reads snapshots and commits reconciliation writes.

    Each write method is its own unit of work: it commits on success and
    rolls back on any failure before re-raising.
    """

    def __init__(self, db: Session):
        self.db = db
        self.transactions = TransactionRepository(db)
        self.documents = DocumentRepository(db)
        self.matches = MatchRepository(db)
        self.patterns = PatternRepository(db)
        self.runs = RunRepository(db)

    # ----------------------------------------
    # Reads
    # ----------------------------------------

    def fetch_transactions(self, owner_id: str, transaction_ids: Optional[Sequence[str]], limit: int) -> List[Transaction]:
        if transaction_ids:
            records = self.transactions.list_by_ids(owner_id, transaction_ids)[:limit]
        else:
            records = self.transactions.list_open(owner_id, limit)
        return [to_transaction(record) for record in records]

    def fetch_open_documents(self, owner_id: str, limit: int) -> List[Document]:
        """Unpaid or partially paid bills and invoices"""
        records = self.documents.list_open(owner_id, "bill", limit) + self.documents.list_open(owner_id, "invoice", limit)
        return [to_document(record) for record in records]

    def get_transaction(self, owner_id: str, transaction_id: str) -> Transaction:
        record = self.transactions.get(owner_id, transaction_id)
        if record is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return to_transaction(record)

    def get_document(self, owner_id: str, document_id: str) -> Document:
        record = self.documents.get(owner_id, document_id)
        if record is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")
        return to_document(record)

    def get_run(self, owner_id: str, run_id: str) -> Optional[ReconciliationRunRecord]:
        return self.runs.get(owner_id, run_id)

    # ----------------------------------------
    # Match writes
    # ----------------------------------------

    def confirm_match(
        self,
        owner_id: str,
        transaction_id: str,
        document_id: str,
        *,
        confidence: int,
        match_type: str,
        method: str,
        confirmed_by: str,
        thinking_level: str = "none",
        reasoning: Optional[List[str]] = None,
        allocation_amount: Optional[float] = None,
    ) -> ConfirmReceipt:
        """
        Atomically allocate a transaction to a document.

        Re-reads both rows, so a document settled since the caller's snapshot is
        rejected. The document's version column guards against a concurrent
        writer between this read and the commit.
        """
        try:
            tx_record = self.transactions.get(owner_id, transaction_id, refresh=True)
            if tx_record is None:
                raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
            doc_record = self.documents.get(owner_id, document_id, refresh=True)
            if doc_record is None:
                raise DocumentNotFoundError(f"Document {document_id} not found")

            transaction = to_transaction(tx_record)
            document = to_document(doc_record)

            if transaction.direction != document.expected_direction:
                raise InvalidMatchError(
                    f"A {transaction.direction} transaction cannot settle a {document.document_type}"
                )

            if tx_record.reconciliation_status == "matched":
                if tx_record.matched_document_id == document_id:
                    allocation = PaymentAllocation(
                        amount=0.0,
                        amount_paid=document.amount_paid,
                        amount_remaining=document.amount_remaining,
                        payment_status=document.payment_status,
                        reconciliation_status=document.reconciliation_status,
                    )
                    return ConfirmReceipt(
                        allocation=allocation,
                        match=self._confirmed_match(transaction, document, match_type, method, confidence),
                        already_matched=True,
                    )
                raise InvalidMatchError(f"Transaction {transaction_id} is already matched to another document")

            if allocation_amount is None and document.amount_remaining <= SETTLED_TOLERANCE:
                raise InvalidMatchError(f"Document {document.document_number} is already settled")

            allocation = allocate_payment(document, transaction.amount, allocation_amount, transaction.currency)
            now = utc_now()

            doc_record.amount_paid = round(allocation.amount_paid, 2)
            doc_record.amount_remaining = round(allocation.amount_remaining, 2)
            doc_record.payment_status = allocation.payment_status
            doc_record.reconciliation_status = allocation.reconciliation_status
            doc_record.updated_at = now

            self.documents.add_payment(
                doc_record,
                transaction_id=transaction.id,
                transaction_date=transaction.date,
                transaction_description=transaction.description,
                amount=round(allocation.amount, 2),
                confidence=confidence,
                method=method,
                linked_by=confirmed_by,
                linked_at=now,
            )

            tx_record.reconciliation_status = "matched"
            tx_record.matched_document_id = document.id
            tx_record.matched_document_type = document.document_type
            tx_record.matched_document_number = document.document_number
            tx_record.match_confidence = confidence
            tx_record.match_method = method
            tx_record.matched_by = confirmed_by
            tx_record.matched_at = now

            self.matches.create_match(
                owner_id=owner_id,
                transaction_id=transaction.id,
                document_id=document.id,
                document_type=document.document_type,
                document_number=document.document_number,
                counterparty_name=document.counterparty_name,
                transaction_amount=transaction.absolute_amount,
                document_amount=document.total,
                allocation_amount=round(allocation.amount, 2),
                match_type=match_type,
                confidence=confidence,
                match_method=method,
                thinking_level=thinking_level,
                reasoning=list(reasoning or []),
                confirmed_by=confirmed_by,
            )
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise ConcurrentModificationError(f"Document {document_id} was modified concurrently") from e
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Match confirmed",
            extra={
                "transaction_id": transaction_id,
                "document_id": document_id,
                "method": method,
                "allocation": allocation.amount,
                "payment_status": allocation.payment_status,
            },
        )
        return ConfirmReceipt(
            allocation=allocation,
            match=self._confirmed_match(transaction, document, match_type, method, confidence),
        )

    def mark_suggested(self, owner_id: str, transaction_id: str, document: Document, confidence: int, method: str) -> None:
        """Record a below-threshold match for human review"""
        try:
            record = self.transactions.get(owner_id, transaction_id)
            if record is None:
                raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
            if record.reconciliation_status in ("matched", "categorized"):
                return
            record.reconciliation_status = "suggested"
            record.matched_document_id = document.id
            record.matched_document_type = document.document_type
            record.matched_document_number = document.document_number
            record.match_confidence = confidence
            record.match_method = method
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def unmatch(self, owner_id: str, transaction_id: str, unmatched_by: str) -> Optional[PaymentAllocation]:
        """Reverse a confirmed match and restore the document balance"""
        try:
            tx_record = self.transactions.get(owner_id, transaction_id, refresh=True)
            if tx_record is None:
                raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
            if tx_record.reconciliation_status != "matched" or not tx_record.matched_document_id:
                raise InvalidMatchError(f"Transaction {transaction_id} is not matched")

            allocation = None
            doc_record = self.documents.get(owner_id, tx_record.matched_document_id, refresh=True)
            if doc_record is not None:
                payment = self.documents.find_payment(doc_record, transaction_id)
                if payment is not None:
                    document = to_document(doc_record)
                    allocation = release_payment(document, payment.amount)
                    doc_record.payments.remove(payment)
                    doc_record.amount_paid = round(allocation.amount_paid, 2)
                    doc_record.amount_remaining = round(allocation.amount_remaining, 2)
                    doc_record.payment_status = allocation.payment_status
                    doc_record.reconciliation_status = allocation.reconciliation_status
                    doc_record.updated_at = utc_now()

            (
                self.db.query(ReconciliationMatchRecord)
                .filter(
                    ReconciliationMatchRecord.owner_id == owner_id,
                    ReconciliationMatchRecord.transaction_id == transaction_id,
                    ReconciliationMatchRecord.status == "confirmed",
                )
                .update({"status": "reversed"}, synchronize_session=False)
            )

            tx_record.reconciliation_status = "unmatched"
            tx_record.matched_document_id = None
            tx_record.matched_document_type = None
            tx_record.matched_document_number = None
            tx_record.match_confidence = None
            tx_record.match_method = None
            tx_record.matched_by = None
            tx_record.matched_at = None
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise ConcurrentModificationError(f"Document for {transaction_id} was modified concurrently") from e
        except Exception:
            self.db.rollback()
            raise

        logger.info("Match reversed", extra={"transaction_id": transaction_id, "unmatched_by": unmatched_by})
        return allocation

    def categorize(self, owner_id: str, transaction_id: str, category: str, categorized_by: str) -> Transaction:
        if category not in TRANSACTION_CATEGORIES:
            raise InvalidMatchError(f"Unknown category: {category}")
        try:
            record = self.transactions.get(owner_id, transaction_id)
            if record is None:
                raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
            if record.reconciliation_status == "matched":
                raise InvalidMatchError(f"Transaction {transaction_id} is matched; unmatch it first")
            record.reconciliation_status = "categorized"
            record.category = category
            record.match_method = "manual"
            record.matched_by = categorized_by
            record.matched_at = utc_now()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return to_transaction(record)

    # ----------------------------------------
    # Patterns
    # ----------------------------------------

    def list_patterns(self, owner_id: str) -> List[VendorPattern]:
        return [to_pattern(record) for record in self.patterns.list_by_owner(owner_id)]

    def get_pattern(self, owner_id: str, pattern_id: str) -> Optional[VendorPattern]:
        record = self.patterns.get(owner_id, pattern_id)
        return to_pattern(record) if record else None

    def save_pattern(self, pattern: VendorPattern, notes: Optional[str] = None) -> VendorPattern:
        try:
            record = self.patterns.save(pattern)
            if notes is not None:
                record.notes = notes
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return to_pattern(record)

    def save_learning(self, history: MatchHistory, pattern: VendorPattern) -> VendorPattern:
        """Append the audit record and upsert the pattern together"""
        try:
            self.patterns.add_history(history)
            record = self.patterns.save(pattern)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return to_pattern(record)

    def recent_history(self, owner_id: str, vendor_name: str, limit: int = 5) -> List[MatchHistory]:
        wanted = vendor_name.lower()
        records = [r for r in self.patterns.recent_history(owner_id) if r.vendor_name.lower() == wanted]
        return [to_history(record) for record in records[:limit]]

    # ----------------------------------------
    # Helpers
    # ----------------------------------------

    @staticmethod
    def _confirmed_match(
        transaction: Transaction, document: Document, match_type: str, method: str, confidence: int
    ) -> ConfirmedMatch:
        return ConfirmedMatch(
            owner_id=transaction.owner_id,
            vendor_name=document.counterparty_name,
            document_id=document.id,
            document_number=document.document_number,
            document_amount=document.total,
            document_currency=document.currency,
            document_date=document.document_date,
            transaction_id=transaction.id,
            transaction_amount=transaction.absolute_amount,
            transaction_currency=transaction.currency,
            transaction_date=transaction.date,
            transaction_description=transaction.description,
            match_type=match_type,
            was_manual=method == "manual",
            confidence=confidence,
        )


def run_to_dict(record: ReconciliationRunRecord) -> Dict[str, Any]:
    return {
        "run_id": record.id,
        "status": record.status,
        "events": list(record.events or []),
        "stats": record.stats,
        "error": record.error_message,
        "totals": {
            "transactions": record.total_transactions,
            "bills": record.total_bills,
            "invoices": record.total_invoices,
        },
    }
