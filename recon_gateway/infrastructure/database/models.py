"""SQLAlchemy ORM models for the reconciliation store"""

import uuid
from sqlalchemy import Column, String, Boolean, Float, DateTime, Date, Integer, ForeignKey, Text, JSON
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class DocumentRecord(Base):
    """Bill or invoice awaiting payment"""

    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_id = Column(Text, nullable=False, index=True)
    document_type = Column(String(16), nullable=False)  # bill | invoice
    document_number = Column(Text, nullable=True)
    counterparty_name = Column(Text, nullable=True)  # vendor for bills, customer for invoices
    document_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    total = Column(Float, nullable=False, default=0.0)
    amount_paid = Column(Float, nullable=False, default=0.0)
    amount_remaining = Column(Float, nullable=True)
    currency = Column(String(3), nullable=True)
    payment_status = Column(String(16), nullable=False, default="unpaid")
    reconciliation_status = Column(String(16), nullable=False, default="unmatched")
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    payments = relationship("DocumentPaymentRecord", back_populates="document", cascade="all, delete-orphan")


class DocumentPaymentRecord(Base):
    """Transaction amount linked to a document"""

    __tablename__ = "document_payments"

    id = Column(String(36), primary_key=True, default=_new_id)
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    transaction_id = Column(String(36), nullable=False, index=True)
    transaction_date = Column(Date, nullable=True)
    transaction_description = Column(Text, nullable=True)
    amount = Column(Float, nullable=False)
    confidence = Column(Integer, nullable=False)
    method = Column(Text, nullable=False)  # manual | auto_rule | auto_low | auto_high
    linked_by = Column(Text, nullable=False)
    linked_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    document = relationship("DocumentRecord", back_populates="payments")


class TransactionRecord(Base):
    """Bank statement line"""

    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_id = Column(Text, nullable=False, index=True)
    account_id = Column(Text, nullable=True)
    date = Column(Date, nullable=False)
    description = Column(Text, nullable=True)
    description_original = Column(Text, nullable=True)
    reference = Column(Text, nullable=True)
    amount = Column(Float, nullable=False)
    direction = Column(String(8), nullable=False)  # debit | credit
    currency = Column(String(3), nullable=True)
    reconciliation_status = Column(String(16), nullable=True, default="unmatched")
    category = Column(Text, nullable=True)
    matched_document_id = Column(String(36), nullable=True)
    matched_document_type = Column(String(16), nullable=True)
    matched_document_number = Column(Text, nullable=True)
    match_confidence = Column(Integer, nullable=True)
    match_method = Column(Text, nullable=True)
    matched_by = Column(Text, nullable=True)
    matched_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ReconciliationMatchRecord(Base):
    """Immutable record of a confirmed allocation"""

    __tablename__ = "reconciliation_matches"

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_id = Column(Text, nullable=False, index=True)
    transaction_id = Column(String(36), nullable=False, index=True)
    document_id = Column(String(36), nullable=False)
    document_type = Column(String(16), nullable=False)
    document_number = Column(Text, nullable=True)
    counterparty_name = Column(Text, nullable=True)
    transaction_amount = Column(Float, nullable=False)
    document_amount = Column(Float, nullable=False)
    allocation_amount = Column(Float, nullable=False)
    match_type = Column(String(16), nullable=False)
    confidence = Column(Integer, nullable=False)
    match_method = Column(Text, nullable=False)
    thinking_level = Column(String(8), nullable=True)
    reasoning = Column(JSON, nullable=True)
    status = Column(String(16), nullable=False, default="confirmed")
    confirmed_by = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class VendorPatternRecord(Base):
    """Learned per-vendor statistics"""

    __tablename__ = "vendor_patterns"

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_id = Column(Text, nullable=False, index=True)
    vendor_name = Column(Text, nullable=False)
    vendor_aliases = Column(JSON, nullable=False, default=list)
    transaction_keywords = Column(JSON, nullable=False, default=list)
    typical_payment_delay = Column(Float, nullable=True)
    delay_min = Column(Integer, nullable=True)
    delay_max = Column(Integer, nullable=True)
    payment_processor = Column(Text, nullable=True)
    invoice_currency = Column(String(3), nullable=True)
    payment_currency = Column(String(3), nullable=True)
    match_count = Column(Integer, nullable=False, default=0)
    confidence = Column(Integer, nullable=False, default=50)
    notes = Column(Text, nullable=True)
    last_matched_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)


class MatchHistoryRecord(Base):
    """Append-only audit of confirmed matches used for learning"""

    __tablename__ = "match_history"

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_id = Column(Text, nullable=False, index=True)
    vendor_name = Column(Text, nullable=False)
    document_id = Column(String(36), nullable=False)
    document_number = Column(Text, nullable=True)
    document_amount = Column(Float, nullable=False)
    document_currency = Column(String(3), nullable=True)
    document_date = Column(Date, nullable=True)
    transaction_id = Column(String(36), nullable=False)
    transaction_amount = Column(Float, nullable=False)
    transaction_currency = Column(String(3), nullable=True)
    transaction_date = Column(Date, nullable=True)
    transaction_description = Column(Text, nullable=True)
    match_type = Column(String(16), nullable=False)
    amount_difference = Column(Float, nullable=False)
    days_difference = Column(Integer, nullable=False)
    was_manual = Column(Boolean, nullable=False)
    confidence = Column(Integer, nullable=False)
    matched_at = Column(DateTime(timezone=True), nullable=False)


class ReconciliationRunRecord(Base):
    """Live progress feed for one reconciliation run"""

    __tablename__ = "reconciliation_runs"

    id = Column(String(64), primary_key=True)
    owner_id = Column(Text, nullable=False, index=True)
    status = Column(String(16), nullable=False, default="running")  # running | completed | error
    events = Column(JSON, nullable=False, default=list)
    stats = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    total_transactions = Column(Integer, nullable=False, default=0)
    total_bills = Column(Integer, nullable=False, default=0)
    total_invoices = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)
