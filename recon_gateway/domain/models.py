"""Domain models - pure Python dataclasses representing business entities"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import ClassVar, Dict, List, Optional

DIRECTIONS = ("debit", "credit")
DOCUMENT_TYPES = ("bill", "invoice")
CLASSIFICATIONS = ("payment_match", "bank_fee", "transfer", "no_match", "needs_review")
EFFORT_LEVELS = ("low", "high")
TRANSACTION_CATEGORIES = ("bank_fees", "transfer", "subscription", "interest", "refund", "payroll", "tax", "other")


@dataclass
class Document:
    """Open bill or invoice, normalized once at ingestion"""

    id: str
    owner_id: str
    document_number: str
    counterparty_name: str
    document_date: date
    total: float
    amount_remaining: float
    currency: str = "USD"
    due_date: Optional[date] = None
    amount_paid: float = 0.0
    payment_status: str = "unpaid"  # unpaid | partial | paid | overpaid
    reconciliation_status: str = "unmatched"
    version: int = 1

    document_type: ClassVar[str] = ""
    expected_direction: ClassVar[str] = ""


@dataclass
class Bill(Document):
    """Money we owe - settled by debits"""

    document_type: ClassVar[str] = "bill"
    expected_direction: ClassVar[str] = "debit"


@dataclass
class Invoice(Document):
    """Money we are owed - settled by credits"""

    document_type: ClassVar[str] = "invoice"
    expected_direction: ClassVar[str] = "credit"


def document_class(document_type: str) -> type:
    """Resolve the tagged variant for a stored document type"""
    if document_type == "bill":
        return Bill
    if document_type == "invoice":
        return Invoice
    raise ValueError(f"Unknown document type: {document_type}")


@dataclass
class Transaction:
    """Bank ledger line"""

    id: str
    owner_id: str
    account_id: str
    date: date
    description: str
    amount: float  # sign is informational, direction carries money in/out
    direction: str  # "debit" or "credit"
    currency: str = "USD"
    reconciliation_status: str = "unmatched"  # unmatched | suggested | matched | categorized
    matched_document_id: Optional[str] = None
    reference: Optional[str] = None

    @property
    def absolute_amount(self) -> float:
        return abs(self.amount)

    @property
    def relevant_document_type(self) -> str:
        return "invoice" if self.direction == "credit" else "bill"


@dataclass
class MatchSignals:
    """Per-component breakdown behind a candidate's score"""

    reference_score: int
    amount_score: int
    identity_score: int
    time_score: int
    context_score: int
    amount_difference: float
    amount_difference_percent: float
    name_similarity: float
    days_from_document: int
    cross_currency: bool
    transaction_currency: str
    document_currency: str
    reference_found: Optional[str] = None
    fee_pattern_detected: Optional[str] = None
    original_amount_before_fees: Optional[float] = None
    days_from_due: Optional[int] = None
    fx_rate_used: Optional[float] = None
    converted_amount: Optional[float] = None


@dataclass
class MatchCandidate:
    """Scored (transaction, document) pair. Lives for one pass only."""

    transaction: Transaction
    document: Document
    score: int
    confidence: int
    match_type: str  # exact | partial | fee_adjusted | fx_converted | split
    reasons: List[str]
    warnings: List[str]
    signals: MatchSignals


@dataclass
class AnalysisItem:
    """Transaction deferred past quick scan, with its top rule candidates"""

    transaction: Transaction
    candidates: List[MatchCandidate]


@dataclass
class DelayRange:
    min: int
    max: int


@dataclass
class VendorPattern:
    """Learned per-counterparty statistics"""

    owner_id: str
    vendor_name: str
    id: Optional[str] = None
    vendor_aliases: List[str] = field(default_factory=list)
    transaction_keywords: List[str] = field(default_factory=list)
    typical_payment_delay: Optional[float] = None
    payment_delay_range: Optional[DelayRange] = None
    payment_processor: Optional[str] = None
    invoice_currency: Optional[str] = None
    payment_currency: Optional[str] = None
    match_count: int = 0
    confidence: int = 50
    last_matched_at: Optional[datetime] = None


@dataclass
class ConfirmedMatch:
    """Input to pattern learning - one confirmed transaction/document pairing"""

    owner_id: str
    vendor_name: str
    document_id: str
    document_number: str
    document_amount: float
    document_currency: str
    document_date: date
    transaction_id: str
    transaction_amount: float
    transaction_currency: str
    transaction_date: date
    transaction_description: str
    match_type: str
    was_manual: bool
    confidence: int


@dataclass
class MatchHistory:
    """Write-once audit record of a confirmed match"""

    owner_id: str
    vendor_name: str
    document_id: str
    document_number: str
    document_amount: float
    document_currency: str
    document_date: date
    transaction_id: str
    transaction_amount: float
    transaction_currency: str
    transaction_date: date
    transaction_description: str
    match_type: str
    amount_difference: float
    days_difference: int
    was_manual: bool
    confidence: int
    matched_at: datetime


@dataclass
class PaymentAllocation:
    """Ledger effect of applying a payment to a document"""

    amount: float
    amount_paid: float
    amount_remaining: float
    payment_status: str
    reconciliation_status: str


@dataclass
class FxDetails:
    from_currency: str
    to_currency: str
    rate: float
    converted_amount: float


@dataclass
class TransactionMatch:
    """Resolved outcome for one input transaction"""

    transaction_id: str
    classification: str  # payment_match | bank_fee | transfer | no_match | needs_review
    confidence: int
    reasoning: List[str]
    match_type: str = "none"
    document_id: Optional[str] = None
    document_type: Optional[str] = None
    document_number: Optional[str] = None
    counterparty_name: Optional[str] = None
    fx_details: Optional[FxDetails] = None
    thinking_level: str = "none"  # none | low | high
    auto_confirmed: bool = False
    rule_based_score: Optional[int] = None


@dataclass
class ReasoningVerdict:
    """One per-transaction answer from the reasoning service"""

    transaction_id: str
    classification: str
    confidence: int
    reasoning: List[str]
    match_type: str = "none"
    document_id: Optional[str] = None
    document_ids: List[str] = field(default_factory=list)
    document_type: Optional[str] = None


@dataclass
class ProgressEvent:
    ts: float  # epoch milliseconds
    type: str  # step | analyze | search | match | fx | confirm | classify | escalate | learn | info
    text: str
    step: str = ""


@dataclass
class ReconcileStep:
    name: str  # quick_scan | ai_matching | deep_investigation | learning
    status: str  # completed | skipped
    count: int
    details: List[str]
    time_ms: int


@dataclass
class ReconcileStats:
    total_transactions: int = 0
    quick_matches: int = 0
    ai_matches: int = 0
    deep_matches: int = 0
    bank_fees: int = 0
    no_match: int = 0
    auto_confirmed: int = 0
    needs_review: int = 0
    match_rate: int = 100


@dataclass
class ReconcileResult:
    steps: List[ReconcileStep]
    matches: List[TransactionMatch]
    stats: ReconcileStats
    patterns_learned: List[str]
    elapsed_ms: int
    model: str
    run_id: Optional[str] = None
    stopped_early: bool = False
    remaining_estimate: int = 0
    events: List[ProgressEvent] = field(default_factory=list)


@dataclass
class Suggestion:
    """Rule candidates for one transaction plus learned context"""

    transaction: Transaction
    candidates: List[MatchCandidate]
    pattern_context: Dict[str, str] = field(default_factory=dict)
