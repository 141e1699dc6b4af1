"""Pydantic schemas for API request/response validation"""

from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

Category = Literal["bank_fees", "transfer", "subscription", "interest", "refund", "payroll", "tax", "other"]


class ReconcileRequest(BaseModel):
    """Request body for POST /v1/reconcile"""

    owner_id: str = Field(..., min_length=1, description="Owner whose ledger is reconciled")
    transaction_ids: Optional[List[str]] = Field(None, description="Restrict the run to these transactions")
    max_transactions: Optional[int] = Field(None, ge=1, description="Cap on transactions processed")
    auto_confirm_threshold: Optional[int] = Field(None, ge=0, le=100, description="Confidence needed to auto-confirm")
    run_id: Optional[str] = Field(None, min_length=1, max_length=64, description="Client-supplied progress feed id")


class ProgressEventSchema(BaseModel):
    ts: float
    type: str
    text: str
    step: str = ""


class StepSchema(BaseModel):
    name: str
    status: str
    count: int
    details: List[str]
    time_ms: int


class FxDetailsSchema(BaseModel):
    from_currency: str
    to_currency: str
    rate: float
    converted_amount: float


class TransactionMatchSchema(BaseModel):
    """Resolved outcome for one transaction"""

    transaction_id: str
    classification: str
    confidence: int
    reasoning: List[str]
    match_type: str = "none"
    document_id: Optional[str] = None
    document_type: Optional[str] = None
    document_number: Optional[str] = None
    counterparty_name: Optional[str] = None
    fx_details: Optional[FxDetailsSchema] = None
    thinking_level: str = "none"
    auto_confirmed: bool = False
    rule_based_score: Optional[int] = None


class StatsSchema(BaseModel):
    total_transactions: int
    quick_matches: int
    ai_matches: int
    deep_matches: int
    bank_fees: int
    no_match: int
    auto_confirmed: int
    needs_review: int
    match_rate: int


class ReconcileResponse(BaseModel):
    """Response for POST /v1/reconcile"""

    steps: List[StepSchema]
    matches: List[TransactionMatchSchema]
    stats: StatsSchema
    patterns_learned: List[str]
    elapsed_ms: int
    model: str
    run_id: Optional[str] = None
    stopped_early: bool = False
    remaining_estimate: int = 0
    events: List[ProgressEventSchema] = []


class RunResponse(BaseModel):
    """Response for GET /v1/reconcile/runs/{run_id}"""

    run_id: str
    status: str
    events: List[ProgressEventSchema]
    stats: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    totals: Dict[str, int]


class CandidateSchema(BaseModel):
    """Single rule-based candidate document"""

    document_id: str
    document_type: str
    document_number: str
    counterparty_name: str
    document_date: date
    due_date: Optional[date] = None
    amount_remaining: float
    currency: str
    confidence: int
    score: int
    match_type: str
    reasons: List[str]
    warnings: List[str]


class SuggestionResponse(BaseModel):
    """Response for GET /v1/transactions/{transaction_id}/suggestions"""

    transaction_id: str
    candidates: List[CandidateSchema]
    pattern_context: Dict[str, str]


class ConfirmRequest(BaseModel):
    """Request body for POST /v1/matches/confirm"""

    owner_id: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1)
    document_id: str = Field(..., min_length=1)
    user_id: Optional[str] = Field(None, description="Who confirmed; defaults to the owner")
    allocation_amount: Optional[float] = Field(None, gt=0, description="Explicit amount to apply")


class ConfirmResponse(BaseModel):
    transaction_id: str
    document_id: str
    allocation_amount: float
    amount_paid: float
    amount_remaining: float
    payment_status: str
    already_matched: bool = False


class UnmatchRequest(BaseModel):
    """Request body for POST /v1/matches/unmatch"""

    owner_id: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1)
    user_id: Optional[str] = None


class UnmatchResponse(BaseModel):
    transaction_id: str
    reconciliation_status: str = "unmatched"
    document_amount_remaining: Optional[float] = None
    document_payment_status: Optional[str] = None


class CategorizeRequest(BaseModel):
    """Request body for POST /v1/transactions/{transaction_id}/categorize"""

    owner_id: str = Field(..., min_length=1)
    category: Category
    user_id: Optional[str] = None


class CategorizeResponse(BaseModel):
    transaction_id: str
    reconciliation_status: str
    category: str


class DelayRangeSchema(BaseModel):
    min: int
    max: int


class PatternSchema(BaseModel):
    """Learned vendor pattern"""

    id: str
    vendor_name: str
    vendor_aliases: List[str]
    transaction_keywords: List[str]
    typical_payment_delay: Optional[float] = None
    payment_delay_range: Optional[DelayRangeSchema] = None
    payment_processor: Optional[str] = None
    invoice_currency: Optional[str] = None
    payment_currency: Optional[str] = None
    match_count: int
    confidence: int
    last_matched_at: Optional[datetime] = None


class PatternListResponse(BaseModel):
    owner_id: str
    patterns: List[PatternSchema]


class AliasRequest(BaseModel):
    """Request body for POST /v1/patterns/alias"""

    owner_id: str = Field(..., min_length=1)
    vendor_name: str = Field(..., min_length=1)
    alias: str = Field(..., min_length=1)


class PatternUpdateRequest(BaseModel):
    """Request body for PATCH /v1/patterns/{pattern_id}"""

    model_config = ConfigDict(extra="forbid")

    owner_id: str = Field(..., min_length=1)
    vendor_aliases: Optional[List[str]] = None
    transaction_keywords: Optional[List[str]] = None
    typical_payment_delay: Optional[float] = Field(None, ge=0)
    payment_processor: Optional[str] = None
    confidence: Optional[int] = Field(None, ge=0, le=100)
    notes: Optional[str] = None
