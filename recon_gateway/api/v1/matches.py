"""Manual match endpoints: confirm, unmatch, categorize, suggestions"""

import logging
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from recon_gateway.api.v1.schemas import (
    CandidateSchema,
    CategorizeRequest,
    CategorizeResponse,
    ConfirmRequest,
    ConfirmResponse,
    SuggestionResponse,
    UnmatchRequest,
    UnmatchResponse,
)
from recon_gateway.api.dependencies import get_request_id
from recon_gateway.infrastructure.database.session import get_db
from recon_gateway.infrastructure.database.store import SqlReconciliationStore
from recon_gateway.services.confirmation import MatchConfirmationService
from recon_gateway.services.pattern_memory import PatternMemory
from recon_gateway.domain.exceptions import (
    ConcurrentModificationError,
    DocumentNotFoundError,
    InvalidMatchError,
    TransactionNotFoundError,
)

router = APIRouter()


def _service(db: Session) -> MatchConfirmationService:
    store = SqlReconciliationStore(db)
    return MatchConfirmationService(store, PatternMemory(store))


@router.post("/matches/confirm", response_model=ConfirmResponse)
def confirm_match(
    request_body: ConfirmRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Confirm a transaction/document pairing chosen by a user.

    Applies the payment to the document balance and teaches pattern memory.
    Confirming the same pairing twice is a no-op.
    """
    request_id = get_request_id(request)

    try:
        receipt = _service(db).confirm(
            owner_id=request_body.owner_id,
            transaction_id=request_body.transaction_id,
            document_id=request_body.document_id,
            user_id=request_body.user_id or request_body.owner_id,
            allocation_amount=request_body.allocation_amount,
        )
    except (TransactionNotFoundError, DocumentNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidMatchError as e:
        logging.warning(f"Invalid match: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=422, detail=str(e))
    except ConcurrentModificationError as e:
        logging.warning(f"Concurrent modification: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=409, detail=str(e))

    return ConfirmResponse(
        transaction_id=request_body.transaction_id,
        document_id=request_body.document_id,
        allocation_amount=receipt.allocation.amount,
        amount_paid=receipt.allocation.amount_paid,
        amount_remaining=receipt.allocation.amount_remaining,
        payment_status=receipt.allocation.payment_status,
        already_matched=receipt.already_matched,
    )


@router.post("/matches/unmatch", response_model=UnmatchResponse)
def unmatch(
    request_body: UnmatchRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """Reverse a confirmed match and restore the document balance"""
    request_id = get_request_id(request)

    try:
        allocation = _service(db).unmatch(
            request_body.owner_id,
            request_body.transaction_id,
            request_body.user_id or request_body.owner_id,
        )
    except TransactionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidMatchError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ConcurrentModificationError as e:
        logging.warning(f"Concurrent modification: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=409, detail=str(e))

    return UnmatchResponse(
        transaction_id=request_body.transaction_id,
        document_amount_remaining=allocation.amount_remaining if allocation else None,
        document_payment_status=allocation.payment_status if allocation else None,
    )


@router.post("/transactions/{transaction_id}/categorize", response_model=CategorizeResponse)
def categorize_transaction(
    transaction_id: str,
    request_body: CategorizeRequest,
    db: Session = Depends(get_db),
):
    """Mark a transaction with no matching document as categorized"""
    try:
        transaction = _service(db).categorize(
            request_body.owner_id,
            transaction_id,
            request_body.category,
            request_body.user_id or request_body.owner_id,
        )
    except TransactionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidMatchError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return CategorizeResponse(
        transaction_id=transaction.id,
        reconciliation_status=transaction.reconciliation_status,
        category=request_body.category,
    )


@router.get("/transactions/{transaction_id}/suggestions", response_model=SuggestionResponse)
def get_suggestions(
    transaction_id: str,
    owner_id: str = Query(..., min_length=1, description="Owner identifier"),
    limit: int = Query(3, ge=1, le=20, description="Maximum candidates"),
    db: Session = Depends(get_db),
):
    """Rule-based candidate documents for one transaction, best first"""
    try:
        suggestion = _service(db).suggestions(owner_id, transaction_id, limit=limit)
    except TransactionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    candidates = [
        CandidateSchema(
            document_id=c.document.id,
            document_type=c.document.document_type,
            document_number=c.document.document_number,
            counterparty_name=c.document.counterparty_name,
            document_date=c.document.document_date,
            due_date=c.document.due_date,
            amount_remaining=c.document.amount_remaining,
            currency=c.document.currency,
            confidence=c.confidence,
            score=c.score,
            match_type=c.match_type,
            reasons=c.reasons,
            warnings=c.warnings,
        )
        for c in suggestion.candidates
    ]

    return SuggestionResponse(
        transaction_id=transaction_id,
        candidates=candidates,
        pattern_context=suggestion.pattern_context,
    )
