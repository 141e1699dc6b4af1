"""POST /v1/reconcile - tiered reconciliation run, plus its live progress feed"""

import logging
from dataclasses import asdict
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from recon_gateway.api.v1.schemas import ReconcileRequest, ReconcileResponse, RunResponse
from recon_gateway.api.dependencies import get_progress_sink, get_reasoning_client, get_request_id
from recon_gateway.infrastructure.database.session import get_db
from recon_gateway.infrastructure.database.store import SqlReconciliationStore, run_to_dict
from recon_gateway.infrastructure.clients.reasoning import ReasoningClient
from recon_gateway.services.progress import DatabaseProgressSink
from recon_gateway.services.reconcile_engine import ReconciliationEngine
from recon_gateway.domain.exceptions import InvalidReconcileRequestError, ReasoningServiceError

router = APIRouter()


@router.post("/reconcile", response_model=ReconcileResponse)
async def run_reconciliation(
    request_body: ReconcileRequest,
    request: Request,
    db: Session = Depends(get_db),
    reasoning_client: ReasoningClient = Depends(get_reasoning_client),
    progress_sink: DatabaseProgressSink = Depends(get_progress_sink),
):
    """
    Reconcile open bank transactions against open bills and invoices.

    Flow:
    1. Fetch open transactions and documents
    2. Quick scan: rule-based scoring, auto-confirm confident matches
    3. AI matching for the rest, deep investigation for uncertain ones
    4. Learn vendor patterns from committed matches
    5. Return per-transaction outcomes and run statistics

    Reasoning failures never fail the run; affected transactions come back
    as needs_review.
    """
    request_id = get_request_id(request)

    try:
        engine = ReconciliationEngine(SqlReconciliationStore(db), reasoning_client, progress_sink)
        result = await engine.run(
            owner_id=request_body.owner_id,
            transaction_ids=request_body.transaction_ids,
            max_transactions=request_body.max_transactions,
            auto_confirm_threshold=request_body.auto_confirm_threshold,
            run_id=request_body.run_id,
        )
        return ReconcileResponse.model_validate(asdict(result))

    except InvalidReconcileRequestError as e:
        db.rollback()
        logging.warning(f"Invalid reconcile request: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=422, detail=str(e))

    except ReasoningServiceError as e:
        db.rollback()
        logging.error(f"Reasoning API error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Reasoning service unavailable")

    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/reconcile/runs/{run_id}", response_model=RunResponse)
def get_run_progress(
    run_id: str,
    owner_id: str = Query(..., min_length=1, description="Owner identifier"),
    db: Session = Depends(get_db),
):
    """Read the live progress feed of a run started with a run_id"""
    record = SqlReconciliationStore(db).get_run(owner_id, run_id)
    if not record:
        raise HTTPException(status_code=404, detail="Run not found")

    return RunResponse.model_validate(run_to_dict(record))
