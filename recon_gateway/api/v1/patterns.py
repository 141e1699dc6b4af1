"""Vendor pattern administration endpoints"""

from dataclasses import asdict
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from recon_gateway.api.v1.schemas import AliasRequest, PatternListResponse, PatternSchema, PatternUpdateRequest
from recon_gateway.infrastructure.database.session import get_db
from recon_gateway.infrastructure.database.store import SqlReconciliationStore
from recon_gateway.services.pattern_memory import PatternMemory
from recon_gateway.domain.exceptions import PatternNotFoundError

router = APIRouter()


@router.get("/patterns", response_model=PatternListResponse)
def list_patterns(
    owner_id: str = Query(..., min_length=1, description="Owner identifier"),
    db: Session = Depends(get_db),
):
    """Learned vendor patterns, most matched first"""
    patterns = PatternMemory(SqlReconciliationStore(db)).list_patterns(owner_id)
    return PatternListResponse(
        owner_id=owner_id,
        patterns=[PatternSchema.model_validate(asdict(p)) for p in patterns],
    )


@router.post("/patterns/alias", response_model=PatternSchema)
def add_alias(
    request_body: AliasRequest,
    db: Session = Depends(get_db),
):
    """Teach an alternate vendor name; creates the pattern if needed"""
    pattern = PatternMemory(SqlReconciliationStore(db)).add_alias(
        request_body.owner_id, request_body.vendor_name, request_body.alias
    )
    return PatternSchema.model_validate(asdict(pattern))


@router.patch("/patterns/{pattern_id}", response_model=PatternSchema)
def update_pattern(
    pattern_id: str,
    request_body: PatternUpdateRequest,
    db: Session = Depends(get_db),
):
    """Edit the user-adjustable fields of a pattern"""
    fields = request_body.model_dump(exclude_unset=True, exclude={"owner_id", "notes"})
    try:
        pattern = PatternMemory(SqlReconciliationStore(db)).update(
            request_body.owner_id, pattern_id, fields, notes=request_body.notes
        )
    except PatternNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return PatternSchema.model_validate(asdict(pattern))
