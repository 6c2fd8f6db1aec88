"""
Finalization endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse

from .dependencies import LedgerSystem, get_ledger_system
from .errors import http_error
from .schemas import FinalizeBatchRequest
from ..exceptions import LedgerError
from ..finalization import BatchMetadata


router = APIRouter()


@router.post("")
async def finalize_batch(
    request: FinalizeBatchRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Finalize a batch of staged payments"""
    metadata = BatchMetadata(
        actor_id=request.actor_id,
        voucher_reference=request.voucher_reference,
        cash_flow_category=request.cash_flow_category,
        note=request.note
    )
    try:
        result = system.pipeline.finalize_batch(request.payment_ids, metadata)
    except LedgerError as e:
        raise http_error(e)

    if not result.success:
        return JSONResponse(status_code=500, content=result.to_dict())
    return result.to_dict()


@router.get("/failures")
async def list_failures(
    limit: Optional[int] = 50,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Failed finalizations, most recent first"""
    return {"failures": system.pipeline.list_failures(limit=limit)}


@router.get("/{batch_id}")
async def get_finalization_status(
    batch_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Current state of a finalization batch"""
    batch = system.pipeline.get_finalization_status(batch_id)
    if not batch:
        raise HTTPException(status_code=404, detail="Batch not found")
    return batch.to_dict()
