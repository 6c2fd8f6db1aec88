"""
Undo endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .dependencies import LedgerSystem, get_ledger_system
from .errors import http_error
from .schemas import UndoBatchRequest
from ..exceptions import LedgerError


router = APIRouter()


@router.get("")
async def list_undo_log(
    limit: Optional[int] = 10,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Recent undo snapshots"""
    snapshots = system.undo_capture.get_recent(limit=limit or 10)
    return {
        "snapshots": [
            {
                "batch_id": s.batch_id,
                "status": s.status.value,
                "can_undo": s.can_undo and system.undo_capture.can_undo(s.batch_id),
                "payment_count": s.payment_count,
                "total_amount": str(s.total_amount),
                "primary_vendor": s.primary_vendor,
                "failed_step": s.failed_step,
                "created_at": s.created_at.isoformat()
            }
            for s in snapshots
        ]
    }


@router.get("/statistics")
async def get_undo_statistics(system: LedgerSystem = Depends(get_ledger_system)):
    """Counts of snapshots by status"""
    return system.undo_capture.get_statistics()


@router.post("/{batch_id}")
async def undo_batch(
    batch_id: str,
    request: Optional[UndoBatchRequest] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Reverse a finalized or failed batch"""
    request = request or UndoBatchRequest()
    try:
        snapshot = system.undo_capture.undo_batch(
            batch_id,
            actor_id=request.actor_id or system.config.default_actor,
            reason=request.reason
        )
    except LedgerError as e:
        raise http_error(e)

    return {
        "batch_id": batch_id,
        "status": snapshot.status.value,
        "accounts": snapshot.restore_results,
        "message": "Batch undone successfully"
    }
