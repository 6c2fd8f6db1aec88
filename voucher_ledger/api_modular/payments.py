"""
Staged payment endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import LedgerSystem, get_ledger_system
from .errors import http_error
from .schemas import StagePaymentRequest
from ..currency import Currency
from ..exceptions import LedgerError
from ..payments import PaymentStatus, StagedPayment


router = APIRouter()


def _payment_view(payment: StagedPayment) -> dict:
    return {
        "id": payment.id,
        "vendor": payment.vendor,
        "invoice_no": payment.invoice_no,
        "description": payment.description,
        "currency": payment.currency.code,
        "budget_line": payment.budget_line,
        "bank_account": payment.bank_account,
        "procurement_type": payment.procurement_type,
        "payment_mode": payment.payment_mode,
        "payment_percentage": str(payment.payment_percentage) if payment.payment_percentage else None,
        "pre_tax_amount": str(payment.pre_tax_amount),
        "tranche_pre_tax": str(payment.tranche_pre_tax),
        "wht_amount": str(payment.wht_amount),
        "vat_amount": str(payment.vat_amount),
        "levy_amount": str(payment.levy_amount),
        "fee_amount": str(payment.fee_amount),
        "net_payable": str(payment.net_payable),
        "total_amount": str(payment.total_amount),
        "paid_amount": str(payment.paid_amount),
        "remaining_amount": str(payment.remaining_amount),
        "status": payment.status.value,
        "settlement_status": payment.settlement_status.value,
        "payment_reference": payment.payment_reference,
        "created_at": payment.created_at.isoformat()
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def stage_payment(
    request: StagePaymentRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Stage a payment and compute its taxes"""
    try:
        payment = system.payment_store.stage_payment(
            vendor=request.vendor,
            invoice_no=request.invoice_no,
            description=request.description,
            pre_tax_amount=request.pre_tax_amount,
            currency=Currency.from_code(request.currency),
            budget_line=request.budget_line,
            fx_rate=request.fx_rate,
            procurement_type=request.procurement_type,
            vat_decision=request.vat_decision,
            payment_mode=request.payment_mode,
            bank_account=request.bank_account,
            payment_percentage=request.payment_percentage,
            cash_flow_category=request.cash_flow_category,
            actor_id=request.actor_id
        )
    except LedgerError as e:
        raise http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return _payment_view(payment)


@router.get("")
async def list_payments(
    status: Optional[str] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """List payments, optionally by status (staged, finalized)"""
    payment_status = None
    if status:
        try:
            payment_status = PaymentStatus(status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown payment status: {status}")
    payments = system.payment_store.list_payments(status=payment_status)
    return {"payments": [_payment_view(p) for p in payments]}


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get payment details"""
    payment = system.payment_store.get_payment(payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    return _payment_view(payment)
