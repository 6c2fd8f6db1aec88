"""
Balance account endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import LedgerSystem, get_ledger_system
from .errors import http_error
from .schemas import CreateAccountRequest, ManualTransactionRequest, MoneyModel
from ..accounts import AccountKind, BalanceAccount
from ..currency import Currency
from ..exceptions import LedgerError
from ..ledger import TransactionDirection


router = APIRouter()


def _account_view(account: BalanceAccount) -> dict:
    return {
        "id": account.id,
        "name": account.name,
        "kind": account.kind.value,
        "code": account.code,
        "currency": account.currency.code,
        "allocated_amount": str(account.allocated_amount),
        "total_spend_to_date": str(account.total_spend_to_date),
        "current_balance": MoneyModel.from_money(account.balance).dict(),
        "status": account.status.value,
        "utilization_rate": str(account.utilization_rate),
        "is_active": account.is_active,
        "version": account.version,
        "last_batch_id": account.last_batch_id,
        "updated_at": account.updated_at.isoformat()
    }


def _parse_kind(kind: Optional[str]) -> Optional[AccountKind]:
    if kind is None:
        return None
    try:
        return AccountKind(kind)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown account kind: {kind}")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_account(
    request: CreateAccountRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Create a budget line or bank account"""
    kind = _parse_kind(request.kind)
    try:
        account = system.account_store.create_account(
            name=request.name,
            kind=kind,
            currency=Currency.from_code(request.currency),
            allocated_amount=request.allocated_amount,
            total_spend_to_date=request.total_spend_to_date,
            account_id=request.account_id,
            code=request.code,
            actor_id=request.actor_id
        )
    except LedgerError as e:
        raise http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "account_id": account.id,
        "message": "Account created successfully"
    }


@router.get("")
async def list_accounts(
    kind: Optional[str] = None,
    active_only: bool = False,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """List accounts, optionally filtered by kind"""
    accounts = system.account_store.list_accounts(kind=_parse_kind(kind), active_only=active_only)
    return {"accounts": [_account_view(a) for a in accounts]}


@router.get("/resolve")
async def resolve_reference(
    reference: str,
    kind: Optional[str] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Resolve an account id or display string"""
    account_id = system.resolver.resolve(reference, kind=_parse_kind(kind))
    if account_id is None:
        raise HTTPException(status_code=404, detail=f"Account not found: {reference}")
    return {"reference": reference, "account_id": account_id}


@router.get("/banks/summary")
async def get_bank_summary(system: LedgerSystem = Depends(get_ledger_system)):
    """Totals across bank accounts"""
    return system.account_store.get_bank_summary()


@router.get("/{account_id}")
async def get_account(
    account_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get account details"""
    account = system.account_store.get_account(account_id)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return _account_view(account)


@router.get("/{account_id}/ledger")
async def get_account_ledger(
    account_id: str,
    limit: Optional[int] = 50,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Ledger entries for an account, newest first"""
    if not system.account_store.get_account(account_id):
        raise HTTPException(status_code=404, detail="Account not found")

    entries = system.ledger.get_account_ledger(account_id, limit=limit)
    return {
        "entries": [
            {
                "id": entry.id,
                "amount": str(entry.amount),
                "balance_before": str(entry.balance_before),
                "balance_after": str(entry.balance_after),
                "source": entry.source.value,
                "sequence": entry.sequence,
                "category": entry.category,
                "description": entry.description,
                "reference": entry.reference,
                "batch_id": entry.batch_id,
                "actor_id": entry.actor_id,
                "created_at": entry.created_at.isoformat()
            }
            for entry in entries
        ],
        "conservation": system.ledger.verify_conservation(account_id)
    }


@router.post("/{account_id}/transactions", status_code=status.HTTP_201_CREATED)
async def record_transaction(
    account_id: str,
    request: ManualTransactionRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Record a manual inflow or outflow"""
    try:
        direction = TransactionDirection(request.direction.strip().upper())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown direction: {request.direction}")

    try:
        result = system.ledger.record_manual_transaction(
            account_id=account_id,
            direction=direction,
            amount=request.amount,
            category=request.category,
            description=request.description,
            reference=request.reference,
            actor_id=request.actor_id or system.config.default_actor,
            counterparty=request.counterparty
        )
    except LedgerError as e:
        raise http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return result.to_dict()
