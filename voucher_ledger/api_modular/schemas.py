"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field

from ..currency import Money, Currency


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (GHS, USD, etc.)")

    def to_money(self) -> Money:
        return Money(Decimal(self.amount), Currency.from_code(self.currency))

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


# Account schemas
class CreateAccountRequest(BaseModel):
    name: str
    kind: str = Field(..., description="Account kind (budget_line, bank)")
    currency: str = Field(..., description="Currency code")
    allocated_amount: str = Field(..., description="Decimal as string")
    total_spend_to_date: str = "0"
    account_id: Optional[str] = None
    code: Optional[str] = None
    actor_id: Optional[str] = None


class ManualTransactionRequest(BaseModel):
    direction: str = Field(..., description="Direction (INFLOW, OUTFLOW)")
    amount: str = Field(..., description="Positive decimal as string")
    category: str = "Uncategorized"
    description: str = ""
    reference: Optional[str] = None
    counterparty: Optional[str] = None
    actor_id: Optional[str] = None


# Payment schemas
class StagePaymentRequest(BaseModel):
    vendor: str
    invoice_no: str = ""
    description: str = ""
    pre_tax_amount: str = Field(..., description="Full invoice amount, decimal as string")
    currency: str = Field(..., description="Currency code")
    budget_line: str = Field(..., description="Budget line id or display reference")
    fx_rate: str = "1"
    procurement_type: str = ""
    vat_decision: str = "NO"
    payment_mode: str = "BNK TRNSF"
    bank_account: Optional[str] = None
    payment_percentage: Optional[str] = None
    cash_flow_category: Optional[str] = None
    actor_id: Optional[str] = None


# Finalization schemas
class FinalizeBatchRequest(BaseModel):
    payment_ids: List[str]
    actor_id: Optional[str] = None
    voucher_reference: Optional[str] = None
    cash_flow_category: Optional[str] = None
    note: Optional[str] = None


class UndoBatchRequest(BaseModel):
    actor_id: Optional[str] = None
    reason: str = ""
