"""
Staged Payments Module

Payments awaiting finalization. Staging computes the tax fields for the
tranche being paid now and for the full invoice, so finalization can track
cumulative settlement of partial payments.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import Currency, to_decimal
from .exceptions import ValidationError
from .rates import RateTable
from .storage import StorageInterface, StorageRecord
from .tax import TaxBreakdown, TaxCalculator, TaxableTransaction

PAYMENTS_TABLE = "staged_payments"

PAYMENT_MODES = ("BNK TRNSF", "MOMO TRANSFER", "CASH", "CHEQUE")
PROCUREMENT_TYPES = ("GOODS", "SERVICES", "FLAT RATE", "WORKS", "DIRECTORS", "CONSULTANCY", "RENT")


class PaymentStatus(Enum):
    """Lifecycle of a staged payment"""
    STAGED = "staged"
    FINALIZED = "finalized"


class SettlementStatus(Enum):
    """How much of the invoice has been paid across batches"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


@dataclass
class StagedPayment(StorageRecord):
    """
    A vendor payment awaiting (or after) finalization
    """
    vendor: str
    invoice_no: str
    description: str
    pre_tax_amount: Decimal  # full invoice amount
    currency: Currency
    budget_line: str  # free text or account id as entered
    fx_rate: Decimal = Decimal('1')
    procurement_type: str = ""
    vat_decision: str = "NO"
    payment_mode: str = "BNK TRNSF"
    bank_account: Optional[str] = None
    budget_line_id: Optional[str] = None
    bank_account_id: Optional[str] = None
    is_partial: bool = False
    payment_percentage: Optional[Decimal] = None
    wht_amount: Decimal = Decimal('0')
    wht_rate: Decimal = Decimal('0')
    vat_amount: Decimal = Decimal('0')
    vat_rate: Decimal = Decimal('0')
    levy_amount: Decimal = Decimal('0')
    levy_rate: Decimal = Decimal('0')
    fee_amount: Decimal = Decimal('0')
    fee_rate: Decimal = Decimal('0')
    tranche_pre_tax: Decimal = Decimal('0')
    net_payable: Decimal = Decimal('0')  # this tranche
    total_amount: Decimal = Decimal('0')  # net payable of the full invoice
    paid_amount: Decimal = Decimal('0')
    settlement_status: SettlementStatus = SettlementStatus.PENDING
    status: PaymentStatus = PaymentStatus.STAGED
    payment_reference: Optional[str] = None  # last batch that paid this
    cash_flow_category: Optional[str] = None
    finalized_at: Optional[datetime] = None
    batch_history: List[str] = field(default_factory=list)

    def taxable(self) -> TaxableTransaction:
        return TaxableTransaction(
            pre_tax_amount=self.pre_tax_amount,
            currency=self.currency,
            procurement_type=self.procurement_type,
            vat_decision=self.vat_decision,
            payment_mode=self.payment_mode,
            is_partial=self.is_partial,
            payment_percentage=self.payment_percentage,
        )

    def apply_breakdown(self, tranche: TaxBreakdown, full_invoice: TaxBreakdown) -> None:
        """Copy computed tax fields onto the payment"""
        self.tranche_pre_tax = tranche.pre_tax_amount
        self.wht_amount = tranche.wht
        self.wht_rate = tranche.wht_rate
        self.vat_amount = tranche.vat
        self.vat_rate = tranche.vat_rate
        self.levy_amount = tranche.levy
        self.levy_rate = tranche.levy_rate
        self.fee_amount = tranche.fee
        self.fee_rate = tranche.fee_rate
        self.net_payable = tranche.net_payable
        self.total_amount = full_invoice.net_payable

    @property
    def remaining_amount(self) -> Decimal:
        return max(self.total_amount - self.paid_amount, Decimal('0'))

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        result['settlement_status'] = self.settlement_status.value
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StagedPayment':
        decimal_fields = (
            'pre_tax_amount', 'fx_rate', 'wht_amount', 'wht_rate', 'vat_amount', 'vat_rate',
            'levy_amount', 'levy_rate', 'fee_amount', 'fee_rate', 'tranche_pre_tax',
            'net_payable', 'total_amount', 'paid_amount',
        )
        values = dict(data)
        for name in decimal_fields:
            if values.get(name) is not None:
                values[name] = Decimal(values[name])
        if values.get('payment_percentage') is not None:
            values['payment_percentage'] = Decimal(values['payment_percentage'])
        values['created_at'] = datetime.fromisoformat(values['created_at'])
        values['updated_at'] = datetime.fromisoformat(values['updated_at'])
        if values.get('finalized_at'):
            values['finalized_at'] = datetime.fromisoformat(values['finalized_at'])
        values['currency'] = Currency.from_code(values['currency'])
        values['settlement_status'] = SettlementStatus(values['settlement_status'])
        values['status'] = PaymentStatus(values['status'])
        values['batch_history'] = list(values.get('batch_history') or [])
        return cls(**values)


class PaymentStore:
    """
    Stages payments and persists their finalization state
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        calculator: TaxCalculator,
        rate_table: RateTable
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.calculator = calculator
        self.rate_table = rate_table
        self.payments_table = PAYMENTS_TABLE

    def stage_payment(
        self,
        vendor: str,
        invoice_no: str,
        description: str,
        pre_tax_amount: Any,
        currency: Currency,
        budget_line: str,
        fx_rate: Any = Decimal('1'),
        procurement_type: str = "",
        vat_decision: str = "NO",
        payment_mode: str = "BNK TRNSF",
        bank_account: Optional[str] = None,
        payment_percentage: Optional[Any] = None,
        cash_flow_category: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> StagedPayment:
        """
        Stage a payment and compute its tax fields

        ``payment_percentage`` below 100 marks the payment as partial; the
        tax fields then describe only that tranche.

        Raises:
            ValidationError: On missing fields, unknown payment mode or bad amounts
        """
        if not vendor or not vendor.strip():
            raise ValidationError("Vendor is required")
        if not budget_line or not budget_line.strip():
            raise ValidationError("Budget line is required")
        payment_mode = (payment_mode or "").strip().upper()
        if payment_mode not in PAYMENT_MODES:
            raise ValidationError(
                f"Unknown payment mode {payment_mode!r}; expected one of {', '.join(PAYMENT_MODES)}"
            )
        fx_rate = to_decimal(fx_rate, "fx_rate")
        if fx_rate <= 0:
            raise ValidationError("FX rate must be positive")

        is_partial = False
        if payment_percentage is not None:
            payment_percentage = to_decimal(payment_percentage, "payment_percentage")
            is_partial = payment_percentage != Decimal('100')

        now = datetime.now(timezone.utc)
        payment = StagedPayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            vendor=vendor.strip(),
            invoice_no=(invoice_no or "").strip(),
            description=(description or "").strip(),
            pre_tax_amount=to_decimal(pre_tax_amount, "pre_tax_amount"),
            currency=currency,
            budget_line=budget_line.strip(),
            fx_rate=fx_rate,
            procurement_type=(procurement_type or "").strip().upper(),
            vat_decision=(vat_decision or "NO").strip().upper(),
            payment_mode=payment_mode,
            bank_account=bank_account.strip() if bank_account else None,
            is_partial=is_partial,
            payment_percentage=payment_percentage if is_partial else None,
            cash_flow_category=cash_flow_category,
        )
        self._compute(payment)
        self.save_payment(payment)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_STAGED,
            entity_type="payment",
            entity_id=payment.id,
            metadata={
                "vendor": payment.vendor,
                "invoice_no": payment.invoice_no,
                "net_payable": payment.net_payable,
                "currency": payment.currency.code,
                "budget_line": payment.budget_line,
            },
            user_id=actor_id
        )
        return payment

    def _compute(self, payment: StagedPayment) -> None:
        rate = self.rate_table.get_effective_rate(payment.procurement_type)
        transaction = payment.taxable()
        tranche = self.calculator.compute_taxes(transaction, rate)
        if transaction.is_partial:
            full_invoice = self.calculator.compute_taxes(
                replace(transaction, is_partial=False, payment_percentage=None), rate
            )
        else:
            full_invoice = tranche
        payment.apply_breakdown(tranche, full_invoice)

    def set_tranche(self, payment_id: str, payment_percentage: Any,
                    actor_id: Optional[str] = None) -> StagedPayment:
        """
        Re-stage a partially paid payment for its next tranche

        Raises:
            ValidationError: If the payment is unknown or already fully paid
        """
        payment = self.get_payment(payment_id)
        if payment is None:
            raise ValidationError(f"Payment {payment_id} not found")
        if payment.settlement_status == SettlementStatus.PAID:
            raise ValidationError(f"Payment {payment_id} is already fully paid")
        percentage = to_decimal(payment_percentage, "payment_percentage")
        payment.is_partial = percentage != Decimal('100')
        payment.payment_percentage = percentage if payment.is_partial else None
        self._compute(payment)
        payment.updated_at = datetime.now(timezone.utc)
        self.save_payment(payment)
        return payment

    def get_payment(self, payment_id: str) -> Optional[StagedPayment]:
        data = self.storage.load(self.payments_table, payment_id)
        if data:
            return StagedPayment.from_dict(data)
        return None

    def list_payments(self, status: Optional[PaymentStatus] = None) -> List[StagedPayment]:
        filters = {"status": status.value} if status else {}
        payments = [StagedPayment.from_dict(d) for d in self.storage.find(self.payments_table, filters)]
        payments.sort(key=lambda p: p.created_at)
        return payments

    def save_payment(self, payment: StagedPayment) -> None:
        self.storage.save(self.payments_table, payment.id, payment.to_dict())

    def snapshot_payment(self, payment_id: str) -> Optional[Dict[str, Any]]:
        """Raw stored state, as captured for undo"""
        return self.storage.load(self.payments_table, payment_id)

    def restore_payment(self, data: Dict[str, Any]) -> StagedPayment:
        """Put a payment back to a previously captured state"""
        payment = StagedPayment.from_dict(dict(data))
        payment.updated_at = datetime.now(timezone.utc)
        self.save_payment(payment)
        return payment
