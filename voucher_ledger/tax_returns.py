"""
WHT Return Log

One TaxReturnEntry per local-currency, WHT-bearing payment in a finalized
batch. Entry ids are derived from the payment, procurement type and batch,
so every tranche of a partial payment keeps its own entry and re-filing
within one batch overwrites rather than duplicates.
"""

import re
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum

from .audit import AuditTrail, AuditEventType
from .currency import Currency
from .exceptions import PartialTaxLoggingFailure
from .logging_config import get_logger, log_action
from .payments import StagedPayment
from .storage import StorageInterface, StorageRecord

TAX_RETURNS_TABLE = "tax_returns"
TAX_RETURN_BATCHES_TABLE = "tax_return_batches"


class TaxReturnStatus(Enum):
    FILED = "filed"
    VOID = "void"


def _safe_token(value: str) -> str:
    return re.sub(r'[^A-Za-z0-9]', '_', value or "") or "NONE"


def tax_return_id(payment_id: str, procurement_type: str, batch_id: str) -> str:
    """Deterministic entry id for the WHT return of one payment in one batch"""
    return f"WHT-{_safe_token(payment_id)}-{_safe_token(procurement_type)}-{_safe_token(batch_id)}"


def tax_period(moment: datetime) -> str:
    """Calendar quarter label, e.g. ``Q3 2024``"""
    return f"Q{(moment.month - 1) // 3 + 1} {moment.year}"


@dataclass
class TaxReturnEntry(StorageRecord):
    """WHT return line for one payment"""
    payment_id: str
    batch_id: str
    vendor: str
    invoice_no: str
    procurement_type: str
    currency: Currency
    tax_base_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    tax_period: str
    year: int
    status: TaxReturnStatus = TaxReturnStatus.FILED
    filed_by: str = "system"
    voucher_reference: Optional[str] = None
    source_payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TaxReturnEntry':
        values = dict(data)
        values['created_at'] = datetime.fromisoformat(values['created_at'])
        values['updated_at'] = datetime.fromisoformat(values['updated_at'])
        values['currency'] = Currency.from_code(values['currency'])
        values['status'] = TaxReturnStatus(values['status'])
        for name in ('tax_base_amount', 'tax_rate', 'tax_amount'):
            values[name] = Decimal(values[name])
        values.pop('voided_at', None)
        values.pop('voided_by', None)
        return cls(**values)


@dataclass
class TaxFilingResult:
    """Outcome of filing a batch's returns"""
    entry_ids: List[str] = field(default_factory=list)
    skipped: int = 0
    failures: List[PartialTaxLoggingFailure] = field(default_factory=list)


class TaxReturnLog:
    """
    Writes and voids WHT return entries
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 local_currency: Currency = Currency.GHS):
        self.storage = storage
        self.audit_trail = audit_trail
        self.local_currency = local_currency
        self.table_name = TAX_RETURNS_TABLE
        self.logger = get_logger("voucher_ledger.tax_returns")

    def is_eligible(self, payment: StagedPayment) -> bool:
        """Local currency with a non-zero WHT amount"""
        return payment.currency == self.local_currency and payment.wht_amount != 0

    def build_entry(self, payment: StagedPayment, batch_id: str, filed_by: str,
                    voucher_reference: Optional[str], now: datetime) -> TaxReturnEntry:
        entry_id = tax_return_id(payment.id, payment.procurement_type, batch_id)
        existing = self.storage.load(self.table_name, entry_id)
        return TaxReturnEntry(
            id=entry_id,
            created_at=datetime.fromisoformat(existing['created_at']) if existing else now,
            updated_at=now,
            payment_id=payment.id,
            batch_id=batch_id,
            vendor=payment.vendor,
            invoice_no=payment.invoice_no,
            procurement_type=payment.procurement_type,
            currency=payment.currency,
            tax_base_amount=payment.tranche_pre_tax,
            tax_rate=payment.wht_rate,
            tax_amount=payment.wht_amount,
            tax_period=tax_period(now),
            year=now.year,
            filed_by=filed_by,
            voucher_reference=voucher_reference,
            source_payload={
                "net_payable": str(payment.net_payable),
                "vat_amount": str(payment.vat_amount),
                "levy_amount": str(payment.levy_amount),
                "payment_percentage": str(payment.payment_percentage or Decimal('100')),
                "budget_line": payment.budget_line,
            },
        )

    def file_batch_returns(
        self,
        batch_id: str,
        payments: Iterable[StagedPayment],
        filed_by: str = "system",
        voucher_reference: Optional[str] = None
    ) -> TaxFilingResult:
        """
        File returns for every eligible payment in a batch

        A failure on one payment is recorded in the result and does not
        stop the others.
        """
        result = TaxFilingResult()
        now = datetime.now(timezone.utc)
        for payment in payments:
            if not self.is_eligible(payment):
                result.skipped += 1
                continue
            try:
                entry = self.build_entry(payment, batch_id, filed_by, voucher_reference, now)
                self.storage.save(self.table_name, entry.id, entry.to_dict())
            except Exception as exc:
                failure = PartialTaxLoggingFailure(payment.id, str(exc))
                result.failures.append(failure)
                log_action(
                    self.logger, "warning", str(failure), user_id=filed_by,
                    action="tax_return_failed", resource=payment.id, correlation_id=batch_id
                )
                continue
            result.entry_ids.append(entry.id)
            self.audit_trail.log_event(
                event_type=AuditEventType.TAX_RETURN_FILED,
                entity_type="tax_return",
                entity_id=entry.id,
                metadata={"payment_id": payment.id, "tax_amount": entry.tax_amount},
                user_id=filed_by,
                session_id=batch_id
            )

        self.storage.save(TAX_RETURN_BATCHES_TABLE, batch_id, {
            "id": batch_id,
            "entry_ids": result.entry_ids,
            "skipped": result.skipped,
            "failed_payment_ids": [f.payment_id for f in result.failures],
            "filed_by": filed_by,
            "created_at": now.isoformat(),
        })
        log_action(
            self.logger, "info",
            f"Filed {len(result.entry_ids)} WHT returns ({len(result.failures)} failed)",
            user_id=filed_by, action="tax_returns_filed", correlation_id=batch_id
        )
        return result

    def void_batch_returns(self, batch_id: str, voided_by: str = "system") -> int:
        """Mark a batch's returns void; entries are kept for the record"""
        count = 0
        now = datetime.now(timezone.utc).isoformat()
        for data in self.storage.find(self.table_name, {"batch_id": batch_id}):
            if data.get('status') == TaxReturnStatus.VOID.value:
                continue
            data['status'] = TaxReturnStatus.VOID.value
            data['voided_at'] = now
            data['voided_by'] = voided_by
            data['updated_at'] = now
            self.storage.save(self.table_name, data['id'], data)
            count += 1
            self.audit_trail.log_event(
                event_type=AuditEventType.TAX_RETURN_VOIDED,
                entity_type="tax_return",
                entity_id=data['id'],
                metadata={"batch_id": batch_id},
                user_id=voided_by,
                session_id=batch_id
            )
        return count

    def get_entry(self, entry_id: str) -> Optional[TaxReturnEntry]:
        data = self.storage.load(self.table_name, entry_id)
        return TaxReturnEntry.from_dict(data) if data else None

    def list_entries(self, batch_id: Optional[str] = None,
                     status: Optional[TaxReturnStatus] = None) -> List[TaxReturnEntry]:
        filters: Dict[str, Any] = {}
        if batch_id:
            filters["batch_id"] = batch_id
        if status:
            filters["status"] = status.value
        entries = [TaxReturnEntry.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        entries.sort(key=lambda e: e.created_at)
        return entries
