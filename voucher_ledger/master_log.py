"""
Master Log

Append-only, denormalized record of every finalized payment for reporting.
Rows are never modified; an undone batch is recorded as a separate
reversal marker and filtered out of default listings.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .currency import Currency
from .exceptions import ValidationError
from .storage import StorageInterface, StorageRecord

MASTER_LOG_TABLE = "master_log"
MASTER_LOG_REVERSALS_TABLE = "master_log_reversals"


def transaction_id(batch_id: str, position: int) -> str:
    return f"TXN-{batch_id}-{position:03d}"


@dataclass
class MasterLogEntry(StorageRecord):
    """One finalized payment, flattened"""
    batch_id: str
    payment_id: str
    vendor: str
    invoice_no: str
    description: str
    budget_line_id: str
    budget_line_name: str
    bank_account_id: Optional[str]
    currency: Currency
    fx_rate: Decimal
    pre_tax_amount: Decimal
    wht_amount: Decimal
    vat_amount: Decimal
    levy_amount: Decimal
    fee_amount: Decimal
    net_payable: Decimal
    subtotal: Decimal
    budget_impact: Decimal  # in the budget line's currency
    budget_impact_reporting: Decimal  # in the reporting currency
    payment_percentage: Decimal
    paid_to_date: Decimal
    remaining_amount: Decimal
    procurement_type: str
    payment_mode: str
    actor_id: str
    voucher_reference: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MasterLogEntry':
        values = dict(data)
        values['created_at'] = datetime.fromisoformat(values['created_at'])
        values['updated_at'] = datetime.fromisoformat(values['updated_at'])
        values['currency'] = Currency.from_code(values['currency'])
        for name in (
            'fx_rate', 'pre_tax_amount', 'wht_amount', 'vat_amount', 'levy_amount', 'fee_amount',
            'net_payable', 'subtotal', 'budget_impact', 'budget_impact_reporting',
            'payment_percentage', 'paid_to_date', 'remaining_amount',
        ):
            values[name] = Decimal(values[name])
        return cls(**values)


class MasterLog:
    """Append-only store of MasterLogEntry rows"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = MASTER_LOG_TABLE

    def append(self, entry: MasterLogEntry) -> str:
        """
        Write a new row

        Raises:
            ValidationError: If a row with this transaction id already exists
        """
        if self.storage.exists(self.table_name, entry.id):
            raise ValidationError(f"Master log entry {entry.id} already exists")
        self.storage.save(self.table_name, entry.id, entry.to_dict())
        return entry.id

    def get_entry(self, entry_id: str) -> Optional[MasterLogEntry]:
        data = self.storage.load(self.table_name, entry_id)
        return MasterLogEntry.from_dict(data) if data else None

    def mark_batch_reversed(self, batch_id: str, reversed_by: str, reason: str = "") -> None:
        self.storage.save(MASTER_LOG_REVERSALS_TABLE, batch_id, {
            "id": batch_id,
            "reversed_by": reversed_by,
            "reason": reason,
            "created_at": datetime.now(timezone.utc).isoformat(),
        })

    def is_batch_reversed(self, batch_id: str) -> bool:
        return self.storage.exists(MASTER_LOG_REVERSALS_TABLE, batch_id)

    def list_entries(self, batch_id: Optional[str] = None,
                     include_reversed: bool = False) -> List[MasterLogEntry]:
        filters = {"batch_id": batch_id} if batch_id else {}
        entries = [MasterLogEntry.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        if not include_reversed:
            reversed_batches = {r['id'] for r in self.storage.load_all(MASTER_LOG_REVERSALS_TABLE)}
            entries = [e for e in entries if e.batch_id not in reversed_batches]
        entries.sort(key=lambda e: (e.created_at, e.id))
        return entries
