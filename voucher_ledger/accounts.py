"""
Balance Account Module

Canonical records for budget lines and bank/cash accounts. Each account
holds an allocation, the spend to date and the resulting current balance.

Balances are only ever written by LedgerService; the store here handles
administrative setup, reads and non-financial edits.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .currency import Currency, Money, to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import AccountNotFound, ValidationError

ACCOUNTS_TABLE = "balance_accounts"
LEDGER_ENTRIES_TABLE = "ledger_entries"

# Fields that only LedgerService may change
BALANCE_FIELDS = frozenset({
    "allocated_amount", "total_spend_to_date", "current_balance",
    "opening_spend_to_date", "version",
})


class AccountKind(Enum):
    """What a balance account represents"""
    BUDGET_LINE = "budget_line"
    BANK = "bank"


class BudgetStatus(Enum):
    """Budget health derived from the current balance"""
    ACTIVE = "active"
    UNDERSPENT = "underspent"    # more than 80% of the allocation remains
    COMPLETED = "completed"      # balance exactly zero
    OVERSPENT = "overspent"      # balance below zero


UNDERSPENT_THRESHOLD = Decimal('0.8')


def derive_budget_status(allocated: Decimal, balance: Decimal) -> BudgetStatus:
    """Classify an account by its remaining balance"""
    if balance < 0:
        return BudgetStatus.OVERSPENT
    if balance == 0:
        return BudgetStatus.COMPLETED
    if allocated > 0 and balance > allocated * UNDERSPENT_THRESHOLD:
        return BudgetStatus.UNDERSPENT
    return BudgetStatus.ACTIVE


def utilization_rate(allocated: Decimal, spent: Decimal) -> Decimal:
    """Percentage of the allocation spent, 0 when nothing is allocated"""
    if allocated <= 0:
        return Decimal('0')
    return (spent / allocated * 100).quantize(Decimal('0.01'))


@dataclass
class BalanceAccount(StorageRecord):
    """
    Budget line or bank account with a running balance

    ``current_balance`` always equals ``allocated_amount - total_spend_to_date``.
    ``version`` increases by one on every balance mutation.
    """
    name: str
    kind: AccountKind
    currency: Currency
    allocated_amount: Decimal
    total_spend_to_date: Decimal
    current_balance: Decimal
    opening_spend_to_date: Decimal = Decimal('0')
    version: int = 0
    code: Optional[str] = None
    status: BudgetStatus = BudgetStatus.ACTIVE
    utilization_rate: Decimal = Decimal('0')
    is_active: bool = True
    last_payment_amount: Optional[Decimal] = None
    last_payment_at: Optional[datetime] = None
    last_batch_id: Optional[str] = None

    @property
    def balance(self) -> Money:
        return Money(self.current_balance, self.currency)

    @property
    def is_budget_line(self) -> bool:
        return self.kind == AccountKind.BUDGET_LINE

    @property
    def is_bank(self) -> bool:
        return self.kind == AccountKind.BANK

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['kind'] = self.kind.value
        result['currency'] = self.currency.code
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BalanceAccount':
        last_payment_amount = data.get('last_payment_amount')
        last_payment_at = data.get('last_payment_at')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data['name'],
            kind=AccountKind(data['kind']),
            currency=Currency.from_code(data['currency']),
            allocated_amount=Decimal(data['allocated_amount']),
            total_spend_to_date=Decimal(data['total_spend_to_date']),
            current_balance=Decimal(data['current_balance']),
            opening_spend_to_date=Decimal(data.get('opening_spend_to_date', '0')),
            version=int(data.get('version', 0)),
            code=data.get('code'),
            status=BudgetStatus(data.get('status', BudgetStatus.ACTIVE.value)),
            utilization_rate=Decimal(data.get('utilization_rate', '0')),
            is_active=data.get('is_active', True),
            last_payment_amount=Decimal(last_payment_amount) if last_payment_amount is not None else None,
            last_payment_at=datetime.fromisoformat(last_payment_at) if last_payment_at else None,
            last_batch_id=data.get('last_batch_id'),
        )


class BalanceAccountStore:
    """
    Administrative setup and read access for balance accounts
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.accounts_table = ACCOUNTS_TABLE

    def create_account(
        self,
        name: str,
        kind: AccountKind,
        currency: Currency,
        allocated_amount: Decimal,
        total_spend_to_date: Decimal = Decimal('0'),
        account_id: Optional[str] = None,
        code: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> BalanceAccount:
        """
        Create a budget line or bank account

        Args:
            name: Display name, used by reference resolution
            kind: Budget line or bank
            currency: Account currency
            allocated_amount: Budget allocation, or opening funding for a bank
            total_spend_to_date: Spend already incurred before the ledger existed
            account_id: Stable identifier (generated if not provided)
            code: Optional GL code
            actor_id: Administrator performing the setup

        Returns:
            Created BalanceAccount

        Raises:
            ValidationError: If the name is blank, amounts are negative or the id is taken
        """
        if not name or not name.strip():
            raise ValidationError("Account name is required")
        allocated_amount = to_decimal(allocated_amount, "allocated_amount")
        total_spend_to_date = to_decimal(total_spend_to_date, "total_spend_to_date")
        if allocated_amount < 0:
            raise ValidationError("Allocated amount cannot be negative")
        if total_spend_to_date < 0:
            raise ValidationError("Spend to date cannot be negative")

        account_id = account_id or str(uuid.uuid4())
        if self.storage.exists(self.accounts_table, account_id):
            raise ValidationError(f"Account {account_id} already exists")

        now = datetime.now(timezone.utc)
        balance = allocated_amount - total_spend_to_date
        account = BalanceAccount(
            id=account_id,
            created_at=now,
            updated_at=now,
            name=name.strip(),
            kind=kind,
            currency=currency,
            allocated_amount=allocated_amount,
            total_spend_to_date=total_spend_to_date,
            current_balance=balance,
            opening_spend_to_date=total_spend_to_date,
            code=code,
            status=derive_budget_status(allocated_amount, balance),
            utilization_rate=utilization_rate(allocated_amount, total_spend_to_date),
        )
        self.storage.save(self.accounts_table, account.id, account.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_CREATED,
            entity_type="account",
            entity_id=account.id,
            metadata={
                "name": account.name,
                "kind": kind.value,
                "currency": currency.code,
                "allocated_amount": allocated_amount,
                "total_spend_to_date": total_spend_to_date,
            },
            user_id=actor_id
        )
        return account

    def get_account(self, account_id: str) -> Optional[BalanceAccount]:
        """Get account by ID"""
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            return BalanceAccount.from_dict(data)
        return None

    def get_account_balance(self, account_id: str) -> BalanceAccount:
        """
        Read-only balance view used by voucher preview

        Raises:
            AccountNotFound: If no account has this id
        """
        account = self.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def find_by_name(self, name: str, kind: Optional[AccountKind] = None) -> List[BalanceAccount]:
        """Exact-name lookup, in storage order"""
        filters: Dict[str, Any] = {"name": name}
        if kind is not None:
            filters["kind"] = kind.value
        return [BalanceAccount.from_dict(d) for d in self.storage.find(self.accounts_table, filters)]

    def list_accounts(self, kind: Optional[AccountKind] = None,
                      active_only: bool = False) -> List[BalanceAccount]:
        """List accounts, optionally filtered by kind"""
        filters: Dict[str, Any] = {}
        if kind is not None:
            filters["kind"] = kind.value
        if active_only:
            filters["is_active"] = True
        accounts = [BalanceAccount.from_dict(d) for d in self.storage.find(self.accounts_table, filters)]
        accounts.sort(key=lambda a: a.name.lower())
        return accounts

    def update_account_details(self, account_id: str, actor_id: Optional[str] = None,
                               **changes: Any) -> BalanceAccount:
        """
        Edit non-financial account details (name, code, active flag)

        Raises:
            AccountNotFound: If the account does not exist
            ValidationError: If a balance field or unknown field is passed
        """
        forbidden = BALANCE_FIELDS.intersection(changes)
        if forbidden:
            raise ValidationError(
                f"Balance fields cannot be edited directly: {', '.join(sorted(forbidden))}. "
                "Record a ledger transaction instead."
            )
        allowed = {"name", "code", "is_active"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unknown account fields: {', '.join(sorted(unknown))}")

        account = self.get_account_balance(account_id)
        if "name" in changes:
            if not changes["name"] or not str(changes["name"]).strip():
                raise ValidationError("Account name is required")
            changes["name"] = str(changes["name"]).strip()

        data = account.to_dict()
        data.update(changes)
        data['updated_at'] = datetime.now(timezone.utc).isoformat()
        data['version'] = account.version + 1
        if not self.storage.compare_and_swap(self.accounts_table, account_id, account.version, data):
            raise ValidationError(f"Account {account_id} changed while being edited; retry")

        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_UPDATED,
            entity_type="account",
            entity_id=account_id,
            metadata={"changes": changes},
            user_id=actor_id
        )
        return BalanceAccount.from_dict(data)

    def delete_account(self, account_id: str, reason: str, actor_id: Optional[str] = None,
                       force: bool = False) -> bool:
        """
        Destructive admin removal of an account

        Refused while ledger entries reference the account unless ``force``
        is set; every deletion is audit-logged.
        """
        account = self.get_account_balance(account_id)
        entry_count = len(self.storage.find(LEDGER_ENTRIES_TABLE, {"account_id": account_id}))
        if entry_count and not force:
            raise ValidationError(
                f"Account {account_id} has {entry_count} ledger entries and cannot be deleted"
            )

        deleted = self.storage.delete(self.accounts_table, account_id)
        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_DELETED,
            entity_type="account",
            entity_id=account_id,
            metadata={
                "name": account.name,
                "reason": reason,
                "forced": force,
                "ledger_entries": entry_count,
                "final_balance": account.current_balance,
            },
            user_id=actor_id
        )
        return deleted

    def get_bank_summary(self) -> Dict[str, Any]:
        """Totals across bank accounts, per currency"""
        banks = self.list_accounts(kind=AccountKind.BANK)
        totals: Dict[str, Decimal] = {}
        for bank in banks:
            if bank.is_active:
                totals[bank.currency.code] = totals.get(bank.currency.code, Decimal('0')) + bank.current_balance
        return {
            "total_balance": {code: str(amount) for code, amount in totals.items()},
            "active_banks": sum(1 for b in banks if b.is_active),
            "total_banks": len(banks),
        }
