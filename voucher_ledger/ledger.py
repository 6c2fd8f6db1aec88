"""
Balance Ledger Module

Every change to an account balance goes through LedgerService.apply_mutation,
which performs an optimistic read-modify-write on the account and inserts
exactly one immutable LedgerEntry in the same atomic operation.

Conservation law, per account:
    current_balance == allocated_amount - opening_spend_to_date + sum(entry.amount)
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .accounts import (
    ACCOUNTS_TABLE, LEDGER_ENTRIES_TABLE, BalanceAccount,
    derive_budget_status, utilization_rate,
)
from .audit import AuditTrail, AuditEventType
from .currency import Currency, to_decimal
from .exceptions import AccountNotFound, ConcurrentConflict, InsufficientFunds, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


class LedgerSource(Enum):
    """Origin of a balance mutation"""
    MANUAL_ENTRY = "MANUAL_ENTRY"
    PAYMENT_FINALIZATION = "PAYMENT_FINALIZATION"
    UNDO_COMPENSATION = "UNDO_COMPENSATION"


class TransactionDirection(Enum):
    """Direction of a manual bank transaction"""
    INFLOW = "INFLOW"
    OUTFLOW = "OUTFLOW"


class OverdraftPolicy(Enum):
    """What to do when an outflow drives a balance below zero"""
    WARN = "warn"      # record the overdraft and log a warning
    REJECT = "reject"  # raise InsufficientFunds, nothing is written


@dataclass
class LedgerEntry(StorageRecord):
    """
    Immutable record of one balance mutation
    balance_after - balance_before == amount
    """
    account_id: str
    account_name: str
    amount: Decimal  # positive = inflow, negative = outflow
    balance_before: Decimal
    balance_after: Decimal
    currency: Currency
    source: LedgerSource
    sequence: int  # account version produced by this mutation
    category: str = "Uncategorized"
    description: str = ""
    reference: Optional[str] = None
    batch_id: Optional[str] = None
    actor_id: str = "system"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        result['source'] = self.source.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            account_name=data.get('account_name', ''),
            amount=Decimal(data['amount']),
            balance_before=Decimal(data['balance_before']),
            balance_after=Decimal(data['balance_after']),
            currency=Currency.from_code(data['currency']),
            source=LedgerSource(data['source']),
            sequence=int(data['sequence']),
            category=data.get('category', 'Uncategorized'),
            description=data.get('description', ''),
            reference=data.get('reference'),
            batch_id=data.get('batch_id'),
            actor_id=data.get('actor_id', 'system'),
            metadata=data.get('metadata') or {},
        )


@dataclass
class MutationMetadata:
    """Audit details attached to a mutation's ledger entry"""
    source: LedgerSource = LedgerSource.MANUAL_ENTRY
    category: str = "Uncategorized"
    description: str = ""
    reference: Optional[str] = None
    batch_id: Optional[str] = None
    actor_id: str = "system"
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MutationResult:
    """Outcome of a committed mutation"""
    account_id: str
    entry_id: str
    amount: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    overdrawn: bool
    attempts: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "entry_id": self.entry_id,
            "amount": str(self.amount),
            "previous_balance": str(self.previous_balance),
            "new_balance": str(self.new_balance),
            "overdrawn": self.overdrawn,
            "attempts": self.attempts,
        }


class _StaleRead(Exception):
    """The account changed between read and compare-and-swap"""


class LedgerService:
    """
    Atomic, conflict-safe balance mutation with an append-only ledger
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        overdraft_policy: OverdraftPolicy = OverdraftPolicy.WARN,
        max_retries: int = 5
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.storage = storage
        self.audit_trail = audit_trail
        self.overdraft_policy = overdraft_policy
        self.max_retries = max_retries
        self.accounts_table = ACCOUNTS_TABLE
        self.entries_table = LEDGER_ENTRIES_TABLE
        self.logger = get_logger("voucher_ledger.ledger")

    def apply_mutation(
        self,
        account_id: str,
        signed_amount: Any,
        metadata: Optional[MutationMetadata] = None
    ) -> MutationResult:
        """
        Apply a signed amount to an account balance

        The account is read, the new balance computed, and the write is
        committed only if the account version is unchanged. On a version
        mismatch the whole read-modify-write is retried.

        Args:
            account_id: Account to mutate
            signed_amount: Positive for inflow, negative for outflow
            metadata: Ledger entry details

        Returns:
            MutationResult with previous and new balance

        Raises:
            ValidationError: If the amount is zero
            AccountNotFound: If the account does not exist
            InsufficientFunds: If the outflow overdraws and the policy rejects it
            ConcurrentConflict: If every attempt lost to a concurrent writer
        """
        amount = to_decimal(signed_amount, "amount")
        if amount == 0:
            raise ValidationError("Mutation amount must be non-zero")
        metadata = metadata or MutationMetadata()

        for attempt in range(1, self.max_retries + 1):
            data = self.storage.load(self.accounts_table, account_id)
            if data is None:
                raise AccountNotFound(account_id)
            account = BalanceAccount.from_dict(data)
            expected_version = account.version

            previous_balance = account.current_balance
            new_balance = previous_balance + amount
            overdrawn = amount < 0 and new_balance < 0
            if overdrawn and self.overdraft_policy == OverdraftPolicy.REJECT:
                raise InsufficientFunds(account_id, previous_balance, amount)

            now = datetime.now(timezone.utc)
            self._apply_to_account(account, amount, new_balance, metadata, now)

            entry = LedgerEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_id=account_id,
                account_name=account.name,
                amount=amount,
                balance_before=previous_balance,
                balance_after=new_balance,
                currency=account.currency,
                source=metadata.source,
                sequence=account.version,
                category=metadata.category,
                description=metadata.description,
                reference=metadata.reference,
                batch_id=metadata.batch_id,
                actor_id=metadata.actor_id,
                metadata=dict(metadata.extra),
            )

            try:
                with self.storage.atomic():
                    if not self.storage.compare_and_swap(
                        self.accounts_table, account_id, expected_version, account.to_dict()
                    ):
                        raise _StaleRead()
                    self.storage.save(self.entries_table, entry.id, entry.to_dict())
            except _StaleRead:
                self.logger.debug(
                    "Version conflict on %s (attempt %d/%d)", account_id, attempt, self.max_retries
                )
                continue

            self._record_committed(account, entry, overdrawn)
            return MutationResult(
                account_id=account_id,
                entry_id=entry.id,
                amount=amount,
                previous_balance=previous_balance,
                new_balance=new_balance,
                overdrawn=overdrawn,
                attempts=attempt,
            )

        log_action(
            self.logger, "error", f"Gave up mutating {account_id} after {self.max_retries} conflicts",
            user_id=metadata.actor_id, action="apply_mutation", resource=account_id,
            correlation_id=metadata.batch_id
        )
        raise ConcurrentConflict(account_id, self.max_retries)

    def _apply_to_account(self, account: BalanceAccount, amount: Decimal, new_balance: Decimal,
                          metadata: MutationMetadata, now: datetime) -> None:
        # Outflows raise spend, inflows reduce it, so balance == allocated - spend holds
        account.total_spend_to_date -= amount
        account.current_balance = new_balance
        account.version += 1
        account.updated_at = now
        account.status = derive_budget_status(account.allocated_amount, new_balance)
        account.utilization_rate = utilization_rate(account.allocated_amount, account.total_spend_to_date)
        if metadata.source == LedgerSource.PAYMENT_FINALIZATION:
            account.last_payment_amount = -amount
            account.last_payment_at = now
            account.last_batch_id = metadata.batch_id

    def _record_committed(self, account: BalanceAccount, entry: LedgerEntry, overdrawn: bool) -> None:
        # Audit writes happen after the atomic block so the storage lock is never held here
        self.audit_trail.log_event(
            event_type=AuditEventType.LEDGER_ENTRY_POSTED,
            entity_type="account",
            entity_id=account.id,
            metadata={
                "entry_id": entry.id,
                "amount": entry.amount,
                "balance_before": entry.balance_before,
                "balance_after": entry.balance_after,
                "source": entry.source.value,
                "reference": entry.reference,
            },
            user_id=entry.actor_id,
            session_id=entry.batch_id
        )
        log_action(
            self.logger, "info",
            f"Posted {entry.amount} to {account.id}: {entry.balance_before} -> {entry.balance_after}",
            user_id=entry.actor_id, action="ledger_entry_posted", resource=account.id,
            correlation_id=entry.batch_id, extra={"source": entry.source.value}
        )
        if overdrawn:
            self.audit_trail.log_event(
                event_type=AuditEventType.OVERDRAFT_RECORDED,
                entity_type="account",
                entity_id=account.id,
                metadata={"entry_id": entry.id, "balance_after": entry.balance_after},
                user_id=entry.actor_id,
                session_id=entry.batch_id
            )
            log_action(
                self.logger, "warning",
                f"Account {account.id} ({account.name}) overdrawn: balance {entry.balance_after}",
                user_id=entry.actor_id, action="overdraft_recorded", resource=account.id,
                correlation_id=entry.batch_id
            )

    def record_manual_transaction(
        self,
        account_id: str,
        direction: TransactionDirection,
        amount: Any,
        category: str = "Uncategorized",
        description: str = "",
        reference: Optional[str] = None,
        actor_id: str = "system",
        counterparty: Optional[str] = None
    ) -> MutationResult:
        """
        Record an operator-entered inflow or outflow on an account

        Raises:
            ValidationError: If the amount is not positive
        """
        amount = to_decimal(amount, "amount")
        if amount <= 0:
            raise ValidationError("Transaction amount must be positive")
        signed = amount if direction == TransactionDirection.INFLOW else -amount
        extra = {"direction": direction.value}
        if counterparty:
            extra["counterparty"] = counterparty
        return self.apply_mutation(account_id, signed, MutationMetadata(
            source=LedgerSource.MANUAL_ENTRY,
            category=category or "Uncategorized",
            description=description,
            reference=reference,
            actor_id=actor_id or "system",
            extra=extra,
        ))

    def get_account_ledger(self, account_id: str, limit: Optional[int] = None) -> List[LedgerEntry]:
        """Ledger entries for an account, newest first"""
        entries = [
            LedgerEntry.from_dict(d)
            for d in self.storage.find(self.entries_table, {"account_id": account_id})
        ]
        entries.sort(key=lambda e: e.sequence, reverse=True)
        if limit:
            entries = entries[:limit]
        return entries

    def get_entries_for_batch(self, batch_id: str) -> List[LedgerEntry]:
        """Entries written by one finalization batch or its undo"""
        entries = [
            LedgerEntry.from_dict(d)
            for d in self.storage.find(self.entries_table, {"batch_id": batch_id})
        ]
        entries.sort(key=lambda e: (e.created_at, e.account_id))
        return entries

    def verify_conservation(self, account_id: str) -> Dict[str, Any]:
        """
        Check the account balance against its ledger

        Returns:
            Dictionary with ``valid`` and the figures compared
        """
        data = self.storage.load(self.accounts_table, account_id)
        if data is None:
            raise AccountNotFound(account_id)
        account = BalanceAccount.from_dict(data)
        entries = self.get_account_ledger(account_id)
        ledger_total = sum((e.amount for e in entries), Decimal('0'))
        expected = account.allocated_amount - account.opening_spend_to_date + ledger_total
        chain_ok = all(e.balance_after - e.balance_before == e.amount for e in entries)
        return {
            "valid": (
                expected == account.current_balance
                and account.current_balance == account.allocated_amount - account.total_spend_to_date
                and chain_ok
            ),
            "account_id": account_id,
            "current_balance": str(account.current_balance),
            "expected_balance": str(expected),
            "ledger_total": str(ledger_total),
            "entry_count": len(entries),
        }
