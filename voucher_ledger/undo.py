"""
Undo Capture Module

Before a finalization batch mutates anything, the state of every account
and payment it will touch is captured under the batch id. Undoing a batch
is a set of compensating actions, not a storage rollback: balance changes
are reversed through LedgerService (so the reversal is itself in the
ledger), payments are put back to their captured state, the batch's tax
returns are voided and its master-log rows are marked reversed.
"""

import threading
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum

from .accounts import BalanceAccountStore
from .audit import AuditTrail, AuditEventType
from .exceptions import AccountNotFound, LedgerError, UndoError, ValidationError
from .ledger import LedgerService, LedgerSource, MutationMetadata
from .logging_config import get_logger, log_action
from .master_log import MasterLog
from .payments import PaymentStore
from .storage import StorageInterface, StorageRecord
from .tax_returns import TaxReturnLog

UNDO_LOG_TABLE = "undo_log"


class UndoStatus(Enum):
    CAPTURED = "captured"    # snapshot taken, batch in progress
    COMPLETED = "completed"  # batch finished successfully
    FAILED = "failed"        # batch stopped in ERROR
    UNDONE = "undone"


def snapshot_id_for(batch_id: str) -> str:
    return f"UNDO-{batch_id}"


@dataclass
class UndoSnapshot(StorageRecord):
    """Pre-mutation state of one batch"""
    batch_id: str
    accounts: Dict[str, Dict[str, Any]]
    payments: Dict[str, Dict[str, Any]]
    status: UndoStatus = UndoStatus.CAPTURED
    can_undo: bool = True
    payment_count: int = 0
    total_amount: Decimal = Decimal('0')
    primary_vendor: str = ""
    actor_id: str = "system"
    failed_step: Optional[str] = None
    undone_at: Optional[datetime] = None
    undone_by: Optional[str] = None
    restore_results: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UndoSnapshot':
        values = dict(data)
        values['created_at'] = datetime.fromisoformat(values['created_at'])
        values['updated_at'] = datetime.fromisoformat(values['updated_at'])
        values['status'] = UndoStatus(values['status'])
        values['total_amount'] = Decimal(values.get('total_amount', '0'))
        if values.get('undone_at'):
            values['undone_at'] = datetime.fromisoformat(values['undone_at'])
        return cls(**values)


class UndoCapture:
    """
    Captures batch snapshots and executes compensating undo
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_store: BalanceAccountStore,
        ledger: LedgerService,
        payment_store: PaymentStore,
        tax_return_log: TaxReturnLog,
        master_log: MasterLog,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.account_store = account_store
        self.ledger = ledger
        self.payment_store = payment_store
        self.tax_return_log = tax_return_log
        self.master_log = master_log
        self.audit_trail = audit_trail
        self.table_name = UNDO_LOG_TABLE
        self.logger = get_logger("voucher_ledger.undo")
        self._undo_lock = threading.Lock()

    def snapshot(
        self,
        batch_id: str,
        affected_account_ids: Iterable[str],
        affected_payment_ids: Iterable[str],
        actor_id: str = "system"
    ) -> str:
        """
        Capture the current state of every account and payment a batch will touch

        Args:
            batch_id: Batch the snapshot belongs to
            affected_account_ids: Budget lines and banks the batch will mutate
            affected_payment_ids: Payments the batch will finalize
            actor_id: Operator finalizing the batch

        Returns:
            The snapshot id

        Raises:
            AccountNotFound: If an account disappeared since validation
            ValidationError: If a payment disappeared since validation
        """
        accounts: Dict[str, Dict[str, Any]] = {}
        for account_id in dict.fromkeys(affected_account_ids):
            account = self.account_store.get_account(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            accounts[account_id] = {
                "name": account.name,
                "kind": account.kind.value,
                "allocated_amount": str(account.allocated_amount),
                "total_spend_to_date": str(account.total_spend_to_date),
                "current_balance": str(account.current_balance),
                "version": account.version,
            }

        payments: Dict[str, Dict[str, Any]] = {}
        total = Decimal('0')
        vendors: List[str] = []
        for payment_id in dict.fromkeys(affected_payment_ids):
            data = self.payment_store.snapshot_payment(payment_id)
            if data is None:
                raise ValidationError(f"Payment {payment_id} not found")
            payments[payment_id] = data
            total += Decimal(data['net_payable'])
            vendors.append(data['vendor'])

        now = datetime.now(timezone.utc)
        snapshot = UndoSnapshot(
            id=snapshot_id_for(batch_id),
            created_at=now,
            updated_at=now,
            batch_id=batch_id,
            accounts=accounts,
            payments=payments,
            payment_count=len(payments),
            total_amount=total,
            primary_vendor=vendors[0] if vendors else "",
            actor_id=actor_id,
        )
        self._save(snapshot)
        self.audit_trail.log_event(
            event_type=AuditEventType.UNDO_CAPTURED,
            entity_type="batch",
            entity_id=batch_id,
            metadata={"accounts": list(accounts), "payments": list(payments)},
            user_id=actor_id,
            session_id=batch_id
        )
        return snapshot.id

    def _save(self, snapshot: UndoSnapshot) -> None:
        self.storage.save(self.table_name, snapshot.id, snapshot.to_dict())

    def get_snapshot(self, batch_id: str) -> Optional[UndoSnapshot]:
        data = self.storage.load(self.table_name, snapshot_id_for(batch_id))
        return UndoSnapshot.from_dict(data) if data else None

    def _set_status(self, batch_id: str, status: UndoStatus, failed_step: Optional[str] = None) -> None:
        snapshot = self.get_snapshot(batch_id)
        if snapshot is None:
            return
        snapshot.status = status
        snapshot.failed_step = failed_step
        snapshot.updated_at = datetime.now(timezone.utc)
        self._save(snapshot)

    def mark_completed(self, batch_id: str) -> None:
        self._set_status(batch_id, UndoStatus.COMPLETED)

    def mark_failed(self, batch_id: str, failed_step: str) -> None:
        self._set_status(batch_id, UndoStatus.FAILED, failed_step)

    def can_undo(self, batch_id: str) -> bool:
        """Completed and failed batches may be undone once"""
        snapshot = self.get_snapshot(batch_id)
        return (
            snapshot is not None
            and snapshot.can_undo
            and snapshot.status in (UndoStatus.COMPLETED, UndoStatus.FAILED)
        )

    def undo_batch(self, batch_id: str, actor_id: str = "system", reason: str = "") -> UndoSnapshot:
        """
        Reverse a batch with compensating actions

        Each account receives a mutation that cancels every ledger entry the
        batch wrote to it, so a retried undo after a partial failure only
        compensates what is still outstanding.

        Raises:
            UndoError: If the batch has no undoable snapshot, a later batch has
                finalized one of its payments again, or a compensation fails
        """
        with self._undo_lock:
            snapshot = self.get_snapshot(batch_id)
            if snapshot is None:
                raise UndoError(f"No undo snapshot for batch {batch_id}")
            if not self.can_undo(batch_id):
                raise UndoError(f"Batch {batch_id} cannot be undone (status {snapshot.status.value})")
            superseded = self._later_batches(batch_id, snapshot)
            if superseded:
                raise UndoError(
                    f"Batch {batch_id} cannot be undone: payments were finalized again by "
                    f"{', '.join(superseded)}; undo those batches first"
                )

            results: List[Dict[str, Any]] = []
            try:
                for account_id, captured in snapshot.accounts.items():
                    results.append(self._compensate_account(batch_id, account_id, captured, actor_id))
            except LedgerError as exc:
                snapshot.restore_results = results
                snapshot.updated_at = datetime.now(timezone.utc)
                self._save(snapshot)
                log_action(
                    self.logger, "error", f"Undo of {batch_id} stopped: {exc}",
                    user_id=actor_id, action="undo_failed", correlation_id=batch_id
                )
                raise UndoError(f"Undo of batch {batch_id} incomplete: {exc}") from exc

            for payment_data in snapshot.payments.values():
                self.payment_store.restore_payment(payment_data)
            voided = self.tax_return_log.void_batch_returns(batch_id, voided_by=actor_id)
            self.master_log.mark_batch_reversed(batch_id, reversed_by=actor_id, reason=reason)

            now = datetime.now(timezone.utc)
            snapshot.status = UndoStatus.UNDONE
            snapshot.can_undo = False
            snapshot.undone_at = now
            snapshot.undone_by = actor_id
            snapshot.restore_results = results
            snapshot.updated_at = now
            self._save(snapshot)

        self.audit_trail.log_event(
            event_type=AuditEventType.UNDO_EXECUTED,
            entity_type="batch",
            entity_id=batch_id,
            metadata={
                "accounts": results,
                "payments_restored": len(snapshot.payments),
                "tax_returns_voided": voided,
                "reason": reason,
            },
            user_id=actor_id,
            session_id=batch_id
        )
        log_action(
            self.logger, "info", f"Batch {batch_id} undone",
            user_id=actor_id, action="undo_executed", correlation_id=batch_id
        )
        return snapshot

    def _later_batches(self, batch_id: str, snapshot: UndoSnapshot) -> List[str]:
        """Batches that finalized one of this batch's payments after it"""
        later: List[str] = []
        for payment_id, captured in snapshot.payments.items():
            payment = self.payment_store.get_payment(payment_id)
            if payment is None:
                continue
            known = set(captured.get('batch_history') or []) | {batch_id}
            for other in payment.batch_history:
                if other not in known and other not in later:
                    later.append(other)
        return later

    def _compensate_account(self, batch_id: str, account_id: str,
                            captured: Dict[str, Any], actor_id: str) -> Dict[str, Any]:
        outstanding = sum(
            (e.amount for e in self.ledger.get_entries_for_batch(batch_id) if e.account_id == account_id),
            Decimal('0')
        )
        result = {
            "account_id": account_id,
            "captured_balance": captured["current_balance"],
            "compensation": str(-outstanding),
            "entry_id": None,
        }
        if outstanding != 0:
            mutation = self.ledger.apply_mutation(account_id, -outstanding, MutationMetadata(
                source=LedgerSource.UNDO_COMPENSATION,
                category="Undo",
                description=f"Reversal of batch {batch_id}",
                reference=snapshot_id_for(batch_id),
                batch_id=batch_id,
                actor_id=actor_id,
            ))
            result["entry_id"] = mutation.entry_id
            result["restored_balance"] = str(mutation.new_balance)
        else:
            account = self.account_store.get_account_balance(account_id)
            result["restored_balance"] = str(account.current_balance)
        result["matches_snapshot"] = (
            Decimal(result["restored_balance"]) == Decimal(captured["current_balance"])
        )
        return result

    def get_recent(self, limit: int = 10) -> List[UndoSnapshot]:
        """Most recent snapshots first"""
        snapshots = [UndoSnapshot.from_dict(d) for d in self.storage.load_all(self.table_name)]
        snapshots.sort(key=lambda s: s.created_at, reverse=True)
        return snapshots[:limit]

    def get_statistics(self) -> Dict[str, Any]:
        snapshots = [UndoSnapshot.from_dict(d) for d in self.storage.load_all(self.table_name)]
        by_status = {status.value: 0 for status in UndoStatus}
        for snapshot in snapshots:
            by_status[snapshot.status.value] += 1
        total_payments = sum(s.payment_count for s in snapshots)
        return {
            "total_batches": len(snapshots),
            "by_status": by_status,
            "undoable": sum(
                1 for s in snapshots
                if s.can_undo and s.status in (UndoStatus.COMPLETED, UndoStatus.FAILED)
            ),
            "average_batch_size": (
                str((Decimal(total_payments) / len(snapshots)).quantize(Decimal('0.01')))
                if snapshots else "0"
            ),
        }
