"""
Tests for batch snapshots and compensating undo
"""

import pytest
from decimal import Decimal

from voucher_ledger.api_modular.dependencies import LedgerSystem
from voucher_ledger.config import LedgerConfig
from voucher_ledger.currency import Currency
from voucher_ledger.accounts import AccountKind
from voucher_ledger.audit import AuditEventType
from voucher_ledger.ledger import LedgerSource
from voucher_ledger.payments import PaymentStatus, SettlementStatus
from voucher_ledger.tax_returns import TaxReturnStatus
from voucher_ledger.undo import UndoStatus, snapshot_id_for
from voucher_ledger.exceptions import AccountNotFound, UndoError


class TestUndoCapture:
    """Test UndoCapture snapshots and undo"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = LedgerSystem(use_sqlite=False, config=LedgerConfig())
        self.undo = self.system.undo_capture
        self.system.account_store.create_account(
            "Office Supplies", AccountKind.BUDGET_LINE, Currency.GHS,
            Decimal('10000.00'), Decimal('2000.00'), account_id="OFFICE-001"
        )
        self.system.account_store.create_account(
            "GCB Main", AccountKind.BANK, Currency.GHS, Decimal('20000.00'), account_id="BANK-GCB"
        )
        self.system.rate_store.set_rate("SERVICES", "0.075")
        self.payment = self.system.payment_store.stage_payment(
            vendor="Consult Co", invoice_no="INV-9", description="Audit fees",
            pre_tax_amount="2000.00", currency=Currency.GHS, budget_line="OFFICE-001",
            procurement_type="SERVICES", bank_account="BANK-GCB"
        )

    def finalize(self):
        result = self.system.pipeline.finalize_batch([self.payment.id])
        assert result.success
        return result.batch_id

    def balance(self, account_id):
        return self.system.account_store.get_account(account_id).current_balance

    def test_snapshot_contents(self):
        """Test that a snapshot records balances and payments"""
        snapshot_id = self.undo.snapshot("BATCH-X", ["OFFICE-001", "BANK-GCB"], [self.payment.id], actor_id="clerk")

        assert snapshot_id == snapshot_id_for("BATCH-X") == "UNDO-BATCH-X"
        snapshot = self.undo.get_snapshot("BATCH-X")
        assert snapshot.status == UndoStatus.CAPTURED
        assert snapshot.accounts["OFFICE-001"]["current_balance"] == "8000.00"
        assert snapshot.accounts["BANK-GCB"]["kind"] == AccountKind.BANK.value
        assert snapshot.payments[self.payment.id]["status"] == PaymentStatus.STAGED.value
        assert snapshot.payment_count == 1
        assert snapshot.total_amount == Decimal('1850.00')
        assert snapshot.primary_vendor == "Consult Co"
        assert snapshot.actor_id == "clerk"

    def test_snapshot_unknown_account(self):
        """Test that snapshotting a missing account fails"""
        with pytest.raises(AccountNotFound):
            self.undo.snapshot("BATCH-X", ["NOPE"], [self.payment.id])
        assert self.undo.get_snapshot("BATCH-X") is None

    def test_can_undo_only_after_batch_ends(self):
        """Test that an in-progress snapshot cannot be undone"""
        self.undo.snapshot("BATCH-X", ["OFFICE-001"], [self.payment.id])
        assert not self.undo.can_undo("BATCH-X")
        assert not self.undo.can_undo("UNKNOWN")

        self.undo.mark_completed("BATCH-X")
        assert self.undo.can_undo("BATCH-X")

        self.undo.mark_failed("BATCH-X", "MASTER_LOG")
        assert self.undo.can_undo("BATCH-X")
        assert self.undo.get_snapshot("BATCH-X").failed_step == "MASTER_LOG"

    def test_undo_completed_batch(self):
        """Test that every effect of a completed batch is compensated"""
        batch_id = self.finalize()
        assert self.balance("OFFICE-001") == Decimal('6150.00')
        assert self.balance("BANK-GCB") == Decimal('18150.00')

        snapshot = self.undo.undo_batch(batch_id, actor_id="supervisor", reason="wrong vendor")

        assert snapshot.status == UndoStatus.UNDONE
        assert not snapshot.can_undo
        assert snapshot.undone_by == "supervisor"
        assert all(r["matches_snapshot"] for r in snapshot.restore_results)
        assert self.balance("OFFICE-001") == Decimal('8000.00')
        assert self.balance("BANK-GCB") == Decimal('20000.00')

        # The reversal is itself a ledger entry
        entries = self.system.ledger.get_account_ledger("OFFICE-001")
        assert [e.source for e in entries] == [
            LedgerSource.UNDO_COMPENSATION, LedgerSource.PAYMENT_FINALIZATION
        ]
        assert entries[0].amount == Decimal('1850.00')
        assert self.system.ledger.verify_conservation("OFFICE-001")["valid"]
        assert self.system.ledger.verify_conservation("BANK-GCB")["valid"]

        payment = self.system.payment_store.get_payment(self.payment.id)
        assert payment.status == PaymentStatus.STAGED
        assert payment.settlement_status == SettlementStatus.PENDING
        assert payment.paid_amount == Decimal('0')
        assert payment.payment_reference is None

        returns = self.system.tax_return_log.list_entries(batch_id=batch_id)
        assert [r.status for r in returns] == [TaxReturnStatus.VOID]

        assert self.system.master_log.list_entries(batch_id=batch_id) == []
        assert len(self.system.master_log.list_entries(batch_id=batch_id, include_reversed=True)) == 1
        assert self.system.master_log.is_batch_reversed(batch_id)

        executed = self.system.audit_trail.get_events_by_type(AuditEventType.UNDO_EXECUTED)
        assert executed[0].metadata["reason"] == "wrong vendor"
        assert self.system.audit_trail.verify_integrity()["valid"]

    def test_undone_payment_can_be_finalized_again(self):
        """Test that an undone payment returns to the staging pool"""
        first = self.finalize()
        self.undo.undo_batch(first)

        second = self.finalize()

        assert second != first
        assert self.balance("OFFICE-001") == Decimal('6150.00')
        payment = self.system.payment_store.get_payment(self.payment.id)
        assert payment.payment_reference == second

    def test_undo_twice(self):
        """Test that a batch can only be undone once"""
        batch_id = self.finalize()
        self.undo.undo_batch(batch_id)

        with pytest.raises(UndoError, match="cannot be undone"):
            self.undo.undo_batch(batch_id)
        assert self.balance("OFFICE-001") == Decimal('8000.00')

    def test_undo_unknown_batch(self):
        """Test that an unknown batch has nothing to undo"""
        with pytest.raises(UndoError, match="No undo snapshot"):
            self.undo.undo_batch("BATCH-MISSING")

    def test_recent_and_statistics(self):
        """Test snapshot listing and counts"""
        batch_id = self.finalize()
        self.undo.snapshot("BATCH-OPEN", ["OFFICE-001"], [self.payment.id])

        recent = self.undo.get_recent(limit=1)
        assert [s.batch_id for s in recent] == ["BATCH-OPEN"]

        stats = self.undo.get_statistics()
        assert stats["total_batches"] == 2
        assert stats["by_status"]["completed"] == 1
        assert stats["by_status"]["captured"] == 1
        assert stats["undoable"] == 1
        assert stats["average_batch_size"] == "1.00"

        self.undo.undo_batch(batch_id)
        stats = self.undo.get_statistics()
        assert stats["by_status"]["undone"] == 1
        assert stats["undoable"] == 0


class TestUndoAcrossTranches:
    """Test undo of partial payments finalized over several batches"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = LedgerSystem(use_sqlite=False, config=LedgerConfig())
        self.undo = self.system.undo_capture
        self.system.account_store.create_account(
            "Works", AccountKind.BUDGET_LINE, Currency.GHS, Decimal('5000.00'), account_id="WORKS-1"
        )
        self.payment = self.system.payment_store.stage_payment(
            vendor="Builder Ltd", invoice_no="INV-77", description="Fence",
            pre_tax_amount="1000.00", currency=Currency.GHS, budget_line="WORKS-1",
            payment_percentage="40"
        )
        self.first = self.system.pipeline.finalize_batch([self.payment.id]).batch_id
        self.system.payment_store.set_tranche(self.payment.id, "60")
        self.second = self.system.pipeline.finalize_batch([self.payment.id]).batch_id

    def balance(self):
        return self.system.account_store.get_account("WORKS-1").current_balance

    def test_earlier_tranche_cannot_be_undone_first(self):
        """Test that undoing a batch superseded by a later tranche is refused"""
        with pytest.raises(UndoError, match=self.second):
            self.undo.undo_batch(self.first)

        payment = self.system.payment_store.get_payment(self.payment.id)
        assert payment.paid_amount == Decimal('1000.00')
        assert payment.settlement_status == SettlementStatus.PAID
        assert self.balance() == Decimal('4000.00')
        assert self.undo.can_undo(self.first)

    def test_undo_latest_tranche_first(self):
        """Test undoing tranches newest first"""
        self.undo.undo_batch(self.second)

        payment = self.system.payment_store.get_payment(self.payment.id)
        assert payment.paid_amount == Decimal('400.00')
        assert payment.settlement_status == SettlementStatus.PARTIAL
        assert self.balance() == Decimal('4600.00')

        self.undo.undo_batch(self.first)

        payment = self.system.payment_store.get_payment(self.payment.id)
        assert payment.paid_amount == Decimal('0')
        assert payment.settlement_status == SettlementStatus.PENDING
        assert self.balance() == Decimal('5000.00')
        assert self.system.ledger.verify_conservation("WORKS-1")["valid"]
