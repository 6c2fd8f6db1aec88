"""
Tests for the WHT return log
"""

from decimal import Decimal
from datetime import datetime, timezone

from voucher_ledger.currency import Currency
from voucher_ledger.storage import InMemoryStorage
from voucher_ledger.audit import AuditTrail, AuditEventType
from voucher_ledger.tax import TaxCalculator
from voucher_ledger.rates import StaticRateTable
from voucher_ledger.payments import PaymentStore
from voucher_ledger.tax_returns import (
    TaxReturnLog, TaxReturnStatus, tax_return_id, tax_period, TAX_RETURN_BATCHES_TABLE
)


class BrokenTaxReturnLog(TaxReturnLog):
    """Fails to build the entry for one vendor"""

    def build_entry(self, payment, *args, **kwargs):
        if payment.vendor == "Broken Ltd":
            raise RuntimeError("tax office schema mismatch")
        return super().build_entry(payment, *args, **kwargs)


class TestHelpers:
    """Test id and period helpers"""

    def test_tax_return_id(self):
        """Test deterministic, storage-safe ids"""
        assert tax_return_id("abc-123", "FLAT RATE", "BATCH-1") == "WHT-abc_123-FLAT_RATE-BATCH_1"
        assert tax_return_id("p1", "", "B2") == "WHT-p1-NONE-B2"

    def test_tax_period(self):
        """Test calendar quarter labels"""
        assert tax_period(datetime(2024, 1, 15, tzinfo=timezone.utc)) == "Q1 2024"
        assert tax_period(datetime(2024, 6, 30, tzinfo=timezone.utc)) == "Q2 2024"
        assert tax_period(datetime(2024, 7, 1, tzinfo=timezone.utc)) == "Q3 2024"
        assert tax_period(datetime(2025, 12, 31, tzinfo=timezone.utc)) == "Q4 2025"


class TestTaxReturnLog:
    """Test filing and voiding returns"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.payments = PaymentStore(
            self.storage, self.audit_trail, TaxCalculator(),
            StaticRateTable({"SERVICES": "0.075"})
        )
        self.log = TaxReturnLog(self.storage, self.audit_trail, Currency.GHS)

    def stage(self, vendor="Consult Co", currency=Currency.GHS, procurement_type="SERVICES"):
        return self.payments.stage_payment(
            vendor=vendor, invoice_no="INV-1", description="Advisory",
            pre_tax_amount="2000.00", currency=currency, budget_line="Consulting",
            fx_rate="12.5", procurement_type=procurement_type
        )

    def test_file_eligible_payments_only(self):
        """Test that only local-currency payments with WHT are filed"""
        local = self.stage()
        foreign = self.stage(vendor="Offshore Inc", currency=Currency.USD)
        untaxed = self.stage(vendor="Rent Co", procurement_type="RENT")

        result = self.log.file_batch_returns("BATCH-1", [local, foreign, untaxed], filed_by="clerk")

        assert result.entry_ids == [tax_return_id(local.id, "SERVICES", "BATCH-1")]
        assert result.skipped == 2
        assert result.failures == []

        entry = self.log.get_entry(result.entry_ids[0])
        assert entry.tax_amount == Decimal('150.00')
        assert entry.tax_rate == Decimal('0.075')
        assert entry.tax_base_amount == Decimal('2000.00')
        assert entry.batch_id == "BATCH-1"
        assert entry.status == TaxReturnStatus.FILED
        assert entry.tax_period.startswith("Q")

        summary = self.storage.load(TAX_RETURN_BATCHES_TABLE, "BATCH-1")
        assert summary["skipped"] == 2

    def test_refiling_upserts(self):
        """Test that filing the same payment twice in one batch keeps one entry"""
        payment = self.stage()
        first = self.log.file_batch_returns("BATCH-1", [payment])
        created_at = self.log.get_entry(first.entry_ids[0]).created_at

        second = self.log.file_batch_returns("BATCH-1", [payment], filed_by="supervisor")

        assert first.entry_ids == second.entry_ids
        entries = self.log.list_entries()
        assert len(entries) == 1
        assert entries[0].filed_by == "supervisor"
        assert entries[0].created_at == created_at

    def test_tranches_keep_separate_entries(self):
        """Test that each tranche of a partial payment is filed on its own"""
        payment = self.payments.stage_payment(
            vendor="Consult Co", invoice_no="INV-2", description="Advisory",
            pre_tax_amount="1000.00", currency=Currency.GHS, budget_line="Consulting",
            procurement_type="SERVICES", payment_percentage="40"
        )
        first = self.log.file_batch_returns("BATCH-1", [payment])
        payment = self.payments.set_tranche(payment.id, "60")
        second = self.log.file_batch_returns("BATCH-2", [payment])

        assert first.entry_ids != second.entry_ids
        assert self.log.get_entry(first.entry_ids[0]).tax_amount == Decimal('30.00')
        assert self.log.get_entry(second.entry_ids[0]).tax_amount == Decimal('45.00')
        assert sum(e.tax_amount for e in self.log.list_entries()) == Decimal('75.00')

        assert self.log.void_batch_returns("BATCH-1") == 1
        assert self.log.get_entry(second.entry_ids[0]).status == TaxReturnStatus.FILED

    def test_per_payment_failure_does_not_stop_others(self):
        """Test that one broken entry is reported and the rest are filed"""
        log = BrokenTaxReturnLog(self.storage, self.audit_trail, Currency.GHS)
        good = self.stage()
        broken = self.stage(vendor="Broken Ltd")

        result = log.file_batch_returns("BATCH-1", [broken, good])

        assert result.entry_ids == [tax_return_id(good.id, "SERVICES", "BATCH-1")]
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.payment_id == broken.id
        assert failure.code == "PARTIAL_TAX_LOGGING_FAILURE"
        assert "schema mismatch" in failure.reason

    def test_void_batch_returns(self):
        """Test that voiding keeps entries and marks them void once"""
        payment = self.stage()
        self.log.file_batch_returns("BATCH-1", [payment])

        assert self.log.void_batch_returns("BATCH-1", voided_by="supervisor") == 1
        assert self.log.void_batch_returns("BATCH-1") == 0

        entries = self.log.list_entries(batch_id="BATCH-1")
        assert len(entries) == 1
        assert entries[0].status == TaxReturnStatus.VOID
        assert self.log.list_entries(status=TaxReturnStatus.FILED) == []
        assert len(self.audit_trail.get_events_by_type(AuditEventType.TAX_RETURN_VOIDED)) == 1
