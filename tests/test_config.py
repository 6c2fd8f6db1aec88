"""
Tests for settings, structured logging and the service container
"""

import json
import logging
import pytest
from decimal import Decimal

from voucher_ledger.config import LedgerConfig
from voucher_ledger.currency import Currency
from voucher_ledger.tax import VatBase
from voucher_ledger.ledger import OverdraftPolicy
from voucher_ledger.storage import InMemoryStorage, SQLiteStorage
from voucher_ledger.logging_config import JSONFormatter, setup_logging, log_action
from voucher_ledger.api_modular.dependencies import LedgerSystem


class TestLedgerConfig:
    """Test environment-driven settings"""

    def test_defaults(self):
        """Test the default statutory policy"""
        policy = LedgerConfig().tax_policy()

        assert policy.local_currency == Currency.GHS
        assert policy.reporting_currency == Currency.USD
        assert policy.vat_rate == Decimal('0.15')
        assert policy.levy_categories == frozenset({"GOODS"})
        assert policy.vat_base == VatBase.NET_OF_WHT

    def test_environment_overrides(self, monkeypatch):
        """Test VOUCHER_LEDGER_ prefixed variables"""
        monkeypatch.setenv("VOUCHER_LEDGER_VAT_BASE", "levy_inclusive")
        monkeypatch.setenv("VOUCHER_LEDGER_LEVY_CATEGORIES", "goods, works")
        monkeypatch.setenv("VOUCHER_LEDGER_OVERDRAFT_POLICY", "reject")

        config = LedgerConfig()
        policy = config.tax_policy()

        assert policy.vat_base == VatBase.LEVY_INCLUSIVE
        assert policy.levy_categories == frozenset({"GOODS", "WORKS"})
        assert OverdraftPolicy(config.overdraft_policy) == OverdraftPolicy.REJECT

    def test_invalid_vat_base(self):
        """Test that an unknown VAT base is rejected when the policy is built"""
        with pytest.raises(ValueError):
            LedgerConfig(vat_base="gross").tax_policy()


class TestLedgerSystem:
    """Test the service container"""

    def test_in_memory(self):
        """Test wiring with in-memory storage"""
        system = LedgerSystem(use_sqlite=False, config=LedgerConfig(overdraft_policy="reject"))

        assert isinstance(system.storage, InMemoryStorage)
        assert system.ledger.overdraft_policy == OverdraftPolicy.REJECT
        assert system.pipeline.undo_capture is system.undo_capture

    def test_sqlite_url(self, tmp_path):
        """Test that the database URL selects the SQLite file"""
        url = f"sqlite:///{tmp_path / 'ledger.db'}"
        system = LedgerSystem(use_sqlite=True, config=LedgerConfig(database_url=url))

        assert isinstance(system.storage, SQLiteStorage)
        assert (tmp_path / "ledger.db").exists()

    def test_unsupported_url(self):
        """Test that non-SQLite URLs are refused"""
        with pytest.raises(ValueError, match="Unsupported database URL"):
            LedgerSystem(use_sqlite=True, config=LedgerConfig(database_url="postgresql://db/ledger"))


class TestStructuredLogging:
    """Test JSON log output"""

    def test_json_formatter(self):
        """Test that structured fields appear and None values are dropped"""
        record = logging.LogRecord("voucher_ledger.test", logging.INFO, __file__, 1, "Batch done", (), None)
        record.correlation_id = "BATCH-1"
        record.action = "batch_completed"

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "Batch done"
        assert data["correlation_id"] == "BATCH-1"
        assert data["action"] == "batch_completed"
        assert "user_id" not in data

    def test_log_action_respects_level(self, tmp_path):
        """Test that log_action writes structured records above the threshold"""
        log_file = tmp_path / "ledger.log"
        logger = setup_logging("WARNING", logger_name="voucher_ledger.test_log_action",
                               log_file=str(log_file))

        log_action(logger, "info", "ignored", action="noise")
        log_action(logger, "warning", "Batch rejected", user_id="clerk",
                   correlation_id="BATCH-2", extra={"errors": ["bad"]})
        for handler in logger.handlers:
            handler.flush()

        lines = log_file.read_text().splitlines()
        assert len(lines) == 1
        data = json.loads(lines[0])
        assert data["level"] == "WARNING"
        assert data["user_id"] == "clerk"
        assert data["extra"] == {"errors": ["bad"]}
