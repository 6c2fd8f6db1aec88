"""
Service container and FastAPI dependencies
"""

from typing import Optional

from ..storage import InMemoryStorage, SQLiteStorage, StorageInterface
from ..audit import AuditTrail
from ..accounts import BalanceAccountStore
from ..resolver import AccountResolver
from ..tax import TaxCalculator
from ..rates import CachedRateTable, StorageRateTable
from ..ledger import LedgerService, OverdraftPolicy
from ..payments import PaymentStore
from ..tax_returns import TaxReturnLog
from ..master_log import MasterLog
from ..undo import UndoCapture
from ..finalization import FinalizationPipeline
from ..config import LedgerConfig, get_config


def _sqlite_path(database_url: str) -> str:
    if database_url.startswith("sqlite:///"):
        return database_url[len("sqlite:///"):] or ":memory:"
    raise ValueError(f"Unsupported database URL: {database_url}")


class LedgerSystem:
    """Voucher ledger with all components initialized"""

    def __init__(self, use_sqlite: bool = True, config: Optional[LedgerConfig] = None):
        self.config = config or get_config()

        # Initialize storage
        if use_sqlite:
            self.storage: StorageInterface = SQLiteStorage(_sqlite_path(self.config.database_url))
        else:
            self.storage = InMemoryStorage()

        policy = self.config.tax_policy()

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.account_store = BalanceAccountStore(self.storage, self.audit_trail)
        self.resolver = AccountResolver(self.account_store)
        self.calculator = TaxCalculator(policy)
        self.rate_store = StorageRateTable(self.storage)
        self.rate_table = CachedRateTable(self.rate_store, ttl_seconds=self.config.rate_cache_ttl_seconds)
        self.ledger = LedgerService(
            self.storage, self.audit_trail,
            overdraft_policy=OverdraftPolicy(self.config.overdraft_policy),
            max_retries=self.config.max_conflict_retries
        )
        self.payment_store = PaymentStore(self.storage, self.audit_trail, self.calculator, self.rate_table)
        self.tax_return_log = TaxReturnLog(self.storage, self.audit_trail, policy.local_currency)
        self.master_log = MasterLog(self.storage)
        self.undo_capture = UndoCapture(
            self.storage, self.account_store, self.ledger, self.payment_store,
            self.tax_return_log, self.master_log, self.audit_trail
        )
        self.pipeline = FinalizationPipeline(
            self.storage, self.account_store, self.resolver, self.ledger,
            self.undo_capture, self.payment_store, self.tax_return_log,
            self.master_log, self.audit_trail, self.calculator, config=self.config
        )


# Global ledger system instance, created on first request
ledger_system: Optional[LedgerSystem] = None


# Dependency to get ledger system
def get_ledger_system() -> LedgerSystem:
    global ledger_system
    if ledger_system is None:
        ledger_system = LedgerSystem(use_sqlite=True)
    return ledger_system
