"""
Typed Exception Hierarchy

Every error raised by the ledger and the finalization saga derives from
LedgerError and carries a machine-readable ``code`` so API handlers and
operators can branch on type rather than on message text.

    LedgerError
    +-- ValidationError
    |   +-- AccountNotFound
    +-- InsufficientFunds
    +-- ConcurrentConflict
    +-- PartialTaxLoggingFailure
    +-- PipelineError
    +-- UndoError
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional


class LedgerError(Exception):
    """Base exception for all voucher ledger errors"""

    code: str = "LEDGER_ERROR"

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self)}


class ValidationError(LedgerError):
    """Input rejected before any side effect"""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or [message]
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["errors"] = list(self.errors)
        return result


class AccountNotFound(ValidationError):
    """An account reference could not be resolved"""

    code: str = "ACCOUNT_NOT_FOUND"

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Account not found: {reference}")


class InsufficientFunds(LedgerError):
    """Outflow would overdraw an account and the overdraft policy rejects it"""

    code: str = "INSUFFICIENT_FUNDS"

    def __init__(self, account_id: str, balance: Decimal, amount: Decimal):
        self.account_id = account_id
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"Insufficient funds in {account_id}: balance {balance}, outflow {abs(amount)}"
        )


class ConcurrentConflict(LedgerError):
    """Optimistic update kept losing to concurrent writers"""

    code: str = "CONCURRENT_CONFLICT"

    def __init__(self, account_id: str, attempts: int):
        self.account_id = account_id
        self.attempts = attempts
        super().__init__(
            f"Account {account_id} was modified concurrently; gave up after {attempts} attempts"
        )


class PartialTaxLoggingFailure(LedgerError):
    """A single tax-return entry could not be written"""

    code: str = "PARTIAL_TAX_LOGGING_FAILURE"

    def __init__(self, payment_id: str, reason: str):
        self.payment_id = payment_id
        self.reason = reason
        super().__init__(f"Tax return for payment {payment_id} not written: {reason}")


class PipelineError(LedgerError):
    """A finalization step failed after balances were mutated"""

    code: str = "PIPELINE_ERROR"

    def __init__(self, batch_id: str, step: str, detail: str):
        self.batch_id = batch_id
        self.step = step
        self.detail = detail
        super().__init__(f"Batch {batch_id} failed at {step}: {detail}")


class UndoError(LedgerError):
    """An undo request cannot be honoured"""

    code: str = "UNDO_ERROR"
