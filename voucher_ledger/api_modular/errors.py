"""
Mapping of ledger exceptions to HTTP errors
"""

from fastapi import HTTPException

from ..exceptions import (
    AccountNotFound, ConcurrentConflict, InsufficientFunds, LedgerError, UndoError, ValidationError,
)


def http_error(exc: LedgerError) -> HTTPException:
    """Translate a ledger exception into the matching HTTPException"""
    if isinstance(exc, AccountNotFound):
        status_code = 404
    elif isinstance(exc, ValidationError):
        status_code = 400
    elif isinstance(exc, (InsufficientFunds, ConcurrentConflict, UndoError)):
        status_code = 409
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail=exc.to_dict())
