"""
Voucher Ledger

Payment finalization and budget balance ledger: staged vendor payments are
taxed, posted against budget lines and bank accounts through an optimistic
append-only ledger, logged for WHT returns and reporting, and can be undone
with compensating entries.
"""

__version__ = "1.0.0"
