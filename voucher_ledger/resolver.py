"""
Account Reference Resolution

Payments carry either a stable account id (structured entry) or a display
string such as ``"Travel - 4010 - OPS"`` (spreadsheet imports). Both must
resolve to the same canonical account without a data migration.
"""

from typing import Optional

from .accounts import AccountKind, BalanceAccount, BalanceAccountStore
from .exceptions import AccountNotFound
from .logging_config import get_logger

DISPLAY_SEPARATOR = " - "


class AccountResolver:
    """Maps free-text account references to canonical account ids"""

    def __init__(self, account_store: BalanceAccountStore):
        self.account_store = account_store
        self.logger = get_logger("voucher_ledger.resolver")

    def resolve(self, reference: Optional[str], kind: Optional[AccountKind] = None) -> Optional[str]:
        """
        Resolve a reference to an account id

        Lookup order: exact id, then the name before the first " - ",
        then the whole reference as a name. The first match wins.

        Args:
            reference: Account id or display string
            kind: Restrict matches to budget lines or banks

        Returns:
            The account id, or None when nothing matches
        """
        account = self._lookup(reference, kind)
        return account.id if account else None

    def resolve_account(self, reference: Optional[str],
                        kind: Optional[AccountKind] = None) -> BalanceAccount:
        """
        Resolve a reference to the full account record

        Raises:
            AccountNotFound: If no lookup step matches
        """
        account = self._lookup(reference, kind)
        if account is None:
            raise AccountNotFound(reference or "")
        return account

    def _lookup(self, reference: Optional[str], kind: Optional[AccountKind]) -> Optional[BalanceAccount]:
        if reference is None:
            return None
        reference = reference.strip()
        if not reference:
            return None

        account = self.account_store.get_account(reference)
        if account is not None and (kind is None or account.kind == kind):
            return account

        candidate = reference.split(DISPLAY_SEPARATOR, 1)[0].strip()
        if candidate and candidate != reference:
            matches = self.account_store.find_by_name(candidate, kind)
            if matches:
                self.logger.debug("Resolved %r by name prefix %r", reference, candidate)
                return matches[0]

        matches = self.account_store.find_by_name(reference, kind)
        if matches:
            return matches[0]

        self.logger.info("Account reference %r did not resolve", reference)
        return None
