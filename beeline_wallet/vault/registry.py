"""
Account Registry — read-only view of the accounts held in a vault store.

Holds no state of its own: every call reads the store's current content.
"""
from typing import Optional

from .models import AccountSummary, KeyInfo, Role, normalize_account
from .store import EncryptedVaultStore


def _ordered(roles) -> list[Role]:
    return sorted(roles, key=lambda r: r.privilege, reverse=True)


class AccountRegistry:
    """Projection of an EncryptedVaultStore into accounts and roles."""

    def __init__(self, store: EncryptedVaultStore):
        self._store = store

    def list_accounts(self) -> list[str]:
        return self._store.accounts()

    def has_account(self, account: str) -> bool:
        return self._store.has_account(account)

    def get_default_account(self) -> Optional[str]:
        """Return the default account, or None when unset."""
        return self._store.default_account

    def get_account_summary(self, account: str) -> AccountSummary:
        """Summarize the keys of one account.

        Raises:
            AccountNotFound: If the account has no keys.
        """
        name = normalize_account(account)
        records = self._store.roles(name)
        return AccountSummary(
            account=name,
            roles=_ordered(records),
            key_count=len(records),
            is_default=self._store.default_account == name,
        )

    def get_all_account_summaries(self) -> list[AccountSummary]:
        return [self.get_account_summary(name) for name in self.list_accounts()]

    def list_keys(self, account: str) -> list[KeyInfo]:
        """Public keys of an account, highest privilege first."""
        records = self._store.roles(account)
        return [
            KeyInfo(
                role=role,
                public_key=records[role].public_key,
                encrypted=records[role].encrypted,
            )
            for role in _ordered(records)
        ]
