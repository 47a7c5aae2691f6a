"""
Wallet — wires the vault components together for the command line.

A Wallet owns one EncryptedVaultStore and exposes the account-level
operations built on it: password login, key import and PIN change. It is
passed explicitly to whatever needs it; there is no module-level instance.
"""
import logging
from typing import Iterable, Optional, Union

from .exceptions import DuplicateKeyRecord, InvalidInput
from .vault.config import VaultConfig
from .vault.credstore import CredentialStore, KeyringCredentialStore
from .vault.derivation import derive_all
from .vault.models import KeyRecord, Role, normalize_account
from .vault.pin_change import change_pin
from .vault.registry import AccountRegistry
from .vault.secret import SecretBuffer
from .vault.store import EncryptedVaultStore
from .vault.unlock import PinPrompt, ProgressHook, UnlockFlow

logger = logging.getLogger("beeline.vault")

DEFAULT_LOGIN_ROLES = (Role.POSTING, Role.ACTIVE, Role.MEMO)


class Wallet:
    """Vault store, registry and unlock flow sharing one configuration."""

    def __init__(
        self,
        config: Optional[VaultConfig] = None,
        credential_store: Optional[CredentialStore] = None,
        pin_prompt: Optional[PinPrompt] = None,
        on_progress: Optional[ProgressHook] = None,
    ):
        self.config = config or VaultConfig.from_env()
        if credential_store is None:
            credential_store = KeyringCredentialStore()
        self.store = EncryptedVaultStore(
            config=self.config, credential_store=credential_store,
        )
        self.registry = AccountRegistry(self.store)
        self.unlock_flow = UnlockFlow(self.store, pin_prompt=pin_prompt, on_progress=on_progress)

    def open(self) -> "Wallet":
        self.store.initialize()
        return self

    def login(
        self,
        account: str,
        password: SecretBuffer,
        pin: Optional[SecretBuffer] = None,
        roles: Iterable[Union[Role, str]] = DEFAULT_LOGIN_ROLES,
        overwrite: bool = False,
    ) -> list[KeyRecord]:
        """Derive keys from a master password and store them.

        All roles are checked for existing records before anything is
        derived, and stored in one write.

        Args:
            account: Ledger account name (a leading ``@`` is accepted).
            password: Master password. Not scrubbed here.
            pin: Encrypt the keys under this PIN; without it they go to the
                OS credential store.
            roles: Roles to derive (default posting, active, memo).
            overwrite: Replace keys already stored for the account.

        Returns:
            The stored records, in the order of ``roles``.

        Raises:
            InvalidInput: Bad account, role, password or PIN.
            DuplicateKeyRecord: A role is already stored and not ``overwrite``.
        """
        account = normalize_account(account)
        targets = list(dict.fromkeys(Role.parse(r) for r in roles))
        if not targets:
            raise InvalidInput("no roles requested", account=account)
        if not overwrite and self.store.has_account(account):
            existing = self.store.roles(account)
            for role in targets:
                if role in existing:
                    raise DuplicateKeyRecord(account=account, role=role)

        derived = derive_all(password, account, targets)
        records = []
        try:
            with self.store.batch():
                for key in derived:
                    records.append(
                        self.store.add_key(
                            account, key.role, key.private_key, pin, overwrite=overwrite,
                        )
                    )
        finally:
            for key in derived:
                key.scrub()
        logger.info(
            "Login stored %d key(s) for %s", len(records), account,
        )
        return records

    def import_key(
        self,
        account: str,
        role: Union[Role, str],
        private_key: SecretBuffer,
        pin: Optional[SecretBuffer] = None,
        overwrite: bool = False,
    ) -> KeyRecord:
        """Store an existing private key (raw 32 bytes)."""
        return self.store.add_key(account, role, private_key, pin, overwrite=overwrite)

    def change_pin(
        self,
        account: str,
        old_pin: SecretBuffer,
        new_pin: SecretBuffer,
        roles: Optional[Iterable[Union[Role, str]]] = None,
    ) -> dict:
        return change_pin(self.store, account, old_pin, new_pin, roles)
