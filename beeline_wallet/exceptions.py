"""
Vault error taxonomy.

Every failure the vault reports is one of the classes below. Messages carry
only the account / role identifiers and the kind of failure.

Security Note:
    Never put plaintext secrets, derived keys or ciphertext bytes into an
    exception message or its ``args``.
"""
from typing import Optional


class VaultError(Exception):
    """Base class for all vault failures."""

    default_message = "vault error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        account: Optional[str] = None,
        role: Optional[str] = None,
    ):
        self.account = account
        self.role = str(getattr(role, "value", role)) if role is not None else None
        super().__init__(message or self._describe())

    def _describe(self) -> str:
        target = []
        if self.account:
            target.append(f"account={self.account}")
        if self.role:
            target.append(f"role={self.role}")
        if target:
            return f"{self.default_message} ({', '.join(target)})"
        return self.default_message


class InvalidInput(VaultError, ValueError):
    default_message = "invalid input"


class AccountNotFound(VaultError):
    default_message = "account not found"


class RoleNotFound(VaultError):
    default_message = "role not found"


class DuplicateKeyRecord(VaultError):
    default_message = "key already stored"


class DecryptionFailed(VaultError):
    """Wrong PIN or tampered key material.

    Both causes raise the same exception so a caller cannot tell them apart.
    """

    default_message = "unable to decrypt key"


class VaultCorrupt(VaultError):
    """The vault file is unreadable or fails validation."""

    default_message = "vault file is corrupt"


class CredentialStoreUnavailable(VaultError):
    default_message = "OS credential store unavailable"


class ConcurrentUnlock(VaultError):
    """Another key is already unlocked in this process."""

    default_message = "another key is already unlocked"
