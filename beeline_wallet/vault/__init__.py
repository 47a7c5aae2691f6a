"""Key Vault — Encrypted storage of ledger account keys.

Security Note (Threat Model):
    Private keys, PINs and passwords are held in SecretBuffers and scrubbed
    after use. Python cannot guarantee that no other copy exists: values
    returned as ``bytes``/``str`` by cryptography, keyring or the terminal
    prompt linger until garbage collected. A memory dump of the process
    taken while a key is unlocked can expose it. This is an accepted
    limitation; mitigation requires a hardware signer, which is out of scope.
"""

from .secret import SecretBuffer
from .models import Role, KeyRecord, VaultFile, AccountSummary, KeyInfo
from .config import VaultConfig
from .derivation import derive, derive_all, public_key_from_private, DerivedKey
from .credstore import CredentialStore, KeyringCredentialStore
from .store import EncryptedVaultStore
from .registry import AccountRegistry
from .unlock import UnlockFlow, UnlockState, Signer
from .pin_change import change_pin

__all__ = [
    "SecretBuffer",
    "Role",
    "KeyRecord",
    "VaultFile",
    "AccountSummary",
    "KeyInfo",
    "VaultConfig",
    "derive",
    "derive_all",
    "public_key_from_private",
    "DerivedKey",
    "CredentialStore",
    "KeyringCredentialStore",
    "EncryptedVaultStore",
    "AccountRegistry",
    "UnlockFlow",
    "UnlockState",
    "Signer",
    "change_pin",
]
