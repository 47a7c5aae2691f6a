"""Shared fixtures for the vault tests."""
import pytest

from beeline_wallet.exceptions import CredentialStoreUnavailable
from beeline_wallet.vault.config import VaultConfig
from beeline_wallet.vault.credstore import CredentialStore
from beeline_wallet.vault.secret import SecretBuffer
from beeline_wallet.vault.store import EncryptedVaultStore
from beeline_wallet.wallet import Wallet


class MemoryCredentialStore(CredentialStore):
    """In-memory stand-in for the OS credential store."""

    def __init__(self):
        self.secrets: dict[str, bytes] = {}
        self.available = True
        self.deleted: list[str] = []

    def _check(self):
        if not self.available:
            raise CredentialStoreUnavailable()

    def set_secret(self, service, account, secret):
        self._check()
        handle = f"{service}/{account}"
        self.secrets[handle] = secret.borrow().tobytes()
        return handle

    def get_secret(self, handle):
        self._check()
        if handle not in self.secrets:
            raise CredentialStoreUnavailable("secret missing from OS credential store")
        return SecretBuffer(self.secrets[handle])

    def delete_secret(self, handle):
        self._check()
        self.secrets.pop(handle, None)
        self.deleted.append(handle)


@pytest.fixture
def config(tmp_path):
    """Vault config pointing at a temporary home with cheap scrypt."""
    return VaultConfig(home=tmp_path / "beeline", scrypt_n=2**10)


@pytest.fixture
def credentials():
    return MemoryCredentialStore()


@pytest.fixture
def store(config, credentials):
    """Initialized, empty vault store."""
    return EncryptedVaultStore(config=config, credential_store=credentials).initialize()


@pytest.fixture
def wallet(config, credentials):
    return Wallet(config=config, credential_store=credentials).open()


@pytest.fixture
def private_key():
    """A fixed valid secp256k1 private key."""
    return SecretBuffer(bytes.fromhex("11" * 32))


@pytest.fixture
def pin():
    return SecretBuffer("1234")


@pytest.fixture
def reopen(config, credentials):
    """Factory loading the vault file again into a fresh store."""
    def _reopen() -> EncryptedVaultStore:
        return EncryptedVaultStore(config=config, credential_store=credentials).initialize()
    return _reopen
