"""Tests for the keyring-backed credential store."""
import pytest
from keyring.errors import KeyringLocked, PasswordDeleteError

from beeline_wallet.exceptions import CredentialStoreUnavailable
from beeline_wallet.vault.credstore import KeyringCredentialStore
from beeline_wallet.vault.secret import SecretBuffer


class DictKeyring:
    """Minimal keyring backend keeping passwords in a dict."""

    def __init__(self):
        self.passwords = {}
        self.error = None

    def _maybe_fail(self):
        if self.error is not None:
            raise self.error

    def set_password(self, service, username, password):
        self._maybe_fail()
        self.passwords[(service, username)] = password

    def get_password(self, service, username):
        self._maybe_fail()
        return self.passwords.get((service, username))

    def delete_password(self, service, username):
        self._maybe_fail()
        if (service, username) not in self.passwords:
            raise PasswordDeleteError("not found")
        del self.passwords[(service, username)]


@pytest.fixture
def backend():
    return DictKeyring()


@pytest.fixture
def credstore(backend):
    return KeyringCredentialStore(backend=backend)


class TestKeyringCredentialStore:

    def test_roundtrip(self, credstore, backend):
        handle = credstore.set_secret("beeline-wallet", "beeline-wallet:alice:memo", SecretBuffer(b"\xab" * 32))
        assert handle == "beeline-wallet/beeline-wallet:alice:memo"
        assert backend.passwords[("beeline-wallet", "beeline-wallet:alice:memo")] == "ab" * 32
        assert credstore.get_secret(handle).borrow().tobytes() == b"\xab" * 32

    def test_missing_secret(self, credstore):
        with pytest.raises(CredentialStoreUnavailable):
            credstore.get_secret("beeline-wallet/nothing")

    def test_malformed_handle(self, credstore):
        with pytest.raises(CredentialStoreUnavailable):
            credstore.get_secret("no-separator")

    def test_keyring_error_is_mapped(self, credstore, backend):
        backend.error = KeyringLocked("locked")
        with pytest.raises(CredentialStoreUnavailable):
            credstore.set_secret("beeline-wallet", "a", SecretBuffer(b"\x01" * 32))
        with pytest.raises(CredentialStoreUnavailable):
            credstore.get_secret("beeline-wallet/a")

    def test_delete(self, credstore, backend):
        handle = credstore.set_secret("svc", "acct", SecretBuffer(b"\x01"))
        credstore.delete_secret(handle)
        assert backend.passwords == {}
        # already gone: logged, not raised
        credstore.delete_secret(handle)

    def test_unreadable_secret(self, credstore, backend):
        backend.passwords[("svc", "acct")] = "not-hex"
        with pytest.raises(CredentialStoreUnavailable):
            credstore.get_secret("svc/acct")
