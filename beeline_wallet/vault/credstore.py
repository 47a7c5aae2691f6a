"""
OS credential store adapter.

Keys stored without a PIN are handed to the operating system's secret
service (macOS Keychain, Windows Credential Locker, Secret Service on Linux)
through ``keyring``. The vault file only keeps an opaque reference.

Security Note:
    keyring works with ``str`` values, so the key travels as hex text across
    this boundary. Failures never fall back to plaintext on disk.
"""
import logging

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from ..exceptions import CredentialStoreUnavailable
from .secret import SecretBuffer

logger = logging.getLogger("beeline.vault")

_REF_SEPARATOR = "/"


class CredentialStore:
    """Interface of an OS-provided secret store."""

    def set_secret(self, service: str, account: str, secret: SecretBuffer) -> str:
        """Store ``secret`` and return an opaque handle for it."""
        raise NotImplementedError

    def get_secret(self, handle: str) -> SecretBuffer:
        raise NotImplementedError

    def delete_secret(self, handle: str) -> None:
        raise NotImplementedError


class KeyringCredentialStore(CredentialStore):
    """CredentialStore backed by the system keyring."""

    def __init__(self, backend=None):
        # None means "whatever keyring resolves for this platform"
        self._backend = backend

    @property
    def backend(self):
        return self._backend or keyring.get_keyring()

    @staticmethod
    def make_handle(service: str, account: str) -> str:
        return f"{service}{_REF_SEPARATOR}{account}"

    @staticmethod
    def parse_handle(handle: str) -> tuple[str, str]:
        service, sep, account = handle.partition(_REF_SEPARATOR)
        if not sep or not service or not account:
            raise CredentialStoreUnavailable("malformed credential store reference")
        return service, account

    def set_secret(self, service: str, account: str, secret: SecretBuffer) -> str:
        try:
            self.backend.set_password(service, account, secret.borrow().hex())
        except KeyringError as err:
            logger.error("Keyring write failed for %s: %s", account, type(err).__name__)
            raise CredentialStoreUnavailable() from None
        return self.make_handle(service, account)

    def get_secret(self, handle: str) -> SecretBuffer:
        service, account = self.parse_handle(handle)
        try:
            stored = self.backend.get_password(service, account)
        except KeyringError as err:
            logger.error("Keyring read failed for %s: %s", account, type(err).__name__)
            raise CredentialStoreUnavailable() from None
        if stored is None:
            logger.warning("Keyring has no secret for %s", account)
            raise CredentialStoreUnavailable("secret missing from OS credential store")
        try:
            return SecretBuffer(bytearray.fromhex(stored))
        except ValueError:
            raise CredentialStoreUnavailable("unreadable secret in OS credential store") from None

    def delete_secret(self, handle: str) -> None:
        service, account = self.parse_handle(handle)
        try:
            self.backend.delete_password(service, account)
        except PasswordDeleteError:
            logger.warning("Keyring secret for %s was already gone", account)
        except KeyringError as err:
            logger.error("Keyring delete failed for %s: %s", account, type(err).__name__)
            raise CredentialStoreUnavailable() from None
