"""
EncryptedVaultStore — durable, encrypted persistence of account keys.

Provides the storage API of the key vault:
- ``initialize()`` — load ``wallet.json`` or start an empty vault
- ``add_key(account, role, key, pin)`` — seal under a PIN or hand to the OS store
- ``get_key(account, role, pin)`` — decrypt and return a SecretBuffer
- ``remove_key`` / ``remove_account`` / ``set_default_account``
- ``batch()`` — group mutations into a single atomic write

Security Note:
    Never log plaintext, ciphertext or PINs. Only account names, roles and
    operation names are logged.
    The file is not locked: two processes writing at once follow
    last-writer-wins and the loser's changes are lost.
"""
import os
import secrets
import tempfile
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

import orjson
from pydantic import ValidationError

from ..exceptions import (
    AccountNotFound,
    CredentialStoreUnavailable,
    DecryptionFailed,
    DuplicateKeyRecord,
    InvalidInput,
    RoleNotFound,
    VaultCorrupt,
)
from .config import VaultConfig
from .credstore import CredentialStore
from .crypto import (
    SealedSecret,
    associated_data,
    b64d,
    b64e,
    document_checksum,
    open_sealed,
    seal,
)
from .derivation import public_key_from_private
from .models import KDFParams, KeyRecord, Role, VaultFile, normalize_account
from .secret import SecretBuffer

logger = logging.getLogger("beeline.vault")

_CHECKSUM_FIELD = "checksum"


class EncryptedVaultStore:
    """Encrypted mapping of (account, role) to key material.

    One instance owns one vault file. The file is read once by
    ``initialize()`` and rewritten atomically after every mutation.
    """

    def __init__(
        self,
        path: Union[str, Path, None] = None,
        config: Optional[VaultConfig] = None,
        credential_store: Optional[CredentialStore] = None,
    ):
        self._config = config or VaultConfig()
        self._path = Path(path) if path is not None else self._config.vault_path
        self._credentials = credential_store
        self._vault: Optional[VaultFile] = None
        self._batch_depth = 0
        self._dirty = False
        self._pending_release: list[str] = []
        self._created: list[str] = []

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _require_vault(self) -> VaultFile:
        if self._vault is None:
            raise RuntimeError("vault store is not initialized")
        return self._vault

    def _validate_pin(self, pin: SecretBuffer) -> None:
        if not isinstance(pin, SecretBuffer) or pin.scrubbed:
            raise InvalidInput("PIN must be a live SecretBuffer")
        if len(pin) < self._config.min_pin_length:
            raise InvalidInput(
                f"PIN must be at least {self._config.min_pin_length} characters"
            )

    def _lookup(self, account: str, role: Union[Role, str]) -> tuple[str, Role, KeyRecord]:
        vault = self._require_vault()
        account = normalize_account(account)
        role = Role.parse(role)
        roles = vault.accounts.get(account)
        if not roles:
            raise AccountNotFound(account=account)
        record = roles.get(role)
        if record is None:
            raise RoleNotFound(account=account, role=role)
        return account, role, record

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @property
    def path(self) -> Path:
        return self._path

    def _new_vault(self) -> VaultFile:
        return VaultFile(
            kdf=KDFParams(
                n=self._config.scrypt_n,
                r=self._config.scrypt_r,
                p=self._config.scrypt_p,
            ),
            cipher=self._config.cipher_backend,
        )

    def _read(self) -> VaultFile:
        try:
            raw = self._path.read_bytes()
        except OSError as err:
            raise VaultCorrupt(f"vault file is unreadable: {err.strerror}") from None
        try:
            document = orjson.loads(raw)
        except orjson.JSONDecodeError:
            raise VaultCorrupt("vault file is not valid JSON") from None
        if not isinstance(document, dict):
            raise VaultCorrupt("vault file is not a JSON object")
        stored_checksum = document.pop(_CHECKSUM_FIELD, None)
        if stored_checksum != document_checksum(document):
            raise VaultCorrupt("vault file checksum mismatch")
        try:
            return VaultFile.model_validate(document)
        except ValidationError as err:
            # Field locations only: never echo input values.
            fields = sorted({".".join(str(p) for p in e["loc"]) for e in err.errors()})
            raise VaultCorrupt(f"vault file failed validation: {', '.join(fields)}") from None

    def _write(self) -> None:
        """Replace the vault file atomically (temp file + rename)."""
        vault = self._require_vault()
        document = vault.to_document()
        document[_CHECKSUM_FIELD] = document_checksum(document)
        payload = orjson.dumps(
            document, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS,
        )
        directory = self._path.parent
        directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=directory,
        )
        try:
            with os.fdopen(fd, "wb") as fp:
                fp.write(payload)
                fp.flush()
                os.fsync(fp.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self._path)
        except Exception:
            # Clean up temp file on failure
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        self._sync_directory(directory)
        self._dirty = False
        logger.debug("Vault saved: %s", self._path)

    @staticmethod
    def _sync_directory(directory: Path) -> None:
        """fsync the directory so the rename survives a power loss."""
        if os.name != "posix":
            return
        dir_fd = os.open(directory, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    def _commit(self) -> None:
        """Mark the vault changed; the enclosing batch writes it."""
        self._dirty = True

    @contextmanager
    def batch(self) -> Iterator["EncryptedVaultStore"]:
        """Group several mutations into one write.

        On a clean exit the vault is written once. If the block or the write
        raises, the in-memory state is restored to what it was on entry and
        the OS credential store secrets created inside the batch are deleted.
        Every mutating method runs inside a batch of its own.
        """
        vault = self._require_vault()
        outermost = self._batch_depth == 0
        snapshot = vault.model_copy(deep=True) if outermost else None
        self._batch_depth += 1
        try:
            yield self
            if outermost and self._dirty:
                self._write()
        except BaseException:
            if outermost:
                self._vault = snapshot
                self._dirty = False
                self._pending_release.clear()
                self._discard_created()
                logger.debug("Vault batch rolled back")
            raise
        finally:
            self._batch_depth -= 1
        if outermost:
            self._created.clear()
            self._flush_releases()

    def initialize(self) -> "EncryptedVaultStore":
        """Load the vault file, or start an empty vault if there is none.

        Returns:
            The store itself, for chaining.

        Raises:
            VaultCorrupt: If the file exists but cannot be read or validated.
        """
        if self._path.exists():
            self._vault = self._read()
            logger.info(
                "Vault loaded from %s: %d account(s)",
                self._path, len(self._vault.accounts),
            )
        else:
            self._vault = self._new_vault()
            logger.info("No vault at %s, starting empty", self._path)
        return self

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    @property
    def default_account(self) -> Optional[str]:
        return self._require_vault().default_account

    @property
    def cipher(self) -> str:
        return self._require_vault().cipher

    @property
    def kdf(self) -> KDFParams:
        return self._require_vault().kdf

    def accounts(self) -> list[str]:
        return list(self._require_vault().accounts.keys())

    def has_account(self, account: str) -> bool:
        return bool(self._require_vault().accounts.get(normalize_account(account)))

    def roles(self, account: str) -> dict[Role, KeyRecord]:
        """Return a copy of the records of an account.

        Raises:
            AccountNotFound: If the account has no keys.
        """
        account = normalize_account(account)
        roles = self._require_vault().accounts.get(account)
        if not roles:
            raise AccountNotFound(account=account)
        return dict(roles)

    def get_record(self, account: str, role: Union[Role, str]) -> KeyRecord:
        return self._lookup(account, role)[2]

    # ------------------------------------------------------------------
    # Key material
    # ------------------------------------------------------------------

    def _credential_key(self, account: str, role: Role) -> str:
        """Unique name per stored secret; a rewrite never reuses a live one."""
        return f"{self._config.service_name}:{account}:{role.value}:{secrets.token_hex(4)}"

    def _require_credentials(self) -> CredentialStore:
        if self._credentials is None:
            raise CredentialStoreUnavailable("no OS credential store configured")
        return self._credentials

    def _seal_record(
        self,
        account: str,
        role: Role,
        private_key: SecretBuffer,
        public_key: str,
        pin: SecretBuffer,
    ) -> KeyRecord:
        vault = self._require_vault()
        sealed = seal(
            private_key,
            pin,
            associated_data(account, role.value, public_key, vault.schema_version),
            vault.kdf,
            vault.cipher,
        )
        return KeyRecord(
            public_key=public_key,
            encrypted=True,
            cipher_text=b64e(sealed.cipher_text),
            salt=b64e(sealed.salt),
            nonce=b64e(sealed.nonce),
            auth_tag=b64e(sealed.auth_tag),
        )

    def _open_record(
        self,
        account: str,
        role: Role,
        record: KeyRecord,
        pin: SecretBuffer,
    ) -> SecretBuffer:
        vault = self._require_vault()
        try:
            sealed = SealedSecret(
                cipher_text=b64d(record.cipher_text),
                salt=b64d(record.salt),
                nonce=b64d(record.nonce),
                auth_tag=b64d(record.auth_tag),
            )
        except ValueError:
            raise DecryptionFailed(account=account, role=role) from None
        try:
            return open_sealed(
                sealed,
                pin,
                associated_data(account, role.value, record.public_key, vault.schema_version),
                vault.kdf,
                vault.cipher,
            )
        except DecryptionFailed:
            raise DecryptionFailed(account=account, role=role) from None

    def _release_secret(self, record: Optional[KeyRecord], keep: Optional[str] = None) -> None:
        """Queue deletion of a credential-store secret the vault drops.

        Deletion happens after the vault file no longer references it.
        """
        if record is None or record.encrypted:
            return
        if record.credential_store_ref == keep:
            return
        self._pending_release.append(record.credential_store_ref)

    def _referenced_handles(self) -> set[str]:
        return {
            record.credential_store_ref
            for roles in self._require_vault().accounts.values()
            for record in roles.values()
            if not record.encrypted
        }

    def _delete_secret(self, handle: str) -> None:
        try:
            self._require_credentials().delete_secret(handle)
        except CredentialStoreUnavailable:
            # The vault does not reference it; leave it orphaned.
            logger.warning("Could not delete unreferenced OS credential store secret")

    def _flush_releases(self) -> None:
        live = self._referenced_handles()
        while self._pending_release:
            handle = self._pending_release.pop(0)
            if handle not in live:
                self._delete_secret(handle)

    def _discard_created(self) -> None:
        """Delete secrets stored by a batch that was rolled back."""
        while self._created:
            self._delete_secret(self._created.pop())

    def add_key(
        self,
        account: str,
        role: Union[Role, str],
        private_key: SecretBuffer,
        pin: Optional[SecretBuffer] = None,
        overwrite: bool = False,
    ) -> KeyRecord:
        """Store a private key for ``(account, role)``.

        Args:
            account: Ledger account name.
            role: Key role.
            private_key: Raw 32-byte private key. Not scrubbed here.
            pin: Encrypt under this PIN; without it the key goes to the OS
                credential store.
            overwrite: Replace an existing record for the same pair.

        Returns:
            The stored KeyRecord.

        Raises:
            InvalidInput: Malformed account, role, key or too short PIN.
            DuplicateKeyRecord: A record exists and ``overwrite`` is False.
            CredentialStoreUnavailable: No PIN and the OS store failed.
        """
        vault = self._require_vault()
        account = normalize_account(account)
        role = Role.parse(role)
        if not isinstance(private_key, SecretBuffer) or private_key.scrubbed:
            raise InvalidInput("private key must be a live SecretBuffer")
        public_key = public_key_from_private(private_key)

        previous = vault.accounts.get(account, {}).get(role)
        if previous is not None and not overwrite:
            raise DuplicateKeyRecord(account=account, role=role)

        if pin is not None:
            self._validate_pin(pin)

        with self.batch():
            if pin is not None:
                record = self._seal_record(account, role, private_key, public_key, pin)
            else:
                handle = self._require_credentials().set_secret(
                    self._config.service_name,
                    self._credential_key(account, role),
                    private_key,
                )
                self._created.append(handle)
                record = KeyRecord(
                    public_key=public_key,
                    encrypted=False,
                    credential_store_ref=handle,
                )
            vault.accounts.setdefault(account, {})[role] = record
            if vault.default_account is None:
                vault.default_account = account
            self._release_secret(previous, keep=record.credential_store_ref)
            self._commit()
        logger.info(
            "Key stored: account=%s role=%s encrypted=%s",
            account, role.value, record.encrypted,
        )
        return record

    def get_key(
        self,
        account: str,
        role: Union[Role, str],
        pin: Optional[SecretBuffer] = None,
    ) -> SecretBuffer:
        """Return the private key of ``(account, role)``.

        Raises:
            AccountNotFound: The account has no keys.
            RoleNotFound: The account has no key for ``role``.
            InvalidInput: The record is PIN-protected and no PIN was given.
            DecryptionFailed: Wrong PIN or tampered record.
            CredentialStoreUnavailable: The OS store could not return the key.
        """
        account, role, record = self._lookup(account, role)
        if record.encrypted:
            if pin is None:
                raise InvalidInput("PIN required", account=account, role=role)
            if not isinstance(pin, SecretBuffer) or pin.scrubbed:
                raise InvalidInput("PIN must be a live SecretBuffer")
            private_key = self._open_record(account, role, record, pin)
        else:
            private_key = self._require_credentials().get_secret(record.credential_store_ref)

        try:
            matches = public_key_from_private(private_key) == record.public_key
        except InvalidInput:
            matches = False
        if not matches:
            private_key.scrub()
            logger.warning(
                "Public key check failed: account=%s role=%s", account, role.value,
            )
            raise DecryptionFailed(account=account, role=role)
        logger.debug("Key unsealed: account=%s role=%s", account, role.value)
        return private_key

    def replace_record(self, account: str, role: Union[Role, str], record: KeyRecord) -> None:
        """Swap the record of an existing pair (used for re-encryption)."""
        account, role, previous = self._lookup(account, role)
        if record.public_key != previous.public_key:
            raise InvalidInput("replacement record holds a different key", account=account, role=role)
        with self.batch():
            self._require_vault().accounts[account][role] = record
            self._release_secret(previous, keep=record.credential_store_ref)
            self._commit()

    def reseal(
        self,
        account: str,
        role: Union[Role, str],
        private_key: SecretBuffer,
        pin: SecretBuffer,
    ) -> KeyRecord:
        """Encrypt ``private_key`` under ``pin`` and replace the stored record."""
        account, role, previous = self._lookup(account, role)
        self._validate_pin(pin)
        record = self._seal_record(account, role, private_key, previous.public_key, pin)
        self.replace_record(account, role, record)
        return record

    # ------------------------------------------------------------------
    # Removal & default account
    # ------------------------------------------------------------------

    def remove_key(self, account: str, role: Union[Role, str]) -> None:
        """Delete one key; the account disappears with its last key.

        Raises:
            AccountNotFound / RoleNotFound: Nothing to remove.
        """
        account, role, record = self._lookup(account, role)
        with self.batch():
            vault = self._require_vault()
            roles = vault.accounts[account]
            del roles[role]
            if not roles:
                del vault.accounts[account]
                if vault.default_account == account:
                    vault.default_account = None
                    logger.info("Default account %s removed, default unset", account)
            self._release_secret(record)
            self._commit()
        logger.info("Key removed: account=%s role=%s", account, role.value)

    def remove_account(self, account: str) -> list[Role]:
        """Delete every key of an account.

        Returns:
            Roles that were removed.
        """
        roles = list(self.roles(account))
        with self.batch():
            for role in roles:
                self.remove_key(account, role)
        return roles

    def set_default_account(self, account: str) -> None:
        """Mark ``account`` as the default.

        Raises:
            AccountNotFound: If the account has no keys.
        """
        vault = self._require_vault()
        account = normalize_account(account)
        if not vault.accounts.get(account):
            raise AccountNotFound(account=account)
        with self.batch():
            self._require_vault().default_account = account
            self._commit()
        logger.info("Default account set: %s", account)
