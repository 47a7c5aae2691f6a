"""
Tests for EncryptedVaultStore.

Tests cover:
- PIN sealed round trip and wrong PIN handling
- OS credential store records
- Duplicate detection, removal and the default account
- Persistence, atomic writes and corruption detection
- Batches and rollback
"""
import base64
import os
import stat

import orjson
import pytest

from beeline_wallet.exceptions import (
    AccountNotFound,
    CredentialStoreUnavailable,
    DecryptionFailed,
    DuplicateKeyRecord,
    InvalidInput,
    RoleNotFound,
    VaultCorrupt,
)
from beeline_wallet.vault.config import VaultConfig
from beeline_wallet.vault.crypto import document_checksum
from beeline_wallet.vault.derivation import public_key_from_private
from beeline_wallet.vault.models import Role
from beeline_wallet.vault.secret import SecretBuffer
from beeline_wallet.vault.store import EncryptedVaultStore


def other_key(byte: int = 0x22) -> SecretBuffer:
    return SecretBuffer(bytes([byte]) * 32)


def rewrite(path, mutate):
    """Apply ``mutate`` to the stored document and fix up the checksum."""
    document = orjson.loads(path.read_bytes())
    document.pop("checksum")
    mutate(document)
    document["checksum"] = document_checksum(document)
    path.write_bytes(orjson.dumps(document))


class TestInitialize:

    def test_empty_vault_without_file(self, store):
        assert store.accounts() == []
        assert store.default_account is None
        assert not store.path.exists()

    def test_uninitialized_store_refuses(self, config, credentials):
        store = EncryptedVaultStore(config=config, credential_store=credentials)
        with pytest.raises(RuntimeError):
            store.accounts()

    def test_new_vault_records_config(self, tmp_path, credentials):
        config = VaultConfig(home=tmp_path, scrypt_n=2**10, cipher_backend="chacha20")
        store = EncryptedVaultStore(config=config, credential_store=credentials).initialize()
        assert store.cipher == "chacha20"
        assert store.kdf.n == 2**10


class TestSealedKeys:

    def test_roundtrip(self, store, private_key, pin, reopen):
        expected = private_key.borrow().tobytes()
        record = store.add_key("alice", "posting", private_key, pin)
        assert record.encrypted is True
        assert record.public_key == public_key_from_private(private_key)

        key = reopen().get_key("alice", "posting", SecretBuffer("1234"))
        assert key.borrow().tobytes() == expected

    def test_wrong_pin_then_correct_pin(self, store, private_key, pin):
        store.add_key("alice", "active", private_key, pin)
        with pytest.raises(DecryptionFailed) as exc_info:
            store.get_key("alice", "active", SecretBuffer("9999"))
        assert exc_info.value.account == "alice"
        assert exc_info.value.role == "active"
        # vault unchanged; the right PIN still works
        key = store.get_key("alice", "active", SecretBuffer("1234"))
        assert public_key_from_private(key) == store.get_record("alice", "active").public_key

    def test_chacha20_backend(self, tmp_path, credentials, private_key, pin):
        config = VaultConfig(home=tmp_path, scrypt_n=2**10, cipher_backend="chacha20")
        store = EncryptedVaultStore(config=config, credential_store=credentials).initialize()
        store.add_key("alice", "memo", private_key, pin)
        assert len(store.get_key("alice", "memo", SecretBuffer("1234"))) == 32

    def test_pin_required(self, store, private_key, pin):
        store.add_key("alice", "posting", private_key, pin)
        with pytest.raises(InvalidInput):
            store.get_key("alice", "posting")

    def test_short_pin_rejected(self, store, private_key):
        with pytest.raises(InvalidInput):
            store.add_key("alice", "posting", private_key, SecretBuffer("12"))
        assert not store.has_account("alice")

    def test_record_bound_to_its_slot(self, store, private_key, pin, config):
        """A record copied to another role does not decrypt."""
        store.add_key("alice", "posting", private_key, pin)

        def move(document):
            alice = document["accounts"]["alice"]
            alice["memo"] = alice.pop("posting")

        rewrite(config.vault_path, move)
        moved = EncryptedVaultStore(config=config).initialize()
        with pytest.raises(DecryptionFailed):
            moved.get_key("alice", "memo", SecretBuffer("1234"))

    def test_tampered_ciphertext(self, store, private_key, pin, config):
        store.add_key("alice", "posting", private_key, pin)

        def flip(document):
            record = document["accounts"]["alice"]["posting"]
            raw = bytearray(base64.b64decode(record["cipherText"]))
            raw[0] ^= 0x01
            record["cipherText"] = base64.b64encode(bytes(raw)).decode()

        rewrite(config.vault_path, flip)
        tampered = EncryptedVaultStore(config=config).initialize()
        with pytest.raises(DecryptionFailed):
            tampered.get_key("alice", "posting", SecretBuffer("1234"))

    def test_error_messages_hold_no_secrets(self, store, private_key, pin):
        record = store.add_key("alice", "posting", private_key, pin)
        with pytest.raises(DecryptionFailed) as exc_info:
            store.get_key("alice", "posting", SecretBuffer("0000"))
        message = str(exc_info.value)
        assert record.cipher_text not in message
        assert "0000" not in message
        assert "11" * 32 not in message


class TestCredentialStoreKeys:

    def test_roundtrip(self, store, private_key, credentials):
        expected = private_key.borrow().tobytes()
        record = store.add_key("alice", "posting", private_key)
        assert record.encrypted is False
        assert record.credential_store_ref.startswith("beeline-wallet/beeline-wallet:alice:posting:")
        assert record.cipher_text is None
        assert store.get_key("alice", "posting").borrow().tobytes() == expected

    def test_plaintext_never_on_disk(self, store, private_key, config):
        store.add_key("alice", "posting", private_key)
        assert b"11" * 32 not in config.vault_path.read_bytes()

    def test_unavailable_on_add(self, store, private_key, credentials):
        credentials.available = False
        with pytest.raises(CredentialStoreUnavailable):
            store.add_key("alice", "posting", private_key)
        assert not store.has_account("alice")

    def test_unavailable_on_get(self, store, private_key, credentials):
        store.add_key("alice", "posting", private_key)
        credentials.available = False
        with pytest.raises(CredentialStoreUnavailable):
            store.get_key("alice", "posting")

    def test_no_credential_store(self, config, private_key):
        store = EncryptedVaultStore(config=config).initialize()
        with pytest.raises(CredentialStoreUnavailable):
            store.add_key("alice", "posting", private_key)

    def test_remove_deletes_secret(self, store, private_key, credentials):
        record = store.add_key("alice", "posting", private_key)
        store.remove_key("alice", "posting")
        assert record.credential_store_ref in credentials.deleted
        assert credentials.secrets == {}

    def test_overwrite_with_pin_releases_secret(self, store, private_key, pin, credentials):
        record = store.add_key("alice", "posting", private_key)
        store.add_key("alice", "posting", other_key(), pin, overwrite=True)
        assert credentials.deleted == [record.credential_store_ref]


class TestDuplicatesAndRemoval:

    def test_duplicate_rejected(self, store, private_key, pin):
        store.add_key("alice", "posting", private_key, pin)
        with pytest.raises(DuplicateKeyRecord):
            store.add_key("alice", "posting", other_key(), SecretBuffer("1234"))
        # original record kept
        assert store.get_record("alice", "posting").public_key == public_key_from_private(
            SecretBuffer(bytes.fromhex("11" * 32))
        )

    def test_overwrite_replaces(self, store, private_key, pin):
        store.add_key("alice", "posting", private_key, pin)
        replacement = other_key()
        expected = public_key_from_private(replacement)
        store.add_key("alice", "posting", replacement, SecretBuffer("1234"), overwrite=True)
        assert store.get_record("alice", "posting").public_key == expected

    def test_lookup_errors(self, store, private_key, pin):
        with pytest.raises(AccountNotFound):
            store.get_key("nobody", "posting", pin)
        store.add_key("alice", "posting", private_key, pin)
        with pytest.raises(RoleNotFound):
            store.get_key("alice", "owner", SecretBuffer("1234"))

    def test_first_account_becomes_default(self, store, private_key, pin):
        store.add_key("alice", "posting", private_key, pin)
        store.add_key("bob-1", "posting", other_key(), SecretBuffer("1234"))
        assert store.default_account == "alice"

    def test_remove_last_key_removes_account(self, store, private_key, pin, reopen):
        store.add_key("alice", "posting", private_key, pin)
        store.remove_key("alice", Role.POSTING)
        assert store.accounts() == []
        assert store.default_account is None
        assert reopen().accounts() == []
        with pytest.raises(AccountNotFound):
            store.get_key("alice", "posting", SecretBuffer("1234"))

    def test_remove_account(self, store, private_key, pin):
        store.add_key("alice", "posting", private_key, pin)
        store.add_key("alice", "memo", other_key(), SecretBuffer("1234"))
        store.add_key("bob-1", "memo", other_key(0x33), SecretBuffer("1234"))
        removed = store.remove_account("@alice")
        assert set(removed) == {Role.POSTING, Role.MEMO}
        assert store.accounts() == ["bob-1"]
        assert store.default_account is None

    def test_set_default_account(self, store, private_key, pin, reopen):
        store.add_key("alice", "posting", private_key, pin)
        store.add_key("bob-1", "posting", other_key(), SecretBuffer("1234"))
        store.set_default_account("bob-1")
        assert reopen().default_account == "bob-1"
        with pytest.raises(AccountNotFound):
            store.set_default_account("carol")


class TestPersistence:

    def test_file_permissions(self, store, private_key, pin, config):
        store.add_key("alice", "posting", private_key, pin)
        mode = stat.S_IMODE(os.stat(config.vault_path).st_mode)
        assert mode == 0o600

    def test_no_temp_files_left(self, store, private_key, pin, config):
        store.add_key("alice", "posting", private_key, pin)
        store.add_key("alice", "memo", other_key(), SecretBuffer("1234"))
        assert sorted(p.name for p in config.vault_path.parent.iterdir()) == ["wallet.json"]

    def test_failed_write_keeps_previous_file(self, store, private_key, pin, config, monkeypatch):
        store.add_key("alice", "posting", private_key, pin)
        before = config.vault_path.read_bytes()

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", broken_replace)
        with pytest.raises(OSError):
            store.add_key("alice", "memo", other_key(), SecretBuffer("1234"))
        monkeypatch.undo()
        assert config.vault_path.read_bytes() == before
        assert list(store.roles("alice")) == [Role.POSTING]
        assert sorted(p.name for p in config.vault_path.parent.iterdir()) == ["wallet.json"]

    def test_document_layout(self, store, private_key, pin, config):
        store.add_key("alice", "posting", private_key, pin)
        document = orjson.loads(config.vault_path.read_bytes())
        assert document["schemaVersion"] == 1
        assert document["defaultAccount"] == "alice"
        assert document["kdf"]["name"] == "scrypt"
        record = document["accounts"]["alice"]["posting"]
        assert set(record) == {"publicKey", "encrypted", "cipherText", "salt", "nonce", "authTag"}
        assert len(base64.b64decode(record["nonce"])) == 12
        assert len(base64.b64decode(record["salt"])) == 16
        assert len(base64.b64decode(record["authTag"])) == 16

    def test_fresh_salt_and_nonce_per_record(self, store, pin):
        first = store.add_key("alice", "posting", SecretBuffer(b"\x11" * 32), pin)
        second = store.add_key("alice", "memo", SecretBuffer(b"\x11" * 32), SecretBuffer("1234"))
        assert first.salt != second.salt
        assert first.nonce != second.nonce

    @pytest.mark.skipif(os.name != "posix", reason="directory fsync is posix only")
    def test_directory_synced_after_rename(self, store, private_key, pin, monkeypatch):
        synced = []
        real_fsync = os.fsync

        def recording_fsync(fd):
            synced.append(stat.S_ISDIR(os.fstat(fd).st_mode))
            real_fsync(fd)

        monkeypatch.setattr(os, "fsync", recording_fsync)
        store.add_key("alice", "posting", private_key, pin)
        assert synced == [False, True]


class TestCorruption:

    @pytest.fixture
    def vault_path(self, store, private_key, pin, config):
        store.add_key("alice", "posting", private_key, pin)
        return config.vault_path

    def test_not_json(self, vault_path, config):
        vault_path.write_bytes(b"{not json")
        with pytest.raises(VaultCorrupt):
            EncryptedVaultStore(config=config).initialize()

    def test_checksum_mismatch(self, vault_path, config):
        document = orjson.loads(vault_path.read_bytes())
        document["defaultAccount"] = None
        vault_path.write_bytes(orjson.dumps(document))
        with pytest.raises(VaultCorrupt):
            EncryptedVaultStore(config=config).initialize()

    def test_unknown_schema_version(self, vault_path, config):
        rewrite(vault_path, lambda d: d.update(schemaVersion=2))
        with pytest.raises(VaultCorrupt):
            EncryptedVaultStore(config=config).initialize()

    def test_record_with_both_variants(self, vault_path, config):
        def corrupt(document):
            document["accounts"]["alice"]["posting"]["credentialStoreRef"] = "x/y"
        rewrite(vault_path, corrupt)
        with pytest.raises(VaultCorrupt):
            EncryptedVaultStore(config=config).initialize()

    def test_default_account_missing(self, vault_path, config):
        rewrite(vault_path, lambda d: d.update(defaultAccount="carol"))
        with pytest.raises(VaultCorrupt):
            EncryptedVaultStore(config=config).initialize()

    def test_invalid_account_name(self, vault_path, config):
        def rename(document):
            document["accounts"]["Alice"] = document["accounts"].pop("alice")
            document["defaultAccount"] = "Alice"
        rewrite(vault_path, rename)
        with pytest.raises(VaultCorrupt):
            EncryptedVaultStore(config=config).initialize()

    def test_message_has_no_values(self, vault_path, config):
        def corrupt(document):
            document["accounts"]["alice"]["posting"]["nonce"] = "!!secret-ish!!"
        rewrite(vault_path, corrupt)
        with pytest.raises(VaultCorrupt) as exc_info:
            EncryptedVaultStore(config=config).initialize()
        assert "secret-ish" not in str(exc_info.value)


class TestBatch:

    def test_single_write(self, store, private_key, pin, monkeypatch):
        writes = []
        real_write = store._write
        monkeypatch.setattr(store, "_write", lambda: writes.append(1) or real_write())
        with store.batch():
            store.add_key("alice", "posting", private_key, pin)
            store.add_key("alice", "memo", other_key(), SecretBuffer("1234"))
        assert writes == [1]

    def test_rollback_on_error(self, store, private_key, pin, reopen):
        store.add_key("alice", "posting", private_key, pin)
        with pytest.raises(DuplicateKeyRecord):
            with store.batch():
                store.add_key("bob-1", "posting", other_key(), SecretBuffer("1234"))
                store.add_key("alice", "posting", other_key(0x33), SecretBuffer("1234"))
        assert store.accounts() == ["alice"]
        assert reopen().accounts() == ["alice"]

    def test_rollback_keeps_credential_secrets(self, store, private_key, credentials):
        store.add_key("alice", "posting", private_key)
        with pytest.raises(RuntimeError):
            with store.batch():
                store.remove_key("alice", "posting")
                raise RuntimeError("abort")
        assert credentials.deleted == []
        assert len(store.get_key("alice", "posting")) == 32

    def test_remove_then_add_same_pair(self, store, private_key, credentials):
        """The secret queued for release is not the one just stored."""
        store.add_key("alice", "posting", private_key)
        with store.batch():
            store.remove_key("alice", "posting")
            store.add_key("alice", "posting", other_key())
        assert store.get_key("alice", "posting").borrow().tobytes() == b"\x22" * 32
        assert len(credentials.secrets) == 1

    def test_failed_keychain_overwrite_keeps_old_secret(
        self, store, private_key, credentials, config, monkeypatch,
    ):
        store.add_key("alice", "posting", private_key)

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", broken_replace)
        with pytest.raises(OSError):
            store.add_key("alice", "posting", other_key(), overwrite=True)
        monkeypatch.undo()
        assert store.get_key("alice", "posting").borrow().tobytes() == b"\x11" * 32
        assert len(credentials.secrets) == 1
