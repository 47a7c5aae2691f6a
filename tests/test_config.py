"""Tests for VaultConfig."""
from pathlib import Path

import pytest
from pydantic import ValidationError

from beeline_wallet.vault.config import VaultConfig


class TestVaultConfig:

    def test_defaults(self):
        config = VaultConfig()
        assert config.vault_path == Path.home() / ".beeline" / "wallet.json"
        assert config.service_name == "beeline-wallet"
        assert config.cipher_backend == "aesgcm"
        assert config.min_pin_length == 4

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("BEELINE_HOME", str(tmp_path))
        monkeypatch.setenv("BEELINE_CIPHER_BACKEND", "ChaCha20")
        monkeypatch.setenv("BEELINE_SCRYPT_N", "1024")
        monkeypatch.setenv("BEELINE_LOG_LEVEL", "debug")
        config = VaultConfig.from_env()
        assert config.home == tmp_path
        assert config.cipher_backend == "chacha20"
        assert config.scrypt_n == 1024
        assert config.log_level == "DEBUG"

    def test_overrides_win(self, monkeypatch, tmp_path):
        monkeypatch.setenv("BEELINE_HOME", "/nonexistent")
        config = VaultConfig.from_env(home=tmp_path, min_pin_length=None)
        assert config.home == tmp_path
        assert config.min_pin_length == 4

    @pytest.mark.parametrize("field,value", [
        ("cipher_backend", "des"),
        ("scrypt_n", 1000),
        ("vault_file", "../wallet.json"),
        ("log_level", "LOUD"),
        ("min_pin_length", 0),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            VaultConfig(**{field: value})
