"""
Vault Configuration — Validated settings for the local key vault.

Reads optional overrides from environment variables:
    BEELINE_HOME            = <directory holding the vault file>
    BEELINE_VAULT_FILE      = <vault file name, default wallet.json>
    BEELINE_SERVICE_NAME    = <OS credential store service name>
    BEELINE_CIPHER_BACKEND  = aesgcm | chacha20
    BEELINE_SCRYPT_N        = <scrypt cost, power of two>
    BEELINE_MIN_PIN_LENGTH  = <integer>
    BEELINE_LOG_LEVEL       = DEBUG | INFO | WARNING | ERROR

Security Note:
    Cost parameters and cipher choice only apply to newly created vaults.
    An existing vault keeps the parameters recorded in its file.
"""
import os
import logging
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("beeline.vault")

DEFAULT_HOME = Path.home() / ".beeline"
DEFAULT_VAULT_FILE = "wallet.json"
DEFAULT_SERVICE_NAME = "beeline-wallet"

# ~32 MiB per derivation with r=8
DEFAULT_SCRYPT_N = 2**15
DEFAULT_SCRYPT_R = 8
DEFAULT_SCRYPT_P = 1


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    home: Path = Field(default=DEFAULT_HOME)
    vault_file: str = Field(default=DEFAULT_VAULT_FILE, min_length=1)
    service_name: str = Field(default=DEFAULT_SERVICE_NAME, min_length=1)
    cipher_backend: str = Field(default="aesgcm")
    scrypt_n: int = Field(default=DEFAULT_SCRYPT_N, ge=2)
    scrypt_r: int = Field(default=DEFAULT_SCRYPT_R, ge=1)
    scrypt_p: int = Field(default=DEFAULT_SCRYPT_P, ge=1)
    min_pin_length: int = Field(default=4, ge=1, le=256)
    log_level: str = Field(default="WARNING")

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        v = v.lower()
        if v not in ("aesgcm", "chacha20"):
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    @field_validator("scrypt_n")
    @classmethod
    def validate_scrypt_n(cls, v: int) -> int:
        """scrypt requires a power-of-two cost factor."""
        if v & (v - 1):
            raise ValueError(f"scrypt_n must be a power of two, got {v}")
        return v

    @field_validator("vault_file")
    @classmethod
    def validate_vault_file(cls, v: str) -> str:
        if os.sep in v or (os.altsep and os.altsep in v):
            raise ValueError("vault_file must be a file name, not a path")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unsupported log level: {v}")
        return v

    @property
    def vault_path(self) -> Path:
        return self.home.expanduser() / self.vault_file

    @classmethod
    def from_env(cls, **overrides) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Keyword arguments take precedence over environment variables.

        Returns:
            Populated VaultConfig instance.
        """
        values: dict = {}
        env_map = {
            "home": "BEELINE_HOME",
            "vault_file": "BEELINE_VAULT_FILE",
            "service_name": "BEELINE_SERVICE_NAME",
            "cipher_backend": "BEELINE_CIPHER_BACKEND",
            "scrypt_n": "BEELINE_SCRYPT_N",
            "min_pin_length": "BEELINE_MIN_PIN_LENGTH",
            "log_level": "BEELINE_LOG_LEVEL",
        }
        for field, env_name in env_map.items():
            raw = os.environ.get(env_name)
            if raw:
                values[field] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        config = cls(**values)
        logger.debug(
            "Vault config: path=%s cipher=%s scrypt_n=%d",
            config.vault_path, config.cipher_backend, config.scrypt_n,
        )
        return config
