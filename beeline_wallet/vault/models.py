"""
Vault Models — Roles, key records and the on-disk vault document.

The VaultFile model is the single schema for ``wallet.json``. Loading goes
through ``VaultFile.model_validate`` so a malformed document is rejected as a
whole instead of being half-applied.
"""
import re
import base64
import binascii
from enum import Enum
from typing import Annotated, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from ..exceptions import InvalidInput

SCHEMA_VERSION = 1

ACCOUNT_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9\-.]{2,15}$")


class Role(str, Enum):
    """Key privilege tier of an account."""

    OWNER = "owner"
    ACTIVE = "active"
    POSTING = "posting"
    MEMO = "memo"

    @property
    def privilege(self) -> int:
        return _PRIVILEGE[self]

    @classmethod
    def parse(cls, value: "Role | str") -> "Role":
        """Convert user input into a Role.

        Raises:
            InvalidInput: If ``value`` is not one of the four roles.
        """
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidInput(f"unknown role: {value!r}") from None

    @classmethod
    def by_privilege(cls) -> list["Role"]:
        return sorted(cls, key=lambda r: r.privilege, reverse=True)


_PRIVILEGE = {
    Role.OWNER: 3,
    Role.ACTIVE: 2,
    Role.POSTING: 1,
    Role.MEMO: 0,
}


def normalize_account(account: str) -> str:
    """Strip a leading ``@`` and validate a ledger account name.

    Raises:
        InvalidInput: If the name is empty or not a valid account name.
    """
    if not isinstance(account, str) or not account.strip():
        raise InvalidInput("account name cannot be empty")
    name = account.strip()
    if name.startswith("@"):
        name = name[1:]
    if not ACCOUNT_NAME_PATTERN.match(name):
        raise InvalidInput(f"invalid account name: {name!r}")
    return name


def _check_b64(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("field is not valid base64") from None
    return value


B64Text = Annotated[Optional[str], AfterValidator(_check_b64)]


class KDFParams(BaseModel):
    """scrypt cost parameters recorded when the vault was created."""

    name: str = "scrypt"
    n: int = Field(ge=2)
    r: int = Field(ge=1)
    p: int = Field(ge=1)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if v != "scrypt":
            raise ValueError(f"Unsupported KDF: {v}")
        return v


class KeyRecord(BaseModel):
    """Stored key material for one (account, role) pair.

    Exactly one storage variant is populated:
    - ``encrypted=True``: cipher_text, salt, nonce and auth_tag (base64).
    - ``encrypted=False``: credential_store_ref.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    public_key: str = Field(alias="publicKey", min_length=1)
    encrypted: bool
    cipher_text: B64Text = Field(default=None, alias="cipherText")
    salt: B64Text = None
    nonce: B64Text = None
    auth_tag: B64Text = Field(default=None, alias="authTag")
    credential_store_ref: Optional[str] = Field(
        default=None, alias="credentialStoreRef"
    )

    @model_validator(mode="after")
    def validate_variant(self) -> "KeyRecord":
        """Ensure exactly one storage variant matches ``encrypted``."""
        sealed = (self.cipher_text, self.salt, self.nonce, self.auth_tag)
        has_sealed = any(v is not None for v in sealed)
        has_ref = self.credential_store_ref is not None
        if has_sealed and has_ref:
            raise ValueError("key record has both ciphertext and a credential reference")
        if self.encrypted:
            if not all(v is not None for v in sealed):
                raise ValueError("encrypted key record is missing ciphertext fields")
        elif not has_ref:
            raise ValueError("key record has no credential store reference")
        elif has_sealed:
            raise ValueError("unencrypted key record carries ciphertext fields")
        return self

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class VaultFile(BaseModel):
    """The whole vault document as persisted on disk."""

    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(default=SCHEMA_VERSION, alias="schemaVersion")
    default_account: Optional[str] = Field(default=None, alias="defaultAccount")
    kdf: KDFParams
    cipher: str = "aesgcm"
    accounts: dict[str, dict[Role, KeyRecord]] = Field(default_factory=dict)

    @field_validator("schema_version")
    @classmethod
    def validate_schema_version(cls, v: int) -> int:
        if v != SCHEMA_VERSION:
            raise ValueError(f"Unsupported vault schema version: {v}")
        return v

    @field_validator("cipher")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        if v not in ("aesgcm", "chacha20"):
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    @model_validator(mode="after")
    def validate_accounts(self) -> "VaultFile":
        """Account names are valid, each holds a key and the default exists."""
        for name, roles in self.accounts.items():
            if not ACCOUNT_NAME_PATTERN.match(name):
                raise ValueError("vault holds an invalid account name")
            if not roles:
                raise ValueError(f"account {name} has no keys")
        if self.default_account is not None and self.default_account not in self.accounts:
            raise ValueError("default account is not present in the vault")
        return self

    def to_document(self) -> dict:
        return {
            "schemaVersion": self.schema_version,
            "defaultAccount": self.default_account,
            "kdf": self.kdf.model_dump(mode="json"),
            "cipher": self.cipher,
            "accounts": {
                name: {role.value: record.to_document() for role, record in roles.items()}
                for name, roles in self.accounts.items()
            },
        }


class KeyInfo(BaseModel):
    """Public view of a stored key."""

    role: Role
    public_key: str
    encrypted: bool


class AccountSummary(BaseModel):
    account: str
    roles: list[Role]
    key_count: int
    is_default: bool
