"""
Key Derivation — deterministic secp256k1 key pairs from a master password.

seed   = role || account || password
digest = SHA-256(seed)                      first attempt
digest = SHA-256(seed || uint32_be(k))      attempt k >= 1

The first digest that reads as a big-endian integer in [1, n), with n the
secp256k1 group order, is the private key. Keys for different roles or
accounts sharing one password are independent.

A wrong master password is not detectable here: it yields another valid key
pair, which the ledger later rejects.
"""
import hashlib
import logging
from dataclasses import dataclass
from typing import Iterable, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from ..exceptions import InvalidInput
from .models import Role, normalize_account
from .secret import SecretBuffer

logger = logging.getLogger("beeline.vault")

SECP256K1_ORDER = int(
    "FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16
)
PRIVATE_KEY_SIZE = 32
MAX_ATTEMPTS = 2**32


@dataclass
class DerivedKey:
    role: Role
    private_key: SecretBuffer
    public_key: str

    def scrub(self) -> None:
        self.private_key.scrub()


def _digest(seed: Union[bytes, bytearray, memoryview], counter: int) -> bytes:
    h = hashlib.sha256(seed)
    if counter:
        h.update(counter.to_bytes(4, "big"))
    return h.digest()


def _scalar_from_seed(seed: Union[bytes, bytearray, memoryview]) -> bytearray:
    """Hash ``seed`` until the digest is a valid secp256k1 scalar.

    Out-of-range digests occur with probability ~2**-128, but the loop must
    still be there.
    """
    for counter in range(MAX_ATTEMPTS):
        candidate = bytearray(_digest(seed, counter))
        scalar = int.from_bytes(candidate, "big")
        if 0 < scalar < SECP256K1_ORDER:
            if counter:
                logger.debug("Derivation needed %d extra attempt(s)", counter)
            return candidate
        candidate[:] = bytes(len(candidate))
    raise RuntimeError("no valid scalar found for seed")


def _public_key_hex(scalar: int) -> str:
    private = ec.derive_private_key(scalar, ec.SECP256K1())
    point = private.public_key().public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.CompressedPoint,
    )
    return point.hex()


def public_key_from_private(private_key: SecretBuffer) -> str:
    """Return the compressed public key (hex) of a raw 32-byte private key.

    Raises:
        InvalidInput: If the key is not 32 bytes or out of range.
    """
    if len(private_key) != PRIVATE_KEY_SIZE:
        raise InvalidInput("private key must be 32 bytes")
    scalar = int.from_bytes(private_key.borrow(), "big")
    if not 0 < scalar < SECP256K1_ORDER:
        raise InvalidInput("private key is out of range")
    return _public_key_hex(scalar)


def derive(master_password: SecretBuffer, account: str, role: Union[Role, str]) -> DerivedKey:
    """Derive the key pair for ``(account, role)`` from a master password.

    Args:
        master_password: Password held in a SecretBuffer (left untouched).
        account: Ledger account name.
        role: One of owner, active, posting, memo.

    Returns:
        DerivedKey with the private key in a SecretBuffer and the public key.

    Raises:
        InvalidInput: Empty password, malformed account or unknown role.
    """
    role = Role.parse(role)
    account = normalize_account(account)
    if not isinstance(master_password, SecretBuffer) or master_password.scrubbed:
        raise InvalidInput("master password must be a live SecretBuffer")
    if len(master_password) == 0:
        raise InvalidInput("master password cannot be empty")

    seed = bytearray(role.value.encode("utf-8"))
    seed += account.encode("utf-8")
    seed += master_password.borrow()
    try:
        private_key = SecretBuffer(_scalar_from_seed(seed))
    finally:
        seed[:] = bytes(len(seed))

    public_key = public_key_from_private(private_key)
    return DerivedKey(role=role, private_key=private_key, public_key=public_key)


def derive_all(
    master_password: SecretBuffer,
    account: str,
    roles: Iterable[Union[Role, str]],
) -> list[DerivedKey]:
    """Derive several roles at once.

    Keys already derived are scrubbed if a later role fails.
    """
    derived: list[DerivedKey] = []
    try:
        for role in roles:
            derived.append(derive(master_password, account, role))
    except Exception:
        for key in derived:
            key.scrub()
        raise
    return derived
