"""
Vault Crypto Core — PIN key derivation, sealing/opening and serialization.

Implements the at-rest protection of private keys:
- PIN layer: scrypt(PIN, salt) → 32-byte key
- Sealing: AEAD (AES-256-GCM or ChaCha20-Poly1305) → [ciphertext][tag 16B]
- Associated data binds account, role and public key so a record cannot be
  moved to another (account, role) slot.

Security Note:
    Never log plaintext or ciphertext values.
    Nonces are random 96-bit; salts are random 128-bit per record.
"""
import os
import base64
import hashlib
import logging
from dataclasses import dataclass
from typing import Any

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from ..exceptions import DecryptionFailed
from .models import KDFParams
from .secret import SecretBuffer

logger = logging.getLogger("beeline.vault")

NONCE_SIZE = 12  # 96-bit nonce
SALT_SIZE = 16
TAG_SIZE = 16
KEY_LENGTH = 32  # AES-256

_CIPHERS = {
    "aesgcm": AESGCM,
    "chacha20": ChaCha20Poly1305,
}


def get_cipher_cls(backend: str) -> type:
    """Return the AEAD cipher class for a vault's ``cipher`` setting."""
    try:
        return _CIPHERS[backend]
    except KeyError:
        raise ValueError(f"Unsupported cipher backend: {backend}") from None


@dataclass(frozen=True)
class SealedSecret:
    """Ciphertext and the public parameters needed to open it."""

    cipher_text: bytes
    salt: bytes
    nonce: bytes
    auth_tag: bytes


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------

def b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64d(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


def canonical_json(obj: Any) -> bytes:
    """Deterministic JSON bytes (sorted keys, compact)."""
    return orjson.dumps(obj, option=orjson.OPT_SORT_KEYS)


def document_checksum(document: dict) -> str:
    """SHA-256 over the canonical form of a vault document."""
    return hashlib.sha256(canonical_json(document)).hexdigest()


def associated_data(account: str, role: str, public_key: str, schema_version: int) -> bytes:
    return canonical_json({
        "account": account,
        "role": role,
        "publicKey": public_key,
        "schemaVersion": schema_version,
    })


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_pin_key(pin: SecretBuffer, salt: bytes, kdf: KDFParams) -> SecretBuffer:
    """Derive a 32-byte encryption key from a PIN using scrypt.

    Args:
        pin: PIN held in a SecretBuffer.
        salt: Random per-record salt (stored with the record, not secret).
        kdf: scrypt cost parameters of the vault.

    Returns:
        The derived key in a new SecretBuffer.
    """
    scrypt = Scrypt(salt=salt, length=KEY_LENGTH, n=kdf.n, r=kdf.r, p=kdf.p)
    return SecretBuffer(scrypt.derive(pin.borrow()))


# ---------------------------------------------------------------------------
# Sealing
# ---------------------------------------------------------------------------

def seal(
    plaintext: SecretBuffer,
    pin: SecretBuffer,
    aad: bytes,
    kdf: KDFParams,
    backend: str = "aesgcm",
) -> SealedSecret:
    """Encrypt a secret under a PIN-derived key.

    Args:
        plaintext: Secret to protect.
        pin: PIN used to derive the encryption key.
        aad: Associated data authenticated alongside the ciphertext.
        kdf: scrypt cost parameters.
        backend: ``aesgcm`` or ``chacha20``.

    Returns:
        SealedSecret with ciphertext, salt, nonce and tag split apart.
    """
    cipher_cls = get_cipher_cls(backend)
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    with derive_pin_key(pin, salt, kdf) as key:
        cipher = cipher_cls(key.borrow())
        sealed = cipher.encrypt(nonce, plaintext.borrow(), aad)
    return SealedSecret(
        cipher_text=sealed[:-TAG_SIZE],
        salt=salt,
        nonce=nonce,
        auth_tag=sealed[-TAG_SIZE:],
    )


def open_sealed(
    sealed: SealedSecret,
    pin: SecretBuffer,
    aad: bytes,
    kdf: KDFParams,
    backend: str = "aesgcm",
) -> SecretBuffer:
    """Decrypt a sealed secret.

    The AEAD verifies the tag before any plaintext is produced.

    Raises:
        DecryptionFailed: Wrong PIN, tampered ciphertext, parameters or
            associated data. The causes are not distinguished.
    """
    if len(sealed.nonce) != NONCE_SIZE or len(sealed.auth_tag) != TAG_SIZE:
        raise DecryptionFailed()
    cipher_cls = get_cipher_cls(backend)
    with derive_pin_key(pin, sealed.salt, kdf) as key:
        cipher = cipher_cls(key.borrow())
        try:
            plaintext = cipher.decrypt(
                sealed.nonce, sealed.cipher_text + sealed.auth_tag, aad,
            )
        except InvalidTag:
            raise DecryptionFailed() from None
    return SecretBuffer(plaintext)
