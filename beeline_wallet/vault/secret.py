"""
SecretBuffer — mutable, explicitly erasable container for plaintext secrets.

Passwords, PINs and raw private keys are held in a ``bytearray`` owned by a
SecretBuffer instead of ``str``/``bytes`` objects, which are immutable and may
be copied or interned by the interpreter with no way to wipe them.

Security Note:
    Erasure is best effort. Libraries that only return ``bytes`` (AEAD
    decryption, scrypt, keyring, terminal prompts) leave an immutable copy
    behind that the garbage collector reclaims on its own schedule. Such
    values are copied into a SecretBuffer immediately and dropped.
"""
import hmac
from typing import Union

BytesLike = Union[bytes, bytearray, memoryview, str]


class SecretBuffer:
    """Fixed-capacity byte container that can be scrubbed on demand.

    ``borrow()`` exposes a read-only ``memoryview`` over the internal storage,
    so the secret can be handed to APIs accepting the buffer protocol without
    producing another copy.

    Example::

        with SecretBuffer.allocate(pin_text) as pin:
            key = derive_pin_key(pin, salt, kdf)
        # pin is zeroed here
    """

    __slots__ = ("_buf", "_scrubbed", "__weakref__")

    def __init__(self, data: BytesLike):
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError(
                f"SecretBuffer expects bytes-like data, got {type(data).__name__}"
            )
        self._buf = bytearray(data)
        self._scrubbed = False
        # A bytearray source is consumed: the caller hands over ownership.
        if isinstance(data, bytearray):
            data[:] = bytes(len(data))

    @classmethod
    def allocate(cls, data: BytesLike) -> "SecretBuffer":
        """Copy ``data`` into a new buffer."""
        return cls(data)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def borrow(self) -> memoryview:
        """Return a read-only view of the secret.

        Raises:
            ValueError: If the buffer has already been scrubbed.
        """
        if self._scrubbed:
            raise ValueError("SecretBuffer has been scrubbed")
        return memoryview(self._buf).toreadonly()

    def equals(self, other: "SecretBuffer") -> bool:
        """Constant-time comparison with another buffer."""
        if not isinstance(other, SecretBuffer):
            raise TypeError("can only compare with another SecretBuffer")
        return hmac.compare_digest(self.borrow(), other.borrow())

    @property
    def scrubbed(self) -> bool:
        return self._scrubbed

    def __len__(self) -> int:
        return len(self._buf)

    # ------------------------------------------------------------------
    # Erasure
    # ------------------------------------------------------------------

    def scrub(self) -> None:
        """Overwrite every byte with zero and verify the result.

        Safe to call more than once.
        """
        size = len(self._buf)
        self._buf[:] = bytes(size)
        # Read the storage back so the erasure is observable.
        if any(self._buf):
            raise RuntimeError("SecretBuffer scrub did not zero the storage")
        self._scrubbed = True

    def __enter__(self) -> "SecretBuffer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.scrub()

    def __del__(self):
        buf = getattr(self, "_buf", None)
        if buf:
            buf[:] = bytes(len(buf))

    # ------------------------------------------------------------------
    # Leak guards
    # ------------------------------------------------------------------

    def __repr__(self) -> str:
        state = "scrubbed" if self._scrubbed else f"{len(self._buf)} bytes"
        return f"<SecretBuffer [{state}]>"

    __str__ = __repr__

    def __reduce__(self):
        raise TypeError("SecretBuffer cannot be pickled")

    def __bytes__(self):
        raise TypeError("SecretBuffer cannot be converted to bytes")
