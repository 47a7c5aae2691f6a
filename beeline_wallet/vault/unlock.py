"""
Unlock Flow — single-use access to a decrypted private key.

    LOCKED → UNLOCKING → UNLOCKED → LOCKED

``UNLOCKED`` lasts for exactly one consuming operation. The key buffer is
scrubbed on the way back to ``LOCKED`` whatever happened in between: normal
return, consumer error, decryption error or cancellation.

At most one key is unlocked per process. A second request made while a key
is unlocked (nested call, other thread, other task) is rejected with
``ConcurrentUnlock`` rather than queued.
"""
import logging
import threading
from contextlib import asynccontextmanager, contextmanager
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Iterator, Optional, TypeVar, Union

from ..exceptions import ConcurrentUnlock
from .models import Role, normalize_account
from .secret import SecretBuffer
from .store import EncryptedVaultStore

logger = logging.getLogger("beeline.vault")

T = TypeVar("T")

PinPrompt = Callable[[str, Role], SecretBuffer]
ProgressHook = Callable[[str], None]

# Process-wide: only one plaintext key may exist at a time.
_UNLOCK_GUARD = threading.Lock()


class UnlockState(str, Enum):
    LOCKED = "locked"
    UNLOCKING = "unlocking"
    UNLOCKED = "unlocked"


class Signer:
    """External signer/broadcaster fed by the unlock flow.

    Implementations receive the key only for the duration of ``sign`` and
    must not keep a reference to it.
    """

    def sign(self, payload: Any, private_key: SecretBuffer) -> Any:
        raise NotImplementedError


class UnlockFlow:
    """Hands out decrypted keys one consumer at a time."""

    def __init__(
        self,
        store: EncryptedVaultStore,
        pin_prompt: Optional[PinPrompt] = None,
        on_progress: Optional[ProgressHook] = None,
    ):
        self._store = store
        self._pin_prompt = pin_prompt
        self._on_progress = on_progress
        self._state = UnlockState.LOCKED

    @property
    def state(self) -> UnlockState:
        return self._state

    def _progress(self, message: str) -> None:
        if self._on_progress is not None:
            self._on_progress(message)

    def _acquire(self) -> None:
        if not _UNLOCK_GUARD.acquire(blocking=False):
            raise ConcurrentUnlock()

    def _begin(self, account: str, role: Role, pin: Optional[SecretBuffer]) -> SecretBuffer:
        """LOCKED → UNLOCKING → UNLOCKED. Returns the key buffer."""
        self._state = UnlockState.UNLOCKING
        owned_pin = None
        record = self._store.get_record(account, role)
        # PIN entry happens before any other terminal output.
        if record.encrypted and pin is None and self._pin_prompt is not None:
            pin = owned_pin = self._pin_prompt(account, role)
        try:
            self._progress(f"Unlocking {role.value} key for @{account}")
            key = self._store.get_key(account, role, pin)
        finally:
            if owned_pin is not None:
                owned_pin.scrub()
        self._state = UnlockState.UNLOCKED
        logger.debug("Key unlocked: account=%s role=%s", account, role.value)
        return key

    def _end(self, key: Optional[SecretBuffer], account: str, role: Role) -> None:
        """Any state → LOCKED, scrubbing the key."""
        try:
            if key is not None:
                key.scrub()
        finally:
            self._state = UnlockState.LOCKED
            _UNLOCK_GUARD.release()
            logger.debug("Key locked: account=%s role=%s", account, role.value)

    @contextmanager
    def unlock(
        self,
        account: str,
        role: Union[Role, str],
        pin: Optional[SecretBuffer] = None,
    ) -> Iterator[SecretBuffer]:
        """Yield the private key of ``(account, role)`` for one operation.

        Raises:
            ConcurrentUnlock: Another key is unlocked in this process.
            Any store error (AccountNotFound, DecryptionFailed, ...).
        """
        account = normalize_account(account)
        role = Role.parse(role)
        self._acquire()
        key = None
        try:
            key = self._begin(account, role, pin)
            yield key
        finally:
            self._end(key, account, role)

    @asynccontextmanager
    async def unlock_async(
        self,
        account: str,
        role: Union[Role, str],
        pin: Optional[SecretBuffer] = None,
    ) -> AsyncIterator[SecretBuffer]:
        """Async variant of :meth:`unlock` for network-bound consumers."""
        account = normalize_account(account)
        role = Role.parse(role)
        self._acquire()
        key = None
        try:
            key = self._begin(account, role, pin)
            yield key
        finally:
            self._end(key, account, role)

    def run(
        self,
        account: str,
        role: Union[Role, str],
        consumer: Callable[[SecretBuffer], T],
        pin: Optional[SecretBuffer] = None,
    ) -> T:
        with self.unlock(account, role, pin) as key:
            return consumer(key)

    async def arun(
        self,
        account: str,
        role: Union[Role, str],
        consumer: Callable[[SecretBuffer], Awaitable[T]],
        pin: Optional[SecretBuffer] = None,
    ) -> T:
        async with self.unlock_async(account, role, pin) as key:
            return await consumer(key)

    def sign(
        self,
        account: str,
        role: Union[Role, str],
        payload: Any,
        signer: Signer,
        pin: Optional[SecretBuffer] = None,
    ) -> Any:
        """Unlock a key, pass it to ``signer`` once, lock again."""
        return self.run(account, role, lambda key: signer.sign(payload, key), pin)
