"""
PIN Change — Re-encryption of an account's keys under a new PIN.

Every PIN-protected key of the account is opened with the old PIN first.
If any of them fails, nothing is written. The new records (fresh salt and
nonce each) are then stored in a single atomic write. Keys kept in the OS
credential store are not touched.

Security Note:
    Plaintext exists in memory only during re-encryption of each key and is
    scrubbed right after. Never log plaintext or ciphertext values.
"""
import logging
from typing import Iterable, Optional, Union

from ..exceptions import InvalidInput
from .models import Role, normalize_account
from .secret import SecretBuffer
from .store import EncryptedVaultStore

logger = logging.getLogger("beeline.vault")


def change_pin(
    store: EncryptedVaultStore,
    account: str,
    old_pin: SecretBuffer,
    new_pin: SecretBuffer,
    roles: Optional[Iterable[Union[Role, str]]] = None,
) -> dict:
    """Re-encrypt the keys of ``account`` from ``old_pin`` to ``new_pin``.

    Args:
        store: Initialized vault store.
        account: Account whose keys are re-encrypted.
        old_pin: Current PIN.
        new_pin: Replacement PIN.
        roles: Restrict to these roles (default: every role of the account).

    Returns:
        Stats dict with keys: total, rekeyed, skipped.

    Raises:
        AccountNotFound / RoleNotFound: Unknown account or role.
        DecryptionFailed: ``old_pin`` does not open one of the keys.
        InvalidInput: ``new_pin`` is too short or equals ``old_pin``.
    """
    account = normalize_account(account)
    records = store.roles(account)
    if roles is None:
        targets = list(records)
    else:
        targets = [Role.parse(r) for r in roles]
    if new_pin.equals(old_pin):
        raise InvalidInput("new PIN must differ from the current PIN", account=account)

    stats = {"total": 0, "rekeyed": 0, "skipped": 0}
    logger.info("Starting PIN change for %s (%d role(s))", account, len(targets))

    opened: list[tuple[Role, SecretBuffer]] = []
    try:
        for role in targets:
            stats["total"] += 1
            if not store.get_record(account, role).encrypted:
                stats["skipped"] += 1
                continue
            opened.append((role, store.get_key(account, role, old_pin)))

        with store.batch():
            for role, key in opened:
                store.reseal(account, role, key, new_pin)
                stats["rekeyed"] += 1
    finally:
        for _, key in opened:
            key.scrub()

    logger.info("PIN change complete for %s: %s", account, stats)
    return stats
