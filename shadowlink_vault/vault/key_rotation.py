"""
Vault Key Rotation — re-encrypt every record when the master password changes.

The salt is kept; only the password (and therefore the derived key)
changes. All blobs are re-encrypted inside one mutation-queue job and
written back with a single storage ``replace``, so either every record is
under the new key or none is. The session key is swapped in the same job,
so writes queued behind it encrypt under the new key. Records that do not
authenticate under the current key are left exactly as they are and
counted as errors.

Security Note:
    Plaintext exists in memory only while each record is re-encrypted.
    Never log plaintext, ciphertext or passwords.
"""
import asyncio
import logging
from typing import Any, Callable, Optional

from pydantic import ValidationError

from ..exceptions import DecryptionAuthFailure, WrongPasswordError
from ..storage import StoragePort
from .config import (
    BLOB_CANARY,
    BLOB_CONTACTS,
    BLOB_HISTORY,
    BLOB_NAMES,
    BLOB_PROFILE,
)
from .contacts import decrypt_contact, decrypt_profile, encrypt_contact, encrypt_profile
from .crypto import VaultKey, derive_key, dump_blob, load_blob
from .queue import MutationQueue
from .session import VaultSession, seal_canary
from .store import decrypt_message, encrypt_message

logger = logging.getLogger("shadowlink.vault")

Recrypt = Callable[[Any, VaultKey, VaultKey], dict]


def _recrypt_message(record: Any, old: VaultKey, new: VaultKey) -> dict:
    message = decrypt_message(record, old)
    return encrypt_message(message, new, message.conversation)


def _recrypt_contact(record: Any, old: VaultKey, new: VaultKey) -> dict:
    return encrypt_contact(decrypt_contact(record, old), new)


def _recrypt_profile(record: Any, old: VaultKey, new: VaultKey) -> dict:
    return encrypt_profile(decrypt_profile(record, old), new)


def _rotate_record(
    record: Any,
    recrypt: Recrypt,
    old: VaultKey,
    new: VaultKey,
    stats: dict,
) -> Any:
    stats["total"] += 1
    if not isinstance(record, dict):
        stats["skipped"] += 1
        return record
    try:
        rotated = recrypt(record, old, new)
    except (DecryptionAuthFailure, ValidationError) as err:
        logger.error(
            "Error rotating record id=%s: %s", record.get("id"), type(err).__name__,
        )
        stats["errors"] += 1
        return record
    stats["rotated"] += 1
    return rotated


def _rotate_list_blob(raw: Optional[str], recrypt: Recrypt, old: VaultKey, new: VaultKey, stats: dict) -> Optional[str]:
    if not raw:
        return raw
    records = load_blob(raw)
    if not isinstance(records, list):
        stats["errors"] += 1
        return raw
    return dump_blob([_rotate_record(r, recrypt, old, new, stats) for r in records])


async def change_password(
    session: VaultSession,
    storage: StoragePort,
    queue: MutationQueue,
    old_password: str,
    new_password: str,
) -> dict:
    """Re-encrypt all vault records under a key derived from ``new_password``.

    Args:
        session: Unlocked vault session; its key is swapped on success.
        storage: Storage holding the vault blobs.
        queue: Shared mutation queue.
        old_password: Current password, checked against the live key.
        new_password: Replacement password (non-empty).

    Returns:
        Stats dict with keys: total, rotated, errors, skipped.

    Raises:
        VaultLockedError: If the session is not unlocked.
        WrongPasswordError: If ``old_password`` does not match the live key.
        StorageParseFailure: If a blob is unreadable; nothing is written.
    """
    current = session.key
    salt = session.salt
    if not new_password:
        raise ValueError("New password cannot be empty")
    iterations = session.config.kdf_iterations
    candidate = await asyncio.to_thread(derive_key, old_password, salt, iterations)
    try:
        if candidate != current:
            raise WrongPasswordError("Current password is incorrect")
    finally:
        candidate.wipe()
    new_key = await asyncio.to_thread(derive_key, new_password, salt, iterations)

    config = session.config
    stats = {"total": 0, "rotated": 0, "errors": 0, "skipped": 0}

    async def _rotate() -> None:
        if session.key is not current:
            raise WrongPasswordError("Vault key changed before the password change ran")
        blobs = {
            blob: await storage.get(config.storage_key(blob))
            for blob in BLOB_NAMES
        }
        blobs[BLOB_HISTORY] = _rotate_list_blob(
            blobs[BLOB_HISTORY], _recrypt_message, current, new_key, stats,
        )
        blobs[BLOB_CONTACTS] = _rotate_list_blob(
            blobs[BLOB_CONTACTS], _recrypt_contact, current, new_key, stats,
        )
        if blobs[BLOB_PROFILE]:
            profile = _rotate_record(
                load_blob(blobs[BLOB_PROFILE]), _recrypt_profile, current, new_key, stats,
            )
            blobs[BLOB_PROFILE] = dump_blob(profile)
        blobs[BLOB_CANARY] = seal_canary(new_key)
        await storage.replace({
            config.storage_key(blob): value
            for blob, value in blobs.items()
            if value
        })
        # jobs queued behind this one must see new_key
        session.rekey(new_key)

    logger.info("Starting password change (namespace=%s)", config.namespace)
    try:
        await queue.submit(_rotate)
    except BaseException:
        if session.unlocked and session.key is new_key:
            raise
        new_key.wipe()
        raise
    logger.info("Password change complete: %s", stats)
    return stats
