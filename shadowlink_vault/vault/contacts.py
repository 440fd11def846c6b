"""
Contacts and profile — encrypted address book and the user's own profile.

Each contact's name and note, and the profile's nickname and bio, are
sealed under their own IV. Contact ids and the profile id are public
identifiers and stay in plaintext. Contacts are conversation partition
keys for the history store.
"""
import logging
from typing import Any, Optional

from pydantic import ValidationError

from ..exceptions import DecryptionAuthFailure, StorageParseFailure
from ..storage import StoragePort
from .config import BLOB_CONTACTS, BLOB_PROFILE
from .crypto import VaultKey, decrypt_text, dump_blob, encrypt, load_blob
from .queue import MutationQueue
from .records import (
    DecryptedCollection,
    EncryptedContact,
    EncryptedProfile,
    PlainContact,
    PlainProfile,
    RecordFailure,
)
from .session import VaultSession

logger = logging.getLogger("shadowlink.vault")


def encrypt_contact(contact: PlainContact, key: VaultKey) -> dict:
    name = encrypt(contact.name, key)
    note = encrypt(contact.note, key)
    return EncryptedContact(
        id=contact.id,
        ciphertext_name=name.ciphertext,
        iv_name=name.iv,
        ciphertext_note=note.ciphertext,
        iv_note=note.iv,
    ).to_record()


def decrypt_contact(record: Any, key: VaultKey) -> PlainContact:
    enc = EncryptedContact.model_validate(record)
    try:
        name = decrypt_text(enc.ciphertext_name, enc.iv_name, key)
    except DecryptionAuthFailure as err:
        raise DecryptionAuthFailure(err.message, record_id=enc.id, field="name") from err
    try:
        note = decrypt_text(enc.ciphertext_note, enc.iv_note, key)
    except DecryptionAuthFailure as err:
        raise DecryptionAuthFailure(err.message, record_id=enc.id, field="note") from err
    return PlainContact(id=enc.id, name=name, note=note)


def encrypt_profile(profile: PlainProfile, key: VaultKey) -> dict:
    nickname = encrypt(profile.nickname, key)
    ciphertext_bio = iv_bio = None
    if profile.bio is not None:
        bio = encrypt(profile.bio, key)
        ciphertext_bio, iv_bio = bio.ciphertext, bio.iv
    return EncryptedProfile(
        id=profile.id,
        ciphertext_nickname=nickname.ciphertext,
        iv_nickname=nickname.iv,
        ciphertext_bio=ciphertext_bio,
        iv_bio=iv_bio,
    ).to_record()


def decrypt_profile(record: Any, key: VaultKey) -> PlainProfile:
    enc = EncryptedProfile.model_validate(record)
    try:
        nickname = decrypt_text(enc.ciphertext_nickname, enc.iv_nickname, key)
    except DecryptionAuthFailure as err:
        raise DecryptionAuthFailure(err.message, record_id=enc.id, field="nickname") from err
    bio = None
    if enc.ciphertext_bio and enc.iv_bio:
        try:
            bio = decrypt_text(enc.ciphertext_bio, enc.iv_bio, key)
        except DecryptionAuthFailure as err:
            raise DecryptionAuthFailure(err.message, record_id=enc.id, field="bio") from err
    return PlainProfile(id=enc.id, nickname=nickname, bio=bio)


def public_profile_id(raw: Optional[str]) -> Optional[str]:
    """Profile id from a raw profile blob, without decrypting anything."""
    if not raw:
        return None
    try:
        data = load_blob(raw)
    except StorageParseFailure:
        return None
    return data.get("id") if isinstance(data, dict) else None


class ContactBook:
    """Encrypted contact list stored as one JSON list blob."""

    def __init__(self, storage: StoragePort, session: VaultSession, queue: MutationQueue):
        self._storage = storage
        self._session = session
        self._queue = queue
        self._contacts_key = session.config.storage_key(BLOB_CONTACTS)

    async def _read(self) -> list[Any]:
        raw = await self._storage.get(self._contacts_key)
        if not raw:
            return []
        data = load_blob(raw)
        if not isinstance(data, list):
            raise StorageParseFailure("Contacts blob must be a JSON list")
        return data

    async def _write(self, records: list[Any]) -> None:
        await self._storage.set(self._contacts_key, dump_blob(records))

    async def _upsert(self, contact: PlainContact) -> bool:
        record = encrypt_contact(contact, self._session.key)
        records = await self._read()
        replaced = False
        for idx, existing in enumerate(records):
            if isinstance(existing, dict) and existing.get("id") == record["id"]:
                records[idx] = record
                replaced = True
                break
        if not replaced:
            records.append(record)
        await self._write(records)
        return replaced

    async def _remove(self, contact_id: str) -> bool:
        records = await self._read()
        kept = [
            r for r in records
            if not (isinstance(r, dict) and r.get("id") == contact_id)
        ]
        if len(kept) == len(records):
            return False
        await self._write(kept)
        return True

    async def list_contacts(self) -> DecryptedCollection[PlainContact]:
        """Decrypt every contact; failures are reported, not raised.

        An unreadable contacts blob lists as empty.
        """
        self._session.key  # raises VaultLockedError when locked
        try:
            records = await self._queue.submit(self._read)
        except StorageParseFailure as err:
            logger.error("Contacts unreadable, treating as empty: %s", err)
            return DecryptedCollection()
        key = self._session.key
        result: DecryptedCollection[PlainContact] = DecryptedCollection()
        for record in records:
            record_id = record.get("id") if isinstance(record, dict) else None
            try:
                result.items.append(decrypt_contact(record, key))
            except ValidationError:
                logger.warning("Malformed contact record id=%s skipped", record_id)
                result.failures.append(RecordFailure(record_id, None, "malformed record"))
            except DecryptionAuthFailure as err:
                logger.warning(
                    "Contact id=%s failed to authenticate (field=%s)", record_id, err.field,
                )
                result.failures.append(RecordFailure(record_id, err.field, err.message))
        return result

    async def add_contact(self, name: str, note: str = "") -> PlainContact:
        """Create and persist a new contact.

        Raises:
            ValueError: If ``name`` is blank.
        """
        if not name.strip():
            raise ValueError("Contact name cannot be empty")
        contact = PlainContact(name=name, note=note)
        await self.update_contact(contact)
        logger.info("Contact added id=%s", contact.id)
        return contact

    async def update_contact(self, contact: PlainContact) -> None:
        """Insert or replace a contact by id (only this record is re-encrypted)."""
        self._session.key  # raises VaultLockedError when locked
        await self._queue.submit(self._upsert, contact)

    async def delete_contact(self, contact_id: str) -> bool:
        """Remove a contact; returns False if no such contact exists."""
        self._session.key  # raises VaultLockedError when locked
        removed = await self._queue.submit(self._remove, contact_id)
        if removed:
            logger.info("Contact deleted id=%s", contact_id)
        return removed


class ProfileStore:
    """The user's own profile, stored as a single record blob."""

    def __init__(self, storage: StoragePort, session: VaultSession, queue: MutationQueue):
        self._storage = storage
        self._session = session
        self._queue = queue
        self._profile_key = session.config.storage_key(BLOB_PROFILE)

    async def _read(self) -> Optional[str]:
        return await self._storage.get(self._profile_key)

    async def load_profile(self) -> PlainProfile:
        """Decrypt the stored profile, or return a fresh one with a new id.

        Raises:
            DecryptionAuthFailure: If a stored field fails to authenticate.
            StorageParseFailure: If the stored profile is malformed.
        """
        self._session.key  # raises VaultLockedError when locked
        raw = await self._queue.submit(self._read)
        if not raw:
            return PlainProfile()
        data = load_blob(raw)
        try:
            return decrypt_profile(data, self._session.key)
        except ValidationError as err:
            raise StorageParseFailure(f"Profile blob is malformed: {err.error_count()} error(s)") from err

    async def _write(self, profile: PlainProfile) -> None:
        record = encrypt_profile(profile, self._session.key)
        await self._storage.set(self._profile_key, dump_blob(record))

    async def save_profile(self, profile: PlainProfile) -> None:
        self._session.key  # raises VaultLockedError when locked
        await self._queue.submit(self._write, profile)
        logger.info("Profile saved id=%s", profile.id)

    async def public_id(self) -> Optional[str]:
        """Profile id without decrypting anything (None when no profile)."""
        return public_profile_id(await self._queue.submit(self._read))
