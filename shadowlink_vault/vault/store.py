"""
ConversationStore — encrypted message history partitioned by conversation.

The history blob is one JSON list of encrypted records shared by every
conversation. Saves and clears are read-modify-write cycles over the whole
list: records of other conversations are carried over untouched (same
ciphertext, same IVs), only the target conversation is re-encrypted.
Every cycle runs through the shared :class:`MutationQueue`, so a save can
never interleave with another save, a sweeper compaction or an import.

Cost is O(total records) per save; acceptable for a personal vault.

Security Note:
    Never log plaintext or ciphertext. Only record ids, counts and
    conversation ids are logged.
"""
import logging
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from ..exceptions import DecryptionAuthFailure, StorageParseFailure
from ..storage import StoragePort
from .config import BLOB_HISTORY
from .crypto import VaultKey, decrypt, decrypt_text, dump_blob, encrypt, load_blob
from .queue import MutationQueue
from .records import (
    GLOBAL_CONVERSATION,
    DecryptedCollection,
    EncryptedMessage,
    PlainMessage,
    RecordFailure,
    now_ms,
)
from .session import VaultSession

logger = logging.getLogger("shadowlink.vault")

Clock = Callable[[], int]


def record_conversation(record: Any) -> Optional[str]:
    """Conversation a raw record belongs to (None for non-object entries)."""
    if not isinstance(record, dict):
        return None
    return record.get("conversation") or record.get("conversationId") or GLOBAL_CONVERSATION


def record_expires_at(record: Any) -> Optional[int]:
    if not isinstance(record, dict):
        return None
    value = record.get("expiresAt")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def split_expired(records: Iterable[Any], now: int) -> tuple[list[Any], int]:
    """Drop records whose ``expiresAt <= now``; return (kept, dropped count)."""
    kept: list[Any] = []
    dropped = 0
    for record in records:
        expires_at = record_expires_at(record)
        if expires_at is not None and expires_at <= now:
            dropped += 1
            continue
        kept.append(record)
    return kept, dropped


def encrypt_message(message: PlainMessage, key: VaultKey, conversation_id: str) -> dict:
    """Encrypt every human-readable field of ``message`` under its own IV."""
    sealed = encrypt(message.content, key)
    iv_media = ciphertext_media = None
    if message.media_payload is not None:
        sealed_media = encrypt(message.media_payload, key)
        iv_media, ciphertext_media = sealed_media.iv, sealed_media.ciphertext
    return EncryptedMessage(
        id=message.id,
        role=message.role,
        iv=sealed.iv,
        ciphertext=sealed.ciphertext,
        kind=message.kind,
        iv_media=iv_media,
        ciphertext_media=ciphertext_media,
        created_at=message.created_at,
        expires_at=message.expires_at,
        conversation=conversation_id,
    ).to_record()


def decrypt_message(record: Any, key: VaultKey, skip_media: bool = False) -> PlainMessage:
    """Decrypt one persisted record.

    With ``skip_media`` the media field is left undecrypted and the
    message comes back with ``media_payload=None``.

    Raises:
        ValidationError: If the record is not a well-formed message.
        DecryptionAuthFailure: If any field fails to authenticate; carries
            the record id and the failing field name.
    """
    enc = EncryptedMessage.model_validate(record)
    try:
        content = decrypt_text(enc.ciphertext, enc.iv, key)
    except DecryptionAuthFailure as err:
        raise DecryptionAuthFailure(err.message, record_id=enc.id, field="content") from err
    media = None
    if enc.ciphertext_media and enc.iv_media and not skip_media:
        try:
            media = decrypt(enc.ciphertext_media, enc.iv_media, key)
        except DecryptionAuthFailure as err:
            raise DecryptionAuthFailure(err.message, record_id=enc.id, field="media") from err
    return PlainMessage(
        id=enc.id,
        role=enc.role,
        content=content,
        kind=enc.kind,
        media_payload=media,
        created_at=enc.created_at,
        expires_at=enc.expires_at,
        conversation=enc.conversation,
    )


class ConversationStore:
    """Loads, saves and clears conversations in the encrypted history blob."""

    def __init__(
        self,
        storage: StoragePort,
        session: VaultSession,
        queue: MutationQueue,
        clock: Optional[Clock] = None,
    ):
        self._storage = storage
        self._session = session
        self._queue = queue
        self._clock = clock or now_ms
        self._history_key = session.config.storage_key(BLOB_HISTORY)

    def _require_key(self) -> VaultKey:
        return self._session.key

    # ------------------------------------------------------------------
    # Raw collection access (call only from queue jobs)
    # ------------------------------------------------------------------

    async def _read_collection(self) -> list[Any]:
        raw = await self._storage.get(self._history_key)
        if not raw:
            return []
        data = load_blob(raw)
        if not isinstance(data, list):
            raise StorageParseFailure("History blob must be a JSON list")
        return data

    async def _write_collection(self, records: list[Any]) -> None:
        await self._storage.set(self._history_key, dump_blob(records))

    async def _snapshot(self, now: int) -> list[Any]:
        """Read the collection, compacting away expired records first."""
        try:
            records = await self._read_collection()
        except StorageParseFailure as err:
            logger.error("History unreadable, treating as empty: %s", err)
            return []
        kept, dropped = split_expired(records, now)
        if dropped:
            await self._write_collection(kept)
            logger.info("Pruned %d expired record(s) on load", dropped)
        return kept

    async def _replace_partition(
        self,
        conversation_id: str,
        new_records: list[dict],
        preserve: frozenset[str] = frozenset(),
    ) -> int:
        """Swap the records of one conversation.

        Existing records whose id is in ``preserve`` stay as they are and
        win over a new record with the same id.
        """
        records = await self._read_collection()
        new_ids = {rec["id"] for rec in new_records}
        kept = []
        preserved: set[str] = set()
        removed = 0
        for record in records:
            if record_conversation(record) == conversation_id:
                record_id = record.get("id")
                if record_id in preserve:
                    kept.append(record)
                    preserved.add(record_id)
                else:
                    removed += 1
                continue
            if isinstance(record, dict) and record.get("id") in new_ids:
                raise ValueError(
                    f"Record id {record.get('id')!r} already belongs to "
                    f"conversation {record_conversation(record)!r}"
                )
            kept.append(record)
        new_records = [rec for rec in new_records if rec["id"] not in preserved]
        if removed or new_records:
            await self._write_collection(kept + new_records)
        return removed

    async def _save(
        self,
        conversation_id: str,
        messages: list[PlainMessage],
        preserve: frozenset[str],
    ) -> int:
        # key read at run time, after any earlier rotation or import
        key = self._require_key()
        new_records = [encrypt_message(m, key, conversation_id) for m in messages]
        return await self._replace_partition(conversation_id, new_records, preserve)

    async def _prune(self, now: int) -> int:
        records = await self._read_collection()
        kept, dropped = split_expired(records, now)
        if dropped:
            await self._write_collection(kept)
        return dropped

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def load_conversation(self, conversation_id: str) -> DecryptedCollection[PlainMessage]:
        """Decrypt the live (unexpired) messages of one conversation.

        Expired records anywhere in the collection are removed from storage
        before this returns. Records that fail to parse or authenticate are
        reported in ``failures`` and never abort the load. An unparseable
        history blob loads as empty and is left as it is.

        Raises:
            VaultLockedError: If the vault is not unlocked.
        """
        self._require_key()
        records = await self._queue.submit(self._snapshot, self._clock())
        key = self._require_key()
        result: DecryptedCollection[PlainMessage] = DecryptedCollection()
        for record in records:
            if record_conversation(record) != conversation_id:
                continue
            record_id = record.get("id")
            try:
                result.items.append(decrypt_message(record, key))
            except ValidationError as err:
                logger.warning("Malformed message record id=%s skipped", record_id)
                result.failures.append(
                    RecordFailure(record_id, None, f"malformed record: {err.error_count()} error(s)")
                )
            except DecryptionAuthFailure as err:
                logger.warning(
                    "Message record id=%s failed to authenticate (field=%s)",
                    record_id, err.field,
                )
                result.failures.append(RecordFailure(record_id, err.field, err.message))
                if err.field == "media":
                    result.items.append(decrypt_message(record, key, skip_media=True))
        logger.debug(
            "Loaded conversation=%s: %d message(s), %d failure(s)",
            conversation_id, len(result.items), len(result.failures),
        )
        return result

    async def save_conversation(
        self,
        conversation_id: str,
        messages: Iterable[PlainMessage],
        preserve_ids: Iterable[str] = (),
    ) -> None:
        """Replace every record of ``conversation_id`` with ``messages``.

        Other conversations' records are preserved byte for byte, and so
        are this conversation's records listed in ``preserve_ids`` (records
        that failed to decrypt on load). Messages are encrypted inside the
        queued job, under the key that is live when the job runs.

        Raises:
            VaultLockedError: If the vault is not unlocked, here or when
                the queued job runs.
            ValueError: If a message id is duplicated or used by another
                conversation. Nothing is written in that case.
            StorageParseFailure: If the stored history is unreadable.
                Nothing is written in that case.
        """
        self._require_key()
        messages = list(messages)
        ids = [m.id for m in messages]
        if len(ids) != len(set(ids)):
            raise ValueError("Duplicate message ids in save")
        removed = await self._queue.submit(
            self._save, conversation_id, messages, frozenset(preserve_ids),
        )
        logger.debug(
            "Saved conversation=%s: replaced %d record(s) with %d",
            conversation_id, removed, len(messages),
        )

    async def clear_conversation(self, conversation_id: str) -> int:
        """Remove every record of ``conversation_id``; returns how many.

        Raises:
            VaultLockedError: If the vault is not unlocked.
            StorageParseFailure: If the stored history is unreadable.
        """
        self._require_key()
        removed = await self._queue.submit(self._replace_partition, conversation_id, [])
        logger.info("Cleared conversation=%s (%d record(s))", conversation_id, removed)
        return removed

    async def prune_expired(self) -> int:
        """Remove expired records from every conversation; returns how many."""
        self._require_key()
        return await self._queue.submit(self._prune, self._clock())

    async def conversation_ids(self) -> list[str]:
        """Distinct conversation ids present in storage (no decryption)."""
        self._require_key()
        records = await self._queue.submit(self._snapshot, self._clock())
        seen: dict[str, None] = {}
        for record in records:
            conversation = record_conversation(record)
            if conversation is not None:
                seen.setdefault(conversation, None)
        return list(seen)

    async def purge_history(self) -> None:
        """Delete the whole history blob, including unreadable contents."""
        await self._queue.submit(self._storage.delete, self._history_key)
        logger.warning("History blob purged")
