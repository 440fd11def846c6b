"""Encrypted vault — everything persisted is ciphertext under one password.

Security Note (Threat Model):
    Records are decrypted in process memory while the vault is unlocked.
    A memory dump of the running process can expose the derived key and
    any decrypted records. Locking zeroes the key buffer, but copies made
    by the crypto backend are outside our control. This is an accepted
    limitation. Message expiry is a retention policy, not a security
    boundary.
"""

from .config import VaultConfig, TTL_PRESETS
from .crypto import VaultKey, derive_key, encrypt, decrypt, seal_token, open_token
from .records import (
    GLOBAL_CONVERSATION,
    PlainMessage,
    PlainContact,
    PlainProfile,
    DecryptedCollection,
    RecordFailure,
)
from .queue import MutationQueue
from .session import VaultSession, VaultState
from .store import ConversationStore
from .contacts import ContactBook, ProfileStore
from .sweeper import TTLSweeper
from .view import ConversationView
from .backup import BackupManager, VaultBundle
from .cloud import HttpBlobStore, MemoryBlobStore
from .key_rotation import change_password
from .local_vault import LocalVault

__all__ = [
    "VaultConfig",
    "TTL_PRESETS",
    "VaultKey",
    "derive_key",
    "encrypt",
    "decrypt",
    "seal_token",
    "open_token",
    "GLOBAL_CONVERSATION",
    "PlainMessage",
    "PlainContact",
    "PlainProfile",
    "DecryptedCollection",
    "RecordFailure",
    "MutationQueue",
    "VaultSession",
    "VaultState",
    "ConversationStore",
    "ContactBook",
    "ProfileStore",
    "TTLSweeper",
    "ConversationView",
    "BackupManager",
    "VaultBundle",
    "HttpBlobStore",
    "MemoryBlobStore",
    "change_password",
    "LocalVault",
]
