"""
VaultSession — setup / unlock / lock / reset lifecycle of the vault key.

States::

    NO_VAULT --setup--> UNLOCKED
    LOCKED   --unlock--> UNLOCKED | LOCKED (WrongPasswordError, retryable)
    UNLOCKED --lock--> LOCKED
    LOCKED/UNLOCKED --reset--> NO_VAULT   (wipes all persisted blobs)

The salt is generated once at setup and only replaced by a reset. A
canary (a known plaintext sealed under the derived key) is written at
setup; unlock decrypts it to reject a wrong password immediately. Vaults
without a readable canary (older or imported ones) unlock lazily: a
wrong password only shows up as record decrypt failures.

Security Note:
    The key lives only in this object while UNLOCKED. ``lock()`` and
    ``reset()`` zero it, and every handle to it fails afterwards.
"""
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Optional

from ..exceptions import (
    DecryptionAuthFailure,
    KeyDerivationFailure,
    NoVaultError,
    StorageParseFailure,
    VaultExistsError,
    VaultLockedError,
    WrongPasswordError,
)
from ..storage import StoragePort
from .config import BLOB_CANARY, BLOB_SALT, VaultConfig
from .crypto import (
    VaultKey,
    b64decode,
    b64encode,
    decrypt_text,
    derive_key,
    dump_blob,
    encrypt,
    generate_salt,
    load_blob,
)
from .queue import MutationQueue

logger = logging.getLogger("shadowlink.vault")

CANARY_PLAINTEXT = "shadowlink-canary-v1"


class VaultState(str, Enum):
    NO_VAULT = "no_vault"
    LOCKED = "locked"
    UNLOCKED = "unlocked"


def seal_canary(key: VaultKey) -> str:
    """Persisted canary blob for ``key``."""
    sealed = encrypt(CANARY_PLAINTEXT, key)
    return dump_blob({"iv": sealed.iv, "ciphertext": sealed.ciphertext})


def check_canary(raw: Optional[str], key: VaultKey) -> Optional[bool]:
    """Check a persisted canary against ``key``.

    Returns:
        True if it decrypts to the canary text, False if it does not
        authenticate, None if there is no usable canary.
    """
    if not raw:
        return None
    try:
        data = load_blob(raw)
    except StorageParseFailure:
        return None
    if not isinstance(data, dict) or "iv" not in data or "ciphertext" not in data:
        return None
    try:
        return decrypt_text(data["ciphertext"], data["iv"], key) == CANARY_PLAINTEXT
    except DecryptionAuthFailure:
        return False


class VaultSession:
    """Owns the vault key for the lifetime of the UNLOCKED state."""

    def __init__(
        self,
        storage: StoragePort,
        config: Optional[VaultConfig] = None,
        queue: Optional[MutationQueue] = None,
    ):
        self._storage = storage
        self._config = config or VaultConfig()
        self._queue = queue or MutationQueue("session")
        self._key: Optional[VaultKey] = None
        self._salt: Optional[bytes] = None

    def __repr__(self) -> str:
        status = "unlocked" if self.unlocked else "locked"
        return f"<VaultSession {status} namespace={self._config.namespace}>"

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def config(self) -> VaultConfig:
        return self._config

    @property
    def unlocked(self) -> bool:
        return self._key is not None and not self._key.wiped

    @property
    def key(self) -> VaultKey:
        """Live vault key.

        Raises:
            VaultLockedError: If the vault is not unlocked.
        """
        if not self.unlocked:
            raise VaultLockedError("Vault is not unlocked")
        return self._key  # type: ignore[return-value]

    @property
    def salt(self) -> bytes:
        if not self.unlocked or self._salt is None:
            raise VaultLockedError("Vault is not unlocked")
        return self._salt

    async def state(self) -> VaultState:
        if self.unlocked:
            return VaultState.UNLOCKED
        salt = await self._storage.get(self._config.storage_key(BLOB_SALT))
        return VaultState.LOCKED if salt else VaultState.NO_VAULT

    def _derive(self, password: str, salt: bytes) -> Awaitable[VaultKey]:
        return asyncio.to_thread(
            derive_key, password, salt, self._config.kdf_iterations,
        )

    def _activate(self, key: VaultKey, salt: bytes) -> None:
        if self._key is not None and self._key is not key:
            self._key.wipe()
        self._key = key
        self._salt = salt

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def setup(self, password: str) -> None:
        """Create a new vault: generate and persist salt and canary, unlock.

        Raises:
            VaultExistsError: If a salt is already persisted. Setup never
                silently overwrites a vault; call ``reset()`` first.
            KeyDerivationFailure: If the password is empty.
        """
        if not password:
            raise KeyDerivationFailure("Password cannot be empty")
        await self._queue.submit(self._setup, password)
        logger.info("Vault created (namespace=%s)", self._config.namespace)

    async def _setup(self, password: str) -> None:
        salt_key = self._config.storage_key(BLOB_SALT)
        if await self._storage.get(salt_key):
            raise VaultExistsError("A vault already exists; reset it first")
        salt = generate_salt()
        key = await self._derive(password, salt)
        canary = seal_canary(key)
        await self._storage.set(salt_key, b64encode(salt))
        await self._storage.set(self._config.storage_key(BLOB_CANARY), canary)
        self._activate(key, salt)

    async def _read_unlock_state(self) -> tuple[Optional[str], Optional[str]]:
        salt_raw = await self._storage.get(self._config.storage_key(BLOB_SALT))
        canary_raw = await self._storage.get(self._config.storage_key(BLOB_CANARY))
        return salt_raw, canary_raw

    async def unlock(self, password: str) -> None:
        """Derive the key from ``password`` and the persisted salt.

        Raises:
            NoVaultError: If no usable salt is persisted; setup is required.
            WrongPasswordError: If a canary exists and does not authenticate.
                The session stays locked and unlock may be retried.
        """
        if not password:
            raise KeyDerivationFailure("Password cannot be empty")
        salt_raw, canary_raw = await self._queue.submit(self._read_unlock_state)
        if not salt_raw:
            self.lock()
            logger.warning("Unlock attempted with no persisted salt")
            raise NoVaultError("No vault salt stored; setup required")
        try:
            salt = b64decode(salt_raw)
        except ValueError as err:
            self.lock()
            logger.error("Persisted salt is corrupted: %s", err)
            raise NoVaultError("Stored salt is corrupted; reset required") from err
        if not salt:
            self.lock()
            raise NoVaultError("Stored salt is empty; reset required")
        key = await self._derive(password, salt)
        verdict = check_canary(canary_raw, key)
        if verdict is False:
            key.wipe()
            logger.info("Unlock rejected: canary did not authenticate")
            raise WrongPasswordError("Incorrect password")
        if verdict is None:
            logger.info("No canary stored; password will be checked lazily")
        self._activate(key, salt)
        logger.info("Vault unlocked (namespace=%s)", self._config.namespace)

    def lock(self) -> None:
        """Drop and zero the key. Safe to call when already locked."""
        if self._key is not None:
            self._key.wipe()
            logger.info("Vault locked (namespace=%s)", self._config.namespace)
        self._key = None
        self._salt = None

    async def reset(self) -> None:
        """Wipe every persisted blob and lock. Irreversible."""
        await self._queue.submit(self._reset)
        logger.warning("Vault reset: all persisted data wiped")

    async def _reset(self) -> None:
        await self._storage.clear()
        self.lock()

    def rekey(self, key: VaultKey) -> None:
        """Swap in a new key for the same salt (used by password change)."""
        if not self.unlocked:
            raise VaultLockedError("Vault is not unlocked")
        self._activate(key, self._salt)  # type: ignore[arg-type]
