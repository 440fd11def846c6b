"""
LocalVault — the public entry point tying the vault components together.

One storage port, one session, one mutation queue shared by every
component that writes, so every write to the persisted vault observes a
single total order.
"""
import logging
from pathlib import Path
from typing import Any, Callable, Optional, Union

from ..exceptions import RemoteUnavailable
from ..storage import StoragePort
from .backup import BackupManager, VaultBundle
from .cloud import HttpBlobStore, RemoteBlobStore
from .config import VaultConfig
from .contacts import ContactBook, ProfileStore
from .key_rotation import change_password
from .queue import MutationQueue
from .records import GLOBAL_CONVERSATION, now_ms
from .session import VaultSession, VaultState
from .store import ConversationStore
from .view import ConversationView

logger = logging.getLogger("shadowlink.vault")


class LocalVault:
    """Local-first encrypted vault.

    Usage::

        vault = LocalVault(MemoryStorage())
        await vault.setup("correct horse")
        async with vault.open_conversation(ttl=60_000) as chat:
            await chat.post("user", "hello")
        vault.lock()
    """

    def __init__(
        self,
        storage: StoragePort,
        config: Optional[VaultConfig] = None,
        remote: Optional[RemoteBlobStore] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._config = config or VaultConfig()
        self._storage = storage
        self._clock = clock or now_ms
        self._queue = MutationQueue(self._config.namespace)
        self.session = VaultSession(storage, self._config, self._queue)
        self.store = ConversationStore(storage, self.session, self._queue, self._clock)
        self.contacts = ContactBook(storage, self.session, self._queue)
        self.profile = ProfileStore(storage, self.session, self._queue)
        self.backup = BackupManager(
            storage, self._config, self._queue, self._clock, session=self.session,
        )
        if remote is None and self._config.cloud_url:
            remote = HttpBlobStore(self._config.cloud_url)
        self._remote = remote
        self._views: set[ConversationView] = set()

    def __repr__(self) -> str:
        return f"<LocalVault namespace={self._config.namespace} {self.session!r}>"

    @property
    def config(self) -> VaultConfig:
        return self._config

    @property
    def queue(self) -> MutationQueue:
        return self._queue

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def state(self) -> VaultState:
        return await self.session.state()

    async def setup(self, password: str) -> None:
        await self.session.setup(password)

    async def unlock(self, password: str) -> None:
        await self.session.unlock(password)

    async def _close_views(self) -> None:
        for view in list(self._views):
            await view.close()
        self._views.clear()

    def lock(self) -> None:
        """Drop the key. Open views stop sweeping on their next tick."""
        self.session.lock()

    async def lock_and_close(self) -> None:
        await self._close_views()
        self.session.lock()

    async def reset(self) -> None:
        """Wipe every persisted blob and lock."""
        await self._close_views()
        await self.session.reset()

    async def change_password(self, old_password: str, new_password: str) -> dict:
        return await change_password(
            self.session, self._storage, self._queue, old_password, new_password,
        )

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def open_conversation(
        self,
        conversation_id: str = GLOBAL_CONVERSATION,
        ttl: Optional[int] = None,
    ) -> ConversationView:
        """Create a view for ``conversation_id``; use it as an async context manager."""
        view = ConversationView(
            self.store,
            conversation_id,
            ttl=self._config.default_ttl if ttl is None else ttl,
            sweep_interval=self._config.sweep_interval,
            clock=self._clock,
            registry=self._views,
        )
        return view

    async def close_conversation(self, view: ConversationView) -> None:
        await view.close()

    @property
    def views(self) -> list[ConversationView]:
        """Views currently open (between ``open()`` and ``close()``)."""
        return list(self._views)

    # ------------------------------------------------------------------
    # Backup / sync
    # ------------------------------------------------------------------

    async def export_bundle(self) -> VaultBundle:
        return await self.backup.export_bundle()

    async def import_bundle(self, payload: Union[VaultBundle, dict, str, bytes]) -> VaultBundle:
        """Replace all vault data with the bundle, then lock.

        The imported salt may differ from the current one, so the session
        must be unlocked again with the bundle's password. Open views are
        closed before the import is queued.
        """
        bundle = VaultBundle.parse(payload)
        await self._close_views()
        await self.backup.import_bundle(bundle)
        self.session.lock()
        return bundle

    async def export_to_file(self, target: Union[str, Path]) -> Path:
        return await self.backup.export_to_file(target)

    async def import_from_file(self, source: Union[str, Path]) -> VaultBundle:
        await self._close_views()
        bundle = await self.backup.import_from_file(source)
        self.session.lock()
        return bundle

    def _require_remote(self) -> RemoteBlobStore:
        if self._remote is None:
            raise RemoteUnavailable("No cloud remote configured")
        return self._remote

    async def cloud_push(self, remote_id: str) -> dict[str, Any]:
        return await self.backup.cloud_push(self._require_remote(), remote_id)

    async def cloud_pull(self, remote_id: str) -> VaultBundle:
        remote = self._require_remote()
        await self._close_views()
        bundle = await self.backup.cloud_pull(remote, remote_id)
        self.session.lock()
        return bundle

    async def close(self) -> None:
        """Stop sweepers, lock, and shut down the mutation queue."""
        await self.lock_and_close()
        await self._queue.close()
