"""
ConversationView — the open, decrypted state of one conversation.

Holds the in-memory message list, the disappearing-message TTL applied to
new messages, and the TTL sweeper for the conversation. The in-memory
list is updated synchronously before each save is queued, so saves from
the view and from its sweeper reach storage in the order they were made.
"""
import logging
from typing import Callable, Iterable, Optional

from .records import (
    GLOBAL_CONVERSATION,
    Kind,
    PlainMessage,
    RecordFailure,
    Role,
    now_ms,
)
from .store import ConversationStore
from .sweeper import TTLSweeper

logger = logging.getLogger("shadowlink.vault")


class ConversationView:
    """Open conversation with its sweeper.

    Usage::

        async with ConversationView(store, "global", ttl=60_000) as view:
            await view.post("user", "hello")
    """

    def __init__(
        self,
        store: ConversationStore,
        conversation_id: str = GLOBAL_CONVERSATION,
        ttl: int = 0,
        sweep_interval: float = 5.0,
        clock: Optional[Callable[[], int]] = None,
        registry: Optional[set["ConversationView"]] = None,
    ):
        if not conversation_id:
            raise ValueError("Conversation id cannot be empty")
        self._store = store
        self._registry = registry
        self._conversation_id = conversation_id
        self._clock = clock or now_ms
        self._messages: list[PlainMessage] = []
        self._failures: list[RecordFailure] = []
        self.ttl = ttl
        self.sweeper = TTLSweeper(self, interval=sweep_interval, clock=self._clock)

    def __repr__(self) -> str:
        return (
            f"<ConversationView {self._conversation_id} "
            f"messages={len(self._messages)} ttl={self._ttl}>"
        )

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @property
    def messages(self) -> list[PlainMessage]:
        return list(self._messages)

    @property
    def failures(self) -> list[RecordFailure]:
        """Records that failed to decrypt on the last load."""
        return list(self._failures)

    @property
    def ttl(self) -> int:
        return self._ttl

    @ttl.setter
    def ttl(self, value: int) -> None:
        if value < 0:
            raise ValueError("TTL cannot be negative")
        self._ttl = value

    async def open(self) -> "ConversationView":
        """Load the conversation and start the sweeper."""
        loaded = await self._store.load_conversation(self._conversation_id)
        self._messages = list(loaded.items)
        self._failures = list(loaded.failures)
        if self._registry is not None:
            self._registry.add(self)
        self.sweeper.start()
        return self

    async def close(self) -> None:
        if self._registry is not None:
            self._registry.discard(self)
        await self.sweeper.stop()

    async def __aenter__(self) -> "ConversationView":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def post(
        self,
        role: Role,
        content: str,
        kind: Kind = "text",
        media_payload: Optional[bytes] = None,
    ) -> PlainMessage:
        """Append a message (expiring after ``ttl`` ms if set) and save."""
        message = PlainMessage.compose(
            role,
            content,
            conversation=self._conversation_id,
            kind=kind,
            media_payload=media_payload,
            ttl=self._ttl,
            now=self._clock(),
        )
        await self.replace_messages(self._messages + [message])
        return message

    async def replace_messages(self, messages: Iterable[PlainMessage]) -> None:
        """Swap the in-memory list and persist it as the whole conversation.

        Stored records that failed to decrypt on load are kept as they are.
        """
        self._messages = list(messages)
        unreadable = {f.record_id for f in self._failures if f.record_id}
        await self._store.save_conversation(
            self._conversation_id, self._messages, preserve_ids=unreadable,
        )

    async def clear(self) -> int:
        """Remove every record of the conversation, unreadable ones included."""
        self._messages = []
        self._failures = []
        return await self._store.clear_conversation(self._conversation_id)
