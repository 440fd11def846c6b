"""
TTL Sweeper — periodic pruning of expired messages from an open conversation.

Every ``interval`` seconds the sweeper drops messages with
``expires_at <= now`` from the view's in-memory list and saves the
survivors through the store. Expiry is lazy and best effort: an expired
message stays in encrypted storage until the next tick or the next load
of its conversation. It is a retention policy, not cryptographic
shredding.

A tick never overlaps the previous one: if a compaction is still in
flight, the new tick is skipped and the next one picks up the work.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Callable, Optional

from ..exceptions import VaultLockedError
from .records import PlainMessage, now_ms

if TYPE_CHECKING:
    from .view import ConversationView

logger = logging.getLogger("shadowlink.vault")


class TTLSweeper:
    """Timer task bound to one :class:`ConversationView`."""

    def __init__(
        self,
        view: "ConversationView",
        interval: float = 5.0,
        clock: Optional[Callable[[], int]] = None,
    ):
        if interval <= 0:
            raise ValueError("Sweep interval must be positive")
        self._view = view
        self._interval = interval
        self._clock = clock or now_ms
        self._task: Optional[asyncio.Task] = None
        self._busy = False
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._loop(), name=f"ttl-sweeper:{self._view.conversation_id}",
        )
        logger.debug(
            "TTL sweeper started for conversation=%s (interval=%.2fs)",
            self._view.conversation_id, self._interval,
        )

    async def stop(self) -> None:
        """Cancel the timer and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug("TTL sweeper stopped for conversation=%s", self._view.conversation_id)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.tick()
            except VaultLockedError:
                logger.debug(
                    "Sweep skipped for conversation=%s: vault locked",
                    self._view.conversation_id,
                )
            except Exception:
                logger.exception(
                    "Sweep failed for conversation=%s", self._view.conversation_id,
                )

    async def tick(self) -> list[PlainMessage]:
        """Run one sweep; returns the messages it expired."""
        if self._busy:
            logger.debug(
                "Previous sweep still in flight for conversation=%s; deferring",
                self._view.conversation_id,
            )
            return []
        self._busy = True
        try:
            self.ticks += 1
            now = self._clock()
            messages = self._view.messages
            expired = [m for m in messages if m.is_expired(now)]
            if not expired:
                return []
            survivors = [m for m in messages if not m.is_expired(now)]
            await self._view.replace_messages(survivors)
            logger.info(
                "Expired %d message(s) in conversation=%s",
                len(expired), self._view.conversation_id,
            )
            return expired
        finally:
            self._busy = False
