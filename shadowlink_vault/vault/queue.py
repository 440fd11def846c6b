"""
Mutation Queue — total ordering of every write to the persisted vault.

All mutating operations (conversation saves and clears, sweeper
compactions, contact/profile writes, backup imports, password changes,
resets) are read-modify-write cycles over whole blobs, so they run one at
a time through a single FIFO drained by one worker task.

Jobs must not submit to the queue they run on; that would deadlock.
There are no timeouts: a storage call that never returns stalls every
queued job behind it.

A job that escapes with a ``BaseException`` (``CancelledError`` included)
stops the worker: its submitter gets the error, jobs queued behind it are
cancelled, and the next ``submit`` starts a fresh worker.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("shadowlink.vault")

Job = Callable[..., Awaitable[Any]]


class MutationQueue:
    """Runs submitted coroutine functions strictly one at a time, FIFO."""

    def __init__(self, name: str = "vault"):
        self._name = name
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Future] = None
        self._closed = False

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def _ensure_worker(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if not self.running:
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name=f"mutation-queue:{self._name}",
            )
        return self._queue

    async def submit(self, fn: Job, *args: Any, **kwargs: Any) -> Any:
        """Enqueue ``fn(*args, **kwargs)`` and wait for its result.

        Exceptions raised by the job propagate to the caller.

        Raises:
            RuntimeError: If the queue has been closed.
        """
        if self._closed:
            raise RuntimeError(f"Mutation queue {self._name!r} is closed")
        queue = self._ensure_worker()
        future = asyncio.get_running_loop().create_future()
        await queue.put((fn, args, kwargs, future))
        return await future

    async def _run(self) -> None:
        queue = self._queue
        try:
            while True:
                fn, args, kwargs, future = await queue.get()
                try:
                    if future.cancelled():
                        logger.debug(
                            "Skipping cancelled job %s on queue %s",
                            getattr(fn, "__name__", fn), self._name,
                        )
                        continue
                    self._current = future
                    try:
                        result = await fn(*args, **kwargs)
                    except Exception as err:
                        if not future.done():
                            future.set_exception(err)
                    except BaseException as err:
                        if not future.done():
                            if isinstance(err, asyncio.CancelledError):
                                future.cancel()
                            else:
                                future.set_exception(err)
                        raise
                    else:
                        if not future.done():
                            future.set_result(result)
                finally:
                    self._current = None
                    queue.task_done()
        finally:
            # a dead worker is restarted by the next submit
            self._cancel_pending(queue)

    def _cancel_pending(self, queue: asyncio.Queue) -> None:
        while not queue.empty():
            _, _, _, future = queue.get_nowait()
            if not future.done():
                future.cancel()
            queue.task_done()

    async def join(self) -> None:
        """Wait until every job submitted so far has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Stop the worker; jobs still queued are cancelled."""
        self._closed = True
        if self._current is not None and not self._current.done():
            self._current.cancel()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self._queue is not None:
            self._cancel_pending(self._queue)
