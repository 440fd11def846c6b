"""
Storage port — opaque keyed blobs the vault persists into.

The vault only ever talks to this narrow interface; blobs are strings
that already hold ciphertext. Backends:

- ``MemoryStorage``: in-process dict-like store.
- ``JsonFileStorage``: one JSON document on disk, replaced atomically.
- ``RedisStorage``: namespaced keys on an injected asyncio redis client.
"""
import os
import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Any, Optional, Protocol, Union, runtime_checkable
from collections.abc import Iterator, Mapping

import orjson

from .exceptions import StorageParseFailure

logger = logging.getLogger("shadowlink.vault")


@runtime_checkable
class StoragePort(Protocol):
    """Async get/set/delete/clear over opaque string blobs."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def clear(self) -> None:
        ...

    async def replace(self, values: Mapping[str, str]) -> None:
        """Atomically swap the whole keyspace for ``values``."""
        ...


class MemoryStorage:
    """In-memory storage.

    Item access is synchronous for inspection; the async methods implement
    :class:`StoragePort`.
    """

    def __init__(self, data: Optional[Mapping[str, str]] = None) -> None:
        self._data: dict[str, str] = dict(data or {})

    def __repr__(self) -> str:
        return f'<MemoryStorage keys={sorted(self._data)}>'

    # --- Magic Methods ---

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __setitem__(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"Storage values must be str, got {type(value).__name__}")
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    # --- StoragePort ---

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def clear(self) -> None:
        self._data = {}

    async def replace(self, values: Mapping[str, str]) -> None:
        fresh = dict(values)
        for key, value in fresh.items():
            if not isinstance(value, str):
                raise TypeError(
                    f"Storage value for {key!r} must be str, got {type(value).__name__}"
                )
        self._data = fresh


class JsonFileStorage:
    """Storage backed by a single JSON object file.

    Every write rewrites the file through a temporary file and
    ``os.replace``, so a crash never leaves a half-written document.
    File I/O runs in a worker thread.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        raw = self._path.read_bytes()
        if not raw.strip():
            return {}
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as err:
            raise StorageParseFailure(
                f"Storage file {self._path} is not valid JSON: {err}"
            ) from err
        if not isinstance(data, dict):
            raise StorageParseFailure(
                f"Storage file {self._path} must hold a JSON object"
            )
        return data

    def _write(self, data: Mapping[str, str]) -> None:
        fd, tmp = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(orjson.dumps(dict(data)))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self._path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    def _update(self, key: str, value: Optional[str]) -> None:
        data = self._read()
        if value is None:
            if key not in data:
                return
            data.pop(key)
        else:
            data[key] = value
        self._write(data)

    async def get(self, key: str) -> Optional[str]:
        data = await asyncio.to_thread(self._read)
        return data.get(key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._update, key, value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._update, key, None)

    async def clear(self) -> None:
        await asyncio.to_thread(self._write, {})
        logger.debug("Cleared storage file %s", self._path)

    async def replace(self, values: Mapping[str, str]) -> None:
        await asyncio.to_thread(self._write, dict(values))


class RedisStorage:
    """Storage on an asyncio redis client (``redis.asyncio.Redis`` or compatible).

    Keys are written as ``<prefix>:<key>``; the client must be created
    with ``decode_responses=True`` or return bytes, both are handled.
    """

    def __init__(self, redis: Any, prefix: str = "vault") -> None:
        self._redis = redis
        self._prefix = prefix

    def _redis_key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def _known_keys(self) -> list[Any]:
        return [k async for k in self._redis.scan_iter(match=f"{self._prefix}:*")]

    async def get(self, key: str) -> Optional[str]:
        value = await self._redis.get(self._redis_key(key))
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str) -> None:
        await self._redis.set(self._redis_key(key), value)

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._redis_key(key))

    async def clear(self) -> None:
        keys = await self._known_keys()
        if keys:
            await self._redis.delete(*keys)

    async def replace(self, values: Mapping[str, str]) -> None:
        keys = await self._known_keys()
        async with self._redis.pipeline(transaction=True) as pipe:
            if keys:
                pipe.delete(*keys)
            for key, value in values.items():
                pipe.set(self._redis_key(key), value)
            await pipe.execute()
