"""
Cloud blob store — opaque document storage for encrypted vault bundles.

The remote side only ever sees ``{"encryptedData": <json string>,
"lastUpdated": <epoch ms>}`` under a caller-chosen id. It is never given
the key or the password and is never asked to decrypt anything.
"""
import asyncio
import logging
from typing import Any, Optional, Protocol
from urllib.parse import quote

import aiohttp

from ..exceptions import RemoteUnavailable

logger = logging.getLogger("shadowlink.vault")


def _validate_remote_id(remote_id: str) -> None:
    if not remote_id or not remote_id.strip():
        raise ValueError("Remote id cannot be empty")


class RemoteBlobStore(Protocol):
    async def put_document(self, remote_id: str, document: dict[str, Any]) -> None:
        ...

    async def get_document(self, remote_id: str) -> Optional[dict[str, Any]]:
        ...


class MemoryBlobStore:
    """In-process remote, for tests and offline use.

    Set ``online = False`` to make every call raise :class:`RemoteUnavailable`.
    """

    def __init__(self) -> None:
        self.documents: dict[str, dict[str, Any]] = {}
        self.online = True

    def _check(self) -> None:
        if not self.online:
            raise RemoteUnavailable("Remote blob store is offline")

    async def put_document(self, remote_id: str, document: dict[str, Any]) -> None:
        _validate_remote_id(remote_id)
        self._check()
        self.documents[remote_id] = dict(document)

    async def get_document(self, remote_id: str) -> Optional[dict[str, Any]]:
        _validate_remote_id(remote_id)
        self._check()
        doc = self.documents.get(remote_id)
        return dict(doc) if doc is not None else None


class HttpBlobStore:
    """Remote blob store over HTTP.

    ``PUT {base_url}/documents/{remote_id}`` stores a JSON document,
    ``GET`` fetches it (404 means no document).
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._headers = headers or {}

    def _url(self, remote_id: str) -> str:
        return f"{self._base_url}/documents/{quote(remote_id, safe='')}"

    async def _request(self, method: str, remote_id: str, **kwargs: Any) -> Optional[dict[str, Any]]:
        _validate_remote_id(remote_id)
        url = self._url(remote_id)
        owns_session = self._session is None
        session = self._session or aiohttp.ClientSession()
        try:
            async with session.request(method, url, headers=self._headers, **kwargs) as resp:
                if method == "GET" and resp.status == 404:
                    return None
                if resp.status >= 400:
                    raise RemoteUnavailable(
                        f"Remote store answered {resp.status} for {method} {remote_id}"
                    )
                if method == "GET":
                    return await resp.json(content_type=None)
                return None
        except aiohttp.ClientError as err:
            logger.error("Remote %s failed for id=%s: %s", method, remote_id, err)
            raise RemoteUnavailable(f"Remote store unreachable: {err}") from err
        except asyncio.TimeoutError as err:
            logger.error("Remote %s timed out for id=%s", method, remote_id)
            raise RemoteUnavailable("Remote store timed out") from err
        finally:
            if owns_session:
                await session.close()

    async def put_document(self, remote_id: str, document: dict[str, Any]) -> None:
        await self._request("PUT", remote_id, json=document)

    async def get_document(self, remote_id: str) -> Optional[dict[str, Any]]:
        return await self._request("GET", remote_id)
