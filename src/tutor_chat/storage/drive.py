"""Cloud-drive protocol layer: one authenticated session against the drive API.

``DriveSession`` is the primitive node-level interface the object-store client
is written against. ``PCloudSession`` implements it over the pCloud JSON HTTP
API. Sessions raise ``RemoteNodeMissing`` for stale handles and
``RemoteStoreFailure`` for everything else; they never retry or time out on
their own, that policy lives in ``ObjectStoreClient``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx

from tutor_chat.config import StorageConfig
from tutor_chat.errors import RemoteNodeMissing, RemoteStoreError, RemoteStoreFailure
from tutor_chat.log import get_logger
from tutor_chat.storage.models import RemoteNode

logger = get_logger(__name__)


class DriveSession(ABC):
    """An authenticated session against a cloud drive account."""

    @abstractmethod
    async def root(self) -> RemoteNode:
        """Return the account's root folder."""
        ...

    @abstractmethod
    async def children(self, folder: RemoteNode) -> Optional[list[RemoteNode]]:
        """List the direct children of *folder*.

        Returns None when the drive reports the folder but has not populated
        its children yet (typical right after creation). Callers poll.
        """
        ...

    @abstractmethod
    async def mkdir(self, parent: RemoteNode, name: str) -> RemoteNode:
        ...

    @abstractmethod
    async def upload(self, folder: RemoteNode, name: str, data: bytes) -> RemoteNode:
        ...

    @abstractmethod
    async def stat(self, handle: str) -> RemoteNode:
        """Look up a file by handle; raises RemoteNodeMissing if absent."""
        ...

    @abstractmethod
    async def download(self, handle: str) -> bytes:
        ...

    @abstractmethod
    async def delete(self, handle: str) -> None:
        """Permanently delete a file; raises RemoteNodeMissing if absent."""
        ...

    @abstractmethod
    async def export_link(self, handle: str) -> str:
        """Create (or return the existing) public link for a file."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


# pCloud result codes that mean "the node you referenced is gone"
_MISSING_CODES = frozenset({2002, 2005, 2009, 2010})


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def _field(data: dict[str, Any], key: str, method: str) -> Any:
    value = data.get(key)
    if not value:
        raise RemoteStoreFailure(f"{method}: response has no {key!r}")
    return value


def _numeric_id(handle: str) -> str:
    """pCloud ids are 'd<folderid>' / 'f<fileid>'; the API wants the number."""
    return handle[1:] if handle[:1] in ("d", "f") else handle


def _node_from_metadata(meta: dict[str, Any]) -> RemoteNode:
    is_folder = bool(meta.get("isfolder"))
    handle = meta.get("id") or (
        f"d{meta.get('folderid')}" if is_folder else f"f{meta.get('fileid')}"
    )
    parent = meta.get("parentfolderid")
    return RemoteNode(
        handle=handle,
        name=meta.get("name", ""),
        is_folder=is_folder,
        size=int(meta.get("size", 0) or 0),
        created_at=_parse_time(meta.get("created")),
        parent=f"d{parent}" if parent is not None else None,
    )


class PCloudSession(DriveSession):
    """pCloud JSON API session authenticated with account e-mail and password."""

    def __init__(self, http: httpx.AsyncClient, auth: str):
        self._http = http
        self._auth = auth

    @classmethod
    async def login(cls, config: StorageConfig, transport: httpx.AsyncBaseTransport | None = None) -> PCloudSession:
        http = httpx.AsyncClient(base_url=config.api_url, timeout=config.timeout, transport=transport)
        try:
            data = await cls._request(
                http,
                "userinfo",
                {"getauth": 1, "logout": 1, "username": config.account, "password": config.secret},
            )
            auth = _field(data, "auth", "userinfo")
        except BaseException:
            await http.aclose()
            raise
        logger.debug("drive_session_opened", api_url=config.api_url)
        return cls(http, auth)

    @staticmethod
    async def _request(
        http: httpx.AsyncClient,
        method: str,
        params: dict[str, Any],
        files: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            if files is not None:
                response = await http.post(f"/{method}", params=params, files=files)
            else:
                response = await http.get(f"/{method}", params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise RemoteStoreFailure(f"{method}: {e}") from e
        except ValueError as e:
            raise RemoteStoreFailure(f"{method}: invalid JSON response") from e

        if not isinstance(data, dict):
            raise RemoteStoreFailure(f"{method}: unexpected response body")
        result = data.get("result", 0)
        if result != 0:
            message = f"{method}: {result} {data.get('error', '')}".strip()
            if result in _MISSING_CODES:
                raise RemoteNodeMissing(message)
            raise RemoteStoreFailure(message)
        return data

    async def _call(self, method: str, files: dict[str, Any] | None = None, **params: Any) -> dict[str, Any]:
        params["auth"] = self._auth
        return await self._request(self._http, method, params, files=files)

    async def root(self) -> RemoteNode:
        data = await self._call("listfolder", folderid=0, nofiles=1)
        return _node_from_metadata(_field(data, "metadata", "listfolder"))

    async def children(self, folder: RemoteNode) -> Optional[list[RemoteNode]]:
        data = await self._call("listfolder", folderid=_numeric_id(folder.handle))
        contents = data.get("metadata", {}).get("contents")
        if contents is None:
            return None
        return [_node_from_metadata(item) for item in contents]

    async def mkdir(self, parent: RemoteNode, name: str) -> RemoteNode:
        data = await self._call("createfolderifnotexists", folderid=_numeric_id(parent.handle), name=name)
        return _node_from_metadata(_field(data, "metadata", "createfolderifnotexists"))

    async def upload(self, folder: RemoteNode, name: str, data: bytes) -> RemoteNode:
        result = await self._call(
            "uploadfile",
            files={"file": (name, data, "application/json")},
            folderid=_numeric_id(folder.handle),
            filename=name,
            nopartial=1,
        )
        uploaded = result.get("metadata") or []
        if not uploaded:
            raise RemoteStoreFailure(f"uploadfile: no file returned for {name}")
        return _node_from_metadata(uploaded[0])

    async def stat(self, handle: str) -> RemoteNode:
        data = await self._call("stat", fileid=_numeric_id(handle))
        return _node_from_metadata(_field(data, "metadata", "stat"))

    async def download(self, handle: str) -> bytes:
        data = await self._call("getfilelink", fileid=_numeric_id(handle))
        hosts = data.get("hosts") or []
        if not hosts:
            raise RemoteStoreFailure(f"getfilelink: no download host for {handle}")
        path = _field(data, "path", "getfilelink")
        try:
            response = await self._http.get(f"https://{hosts[0]}{path}")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise RemoteStoreFailure(f"download {handle}: {e}") from e
        return response.content

    async def delete(self, handle: str) -> None:
        await self._call("deletefile", fileid=_numeric_id(handle))

    async def export_link(self, handle: str) -> str:
        data = await self._call("getfilepublink", fileid=_numeric_id(handle))
        return _field(data, "link", "getfilepublink")

    async def close(self) -> None:
        try:
            await self._call("logout")
        except RemoteStoreError as e:
            logger.debug("drive_logout_failed", error=str(e))
        finally:
            await self._http.aclose()
