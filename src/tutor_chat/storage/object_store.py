"""Remote object-store client over a cloud-drive account.

Every public operation opens its own drive session, runs under the configured
timeout and closes the session again. Transport errors never leave this
module: reads return empty/None results and writes return a ``WriteOutcome``
that records which fallback tier succeeded and which ones failed first.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from tutor_chat.config import StorageConfig, is_configured_secret
from tutor_chat.core.types import WriteStrategy
from tutor_chat.errors import (
    ConfigurationError,
    DecodeError,
    NotFoundError,
    RemoteNodeMissing,
    RemoteStoreError,
    RemoteStoreFailure,
    RemoteStoreTimeout,
)
from tutor_chat.log import get_logger
from tutor_chat.storage.drive import DriveSession, PCloudSession
from tutor_chat.storage.models import FolderResult, RemoteEntry, RemoteNode, WriteOutcome

logger = get_logger(__name__)

T = TypeVar("T")

SessionFactory = Callable[[StorageConfig], Awaitable[DriveSession]]

ROOT_SEPARATOR = "__"


def folder_path(segments: list[str]) -> str:
    return "/".join(segments) + "/" if segments else "/"


def root_fallback_name(segments: list[str], name: str) -> str:
    """Flat object name used when the folder tree cannot be provisioned.

    >>> root_fallback_name(["users", "u1"], "data.json")
    'users__u1__data.json'
    """
    return ROOT_SEPARATOR.join([*segments, name])


class _WriteContext:
    """State shared by the tiers of one write: the session and the target folder.

    The folder is provisioned at most once per write; a provisioning failure
    is remembered so later folder tiers fail fast instead of polling again.
    """

    def __init__(self, client: ObjectStoreClient, session: DriveSession, segments: list[str], name: str, data: bytes):
        self.client = client
        self.session = session
        self.segments = segments
        self.name = name
        self.data = data
        self._folder: Optional[RemoteNode] = None
        self._folder_error: Optional[str] = None

    async def folder(self) -> RemoteNode:
        if self._folder_error is not None:
            raise RemoteStoreFailure(self._folder_error)
        if self._folder is None:
            try:
                self._folder, _ = await self.client._provision(self.session, self.segments)
            except RemoteStoreError as e:
                self._folder_error = f"folder provisioning failed: {e}"
                raise
        return self._folder


WriteTier = Callable[[_WriteContext], Awaitable[RemoteNode]]


class ObjectStoreClient:
    """Primitive file operations against the configured cloud drive."""

    def __init__(self, config: StorageConfig, session_factory: SessionFactory | None = None):
        self._config = config
        self._session_factory = session_factory or PCloudSession.login

    @property
    def configured(self) -> bool:
        return is_configured_secret(self._config.account) and is_configured_secret(self._config.secret)

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[DriveSession]:
        """Open an authenticated drive session for the duration of the block."""
        if not self.configured:
            raise ConfigurationError("remote store credentials are not configured")
        session = await self._session_factory(self._config)
        try:
            yield session
        finally:
            try:
                await session.close()
            except RemoteStoreError as e:
                logger.debug("remote_session_close_failed", error=str(e))

    # -- plumbing -----------------------------------------------------------

    async def _timed(self, op: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._config.timeout)
        except TimeoutError as e:
            raise RemoteStoreTimeout(f"{op} timed out after {self._config.timeout}s") from e

    async def _run(self, op: str, work: Callable[[DriveSession], Awaitable[T]]) -> T:
        """Run *work* inside a fresh session, bounded by the operation timeout."""

        async def _in_session() -> T:
            async with self.connect() as session:
                return await work(session)

        return await self._timed(op, _in_session())

    async def _children(self, session: DriveSession, folder: RemoteNode) -> list[RemoteNode]:
        """List *folder*, polling while the drive has not populated it yet."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.folder_ready_timeout
        while True:
            children = await session.children(folder)
            if children is not None:
                return children
            if loop.time() >= deadline:
                raise RemoteStoreTimeout(
                    f"folder {folder.name!r} not ready after {self._config.folder_ready_timeout}s"
                )
            await asyncio.sleep(self._config.poll_interval)

    async def _provision(self, session: DriveSession, segments: list[str]) -> tuple[RemoteNode, list[str]]:
        folder = await session.root()
        created: list[str] = []
        for depth, segment in enumerate(segments, start=1):
            children = await self._children(session, folder)
            child = next((c for c in children if c.is_folder and c.name == segment), None)
            if child is None:
                child = await session.mkdir(folder, segment)
                created.append(folder_path(segments[:depth]))
                logger.debug("remote_folder_created", path=created[-1])
            folder = child
        return folder, created

    async def _resolve(self, session: DriveSession, segments: list[str]) -> Optional[RemoteNode]:
        """Walk *segments* without creating anything; None if a segment is missing."""
        folder = await session.root()
        for segment in segments:
            children = await self._children(session, folder)
            child = next((c for c in children if c.is_folder and c.name == segment), None)
            if child is None:
                return None
            folder = child
        return folder

    async def _find_file(self, session: DriveSession, folder: RemoteNode, name: str) -> Optional[RemoteNode]:
        children = await self._children(session, folder)
        return next((c for c in children if not c.is_folder and c.name == name), None)

    async def _link(self, session: DriveSession, handle: str) -> Optional[str]:
        try:
            return await self._timed("public_link", session.export_link(handle))
        except RemoteStoreError as e:
            logger.warning("remote_public_link_failed", handle=handle, error=str(e))
            return None

    async def _drop_root_copy(self, session: DriveSession, segments: list[str], name: str) -> None:
        """Remove the flat root object left by an earlier fallback write."""
        flat_name = root_fallback_name(segments, name)

        async def _drop() -> None:
            existing = await self._find_file(session, await session.root(), flat_name)
            if existing is not None:
                await session.delete(existing.handle)
                logger.info("remote_root_copy_removed", name=flat_name, handle=existing.handle)

        try:
            await self._timed("drop_root_copy", _drop())
        except RemoteStoreError as e:
            logger.warning("remote_root_copy_cleanup_failed", name=flat_name, error=str(e))

    # -- folders ------------------------------------------------------------

    async def ensure_folder_path(self, segments: list[str]) -> FolderResult:
        """Make sure every folder in *segments* exists, creating missing ones."""
        path = folder_path(segments)
        try:
            folder, created = await self._run("ensure_folder_path", lambda s: self._provision(s, segments))
        except (ConfigurationError, RemoteStoreError) as e:
            logger.warning("remote_folder_provision_failed", path=path, error=str(e))
            return FolderResult(path=path, error=str(e))
        return FolderResult(path=path, folder=folder, created=created)

    async def list_folder(self, segments: list[str]) -> list[RemoteEntry]:
        """Entries of the folder at *segments*; empty if missing or unreachable."""

        async def _list(session: DriveSession) -> list[RemoteNode]:
            folder = await self._resolve(session, segments)
            if folder is None:
                return []
            return await self._children(session, folder)

        try:
            nodes = await self._run("list_folder", _list)
        except (ConfigurationError, RemoteStoreError) as e:
            logger.warning("remote_list_failed", path=folder_path(segments), error=str(e))
            return []
        return [
            RemoteEntry(handle=n.handle, name=n.name, is_folder=n.is_folder, size=n.size, created_at=n.created_at)
            for n in nodes
        ]

    async def find_object(self, segments: list[str], name: str) -> Optional[str]:
        """Handle of the file *name* inside the folder at *segments*, if any."""

        async def _find(session: DriveSession) -> Optional[str]:
            folder = await self._resolve(session, segments)
            if folder is None:
                return None
            node = await self._find_file(session, folder, name)
            return node.handle if node else None

        try:
            return await self._run("find_object", _find)
        except (ConfigurationError, RemoteStoreError) as e:
            logger.warning("remote_find_failed", path=folder_path(segments), name=name, error=str(e))
            return None

    # -- writes -------------------------------------------------------------

    async def _tier_conversation_folder(self, ctx: _WriteContext) -> RemoteNode:
        return await ctx.session.upload(await ctx.folder(), ctx.name, ctx.data)

    async def _tier_root_fallback(self, ctx: _WriteContext) -> RemoteNode:
        flat_name = root_fallback_name(ctx.segments, ctx.name)
        root = await ctx.session.root()
        existing = await self._find_file(ctx.session, root, flat_name)
        if existing is not None:
            await ctx.session.delete(existing.handle)
        return await ctx.session.upload(root, flat_name, ctx.data)

    async def _tier_replace_by_handle(self, ctx: _WriteContext, handle: str) -> RemoteNode:
        await ctx.session.stat(handle)
        folder = await ctx.folder()
        await ctx.session.delete(handle)
        # the handle may be a root copy written while the folder was unreachable
        stale = await self._find_file(ctx.session, folder, ctx.name)
        if stale is not None:
            await ctx.session.delete(stale.handle)
        return await ctx.session.upload(folder, ctx.name, ctx.data)

    async def _tier_replace_by_name(self, ctx: _WriteContext) -> RemoteNode:
        folder = await ctx.folder()
        existing = await self._find_file(ctx.session, folder, ctx.name)
        if existing is None:
            raise RemoteNodeMissing(f"no object named {ctx.name!r} in {folder_path(ctx.segments)}")
        await ctx.session.delete(existing.handle)
        return await ctx.session.upload(folder, ctx.name, ctx.data)

    async def _write(
        self,
        op: str,
        segments: list[str],
        name: str,
        data: bytes,
        tiers: list[tuple[WriteStrategy, WriteTier]],
        drop_root_copy: bool = False,
    ) -> WriteOutcome:
        path = folder_path(segments)
        attempts: list[tuple[WriteStrategy, str]] = []
        try:
            async with self.connect() as session:
                ctx = _WriteContext(self, session, segments, name, data)
                for strategy, tier in tiers:
                    try:
                        node = await self._timed(f"{op}:{strategy}", tier(ctx))
                    except RemoteStoreError as e:
                        attempts.append((strategy, str(e)))
                        logger.warning("remote_write_tier_failed", op=op, path=path, strategy=str(strategy), error=str(e))
                        continue

                    if drop_root_copy and strategy is not WriteStrategy.ROOT_FALLBACK:
                        await self._drop_root_copy(session, segments, name)
                    public_url = await self._link(session, node.handle)
                    logger.info(
                        "remote_write_succeeded",
                        op=op,
                        path=path,
                        strategy=str(strategy),
                        handle=node.handle,
                        failed_tiers=len(attempts),
                    )
                    return WriteOutcome(
                        success=True,
                        strategy=strategy,
                        handle=node.handle,
                        public_url=public_url,
                        folder_path=None if strategy is WriteStrategy.ROOT_FALLBACK else path,
                        attempts=attempts,
                    )
        except (ConfigurationError, RemoteStoreError) as e:
            logger.warning("remote_write_unavailable", op=op, path=path, error=str(e))
            return WriteOutcome.failed(f"remote store unavailable: {e}", attempts)

        logger.warning("remote_write_failed", op=op, path=path, attempts=[str(s) for s, _ in attempts])
        return WriteOutcome.failed("all write strategies failed", attempts)

    async def upload_buffer(self, segments: list[str], name: str, data: bytes) -> WriteOutcome:
        """Upload a new object into the folder at *segments*, falling back to the root."""
        return await self._write(
            "upload",
            segments,
            name,
            data,
            [
                (WriteStrategy.CONVERSATION_FOLDER, self._tier_conversation_folder),
                (WriteStrategy.ROOT_FALLBACK, self._tier_root_fallback),
            ],
        )

    async def update_object(
        self, existing_handle: Optional[str], segments: list[str], name: str, data: bytes
    ) -> WriteOutcome:
        """Replace a previously written object.

        Tries the known handle first, then whatever object carries *name* in
        the folder, then a plain upload into the folder, then the root.
        """
        tiers: list[tuple[WriteStrategy, WriteTier]] = []
        if existing_handle:
            tiers.append(
                (WriteStrategy.REPLACE_BY_HANDLE, lambda ctx: self._tier_replace_by_handle(ctx, existing_handle))
            )
        tiers += [
            (WriteStrategy.REPLACE_BY_NAME, self._tier_replace_by_name),
            (WriteStrategy.NEW_UPLOAD, self._tier_conversation_folder),
            (WriteStrategy.ROOT_FALLBACK, self._tier_root_fallback),
        ]
        return await self._write("update", segments, name, data, tiers, drop_root_copy=True)

    # -- reads / single-object operations ----------------------------------

    async def download_as_structured_data(self, handle: str) -> Optional[dict[str, Any]]:
        """Download *handle* and parse it as a JSON object.

        Raises NotFoundError when the handle no longer exists and DecodeError
        when the content is not a JSON object. Returns None when the store
        is unreachable or not configured.
        """
        try:
            raw = await self._run("download", lambda s: s.download(handle))
        except RemoteNodeMissing as e:
            raise NotFoundError(f"remote object {handle} not found") from e
        except (ConfigurationError, RemoteStoreError) as e:
            logger.warning("remote_download_failed", handle=handle, error=str(e))
            return None

        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecodeError(f"remote object {handle} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise DecodeError(f"remote object {handle} is not a JSON object")
        return data

    async def issue_public_link(self, handle: str) -> Optional[str]:
        try:
            return await self._run("public_link", lambda s: s.export_link(handle))
        except (ConfigurationError, RemoteStoreError) as e:
            logger.warning("remote_public_link_failed", handle=handle, error=str(e))
            return None

    async def delete_object(self, handle: str) -> bool:
        """Delete *handle*. An object that is already gone counts as deleted."""
        try:
            await self._run("delete", lambda s: s.delete(handle))
        except RemoteNodeMissing:
            logger.debug("remote_delete_already_absent", handle=handle)
            return True
        except (ConfigurationError, RemoteStoreError) as e:
            logger.warning("remote_delete_failed", handle=handle, error=str(e))
            return False
        return True

    async def health_check(self) -> bool:
        try:
            await self._run("health_check", lambda s: s.root())
        except (ConfigurationError, RemoteStoreError) as e:
            logger.warning("remote_health_check_failed", error=str(e))
            return False
        return True
