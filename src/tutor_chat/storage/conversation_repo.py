"""Conversation repository backed by the cloud drive with an in-process cache.

Each conversation lives in ``users/{user_id}/userdata_files/{conversation_id}/``
as a single ``conversation_data.json``. The cache mirrors every conversation
this process has touched and stays authoritative while the drive is
unreachable; its entries record whether the latest state made it to the drive.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import pydantic

from tutor_chat.core.types import PersistenceStatus, Role
from tutor_chat.errors import AccessDeniedError, DecodeError, NotFoundError, ValidationError
from tutor_chat.log import get_logger
from tutor_chat.storage.models import (
    DEFAULT_TITLE,
    BackupEntry,
    CacheEntry,
    Conversation,
    ConversationSummary,
    CreateResult,
    Message,
    derive_title,
    utcnow,
)
from tutor_chat.storage.object_store import ObjectStoreClient, folder_path, root_fallback_name

logger = get_logger(__name__)

CONVERSATION_FILE = "conversation_data.json"


def user_segments(user_id: str) -> list[str]:
    return ["users", user_id, "userdata_files"]


def conversation_segments(user_id: str, conversation_id: str) -> list[str]:
    return [*user_segments(user_id), conversation_id]


class ConversationRepository:
    """CRUD over conversations stored on the drive, cached per process."""

    def __init__(self, store: ObjectStoreClient):
        self._store = store
        self._cache: dict[str, CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def store(self) -> ObjectStoreClient:
        return self._store

    @asynccontextmanager
    async def _locked(self, conversation_id: str) -> AsyncIterator[None]:
        """Serialize work on one conversation.

        A lock lives while someone holds or awaits it, or while the
        conversation is cached, so lookups of unknown ids leave nothing behind.
        """
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._lock_users[conversation_id] = self._lock_users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[conversation_id] -= 1
            if not self._lock_users[conversation_id]:
                del self._lock_users[conversation_id]
                if conversation_id not in self._cache:
                    self._locks.pop(conversation_id, None)

    # -- remote plumbing ----------------------------------------------------

    async def _persist(self, entry: CacheEntry) -> bool:
        """Write the entry's conversation to the drive and update its status."""
        conv = entry.conversation
        segments = conversation_segments(conv.user_id, conv.id)
        data = conv.to_bytes()
        if conv.remote_handle:
            outcome = await self._store.update_object(conv.remote_handle, segments, CONVERSATION_FILE, data)
        else:
            outcome = await self._store.upload_buffer(segments, CONVERSATION_FILE, data)

        if not outcome.success:
            if entry.status is PersistenceStatus.PERSISTED_REMOTE:
                logger.warning("conversation_persist_regressed", conversation_id=conv.id, error=outcome.error)
            entry.status = PersistenceStatus.CACHE_ONLY_DEGRADED
            entry.last_error = outcome.error
            logger.warning("conversation_persist_degraded", conversation_id=conv.id, error=outcome.error)
            return False

        previous_handle = conv.remote_handle
        conv.remote_handle = outcome.handle
        if outcome.folder_path:
            conv.folder_path = outcome.folder_path
        # a link points at one object; a new object needs a new link
        if outcome.public_url or outcome.handle != previous_handle:
            conv.public_url = outcome.public_url
        entry.status = PersistenceStatus.PERSISTED_REMOTE
        entry.last_error = None
        logger.debug(
            "conversation_persisted",
            conversation_id=conv.id,
            strategy=str(outcome.strategy),
            handle=outcome.handle,
        )
        return True

    async def _load_remote(self, conversation_id: str, user_id: str) -> Conversation:
        """Fetch a conversation from its folder or the root fallback object.

        A write that fell back to the root leaves the older folder copy in
        place, so both locations are read and the most recently updated
        record wins. On a tie the root copy wins since it was written last.
        """
        segments = conversation_segments(user_id, conversation_id)
        locations = [
            ([], root_fallback_name(segments, CONVERSATION_FILE)),
            (segments, CONVERSATION_FILE),
        ]
        found: list[Conversation] = []
        invalid: Optional[DecodeError] = None
        for location, name in locations:
            handle = await self._store.find_object(location, name)
            if handle is None:
                continue
            try:
                data = await self._store.download_as_structured_data(handle)
            except NotFoundError:
                continue
            except DecodeError as e:
                invalid = e
                continue
            if data is None:
                continue
            try:
                conv = Conversation.from_wire(data)
            except pydantic.ValidationError as e:
                invalid = DecodeError(f"conversation {conversation_id} has an invalid record: {e}")
                continue
            conv.remote_handle = handle
            conv.folder_path = folder_path(segments) if location else None
            found.append(conv)

        if not found:
            if invalid is not None:
                raise invalid
            raise NotFoundError(f"Conversation {conversation_id} not found")
        newest = found[0]
        for conv in found[1:]:
            if conv.updated_at > newest.updated_at:
                newest = conv
        if len(found) > 1:
            logger.info(
                "conversation_stale_copy_ignored",
                conversation_id=conversation_id,
                handle=newest.remote_handle,
                stale=[c.remote_handle for c in found if c is not newest],
            )
        logger.debug("conversation_loaded_remote", conversation_id=conversation_id, handle=newest.remote_handle)
        return newest

    async def _load(self, conversation_id: str, user_id: Optional[str]) -> CacheEntry:
        entry = self._cache.get(conversation_id)
        if entry is not None:
            return entry
        if user_id is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        conv = await self._load_remote(conversation_id, user_id)
        entry = CacheEntry(conversation=conv, status=PersistenceStatus.PERSISTED_REMOTE)
        self._cache[conversation_id] = entry
        return entry

    @staticmethod
    def _check_owner(conv: Conversation, user_id: str) -> None:
        if conv.user_id != user_id:
            raise AccessDeniedError(f"Access denied to conversation {conv.id}")

    # -- operations ---------------------------------------------------------

    async def create(self, user_id: str, model_id: str, title: Optional[str] = None) -> CreateResult:
        """Create a conversation; a failed upload leaves it cache-only, never fails."""
        if not user_id:
            raise ValidationError("user_id is required")
        conv = Conversation(user_id=user_id, model_id=model_id, title=(title or "").strip() or DEFAULT_TITLE)
        entry = CacheEntry(conversation=conv)
        async with self._locked(conv.id):
            self._cache[conv.id] = entry
            persisted = await self._persist(entry)
        logger.info(
            "conversation_created",
            conversation_id=conv.id,
            user_id=user_id,
            model_id=model_id,
            status=str(entry.status),
        )
        return CreateResult(conversation=conv.model_copy(deep=True), degraded=not persisted)

    async def add_message(
        self,
        conversation_id: str,
        role: Role | str,
        content: str,
        tokens: int = 0,
        persist: bool = True,
        user_id: Optional[str] = None,
    ) -> Conversation:
        """Append a message; the cache is always updated, the drive only if *persist*."""
        try:
            message = Message(role=role, content=content, tokens=tokens)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid message: {e}") from e

        async with self._locked(conversation_id):
            entry = await self._load(conversation_id, user_id)
            conv = entry.conversation
            if user_id is not None:
                self._check_owner(conv, user_id)

            if not conv.messages and message.role is Role.USER and conv.title == DEFAULT_TITLE:
                conv.title = derive_title(content) or DEFAULT_TITLE
            conv.messages.append(message)
            conv.total_tokens += message.tokens
            conv.last_message_at = message.timestamp
            conv.updated_at = message.timestamp

            if persist:
                await self._persist(entry)
            return conv.model_copy(deep=True)

    async def get(self, conversation_id: str, user_id: str) -> Conversation:
        async with self._locked(conversation_id):
            entry = await self._load(conversation_id, user_id)
            self._check_owner(entry.conversation, user_id)
            return entry.conversation.model_copy(deep=True)

    async def switch_model(self, conversation_id: str, user_id: str, model_id: str) -> Conversation:
        """Change the stored model id in the cache; the next persisted write carries it."""
        async with self._locked(conversation_id):
            entry = await self._load(conversation_id, user_id)
            conv = entry.conversation
            self._check_owner(conv, user_id)
            if conv.model_id != model_id:
                logger.info("conversation_model_switched", conversation_id=conv.id, old=conv.model_id, new=model_id)
                conv.model_id = model_id
                conv.updated_at = utcnow()
            return conv.model_copy(deep=True)

    async def _active_for_user(self, user_id: str) -> list[Conversation]:
        """Active conversations of *user_id*, newest first.

        Folders on the drive are merged with cached conversations that never
        made it there; unreachable or unreadable records are skipped.
        """
        found: dict[str, Conversation] = {}
        for remote in await self._store.list_folder(user_segments(user_id)):
            if not remote.is_folder or remote.name in found:
                continue
            entry = self._cache.get(remote.name)
            if entry is not None:
                found[remote.name] = entry.conversation
                continue
            try:
                conv = await self._load_remote(remote.name, user_id)
            except (NotFoundError, DecodeError) as e:
                logger.warning("conversation_list_skip", conversation_id=remote.name, error=str(e))
                continue
            entry = self._cache.setdefault(
                conv.id, CacheEntry(conversation=conv, status=PersistenceStatus.PERSISTED_REMOTE)
            )
            found[conv.id] = entry.conversation

        for cid, entry in self._cache.items():
            if cid not in found and entry.conversation.user_id == user_id:
                found[cid] = entry.conversation

        active = [c for c in found.values() if c.user_id == user_id and c.is_active]
        active.sort(key=lambda c: c.created_at, reverse=True)
        return active

    async def page_for_user(
        self, user_id: str, page: int = 1, page_size: int = 20
    ) -> tuple[list[ConversationSummary], int]:
        """One page of the user's active conversations and how many there are in all."""
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive")
        active = await self._active_for_user(user_id)
        start = (page - 1) * page_size
        return [c.summary() for c in active[start : start + page_size]], len(active)

    async def list_for_user(self, user_id: str, page: int = 1, page_size: int = 20) -> list[ConversationSummary]:
        summaries, _ = await self.page_for_user(user_id, page=page, page_size=page_size)
        return summaries

    async def user_stats(self, user_id: str, recent: int = 5) -> dict:
        """Totals over the user's active conversations plus the most recently used ones."""
        summaries = [c.summary() for c in await self._active_for_user(user_id)]

        by_activity = sorted(summaries, key=lambda s: s.last_message_at or s.created_at, reverse=True)
        return {
            "total_conversations": len(summaries),
            "total_messages": sum(s.message_count for s in summaries),
            "total_tokens": sum(s.total_tokens for s in summaries),
            "recent_conversations": by_activity[:recent],
        }

    async def update_title(self, conversation_id: str, user_id: str, new_title: str) -> Conversation:
        title = (new_title or "").strip()
        if not title:
            raise ValidationError("Title must not be empty")
        async with self._locked(conversation_id):
            entry = await self._load(conversation_id, user_id)
            conv = entry.conversation
            self._check_owner(conv, user_id)
            conv.title = title
            conv.updated_at = utcnow()
            await self._persist(entry)
            return conv.model_copy(deep=True)

    async def deactivate(self, conversation_id: str, user_id: str) -> Conversation:
        """Soft-delete: the record stays on the drive but drops out of listings."""
        async with self._locked(conversation_id):
            entry = await self._load(conversation_id, user_id)
            conv = entry.conversation
            self._check_owner(conv, user_id)
            conv.is_active = False
            conv.updated_at = utcnow()
            await self._persist(entry)
            logger.info("conversation_deactivated", conversation_id=conversation_id, user_id=user_id)
            return conv.model_copy(deep=True)

    async def get_public_url(self, conversation_id: str, user_id: str) -> Optional[str]:
        async with self._locked(conversation_id):
            entry = await self._load(conversation_id, user_id)
            conv = entry.conversation
            self._check_owner(conv, user_id)
            if conv.public_url:
                return conv.public_url
            if not conv.remote_handle:
                return None
            url = await self._store.issue_public_link(conv.remote_handle)
            if url is None:
                return None
            conv.public_url = url
            await self._persist(entry)
            return conv.public_url

    async def list_backups(self, conversation_id: str, user_id: str) -> list[BackupEntry]:
        """JSON objects stored in the conversation's folder, newest first."""
        async with self._locked(conversation_id):
            entry = await self._load(conversation_id, user_id)
            self._check_owner(entry.conversation, user_id)

        entries = await self._store.list_folder(conversation_segments(user_id, conversation_id))
        backups = [
            BackupEntry(handle=e.handle, name=e.name, size=e.size, created_at=e.created_at)
            for e in entries
            if not e.is_folder and e.name.endswith(".json")
        ]
        backups.sort(key=lambda b: b.created_at.timestamp() if b.created_at else 0.0, reverse=True)
        return backups

    # -- cache management ---------------------------------------------------

    def persistence_status(self, conversation_id: str) -> Optional[PersistenceStatus]:
        entry = self._cache.get(conversation_id)
        return entry.status if entry else None

    def cache_stats(self) -> dict:
        return {
            "cached_conversations": len(self._cache),
            "degraded": sum(
                1 for e in self._cache.values() if e.status is PersistenceStatus.CACHE_ONLY_DEGRADED
            ),
            "keys": list(self._cache),
            "locks": len(self._locks),
        }

    def evict(self, conversation_id: str) -> bool:
        # a held lock is dropped by its last user instead
        if conversation_id not in self._lock_users:
            self._locks.pop(conversation_id, None)
        return self._cache.pop(conversation_id, None) is not None

    def clear_cache(self) -> None:
        self._cache.clear()
        for cid in [cid for cid in self._locks if cid not in self._lock_users]:
            del self._locks[cid]
        logger.info("conversation_cache_cleared")
