"""Shared fixtures: an in-memory cloud drive with switchable failure modes."""

from __future__ import annotations

import asyncio
import itertools
import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from tutor_chat.config import ModelConfig, ProviderConfig, StorageConfig
from tutor_chat.core.model_registry import ModelRegistry
from tutor_chat.errors import RemoteNodeMissing, RemoteStoreFailure
from tutor_chat.storage.conversation_repo import ConversationRepository
from tutor_chat.storage.drive import DriveSession
from tutor_chat.storage.models import RemoteNode
from tutor_chat.storage.object_store import ObjectStoreClient

ROOT = "d0"
_EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeDrive:
    """Drive state shared by every session opened against it."""

    def __init__(self) -> None:
        self.nodes: dict[str, RemoteNode] = {ROOT: RemoteNode(handle=ROOT, name="/", is_folder=True)}
        self.data: dict[str, bytes] = {}
        self._ids = itertools.count(1)
        self._pending: dict[str, int] = {}

        self.fail_all = False
        self.fail_folder_uploads = False
        self.fail_links = False
        self.fail_listing: set[str] = set()
        self.hang = False
        self.lag_polls = 0

        self.opened = 0
        self.closed = 0

    async def open(self, config: StorageConfig) -> FakeDriveSession:
        if self.fail_all:
            raise RemoteStoreFailure("userinfo: 2000 Log in failed.")
        self.opened += 1
        return FakeDriveSession(self)

    # helpers used by tests

    def _new_node(self, parent: str, name: str, is_folder: bool, size: int = 0) -> RemoteNode:
        number = next(self._ids)
        node = RemoteNode(
            handle=f"{'d' if is_folder else 'f'}{number}",
            name=name,
            is_folder=is_folder,
            size=size,
            created_at=_EPOCH + timedelta(seconds=number),
            parent=parent,
        )
        self.nodes[node.handle] = node
        return node

    def children_of(self, handle: str) -> list[RemoteNode]:
        return [n for n in self.nodes.values() if n.parent == handle]

    def lookup(self, path: str) -> Optional[RemoteNode]:
        """Node at a slash-separated path such as ``users/u1/userdata_files``."""
        node = self.nodes[ROOT]
        for part in [p for p in path.split("/") if p]:
            node = next((c for c in self.children_of(node.handle) if c.name == part), None)
            if node is None:
                return None
        return node

    def files(self) -> list[RemoteNode]:
        return [n for n in self.nodes.values() if not n.is_folder]

    def read_json(self, handle: str) -> dict:
        return json.loads(self.data[handle])

    def put_file(self, path: str, name: str, content: bytes) -> RemoteNode:
        folder = self.lookup(path)
        assert folder is not None, path
        node = self._new_node(folder.handle, name, False, size=len(content))
        self.data[node.handle] = content
        return node


class FakeDriveSession(DriveSession):
    def __init__(self, drive: FakeDrive):
        self._drive = drive

    async def _check(self) -> None:
        if self._drive.hang:
            await asyncio.sleep(3600)
        if self._drive.fail_all:
            raise RemoteStoreFailure("connection reset")

    def _file(self, handle: str) -> RemoteNode:
        node = self._drive.nodes.get(handle)
        if node is None or node.is_folder:
            raise RemoteNodeMissing(f"{handle}: 2009 File not found.")
        return node

    async def root(self) -> RemoteNode:
        await self._check()
        return self._drive.nodes[ROOT]

    async def children(self, folder: RemoteNode) -> Optional[list[RemoteNode]]:
        await self._check()
        if folder.handle not in self._drive.nodes:
            raise RemoteNodeMissing(f"{folder.handle}: 2005 Directory does not exist.")
        if folder.name in self._drive.fail_listing:
            raise RemoteStoreFailure(f"listfolder: 5000 Internal error listing {folder.name}.")
        if self._drive._pending.get(folder.handle, 0) > 0:
            self._drive._pending[folder.handle] -= 1
            return None
        return self._drive.children_of(folder.handle)

    async def mkdir(self, parent: RemoteNode, name: str) -> RemoteNode:
        await self._check()
        node = self._drive._new_node(parent.handle, name, True)
        self._drive._pending[node.handle] = self._drive.lag_polls
        return node

    async def upload(self, folder: RemoteNode, name: str, data: bytes) -> RemoteNode:
        await self._check()
        if self._drive.fail_folder_uploads and folder.handle != ROOT:
            raise RemoteStoreFailure("uploadfile: 5000 Internal error.")
        node = self._drive._new_node(folder.handle, name, False, size=len(data))
        self._drive.data[node.handle] = data
        return node

    async def stat(self, handle: str) -> RemoteNode:
        await self._check()
        return self._file(handle)

    async def download(self, handle: str) -> bytes:
        await self._check()
        self._file(handle)
        return self._drive.data[handle]

    async def delete(self, handle: str) -> None:
        await self._check()
        self._file(handle)
        del self._drive.nodes[handle]
        self._drive.data.pop(handle, None)

    async def export_link(self, handle: str) -> str:
        await self._check()
        self._file(handle)
        if self._drive.fail_links:
            raise RemoteStoreFailure("getfilepublink: 7005 Too many public links.")
        return f"https://u.pcloud.link/publink/show?code={handle}"

    async def close(self) -> None:
        self._drive.closed += 1


@pytest.fixture
def storage_config() -> StorageConfig:
    return StorageConfig(
        account="tutor@school.test",
        secret="correct-horse-battery",
        timeout=2.0,
        folder_ready_timeout=0.3,
        poll_interval=0.01,
    )


@pytest.fixture
def drive() -> FakeDrive:
    return FakeDrive()


@pytest.fixture
def store(storage_config, drive) -> ObjectStoreClient:
    return ObjectStoreClient(storage_config, session_factory=drive.open)


@pytest.fixture
def repo(store) -> ConversationRepository:
    return ConversationRepository(store)


@pytest.fixture
def model_configs() -> list[ModelConfig]:
    return [
        ModelConfig(
            id="gpt-mini",
            display_name="GPT mini",
            provider="openrouter",
            model_id="openai/gpt-4o-mini",
            is_default=True,
        ),
        ModelConfig(
            id="claude",
            display_name="Claude",
            provider="anthropic",
            model_id="claude-3-5-haiku-latest",
            system_prompt="",
        ),
        ModelConfig(
            id="local",
            display_name="Local Llama",
            provider="custom",
            model_id="llama3.1",
        ),
        ModelConfig(
            id="gemini-off",
            display_name="Gemini (disabled)",
            provider="gemini",
            model_id="gemini-1.5-flash",
            enabled=False,
        ),
        ModelConfig(
            id="deepseek-nokey",
            display_name="DeepSeek",
            provider="deepseek",
            model_id="deepseek-chat",
        ),
    ]


@pytest.fixture
def providers() -> dict[str, ProviderConfig]:
    return {
        "openrouter": ProviderConfig(api_key="sk-or-test-1"),
        "anthropic": ProviderConfig(api_key="sk-ant-test-1"),
        "custom": ProviderConfig(api_key="local-key", base_url="http://localhost:11434/v1"),
        "gemini": ProviderConfig(api_key="gm-test-1"),
        "deepseek": ProviderConfig(api_key="${DEEPSEEK_API_KEY}"),
    }


@pytest.fixture
def registry(model_configs, providers) -> ModelRegistry:
    return ModelRegistry(model_configs, providers=providers, fallback_providers=["custom"])
