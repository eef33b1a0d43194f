"""Tests for ObjectStoreClient against the in-memory drive."""

import json

import pytest

from tutor_chat.config import StorageConfig
from tutor_chat.core.types import WriteStrategy
from tutor_chat.errors import ConfigurationError, DecodeError, NotFoundError
from tutor_chat.storage.object_store import ObjectStoreClient, root_fallback_name

SEGMENTS = ["users", "u1", "userdata_files", "c1"]
NAME = "conversation_data.json"
PAYLOAD = json.dumps({"id": "c1", "messages": []}).encode()


class TestConfiguration:
    """Credential detection and unconfigured behaviour"""

    def test_configured_with_real_credentials(self, store):
        assert store.configured is True

    @pytest.mark.parametrize(
        "account,secret",
        [
            ("", "pw"),
            ("tutor@school.test", ""),
            ("${DRIVE_ACCOUNT}", "pw"),
            ("you@example.com", "pw"),
            ("tutor@school.test", "your_password_here"),
        ],
    )
    def test_placeholder_credentials_not_configured(self, drive, account, secret):
        client = ObjectStoreClient(StorageConfig(account=account, secret=secret), session_factory=drive.open)
        assert client.configured is False

    async def test_connect_raises_when_unconfigured(self, drive):
        client = ObjectStoreClient(StorageConfig(), session_factory=drive.open)
        with pytest.raises(ConfigurationError):
            async with client.connect():
                pass

    async def test_operations_degrade_when_unconfigured(self, drive):
        client = ObjectStoreClient(StorageConfig(), session_factory=drive.open)

        assert await client.list_folder(SEGMENTS) == []
        assert await client.find_object(SEGMENTS, NAME) is None
        assert await client.download_as_structured_data("f1") is None
        assert await client.issue_public_link("f1") is None
        assert await client.delete_object("f1") is False
        assert await client.health_check() is False
        outcome = await client.upload_buffer(SEGMENTS, NAME, PAYLOAD)
        assert outcome.success is False
        assert drive.opened == 0


class TestEnsureFolderPath:
    """Folder provisioning and readiness polling"""

    async def test_creates_missing_segments(self, store, drive):
        result = await store.ensure_folder_path(SEGMENTS)

        assert result.ok
        assert result.path == "users/u1/userdata_files/c1/"
        assert result.created == ["users/", "users/u1/", "users/u1/userdata_files/", "users/u1/userdata_files/c1/"]
        assert drive.lookup("users/u1/userdata_files/c1") is not None

    async def test_existing_segments_are_reused(self, store, drive):
        await store.ensure_folder_path(["users", "u1"])
        result = await store.ensure_folder_path(SEGMENTS)

        assert result.created == ["users/u1/userdata_files/", "users/u1/userdata_files/c1/"]
        assert len([n for n in drive.nodes.values() if n.name == "users"]) == 1

    async def test_polls_until_children_are_ready(self, store, drive):
        drive.lag_polls = 3

        result = await store.ensure_folder_path(SEGMENTS)

        assert result.ok
        assert drive.lookup("users/u1/userdata_files/c1") is not None

    async def test_gives_up_when_folder_never_ready(self, store, drive):
        drive.lag_polls = 10_000

        result = await store.ensure_folder_path(SEGMENTS)

        assert not result.ok
        assert "not ready" in result.error

    async def test_failure_is_reported_not_raised(self, store, drive):
        drive.fail_all = True

        result = await store.ensure_folder_path(SEGMENTS)

        assert result.folder is None
        assert result.error


class TestUploadBuffer:
    """Tiered uploads"""

    async def test_upload_into_conversation_folder(self, store, drive):
        outcome = await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)

        assert outcome.success
        assert outcome.strategy is WriteStrategy.CONVERSATION_FOLDER
        assert outcome.attempts == []
        assert outcome.folder_path == "users/u1/userdata_files/c1/"
        assert outcome.public_url.endswith(outcome.handle)
        node = drive.nodes[outcome.handle]
        assert node.name == NAME
        assert node.parent == drive.lookup("users/u1/userdata_files/c1").handle
        assert drive.read_json(outcome.handle) == {"id": "c1", "messages": []}

    async def test_falls_back_to_root_with_flat_name(self, store, drive):
        drive.fail_folder_uploads = True

        outcome = await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)

        assert outcome.success
        assert outcome.strategy is WriteStrategy.ROOT_FALLBACK
        assert [s for s, _ in outcome.attempts] == [WriteStrategy.CONVERSATION_FOLDER]
        assert outcome.folder_path is None
        node = drive.nodes[outcome.handle]
        assert node.parent == "d0"
        assert node.name == "users__u1__userdata_files__c1__conversation_data.json"

    async def test_root_fallback_used_when_folder_never_ready(self, store, drive):
        drive.lag_polls = 10_000

        outcome = await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)

        assert outcome.strategy is WriteStrategy.ROOT_FALLBACK

    async def test_link_failure_keeps_successful_write(self, store, drive):
        drive.fail_links = True

        outcome = await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)

        assert outcome.success
        assert outcome.public_url is None
        assert outcome.handle in drive.data

    async def test_unreachable_store_returns_failure(self, store, drive):
        drive.fail_all = True

        outcome = await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)

        assert outcome.success is False
        assert outcome.handle is None
        assert "unavailable" in outcome.error


class TestUpdateObject:
    """Replace semantics and their fallback order"""

    async def test_replace_by_handle(self, store, drive):
        first = await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)

        outcome = await store.update_object(first.handle, SEGMENTS, NAME, b'{"v": 2}')

        assert outcome.strategy is WriteStrategy.REPLACE_BY_HANDLE
        assert first.handle not in drive.nodes
        folder = drive.lookup("users/u1/userdata_files/c1")
        assert [n.name for n in drive.children_of(folder.handle)] == [NAME]
        assert drive.read_json(outcome.handle) == {"v": 2}

    async def test_stale_handle_falls_back_to_name(self, store, drive):
        await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)

        outcome = await store.update_object("f999", SEGMENTS, NAME, b'{"v": 2}')

        assert outcome.strategy is WriteStrategy.REPLACE_BY_NAME
        assert [s for s, _ in outcome.attempts] == [WriteStrategy.REPLACE_BY_HANDLE]
        assert len(drive.files()) == 1

    async def test_nothing_to_replace_uploads_new(self, store, drive):
        outcome = await store.update_object("f999", SEGMENTS, NAME, PAYLOAD)

        assert outcome.strategy is WriteStrategy.NEW_UPLOAD
        assert [s for s, _ in outcome.attempts] == [
            WriteStrategy.REPLACE_BY_HANDLE,
            WriteStrategy.REPLACE_BY_NAME,
        ]

    async def test_without_handle_skips_handle_tier(self, store, drive):
        outcome = await store.update_object(None, SEGMENTS, NAME, PAYLOAD)

        assert outcome.strategy is WriteStrategy.NEW_UPLOAD
        assert [s for s, _ in outcome.attempts] == [WriteStrategy.REPLACE_BY_NAME]

    async def test_root_fallback_replaces_previous_root_copy(self, store, drive):
        drive.fail_folder_uploads = True
        first = await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)

        outcome = await store.update_object(first.handle, SEGMENTS, NAME, b'{"v": 2}')

        assert outcome.strategy is WriteStrategy.ROOT_FALLBACK
        root_files = [n for n in drive.files() if n.parent == "d0"]
        assert len(root_files) == 1
        assert root_files[0].name == root_fallback_name(SEGMENTS, NAME)
        assert drive.read_json(root_files[0].handle) == {"v": 2}

    async def test_folder_write_after_root_fallback_leaves_one_copy(self, store, drive):
        first = await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)
        drive.fail_listing = {"userdata_files"}
        fallback = await store.update_object(first.handle, SEGMENTS, NAME, b'{"v": 2}')
        assert fallback.strategy is WriteStrategy.ROOT_FALLBACK
        assert first.handle in drive.nodes
        drive.fail_listing = set()

        outcome = await store.update_object(fallback.handle, SEGMENTS, NAME, b'{"v": 3}')

        assert outcome.strategy is WriteStrategy.REPLACE_BY_HANDLE
        assert [n.handle for n in drive.files()] == [outcome.handle]
        assert drive.nodes[outcome.handle].parent == drive.lookup("users/u1/userdata_files/c1").handle
        assert drive.read_json(outcome.handle) == {"v": 3}

    async def test_replace_by_name_removes_root_copy(self, store, drive):
        await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)
        drive.put_file("", root_fallback_name(SEGMENTS, NAME), b'{"v": 0}')

        outcome = await store.update_object(None, SEGMENTS, NAME, b'{"v": 2}')

        assert outcome.strategy is WriteStrategy.REPLACE_BY_NAME
        assert [n.handle for n in drive.files()] == [outcome.handle]


class TestDownload:
    """download_as_structured_data outcomes"""

    async def test_returns_parsed_object(self, store, drive):
        written = await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)

        assert await store.download_as_structured_data(written.handle) == {"id": "c1", "messages": []}

    async def test_missing_handle_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            await store.download_as_structured_data("f404")

    @pytest.mark.parametrize("content", [b"not json", b"[1, 2, 3]", b"\xff\xfe"])
    async def test_undecodable_content_raises(self, store, drive, content):
        await store.ensure_folder_path(["users"])
        node = drive.put_file("users", "broken.json", content)

        with pytest.raises(DecodeError):
            await store.download_as_structured_data(node.handle)

    async def test_transport_failure_returns_none(self, store, drive):
        written = await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)
        drive.fail_all = True

        assert await store.download_as_structured_data(written.handle) is None


class TestListAndFind:
    """Folder listing and object lookup"""

    async def test_list_folder_entries(self, store):
        written = await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)

        entries = await store.list_folder(SEGMENTS)

        assert len(entries) == 1
        assert entries[0].handle == written.handle
        assert entries[0].name == NAME
        assert entries[0].is_folder is False
        assert entries[0].size == len(PAYLOAD)
        assert entries[0].created_at is not None

    async def test_missing_path_lists_empty(self, store, drive):
        assert await store.list_folder(["users", "nobody"]) == []
        assert drive.lookup("users") is None

    async def test_unreachable_store_lists_empty(self, store, drive):
        await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)
        drive.fail_all = True

        assert await store.list_folder(SEGMENTS) == []

    async def test_find_object(self, store):
        written = await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)

        assert await store.find_object(SEGMENTS, NAME) == written.handle
        assert await store.find_object(SEGMENTS, "other.json") is None
        assert await store.find_object(["users", "u2"], NAME) is None


class TestDeleteLinkHealth:
    """Single-object operations"""

    async def test_delete_is_idempotent(self, store, drive):
        written = await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)

        assert await store.delete_object(written.handle) is True
        assert await store.delete_object(written.handle) is True
        assert written.handle not in drive.nodes

    async def test_delete_transport_failure(self, store, drive):
        written = await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)
        drive.fail_all = True

        assert await store.delete_object(written.handle) is False

    async def test_issue_public_link(self, store, drive):
        written = await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)

        assert await store.issue_public_link(written.handle) == written.public_url
        drive.fail_links = True
        assert await store.issue_public_link(written.handle) is None

    async def test_health_check(self, store, drive):
        assert await store.health_check() is True
        drive.fail_all = True
        assert await store.health_check() is False

    async def test_hanging_store_times_out(self, drive):
        client = ObjectStoreClient(
            StorageConfig(account="tutor@school.test", secret="pw-123", timeout=0.05),
            session_factory=drive.open,
        )
        drive.hang = True

        assert await client.health_check() is False
        assert await client.list_folder(SEGMENTS) == []

    async def test_every_session_is_closed(self, store, drive):
        written = await store.upload_buffer(SEGMENTS, NAME, PAYLOAD)
        await store.list_folder(SEGMENTS)
        await store.download_as_structured_data(written.handle)
        await store.delete_object(written.handle)
        await store.delete_object(written.handle)

        assert drive.opened == 5
        assert drive.closed == 5
