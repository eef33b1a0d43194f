"""Data models for the conversation storage layer.

Conversations are serialized to the drive as camelCase JSON; the Python side
uses snake_case attributes. Remote-layer results are plain dataclasses.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tutor_chat.core.types import PersistenceStatus, Role, WriteStrategy

DEFAULT_TITLE = "New Conversation"
TITLE_MAX_CHARS = 50
RECORD_VERSION = "1.0"
RECORD_SOURCE = "cloud-drive-storage"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def derive_title(content: str) -> str:
    """First 50 characters of *content*, with an ellipsis when truncated."""
    title = content[:TITLE_MAX_CHARS].strip()
    if len(content) > TITLE_MAX_CHARS:
        title += "..."
    return title


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Message(_Record):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=new_id)
    role: Role
    content: str
    tokens: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=utcnow)


class RecordMetadata(_Record):
    version: str = RECORD_VERSION
    source: str = RECORD_SOURCE


class Conversation(_Record):
    id: str = Field(default_factory=new_id)
    user_id: str
    model_id: str
    title: str = DEFAULT_TITLE
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_message_at: Optional[datetime] = None
    total_tokens: int = 0
    is_active: bool = True
    public_url: Optional[str] = None
    remote_handle: Optional[str] = None
    folder_path: Optional[str] = None
    metadata: RecordMetadata = Field(default_factory=RecordMetadata)

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready dict in the drive file format."""
        return self.model_dump(mode="json", by_alias=True)

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True, indent=2).encode("utf-8")

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Conversation:
        return cls.model_validate(data)

    def summary(self) -> ConversationSummary:
        return ConversationSummary(
            id=self.id,
            title=self.title,
            model_id=self.model_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
            last_message_at=self.last_message_at,
            message_count=len(self.messages),
            total_tokens=self.total_tokens,
            is_active=self.is_active,
        )


class ConversationSummary(_Record):
    """List-view projection of a conversation (no message bodies)."""

    id: str
    title: str
    model_id: str
    created_at: datetime
    updated_at: datetime
    last_message_at: Optional[datetime] = None
    message_count: int = 0
    total_tokens: int = 0
    is_active: bool = True


@dataclass
class CreateResult:
    conversation: Conversation
    degraded: bool = False


@dataclass
class BackupEntry:
    handle: str
    name: str
    size: int
    created_at: Optional[datetime]


# Remote layer results


@dataclass
class RemoteNode:
    """A file or folder as reported by the drive."""

    handle: str
    name: str
    is_folder: bool
    size: int = 0
    created_at: Optional[datetime] = None
    parent: Optional[str] = None


@dataclass
class RemoteEntry:
    handle: str
    name: str
    is_folder: bool
    size: int = 0
    created_at: Optional[datetime] = None


@dataclass
class FolderResult:
    """Outcome of provisioning a folder path; ``folder`` is None on failure."""

    path: str
    folder: Optional[RemoteNode] = None
    created: list[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.folder is not None


@dataclass
class WriteOutcome:
    """Result of a multi-tier remote write.

    ``strategy`` names the tier that succeeded; ``attempts`` lists the tiers
    that failed before it, with their error text.
    """

    success: bool
    strategy: Optional[WriteStrategy] = None
    handle: Optional[str] = None
    public_url: Optional[str] = None
    folder_path: Optional[str] = None
    attempts: list[tuple[WriteStrategy, str]] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str, attempts: list[tuple[WriteStrategy, str]] | None = None) -> WriteOutcome:
        return cls(success=False, error=error, attempts=list(attempts or []))


@dataclass
class CacheEntry:
    conversation: Conversation
    status: PersistenceStatus = PersistenceStatus.UNPERSISTED
    last_error: Optional[str] = None
