"""Request bodies and response envelope helpers for the HTTP surface."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from tutor_chat.storage.models import BackupEntry


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateConversationRequest(_Body):
    model_id: Optional[str] = None
    title: Optional[str] = None


class SendMessageRequest(_Body):
    message: str
    model_id: Optional[str] = None


class UpdateTitleRequest(_Body):
    title: str


def envelope(data: Any = None, message: Optional[str] = None, success: bool = True, **extra: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"success": success, "data": data}
    if message is not None:
        body["message"] = message
    body.update(extra)
    return body


def backup_to_dict(entry: BackupEntry) -> dict[str, Any]:
    return {
        "handle": entry.handle,
        "name": entry.name,
        "size": entry.size,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }
