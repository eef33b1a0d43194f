"""Convert stored conversation messages to the provider-neutral prompt format."""

from __future__ import annotations

from typing import Any

from tutor_chat.core.types import Role
from tutor_chat.storage.models import Message


def build_messages(history: list[Message], system_prompt: str = "", window: int = 20) -> list[dict[str, Any]]:
    """Build the prompt for one chat turn.

    The system prompt (when non-blank) comes first, followed by the last
    *window* messages of *history* in chronological order. System messages
    stored in the history are dropped; only the model's prompt applies.
    """
    messages: list[dict[str, Any]] = []
    if system_prompt and system_prompt.strip():
        messages.append({"role": Role.SYSTEM, "content": system_prompt})

    dialogue = [m for m in history if m.role is not Role.SYSTEM]
    for message in dialogue[-window:]:
        messages.append({"role": message.role, "content": message.content})
    return messages
