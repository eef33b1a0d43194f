"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Provider(StrEnum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OPENROUTER = "openrouter"
    DEEPSEEK = "deepseek"
    GEMINI = "gemini"
    CUSTOM = "custom"


class PersistenceStatus(StrEnum):
    UNPERSISTED = "unpersisted"
    PERSISTED_REMOTE = "persisted_remote"
    CACHE_ONLY_DEGRADED = "cache_only_degraded"


class WriteStrategy(StrEnum):
    """Remote write tiers, listed in the order they are attempted."""

    REPLACE_BY_HANDLE = "replace_by_handle"
    REPLACE_BY_NAME = "replace_by_name"
    CONVERSATION_FOLDER = "conversation_folder"
    NEW_UPLOAD = "new_upload"
    ROOT_FALLBACK = "root_fallback"
