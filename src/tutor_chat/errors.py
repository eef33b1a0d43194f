"""Exception hierarchy shared by storage, model registry and chat layers."""

from __future__ import annotations

from enum import StrEnum


class TutorChatError(Exception):
    """Base exception for tutor-chat."""


class ConfigurationError(TutorChatError):
    """A feature is not configured (missing or placeholder credentials)."""


class ValidationError(TutorChatError):
    """Caller supplied an invalid value."""


class NotFoundError(TutorChatError):
    """Conversation or remote object does not exist."""


class AccessDeniedError(TutorChatError):
    """Caller does not own the requested conversation."""


class DecodeError(TutorChatError):
    """Remote object content could not be parsed as a conversation record."""


# Remote store errors. Raised by the drive protocol layer and converted to
# failure results by ObjectStoreClient; they never reach the repository.


class RemoteStoreError(TutorChatError):
    """Base class for remote drive failures."""


class RemoteStoreTimeout(RemoteStoreError):
    """Remote operation did not finish within its timeout."""


class RemoteStoreFailure(RemoteStoreError):
    """Remote API rejected the request or the transport failed."""


class RemoteNodeMissing(RemoteStoreError):
    """Referenced file or folder handle does not exist remotely."""


# Model / LLM errors


class ModelNotFoundError(TutorChatError):
    """No model configuration with the requested id."""


class ModelInactiveError(TutorChatError):
    """Model exists but is disabled or its provider key is not configured."""


class LLMErrorKind(StrEnum):
    QUOTA_EXCEEDED = "quota_exceeded"
    AUTH_FAILED = "auth_failed"
    MODEL_UNAVAILABLE = "model_unavailable"
    CONNECTION_FAILED = "connection_failed"
    DATA_POLICY = "data_policy"
    UNKNOWN = "unknown"


_USER_MESSAGES: dict[LLMErrorKind, str] = {
    LLMErrorKind.QUOTA_EXCEEDED: "API quota exceeded. Please check your API credits or try a different model.",
    LLMErrorKind.AUTH_FAILED: "API authentication failed. Please check your API key configuration.",
    LLMErrorKind.MODEL_UNAVAILABLE: "The selected model is not available. Please try a different model.",
    LLMErrorKind.CONNECTION_FAILED: "Unable to connect to the AI service. Please try again later.",
    LLMErrorKind.DATA_POLICY: (
        "Model requires data policy configuration. Please check your provider "
        "privacy settings or try a different model."
    ),
}


class LLMProviderError(TutorChatError):
    """An LLM chat-completion call failed, classified by cause."""

    def __init__(self, kind: LLMErrorKind, detail: str = "", provider: str = ""):
        self.kind = kind
        self.detail = detail
        self.provider = provider
        super().__init__(self.user_message)

    @property
    def user_message(self) -> str:
        if self.kind in _USER_MESSAGES:
            return _USER_MESSAGES[self.kind]
        return f"API Error: {self.detail}" if self.detail else "LLM API call failed"
