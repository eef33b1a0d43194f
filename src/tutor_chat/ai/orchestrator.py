"""Chat orchestrator: one user turn from stored history to persisted reply."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from tutor_chat.ai.client import LLMClient, LLMResponse
from tutor_chat.ai.conversation import build_messages
from tutor_chat.config import ModelConfig
from tutor_chat.core.model_registry import ModelRegistry
from tutor_chat.core.types import Role
from tutor_chat.errors import LLMProviderError, ModelNotFoundError, ValidationError
from tutor_chat.log import get_logger
from tutor_chat.storage.conversation_repo import ConversationRepository
from tutor_chat.storage.models import Conversation, CreateResult

logger = get_logger(__name__)


@dataclass
class ChatTurnResult:
    conversation: Conversation
    response: str
    tokens: int
    model_id: str
    fallback_used: bool = False


class ChatOrchestrator:
    """Runs chat turns against the repository, the model registry and the LLM client."""

    def __init__(
        self,
        repository: ConversationRepository,
        registry: ModelRegistry,
        llm: LLMClient,
        history_window: int = 20,
    ):
        self._repo = repository
        self._registry = registry
        self._llm = llm
        self._history_window = history_window

    @property
    def repository(self) -> ConversationRepository:
        return self._repo

    @property
    def registry(self) -> ModelRegistry:
        return self._registry

    def available_models(self) -> list[dict[str, Any]]:
        return [self._registry.to_public(m) for m in self._registry.available()]

    def _default_model(self) -> ModelConfig:
        model = self._registry.default()
        if model is None:
            raise ModelNotFoundError("No active LLM models available. Please contact administrator.")
        return model

    def _resolve_model(self, requested: Optional[str], stored: Optional[str]) -> ModelConfig:
        if requested:
            return self._registry.validate(requested)
        if stored:
            return self._registry.validate(stored)
        return self._default_model()

    async def create_conversation(
        self, user_id: str, model_id: Optional[str] = None, title: Optional[str] = None
    ) -> CreateResult:
        model = self._registry.validate(model_id) if model_id else self._default_model()
        return await self._repo.create(user_id, model.id, title)

    async def _complete(self, model: ModelConfig, prompt: list[dict[str, Any]]) -> tuple[ModelConfig, LLMResponse, bool]:
        """Call *model*, retrying once on a fallback model; re-raises the first error if both fail."""
        try:
            return model, await self._llm.chat(model, prompt), False
        except LLMProviderError as e:
            fallback = self._registry.pick_fallback(model.id)
            if fallback is None:
                logger.warning("llm_no_fallback", model_id=model.id, kind=str(e.kind))
                raise
            logger.info("llm_fallback_attempt", model_id=model.id, fallback_id=fallback.id, kind=str(e.kind))
            try:
                response = await self._llm.chat(fallback, prompt)
            except LLMProviderError as fallback_error:
                logger.error(
                    "llm_fallback_failed",
                    model_id=model.id,
                    fallback_id=fallback.id,
                    kind=str(fallback_error.kind),
                )
                raise e from fallback_error
            return fallback, response, True

    async def send_message(
        self, conversation_id: str, user_id: str, text: str, model_id: Optional[str] = None
    ) -> ChatTurnResult:
        """Append the user's message, ask the model and persist its reply."""
        if not text or not text.strip():
            raise ValidationError("Message content is required")

        conversation = await self._repo.get(conversation_id, user_id)
        model = self._resolve_model(model_id, conversation.model_id)

        conversation = await self._repo.add_message(
            conversation_id, Role.USER, text.strip(), persist=False, user_id=user_id
        )
        prompt = build_messages(conversation.messages, model.system_prompt, self._history_window)

        used, response, fallback_used = await self._complete(model, prompt)

        if used.id != conversation.model_id:
            await self._repo.switch_model(conversation_id, user_id, used.id)
        conversation = await self._repo.add_message(
            conversation_id,
            Role.ASSISTANT,
            response.text,
            tokens=response.tokens,
            persist=True,
            user_id=user_id,
        )
        self._registry.record_usage(used.id)
        logger.info(
            "chat_turn_completed",
            conversation_id=conversation_id,
            model_id=used.id,
            tokens=response.tokens,
            fallback_used=fallback_used,
        )
        return ChatTurnResult(
            conversation=conversation,
            response=response.text,
            tokens=response.tokens,
            model_id=used.id,
            fallback_used=fallback_used,
        )
