"""LLM provider variants: OpenAI-compatible, Anthropic and Gemini wire formats."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import anthropic
import httpx
import openai

from tutor_chat.config import ModelConfig
from tutor_chat.core.model_registry import ModelRegistry
from tutor_chat.core.types import Provider, Role
from tutor_chat.errors import LLMErrorKind, LLMProviderError
from tutor_chat.log import get_logger

logger = get_logger(__name__)

DEFAULT_BASE_URLS: dict[str, str] = {
    Provider.OPENROUTER: "https://openrouter.ai/api/v1",
    Provider.DEEPSEEK: "https://api.deepseek.com/v1",
    Provider.GEMINI: "https://generativelanguage.googleapis.com/v1beta",
}

_STATUS_KINDS: dict[int, LLMErrorKind] = {
    401: LLMErrorKind.AUTH_FAILED,
    403: LLMErrorKind.AUTH_FAILED,
    402: LLMErrorKind.QUOTA_EXCEEDED,
    429: LLMErrorKind.QUOTA_EXCEEDED,
    404: LLMErrorKind.MODEL_UNAVAILABLE,
}


@dataclass
class LLMResponse:
    """Unified response from any provider."""

    text: str
    tokens: int = 0
    raw: Any = None


def classify_message(text: str) -> LLMErrorKind:
    """Map a provider error message to an error kind by its wording."""
    lowered = text.lower()
    if "data policy" in lowered:
        return LLMErrorKind.DATA_POLICY
    if "insufficient credits" in lowered or "quota" in lowered:
        return LLMErrorKind.QUOTA_EXCEEDED
    if "invalid model" in lowered or "not found" in lowered:
        return LLMErrorKind.MODEL_UNAVAILABLE
    if "authentication" in lowered or "unauthorized" in lowered:
        return LLMErrorKind.AUTH_FAILED
    return LLMErrorKind.UNKNOWN


def _body_message(body: Any) -> str:
    """Pull ``error.message`` out of a provider error body, if it has one."""
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return ""


def _classify_status(provider: str, status: int, message: str) -> LLMProviderError:
    kind = classify_message(message)
    if kind is LLMErrorKind.UNKNOWN:
        kind = _STATUS_KINDS.get(status, LLMErrorKind.UNKNOWN)
    return LLMProviderError(kind, detail=message or f"HTTP {status}", provider=provider)


def split_system(messages: list[dict[str, Any]]) -> tuple[Optional[str], list[dict[str, Any]]]:
    """Separate system messages from the dialogue turns."""
    system = [m["content"] for m in messages if m["role"] == Role.SYSTEM]
    turns = [m for m in messages if m["role"] != Role.SYSTEM]
    return ("\n\n".join(system) if system else None), turns


class ProviderStyle(ABC):
    """One provider wire format: how to shape a request and read a response."""

    provider: str = ""

    @abstractmethod
    def build_request(self, model: ModelConfig, messages: list[dict[str, Any]]) -> dict[str, Any]:
        ...

    @abstractmethod
    def parse_response(self, raw: Any) -> LLMResponse:
        ...

    @abstractmethod
    async def _send(self, model: ModelConfig, request: dict[str, Any]) -> Any:
        ...

    @abstractmethod
    def classify(self, exc: Exception) -> LLMProviderError:
        ...

    async def close(self) -> None:
        pass

    async def send(self, model: ModelConfig, messages: list[dict[str, Any]]) -> LLMResponse:
        """Call the provider; every failure surfaces as LLMProviderError."""
        request = self.build_request(model, messages)
        logger.debug("llm_request", provider=self.provider, model=model.model_id, message_count=len(messages))
        try:
            raw = await self._send(model, request)
        except LLMProviderError:
            raise
        except Exception as e:
            error = self.classify(e)
            logger.warning("llm_request_failed", provider=self.provider, model=model.model_id, kind=str(error.kind), detail=error.detail)
            raise error from e

        try:
            response = self.parse_response(raw)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise LLMProviderError(LLMErrorKind.UNKNOWN, detail=f"malformed response: {e}", provider=self.provider) from e
        logger.debug("llm_response", provider=self.provider, model=model.model_id, tokens=response.tokens)
        return response


class OpenAIStyle(ProviderStyle):
    """OpenAI chat-completions format, also spoken by OpenRouter, DeepSeek and custom endpoints."""

    def __init__(self, api_key: str, base_url: Optional[str] = None, timeout: float = 120.0, provider: str = Provider.OPENAI):
        self.provider = provider
        self._client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    def build_request(self, model: ModelConfig, messages: list[dict[str, Any]]) -> dict[str, Any]:
        return {
            "model": model.model_id,
            "messages": [{"role": str(m["role"]), "content": m["content"]} for m in messages],
            "max_tokens": model.max_tokens,
            "temperature": model.temperature,
        }

    async def _send(self, model: ModelConfig, request: dict[str, Any]) -> Any:
        return await self._client.chat.completions.create(**request)

    def parse_response(self, raw: Any) -> LLMResponse:
        text = raw.choices[0].message.content or ""
        tokens = raw.usage.completion_tokens if raw.usage else 0
        return LLMResponse(text=text, tokens=tokens or 0, raw=raw)

    def classify(self, exc: Exception) -> LLMProviderError:
        if isinstance(exc, openai.APIConnectionError):
            return LLMProviderError(LLMErrorKind.CONNECTION_FAILED, detail=str(exc), provider=self.provider)
        if isinstance(exc, openai.APIStatusError):
            return _classify_status(self.provider, exc.status_code, _body_message(exc.body) or exc.message)
        return LLMProviderError(classify_message(str(exc)), detail=str(exc), provider=self.provider)

    async def close(self) -> None:
        await self._client.close()


class AnthropicStyle(ProviderStyle):
    """Anthropic messages format: system prompt travels outside the message list."""

    provider = Provider.ANTHROPIC

    def __init__(self, api_key: str, base_url: Optional[str] = None, timeout: float = 120.0):
        self._client = anthropic.AsyncAnthropic(api_key=api_key, base_url=base_url, timeout=timeout)

    def build_request(self, model: ModelConfig, messages: list[dict[str, Any]]) -> dict[str, Any]:
        system, turns = split_system(messages)
        request: dict[str, Any] = {
            "model": model.model_id,
            "max_tokens": model.max_tokens,
            "temperature": model.temperature,
            "messages": [{"role": str(m["role"]), "content": m["content"]} for m in turns],
        }
        if system:
            request["system"] = system
        return request

    async def _send(self, model: ModelConfig, request: dict[str, Any]) -> Any:
        return await self._client.messages.create(**request)

    def parse_response(self, raw: Any) -> LLMResponse:
        texts = [block.text for block in raw.content if block.type == "text"]
        return LLMResponse(text=texts[0], tokens=raw.usage.output_tokens or 0, raw=raw)

    def classify(self, exc: Exception) -> LLMProviderError:
        if isinstance(exc, anthropic.APIConnectionError):
            return LLMProviderError(LLMErrorKind.CONNECTION_FAILED, detail=str(exc), provider=self.provider)
        if isinstance(exc, anthropic.APIStatusError):
            return _classify_status(self.provider, exc.status_code, _body_message(exc.body) or exc.message)
        return LLMProviderError(classify_message(str(exc)), detail=str(exc), provider=self.provider)

    async def close(self) -> None:
        await self._client.close()


class GeminiStyle(ProviderStyle):
    """Gemini ``generateContent`` REST format."""

    provider = Provider.GEMINI

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self._http = httpx.AsyncClient(
            base_url=base_url or DEFAULT_BASE_URLS[Provider.GEMINI], timeout=timeout, transport=transport
        )

    def build_request(self, model: ModelConfig, messages: list[dict[str, Any]]) -> dict[str, Any]:
        system, turns = split_system(messages)
        request: dict[str, Any] = {
            "contents": [
                {"role": "model" if m["role"] == Role.ASSISTANT else "user", "parts": [{"text": m["content"]}]}
                for m in turns
            ],
            "generationConfig": {"temperature": model.temperature, "maxOutputTokens": model.max_tokens},
        }
        if system:
            request["systemInstruction"] = {"parts": [{"text": system}]}
        return request

    async def _send(self, model: ModelConfig, request: dict[str, Any]) -> Any:
        response = await self._http.post(
            f"/models/{model.model_id}:generateContent", params={"key": self._api_key}, json=request
        )
        response.raise_for_status()
        return response.json()

    def parse_response(self, raw: Any) -> LLMResponse:
        text = raw["candidates"][0]["content"]["parts"][0]["text"]
        tokens = (raw.get("usageMetadata") or {}).get("candidatesTokenCount", 0)
        return LLMResponse(text=text, tokens=tokens, raw=raw)

    def classify(self, exc: Exception) -> LLMProviderError:
        if isinstance(exc, httpx.TransportError):
            return LLMProviderError(LLMErrorKind.CONNECTION_FAILED, detail=str(exc), provider=self.provider)
        if isinstance(exc, httpx.HTTPStatusError):
            try:
                body = exc.response.json()
            except ValueError:
                body = None
            return _classify_status(self.provider, exc.response.status_code, _body_message(body))
        return LLMProviderError(classify_message(str(exc)), detail=str(exc), provider=self.provider)

    async def close(self) -> None:
        await self._http.aclose()


def create_style(provider: str, api_key: str, base_url: Optional[str] = None, timeout: float = 120.0) -> ProviderStyle:
    """Instantiate the wire-format variant for *provider*."""
    match provider:
        case Provider.ANTHROPIC:
            return AnthropicStyle(api_key, base_url, timeout)
        case Provider.GEMINI:
            return GeminiStyle(api_key, base_url, timeout)
        case Provider.OPENAI | Provider.OPENROUTER | Provider.DEEPSEEK:
            return OpenAIStyle(api_key, base_url or DEFAULT_BASE_URLS.get(provider), timeout, provider=provider)
        case Provider.CUSTOM:
            if not base_url:
                raise ValueError("custom provider requires a base_url")
            return OpenAIStyle(api_key, base_url, timeout, provider=provider)
        case _:
            raise ValueError(f"Unsupported provider: {provider}")


class LLMClient:
    """Sends chat requests for any registered model, reusing one variant per endpoint."""

    def __init__(self, registry: ModelRegistry, timeout: float = 120.0):
        self._registry = registry
        self._timeout = timeout
        self._styles: dict[tuple[str, str, Optional[str]], ProviderStyle] = {}

    def _style_for(self, model: ModelConfig) -> ProviderStyle:
        api_key = self._registry.api_key(model)
        base_url = self._registry.base_url(model)
        key = (model.provider, api_key, base_url)
        if key not in self._styles:
            try:
                self._styles[key] = create_style(model.provider, api_key, base_url, self._timeout)
            except ValueError as e:
                raise LLMProviderError(LLMErrorKind.MODEL_UNAVAILABLE, detail=str(e), provider=model.provider) from e
        return self._styles[key]

    async def chat(self, model: ModelConfig, messages: list[dict[str, Any]]) -> LLMResponse:
        return await self._style_for(model).send(model, messages)

    async def close(self) -> None:
        for style in self._styles.values():
            await style.close()
        self._styles.clear()
