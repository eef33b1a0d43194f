"""Application wiring - builds all components and manages their lifecycle."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from tutor_chat.ai.client import LLMClient
from tutor_chat.ai.orchestrator import ChatOrchestrator
from tutor_chat.api.errors import register_error_handlers
from tutor_chat.api.routes import health_router, router
from tutor_chat.config import AppConfig
from tutor_chat.core.model_registry import ModelRegistry
from tutor_chat.log import clear_request, get_logger
from tutor_chat.storage.conversation_repo import ConversationRepository
from tutor_chat.storage.object_store import ObjectStoreClient, SessionFactory

logger = get_logger(__name__)


class ChatApp:
    """Top-level container for the chat backend's components."""

    def __init__(
        self,
        config: AppConfig,
        session_factory: Optional[SessionFactory] = None,
        llm: Optional[LLMClient] = None,
    ):
        self.config = config
        self.store = ObjectStoreClient(config.storage, session_factory=session_factory)
        self.repository = ConversationRepository(self.store)
        self.registry = ModelRegistry.from_config(config)
        self.llm = llm or LLMClient(self.registry, timeout=config.chat.llm_timeout)
        self.orchestrator = ChatOrchestrator(
            self.repository,
            self.registry,
            self.llm,
            history_window=config.chat.history_window,
        )

    async def start(self) -> None:
        # 1. Remote store: unreachable is not fatal, conversations stay in the cache
        if not self.store.configured:
            logger.warning("remote_store_not_configured")
        elif not await self.store.health_check():
            logger.warning("remote_store_unreachable")

        # 2. Models
        active = self.registry.available()
        if not active:
            logger.warning("no_active_models", configured=len(self.registry.ids()))
        default = self.registry.default()
        logger.info(
            "tutor_chat_started",
            active_models=[m.id for m in active],
            default_model=default.id if default else None,
        )

    async def stop(self) -> None:
        await self.llm.close()
        stats = self.repository.cache_stats()
        if stats["degraded"]:
            logger.warning("stopping_with_unpersisted_conversations", count=stats["degraded"], keys=stats["keys"])
        logger.info("tutor_chat_stopped")


def create_app(config: AppConfig, chat: Optional[ChatApp] = None) -> FastAPI:
    """Build the FastAPI application around a ChatApp."""
    chat = chat or ChatApp(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await chat.start()
        yield
        await chat.stop()

    app = FastAPI(title="tutor-chat", version="0.1.0", lifespan=lifespan)
    app.state.chat = chat

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def _request_context(request: Request, call_next):
        clear_request()
        return await call_next(request)

    register_error_handlers(app)
    app.include_router(router)
    app.include_router(health_router)
    return app
