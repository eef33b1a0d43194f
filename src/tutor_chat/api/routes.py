"""HTTP routes for the chat assistant, mounted under ``/api/llm``."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from tutor_chat.ai.orchestrator import ChatOrchestrator
from tutor_chat.api.schemas import (
    CreateConversationRequest,
    SendMessageRequest,
    UpdateTitleRequest,
    backup_to_dict,
    envelope,
)
from tutor_chat.log import bind_request

router = APIRouter(prefix="/api/llm", tags=["llm"])
health_router = APIRouter(tags=["health"])


async def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity, as forwarded by the authenticating front end."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    user_id = x_user_id.strip()
    bind_request(user_id=user_id)
    return user_id


def get_chat(request: Request) -> ChatOrchestrator:
    return request.app.state.chat.orchestrator


@router.get("/models")
async def list_models(user_id: str = Depends(current_user), chat: ChatOrchestrator = Depends(get_chat)):
    return envelope(chat.available_models())


@router.get("/validate/{model_id}")
async def validate_model(model_id: str, user_id: str = Depends(current_user), chat: ChatOrchestrator = Depends(get_chat)):
    model = chat.registry.validate(model_id)
    return envelope(chat.registry.to_public(model))


@router.post("/conversations", status_code=201)
async def create_conversation(
    body: CreateConversationRequest,
    user_id: str = Depends(current_user),
    chat: ChatOrchestrator = Depends(get_chat),
):
    result = await chat.create_conversation(user_id, body.model_id, body.title)
    return envelope(
        result.conversation.to_wire(),
        message="Conversation created successfully",
        degraded=result.degraded,
    )


@router.get("/conversations")
async def list_conversations(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(current_user),
    chat: ChatOrchestrator = Depends(get_chat),
):
    summaries, total = await chat.repository.page_for_user(user_id, page=page, page_size=limit)
    return envelope(
        [s.model_dump(mode="json", by_alias=True) for s in summaries],
        pagination={"page": page, "limit": limit, "total": total},
    )


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str, user_id: str = Depends(current_user), chat: ChatOrchestrator = Depends(get_chat)
):
    bind_request(conversation_id=conversation_id)
    conversation = await chat.repository.get(conversation_id, user_id)
    return envelope(conversation.to_wire())


@router.post("/conversations/{conversation_id}/messages")
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    user_id: str = Depends(current_user),
    chat: ChatOrchestrator = Depends(get_chat),
):
    bind_request(conversation_id=conversation_id)
    result = await chat.send_message(conversation_id, user_id, body.message, model_id=body.model_id)
    data: dict[str, Any] = {
        "conversation": result.conversation.to_wire(),
        "response": result.response,
        "tokens": result.tokens,
        "modelId": result.model_id,
        "fallbackUsed": result.fallback_used,
    }
    return envelope(data, message="Message sent successfully")


@router.put("/conversations/{conversation_id}/title")
async def update_title(
    conversation_id: str,
    body: UpdateTitleRequest,
    user_id: str = Depends(current_user),
    chat: ChatOrchestrator = Depends(get_chat),
):
    conversation = await chat.repository.update_title(conversation_id, user_id, body.title)
    return envelope(conversation.to_wire(), message="Conversation title updated successfully")


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str, user_id: str = Depends(current_user), chat: ChatOrchestrator = Depends(get_chat)
):
    await chat.repository.deactivate(conversation_id, user_id)
    return envelope(message="Conversation deleted successfully")


@router.get("/conversations/{conversation_id}/public-url")
async def get_public_url(
    conversation_id: str, user_id: str = Depends(current_user), chat: ChatOrchestrator = Depends(get_chat)
):
    url = await chat.repository.get_public_url(conversation_id, user_id)
    data = {"conversationId": conversation_id, "publicUrl": url}
    if url is None:
        return envelope(data, message="Public URL not available for this conversation", success=False)
    return envelope(data)


@router.get("/conversations/{conversation_id}/history")
async def get_history(
    conversation_id: str, user_id: str = Depends(current_user), chat: ChatOrchestrator = Depends(get_chat)
):
    backups = await chat.repository.list_backups(conversation_id, user_id)
    return envelope({"conversationId": conversation_id, "backups": [backup_to_dict(b) for b in backups]})


@router.get("/stats")
async def user_stats(user_id: str = Depends(current_user), chat: ChatOrchestrator = Depends(get_chat)):
    stats = await chat.repository.user_stats(user_id)
    return envelope(
        {
            "totalConversations": stats["total_conversations"],
            "totalMessages": stats["total_messages"],
            "totalTokens": stats["total_tokens"],
            "recentConversations": [
                s.model_dump(mode="json", by_alias=True) for s in stats["recent_conversations"]
            ],
        }
    )


@health_router.get("/health")
async def health(request: Request):
    chat = request.app.state.chat
    reachable = await chat.store.health_check() if chat.store.configured else False
    default = chat.registry.default()
    return envelope(
        {
            "status": "ok" if reachable else "degraded",
            "storage": {"configured": chat.store.configured, "reachable": reachable},
            "models": {
                "available": len(chat.registry.available()),
                "default": default.id if default else None,
            },
            "cache": chat.repository.cache_stats(),
        }
    )
