"""Conversation, message history and progress endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from llm_chat.pipeline import Services

from .deps import get_services, get_user_id

router = APIRouter()


def _owned(services: Services, conversation_id: str, user_id: str):
    conv = services.storage.get_conversation(conversation_id, user_id)
    if conv is None:
        raise HTTPException(404, "Conversation not found")
    return conv


@router.get("/conversations")
async def list_conversations(
    services: Services = Depends(get_services), user_id: str = Depends(get_user_id),
):
    """List the caller's conversations, most recent first."""
    return services.storage.list_conversations(user_id, limit=services.config.conversation_limit)


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    services: Services = Depends(get_services),
    user_id: str = Depends(get_user_id),
):
    return _owned(services, conversation_id, user_id)


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    services: Services = Depends(get_services),
    user_id: str = Depends(get_user_id),
):
    """Soft-delete a conversation."""
    if not services.storage.delete_conversation(conversation_id, user_id):
        raise HTTPException(404, "Conversation not found")
    return {"ok": True}


@router.get("/conversations/{conversation_id}/messages")
async def get_messages(
    conversation_id: str,
    services: Services = Depends(get_services),
    user_id: str = Depends(get_user_id),
):
    _owned(services, conversation_id, user_id)
    return services.storage.get_messages(conversation_id, limit=services.config.message_limit)


@router.get("/conversations/{conversation_id}/progress")
async def get_progress(
    conversation_id: str,
    services: Services = Depends(get_services),
    user_id: str = Depends(get_user_id),
):
    _owned(services, conversation_id, user_id)
    return services.progress.get_progress(conversation_id)


@router.post("/conversations/{conversation_id}/topics/{topic_id}/confirm")
async def confirm_topic(
    conversation_id: str,
    topic_id: str,
    services: Services = Depends(get_services),
    user_id: str = Depends(get_user_id),
):
    """Record that the user confirmed understanding of a topic."""
    _owned(services, conversation_id, user_id)
    try:
        return services.progress.confirm_topic(conversation_id, topic_id)
    except ValueError as e:
        raise HTTPException(404, str(e)) from e
