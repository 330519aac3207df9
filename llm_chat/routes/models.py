"""Pydantic request/response models for API endpoints."""

from pydantic import BaseModel

from llm_chat.models import Attachments


class ChatBody(BaseModel):
    message: str = ""
    conversation_id: str | None = None
    attachments: Attachments | None = None


class UnblockBody(BaseModel):
    reason: str = ""
