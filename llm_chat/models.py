"""Core domain models.

Storage, the turn pipeline and the HTTP routes all exchange these types.
Pydantic is used for validation and serialisation at every data boundary.
The structured response envelope lives in llm_chat.protocol and the safety
verdict in llm_chat.safety, next to the code that produces them.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant"]

LayerSource = Literal["language", "schema", "safety", "progress", "mode", "base"]


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex[:12]


# ---------------------------------------------------------------------------
# Attachments: a tagged union decided when the message enters the system
# ---------------------------------------------------------------------------

class FileAttachment(BaseModel):
    name: str
    mime_type: str = "application/octet-stream"
    size: int = 0


class AttachmentList(BaseModel):
    """File metadata only. Upload and encoding happen elsewhere."""

    kind: Literal["files"] = "files"
    files: list[FileAttachment] = Field(default_factory=list)


class FormSubmission(BaseModel):
    """Values a user submitted through a form the assistant rendered."""

    kind: Literal["form_submission"] = "form_submission"
    values: dict[str, str | list[str]] = Field(default_factory=dict)

    def readable_text(self) -> str:
        """Render the values as "Field Name: value" lines, skipping empty ones."""
        parts: list[str] = []
        for field_id, value in self.values.items():
            if not value:
                continue
            label = field_id.replace("_", " ").replace("-", " ").title()
            if isinstance(value, list):
                value = ", ".join(value)
            parts.append(f"{label}: {value}")
        return "\n".join(parts)


Attachments = Annotated[AttachmentList | FormSubmission, Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Conversations and messages
# ---------------------------------------------------------------------------

class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    model: str
    title: str = "New Conversation"
    blocked: bool = False
    blocked_reason: str | None = None
    blocked_at: str | None = None
    created_at: str = Field(default_factory=utcnow)
    updated_at: str = Field(default_factory=utcnow)
    deleted_at: str | None = None


class Message(BaseModel):
    """One committed message. Content is plain text; markup is derived later."""

    id: str = Field(default_factory=new_id)
    conversation_id: str
    role: Role
    content: str
    attachments: Attachments | None = None
    tokens_used: int | None = None
    raw_response: str | None = None  # upstream payload snapshot
    context_sent: list[dict] | None = None  # instruction stack sent upstream
    is_validated: bool = False
    created_at: str = Field(default_factory=utcnow)
    deleted_at: str | None = None


class InstructionLayer(BaseModel):
    """A role-tagged fragment of the instruction stack sent upstream."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"] = "system"
    source: LayerSource
    content: str

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


# ---------------------------------------------------------------------------
# Topic progress
# ---------------------------------------------------------------------------

class Topic(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    keywords: tuple[str, ...] = ()


class TopicCoverage(BaseModel):
    id: str
    title: str
    is_covered: bool = False
    coverage: int = 0
    depth: int = 0
    confirmed_at: str | None = None


class ProgressRecord(BaseModel):
    """Stored progress for one conversation. percentage never decreases."""

    conversation_id: str
    percentage: float = 0.0
    topic_coverage: dict[str, TopicCoverage] = Field(default_factory=dict)
    updated_at: str = Field(default_factory=utcnow)


class ProgressReport(BaseModel):
    percentage: float
    topics_total: int
    topics_covered: int
    is_complete: bool
    topic_coverage: list[TopicCoverage] = Field(default_factory=list)
    message: str | None = None  # diagnostic when nothing can be tracked


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    event: str
    user_id: str
    conversation_id: str | None = None
    timestamp: str = Field(default_factory=utcnow)
    detected: list[str] = Field(default_factory=list)
    excerpt: str = ""
    danger_level: str | None = None
