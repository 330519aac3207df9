"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM. Reads and writes go through plain helper
methods that load and dump JSON. Nothing is ever hard-deleted: conversations
and messages carry a deleted_at stamp instead.

Directory layout:

    {base}/
      conversations/
        {id}.json             ← conversation metadata
      messages/
        {id}.json             ← list of Message objects, in commit order
      progress/
        {id}.json             ← ProgressRecord
      audit.json              ← list of AuditEntry objects

Read-modify-write sequences hold a lock, so concurrent turns in one process
never interleave their updates. I/O and decoding failures surface as
PersistenceFailure.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from llm_chat.errors import ConversationAlreadyBlocked, ConversationNotFound, PersistenceFailure
from llm_chat.models import (
    AuditEntry,
    Conversation,
    Message,
    ProgressRecord,
    TopicCoverage,
    utcnow,
)

logger = logging.getLogger(__name__)


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._conv_root = base_path / "conversations"
        self._msg_root = base_path / "messages"
        self._progress_root = base_path / "progress"
        for d in (self._conv_root, self._msg_root, self._progress_root):
            d.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _conv_file(self, conversation_id: str) -> Path:
        return self._conv_root / f"{conversation_id}.json"

    def _msg_file(self, conversation_id: str) -> Path:
        return self._msg_root / f"{conversation_id}.json"

    def _progress_file(self, conversation_id: str) -> Path:
        return self._progress_root / f"{conversation_id}.json"

    def _read_json(self, path: Path, default: Any = None) -> Any:
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error("failed to read %s: %s", path, e)
            raise PersistenceFailure(f"Cannot read {path}: {e}") from e

    def _write_json(self, path: Path, data: Any) -> None:
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2))
            tmp.replace(path)
        except OSError as e:
            logger.error("failed to write %s: %s", path, e)
            raise PersistenceFailure(f"Cannot write {path}: {e}") from e

    def _save_conversation(self, conv: Conversation) -> None:
        self._write_json(self._conv_file(conv.id), conv.model_dump())

    def _require(self, conversation_id: str) -> Conversation:
        conv = self.get_conversation(conversation_id)
        if conv is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found")
        return conv

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(
        self, user_id: str, model: str, title: str = "New Conversation"
    ) -> Conversation:
        conv = Conversation(user_id=user_id, model=model, title=title)
        with self._lock:
            self._save_conversation(conv)
        logger.info("created conversation %s user=%s", conv.id, user_id)
        return conv

    def get_conversation(self, conversation_id: str, user_id: str | None = None) -> Conversation | None:
        """Return the conversation unless it is missing, deleted, or owned by someone else."""
        data = self._read_json(self._conv_file(conversation_id))
        if data is None:
            return None
        conv = Conversation.model_validate(data)
        if conv.deleted_at is not None:
            return None
        if user_id is not None and conv.user_id != user_id:
            return None
        return conv

    def list_conversations(self, user_id: str, limit: int | None = None) -> list[Conversation]:
        """Most recently updated first."""
        convs = []
        for path in self._conv_root.glob("*.json"):
            conv = Conversation.model_validate(self._read_json(path))
            if conv.user_id == user_id and conv.deleted_at is None:
                convs.append(conv)
        convs.sort(key=lambda c: c.updated_at, reverse=True)
        return convs[:limit] if limit else convs

    def update_conversation(self, conversation_id: str, **fields: Any) -> Conversation:
        with self._lock:
            conv = self._require(conversation_id)
            conv = conv.model_copy(update={**fields, "updated_at": utcnow()})
            self._save_conversation(conv)
        return conv

    def delete_conversation(self, conversation_id: str, user_id: str | None = None) -> bool:
        """Soft-delete. Returns False if there was nothing to delete."""
        with self._lock:
            conv = self.get_conversation(conversation_id, user_id)
            if conv is None:
                return False
            self._save_conversation(conv.model_copy(update={"deleted_at": utcnow()}))
        logger.info("deleted conversation %s", conversation_id)
        return True

    def block_conversation(self, conversation_id: str, reason: str) -> Conversation:
        """Raises ConversationAlreadyBlocked if the conversation is already blocked."""
        with self._lock:
            conv = self._require(conversation_id)
            if conv.blocked:
                raise ConversationAlreadyBlocked(f"Conversation {conversation_id} is already blocked")
            return self.update_conversation(
                conversation_id, blocked=True, blocked_reason=reason, blocked_at=utcnow()
            )

    def unblock_conversation(self, conversation_id: str) -> Conversation:
        with self._lock:
            return self.update_conversation(
                conversation_id, blocked=False, blocked_reason=None, blocked_at=None
            )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _load_messages(self, conversation_id: str) -> list[Message]:
        data = self._read_json(self._msg_file(conversation_id), default=[])
        return [Message.model_validate(m) for m in data]

    def _save_messages(self, conversation_id: str, messages: list[Message]) -> None:
        self._write_json(
            self._msg_file(conversation_id), [m.model_dump() for m in messages]
        )

    def add_message(self, message: Message) -> Message:
        with self._lock:
            self._require(message.conversation_id)
            messages = self._load_messages(message.conversation_id)
            messages.append(message)
            self._save_messages(message.conversation_id, messages)
            self.update_conversation(message.conversation_id)
        logger.debug("stored %s message %s in %s", message.role, message.id, message.conversation_id)
        return message

    def update_message(self, conversation_id: str, message_id: str, **fields: Any) -> Message:
        with self._lock:
            messages = self._load_messages(conversation_id)
            for i, m in enumerate(messages):
                if m.id == message_id:
                    messages[i] = m.model_copy(update=fields)
                    self._save_messages(conversation_id, messages)
                    return messages[i]
        raise ValueError(f"Message {message_id} not found in {conversation_id}")

    def get_messages(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        """Non-deleted messages in commit order; with limit, only the most recent."""
        messages = [m for m in self._load_messages(conversation_id) if m.deleted_at is None]
        return messages[-limit:] if limit else messages

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def get_progress(self, conversation_id: str) -> ProgressRecord:
        data = self._read_json(self._progress_file(conversation_id))
        if data is None:
            return ProgressRecord(conversation_id=conversation_id)
        return ProgressRecord.model_validate(data)

    def update_progress(
        self,
        conversation_id: str,
        percentage: float,
        coverage: dict[str, TopicCoverage],
    ) -> ProgressRecord:
        """Store progress; the stored percentage never goes down."""
        with self._lock:
            previous = self.get_progress(conversation_id)
            record = ProgressRecord(
                conversation_id=conversation_id,
                percentage=max(percentage, previous.percentage),
                topic_coverage=coverage,
            )
            self._write_json(self._progress_file(conversation_id), record.model_dump())
        return record

    # ------------------------------------------------------------------
    # Audit (append-only)
    # ------------------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> None:
        path = self._base / "audit.json"
        with self._lock:
            entries = self._read_json(path, default=[])
            entries.append(entry.model_dump())
            self._write_json(path, entries)

    def get_audit(self, conversation_id: str | None = None) -> list[AuditEntry]:
        entries = [AuditEntry.model_validate(e) for e in self._read_json(self._base / "audit.json", default=[])]
        if conversation_id is not None:
            entries = [e for e in entries if e.conversation_id == conversation_id]
        return entries
