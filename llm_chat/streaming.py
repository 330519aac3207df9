"""Streaming delivery buffer.

One StreamDeliveryBuffer wraps one streamed upstream call:

    IDLE ──start()──> STREAMING ──finalize()──────> FINALIZED
                                ├─emergency_save()─> EMERGENCY_SAVED
                                └─nothing arrived──> ABORTED

append() keeps chunks in memory and relays them to the output channel; nothing
touches storage until the stream ends. Exactly one of finalize() and
emergency_save() commits, guarded by a single flag, so a late or repeated
terminal signal is a no-op. A stream that ends with no text at all is
ABORTED: the claim is taken, an error is emitted and nothing is written.

Events handed to ``emit``:

    {"type": "chunk", "content": "..."}
    {"type": "done", "message_id", "tokens_used", "is_validated"}
    {"type": "error", "message", "partial_saved", "message_id"?}
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from llm_chat.models import Message
from llm_chat.protocol import ValidationResult, validate
from llm_chat.storage import Storage

logger = logging.getLogger(__name__)

INTERRUPTED_MARKER = "\n\n[Streaming interrupted: {error}]"
NO_CONTENT_MESSAGE = "No response was received from the assistant. Please try again."

Emit = Callable[[dict[str, Any]], None]


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINALIZED = "finalized"
    EMERGENCY_SAVED = "emergency_saved"
    ABORTED = "aborted"  # terminal, nothing was persisted


class StreamDeliveryBuffer:
    def __init__(
        self,
        *,
        storage: Storage,
        conversation_id: str,
        emit: Emit,
        context_sent: list[dict] | None = None,
    ) -> None:
        self._storage = storage
        self._conversation_id = conversation_id
        self._emit = emit
        self._context_sent = context_sent
        self._chunks: list[str] = []
        self._committed = False
        self.state = StreamState.IDLE
        self.started_at: float | None = None
        self.message: Message | None = None
        self.validation: ValidationResult | None = None

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    @property
    def committed(self) -> bool:
        return self._committed

    def start(self) -> None:
        if self.state is StreamState.IDLE:
            self.state = StreamState.STREAMING
            self.started_at = time.monotonic()

    def append(self, chunk: str) -> None:
        if self._committed:
            logger.debug("dropping chunk after commit conversation=%s", self._conversation_id)
            return
        self.start()
        self._chunks.append(chunk)
        self._emit({"type": "chunk", "content": chunk})

    def _claim(self) -> bool:
        """Take the single commit slot. False if it is already taken."""
        if self._committed:
            return False
        self._committed = True
        return True

    def finalize(self, tokens_used: int = 0) -> Message | None:
        """Commit the full text once and signal completion."""
        if not self._claim():
            return None
        self.state = StreamState.FINALIZED
        text = self.text
        self.validation = validate(text)
        envelope = self.validation.envelope
        message = Message(
            conversation_id=self._conversation_id,
            role="assistant",
            content=envelope.plain_text() if envelope else text,
            tokens_used=tokens_used,
            raw_response=text,
            context_sent=self._context_sent,
            is_validated=self.validation.valid,
        )
        self.message = self._storage.add_message(message)
        elapsed = time.monotonic() - (self.started_at or time.monotonic())
        logger.info(
            "stream committed conversation=%s chars=%d tokens=%d valid=%s in %.2fs",
            self._conversation_id, len(text), tokens_used, self.validation.valid, elapsed,
        )
        if not self.validation.valid:
            logger.warning("streamed response failed validation: %s", self.validation.errors)
        self._emit({
            "type": "done",
            "message_id": message.id,
            "tokens_used": tokens_used,
            "is_validated": self.validation.valid,
        })
        return message

    def emergency_save(self, error_text: str) -> Message | None:
        """Persist whatever arrived, marked as interrupted, and signal the error."""
        if not self._claim():
            return None
        text = self.text
        if not text:
            self.state = StreamState.ABORTED
            self._emit({"type": "error", "message": NO_CONTENT_MESSAGE, "partial_saved": False})
            return None
        self.state = StreamState.EMERGENCY_SAVED
        message = Message(
            conversation_id=self._conversation_id,
            role="assistant",
            content=text + INTERRUPTED_MARKER.format(error=error_text),
            raw_response=text,
            context_sent=self._context_sent,
            is_validated=False,
        )
        self.message = self._storage.add_message(message)
        logger.warning(
            "stream interrupted conversation=%s, saved %d chars: %s",
            self._conversation_id, len(text), error_text,
        )
        self._emit({
            "type": "error",
            "message": error_text,
            "partial_saved": True,
            "message_id": message.id,
        })
        return message

    def close(self, tokens_used: int = 0) -> Message | None:
        """Producer ended without a terminator: commit what arrived, or report nothing came."""
        if self._committed:
            return None
        if self.text:
            logger.info("stream ended without terminator conversation=%s", self._conversation_id)
            return self.finalize(tokens_used)
        self._claim()
        self.state = StreamState.ABORTED
        self._emit({"type": "error", "message": NO_CONTENT_MESSAGE, "partial_saved": False})
        return None
