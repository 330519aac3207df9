"""Turn orchestrator: runs one user turn end-to-end.

Turn flow:
  1. Rate-limit check (raises before anything else happens).
  2. Get or create the conversation; a new one is titled from the message.
  3. Refuse blocked conversations.
  4. Pre-flight keyword scan. A hit stores the user message, blocks the
     conversation, alerts the recipients and raises SafetyBlocked. The model
     is never called.
  5. Store the user message and count the turn against the limiter.
  6. Assemble the instruction stack and the recent history.
  7. Call the model:
       run_turn()     blocking call, validated with up to three attempts
       stream_turn()  chunks relayed through a StreamDeliveryBuffer, validated
                      once after commit (the text is already on screen, so
                      there is nothing to retry)
  8. Act on the model's safety verdict (only emergency blocks).
  9. Apply reported topic confirmations.

prepare_turn() covers steps 1-6 and raises the pipeline's errors. The routes
call it before opening a stream, so those errors still become HTTP statuses.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from functools import partial
from typing import Any

from pydantic import BaseModel

from llm_chat.config import ChatConfig
from llm_chat.context import ContextOptions, assemble, base_layers
from llm_chat.errors import ChatError, ConversationNotFound, SafetyBlocked, SchemaValidationError
from llm_chat.llm import DONE, LLM, TransportError, Usage
from llm_chat.models import (
    AttachmentList,
    AuditEntry,
    Conversation,
    FormSubmission,
    InstructionLayer,
    Message,
    ProgressReport,
)
from llm_chat.progress import TopicProgressTracker
from llm_chat.protocol import ResponseEnvelope, call_with_validation
from llm_chat.ratelimit import RateLimiter
from llm_chat.safety import Notifier, SafetyAssessor, blocked_message
from llm_chat.storage import Storage
from llm_chat.streaming import Emit, StreamDeliveryBuffer

logger = logging.getLogger(__name__)

TITLE_MAX_WORDS = 8
TITLE_MAX_LENGTH = 50
DEFAULT_TITLE = "New Conversation"

STREAM_FAILED = "The assistant stream failed unexpectedly."
STREAM_CANCELLED = "The assistant stream was cancelled."


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

@dataclass
class Services:
    """Everything a turn needs, built once per app."""

    config: ChatConfig
    storage: Storage
    llm: LLM
    safety: SafetyAssessor
    progress: TopicProgressTracker
    limiter: RateLimiter


def build_services(config: ChatConfig, storage: Storage, llm: LLM, notifier: Notifier) -> Services:
    return Services(
        config=config,
        storage=storage,
        llm=llm,
        safety=SafetyAssessor(config, storage, notifier),
        progress=TopicProgressTracker(config, storage),
        limiter=RateLimiter(config.requests_per_minute, config.max_concurrent_conversations),
    )


class PreparedTurn(BaseModel):
    conversation: Conversation
    user_id: str
    user_text: str
    layers: list[InstructionLayer]
    messages: list[dict[str, str]]


class TurnResult(BaseModel):
    conversation_id: str
    message: Message | None = None
    envelope: ResponseEnvelope | None = None
    attempts: int = 1
    blocked: bool = False
    safety_message: str | None = None
    progress: ProgressReport | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def generate_title(message: str) -> str:
    """First words of the opening message, capitalised and capped at 50 characters."""
    text = re.sub(r"[\s.!?,;:]+$", "", " ".join(message.split()))
    title = " ".join(text.split()[:TITLE_MAX_WORDS])
    title = title[:1].upper() + title[1:]
    if len(title) > TITLE_MAX_LENGTH:
        cut = title[:TITLE_MAX_LENGTH - 3]
        space = cut.rfind(" ")
        if space > 0:
            cut = cut[:space]
        title = cut.rstrip(" ,;:") + "..."
    if len(title) < 3:
        return DEFAULT_TITLE
    return title


def user_text_for(message: str, attachments: AttachmentList | FormSubmission | None) -> str:
    if isinstance(attachments, FormSubmission) and not message.strip():
        return attachments.readable_text()
    return message


def context_options(services: Services, conversation_id: str) -> ContextOptions:
    config = services.config
    tracker = services.progress
    covered: frozenset[str] = frozenset()
    percentage = 0.0
    if tracker.enabled:
        report = tracker.get_progress(conversation_id)
        covered = frozenset(c.id for c in report.topic_coverage if c.is_covered)
        percentage = report.percentage
    return ContextOptions(
        model=config.model,
        language=config.language,
        safety_enabled=config.danger_detection_enabled,
        safety_keywords=config.danger_keywords,
        progress_enabled=config.progress_enabled,
        topics=tuple(tracker.topics),
        covered_topic_ids=covered,
        percentage=percentage,
        strict_mode=config.strict_mode,
        floating_mode=config.floating_mode,
        form_mode=config.form_mode,
        context_document=config.context_document,
    )


def _blocked_error(services: Services, conversation_id: str, safety_message: str | None = None) -> SafetyBlocked:
    return SafetyBlocked(
        f"Conversation {conversation_id} is blocked",
        safety_message=blocked_message(services.config.language, safety_message),
    )


# ---------------------------------------------------------------------------
# Steps 1-6
# ---------------------------------------------------------------------------

async def prepare_turn(
    services: Services,
    *,
    user_id: str,
    message: str,
    conversation_id: str | None = None,
    attachments: AttachmentList | FormSubmission | None = None,
) -> PreparedTurn:
    config = services.config
    storage = services.storage
    user_text = user_text_for(message, attachments)
    if not user_text.strip():
        raise ValueError("Message must not be empty")

    services.limiter.check(user_id, conversation_id)

    if conversation_id is None:
        conv = storage.create_conversation(user_id, config.model, generate_title(user_text))
    else:
        conv = storage.get_conversation(conversation_id, user_id)
        if conv is None:
            raise ConversationNotFound(f"Conversation {conversation_id} not found for {user_id}")
    if conv.blocked:
        raise _blocked_error(services, conv.id)

    verdict = services.safety.scan(user_text)
    user_message = Message(
        conversation_id=conv.id, role="user", content=user_text, attachments=attachments,
    )
    if not verdict.is_safe:
        storage.add_message(user_message)
        services.limiter.update(user_id, conv.id)
        await services.safety.check_message(user_text, user_id, conv.id)
        raise _blocked_error(services, conv.id)

    storage.add_message(user_message)
    services.limiter.update(user_id, conv.id)

    layers = assemble(base_layers(config.context_document), context_options(services, conv.id))
    history = [
        {"role": m.role, "content": m.content}
        for m in storage.get_messages(conv.id, limit=config.message_limit)
    ]
    return PreparedTurn(
        conversation=conv,
        user_id=user_id,
        user_text=user_text,
        layers=layers,
        messages=[layer.to_message() for layer in layers] + history,
    )


async def _after_commit(
    services: Services, turn: PreparedTurn, envelope: ResponseEnvelope
) -> tuple[bool, str | None, ProgressReport | None]:
    """Post-hoc safety, then progress. Returns (blocked, safety_message, progress)."""
    conv_id = turn.conversation.id
    verdict = services.safety.assess(envelope)
    await services.safety.handle(
        verdict, user_id=turn.user_id, conversation_id=conv_id, text=turn.user_text,
    )
    safety_message = None
    if verdict.blocks:
        safety_message = blocked_message(services.config.language, verdict.safety_message)

    progress = None
    if services.progress.enabled:
        progress = services.progress.apply_envelope_progress(conv_id, envelope.progress)
        if progress is None:
            progress = services.progress.get_progress(conv_id)
    return verdict.blocks, safety_message, progress


# ---------------------------------------------------------------------------
# Non-streaming turn
# ---------------------------------------------------------------------------

async def run_turn(
    services: Services,
    *,
    user_id: str,
    message: str,
    conversation_id: str | None = None,
    attachments: AttachmentList | FormSubmission | None = None,
) -> TurnResult:
    """Execute one turn with a blocking upstream call and return the result."""
    turn = await prepare_turn(
        services, user_id=user_id, message=message,
        conversation_id=conversation_id, attachments=attachments,
    )
    return await complete_turn(services, turn)


async def complete_turn(services: Services, turn: PreparedTurn) -> TurnResult:
    config = services.config
    conv_id = turn.conversation.id
    send = partial(
        services.llm.send,
        model=config.model, temperature=config.temperature, max_tokens=config.max_tokens,
    )
    try:
        validated = await call_with_validation(send, turn.messages, config.max_retry_attempts)
    except SchemaValidationError as e:
        services.storage.append_audit(AuditEntry(
            event="schema_validation_failed",
            user_id=turn.user_id,
            conversation_id=conv_id,
            detected=e.errors,
            excerpt=e.raw_text[:200],
        ))
        raise

    envelope = validated.envelope
    assistant = services.storage.add_message(Message(
        conversation_id=conv_id,
        role="assistant",
        content=envelope.plain_text(),
        tokens_used=validated.tokens_used,
        raw_response=validated.raw_text,
        context_sent=[layer.model_dump() for layer in turn.layers],
        is_validated=True,
    ))
    logger.info("turn committed conversation=%s attempts=%d", conv_id, validated.attempts)

    blocked, safety_message, progress = await _after_commit(services, turn, envelope)
    return TurnResult(
        conversation_id=conv_id,
        message=assistant,
        envelope=envelope,
        attempts=validated.attempts,
        blocked=blocked,
        safety_message=safety_message,
        progress=progress,
    )


# ---------------------------------------------------------------------------
# Streaming turn
# ---------------------------------------------------------------------------

def _save_partial(buffer: StreamDeliveryBuffer, emit: Emit, error_text: str) -> None:
    """Emergency-save what arrived; a storage failure is reported, not raised."""
    try:
        buffer.emergency_save(error_text)
    except ChatError as e:
        logger.error("emergency save failed: %s", e)
        emit({"type": "error", "message": e.user_message, "partial_saved": False})


async def stream_turn(services: Services, turn: PreparedTurn, emit: Emit) -> TurnResult:
    """Relay one streamed response through a buffer and commit it exactly once.

    Runs to completion even when nobody consumes the events any more.
    """
    config = services.config
    conv_id = turn.conversation.id
    emit({"type": "connected", "conversation_id": conv_id})

    buffer = StreamDeliveryBuffer(
        storage=services.storage,
        conversation_id=conv_id,
        emit=emit,
        context_sent=[layer.model_dump() for layer in turn.layers],
    )
    buffer.start()
    usage = Usage()
    result = TurnResult(conversation_id=conv_id)

    try:
        terminated = False
        async for chunk in services.llm.stream(
            turn.messages,
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            usage=usage,
        ):
            if chunk == DONE:
                terminated = True
                break
            buffer.append(chunk)
        if terminated:
            buffer.finalize(usage.total_tokens)
        else:
            buffer.close(usage.total_tokens)
    except TransportError as e:
        logger.error("stream failed conversation=%s: %s", conv_id, e)
        _save_partial(buffer, emit, str(e))
    except ChatError as e:
        logger.error("stream commit failed conversation=%s: %s", conv_id, e)
        if buffer.committed:
            emit({"type": "error", "message": e.user_message, "partial_saved": False})
        else:
            _save_partial(buffer, emit, e.user_message)
    except asyncio.CancelledError:
        logger.warning("stream cancelled conversation=%s", conv_id)
        _save_partial(buffer, emit, STREAM_CANCELLED)
        raise
    except Exception:
        logger.exception("stream crashed conversation=%s", conv_id)
        _save_partial(buffer, emit, STREAM_FAILED)

    try:
        envelope = buffer.validation.envelope if buffer.validation else None
        result.message = buffer.message
        result.envelope = envelope
        if envelope is not None:
            result.blocked, result.safety_message, result.progress = await _after_commit(
                services, turn, envelope
            )
    except ChatError as e:
        logger.error("post-commit handling failed conversation=%s: %s", conv_id, e)
        emit({"type": "error", "message": e.user_message, "partial_saved": buffer.committed})

    close: dict[str, Any] = {"type": "close", "blocked": result.blocked}
    if result.safety_message:
        close["safety_message"] = result.safety_message
    if result.progress is not None:
        close["progress"] = result.progress.model_dump()
    emit(close)
    return result
