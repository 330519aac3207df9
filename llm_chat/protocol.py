"""Response envelope schema, validation and the corrective retry loop.

Every assistant turn must come back as a JSON envelope:

    {"type": "response",
     "safety":   {"is_safe", "danger_level", "detected_concerns",
                  "requires_intervention", "safety_message"},
     "content":  {"text_blocks": [{"type", "content", "style"?}, ...],   # >= 1
                  "form"?, "media"?, "suggestions"?},
     "progress"?: {"percentage", "current_topic", "topics_covered", "topics_remaining"},
     "metadata": {"model", "tokens_used"?, "language"?}}

validate() turns raw upstream text into a ValidationResult. The retry loop
feeds the errors back to the model as a system instruction and asks again,
at most three times in total. Transport errors are not retried here; they
propagate to the caller untouched.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from llm_chat.errors import SchemaValidationError
from llm_chat.llm import Completion
from llm_chat.prompts import RETRY_TEMPLATE, render_prompt

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 3

OPTION_FIELD_TYPES = frozenset({"radio", "checkbox", "select"})
FREE_FIELD_TYPES = frozenset({"text", "textarea", "number"})

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


# ---------------------------------------------------------------------------
# Envelope schema
# ---------------------------------------------------------------------------

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


def _none_to_list(v: Any) -> Any:
    return [] if v is None else v


StrList = Annotated[list[str], BeforeValidator(_none_to_list)]


class TextBlock(_Frozen):
    type: str
    content: str
    style: str | None = None


class FormOption(_Frozen):
    value: str | int | float
    label: str


FieldType = Literal["radio", "checkbox", "select", "text", "textarea", "number", "scale"]


class FormField(_Frozen):
    id: str
    type: FieldType
    label: str
    required: bool = False
    options: list[FormOption] | None = None
    min: float | None = None
    max: float | None = None
    placeholder: str | None = None
    help_text: str | None = Field(None, alias="helpText")

    @model_validator(mode="after")
    def _options_match_type(self) -> "FormField":
        if self.type in OPTION_FIELD_TYPES and not self.options:
            raise ValueError(f"field '{self.id}' of type {self.type} requires options")
        if self.type in FREE_FIELD_TYPES and self.options:
            raise ValueError(f"field '{self.id}' of type {self.type} must not have options")
        return self


class Form(_Frozen):
    title: str | None = None
    description: str | None = None
    fields: list[FormField] = Field(min_length=1)
    submit_label: str | None = Field(None, alias="submitLabel")


class MediaItem(_Frozen):
    type: Literal["image", "video", "audio"]
    url: str
    alt: str | None = None
    caption: str | None = None


class Suggestion(_Frozen):
    text: str


class Content(_Frozen):
    text_blocks: list[TextBlock]
    form: Form | None = None
    media: Annotated[list[MediaItem], BeforeValidator(_none_to_list)] = Field(default_factory=list)
    suggestions: Annotated[list[Suggestion], BeforeValidator(_none_to_list)] = Field(
        default_factory=list
    )

    @field_validator("text_blocks")
    @classmethod
    def _at_least_one_block(cls, v: list[TextBlock]) -> list[TextBlock]:
        if not v:
            raise ValueError("content.text_blocks must have at least one block")
        return v


class EnvelopeSafety(_Frozen):
    is_safe: bool
    danger_level: Literal["warning", "critical", "emergency"] | None
    detected_concerns: StrList
    requires_intervention: bool
    safety_message: str | None = None

    @field_validator("danger_level", mode="before")
    @classmethod
    def _blank_is_none(cls, v: Any) -> Any:
        if v in ("", "none", "null"):
            return None
        return v


class EnvelopeProgress(_Frozen):
    percentage: float | None = None
    current_topic: str | None = None
    topics_covered: StrList = Field(default_factory=list)
    topics_remaining: StrList = Field(default_factory=list)
    milestones_reached: StrList = Field(default_factory=list)


class EnvelopeMetadata(_Frozen):
    model: str
    tokens_used: int | None = None
    language: str | None = None


class ResponseEnvelope(_Frozen):
    type: Literal["response"]
    safety: EnvelopeSafety
    content: Content
    progress: EnvelopeProgress | None = None
    metadata: EnvelopeMetadata

    def plain_text(self) -> str:
        """The text blocks joined into the plain-text message content."""
        return "\n\n".join(b.content for b in self.content.text_blocks)


def error_envelope(message: str, model: str, language: str = "en") -> ResponseEnvelope:
    """A valid envelope carrying a user-facing error notice."""
    return ResponseEnvelope(
        type="response",
        safety=EnvelopeSafety(
            is_safe=True, danger_level=None, detected_concerns=[], requires_intervention=False,
        ),
        content=Content(text_blocks=[TextBlock(type="error", content=message)]),
        metadata=EnvelopeMetadata(model=model, language=language),
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    envelope: ResponseEnvelope | None = None
    errors: list[str] = field(default_factory=list)


def strip_code_fence(text: str) -> str:
    """Remove a ```json ... ``` wrapper around the whole text, if present."""
    m = _FENCE_RE.match(text)
    return (m.group(1) if m else text).strip()


def _format_errors(e: ValidationError) -> list[str]:
    errors: list[str] = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "response"
        msg = err["msg"].removeprefix("Value error, ")
        errors.append(f"{loc}: {msg}")
    return errors


def validate(text: str) -> ValidationResult:
    cleaned = strip_code_fence(text or "")
    if not cleaned:
        return ValidationResult(valid=False, errors=["Empty response"])
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        return ValidationResult(
            valid=False, errors=[f"Invalid JSON: {e.msg} (line {e.lineno}, column {e.colno})"]
        )
    if not isinstance(data, dict):
        return ValidationResult(valid=False, errors=["Response must be a JSON object"])
    try:
        envelope = ResponseEnvelope.model_validate(data)
    except ValidationError as e:
        return ValidationResult(valid=False, errors=_format_errors(e))
    return ValidationResult(valid=True, envelope=envelope)


# ---------------------------------------------------------------------------
# Bounded retry loop
# ---------------------------------------------------------------------------

SendFn = Callable[[list[dict[str, str]]], Awaitable[Completion]]


@dataclass(frozen=True)
class Validated:
    envelope: ResponseEnvelope
    raw_text: str
    attempts: int
    tokens_used: int = 0


@dataclass(frozen=True)
class Exhausted:
    errors: list[str]
    raw_text: str
    attempts: int
    tokens_used: int = 0


ValidationOutcome = Validated | Exhausted


def corrective_instruction(errors: list[str]) -> dict[str, str]:
    return {"role": "system", "content": render_prompt(RETRY_TEMPLATE, {"errors": errors})}


async def run_validation_loop(
    send: SendFn,
    messages: list[dict[str, str]],
    max_attempts: int = MAX_RETRY_ATTEMPTS,
) -> ValidationOutcome:
    """Call send until it yields a valid envelope or max_attempts is used up."""
    history = list(messages)
    errors: list[str] = []
    raw = ""
    tokens = 0
    for attempt in range(1, max_attempts + 1):
        completion = await send(history)
        raw = completion.text
        tokens += completion.tokens_used
        result = validate(raw)
        if result.valid:
            if attempt > 1:
                logger.info("valid response after %d attempts", attempt)
            return Validated(envelope=result.envelope, raw_text=raw, attempts=attempt, tokens_used=tokens)
        errors = result.errors
        logger.warning("schema validation failed (attempt %d/%d): %s", attempt, max_attempts, errors)
        history = [*history, corrective_instruction(errors)]
    return Exhausted(errors=errors, raw_text=raw, attempts=max_attempts, tokens_used=tokens)


async def call_with_validation(
    send: SendFn,
    messages: list[dict[str, str]],
    max_attempts: int = MAX_RETRY_ATTEMPTS,
) -> Validated:
    outcome = await run_validation_loop(send, messages, max_attempts)
    if isinstance(outcome, Exhausted):
        logger.error("giving up after %d attempts; last raw response: %.500s",
                     outcome.attempts, outcome.raw_text)
        raise SchemaValidationError(outcome.errors, outcome.raw_text, outcome.attempts)
    return outcome
