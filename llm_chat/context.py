"""Instruction stack assembly.

assemble() composes the system layers sent ahead of the conversation history.
Each stage prepends its layer, and the stages run from lowest to highest
precedence, so the finished stack reads:

    1. language pin
    2. response schema          (always)
    3. safety keywords          (detection enabled and keywords configured)
    4. progress tracking        (progress enabled and at least one topic)
    5. one mode overlay         (topic-restricted > narrow-viewport > guided-form)
    6. base instructions

The function is pure: same inputs, same layers, no I/O.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from pydantic import BaseModel, ConfigDict, Field

from llm_chat.models import InstructionLayer, Topic
from llm_chat.prompts import (
    DANGER_CATEGORIES,
    FLOATING_MODE_TEMPLATE,
    FORM_MODE_TEMPLATE,
    LANGUAGE_TEMPLATE,
    PROGRESS_TEMPLATE,
    SAFETY_TEMPLATE,
    SCHEMA_TEMPLATE,
    STRICT_MODE_TEMPLATE,
    TEXT_BLOCK_TYPES,
    confirmation_prompts,
    language_name,
    render_prompt,
)

MAX_SAFETY_KEYWORDS = 50
MAX_REMAINING_TOPICS = 3
MAX_KEY_TOPICS = 5

# Common subjects recognised in a context document when it defines no topics.
_KEY_TOPIC_PATTERNS: dict[str, tuple[str, ...]] = {
    "anxiety": ("anxiety", "anxious", "panic", "worry"),
    "depression": ("depression", "depressed", "mood"),
    "stress management": ("stress", "coping", "relaxation"),
    "mindfulness": ("mindfulness", "meditation", "breathing"),
    "mental health": ("mental health", "wellbeing", "wellness"),
    "therapy": ("therapy", "therapist", "counseling"),
    "self-care": ("self-care", "self care", "healthy habits"),
    "sleep": ("sleep", "insomnia", "rest"),
    "relationships": ("relationships", "communication", "social"),
}
_HEADING_RE = re.compile(r"^#+\s*(.+)$", re.MULTILINE)


class ContextOptions(BaseModel):
    """Everything assemble() needs besides the base instructions."""

    model_config = ConfigDict(frozen=True)

    model: str
    language: str = "en"

    safety_enabled: bool = False
    safety_keywords: tuple[str, ...] = ()

    progress_enabled: bool = False
    topics: tuple[Topic, ...] = ()
    covered_topic_ids: frozenset[str] = Field(default_factory=frozenset)
    percentage: float = 0.0

    strict_mode: bool = False
    floating_mode: bool = False
    form_mode: bool = False
    context_document: str = ""


def key_topics(document: str, topics: Iterable[Topic] = ()) -> list[str]:
    """Up to five subjects a topic-restricted conversation may cover."""
    found = [t.title for t in topics]
    if not found:
        lowered = document.lower()
        for topic, words in _KEY_TOPIC_PATTERNS.items():
            if any(w in lowered for w in words):
                found.append(topic)
        for heading in _HEADING_RE.findall(document):
            heading = heading.strip().lower()
            if 3 < len(heading) < 40:
                found.append(heading)
    return list(dict.fromkeys(found))[:MAX_KEY_TOPICS]


# ── Layer builders ───────────────────────────────────────


def language_layer(options: ContextOptions) -> InstructionLayer:
    return InstructionLayer(source="language", content=render_prompt(LANGUAGE_TEMPLATE, {
        "language": options.language,
        "language_name": language_name(options.language),
    }))


def schema_layer(options: ContextOptions) -> InstructionLayer:
    return InstructionLayer(source="schema", content=render_prompt(SCHEMA_TEMPLATE, {
        "model": options.model,
        "language": options.language,
        "categories": [{"name": k, "description": v} for k, v in DANGER_CATEGORIES.items()],
        "block_types": [{"name": k, "description": v} for k, v in TEXT_BLOCK_TYPES.items()],
    }))


def safety_layer(options: ContextOptions) -> InstructionLayer | None:
    if not options.safety_enabled or not options.safety_keywords:
        return None
    return InstructionLayer(source="safety", content=render_prompt(SAFETY_TEMPLATE, {
        "keywords": list(options.safety_keywords[:MAX_SAFETY_KEYWORDS]),
        "categories": list(DANGER_CATEGORIES),
    }))


def progress_layer(options: ContextOptions) -> InstructionLayer | None:
    if not options.progress_enabled or not options.topics:
        return None
    topics = [
        {"id": t.id, "title": t.title, "covered": t.id in options.covered_topic_ids}
        for t in options.topics
    ]
    remaining = [t["title"] for t in topics if not t["covered"]][:MAX_REMAINING_TOPICS]
    return InstructionLayer(source="progress", content=render_prompt(PROGRESS_TEMPLATE, {
        "topics": topics,
        "remaining": remaining,
        "percentage": f"{options.percentage:g}",
        "prompts": confirmation_prompts(options.language),
        "language_name": language_name(options.language),
    }))


def mode_layer(options: ContextOptions) -> InstructionLayer | None:
    """At most one overlay; topic-restricted wins, then narrow viewport, then forms."""
    if options.strict_mode and options.context_document:
        topic_list = ", ".join(key_topics(options.context_document, options.topics))
        return InstructionLayer(source="mode", content=render_prompt(STRICT_MODE_TEMPLATE, {
            "context": options.context_document,
            "topic_list": topic_list or "the defined subject matter",
        }))
    if options.floating_mode:
        return InstructionLayer(source="mode", content=render_prompt(FLOATING_MODE_TEMPLATE, {}))
    if options.form_mode:
        return InstructionLayer(source="mode", content=render_prompt(FORM_MODE_TEMPLATE, {}))
    return None


def assemble(base_instructions: list[InstructionLayer], options: ContextOptions) -> list[InstructionLayer]:
    layers = list(base_instructions)
    for build in (mode_layer, progress_layer, safety_layer, schema_layer, language_layer):
        layer = build(options)
        if layer is not None:
            layers.insert(0, layer)
    return layers


def base_layers(document: str) -> list[InstructionLayer]:
    """The configured context document as the base instruction layer."""
    if not document.strip():
        return []
    return [InstructionLayer(source="base", content=document)]
