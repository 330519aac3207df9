"""Immutable pipeline configuration.

A ChatConfig is built once (normally from the environment, optionally merged
with a JSON settings file) and handed to every component at construction time.
List-valued settings such as the danger keywords are parsed here, once, so the
components never re-parse them per turn.

Environment keys (all optional):

    LLM_BASE_URL            upstream base URL; "/chat/completions" is appended
    LLM_API_KEY             bearer token
    LLM_MODEL               model identifier
    LLM_TEMPERATURE         0..2
    LLM_MAX_TOKENS          1..16384
    LLM_TIMEOUT             seconds
    LLM_STREAMING           "1"/"0"
    LLM_DANGER_DETECTION    "1"/"0"
    LLM_DANGER_KEYWORDS     comma-separated keywords and phrases
    LLM_NOTIFY_RECIPIENTS   comma-separated email addresses
    LLM_NOTIFY_WEBHOOK      webhook URL used to deliver notifications
    LLM_ADMIN_TOKEN         shared secret for the /api/admin endpoints (unset disables them)
    LLM_PROGRESS            "1"/"0"
    LLM_CONTEXT_FILE        path of the conversation context document
    LLM_LANGUAGE            conversation language code
    LLM_MODE                "form" | "floating" | "strict" (comma-separated)
    LLM_SETTINGS_FILE       JSON file merged over the defaults
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "qwen3-vl-8b-instruct"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_TRUE = {"1", "true", "yes", "on"}


def parse_keywords(raw: str | list[str] | tuple[str, ...] | None) -> tuple[str, ...]:
    """Split a comma-separated keyword list: trimmed, lowercased, deduplicated.

    Order of first appearance is kept.
    """
    if not raw:
        return ()
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    seen: dict[str, None] = {}
    for item in items:
        kw = item.strip().lower()
        if kw:
            seen.setdefault(kw, None)
    return tuple(seen)


def parse_recipients(raw: str | list[str] | tuple[str, ...] | None) -> tuple[str, ...]:
    """Split recipients and drop anything that is not an email address."""
    if not raw:
        return ()
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    valid: list[str] = []
    for item in items:
        addr = item.strip()
        if not addr:
            continue
        if not _EMAIL_RE.match(addr):
            logger.warning("skipping invalid notification recipient %r", addr)
            continue
        if addr not in valid:
            valid.append(addr)
    return tuple(valid)


class ChatConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    # ── upstream ──
    base_url: str = "http://localhost:8080/v1"
    api_key: str = ""
    model: str = DEFAULT_MODEL
    temperature: float = Field(0.7, ge=0, le=2)
    max_tokens: int = Field(2048, ge=1, le=16384)
    timeout: float = Field(30.0, gt=0)
    streaming_enabled: bool = True
    max_retry_attempts: int = Field(3, ge=1)

    # ── limits ──
    requests_per_minute: int = Field(10, ge=1)
    max_concurrent_conversations: int = Field(3, ge=1)
    message_limit: int = Field(100, ge=1)
    conversation_limit: int = Field(20, ge=1)

    # ── safety ──
    danger_detection_enabled: bool = True
    danger_keywords: tuple[str, ...] = ()
    notify_recipients: tuple[str, ...] = ()
    notify_webhook_url: str = ""

    # ── admin ──
    admin_token: str = ""

    # ── context and modes ──
    context_document: str = ""
    progress_enabled: bool = False
    language: str = "en"
    form_mode: bool = False
    floating_mode: bool = False
    strict_mode: bool = False

    @field_validator("danger_keywords", mode="before")
    @classmethod
    def _split_keywords(cls, v: Any) -> tuple[str, ...]:
        return parse_keywords(v)

    @field_validator("notify_recipients", mode="before")
    @classmethod
    def _split_recipients(cls, v: Any) -> tuple[str, ...]:
        return parse_recipients(v)

    @field_validator("language")
    @classmethod
    def _normalise_language(cls, v: str) -> str:
        return (v or "en").strip().lower()[:2] or "en"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "ChatConfig":
        """Build a config from environment variables and an optional settings file."""
        env = os.environ if env is None else env
        values: dict[str, Any] = {}

        settings_file = env.get("LLM_SETTINGS_FILE")
        if settings_file:
            path = Path(settings_file)
            if path.is_file():
                values.update(json.loads(path.read_text()))
            else:
                logger.warning("settings file %s not found, using defaults", path)

        simple = {
            "LLM_BASE_URL": "base_url",
            "LLM_API_KEY": "api_key",
            "LLM_MODEL": "model",
            "LLM_TEMPERATURE": "temperature",
            "LLM_MAX_TOKENS": "max_tokens",
            "LLM_TIMEOUT": "timeout",
            "LLM_DANGER_KEYWORDS": "danger_keywords",
            "LLM_NOTIFY_RECIPIENTS": "notify_recipients",
            "LLM_NOTIFY_WEBHOOK": "notify_webhook_url",
            "LLM_ADMIN_TOKEN": "admin_token",
            "LLM_LANGUAGE": "language",
            "LLM_REQUESTS_PER_MINUTE": "requests_per_minute",
            "LLM_MAX_CONVERSATIONS": "max_concurrent_conversations",
        }
        for key, field in simple.items():
            if env.get(key):
                values[field] = env[key]

        flags = {
            "LLM_STREAMING": "streaming_enabled",
            "LLM_DANGER_DETECTION": "danger_detection_enabled",
            "LLM_PROGRESS": "progress_enabled",
        }
        for key, field in flags.items():
            if env.get(key):
                values[field] = env[key].strip().lower() in _TRUE

        modes = {m.strip().lower() for m in env.get("LLM_MODE", "").split(",") if m.strip()}
        if modes:
            values["form_mode"] = "form" in modes
            values["floating_mode"] = "floating" in modes
            values["strict_mode"] = "strict" in modes

        context_file = env.get("LLM_CONTEXT_FILE")
        if context_file:
            values["context_document"] = Path(context_file).read_text()

        return cls.model_validate(values)
