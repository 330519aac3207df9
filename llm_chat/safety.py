"""Safety assessment: pre-flight keyword scanning and post-hoc verdict handling.

Two entry points feed the same escalation rules:

  check_message()  scans raw user text against the configured danger keywords
                   before any upstream call. A match is always treated as an
                   emergency: the conversation is blocked, every recipient is
                   notified and the turn never reaches the model.
  assess()/handle()
                   read the safety verdict the model reported inside a validated
                   envelope and act on it:

                       none       nothing (unless requires_intervention)
                       warning    audit
                       critical   audit + notify
                       emergency  audit + block + notify

Only emergency ever blocks. Blocking is idempotent: blocking a blocked
conversation raises ConversationAlreadyBlocked and writes nothing.
Notifications go out one recipient at a time; a failing recipient is logged
and the rest still get theirs.
"""

from __future__ import annotations

import logging
import re
from difflib import SequenceMatcher
from enum import Enum
from typing import TYPE_CHECKING, Protocol

import httpx
from pydantic import BaseModel, Field

from llm_chat.config import ChatConfig
from llm_chat.errors import ConversationAlreadyBlocked
from llm_chat.models import AuditEntry, utcnow
from llm_chat.prompts import NOTIFICATION_TEMPLATE, crisis_resources, render_prompt

if TYPE_CHECKING:
    from llm_chat.protocol import ResponseEnvelope
    from llm_chat.storage import Storage

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 200
PHRASE_GAP = 10  # max characters between consecutive phrase words
FUZZY_RATIO = 0.8
FUZZY_MIN_LENGTH = 4

NOTIFICATION_SUBJECT = "[SAFETY ALERT] Danger keyword detected in LLM conversation"

SUPPORTIVE_MESSAGE = (
    "I'm really concerned about what you've shared, and I want you to be safe. "
    "I can't continue this conversation, but you don't have to go through this alone. "
    "Please reach out to one of the resources below or to someone you trust right now."
)


# ---------------------------------------------------------------------------
# Danger levels and verdicts
# ---------------------------------------------------------------------------

class DangerLevel(str, Enum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"

    @classmethod
    def parse(cls, value: "str | DangerLevel | None") -> "DangerLevel":
        """None and "" mean no danger."""
        if value is None or value == "":
            return cls.NONE
        return cls(value)

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, DangerLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, DangerLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, DangerLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, DangerLevel):
            return NotImplemented
        return self.rank >= other.rank


_RANKS = {
    DangerLevel.NONE: 0,
    DangerLevel.WARNING: 1,
    DangerLevel.CRITICAL: 2,
    DangerLevel.EMERGENCY: 3,
}


class SafetyVerdict(BaseModel):
    is_safe: bool = True
    danger_level: DangerLevel = DangerLevel.NONE
    detected_concerns: list[str] = Field(default_factory=list)
    requires_intervention: bool = False
    safety_message: str | None = None

    @property
    def blocks(self) -> bool:
        return self.danger_level == DangerLevel.EMERGENCY

    @property
    def notifies(self) -> bool:
        return self.danger_level >= DangerLevel.CRITICAL or self.requires_intervention

    @property
    def audited(self) -> bool:
        return self.danger_level > DangerLevel.NONE or self.requires_intervention


def blocked_message(language: str, safety_message: str | None = None) -> str:
    """Supportive text shown instead of model output, with crisis resources."""
    return f"{safety_message or SUPPORTIVE_MESSAGE}\n\n{crisis_resources(language)}"


# ---------------------------------------------------------------------------
# Keyword matching
# ---------------------------------------------------------------------------

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def _similar(word: str, expected: str) -> bool:
    if word == expected:
        return True
    if len(expected) < FUZZY_MIN_LENGTH or word[:1] != expected[:1]:
        return False
    return SequenceMatcher(None, word, expected).ratio() >= FUZZY_RATIO


class KeywordMatcher:
    """Matches danger keywords and phrases against free text.

    Single words match on word boundaries only. Phrases match whole words:
    each phrase word must appear in order with at most PHRASE_GAP characters
    between neighbours, tolerating small spelling differences in words of four
    letters or more. Phrase words never match inside a longer word.
    """

    def __init__(self, keywords: tuple[str, ...] | list[str]) -> None:
        self._singles: list[tuple[str, re.Pattern]] = []
        self._phrases: list[tuple[str, list[str]]] = []
        for kw in keywords:
            words = kw.split()
            if len(words) <= 1:
                self._singles.append((kw, re.compile(rf"\b{re.escape(kw)}\b", re.IGNORECASE)))
            else:
                self._phrases.append((kw, words))

    def scan(self, text: str) -> list[str]:
        """Return every keyword found in text, in configuration order."""
        if not text:
            return []
        lowered = text.lower()
        tokens = [(m.group(0), m.start(), m.end()) for m in _WORD_RE.finditer(lowered)]

        found: list[str] = []
        for kw, pattern in self._singles:
            if pattern.search(text):
                found.append(kw)
        for kw, words in self._phrases:
            if self._phrase_in(tokens, words):
                found.append(kw)
        return found

    def _phrase_in(self, tokens: list[tuple[str, int, int]], words: list[str]) -> bool:
        for i, (tok, _, end) in enumerate(tokens):
            if _similar(tok, words[0]) and self._rest_follows(tokens, i + 1, words, 1, end):
                return True
        return False

    def _rest_follows(
        self,
        tokens: list[tuple[str, int, int]],
        start: int,
        words: list[str],
        word_i: int,
        prev_end: int,
    ) -> bool:
        if word_i == len(words):
            return True
        for j in range(start, len(tokens)):
            tok, tok_start, tok_end = tokens[j]
            if tok_start - prev_end > PHRASE_GAP:
                return False
            if _similar(tok, words[word_i]) and self._rest_follows(
                tokens, j + 1, words, word_i + 1, tok_end
            ):
                return True
        return False


# ---------------------------------------------------------------------------
# Notifiers
# ---------------------------------------------------------------------------

class Notifier(Protocol):
    async def notify(self, recipients: list[str], subject: str, body: str) -> dict[str, bool]: ...


class LogNotifier:
    """Writes notifications to the log. Used when no delivery channel is configured."""

    async def notify(self, recipients: list[str], subject: str, body: str) -> dict[str, bool]:
        for r in recipients:
            logger.warning("notification to=%s subject=%s\n%s", r, subject, body)
        return {r: True for r in recipients}


class WebhookNotifier:
    """POSTs each notification as JSON to a webhook that relays it by email."""

    def __init__(self, url: str, timeout: float = 10.0) -> None:
        self._url = url
        self._timeout = timeout

    async def notify(self, recipients: list[str], subject: str, body: str) -> dict[str, bool]:
        results: dict[str, bool] = {}
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            for r in recipients:
                try:
                    resp = await client.post(
                        self._url, json={"to": r, "subject": subject, "body": body}
                    )
                    resp.raise_for_status()
                    results[r] = True
                except httpx.HTTPError as e:
                    logger.error("notification to %s failed: %s", r, e)
                    results[r] = False
        return results


# ---------------------------------------------------------------------------
# SafetyAssessor
# ---------------------------------------------------------------------------

class SafetyAssessor:
    def __init__(self, config: ChatConfig, storage: "Storage", notifier: Notifier) -> None:
        self._config = config
        self._storage = storage
        self._notifier = notifier
        self._matcher = KeywordMatcher(config.danger_keywords)

    @property
    def keywords(self) -> tuple[str, ...]:
        return self._config.danger_keywords

    @property
    def enabled(self) -> bool:
        return self._config.danger_detection_enabled and bool(self._config.danger_keywords)

    # ── pre-flight ──

    def scan(self, text: str) -> SafetyVerdict:
        """Keyword scan only; no side effects."""
        if not self.enabled:
            return SafetyVerdict()
        found = self._matcher.scan(text)
        if not found:
            return SafetyVerdict()
        return SafetyVerdict(
            is_safe=False,
            danger_level=DangerLevel.EMERGENCY,
            detected_concerns=found,
            requires_intervention=True,
        )

    async def check_message(self, text: str, user_id: str, conversation_id: str) -> SafetyVerdict:
        """Scan user text; on a match block the conversation and alert everyone."""
        verdict = self.scan(text)
        if verdict.is_safe:
            return verdict
        logger.warning(
            "danger keywords %s detected user=%s conversation=%s",
            verdict.detected_concerns, user_id, conversation_id,
        )
        await self.handle(
            verdict, user_id=user_id, conversation_id=conversation_id,
            text=text, event="keyword_detected",
        )
        return verdict

    # ── post-hoc ──

    def assess(self, envelope: "ResponseEnvelope") -> SafetyVerdict:
        s = envelope.safety
        return SafetyVerdict(
            is_safe=s.is_safe,
            danger_level=DangerLevel.parse(s.danger_level),
            detected_concerns=list(s.detected_concerns),
            requires_intervention=s.requires_intervention,
            safety_message=s.safety_message,
        )

    async def handle(
        self,
        verdict: SafetyVerdict,
        *,
        user_id: str,
        conversation_id: str,
        text: str,
        event: str = "llm_safety_assessment",
    ) -> None:
        """Apply the escalation rules for one verdict."""
        if not verdict.audited:
            return

        entry = AuditEntry(
            event=event,
            user_id=user_id,
            conversation_id=conversation_id,
            detected=verdict.detected_concerns,
            excerpt=text[:EXCERPT_LENGTH],
            danger_level=verdict.danger_level.value,
        )
        self._storage.append_audit(entry)

        if verdict.blocks:
            reason = "Danger detected: " + (", ".join(verdict.detected_concerns) or "emergency")
            try:
                self.block_conversation(conversation_id, user_id, reason)
            except ConversationAlreadyBlocked:
                logger.info("conversation %s was already blocked", conversation_id)

        if verdict.notifies:
            await self.notify(entry)

    def block_conversation(self, conversation_id: str, user_id: str, reason: str) -> None:
        """Block once. Raises ConversationAlreadyBlocked on a second call."""
        self._storage.block_conversation(conversation_id, reason)
        self._storage.append_audit(AuditEntry(
            event="conversation_blocked",
            user_id=user_id,
            conversation_id=conversation_id,
            excerpt=reason[:EXCERPT_LENGTH],
            danger_level=DangerLevel.EMERGENCY.value,
        ))
        logger.warning("conversation %s blocked: %s", conversation_id, reason)

    async def notify(self, entry: AuditEntry) -> dict[str, bool]:
        """Send one alert per recipient; failures are logged, never raised."""
        recipients = list(self._config.notify_recipients)
        if not recipients:
            logger.warning("safety alert for conversation %s but no recipients configured",
                           entry.conversation_id)
            return {}

        body = render_prompt(NOTIFICATION_TEMPLATE, {
            "user_id": entry.user_id,
            "conversation_id": entry.conversation_id or "-",
            "danger_level": entry.danger_level or "none",
            "detected": entry.detected,
            "timestamp": entry.timestamp or utcnow(),
            "excerpt": entry.excerpt,
        })

        results: dict[str, bool] = {}
        for r in recipients:
            try:
                sent = await self._notifier.notify([r], NOTIFICATION_SUBJECT, body)
                results[r] = bool(sent.get(r))
            except Exception as e:
                logger.error("notification to %s failed: %s", r, e)
                results[r] = False
            if not results[r]:
                logger.error("safety alert not delivered to %s", r)
        return results
