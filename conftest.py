"""Shared fixtures: temp storage, config, a scripted LLM and a recording notifier."""

import json

import pytest

from llm_chat.config import ChatConfig
from llm_chat.llm import Completion
from llm_chat.pipeline import build_services
from llm_chat.storage import Storage

RECIPIENTS = "alerts@example.com, oncall@example.com"


def envelope_json(
    text: str = "Hello",
    *,
    danger_level: str | None = None,
    is_safe: bool = True,
    requires_intervention: bool = False,
    concerns: list[str] | None = None,
    safety_message: str | None = None,
    progress: dict | None = None,
    form: dict | None = None,
    model: str = "test-model",
) -> str:
    """Serialise a schema-valid response envelope."""
    body = {
        "type": "response",
        "safety": {
            "is_safe": is_safe,
            "danger_level": danger_level,
            "detected_concerns": concerns or [],
            "requires_intervention": requires_intervention,
            "safety_message": safety_message,
        },
        "content": {"text_blocks": [{"type": "text", "content": text}]},
        "metadata": {"model": model, "language": "en"},
    }
    if form is not None:
        body["content"]["form"] = form
    if progress is not None:
        body["progress"] = progress
    return json.dumps(body)


# ---------------------------------------------------------------------------
# StubLLM: scripted responses, no network
# ---------------------------------------------------------------------------

class StubLLM:
    """Deterministic LLM stand-in for tests.

    send() returns the queued responses in order (an Exception in the queue is
    raised instead). stream() replays `chunks` the same way.
    """

    def __init__(self, responses=(), chunks=(), stream_tokens: int = 7) -> None:
        self._responses = list(responses)
        self._chunks = list(chunks)
        self.stream_tokens = stream_tokens
        self.calls: list[list[dict]] = []

    async def send(self, messages, *, model, temperature, max_tokens) -> Completion:
        self.calls.append(list(messages))
        if not self._responses:
            raise AssertionError(f"StubLLM: unexpected send() call #{len(self.calls)}")
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return Completion(text=item, tokens_used=10)

    async def stream(self, messages, *, model, temperature, max_tokens, usage):
        self.calls.append(list(messages))
        usage.total_tokens = self.stream_tokens
        for chunk in self._chunks:
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk


class RecordingNotifier:
    """Collects notifications; recipients in `failing` raise instead."""

    def __init__(self, failing=()) -> None:
        self.failing = set(failing)
        self.sent: list[tuple[str, str, str]] = []
        self.attempted: list[str] = []

    async def notify(self, recipients, subject, body):
        results = {}
        for r in recipients:
            self.attempted.append(r)
            if r in self.failing:
                raise RuntimeError(f"mail channel for {r} is down")
            self.sent.append((r, subject, body))
            results[r] = True
        return results


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def storage(tmp_path) -> Storage:
    return Storage(tmp_path / "data")


@pytest.fixture
def config() -> ChatConfig:
    return ChatConfig(
        model="test-model",
        danger_keywords="harm myself, overdose",
        notify_recipients=RECIPIENTS,
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def envelope():
    return envelope_json


@pytest.fixture
def stub_llm():
    return StubLLM


@pytest.fixture
def make_services(storage, config, notifier):
    """Build Services around a StubLLM, with optional config overrides."""

    def _make(llm: StubLLM, **overrides):
        cfg = ChatConfig.model_validate({**config.model_dump(), **overrides})
        return build_services(cfg, storage, llm, notifier)

    return _make
