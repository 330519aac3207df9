"""LLM client: HTTP connection to a chat-completions backend.

The pipeline talks to the upstream model through the LLM protocol:

    async def send(messages, *, model, temperature, max_tokens) -> Completion
    def stream(messages, *, model, temperature, max_tokens, usage) -> AsyncIterator[str]

`send` is one blocking round trip. `stream` yields text chunks in order and
finally the DONE sentinel; the token total arrives out of band in the Usage
object the caller passes in. A stream that ends without DONE was cut short by
the upstream; the caller decides what to do with what it got.

Two implementations are provided:

    HttpLLM    real HTTP client for OpenAI-compatible /chat/completions
               endpoints, blocking and server-sent-event streaming.
    EchoLLM    answers with a valid response envelope that echoes the last
               user message. Useful for smoke-testing the wiring without a
               running model.

Tests use their own stubs instead.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from pydantic import BaseModel

from llm_chat.errors import ChatError

logger = logging.getLogger(__name__)

DONE = "[DONE]"

TEMPERATURE_RANGE = (0.0, 2.0)
MAX_TOKENS_RANGE = (1, 16384)


class Completion(BaseModel):
    text: str
    tokens_used: int = 0
    raw: dict[str, Any] | None = None


@dataclass
class Usage:
    """Filled in by a stream while it runs."""

    total_tokens: int = 0
    finish_reason: str | None = None


def check_bounds(temperature: float, max_tokens: int) -> None:
    lo, hi = TEMPERATURE_RANGE
    if not lo <= temperature <= hi:
        raise ValueError(f"temperature must be between {lo} and {hi}, got {temperature}")
    lo_t, hi_t = MAX_TOKENS_RANGE
    if not lo_t <= max_tokens <= hi_t:
        raise ValueError(f"max_tokens must be between {lo_t} and {hi_t}, got {max_tokens}")


# ---------------------------------------------------------------------------
# Protocol: every LLM implementation must match these signatures
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def send(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Completion: ...

    def stream(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        usage: Usage,
    ) -> AsyncIterator[str]: ...


# ---------------------------------------------------------------------------
# HttpLLM: connects to a real backend
# ---------------------------------------------------------------------------

class HttpLLM:
    """Async HTTP client for OpenAI-compatible chat-completions backends.

    Request:   POST {base_url}/chat/completions
               {"model", "messages", "temperature", "max_tokens", "stream"}
    Response:  {"choices": [{"message": {"content": "..."}}],
                "usage": {"total_tokens": N}}
    Streaming: "data: {json}" lines carrying choices[0].delta.content,
               terminated by "data: [DONE]".

    Args:
        base_url: Base URL of the backend, e.g. "http://localhost:8080/v1".
        api_key:  Bearer token, or empty string if not required.
        timeout:  HTTP timeout in seconds. Defaults to 30.
    """

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(
        self,
        messages: list[dict[str, str]],
        model: str,
        temperature: float,
        max_tokens: int,
        stream: bool = False,
    ) -> tuple[str, dict]:
        """Return (url, body) for one chat-completions call."""
        check_bounds(temperature, max_tokens)
        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}
        return f"{self._base_url}/chat/completions", body

    def _parse_response(self, data: Any) -> Completion:
        """Extract the completion text and token usage from the response body."""
        if not isinstance(data, dict):
            raise TransportError("Unexpected response format from chat-completions backend")
        choices = data.get("choices")
        if not choices or not isinstance(choices[0], dict):
            raise TransportError("Unexpected response format from chat-completions backend")
        message = choices[0].get("message") or {}
        text = message.get("content")
        if not isinstance(text, str):
            raise TransportError("Chat-completions response carries no message content")
        usage = data.get("usage") or {}
        return Completion(text=text, tokens_used=int(usage.get("total_tokens") or 0), raw=data)

    def _parse_stream_line(self, line: str, usage: Usage) -> str | None:
        """Return the text carried by one SSE line, DONE, or None for nothing."""
        line = line.strip()
        if not line.startswith("data:"):
            return None
        payload = line[len("data:"):].strip()
        if payload == DONE:
            return DONE
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("skipping undecodable stream line: %.80s", payload)
            return None

        if not isinstance(data, dict):
            raise TransportError(f"Malformed stream frame from LLM backend: {payload[:80]}")
        if isinstance(data.get("usage"), dict):
            usage.total_tokens = int(data["usage"].get("total_tokens") or usage.total_tokens)
        choices = data.get("choices") or []
        if not choices:
            return None
        if not isinstance(choices, list) or not isinstance(choices[0], dict):
            raise TransportError(f"Malformed stream frame from LLM backend: {payload[:80]}")
        if choices[0].get("finish_reason"):
            usage.finish_reason = choices[0]["finish_reason"]
        delta = choices[0].get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        return content if isinstance(content, str) and content else None

    async def send(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        url, body = self._build_request(messages, model, temperature, max_tokens)
        logger.debug("llm send url=%s model=%s messages=%d", url, model, len(messages))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise TransportError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise TransportError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.TransportError as e:
            raise TransportError(f"LLM request failed: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError("LLM backend returned a non-JSON body") from e

        completion = self._parse_response(data)
        logger.debug("llm response len=%d tokens=%d", len(completion.text), completion.tokens_used)
        return completion

    async def stream(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        usage: Usage,
    ) -> AsyncIterator[str]:
        url, body = self._build_request(messages, model, temperature, max_tokens, stream=True)
        logger.debug("llm stream url=%s model=%s messages=%d", url, model, len(messages))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                async with client.stream("POST", url, json=body, headers=self._headers()) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        chunk = self._parse_stream_line(line, usage)
                        if chunk is None:
                            continue
                        yield chunk
                        if chunk == DONE:
                            return
        except httpx.ConnectError as e:
            raise TransportError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise TransportError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.TransportError as e:
            raise TransportError(f"LLM stream broke off: {e}") from e


# ---------------------------------------------------------------------------
# EchoLLM: answers with a valid envelope; useful for pipeline smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Echoes the last user message inside a schema-valid envelope. No network calls."""

    chunk_size = 16

    def _envelope(self, messages: list[dict[str, str]], model: str) -> str:
        last_user = next(
            (m["content"] for m in reversed(messages) if m.get("role") == "user"), ""
        )
        return json.dumps({
            "type": "response",
            "safety": {
                "is_safe": True,
                "danger_level": None,
                "detected_concerns": [],
                "requires_intervention": False,
                "safety_message": None,
            },
            "content": {"text_blocks": [{"type": "text", "content": last_user or "..."}]},
            "metadata": {"model": model},
        })

    async def send(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        check_bounds(temperature, max_tokens)
        text = self._envelope(messages, model)
        logger.debug("EchoLLM send messages=%d", len(messages))
        return Completion(text=text, tokens_used=len(text.split()))

    async def stream(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        usage: Usage,
    ) -> AsyncIterator[str]:
        check_bounds(temperature, max_tokens)
        text = self._envelope(messages, model)
        for i in range(0, len(text), self.chunk_size):
            yield text[i:i + self.chunk_size]
        usage.total_tokens = len(text.split())
        usage.finish_reason = "stop"
        yield DONE


# ---------------------------------------------------------------------------
# TransportError: raised by HttpLLM for all connection and protocol failures
# ---------------------------------------------------------------------------

class TransportError(ChatError):
    """Raised when the LLM backend cannot be reached or returns an error."""

    status_code = 502
    code = "upstream_unavailable"
    user_message = "The assistant is currently unavailable. Please try again later."
