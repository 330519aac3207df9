"""Tests for llm_chat.llm: HttpLLM and EchoLLM."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from llm_chat.llm import DONE, EchoLLM, HttpLLM, TransportError, Usage, check_bounds
from llm_chat.protocol import validate

MSGS = [{"role": "system", "content": "be nice"}, {"role": "user", "content": "hi there"}]
OPTS = {"model": "m", "temperature": 0.7, "max_tokens": 100}


# ---------------------------------------------------------------------------
# EchoLLM
# ---------------------------------------------------------------------------

class TestEchoLLM:
    async def test_send_returns_valid_envelope(self) -> None:
        completion = await EchoLLM().send(MSGS, **OPTS)
        result = validate(completion.text)
        assert result.valid
        assert result.envelope.content.text_blocks[0].content == "hi there"

    async def test_stream_ends_with_done_and_sets_usage(self) -> None:
        usage = Usage()
        chunks = [c async for c in EchoLLM().stream(MSGS, usage=usage, **OPTS)]
        assert chunks[-1] == DONE
        assert validate("".join(chunks[:-1])).valid
        assert usage.total_tokens > 0


# ---------------------------------------------------------------------------
# Bounds
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("temperature,max_tokens", [(-0.1, 10), (2.1, 10), (0.5, 0), (0.5, 16385)])
def test_bounds_rejected(temperature, max_tokens):
    with pytest.raises(ValueError):
        check_bounds(temperature, max_tokens)


def test_bounds_edges_accepted():
    check_bounds(0, 1)
    check_bounds(2, 16384)


# ---------------------------------------------------------------------------
# HttpLLM: blocking call
# ---------------------------------------------------------------------------

def _mock_response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


def _chat_body(text: str, tokens: int = 42) -> dict:
    return {
        "choices": [{"message": {"role": "assistant", "content": text}}],
        "usage": {"total_tokens": tokens},
    }


class TestHttpLLMSend:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(base_url="http://localhost:8080/v1", api_key="")

    async def test_happy_path(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_chat_body("Hello!", 42)))
        with patch("httpx.AsyncClient.post", mock_post):
            completion = await llm.send(MSGS, **OPTS)
        assert completion.text == "Hello!"
        assert completion.tokens_used == 42

    async def test_posts_to_chat_completions(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_chat_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.send(MSGS, **OPTS)
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/chat/completions"

    async def test_sends_messages_and_parameters(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_chat_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.send(MSGS, **OPTS)
        body = mock_post.call_args.kwargs["json"]
        assert body["messages"] == MSGS
        assert body["model"] == "m"
        assert body["temperature"] == 0.7
        assert body["max_tokens"] == 100
        assert body["stream"] is False

    async def test_bearer_token_sent_when_api_key_set(self) -> None:
        llm = HttpLLM(base_url="http://localhost:8080/v1", api_key="secret")
        mock_post = AsyncMock(return_value=_mock_response(_chat_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.send(MSGS, **OPTS)
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer secret"

    async def test_no_auth_header_when_no_api_key(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response(_chat_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.send(MSGS, **OPTS)
        assert "Authorization" not in mock_post.call_args.kwargs["headers"]

    async def test_trailing_slash_stripped(self) -> None:
        llm = HttpLLM(base_url="http://localhost:8080/v1/")
        mock_post = AsyncMock(return_value=_mock_response(_chat_body("ok")))
        with patch("httpx.AsyncClient.post", mock_post):
            await llm.send(MSGS, **OPTS)
        assert mock_post.call_args[0][0] == "http://localhost:8080/v1/chat/completions"

    async def test_http_error_raises_transport_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({}, status=503))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(TransportError, match="503"):
                await llm.send(MSGS, **OPTS)

    async def test_connect_error_raises_transport_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(TransportError, match="Cannot connect"):
                await llm.send(MSGS, **OPTS)

    async def test_timeout_raises_transport_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(TransportError, match="timed out"):
                await llm.send(MSGS, **OPTS)

    async def test_dropped_connection_raises_transport_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(side_effect=httpx.ReadError("connection reset"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(TransportError, match="request failed"):
                await llm.send(MSGS, **OPTS)

    async def test_malformed_body_raises_transport_error(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"unexpected": True}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(TransportError):
                await llm.send(MSGS, **OPTS)

    async def test_out_of_range_temperature_never_calls_backend(self, llm: HttpLLM) -> None:
        mock_post = AsyncMock()
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(ValueError):
                await llm.send(MSGS, model="m", temperature=3.0, max_tokens=10)
        mock_post.assert_not_called()


# ---------------------------------------------------------------------------
# HttpLLM: stream line parsing
# ---------------------------------------------------------------------------

class TestStreamLineParsing:
    @pytest.fixture
    def llm(self) -> HttpLLM:
        return HttpLLM(base_url="http://x")

    def test_delta_content(self, llm: HttpLLM) -> None:
        line = "data: " + json.dumps({"choices": [{"delta": {"content": "Hel"}}]})
        assert llm._parse_stream_line(line, Usage()) == "Hel"

    def test_done_sentinel(self, llm: HttpLLM) -> None:
        assert llm._parse_stream_line("data: [DONE]", Usage()) == DONE

    def test_usage_captured(self, llm: HttpLLM) -> None:
        usage = Usage()
        line = "data: " + json.dumps({"choices": [], "usage": {"total_tokens": 99}})
        assert llm._parse_stream_line(line, usage) is None
        assert usage.total_tokens == 99

    def test_finish_reason_captured(self, llm: HttpLLM) -> None:
        usage = Usage()
        line = "data: " + json.dumps({"choices": [{"delta": {}, "finish_reason": "stop"}]})
        assert llm._parse_stream_line(line, usage) is None
        assert usage.finish_reason == "stop"

    @pytest.mark.parametrize("line", ["", ": keep-alive", "event: ping", "data: {not json"])
    def test_ignored_lines(self, llm: HttpLLM, line: str) -> None:
        assert llm._parse_stream_line(line, Usage()) is None

    @pytest.mark.parametrize("payload", [
        ["oops"],
        {"choices": ["x"]},
        {"choices": "x"},
    ])
    def test_malformed_frame_raises_transport_error(self, llm: HttpLLM, payload) -> None:
        with pytest.raises(TransportError, match="Malformed stream frame"):
            llm._parse_stream_line("data: " + json.dumps(payload), Usage())

    def test_non_text_delta_ignored(self, llm: HttpLLM) -> None:
        line = "data: " + json.dumps({"choices": [{"delta": {"content": 42}}]})
        assert llm._parse_stream_line(line, Usage()) is None


# ---------------------------------------------------------------------------
# HttpLLM: streaming over a mock transport
# ---------------------------------------------------------------------------

def _sse_body(*parts: str, done: bool = True) -> bytes:
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": p}}]}) for p in parts
    ]
    lines.append("data: " + json.dumps({"choices": [], "usage": {"total_tokens": 12}}))
    if done:
        lines.append("data: [DONE]")
    return ("\n\n".join(lines) + "\n\n").encode()


def _patched_client(handler):
    real_client = httpx.AsyncClient

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    return patch("llm_chat.llm.httpx.AsyncClient", side_effect=factory)


class TestHttpLLMStream:
    async def test_yields_chunks_then_done(self) -> None:
        llm = HttpLLM(base_url="http://llm.test/v1")
        usage = Usage()
        with _patched_client(lambda req: httpx.Response(200, content=_sse_body("Hel", "lo"))):
            chunks = [c async for c in llm.stream(MSGS, usage=usage, **OPTS)]
        assert chunks == ["Hel", "lo", DONE]
        assert usage.total_tokens == 12

    async def test_request_asks_for_stream(self) -> None:
        llm = HttpLLM(base_url="http://llm.test/v1")
        seen = {}

        def handler(req: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(req.content)
            seen["url"] = str(req.url)
            return httpx.Response(200, content=_sse_body("x"))

        with _patched_client(handler):
            [c async for c in llm.stream(MSGS, usage=Usage(), **OPTS)]
        assert seen["body"]["stream"] is True
        assert seen["url"] == "http://llm.test/v1/chat/completions"

    async def test_missing_done_just_ends(self) -> None:
        llm = HttpLLM(base_url="http://llm.test/v1")
        with _patched_client(lambda req: httpx.Response(200, content=_sse_body("a", done=False))):
            chunks = [c async for c in llm.stream(MSGS, usage=Usage(), **OPTS)]
        assert chunks == ["a"]

    async def test_http_error_raises_transport_error(self) -> None:
        llm = HttpLLM(base_url="http://llm.test/v1")
        with _patched_client(lambda req: httpx.Response(500)):
            with pytest.raises(TransportError, match="500"):
                [c async for c in llm.stream(MSGS, usage=Usage(), **OPTS)]
