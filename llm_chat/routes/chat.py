"""Chat turn endpoints: one JSON round trip, or a server-sent event stream."""

import asyncio
import json
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from llm_chat.pipeline import Services, prepare_turn, run_turn, stream_turn

from .deps import get_services, get_user_id
from .models import ChatBody

logger = logging.getLogger(__name__)

router = APIRouter()

# Streaming turns outlive their HTTP response when the client goes away.
_background: set[asyncio.Task] = set()


def _encode_sse(event: str, data: dict) -> str:
    payload = json.dumps(data, ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n"


@router.post("/chat")
async def chat(
    body: ChatBody,
    services: Services = Depends(get_services),
    user_id: str = Depends(get_user_id),
):
    """Run one turn and return the validated response envelope."""
    try:
        return await run_turn(
            services,
            user_id=user_id,
            message=body.message,
            conversation_id=body.conversation_id,
            attachments=body.attachments,
        )
    except ValueError as e:
        raise HTTPException(400, str(e)) from e


@router.post("/chat/stream")
async def chat_stream(
    body: ChatBody,
    services: Services = Depends(get_services),
    user_id: str = Depends(get_user_id),
):
    """Run one turn, relaying chunks as server-sent events.

    Events: connected, chunk, done | error, close. The turn keeps running and
    commits even if the client disconnects mid-stream.
    """
    if not services.config.streaming_enabled:
        raise HTTPException(400, "Streaming is disabled")
    try:
        turn = await prepare_turn(
            services,
            user_id=user_id,
            message=body.message,
            conversation_id=body.conversation_id,
            attachments=body.attachments,
        )
    except ValueError as e:
        raise HTTPException(400, str(e)) from e

    queue: asyncio.Queue = asyncio.Queue()
    task = asyncio.create_task(stream_turn(services, turn, queue.put_nowait))
    _background.add(task)

    def _finished(t: asyncio.Task) -> None:
        _background.discard(t)
        if not t.cancelled() and t.exception() is not None:
            logger.error("streaming turn crashed", exc_info=t.exception())
            queue.put_nowait({"type": "error", "message": "Assistant stream failed."})
        queue.put_nowait(None)

    task.add_done_callback(_finished)

    async def generate():
        while True:
            event = await queue.get()
            if event is None:
                break
            yield _encode_sse(event["type"], event)

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
