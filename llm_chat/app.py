import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from llm_chat.config import ChatConfig
from llm_chat.errors import ChatError, RateLimitExceeded
from llm_chat.llm import LLM, EchoLLM, HttpLLM
from llm_chat.pipeline import build_services
from llm_chat.routes import router
from llm_chat.safety import LogNotifier, Notifier, WebhookNotifier
from llm_chat.storage import Storage

load_dotenv(Path(__file__).parent.parent / ".env")

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def create_app(
    data_dir: Path | None = None,
    config: ChatConfig | None = None,
    llm: LLM | None = None,
    notifier: Notifier | None = None,
) -> FastAPI:
    config = config or ChatConfig.from_env()
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    storage = Storage(resolved)

    if llm is None:
        if os.getenv("LLM_ECHO", ""):
            llm = EchoLLM()
        else:
            llm = HttpLLM(config.base_url, api_key=config.api_key, timeout=config.timeout)
    if notifier is None:
        notifier = WebhookNotifier(config.notify_webhook_url) if config.notify_webhook_url else LogNotifier()

    app = FastAPI(title="LLM Chat")
    app.state.services = build_services(config, storage, llm, notifier)
    app.include_router(router, prefix="/api")

    @app.exception_handler(ChatError)
    async def chat_error(request: Request, exc: ChatError):
        # full detail stays in the log; the client gets the friendly message
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        headers = {}
        if isinstance(exc, RateLimitExceeded):
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "message": exc.user_message},
            headers=headers,
        )

    return app


# Default app instance for uvicorn (uses DATA_DIR and LLM_* env vars)
app = create_app()
