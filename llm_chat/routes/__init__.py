"""FastAPI API endpoints under /api.

Endpoint groups: health and topic diagnostics, chat turns (JSON and SSE),
conversations with their messages, progress and topic confirmations, and
operator actions under /admin guarded by the X-Admin-Token header.
The caller is identified by the X-User-ID header.
"""

from fastapi import APIRouter

from .admin import router as admin_router
from .chat import router as chat_router
from .conversations import router as conversations_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(chat_router)
router.include_router(conversations_router)
router.include_router(admin_router)
