"""Operator endpoints under /api/admin.

Every route here requires the X-Admin-Token header to equal LLM_ADMIN_TOKEN.
With no token configured the admin endpoints are disabled.
"""

import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException

from llm_chat.models import AuditEntry
from llm_chat.pipeline import Services

from .deps import get_services
from .models import UnblockBody

logger = logging.getLogger(__name__)


def require_admin(
    x_admin_token: str = Header(default=""),
    services: Services = Depends(get_services),
) -> str:
    expected = services.config.admin_token
    if not expected or not secrets.compare_digest(x_admin_token.encode(), expected.encode()):
        raise HTTPException(403, "Admin token required")
    return "admin"


router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


@router.post("/conversations/{conversation_id}/unblock")
async def unblock_conversation(
    conversation_id: str,
    body: UnblockBody,
    services: Services = Depends(get_services),
):
    """Lift a safety block after review."""
    conv = services.storage.get_conversation(conversation_id)
    if conv is None:
        raise HTTPException(404, "Conversation not found")
    if not conv.blocked:
        raise HTTPException(400, "Conversation is not blocked")

    conv = services.storage.unblock_conversation(conversation_id)
    services.storage.append_audit(AuditEntry(
        event="conversation_unblocked",
        user_id="admin",
        conversation_id=conversation_id,
        excerpt=body.reason[:200],
    ))
    logger.warning("conversation %s unblocked by admin: %s", conversation_id, body.reason or "-")
    return conv
