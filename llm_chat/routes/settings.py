"""Health check and configuration diagnostics."""

from fastapi import APIRouter, Depends

from llm_chat.pipeline import Services
from llm_chat.progress import explain_extraction

from .deps import get_services

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/topics")
async def topics(services: Services = Depends(get_services)):
    """Show the topics found in the context document and which strategy found them."""
    report = explain_extraction(services.config.context_document)
    return {
        "method": report["method"],
        "document_length": report["document_length"],
        "has_section_marker": report["has_section_marker"],
        "has_topic_markers": report["has_topic_markers"],
        "progress_enabled": services.config.progress_enabled,
        "topics": [t.model_dump() for t in report["topics"]],
    }
