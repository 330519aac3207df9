"""Request dependencies shared by the route modules."""

from fastapi import Header, Request

from llm_chat.pipeline import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_user_id(x_user_id: str = Header(default="anonymous")) -> str:
    """The caller's user id. Identification only; there is no authentication."""
    return x_user_id.strip() or "anonymous"
