"""Error taxonomy for the chat pipeline.

Every error carries a short, non-technical ``user_message`` for the client and
an HTTP status for the route layer. The exception's own message holds the
diagnostic detail and only ends up in server logs.
"""

from __future__ import annotations


class ChatError(Exception):
    status_code = 500
    code = "internal_error"
    user_message = "Something went wrong. Please try again."

    def __init__(self, detail: str = "", *, user_message: str | None = None) -> None:
        super().__init__(detail or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class RateLimitExceeded(ChatError):
    status_code = 429
    code = "rate_limited"
    user_message = "You are sending messages too quickly. Please wait a moment."

    def __init__(self, detail: str, *, limit_type: str, retry_after: int) -> None:
        super().__init__(detail)
        self.limit_type = limit_type
        self.retry_after = retry_after


class SchemaValidationError(ChatError):
    """The upstream never produced a schema-valid envelope."""

    status_code = 502
    code = "invalid_response"
    user_message = "The assistant could not produce a valid answer. Please try again."

    def __init__(self, errors: list[str], raw_text: str, attempts: int = 0) -> None:
        super().__init__(f"Response failed schema validation after {attempts} attempt(s): {errors}")
        self.errors = errors
        self.raw_text = raw_text
        self.attempts = attempts


class SafetyBlocked(ChatError):
    status_code = 403
    code = "safety_blocked"
    user_message = (
        "This conversation has been paused for your safety. "
        "Please reach out to someone you trust or a crisis line."
    )

    def __init__(self, detail: str, *, safety_message: str | None = None) -> None:
        super().__init__(detail, user_message=safety_message)


class ConversationAlreadyBlocked(ChatError):
    status_code = 409
    code = "already_blocked"
    user_message = "This conversation is already blocked."


class ConversationNotFound(ChatError):
    status_code = 404
    code = "not_found"
    user_message = "Conversation not found."


class PersistenceFailure(ChatError):
    status_code = 500
    code = "persistence_failure"
    user_message = "Your message could not be saved. Please try again."
