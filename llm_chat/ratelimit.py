"""Per-user fixed-window rate limiting.

Each user gets one counter per wall-clock minute ("YYYY-MM-DD HH:MM"). A window
bounds the number of requests and the number of distinct conversations the
user touches. check() raises before any upstream call; update() records a
turn once it has been accepted.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from llm_chat.errors import RateLimitExceeded

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    requests: int = 0
    conversations: set[str] = field(default_factory=set)


class RateLimiter:
    def __init__(
        self,
        requests_per_minute: int = 10,
        max_conversations: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._requests_per_minute = requests_per_minute
        self._max_conversations = max_conversations
        self._clock = clock
        self._windows: dict[tuple[str, str], _Window] = {}
        self._lock = threading.Lock()

    def _window_key(self, now: float) -> str:
        return datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")

    def _retry_after(self, now: float) -> int:
        return max(1, 60 - int(now % 60))

    def check(self, user_id: str, conversation_id: str | None = None) -> None:
        """Raise RateLimitExceeded if this turn would exceed either limit.

        A turn without a conversation id starts a new conversation.
        """
        now = self._clock()
        with self._lock:
            window = self._windows.get((user_id, self._window_key(now)), _Window())
            if window.requests >= self._requests_per_minute:
                logger.warning("rate limit hit user=%s requests=%d", user_id, window.requests)
                raise RateLimitExceeded(
                    f"Rate limit exceeded: {self._requests_per_minute} requests per minute",
                    limit_type="requests",
                    retry_after=self._retry_after(now),
                )
            is_new = conversation_id is None or conversation_id not in window.conversations
            if is_new and len(window.conversations) >= self._max_conversations:
                logger.warning("conversation limit hit user=%s", user_id)
                raise RateLimitExceeded(
                    f"Rate limit exceeded: {self._max_conversations} concurrent conversations",
                    limit_type="conversations",
                    retry_after=self._retry_after(now),
                )

    def update(self, user_id: str, conversation_id: str) -> None:
        now = self._clock()
        key = self._window_key(now)
        with self._lock:
            window = self._windows.setdefault((user_id, key), _Window())
            window.requests += 1
            window.conversations.add(conversation_id)
            # drop windows that have closed
            for stale in [k for k in self._windows if k[1] != key]:
                del self._windows[stale]
