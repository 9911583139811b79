"""In-memory response cache for repeated questions.

Entries are keyed by (page, sender, normalized message), so a cached answer
is only ever replayed to the sender it was generated for. Entries expire
after a TTL and the oldest are evicted beyond a size ceiling.
"""

import logging
import re
import time
from collections import OrderedDict
from collections.abc import Callable

from app.schemas.conversation import AIResponse

logger = logging.getLogger(__name__)

# Punctuation is dropped; word characters, whitespace and the Bengali block stay
_STRIP_RE = re.compile(r"[^\w\s\u0980-\u09FF]")

CacheKey = tuple[str, str, str]


def normalize_message(message: str) -> str:
    """Lowercase and strip punctuation so trivial variants share an entry."""
    return _STRIP_RE.sub("", message.lower()).strip()


def cache_key(page_id: str, sender_id: str, message: str) -> CacheKey:
    """Build the cache key; page and sender are always part of it."""
    return (str(page_id), str(sender_id), normalize_message(message))


class ResponseCache:
    """Bounded, TTL'd map from cache key to a generated response."""

    def __init__(
        self,
        ttl_seconds: float = 3600,
        max_entries: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[CacheKey, tuple[AIResponse, float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, page_id: str, sender_id: str, message: str) -> AIResponse | None:
        """Return a fresh copy of the cached response, or None."""
        key = cache_key(page_id, sender_id, message)
        if not key[2]:
            return None

        entry = self._entries.get(key)
        if entry is None:
            return None

        response, stored_at = entry
        if self._clock() - stored_at > self._ttl:
            self._entries.pop(key, None)
            return None

        logger.info(f"Response cache hit for page={page_id}")
        return response.model_copy(update={"token_usage": 0}, deep=True)

    def set(self, page_id: str, sender_id: str, message: str, response: AIResponse) -> None:
        """Store a response; failures and empty replies are never cached."""
        key = cache_key(page_id, sender_id, message)
        if not key[2] or response.error is not None or not response.reply:
            return

        self._entries[key] = (response.model_copy(deep=True), self._clock())
        self._entries.move_to_end(key)
        self._evict()

    def _evict(self) -> None:
        now = self._clock()
        # Insertion order matches age, so expired entries sit at the front
        while self._entries:
            oldest_key, (_, stored_at) = next(iter(self._entries.items()))
            if now - stored_at <= self._ttl:
                break
            self._entries.pop(oldest_key)

        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()
