import time
from typing import Callable, Dict, Set


class TypingRegistry:
    """In-process, best-effort typing indicators.

    Entries expire ``ttl_seconds`` after the last ``start`` even when
    ``stop`` never arrives. Nothing here survives a restart.
    """

    def __init__(self, ttl_seconds: float = 8.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Dict[str, float]] = {}

    def start(self, conversation_id: str, user_id: str) -> None:
        self._entries.setdefault(conversation_id, {})[user_id] = self._clock() + self._ttl

    def stop(self, conversation_id: str, user_id: str) -> None:
        users = self._entries.get(conversation_id)
        if not users:
            return
        users.pop(user_id, None)
        if not users:
            del self._entries[conversation_id]

    def active(self, conversation_id: str) -> Set[str]:
        users = self._entries.get(conversation_id)
        if not users:
            return set()
        now = self._clock()
        for user_id in [u for u, expires_at in users.items() if expires_at <= now]:
            del users[user_id]
        if not users:
            del self._entries[conversation_id]
        return set(users)

    def clear(self, conversation_id: str) -> None:
        self._entries.pop(conversation_id, None)
