from __future__ import annotations

import threading

from aichatplayers.planner.models import DEFAULT_SERVER_ID


SUPPRESS_WINDOW_MS = 15_000
SMALL_TALK_KEY = "small_talk"


def _server_key(server_id: str | None) -> str:
    return server_id or DEFAULT_SERVER_ID


def _topic_key(topic: object) -> str:
    value = getattr(topic, "value", topic)
    return str(value)


class AntiSpamMemory:
    """Last emission time per (server, bot, topic).

    Entries are created lazily and kept for the life of the process. One
    lock guards the whole structure and is only held for dict operations.
    """

    def __init__(self, window_ms: int = SUPPRESS_WINDOW_MS) -> None:
        self.window_ms = max(0, int(window_ms))
        self._lock = threading.Lock()
        self._last_sent: dict[str, dict[str, dict[str, int]]] = {}

    def should_suppress(self, server_id: str | None, bot_id: str, topic: object, now_ms: int) -> bool:
        if not bot_id:
            return True
        server_key = _server_key(server_id)
        topic_key = _topic_key(topic)
        with self._lock:
            last_sent = self._last_sent.get(server_key, {}).get(bot_id, {}).get(topic_key)
        if last_sent is None:
            return False
        return now_ms - last_sent < self.window_ms

    def remember(self, server_id: str | None, bot_id: str, topic: object, now_ms: int) -> None:
        server_key = _server_key(server_id)
        topic_key = _topic_key(topic)
        with self._lock:
            by_bot = self._last_sent.setdefault(server_key, {})
            by_bot.setdefault(bot_id, {})[topic_key] = int(now_ms)

    def last_sent(self, server_id: str | None, bot_id: str, topic: object) -> int | None:
        with self._lock:
            return self._last_sent.get(_server_key(server_id), {}).get(bot_id, {}).get(_topic_key(topic))

    def size(self) -> int:
        with self._lock:
            return sum(len(topics) for by_bot in self._last_sent.values() for topics in by_bot.values())
