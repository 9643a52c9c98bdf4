from __future__ import annotations

from dataclasses import dataclass, field


SILENCE_TOKEN = "__SILENCE__"
DEFAULT_SERVER_ID = "default"
VISIBILITY_PUBLIC = "PUBLIC"


@dataclass(frozen=True)
class ServerContext:
    server_id: str = ""
    mode: str = ""
    online_players: int = 0


@dataclass(frozen=True)
class Persona:
    language: str = ""
    tone: str = ""
    style_tags: tuple[str, ...] = ()
    avoid_topics: tuple[str, ...] = ()
    knowledge_level: str = ""

    def has_style(self, tag: str) -> bool:
        """True when any style tag contains ``tag``, so "short_replies" counts as "short"."""
        wanted = tag.strip().lower()
        if not wanted:
            return False
        return any(wanted in item.lower() for item in self.style_tags)


@dataclass(frozen=True)
class BotProfile:
    bot_id: str
    name: str = ""
    online: bool = True
    cooldown_ms: int = 0
    persona: Persona = field(default_factory=Persona)


@dataclass(frozen=True)
class ChatMessage:
    ts_ms: int
    sender: str
    sender_type: str
    message: str


@dataclass(frozen=True)
class PlanSettings:
    max_actions: int = 0
    min_delay_ms: int = 0
    max_delay_ms: int = 0
    global_silence_chance: float = 0.0
    reply_chance: float = 0.0


@dataclass(frozen=True)
class PlanRequest:
    request_id: str
    server: ServerContext = field(default_factory=ServerContext)
    tick: int = 0
    time_ms: int = 0
    bots: tuple[BotProfile, ...] = ()
    chat: tuple[ChatMessage, ...] = ()
    settings: PlanSettings = field(default_factory=PlanSettings)


@dataclass(frozen=True)
class PlannedAction:
    bot_id: str
    send_after_ms: int
    message: str
    reason: str
    visibility: str = VISIBILITY_PUBLIC

    def to_payload(self) -> dict:
        return {
            "bot_id": self.bot_id,
            "send_after_ms": self.send_after_ms,
            "message": self.message,
            "visibility": self.visibility,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class PlanDebug:
    chosen_strategy: str = ""
    suppressed_replies: int = 0

    def to_payload(self) -> dict:
        return {
            "chosen_strategy": self.chosen_strategy,
            "suppressed_replies": self.suppressed_replies,
        }


@dataclass(frozen=True)
class PlanResponse:
    request_id: str
    actions: tuple[PlannedAction, ...] = ()
    debug: PlanDebug = field(default_factory=PlanDebug)

    def to_payload(self) -> dict:
        return {
            "request_id": self.request_id,
            "actions": [action.to_payload() for action in self.actions],
            "debug": self.debug.to_payload(),
        }
