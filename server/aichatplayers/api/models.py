from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from aichatplayers.planner.models import (
    BotProfile,
    ChatMessage,
    Persona,
    PlanRequest,
    PlanSettings,
    ServerContext,
)


class ServerContextIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    server_id: str = ""
    mode: str = ""
    online_players: int = 0

    def to_domain(self) -> ServerContext:
        return ServerContext(server_id=self.server_id, mode=self.mode, online_players=self.online_players)


class PersonaIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    language: str = ""
    tone: str = ""
    style_tags: list[str] = Field(default_factory=list)
    avoid_topics: list[str] = Field(default_factory=list)
    knowledge_level: str = ""

    def to_domain(self) -> Persona:
        return Persona(
            language=self.language,
            tone=self.tone,
            style_tags=tuple(self.style_tags),
            avoid_topics=tuple(self.avoid_topics),
            knowledge_level=self.knowledge_level,
        )


class BotProfileIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    bot_id: str = ""
    name: str = ""
    online: bool = True
    cooldown_ms: int = 0
    persona: PersonaIn = Field(default_factory=PersonaIn)

    def to_domain(self) -> BotProfile:
        return BotProfile(
            bot_id=self.bot_id,
            name=self.name,
            online=self.online,
            cooldown_ms=self.cooldown_ms,
            persona=self.persona.to_domain(),
        )


class ChatMessageIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ts_ms: int = 0
    sender: str = ""
    sender_type: str = ""
    message: str = ""

    def to_domain(self) -> ChatMessage:
        return ChatMessage(ts_ms=self.ts_ms, sender=self.sender, sender_type=self.sender_type, message=self.message)


class PlanSettingsIn(BaseModel):
    # Plugins send either snake_case or kebab-case keys.
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    max_actions: int = Field(default=0, validation_alias=AliasChoices("max_actions", "max-actions"))
    min_delay_ms: int = Field(default=0, validation_alias=AliasChoices("min_delay_ms", "min-delay-ms"))
    max_delay_ms: int = Field(default=0, validation_alias=AliasChoices("max_delay_ms", "max-delay-ms"))
    global_silence_chance: float = Field(
        default=0.0,
        validation_alias=AliasChoices("global_silence_chance", "global-silence-chance"),
    )
    reply_chance: float = Field(default=0.0, validation_alias=AliasChoices("reply_chance", "reply-chance"))

    def to_domain(self) -> PlanSettings:
        return PlanSettings(
            max_actions=self.max_actions,
            min_delay_ms=self.min_delay_ms,
            max_delay_ms=self.max_delay_ms,
            global_silence_chance=self.global_silence_chance,
            reply_chance=self.reply_chance,
        )


class PlanRequestIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    request_id: str = ""
    server: ServerContextIn = Field(default_factory=ServerContextIn)
    tick: int = 0
    time_ms: int = 0
    bots: list[BotProfileIn] = Field(default_factory=list)
    chat: list[ChatMessageIn] = Field(default_factory=list)
    settings: PlanSettingsIn = Field(default_factory=PlanSettingsIn)

    def to_domain(self, fallback_request_id: str = "") -> PlanRequest:
        return PlanRequest(
            request_id=self.request_id or fallback_request_id,
            server=self.server.to_domain(),
            tick=self.tick,
            time_ms=self.time_ms,
            bots=tuple(bot.to_domain() for bot in self.bots),
            chat=tuple(message.to_domain() for message in self.chat),
            settings=self.settings.to_domain(),
        )


class BotRegisterIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    server_id: str = ""
    bots: list[BotProfileIn] = Field(default_factory=list)

    def to_domain(self) -> list[BotProfile]:
        return [bot.to_domain() for bot in self.bots]


class PlannedActionOut(BaseModel):
    bot_id: str
    send_after_ms: int
    message: str
    visibility: str
    reason: str


class PlanDebugOut(BaseModel):
    chosen_strategy: str = ""
    suppressed_replies: int = 0


class PlanResponseOut(BaseModel):
    request_id: str
    actions: list[PlannedActionOut] = Field(default_factory=list)
    debug: PlanDebugOut = Field(default_factory=PlanDebugOut)


class HealthOut(BaseModel):
    status: str = "ok"


class BotRegisterOut(BaseModel):
    registered: int
