from __future__ import annotations

from dataclasses import dataclass, field

from aichatplayers.config import DEFAULT_PROMPT_SYSTEM, LLMConfig, default_prompt_response_rules
from aichatplayers.planner.models import BotProfile, ChatMessage, ServerContext


SMALL_TALK_TOPIC = "small_talk"


@dataclass(frozen=True)
class GenerationRequest:
    server: ServerContext
    bot: BotProfile
    topic: str = SMALL_TALK_TOPIC
    recent_chat: tuple[ChatMessage, ...] = field(default_factory=tuple)
    request_id: str = ""


def chat_role(sender_type: str) -> str:
    normalized = sender_type.strip().lower()
    if normalized == "player":
        return "PLAYER"
    if normalized == "bot":
        return "BOT"
    return "OTHER"


def sanitize_chat_field(value: str) -> str:
    return " ".join(value.split())


def build_prompt(request: GenerationRequest, cfg: LLMConfig) -> str:
    system = cfg.prompt_system.strip() or DEFAULT_PROMPT_SYSTEM
    rules = cfg.prompt_response_rules.strip() or default_prompt_response_rules(
        cfg.max_response_chars, cfg.max_response_words
    )
    persona = request.bot.persona
    server = request.server

    lines = [
        "=== SYSTEM ===",
        system,
        "",
        "=== RULES ===",
        rules,
        "",
        "=== BOT ===",
        f"name: {request.bot.name}",
        f"language: {persona.language}",
        f"tone: {persona.tone}",
        f"style_tags: {', '.join(persona.style_tags)}",
        f"knowledge_level: {persona.knowledge_level}",
        f"avoid_topics: {', '.join(persona.avoid_topics)}",
        "",
        "=== SERVER ===",
        f"server_id: {server.server_id}",
        f"mode: {server.mode}",
        f"online_players: {server.online_players}",
        "",
        "=== TOPIC ===",
        request.topic or SMALL_TALK_TOPIC,
        "",
    ]

    if cfg.chat_history_limit > 0:
        lines.append(f"=== CHAT LOG (last {cfg.chat_history_limit}) ===")
        for message in request.recent_chat:
            text = sanitize_chat_field(message.message)
            if not text:
                continue
            lines.append(f"[{chat_role(message.sender_type)}] {sanitize_chat_field(message.sender)}: {text}")
        lines.append("")

    lines.extend(
        [
            "=== TASK ===",
            "Write ONE short Polish chat message as the BOT that replies to the LAST [PLAYER] message if it needs a reply.",
            'If no reply is needed, output exactly "__SILENCE__".',
            "",
            "=== OUTPUT ===",
            "",
        ]
    )
    return "\n".join(lines)
