from __future__ import annotations

import random
from collections.abc import Iterable

from aichatplayers.planner.models import Persona
from aichatplayers.planner.templates import choose_template
from aichatplayers.planner.topics import Topic


REASON_GREETING = "greeting"
REASON_AVOID_PVP = "avoid_real_pvp"
REASON_EVENT = "react_to_event"
REASON_HELP = "helpful_hint"
REASON_SMALL_TALK = "small_talk"

_EMOJI_TONES = {"friendly", "casual"}


def should_avoid_topic(topic: Topic | None, avoid_topics: Iterable[str]) -> bool:
    if topic is None:
        return False
    for item in avoid_topics:
        normalized = item.strip().lower()
        if normalized == topic.value:
            return True
        if "pvp" in normalized and topic is Topic.PVP_INVITE:
            return True
        if "event" in normalized and topic is Topic.EVENT:
            return True
    return False


def generate_response(topic: Topic | None, persona: Persona, rng: random.Random) -> tuple[str, str]:
    """Build a template reply for one (topic, bot) slot.

    Returns ``("", "")`` when the persona avoids the topic. Every random
    draw comes from ``rng`` so the caller controls reproducibility.
    """
    if should_avoid_topic(topic, persona.avoid_topics):
        return "", ""

    tone = persona.tone.strip().lower()
    knowledge = persona.knowledge_level.strip().lower()

    if topic is Topic.GREETING:
        message = prefix_newbie(knowledge, rng, choose_template("greeting", rng))
        return message + emoji_suffix(tone, rng), REASON_GREETING
    if topic is Topic.PVP_INVITE:
        message = choose_template("pvp_neutral", rng)
        return message + emoji_suffix(tone, rng), REASON_AVOID_PVP
    if topic is Topic.EVENT:
        return choose_template("event", rng), REASON_EVENT
    if topic is Topic.HELP:
        return prefix_newbie(knowledge, rng, choose_template("help", rng)), REASON_HELP
    if topic is None:
        message = choose_template("small_talk", rng)
        if persona.has_style("short"):
            message = shorten(message)
        message = prefix_newbie(knowledge, rng, message)
        return message + emoji_suffix(tone, rng), REASON_SMALL_TALK
    return "", ""


def prefix_newbie(level: str, rng: random.Random, message: str) -> str:
    if level != "newbie" or not message:
        return message
    prefix = choose_template("newbie_addon", rng)
    if message.startswith(prefix):
        return message
    return f"{prefix}, {message}"


def emoji_suffix(tone: str, rng: random.Random) -> str:
    if tone in _EMOJI_TONES:
        return " " + choose_template("friendly_emoji", rng)
    return ""


def shorten(message: str, max_words: int = 3) -> str:
    parts = message.split()
    if len(parts) <= max_words:
        return message
    return " ".join(parts[:max_words])
