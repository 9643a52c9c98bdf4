from __future__ import annotations

import unicodedata
from collections import Counter
from collections.abc import Sequence
from enum import Enum

from aichatplayers.planner.models import ChatMessage


MAX_RECENT_MESSAGES = 10


class Topic(str, Enum):
    GREETING = "greeting"
    PVP_INVITE = "pvp_invite"
    EVENT = "event"
    HELP = "help"
    TOXIC = "toxic"


# Tie-break order for equal counts.
CANONICAL_ORDER: tuple[Topic, ...] = (
    Topic.GREETING,
    Topic.PVP_INVITE,
    Topic.EVENT,
    Topic.HELP,
    Topic.TOXIC,
)

KEYWORDS: dict[Topic, tuple[str, ...]] = {
    Topic.GREETING: ("siema", "hej", "czesc", "elo", "yo", "witam"),
    Topic.PVP_INVITE: ("kto pvp", "pvp", "klepac", "1v1", "duel", "pojedynek"),
    Topic.EVENT: ("event", "start", "drop", "turniej", "boss"),
    Topic.HELP: ("jak", "gdzie", "co robic", "pomoc", "help"),
    Topic.TOXIC: ("kurwa", "chuj", "chujowy", "jebac", "idiota"),
}

# A message counts towards the first matching topic only.
PRECEDENCE: tuple[Topic, ...] = (
    Topic.TOXIC,
    Topic.EVENT,
    Topic.PVP_INVITE,
    Topic.HELP,
    Topic.GREETING,
)

_FOLD_TABLE = str.maketrans({"ł": "l", "ø": "o", "đ": "d", "ß": "ss"})


def normalize_text(text: str) -> str:
    lowered = text.lower().translate(_FOLD_TABLE)
    decomposed = unicodedata.normalize("NFKD", lowered)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def contains_any(text: str, keywords: Sequence[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def classify_message(text: str) -> Topic | None:
    normalized = normalize_text(text)
    for topic in PRECEDENCE:
        if contains_any(normalized, KEYWORDS[topic]):
            return topic
    return None


def detect_topics(messages: Sequence[ChatMessage]) -> list[Topic]:
    """Rank the topics present in the last ten chat messages.

    Topics are ordered by message count, highest first; equal counts keep
    the canonical order so the result never depends on dict iteration.
    """
    if not messages:
        return []

    recent = list(messages)[-MAX_RECENT_MESSAGES:]
    counts: Counter[Topic] = Counter()
    for message in recent:
        topic = classify_message(message.message)
        if topic is not None:
            counts[topic] += 1

    return sorted(counts, key=lambda topic: (-counts[topic], CANONICAL_ORDER.index(topic)))
