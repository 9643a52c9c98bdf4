from __future__ import annotations

from aichatplayers.llm.errors import ForbiddenOutputError
from aichatplayers.planner.models import SILENCE_TOKEN


BOT_MARKERS = ("(bot)", "[bot]", "<bot>", "(system)", "[system]")
QUOTE_CHARS = "\"'`“”„«»‘’"
NAME_SEPARATORS = (":", " :", "-", " -", " —", "—", "–", " –", ">")
_LEADING_DASHES = "-—–"


def strip_prompt_echo(prompt: str, output: str) -> str:
    text = output.strip()
    echoed = prompt.strip()
    if echoed and text.startswith(echoed):
        text = text[len(echoed):]
    return text.strip()


def first_non_empty_line(output: str) -> str:
    for line in output.splitlines():
        trimmed = line.strip()
        if trimmed:
            return trimmed
    return ""


def strip_quotes(value: str) -> str:
    return "".join(ch for ch in value if ch not in QUOTE_CHARS)


def strip_bot_markers(value: str) -> str:
    for marker in BOT_MARKERS:
        lowered = value.lower()
        idx = lowered.find(marker)
        while idx != -1:
            value = value[:idx] + value[idx + len(marker):]
            lowered = value.lower()
            idx = lowered.find(marker)
    return value


def strip_bot_prefix(message: str, bot_name: str) -> str:
    trimmed = message.strip()
    if not bot_name:
        return trimmed
    lowered = trimmed.lower()
    lowered_bot = bot_name.strip().lower()
    for separator in NAME_SEPARATORS:
        prefix = lowered_bot + separator
        if lowered.startswith(prefix):
            rest = trimmed[len(prefix):].strip()
            return rest.lstrip(_LEADING_DASHES).strip()
    return trimmed


def has_name_prefix(value: str, bot_name: str) -> bool:
    if not bot_name:
        return False
    lowered = value.strip().lower()
    lowered_bot = bot_name.strip().lower()
    return any(lowered.startswith(lowered_bot + separator) for separator in NAME_SEPARATORS)


def is_forbidden_output(value: str, bot_name: str) -> bool:
    if any(ch in QUOTE_CHARS for ch in value):
        return True
    lowered = value.lower()
    if any(marker in lowered for marker in BOT_MARKERS):
        return True
    return has_name_prefix(value, bot_name)


def truncate_words(value: str, limit: int) -> str:
    if limit <= 0:
        return value
    words = value.split()
    if len(words) <= limit:
        return value
    return " ".join(words[:limit])


def normalize_output(output: str, bot_name: str, max_chars: int = 80, max_words: int = 0) -> str:
    """Reduce raw model output to one chat line.

    Returns ``SILENCE_TOKEN`` when the model chose silence or nothing is
    left after cleanup. Raises ``ForbiddenOutputError`` when the cleaned
    line still carries quotes, bot markers or the bot's own name prefix.
    """
    line = first_non_empty_line(output)
    if not line or line.lower() == SILENCE_TOKEN.lower():
        return SILENCE_TOKEN

    line = strip_bot_markers(line)
    line = strip_quotes(line)
    line = strip_bot_prefix(line, bot_name).strip()
    if not line or line.lower() == SILENCE_TOKEN.lower():
        return SILENCE_TOKEN

    line = truncate_words(line, max_words)
    if max_chars > 0 and len(line) > max_chars:
        # str slicing is per code point, so multi-byte characters stay whole.
        line = line[:max_chars].strip()
        if not line:
            return SILENCE_TOKEN

    if is_forbidden_output(line, bot_name):
        raise ForbiddenOutputError(f"llm output rejected after cleanup: {line!r}")
    return line


def sanitize_response(prompt: str, output: str, bot_name: str, max_chars: int = 80, max_words: int = 0) -> str:
    return normalize_output(strip_prompt_echo(prompt, output), bot_name, max_chars=max_chars, max_words=max_words)
