from __future__ import annotations

import logging
import random
from collections.abc import Sequence
from concurrent.futures import Executor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass

from aichatplayers.llm.client import GenerationContext, Generator
from aichatplayers.llm.errors import GenerationError
from aichatplayers.llm.prompt import SMALL_TALK_TOPIC, GenerationRequest
from aichatplayers.planner.heuristics import generate_response, should_avoid_topic
from aichatplayers.planner.models import SILENCE_TOKEN, BotProfile, ChatMessage, ServerContext
from aichatplayers.planner.topics import Topic


LOGGER = logging.getLogger("aichatplayers.planner.generation")

REASON_LLM = "llm"
FALLBACK_SUFFIX = "_fallback"


def recent_chat(messages: Sequence[ChatMessage], limit: int) -> tuple[ChatMessage, ...]:
    if limit <= 0 or not messages:
        return ()
    return tuple(messages[-limit:])


def strategy_label(base: str, attempted: bool, used: bool) -> str:
    if used:
        return REASON_LLM
    if attempted:
        return base + FALLBACK_SUFFIX
    return base


@dataclass(frozen=True)
class SlotResult:
    message: str = ""
    reason: str = ""
    attempted: bool = False
    used: bool = False


class SlotGenerator:
    """Text for one (topic, bot) slot: delegated first, template fallback.

    The avoid-topic veto is checked before anything else and wins over both
    paths. Delegated calls run on ``executor`` and are abandoned once the
    soft timeout passes, which leaves the caller time to fall back.
    """

    def __init__(
        self,
        generator: Generator,
        executor: Executor | None,
        soft_timeout_sec: float,
        chat_history_limit: int,
    ) -> None:
        self.generator = generator
        self.executor = executor
        self.soft_timeout_sec = soft_timeout_sec
        self.chat_history_limit = chat_history_limit

    @property
    def delegation_enabled(self) -> bool:
        return bool(self.generator.enabled)

    def generate(
        self,
        *,
        request_id: str,
        server: ServerContext,
        bot: BotProfile,
        topic: Topic | None,
        chat: Sequence[ChatMessage],
        rng: random.Random,
    ) -> SlotResult:
        persona = bot.persona
        if should_avoid_topic(topic, persona.avoid_topics):
            return SlotResult()

        topic_name = topic.value if topic is not None else SMALL_TALK_TOPIC
        if not self.delegation_enabled:
            message, reason = generate_response(topic, persona, rng)
            self._log_heuristic(request_id, bot, topic_name, message, reason)
            return SlotResult(message, reason)

        text = self._delegate(
            GenerationRequest(
                server=server,
                bot=bot,
                topic=topic_name,
                recent_chat=recent_chat(chat, self.chat_history_limit),
                request_id=request_id,
            )
        )
        if text:
            if text.strip().lower() == SILENCE_TOKEN.lower():
                LOGGER.info(
                    "planner_llm_silence request_id=%s bot_id=%s topic=%s",
                    request_id,
                    bot.bot_id,
                    topic_name,
                )
                return SlotResult(SILENCE_TOKEN, REASON_LLM, attempted=True, used=True)
            LOGGER.info("planner_llm_response request_id=%s bot_id=%s topic=%s", request_id, bot.bot_id, topic_name)
            return SlotResult(text, REASON_LLM, attempted=True, used=True)

        message, reason = generate_response(topic, persona, rng)
        self._log_heuristic(request_id, bot, topic_name, message, reason)
        return SlotResult(message, reason, attempted=True)

    def _delegate(self, request: GenerationRequest) -> str | None:
        soft = self.soft_timeout_sec
        ctx = GenerationContext.with_timeout(soft)
        try:
            if self.executor is None or soft <= 0:
                return self.generator.generate(ctx, request)
            future = self.executor.submit(self.generator.generate, ctx, request)
            try:
                return future.result(timeout=soft)
            except FutureTimeoutError:
                ctx.cancel()
                future.cancel()
                LOGGER.warning(
                    "planner_llm_error request_id=%s bot_id=%s topic=%s error=soft_timeout timeout_sec=%.3f",
                    request.request_id,
                    request.bot.bot_id,
                    request.topic,
                    soft,
                )
                return None
        except GenerationError as exc:
            LOGGER.warning(
                "planner_llm_error request_id=%s bot_id=%s topic=%s error=%s",
                request.request_id,
                request.bot.bot_id,
                request.topic,
                exc,
            )
            return None

    def _log_heuristic(self, request_id: str, bot: BotProfile, topic_name: str, message: str, reason: str) -> None:
        if message:
            LOGGER.debug(
                "planner_heuristic_response request_id=%s bot_id=%s topic=%s reason=%s",
                request_id,
                bot.bot_id,
                topic_name,
                reason,
            )
