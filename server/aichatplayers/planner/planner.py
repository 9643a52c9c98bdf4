from __future__ import annotations

import logging
import random
import threading
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from aichatplayers.config import LLMConfig
from aichatplayers.llm.client import DisabledGenerator, Generator
from aichatplayers.planner.generation import SlotGenerator, strategy_label
from aichatplayers.planner.memory import SMALL_TALK_KEY, AntiSpamMemory
from aichatplayers.planner.models import (
    DEFAULT_SERVER_ID,
    BotProfile,
    ChatMessage,
    PlanDebug,
    PlannedAction,
    PlanRequest,
    PlanResponse,
    PlanSettings,
)
from aichatplayers.planner.rng import seeded_random
from aichatplayers.planner.topics import Topic, detect_topics


LOGGER = logging.getLogger("aichatplayers.planner.planner")

STRATEGY_HEURISTICS = "heuristics"
STRATEGY_SILENCE = "silence"
STRATEGY_SMALL_TALK = "small_talk"
STRATEGY_TOXIC_SILENCE = "toxic_silence"
STRATEGY_REPLY_SUPPRESSED = "reply_suppressed"

DEFAULT_MAX_ACTIONS = 2
DEFAULT_MIN_DELAY_MS = 800
DEFAULT_DELAY_SPAN_MS = 1200
DEFAULT_REPLY_CHANCE = 0.6

BOT_SENDER_TYPE = "bot"


def _clamp_float(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def normalize_settings(settings: PlanSettings) -> PlanSettings:
    max_actions = settings.max_actions if settings.max_actions > 0 else DEFAULT_MAX_ACTIONS
    min_delay = settings.min_delay_ms if settings.min_delay_ms > 0 else DEFAULT_MIN_DELAY_MS
    max_delay = settings.max_delay_ms if settings.max_delay_ms > min_delay else min_delay + DEFAULT_DELAY_SPAN_MS
    reply_chance = settings.reply_chance if settings.reply_chance > 0 else DEFAULT_REPLY_CHANCE
    return PlanSettings(
        max_actions=max_actions,
        min_delay_ms=min_delay,
        max_delay_ms=max_delay,
        global_silence_chance=_clamp_float(settings.global_silence_chance, 0.0, 1.0),
        reply_chance=reply_chance,
    )


def latest_bot_sender(chat: Sequence[ChatMessage]) -> str:
    """Sender of the newest message when that message came from a bot, else ""."""
    latest: ChatMessage | None = None
    for message in chat:
        if latest is None or message.ts_ms >= latest.ts_ms:
            latest = message
    if latest is None or latest.sender_type.strip().lower() != BOT_SENDER_TYPE:
        return ""
    return latest.sender.strip().lower()


def filter_available_bots(bots: Sequence[BotProfile], chat: Sequence[ChatMessage] = ()) -> list[BotProfile]:
    last_bot = latest_bot_sender(chat)
    available = []
    for bot in bots:
        if not bot.online or bot.cooldown_ms > 0:
            continue
        if last_bot and last_bot in (bot.bot_id.strip().lower(), bot.name.strip().lower()):
            continue
        available.append(bot)
    return available


def pick_bots(bots: Sequence[BotProfile], limit: int, rng: random.Random) -> list[BotProfile]:
    if len(bots) <= limit:
        return list(bots)
    return [bots[index] for index in rng.sample(range(len(bots)), limit)]


def random_delay(settings: PlanSettings, rng: random.Random) -> int:
    if settings.max_delay_ms <= settings.min_delay_ms:
        return settings.min_delay_ms
    return rng.randint(settings.min_delay_ms, settings.max_delay_ms)


def bot_ids(bots: Sequence[BotProfile]) -> list[str]:
    return [bot.bot_id for bot in bots if bot.bot_id]


@dataclass
class PlannerConfig:
    soft_timeout_sec: float = 1.0
    chat_history_limit: int = 6
    workers: int = 4

    @classmethod
    def from_llm_config(cls, cfg: LLMConfig) -> "PlannerConfig":
        return cls(
            soft_timeout_sec=cfg.soft_timeout_sec,
            chat_history_limit=cfg.chat_history_limit,
            workers=cfg.workers,
        )


@dataclass
class _Batch:
    actions: list[PlannedAction]
    suppressed: int = 0
    attempted: bool = False
    used: bool = False


class Planner:
    """Decides which bots speak on one tick and what they say.

    A planner owns its cooldown memory and bot registry; both are safe to
    share across concurrent ``plan`` calls. Randomness is seeded per request
    so identical requests produce identical plans.
    """

    def __init__(
        self,
        generator: Generator | None = None,
        config: PlannerConfig | None = None,
        memory: AntiSpamMemory | None = None,
    ) -> None:
        self.generator = generator or DisabledGenerator()
        self.config = config or PlannerConfig()
        self.memory = memory or AntiSpamMemory()
        self._registry: dict[str, dict[str, BotProfile]] = {}
        self._registry_lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        if self.generator.enabled and self.config.soft_timeout_sec > 0:
            self._executor = ThreadPoolExecutor(
                max_workers=max(1, self.config.workers),
                thread_name_prefix="llm-delegate",
            )
        self.slots = SlotGenerator(
            self.generator,
            self._executor,
            self.config.soft_timeout_sec,
            self.config.chat_history_limit,
        )

    def register_bots(self, server_id: str, bots: Sequence[BotProfile]) -> int:
        server_key = server_id or DEFAULT_SERVER_ID
        count = 0
        with self._registry_lock:
            registered = self._registry.setdefault(server_key, {})
            for bot in bots:
                if not bot.bot_id:
                    continue
                registered[bot.bot_id] = bot
                count += 1
        LOGGER.info("planner_register server_id=%s bots_total=%s registered=%s", server_key, len(bots), count)
        return count

    def registered_bots(self, server_id: str) -> list[BotProfile]:
        with self._registry_lock:
            return list(self._registry.get(server_id or DEFAULT_SERVER_ID, {}).values())

    def plan(self, request: PlanRequest) -> PlanResponse:
        request_id = request.request_id
        LOGGER.info(
            "planner_plan_start request_id=%s server_id=%s tick=%s time_ms=%s bots=%s chat_messages=%s",
            request_id,
            request.server.server_id,
            request.tick,
            request.time_ms,
            len(request.bots),
            len(request.chat),
        )
        rng = seeded_random(request_id, request.tick, request.time_ms)

        bots: Sequence[BotProfile] = request.bots
        if not bots:
            bots = self.registered_bots(request.server.server_id)
            if bots:
                LOGGER.debug("planner_plan_registry request_id=%s bots=%s", request_id, len(bots))
        available = filter_available_bots(bots, request.chat)
        if not available:
            LOGGER.info("planner_plan_no_available_bots request_id=%s", request_id)
            return PlanResponse(request_id=request_id)

        topics = detect_topics(request.chat)
        settings = normalize_settings(request.settings)
        LOGGER.info(
            "planner_plan_context request_id=%s topics=%s available_bots=%s settings=%s",
            request_id,
            [topic.value for topic in topics],
            bot_ids(available),
            settings,
        )

        strategy, batch = self._build_plan(request, topics, available, settings, rng)
        LOGGER.info(
            "planner_plan_result request_id=%s strategy=%s actions=%s suppressed=%s",
            request_id,
            strategy,
            len(batch.actions),
            batch.suppressed,
        )
        return PlanResponse(
            request_id=request_id,
            actions=tuple(batch.actions),
            debug=PlanDebug(chosen_strategy=strategy, suppressed_replies=batch.suppressed),
        )

    def _build_plan(
        self,
        request: PlanRequest,
        topics: list[Topic],
        bots: list[BotProfile],
        settings: PlanSettings,
        rng: random.Random,
    ) -> tuple[str, _Batch]:
        request_id = request.request_id
        if not topics:
            if rng.random() < settings.global_silence_chance:
                LOGGER.info("planner_plan_silence request_id=%s reason=global_silence", request_id)
                return STRATEGY_SILENCE, _Batch([], suppressed=1)
            LOGGER.info("planner_plan_small_talk request_id=%s", request_id)
            batch = self._small_talk(request, bots, settings, rng)
            return strategy_label(STRATEGY_SMALL_TALK, batch.attempted, batch.used), batch

        if Topic.TOXIC in topics:
            LOGGER.info("planner_plan_toxic_silence request_id=%s topic=%s", request_id, Topic.TOXIC.value)
            return STRATEGY_TOXIC_SILENCE, _Batch([], suppressed=len(bots))

        if rng.random() > settings.reply_chance:
            LOGGER.info(
                "planner_plan_reply_suppressed request_id=%s reply_chance=%.2f",
                request_id,
                settings.reply_chance,
            )
            return STRATEGY_REPLY_SUPPRESSED, _Batch([], suppressed=1)

        batch = self._replies(request, topics, bots, settings, rng)
        return strategy_label(STRATEGY_HEURISTICS, batch.attempted, batch.used), batch

    def _replies(
        self,
        request: PlanRequest,
        topics: list[Topic],
        bots: list[BotProfile],
        settings: PlanSettings,
        rng: random.Random,
    ) -> _Batch:
        request_id = request.request_id
        server_id = request.server.server_id
        batch = _Batch([])
        selected = pick_bots(bots, settings.max_actions, rng)
        LOGGER.debug(
            "planner_plan_selected_bots request_id=%s bots=%s topics=%s",
            request_id,
            bot_ids(selected),
            [topic.value for topic in topics],
        )
        for topic in topics:
            for bot in selected:
                if len(batch.actions) >= settings.max_actions:
                    break
                if self.memory.should_suppress(server_id, bot.bot_id, topic, request.time_ms):
                    LOGGER.info(
                        "planner_plan_suppress request_id=%s bot_id=%s topic=%s",
                        request_id,
                        bot.bot_id,
                        topic.value,
                    )
                    batch.suppressed += 1
                    continue
                result = self.slots.generate(
                    request_id=request_id,
                    server=request.server,
                    bot=bot,
                    topic=topic,
                    chat=request.chat,
                    rng=rng,
                )
                batch.attempted = batch.attempted or result.attempted
                batch.used = batch.used or result.used
                if not result.message:
                    LOGGER.debug(
                        "planner_plan_no_message request_id=%s bot_id=%s topic=%s",
                        request_id,
                        bot.bot_id,
                        topic.value,
                    )
                    continue
                batch.actions.append(
                    PlannedAction(
                        bot_id=bot.bot_id,
                        send_after_ms=random_delay(settings, rng),
                        message=result.message,
                        reason=result.reason,
                    )
                )
                self.memory.remember(server_id, bot.bot_id, topic, request.time_ms)
                LOGGER.info(
                    "planner_plan_action request_id=%s bot_id=%s topic=%s reason=%s",
                    request_id,
                    bot.bot_id,
                    topic.value,
                    result.reason,
                )
        return batch

    def _small_talk(
        self,
        request: PlanRequest,
        bots: list[BotProfile],
        settings: PlanSettings,
        rng: random.Random,
    ) -> _Batch:
        request_id = request.request_id
        batch = _Batch([])
        for bot in pick_bots(bots, 1, rng):
            result = self.slots.generate(
                request_id=request_id,
                server=request.server,
                bot=bot,
                topic=None,
                chat=request.chat,
                rng=rng,
            )
            batch.attempted = batch.attempted or result.attempted
            batch.used = batch.used or result.used
            if not result.message:
                LOGGER.debug("planner_plan_small_talk_no_message request_id=%s bot_id=%s", request_id, bot.bot_id)
                continue
            batch.actions.append(
                PlannedAction(
                    bot_id=bot.bot_id,
                    send_after_ms=random_delay(settings, rng),
                    message=result.message,
                    reason=result.reason,
                )
            )
            self.memory.remember(request.server.server_id, bot.bot_id, SMALL_TALK_KEY, request.time_ms)
            LOGGER.info(
                "planner_plan_small_talk_action request_id=%s bot_id=%s reason=%s",
                request_id,
                bot.bot_id,
                result.reason,
            )
        return batch

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        self.slots.executor = None
