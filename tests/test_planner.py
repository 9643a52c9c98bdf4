import threading
from concurrent.futures import ThreadPoolExecutor

from aichatplayers.llm.errors import GenerationError, GenerationTimeout
from aichatplayers.planner.memory import SMALL_TALK_KEY
from aichatplayers.planner.models import (
    SILENCE_TOKEN,
    BotProfile,
    ChatMessage,
    Persona,
    PlanRequest,
    PlanSettings,
    ServerContext,
)
from aichatplayers.planner.planner import (
    Planner,
    PlannerConfig,
    filter_available_bots,
    normalize_settings,
    pick_bots,
)
from aichatplayers.planner.rng import seeded_random
from aichatplayers.planner.topics import Topic


REPLY_ALWAYS = PlanSettings(reply_chance=1.0)


def _bot(bot_id: str = "bot_01", name: str = "Kuba", **kwargs) -> BotProfile:
    return BotProfile(bot_id=bot_id, name=name, **kwargs)


def _chat(*texts: str, sender: str = "Gracz", sender_type: str = "PLAYER") -> tuple[ChatMessage, ...]:
    return tuple(
        ChatMessage(ts_ms=1_000 + index, sender=sender, sender_type=sender_type, message=text)
        for index, text in enumerate(texts)
    )


def _request(
    chat: tuple[ChatMessage, ...] = (),
    bots: tuple[BotProfile, ...] | None = None,
    settings: PlanSettings = PlanSettings(),
    request_id: str = "req-1",
    tick: int = 1,
    time_ms: int = 100_000,
    server_id: str = "srv",
) -> PlanRequest:
    return PlanRequest(
        request_id=request_id,
        server=ServerContext(server_id=server_id, mode="LOBBY", online_players=10),
        tick=tick,
        time_ms=time_ms,
        bots=(_bot(),) if bots is None else bots,
        chat=chat,
        settings=settings,
    )


class FailingGenerator:
    enabled = True

    def __init__(self) -> None:
        self.calls = 0

    def generate(self, ctx, request) -> str:
        self.calls += 1
        raise GenerationError("server unreachable")

    def close(self) -> None:
        return None


class StaticGenerator:
    enabled = True

    def __init__(self, text: str) -> None:
        self.text = text
        self.requests = []

    def generate(self, ctx, request) -> str:
        self.requests.append(request)
        return self.text

    def close(self) -> None:
        return None


class HangingGenerator:
    enabled = True

    def __init__(self) -> None:
        self.contexts = []

    def generate(self, ctx, request) -> str:
        self.contexts.append(ctx)
        ctx.cancelled.wait(5.0)
        raise GenerationTimeout("cancelled")

    def close(self) -> None:
        return None


def test_greeting_reply_from_single_bot() -> None:
    planner = Planner()
    response = planner.plan(_request(chat=_chat("siema"), settings=REPLY_ALWAYS))

    assert response.request_id == "req-1"
    assert len(response.actions) == 1
    action = response.actions[0]
    assert action.bot_id == "bot_01"
    assert action.reason == "greeting"
    assert action.message
    assert action.visibility == "PUBLIC"
    assert 800 <= action.send_after_ms <= 2_000
    assert response.debug.chosen_strategy == "heuristics"
    assert response.debug.suppressed_replies == 0


def test_toxic_chat_silences_every_bot() -> None:
    response = Planner().plan(_request(chat=_chat("kurwa", "siema")))
    assert response.actions == ()
    assert response.debug.chosen_strategy == "toxic_silence"
    assert response.debug.suppressed_replies == 1

    bots = (_bot("bot_01"), _bot("bot_02", "Maja"), _bot("bot_03", "Ola", online=False))
    response = Planner().plan(_request(chat=_chat("ty idiota", "siema"), bots=bots))
    assert response.debug.chosen_strategy == "toxic_silence"
    assert response.debug.suppressed_replies == 2


def test_full_silence_chance_is_always_silent() -> None:
    planner = Planner()
    settings = PlanSettings(global_silence_chance=1.0)
    for index in range(50):
        response = planner.plan(_request(settings=settings, request_id=f"req-{index}", tick=index))
        assert response.actions == ()
        assert response.debug.chosen_strategy == "silence"
        assert response.debug.suppressed_replies == 1


def test_small_talk_picks_one_bot_and_remembers_it() -> None:
    planner = Planner()
    bots = (_bot("bot_01"), _bot("bot_02", "Maja"), _bot("bot_03", "Ola"))
    response = planner.plan(_request(bots=bots))

    assert response.debug.chosen_strategy == "small_talk"
    assert len(response.actions) == 1
    action = response.actions[0]
    assert action.reason == "small_talk"
    assert planner.memory.last_sent("srv", action.bot_id, SMALL_TALK_KEY) == 100_000


def test_identical_requests_give_identical_plans() -> None:
    bots = tuple(_bot(f"bot_{index:02d}", f"Bot{index}") for index in range(5))
    chat = _chat("siema", "kto na pvp", "event start!", "jak zrobic kilof")
    request = _request(chat=chat, bots=bots, settings=PlanSettings(max_actions=4, reply_chance=1.0))

    first = Planner().plan(request).to_payload()
    second = Planner().plan(request).to_payload()
    assert first == second
    assert first["actions"]


def test_concurrent_plans_match_sequential_results() -> None:
    bots = tuple(_bot(f"bot_{index:02d}", f"Bot{index}") for index in range(4))
    chat = _chat("siema", "gdzie jest spawn")
    requests = [
        _request(chat=chat, bots=bots, settings=REPLY_ALWAYS, server_id=f"srv-{index}", request_id=f"req-{index}")
        for index in range(24)
    ]
    expected = [Planner().plan(request).to_payload() for request in requests]

    shared = Planner()
    with ThreadPoolExecutor(max_workers=8) as pool:
        actual = list(pool.map(lambda request: shared.plan(request).to_payload(), requests))
    assert actual == expected


def test_recent_emission_is_suppressed_and_counted() -> None:
    planner = Planner()
    request = _request(chat=_chat("siema"), settings=REPLY_ALWAYS)
    assert len(planner.plan(request).actions) == 1

    repeated = planner.plan(request)
    assert repeated.actions == ()
    assert repeated.debug.chosen_strategy == "heuristics"
    assert repeated.debug.suppressed_replies == 1

    later = planner.plan(_request(chat=_chat("siema"), settings=REPLY_ALWAYS, time_ms=115_000))
    assert len(later.actions) == 1


def test_avoided_pvp_topic_never_gets_a_reply() -> None:
    bot = _bot(persona=Persona(avoid_topics=("pvp_duel_requests",)))
    for index in range(100):
        response = Planner().plan(
            _request(chat=_chat("kto pvp?"), bots=(bot,), settings=REPLY_ALWAYS, request_id=f"pvp-{index}")
        )
        assert response.actions == ()
        assert all(action.reason != "avoid_real_pvp" for action in response.actions)


def test_zero_max_actions_means_two() -> None:
    bots = tuple(_bot(f"bot_{index:02d}", f"Bot{index}") for index in range(4))
    response = Planner().plan(
        _request(chat=_chat("siema"), bots=bots, settings=PlanSettings(max_actions=0, reply_chance=1.0))
    )
    assert len(response.actions) == 2
    assert len({action.bot_id for action in response.actions}) == 2


def test_settings_normalization() -> None:
    settings = normalize_settings(
        PlanSettings(max_actions=0, min_delay_ms=500, max_delay_ms=100, global_silence_chance=3.0, reply_chance=0)
    )
    assert settings == PlanSettings(
        max_actions=2,
        min_delay_ms=500,
        max_delay_ms=1_700,
        global_silence_chance=1.0,
        reply_chance=0.6,
    )
    assert normalize_settings(PlanSettings(global_silence_chance=-1.0)).global_silence_chance == 0.0
    assert normalize_settings(PlanSettings()).min_delay_ms == 800


def test_delays_stay_inside_configured_range() -> None:
    bots = tuple(_bot(f"bot_{index:02d}", f"Bot{index}") for index in range(3))
    settings = PlanSettings(max_actions=3, min_delay_ms=1_000, max_delay_ms=1_500, reply_chance=1.0)
    for index in range(20):
        response = Planner().plan(
            _request(chat=_chat("siema", "event start"), bots=bots, settings=settings, request_id=f"d-{index}")
        )
        for action in response.actions:
            assert 1_000 <= action.send_after_ms <= 1_500


def test_offline_and_cooling_bots_are_filtered() -> None:
    bots = (_bot("a"), _bot("b", online=False), _bot("c", cooldown_ms=500), _bot("d", cooldown_ms=-1))
    assert [bot.bot_id for bot in filter_available_bots(bots)] == ["a", "d"]


def test_bot_does_not_reply_to_itself() -> None:
    bots = (_bot("bot_01", "Kuba"), _bot("bot_02", "Maja"))
    chat = (
        ChatMessage(ts_ms=1_000, sender="Gracz", sender_type="PLAYER", message="siema"),
        ChatMessage(ts_ms=2_000, sender="kuba", sender_type="BOT", message="siema"),
    )
    assert [bot.bot_id for bot in filter_available_bots(bots, chat)] == ["bot_02"]

    response = Planner().plan(_request(chat=chat, bots=bots, settings=REPLY_ALWAYS))
    assert response.actions
    assert {action.bot_id for action in response.actions} == {"bot_02"}


def test_self_reply_guard_uses_latest_timestamp() -> None:
    bots = (_bot("bot_01", "Kuba"), _bot("bot_02", "Maja"))
    bot_last_in_time = (
        ChatMessage(ts_ms=5_000, sender="BOT_02", sender_type="bot", message="siema"),
        ChatMessage(ts_ms=1_000, sender="Gracz", sender_type="PLAYER", message="siema"),
    )
    assert [bot.bot_id for bot in filter_available_bots(bots, bot_last_in_time)] == ["bot_01"]

    player_last = (
        ChatMessage(ts_ms=1_000, sender="Kuba", sender_type="BOT", message="siema"),
        ChatMessage(ts_ms=2_000, sender="Gracz", sender_type="PLAYER", message="siema"),
    )
    assert len(filter_available_bots(bots, player_last)) == 2


def test_no_available_bots_returns_empty_plan() -> None:
    response = Planner().plan(_request(chat=_chat("siema"), bots=(_bot(online=False),)))
    assert response.actions == ()
    assert response.debug.chosen_strategy == ""
    assert response.debug.suppressed_replies == 0


def test_registered_bots_are_used_when_request_has_none() -> None:
    planner = Planner()
    assert planner.register_bots("srv", [_bot("bot_07", "Ola"), BotProfile(bot_id="")]) == 1

    response = planner.plan(_request(chat=_chat("siema"), bots=(), settings=REPLY_ALWAYS))
    assert [action.bot_id for action in response.actions] == ["bot_07"]

    response = planner.plan(_request(chat=_chat("siema"), bots=(), settings=REPLY_ALWAYS, server_id="other"))
    assert response.actions == ()


def test_registry_defaults_server_id() -> None:
    planner = Planner()
    planner.register_bots("", [_bot("bot_01")])
    assert [bot.bot_id for bot in planner.registered_bots("default")] == ["bot_01"]
    assert [bot.bot_id for bot in planner.registered_bots("")] == ["bot_01"]


def test_failed_delegation_falls_back_to_heuristics() -> None:
    generator = FailingGenerator()
    planner = Planner(generator=generator, config=PlannerConfig(soft_timeout_sec=0.5))
    try:
        response = planner.plan(_request(chat=_chat("siema"), settings=REPLY_ALWAYS))
        assert generator.calls == 1
        assert len(response.actions) == 1
        assert response.actions[0].reason == "greeting"
        assert response.debug.chosen_strategy == "heuristics_fallback"

        small_talk = planner.plan(_request(request_id="req-2"))
        assert small_talk.debug.chosen_strategy == "small_talk_fallback"
        assert all(action.reason != "llm" for action in small_talk.actions)
    finally:
        planner.close()


def test_successful_delegation_is_reported_as_llm() -> None:
    generator = StaticGenerator("no siema, co tam")
    planner = Planner(generator=generator, config=PlannerConfig(soft_timeout_sec=0.5, chat_history_limit=1))
    try:
        response = planner.plan(_request(chat=_chat("hej", "siema"), settings=REPLY_ALWAYS))
    finally:
        planner.close()

    assert [(action.message, action.reason) for action in response.actions] == [("no siema, co tam", "llm")]
    assert response.debug.chosen_strategy == "llm"
    sent = generator.requests[0]
    assert sent.topic == "greeting"
    assert [message.message for message in sent.recent_chat] == ["siema"]


def test_model_silence_is_planned_as_sentinel_action() -> None:
    planner = Planner(generator=StaticGenerator(SILENCE_TOKEN), config=PlannerConfig(soft_timeout_sec=0))
    response = planner.plan(_request(chat=_chat("siema"), settings=REPLY_ALWAYS))

    assert [(action.message, action.reason, action.visibility) for action in response.actions] == [
        (SILENCE_TOKEN, "llm", "PUBLIC")
    ]
    assert response.debug.chosen_strategy == "llm"
    assert planner.memory.last_sent("srv", "bot_01", Topic.GREETING) == 100_000

    repeat = planner.plan(_request(request_id="req-2", chat=_chat("siema"), settings=REPLY_ALWAYS, time_ms=105_000))
    assert repeat.actions == ()
    assert repeat.debug.suppressed_replies == 1


def test_empty_model_text_falls_back_to_template() -> None:
    planner = Planner(generator=StaticGenerator(""), config=PlannerConfig(soft_timeout_sec=0))
    response = planner.plan(_request(chat=_chat("siema"), settings=REPLY_ALWAYS))

    assert [action.reason for action in response.actions] == ["greeting"]
    assert response.debug.chosen_strategy == "heuristics_fallback"


def test_avoid_topic_veto_runs_before_delegation() -> None:
    generator = StaticGenerator("jasne, 1v1")
    bot = _bot(persona=Persona(avoid_topics=("pvp",)))
    planner = Planner(generator=generator, config=PlannerConfig(soft_timeout_sec=0))
    response = planner.plan(_request(chat=_chat("kto pvp"), bots=(bot,), settings=REPLY_ALWAYS))

    assert generator.requests == []
    assert response.actions == ()
    assert response.debug.chosen_strategy == "heuristics"


def test_soft_timeout_cancels_delegation_and_falls_back() -> None:
    generator = HangingGenerator()
    planner = Planner(generator=generator, config=PlannerConfig(soft_timeout_sec=0.2))
    try:
        response = planner.plan(_request(chat=_chat("siema"), settings=REPLY_ALWAYS))
    finally:
        planner.close()

    assert response.debug.chosen_strategy == "heuristics_fallback"
    assert response.actions[0].reason == "greeting"
    assert generator.contexts[0].is_cancelled


def test_pick_bots_returns_all_when_not_enough() -> None:
    bots = [_bot("a"), _bot("b")]
    rng = seeded_random("req", 1, 2)
    assert pick_bots(bots, 3, rng) == bots
    assert len(pick_bots(bots, 1, rng)) == 1


def test_seed_is_plain_concatenation_of_inputs() -> None:
    assert seeded_random("a", 1, 2).random() == seeded_random("a", 1, 2).random()
    assert seeded_random("a", 12, 3).random() == seeded_random("a", 1, 23).random()
    assert seeded_random("req", 1, 2).random() != seeded_random("req", 2, 1).random()


def test_planner_memory_is_private_per_instance() -> None:
    request = _request(chat=_chat("siema"), settings=REPLY_ALWAYS)
    first = Planner()
    first.plan(request)
    assert first.memory.size() == 1
    assert Planner().memory.size() == 0


def test_register_is_safe_under_concurrency() -> None:
    planner = Planner()

    def register(index: int) -> None:
        planner.register_bots("srv", [_bot(f"bot_{index}")])

    threads = [threading.Thread(target=register, args=(index,)) for index in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(planner.registered_bots("srv")) == 16
