import os
import stat
import textwrap
import time

import httpx
import openai
import pytest

from aichatplayers.config import LLMConfig
from aichatplayers.llm.client import (
    DisabledGenerator,
    GenerationContext,
    ProcessClient,
    ServerClient,
    build_generator,
    extract_completion_text,
)
from aichatplayers.llm.errors import GenerationDisabled, GenerationError, GenerationTimeout, LLMUnavailableError
from aichatplayers.llm.prompt import GenerationRequest
from aichatplayers.planner.models import BotProfile, ServerContext


posix_only = pytest.mark.skipif(os.name == "nt", reason="uses POSIX shell scripts")


def _request() -> GenerationRequest:
    return GenerationRequest(
        server=ServerContext(server_id="srv", mode="LOBBY", online_players=3),
        bot=BotProfile(bot_id="bot_01", name="Kuba"),
        topic="greeting",
    )


class FakeCompletions:
    def __init__(self, result=None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.result


class FakeSDK:
    def __init__(self, completions: FakeCompletions) -> None:
        self.completions = completions
        self.timeouts = []
        self.closed = False

    def with_options(self, timeout=None):
        self.timeouts.append(timeout)
        return self

    def close(self) -> None:
        self.closed = True


def _server_client(completions: FakeCompletions, **cfg) -> tuple[ServerClient, FakeSDK]:
    sdk = FakeSDK(completions)
    client = ServerClient(LLMConfig(server_url="http://127.0.0.1:8081", **cfg), sdk_client=sdk)
    return client, sdk


def test_server_client_returns_cleaned_completion() -> None:
    completions = FakeCompletions({"choices": [{"text": "  Kuba: siemka\nreszta"}]})
    client, sdk = _server_client(completions, max_tokens=64, model_name="qwen")

    assert client.generate(GenerationContext.with_timeout(1.5), _request()) == "siemka"
    call = completions.calls[0]
    assert call["model"] == "qwen"
    assert call["max_tokens"] == 64
    assert call["stream"] is False
    assert call["prompt"].endswith("=== OUTPUT ===\n")
    assert 0 < sdk.timeouts[0] <= 1.5

    client.close()
    assert sdk.closed


def test_server_client_maps_sdk_errors() -> None:
    request = httpx.Request("POST", "http://127.0.0.1:8081/v1/completions")
    cases = [
        (openai.APITimeoutError(request=request), GenerationTimeout),
        (openai.APIConnectionError(request=request), GenerationError),
        (RuntimeError("boom"), GenerationError),
    ]
    for error, expected in cases:
        client, _ = _server_client(FakeCompletions(error=error))
        with pytest.raises(expected):
            client.generate(GenerationContext(), _request())


def test_server_client_rejects_empty_completion() -> None:
    client, _ = _server_client(FakeCompletions({"choices": [{"text": "   "}]}))
    with pytest.raises(GenerationError):
        client.generate(GenerationContext(), _request())


def test_server_client_honours_cancellation() -> None:
    completions = FakeCompletions({"content": "hej"})
    client, _ = _server_client(completions)
    ctx = GenerationContext()
    ctx.cancel()
    with pytest.raises(GenerationTimeout):
        client.generate(ctx, _request())
    assert completions.calls == []


def test_base_url_appends_v1_once() -> None:
    assert ServerClient(LLMConfig(server_url="http://127.0.0.1:8081/")).base_url == "http://127.0.0.1:8081/v1"
    assert ServerClient(LLMConfig(server_url="http://127.0.0.1:8081/v1")).base_url == "http://127.0.0.1:8081/v1"


def test_extract_completion_text_variants() -> None:
    assert extract_completion_text({"content": "native"}) == "native"
    assert extract_completion_text({"choices": [{"text": "legacy"}]}) == "legacy"
    assert extract_completion_text({"choices": [{"message": {"content": "chat"}}]}) == "chat"
    assert extract_completion_text({"choices": []}) is None
    assert extract_completion_text(object()) is None


def test_disabled_generator_always_fails() -> None:
    generator = DisabledGenerator()
    assert not generator.enabled
    with pytest.raises(GenerationDisabled):
        generator.generate(GenerationContext(), _request())


def test_generation_context_deadline() -> None:
    assert GenerationContext.with_timeout(None).remaining() is None
    ctx = GenerationContext.with_timeout(10.0)
    assert 0 < ctx.effective_timeout(2.0) <= 2.0
    assert not ctx.is_cancelled
    ctx.cancel()
    assert ctx.is_cancelled


def test_build_generator_selects_variant(tmp_path) -> None:
    assert isinstance(build_generator(LLMConfig(server_url="http://127.0.0.1:8081")), ServerClient)
    assert isinstance(build_generator(LLMConfig(models_dir=str(tmp_path))), DisabledGenerator)

    with pytest.raises(LLMUnavailableError):
        build_generator(LLMConfig(model_path=str(tmp_path / "missing.gguf"), models_dir=str(tmp_path)))

    model = tmp_path / "model.gguf"
    model.write_bytes(b"gguf")
    with pytest.raises(LLMUnavailableError):
        build_generator(
            LLMConfig(model_path=str(model), models_dir=str(tmp_path), command=str(tmp_path / "no-such-cli"))
        )


def _script(tmp_path, body: str):
    path = tmp_path / "fake-llama-cli"
    path.write_text("#!/bin/sh\n" + textwrap.dedent(body), encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@posix_only
def test_process_client_reads_stdout(tmp_path) -> None:
    script = _script(tmp_path, 'echo ""\necho "(bot) Kuba: no hej"\n')
    model = tmp_path / "model.gguf"
    model.write_bytes(b"gguf")
    cfg = LLMConfig(model_path=str(model), models_dir=str(tmp_path), command=str(script), timeout_ms=5_000)

    client = build_generator(cfg)
    assert isinstance(client, ProcessClient)
    assert client.generate(GenerationContext(), _request()) == "no hej"


def test_process_client_arguments() -> None:
    client = ProcessClient(LLMConfig(ctx_size=0, num_threads=4, max_tokens=32), command="llama-cli", model_path="m.gguf")
    args = client.arguments("PROMPT")
    assert args[:4] == ["--model", "m.gguf", "--prompt", "PROMPT"]
    assert "--ctx-size" not in args
    assert args[-2:] == ["--threads", "4"]
    assert args[args.index("--n-predict") + 1] == "32"


@posix_only
def test_process_client_reports_failed_exit(tmp_path) -> None:
    script = _script(tmp_path, "echo boom >&2\nexit 3\n")
    client = ProcessClient(LLMConfig(timeout_ms=5_000), command=str(script), model_path="m.gguf")
    with pytest.raises(GenerationError, match="exit=3"):
        client.generate(GenerationContext(), _request())


@posix_only
def test_process_client_kills_on_timeout(tmp_path) -> None:
    script = _script(tmp_path, "exec sleep 5\n")
    client = ProcessClient(LLMConfig(timeout_ms=200), command=str(script), model_path="m.gguf")
    started = time.monotonic()
    with pytest.raises(GenerationTimeout):
        client.generate(GenerationContext(), _request())
    assert time.monotonic() - started < 3.0
