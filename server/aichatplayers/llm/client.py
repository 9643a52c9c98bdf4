from __future__ import annotations

import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI

from aichatplayers.config import LLMConfig
from aichatplayers.llm.errors import (
    GenerationDisabled,
    GenerationError,
    GenerationTimeout,
    LLMUnavailableError,
)
from aichatplayers.llm.paths import file_exists, resolve_command_path, resolve_model_path
from aichatplayers.llm.process import popen_kwargs
from aichatplayers.llm.prompt import GenerationRequest, build_prompt
from aichatplayers.llm.sanitize import sanitize_response


LOGGER = logging.getLogger("aichatplayers.llm.client")

DEFAULT_COMMAND = "llama-cli"
_NO_API_KEY = "sk-no-key-required"


@dataclass
class GenerationContext:
    """Deadline and cancellation flag shared between a caller and one call."""

    deadline: float | None = None
    cancelled: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def with_timeout(cls, timeout_sec: float | None) -> "GenerationContext":
        if timeout_sec is None or timeout_sec <= 0:
            return cls()
        return cls(deadline=time.monotonic() + timeout_sec)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def effective_timeout(self, hard_timeout_sec: float) -> float:
        remaining = self.remaining()
        if remaining is None:
            return hard_timeout_sec
        return min(hard_timeout_sec, remaining)

    def cancel(self) -> None:
        self.cancelled.set()

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()


class Generator(Protocol):
    @property
    def enabled(self) -> bool: ...

    def generate(self, ctx: GenerationContext, request: GenerationRequest) -> str: ...

    def close(self) -> None: ...


class DisabledGenerator:
    enabled = False

    def generate(self, ctx: GenerationContext, request: GenerationRequest) -> str:
        raise GenerationDisabled("llm disabled")

    def close(self) -> None:
        return None


class ProcessClient:
    """Runs one inference process per call and reads the reply from stdout."""

    def __init__(self, cfg: LLMConfig, command: str, model_path: str, poll_interval_sec: float = 0.05) -> None:
        self.cfg = cfg
        self.command = command
        self.model_path = model_path
        self.poll_interval_sec = max(0.01, poll_interval_sec)

    @property
    def enabled(self) -> bool:
        return True

    def arguments(self, prompt: str) -> list[str]:
        args = [
            "--model",
            self.model_path,
            "--prompt",
            prompt,
            "--n-predict",
            str(self.cfg.max_tokens),
            "--temp",
            str(self.cfg.temperature),
            "--top-p",
            str(self.cfg.top_p),
        ]
        if self.cfg.ctx_size > 0:
            args += ["--ctx-size", str(self.cfg.ctx_size)]
        if self.cfg.num_threads > 0:
            args += ["--threads", str(self.cfg.num_threads)]
        return args

    def generate(self, ctx: GenerationContext, request: GenerationRequest) -> str:
        prompt = build_prompt(request, self.cfg)
        if not prompt.strip():
            raise GenerationError("llm prompt empty")
        if ctx.is_cancelled:
            raise GenerationTimeout("llm call cancelled before start")

        timeout = ctx.effective_timeout(self.cfg.timeout_sec)
        deadline = time.monotonic() + timeout
        try:
            proc = subprocess.Popen(
                [self.command, *self.arguments(prompt)],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                **popen_kwargs(),
            )
        except OSError as exc:
            raise GenerationError(f"llm command failed: {exc}") from exc

        while True:
            wait = min(self.poll_interval_sec, max(0.0, deadline - time.monotonic()))
            try:
                stdout, stderr = proc.communicate(timeout=wait)
                break
            except subprocess.TimeoutExpired:
                if ctx.is_cancelled or time.monotonic() >= deadline:
                    proc.kill()
                    proc.communicate()
                    raise GenerationTimeout(f"llm timeout after {timeout:.3f}s") from None

        if proc.returncode != 0:
            detail = (stderr or stdout or "").strip()
            if detail:
                raise GenerationError(f"llm command failed: exit={proc.returncode} output={detail[:300]}")
            raise GenerationError(f"llm command failed: exit={proc.returncode}")

        response = sanitize_response(
            prompt,
            stdout or "",
            request.bot.name,
            max_chars=self.cfg.max_response_chars,
            max_words=self.cfg.max_response_words,
        )
        if not response:
            raise GenerationError("llm returned empty response")
        return response

    def close(self) -> None:
        return None


class ServerClient:
    """One completion call per request against a persistent local server."""

    def __init__(self, cfg: LLMConfig, sdk_client: Any | None = None) -> None:
        self.cfg = cfg
        self.url = cfg.server_url.strip()
        self._sdk_client = sdk_client

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    @property
    def base_url(self) -> str:
        base = self.url.rstrip("/")
        return base if base.endswith("/v1") else f"{base}/v1"

    def _get_sdk_client(self) -> Any:
        if self._sdk_client is None:
            self._sdk_client = OpenAI(
                api_key=_NO_API_KEY,
                base_url=self.base_url,
                timeout=self.cfg.timeout_sec,
                max_retries=0,
            )
        return self._sdk_client

    def generate(self, ctx: GenerationContext, request: GenerationRequest) -> str:
        if not self.enabled:
            raise GenerationDisabled("llm disabled")
        prompt = build_prompt(request, self.cfg)
        if not prompt.strip():
            raise GenerationError("llm prompt empty")
        if ctx.is_cancelled:
            raise GenerationTimeout("llm call cancelled before start")

        timeout = ctx.effective_timeout(self.cfg.timeout_sec)
        if timeout <= 0:
            raise GenerationTimeout("llm deadline passed before request")

        try:
            response = self._get_sdk_client().with_options(timeout=timeout).completions.create(
                model=self.cfg.model_name,
                prompt=prompt,
                max_tokens=self.cfg.max_tokens,
                temperature=self.cfg.temperature,
                top_p=self.cfg.top_p,
                stream=False,
            )
        except APITimeoutError as exc:
            raise GenerationTimeout(f"llm timeout after {timeout:.3f}s") from exc
        except APIStatusError as exc:
            raise GenerationError(f"llm server response status={exc.status_code}") from exc
        except APIConnectionError as exc:
            raise GenerationError(f"llm server request failed: {exc}") from exc
        except Exception as exc:
            raise GenerationError(f"llm server error type={type(exc).__name__} detail={exc!r}") from exc

        content = extract_completion_text(response)
        if not content:
            raise GenerationError("llm server returned no completion text")
        response_text = sanitize_response(
            prompt,
            content,
            request.bot.name,
            max_chars=self.cfg.max_response_chars,
            max_words=self.cfg.max_response_words,
        )
        if not response_text:
            raise GenerationError("llm returned empty response")
        return response_text

    def close(self) -> None:
        if self._sdk_client is not None and hasattr(self._sdk_client, "close"):
            self._sdk_client.close()
        self._sdk_client = None


def extract_completion_text(response: Any) -> str | None:
    if isinstance(response, dict):
        as_dict = response
    else:
        try:
            as_dict = response.model_dump()
        except Exception:
            return None
    if not isinstance(as_dict, dict):
        return None

    # llama.cpp native completion payload
    content = as_dict.get("content")
    if isinstance(content, str) and content.strip():
        return content

    choices = as_dict.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    first = choices[0]
    text = first.get("text")
    if isinstance(text, str) and text.strip():
        return text
    message = first.get("message")
    if isinstance(message, dict):
        message_content = message.get("content")
        if isinstance(message_content, str) and message_content.strip():
            return message_content
    return None


def build_generator(cfg: LLMConfig) -> Generator:
    """Pick the generator variant for a configuration.

    A server URL always selects the server client. Without one, a model
    file enables the one-shot process client; no model at all disables
    delegation. Raises ``LLMUnavailableError`` when a model is configured
    but the file or the executable cannot be found.
    """
    LOGGER.debug(
        "llm_client_init server_url=%r model_path=%r command=%r server_command=%r",
        cfg.server_url,
        cfg.model_path,
        cfg.command,
        cfg.server_command,
    )
    model_path = resolve_model_path(cfg.model_path, cfg.models_dir)
    if cfg.server_url.strip():
        LOGGER.debug("llm_client_mode mode=server url=%s", cfg.server_url)
        return ServerClient(cfg)
    if not model_path:
        LOGGER.debug("llm_client_disabled reason=missing_model_path")
        return DisabledGenerator()
    if not file_exists(model_path):
        LOGGER.warning("llm_client_model_unavailable path=%s", model_path)
        raise LLMUnavailableError(f"llm model path unavailable: {model_path}")

    command, found = resolve_command_path(cfg.command, DEFAULT_COMMAND, cfg.models_dir)
    if not found:
        LOGGER.warning("llm_client_command_missing command=%s", cfg.command)
        raise LLMUnavailableError(f"llm command not found: {cfg.command}")
    LOGGER.debug("llm_client_command_resolved command=%s path=%s", cfg.command, command)
    return ProcessClient(cfg, command=command, model_path=model_path)
