from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path


DEFAULT_PROMPT_SYSTEM = (
    "You are a Minecraft player chat bot roleplaying as a normal player.\n"
    "You have NO memory and NO access to anything except the provided CHAT LOG and BOT/SERVER info.\n"
    "Do NOT invent facts, backstory, previous events, or personal memories.\n"
    "Do NOT mention being an AI, a model, or system instructions."
)

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def load_env_file(path: str | Path = ".env") -> None:
    env_path = Path(path)
    if not env_path.exists():
        return

    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue

        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
            value = value[1:-1]
        value = value.replace("\\n", "\n")
        os.environ.setdefault(key, value)


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_int(name: str, default: int, low: int, high: int) -> int:
    try:
        value = int(os.getenv(name, str(default)).strip() or default)
    except ValueError:
        value = default
    return max(low, min(high, value))


def _env_float(name: str, default: float, low: float, high: float) -> float:
    try:
        value = float(os.getenv(name, str(default)).strip() or default)
    except ValueError:
        value = default
    return max(low, min(high, value))


def _env_level(name: str, default: str) -> str:
    raw = os.getenv(name, "").strip().upper()
    if raw == "WARN":
        raw = "WARNING"
    return raw if raw in _LOG_LEVELS else default


def default_prompt_response_rules(max_chars: int, max_words: int) -> str:
    lines = [
        '- Output exactly ONE single-line chat message in Polish OR output exactly "__SILENCE__".',
        "- Reply ONLY to the LAST message from a PLAYER, and ONLY if it clearly needs a response "
        "(question, greeting, direct mention, or conversational prompt).",
        '- If the last message is from a BOT, or does not need a response, output "__SILENCE__".',
    ]
    if max_chars > 0:
        lines.append(f"- Keep it short: max {max_chars} characters, casual Minecraft chat tone.")
    else:
        lines.append("- Keep it short and casual Minecraft chat tone.")
    if max_words > 0:
        lines.append(f"- Limit to {max_words} words maximum.")
    lines.append('- No quotes, no bot name prefixes, compiler logs, or commentary. No "(BOT)".')
    lines.append("- Avoid topics listed in avoid_topics. Never talk about admin powers, cheating, payments.")
    return "\n".join(lines)


def soft_timeout_for(timeout_ms: int, requested_ms: int | None = None) -> int:
    """Pick a soft timeout strictly below the hard timeout."""
    if timeout_ms <= 0:
        timeout_ms = 2000
    if timeout_ms > 1000:
        ceiling = timeout_ms - 1000
    else:
        ceiling = timeout_ms * 3 // 4
    if requested_ms is None:
        return ceiling
    return max(0, min(requested_ms, timeout_ms - 1))


@dataclass
class LLMConfig:
    model_path: str = ""
    models_dir: str = ""
    server_url: str = ""
    server_command: str = "llama-server"
    command: str = "llama-cli"
    model_name: str = "local"
    max_tokens: int = 128
    max_response_chars: int = 80
    max_response_words: int = 0
    num_threads: int = 0
    ctx_size: int = 2048
    timeout_ms: int = 2000
    soft_timeout_ms: int = 1000
    server_startup_timeout_ms: int = 60_000
    temperature: float = 0.6
    top_p: float = 0.9
    chat_history_limit: int = 6
    prompt_system: str = DEFAULT_PROMPT_SYSTEM
    prompt_response_rules: str = field(default_factory=lambda: default_prompt_response_rules(80, 0))
    server_state_path: str = "logs/llm_server_state.json"
    workers: int = 4

    @property
    def timeout_sec(self) -> float:
        return self.timeout_ms / 1000.0 if self.timeout_ms > 0 else 2.0

    @property
    def soft_timeout_sec(self) -> float:
        return self.soft_timeout_ms / 1000.0

    @classmethod
    def from_env(cls, log_dir: str = "logs") -> "LLMConfig":
        max_response_chars = _env_int("LLM_MAX_RESPONSE_CHARS", 80, 0, 2000)
        max_response_words = _env_int("LLM_MAX_RESPONSE_WORDS", 0, 0, 500)
        timeout_ms = _env_int("LLM_TIMEOUT_MS", 2000, 0, 600_000)

        raw_soft = _env_str("LLM_SOFT_TIMEOUT_MS")
        requested_soft: int | None = None
        if raw_soft:
            requested_soft = _env_int("LLM_SOFT_TIMEOUT_MS", soft_timeout_for(timeout_ms), 0, 600_000)
        soft_timeout_ms = soft_timeout_for(timeout_ms, requested_soft)

        prompt_rules = _env_str("LLM_PROMPT_RESPONSE_RULES").replace("\\n", "\n")
        if not prompt_rules:
            prompt_rules = default_prompt_response_rules(max_response_chars, max_response_words)
        prompt_system = _env_str("LLM_PROMPT_SYSTEM").replace("\\n", "\n") or DEFAULT_PROMPT_SYSTEM

        state_path = _env_str("LLM_SERVER_STATE_PATH") or str(Path(log_dir) / "llm_server_state.json")

        return cls(
            model_path=_env_str("LLM_MODEL_PATH"),
            models_dir=_env_str("LLM_MODELS_DIR"),
            server_url=_env_str("LLM_SERVER_URL"),
            server_command=_env_str("LLM_SERVER_COMMAND") or "llama-server",
            command=_env_str("LLM_COMMAND") or "llama-cli",
            model_name=_env_str("LLM_MODEL_NAME") or "local",
            max_tokens=_env_int("LLM_MAX_TOKENS", 128, 1, 8192),
            max_response_chars=max_response_chars,
            max_response_words=max_response_words,
            num_threads=_env_int("LLM_NUM_THREADS", 0, 0, 512),
            ctx_size=_env_int("LLM_CTX_SIZE", 2048, 0, 1_048_576),
            timeout_ms=timeout_ms,
            soft_timeout_ms=soft_timeout_ms,
            server_startup_timeout_ms=_env_int("LLM_SERVER_STARTUP_TIMEOUT_MS", 60_000, 0, 3_600_000),
            temperature=_env_float("LLM_TEMPERATURE", 0.6, 0.0, 2.0),
            top_p=_env_float("LLM_TOP_P", 0.9, 0.0, 1.0),
            chat_history_limit=_env_int("LLM_CHAT_HISTORY_LIMIT", 6, 0, 100),
            prompt_system=prompt_system,
            prompt_response_rules=prompt_rules,
            server_state_path=state_path,
            workers=_env_int("LLM_WORKERS", 4, 1, 64),
        )


@dataclass
class LoggingConfig:
    log_dir: str = "logs"
    level: str = "INFO"
    file_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        level = _env_level("LOG_LEVEL", "INFO")
        return cls(
            log_dir=_env_str("LOG_DIR") or "logs",
            level=level,
            file_level=_env_level("LOG_FILE_LEVEL", level),
        )

    @property
    def level_no(self) -> int:
        return logging.getLevelName(self.level)

    @property
    def file_level_no(self) -> int:
        return logging.getLevelName(self.file_level)


@dataclass
class ServiceConfig:
    host: str = "0.0.0.0"
    port: int = 8090
    body_limit_bytes: int = 1 << 20

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        return cls(
            host=_env_str("LISTEN_HOST") or "0.0.0.0",
            port=_env_int("LISTEN_PORT", 8090, 1, 65535),
            body_limit_bytes=_env_int("BODY_LIMIT_BYTES", 1 << 20, 1024, 64 << 20),
        )


@dataclass
class AppConfig:
    llm: LLMConfig = field(default_factory=LLMConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)

    @classmethod
    def from_env(cls, env_file: str | Path | None = ".env") -> "AppConfig":
        if env_file is not None:
            load_env_file(env_file)
        logging_config = LoggingConfig.from_env()
        return cls(
            llm=LLMConfig.from_env(log_dir=logging_config.log_dir),
            logging=logging_config,
            service=ServiceConfig.from_env(),
        )
