from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_CHAT_MODEL = "gemini-2.5-flash"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
DEFAULT_AI_BASE_URL = "http://127.0.0.1:8045/v1"


@dataclass(frozen=True)
class Settings:
    discord_token: str
    store_path: Path
    ai_api_key: str
    ai_base_url: str
    chat_model: str = DEFAULT_CHAT_MODEL
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    ai_timeout_sec: float = 60.0
    max_channel_messages: int = 200
    max_log_entries: int = 200
    log_queue_size: int = 100
    context_limit: int = 20
    reconnect_max_retries: int = 5
    reconnect_base_delay_sec: float = 1.0
    reconnect_max_delay_sec: float = 60.0
    post_max_retries: int = 3
    flush_timeout_sec: float = 5.0
    autostart: bool = True

    @staticmethod
    def load(path: Path = Path("passwords.txt")) -> "Settings":
        values = _parse_passwords_file(path) if path.exists() else {}

        def get(key: str, default: str = "") -> str:
            value = values.get(key, "").strip()
            if value:
                return value
            return os.environ.get(key, default).strip()

        return Settings(
            discord_token=get("DISCORD_TOKEN"),
            store_path=Path(get("STORE_PATH", "data/chatrelay.msgpack")),
            ai_api_key=get("AI_API_KEY"),
            ai_base_url=get("AI_BASE_URL", DEFAULT_AI_BASE_URL),
            chat_model=get("CHAT_MODEL", DEFAULT_CHAT_MODEL),
            system_prompt=get("SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
            ai_timeout_sec=_to_float("AI_TIMEOUT_SEC", get("AI_TIMEOUT_SEC", "60")),
            max_channel_messages=_to_int("MAX_CHANNEL_MESSAGES", get("MAX_CHANNEL_MESSAGES", "200")),
            max_log_entries=_to_int("MAX_LOG_ENTRIES", get("MAX_LOG_ENTRIES", "200")),
            log_queue_size=_to_int("LOG_QUEUE_SIZE", get("LOG_QUEUE_SIZE", "100")),
            context_limit=_to_int("CONTEXT_LIMIT", get("CONTEXT_LIMIT", "20")),
            reconnect_max_retries=_to_int("RECONNECT_MAX_RETRIES", get("RECONNECT_MAX_RETRIES", "5")),
            reconnect_base_delay_sec=_to_float("RECONNECT_BASE_DELAY_SEC", get("RECONNECT_BASE_DELAY_SEC", "1")),
            reconnect_max_delay_sec=_to_float("RECONNECT_MAX_DELAY_SEC", get("RECONNECT_MAX_DELAY_SEC", "60")),
            post_max_retries=_to_int("POST_MAX_RETRIES", get("POST_MAX_RETRIES", "3")),
            flush_timeout_sec=_to_float("FLUSH_TIMEOUT_SEC", get("FLUSH_TIMEOUT_SEC", "5")),
            autostart=_to_bool("AUTOSTART", get("AUTOSTART", "true")),
        )


def _parse_passwords_file(path: Path) -> dict[str, str]:
    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


def _to_int(key: str, raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{key} must be an integer, got {raw!r}.") from exc
    if value < 1:
        raise RuntimeError(f"{key} must be at least 1.")
    return value


def _to_float(key: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{key} must be a number, got {raw!r}.") from exc
    if value < 0:
        raise RuntimeError(f"{key} must not be negative.")
    return value


def _to_bool(key: str, raw: str) -> bool:
    lowered = raw.lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise RuntimeError(f"{key} must be true or false, got {raw!r}.")
