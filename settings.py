from __future__ import annotations

import os
from dataclasses import dataclass


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _first_int(names: tuple[str, ...], default: int) -> int:
    for name in names:
        raw = os.getenv(name)
        if raw is not None and raw.strip():
            return _int(name, default)
    return default


@dataclass(frozen=True)
class Settings:
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    assistant_model: str = os.getenv("ASSISTANT_MODEL", "gpt-4o-mini")
    assistant_id: str = os.getenv("OPENAI_ASSISTANT_ID", "")
    assistant_name: str = os.getenv("ASSISTANT_NAME", "Property Inspection Assistant")
    llm_poll_interval_ms: int = _int("LLM_POLL_INTERVAL_MS", 100)
    llm_max_poll_attempts: int = _int("LLM_MAX_POLL_ATTEMPTS", 600)
    llm_max_tool_rounds: int = _int("LLM_MAX_TOOL_ROUNDS", 5)
    llm_timeout_seconds: int = _int("LLM_TIMEOUT_SECONDS", 25)

    fast_task_flow: bool = _bool("WHATSAPP_FAST_TASK_FLOW", True)
    confirm_text: bool = _bool("WHATSAPP_CONFIRM_TEXT", False)
    require_photo_remark: bool = _bool("WHATSAPP_REQUIRE_PHOTO_REMARK", False)

    instant_ack_enabled: bool = _bool("WHATSAPP_INSTANT_ACK", True)
    instant_delay_ms: int = _first_int(("WHATSAPP_INSTANT_SCHEDULE_MS", "WHATSAPP_INSTANT_DELAY_MS"), 150)
    instant_lead_ms: int = _int("WHATSAPP_INSTANT_LEAD_MS", 450)
    instant_ack_text: str = os.getenv("WHATSAPP_INSTANT_ACK_TEXT", "Got it, one moment while I check that for you...")

    default_country_code: str = os.getenv("DEFAULT_COUNTRY_CODE", "+65")

    session_ttl_seconds: int = _int("SESSION_TTL_SECONDS", 24 * 60 * 60)
    session_key_prefix: str = os.getenv("SESSION_KEY_PREFIX", "mc:chat:session:")
    processed_message_ttl_seconds: int = _int("PROCESSED_MESSAGE_TTL_SECONDS", 5 * 60)

    whatsapp_webhook_secret: str = os.getenv("WHATSAPP_WEBHOOK_SECRET", "")
    wassenger_api_key: str = os.getenv("WASSENGER_API_KEY", "")
    wassenger_api_base: str = os.getenv("WASSENGER_API_BASE", "https://api.wassenger.com")

    media_root: str = os.getenv("MEDIA_ROOT", "./data/media")
    media_space_directory: str = os.getenv("MEDIA_SPACE_DIRECTORY", "inspections")
    media_public_base_url: str = os.getenv("MEDIA_PUBLIC_BASE_URL", "http://localhost:8000/media")

    redis_url: str = os.getenv("REDIS_URL", "")

    audit_log_path: str = os.getenv("AUDIT_LOG_PATH", "./data/audit.log.jsonl")
    analytics_log_path: str = os.getenv("ANALYTICS_LOG_PATH", "./data/analytics.log.jsonl")
    session_store_path: str = os.getenv("SESSION_STORE_PATH", "./data/session_store.json")
    thread_cache_path: str = os.getenv("THREAD_CACHE_PATH", "./data/assistant_threads.json")
    rate_limit_per_minute: int = _int("RATE_LIMIT_PER_MINUTE", 120)

    debug: bool = _bool("DEBUG", True)


SETTINGS = Settings()
