"""
Runtime settings, read from the environment (and a local .env file).
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_DATABASE_URL = "sqlite:///./conversations.db"
DEFAULT_ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    elevenlabs_api_key: str = ""
    elevenlabs_base_url: str = DEFAULT_ELEVENLABS_BASE_URL
    elevenlabs_agent_id: Optional[str] = None
    database_url: str = DEFAULT_DATABASE_URL

    poll_interval_ms: int = 30000
    evaluation_interval_ms: int = 10000
    http_timeout_secs: float = 30.0
    sync_watermark_overlap_secs: int = 0
    detail_backoff_secs: int = 30
    detail_backoff_max_secs: int = 3600

    evaluator: str = "heuristic"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    evaluation_timeout_secs: float = 120.0
    evaluation_max_attempts: int = 5
    evaluation_backoff_secs: int = 60
    evaluation_backoff_max_secs: int = 3600

    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000


def load_settings() -> Settings:
    """Build a Settings instance from the current environment."""
    return Settings(
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY", ""),
        elevenlabs_base_url=os.getenv("ELEVENLABS_BASE_URL", DEFAULT_ELEVENLABS_BASE_URL),
        elevenlabs_agent_id=os.getenv("ELEVENLABS_AGENT_ID") or None,
        database_url=os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL,
        poll_interval_ms=_int_env("POLL_INTERVAL_MS", 30000),
        evaluation_interval_ms=_int_env("EVALUATION_INTERVAL_MS", 10000),
        http_timeout_secs=_float_env("HTTP_TIMEOUT_SECS", 30.0),
        sync_watermark_overlap_secs=_int_env("SYNC_WATERMARK_OVERLAP_SECS", 0),
        detail_backoff_secs=_int_env("DETAIL_BACKOFF_SECS", 30),
        detail_backoff_max_secs=_int_env("DETAIL_BACKOFF_MAX_SECS", 3600),
        evaluator=os.getenv("EVALUATOR", "heuristic").strip().lower(),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        evaluation_timeout_secs=_float_env("EVALUATION_TIMEOUT_SECS", 120.0),
        evaluation_max_attempts=_int_env("EVALUATION_MAX_ATTEMPTS", 5),
        evaluation_backoff_secs=_int_env("EVALUATION_BACKOFF_SECS", 60),
        evaluation_backoff_max_secs=_int_env("EVALUATION_BACKOFF_MAX_SECS", 3600),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=_int_env("PORT", 8000),
    )
