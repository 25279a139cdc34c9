from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[1]
ENV_PATH = ROOT_DIR / ".env"

if ENV_PATH.exists():
    load_dotenv(ENV_PATH)  # Load project .env once at import time.
else:
    load_dotenv()  # Fallback: search upwards from CWD.


def _env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None or value == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:  # pragma: no cover - defensive
        raise RuntimeError(f"Environment variable {name} must be an integer") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:  # pragma: no cover - defensive
        raise RuntimeError(f"Environment variable {name} must be a number") from exc


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name) or ""
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    supabase_url: str
    supabase_service_role_key: str
    supabase_anon_key: Optional[str]

    app_env: str
    log_level: str
    cors_allow_origins: tuple[str, ...]

    llm_provider: str
    gemini_api_keys: tuple[str, ...]
    gemini_model: str
    openai_api_keys: tuple[str, ...]
    openai_model: str
    ai_timeout_seconds: float

    invite_submission_threshold: int
    invite_bypass_code: Optional[str]
    index_claim_grace_seconds: float
    merge_max_attempts: int
    submit_rate_limit_per_minute: int

    @property
    def debug_errors(self) -> bool:
        return (self.app_env or "").lower() in {"local", "dev", "development", "test"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    cors_origins = _env_list("CORS_ALLOW_ORIGINS") or (
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    )

    return Settings(
        supabase_url=_env("SUPABASE_URL"),
        supabase_service_role_key=_env("SUPABASE_SERVICE_ROLE_KEY"),
        supabase_anon_key=_env_optional("SUPABASE_ANON_KEY"),
        app_env=os.getenv("APP_ENV", "local"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        cors_allow_origins=cors_origins,
        llm_provider=os.getenv("LLM_PROVIDER", "gemini"),
        gemini_api_keys=_env_list("GEMINI_API_KEY_POOL"),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        openai_api_keys=_env_list("OPENAI_API_KEY_POOL"),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        ai_timeout_seconds=_env_float("AI_TIMEOUT_SECONDS", 30.0),
        invite_submission_threshold=_env_int("INVITE_SUBMISSION_THRESHOLD", 3),
        invite_bypass_code=os.getenv("INVITE_BYPASS_CODE", "truegoddess").strip() or None,
        index_claim_grace_seconds=_env_float("INDEX_CLAIM_GRACE_SECONDS", 30.0),
        merge_max_attempts=_env_int("MERGE_MAX_ATTEMPTS", 3),
        submit_rate_limit_per_minute=_env_int("SUBMIT_RATE_LIMIT_PER_MINUTE", 30),
    )
