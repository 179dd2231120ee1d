"""Application settings and environment loading utilities."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional


def _load_dotenv() -> None:
    env_path = Path(".env")
    if not env_path.exists():
        return
    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


_load_dotenv()


def _optional(name: str) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or None


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer for environment variable {name}: {raw!r}") from exc


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Invalid number for environment variable {name}: {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    """Runtime configuration derived from environment variables.

    Secrets are optional here; the clients that need them raise
    ``ConfigurationError`` at call time instead.
    """

    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com/v1"
    openai_temperature: float = 0.6
    preview_max_tokens: int = 600
    full_max_tokens: int = 1600
    stripe_secret_key: Optional[str] = None
    stripe_api_base: str = "https://api.stripe.com/v1"
    payment_cache_ttl_seconds: int = 600
    upstream_timeout_seconds: int = 60
    max_prompt_chars: int = 4000
    rate_limit_max_requests: int = 10
    rate_limit_window_seconds: int = 600
    rate_limit_cooldown_seconds: int = 3
    rate_limit_sweep_threshold: int = 500
    log_level: str = "INFO"

    @property
    def completions_url(self) -> str:
        return f"{self.openai_base_url.rstrip('/')}/chat/completions"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            openai_api_key=_optional("OPENAI_API_KEY"),
            openai_model=_optional("OPENAI_MODEL") or "gpt-4o-mini",
            openai_base_url=_optional("OPENAI_BASE_URL") or "https://api.openai.com/v1",
            openai_temperature=_float("OPENAI_TEMPERATURE", 0.6),
            preview_max_tokens=_int("OPENAI_PREVIEW_MAX_TOKENS", 600),
            full_max_tokens=_int("OPENAI_FULL_MAX_TOKENS", 1600),
            stripe_secret_key=_optional("STRIPE_SECRET_KEY"),
            stripe_api_base=_optional("STRIPE_API_BASE") or "https://api.stripe.com/v1",
            payment_cache_ttl_seconds=_int("PAYMENT_CACHE_TTL_SECONDS", 600),
            upstream_timeout_seconds=_int("UPSTREAM_TIMEOUT_SECONDS", 60),
            max_prompt_chars=_int("MAX_PROMPT_CHARS", 4000),
            rate_limit_max_requests=_int("RATE_LIMIT_MAX_REQUESTS", 10),
            rate_limit_window_seconds=_int("RATE_LIMIT_WINDOW_SECONDS", 600),
            rate_limit_cooldown_seconds=_int("RATE_LIMIT_COOLDOWN_SECONDS", 3),
            rate_limit_sweep_threshold=_int("RATE_LIMIT_SWEEP_THRESHOLD", 500),
            log_level=(_optional("LOG_LEVEL") or "INFO").upper(),
        )


@lru_cache()
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings.from_env()
