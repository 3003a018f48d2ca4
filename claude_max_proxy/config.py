"""Application configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

VERSION = "3.3.0"

DEFAULT_UPSTREAM_MODEL = "claude-sonnet-4-5-20250929"

MODEL_ALIASES = {
    "claude-opus-4": "claude-opus-4-5-20251101",
    "claude-sonnet-4": "claude-sonnet-4-5-20250929",
    "claude-haiku-4": "claude-3-5-haiku-20241022",
    "opus": "claude-opus-4-5-20251101",
    "sonnet": "claude-sonnet-4-5-20250929",
    "haiku": "claude-3-5-haiku-20241022",
    "gpt-4": "claude-opus-4-5-20251101",
    "gpt-4o": "claude-sonnet-4-5-20250929",
    "gpt-3.5-turbo": "claude-3-5-haiku-20241022",
    "openai/claude-opus-4": "claude-opus-4-5-20251101",
    "openai/claude-sonnet-4": "claude-sonnet-4-5-20250929",
    "openai/claude-haiku-4": "claude-3-5-haiku-20241022",
}

UPSTREAM_MODELS = frozenset(MODEL_ALIASES.values())

AVAILABLE_MODELS = (
    ("claude-opus-4", "Claude Opus 4.5"),
    ("claude-sonnet-4", "Claude Sonnet 4.5"),
    ("claude-haiku-4", "Claude Haiku 3.5"),
)


def resolve_upstream_model(model: str) -> str:
    """Map a caller-facing model alias onto an upstream model id."""

    normalized = model.strip()
    if normalized in MODEL_ALIASES:
        return MODEL_ALIASES[normalized]
    if normalized in UPSTREAM_MODELS:
        return normalized
    return DEFAULT_UPSTREAM_MODEL


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_int(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except (TypeError, ValueError):
        return default


def _parse_float(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except (TypeError, ValueError):
        return default


def _parse_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    parts = [item.strip() for item in value.split(",")]
    return tuple(item for item in parts if item)


def _optional_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


@dataclass(frozen=True)
class Settings:
    host: str
    port: int
    log_level: str
    log_redact_body: bool
    request_body_log_max_chars: int
    cors_allowed_origins: Tuple[str, ...]
    anthropic_api_url: str
    anthropic_version: str
    anthropic_beta: str
    upstream_first_byte_timeout_seconds: int
    upstream_stream_read_timeout_seconds: int
    default_max_tokens: int
    override_access_token: Optional[str]
    override_refresh_token: Optional[str]
    credentials_file: str
    keychain_service: str
    oauth_token_url: str
    oauth_client_id: str
    token_refresh_window_seconds: float
    token_refresh_timeout_seconds: float


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings(
        host=os.getenv("HOST", "127.0.0.1"),
        port=_parse_int(os.getenv("PORT"), 3456),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_redact_body=_parse_bool(os.getenv("LOG_REDACT_BODY"), True),
        request_body_log_max_chars=_parse_int(os.getenv("REQUEST_BODY_LOG_MAX_CHARS"), 512),
        cors_allowed_origins=_parse_csv(os.getenv("CORS_ALLOWED_ORIGINS", "*")),
        anthropic_api_url=os.getenv(
            "ANTHROPIC_API_URL",
            "https://api.anthropic.com/v1/messages",
        ).rstrip("/"),
        anthropic_version=os.getenv("ANTHROPIC_VERSION", "2023-06-01"),
        anthropic_beta=os.getenv("ANTHROPIC_BETA", "oauth-2025-04-20"),
        upstream_first_byte_timeout_seconds=_parse_int(
            os.getenv("UPSTREAM_FIRST_BYTE_TIMEOUT_SECONDS"),
            120,
        ),
        upstream_stream_read_timeout_seconds=_parse_int(
            os.getenv("UPSTREAM_STREAM_READ_TIMEOUT_SECONDS"),
            0,
        ),
        default_max_tokens=_parse_int(os.getenv("DEFAULT_MAX_TOKENS"), 8192),
        override_access_token=_optional_env("CLAUDE_ACCESS_TOKEN"),
        override_refresh_token=_optional_env("CLAUDE_REFRESH_TOKEN"),
        credentials_file=os.path.expanduser(
            os.getenv("CREDENTIALS_FILE", os.path.join("~", ".claude-max-proxy.json"))
        ),
        keychain_service=os.getenv("KEYCHAIN_SERVICE", "Claude Code-credentials"),
        oauth_token_url=os.getenv(
            "OAUTH_TOKEN_URL",
            "https://console.anthropic.com/v1/oauth/token",
        ),
        oauth_client_id=os.getenv("OAUTH_CLIENT_ID", "ce88c5c9-c4b6-402a-9f87-b667b4583d19"),
        token_refresh_window_seconds=_parse_float(os.getenv("TOKEN_REFRESH_WINDOW_SECONDS"), 300.0),
        token_refresh_timeout_seconds=_parse_float(os.getenv("TOKEN_REFRESH_TIMEOUT_SECONDS"), 30.0),
    )
