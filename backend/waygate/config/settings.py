"""
Runtime settings for the token refresh coordinator.

All values come from environment variables so the same image runs as a
cron worker, a web process or a test.

Environment:
- DATABASE_URL: SQLAlchemy URL (postgres:// is rewritten to postgresql://)
- REDIS_URL: Redis URL for the redis lock backend and OAuth state store
- ENV / ENVIRONMENT: deployment environment ("production" enables
  structured success logs)
- TOKEN_REFRESH_BUFFER_MINUTES: refresh window ahead of expiry (default 10)
- TOKEN_REFRESH_LOCK_BACKEND: postgres | redis | memory (default postgres)
- TOKEN_REFRESH_LOCK_TTL_SECONDS: redis lock lease (default 300)
- OAUTH_HTTP_TIMEOUT_SECONDS: token endpoint timeout (default 30)
- OAUTH_STATE_TTL_SECONDS: authorization state lifetime (default 600)
"""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_BUFFER_MINUTES = 10
DEFAULT_LOCK_TTL_SECONDS = 300
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_OAUTH_STATE_TTL_SECONDS = 600

LOCK_BACKENDS = ("postgres", "redis", "memory")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def normalize_database_url(database_url: str) -> str:
    """Rewrite Heroku/Render style postgres:// URLs for SQLAlchemy."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


@dataclass
class RefreshSettings:
    """Settings for token refresh runs."""

    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    environment: str = "development"
    buffer_minutes: int = DEFAULT_BUFFER_MINUTES
    lock_backend: str = "postgres"
    lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    oauth_state_ttl_seconds: int = DEFAULT_OAUTH_STATE_TTL_SECONDS

    def __post_init__(self):
        if self.lock_backend not in LOCK_BACKENDS:
            raise ValueError(
                f"lock_backend must be one of {', '.join(LOCK_BACKENDS)}, got {self.lock_backend!r}"
            )
        if self.buffer_minutes < 0:
            raise ValueError("buffer_minutes must not be negative")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @classmethod
    def from_env(cls) -> "RefreshSettings":
        database_url = os.getenv("DATABASE_URL")
        timeout = os.getenv("OAUTH_HTTP_TIMEOUT_SECONDS")
        return cls(
            database_url=normalize_database_url(database_url) if database_url else None,
            redis_url=os.getenv("REDIS_URL") or None,
            environment=os.getenv("ENV") or os.getenv("ENVIRONMENT") or "development",
            buffer_minutes=_int_env("TOKEN_REFRESH_BUFFER_MINUTES", DEFAULT_BUFFER_MINUTES),
            lock_backend=(os.getenv("TOKEN_REFRESH_LOCK_BACKEND") or "postgres").lower(),
            lock_ttl_seconds=_int_env("TOKEN_REFRESH_LOCK_TTL_SECONDS", DEFAULT_LOCK_TTL_SECONDS),
            http_timeout_seconds=float(timeout) if timeout else DEFAULT_HTTP_TIMEOUT_SECONDS,
            oauth_state_ttl_seconds=_int_env("OAUTH_STATE_TTL_SECONDS", DEFAULT_OAUTH_STATE_TTL_SECONDS),
        )
