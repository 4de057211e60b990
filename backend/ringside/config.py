from __future__ import annotations
import os
from pydantic import BaseModel

class Settings(BaseModel):
    environment: str = os.getenv("ENVIRONMENT", "dev")
    app_name: str = os.getenv("APP_NAME", "ringside-api")
    app_display_name: str = os.getenv("APP_DISPLAY_NAME", "Ringside")
    app_version: str = os.getenv("APP_VERSION", "0.1.0")
    git_sha: str = os.getenv("GIT_SHA", "dev")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")
    database_url: str = os.getenv("DATABASE_URL", "postgresql+asyncpg://postgres:postgres@db:5432/ringside_dev")
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # Auth tokens are minted by the identity provider; we only verify them
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
    jwt_alg: str = os.getenv("JWT_ALG", "HS256")

    # Notification dispatcher (empty = disabled)
    notify_url: str = os.getenv("NOTIFY_URL", "")
    notify_timeout_seconds: float = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "5"))

    # Challenge behaviour
    recent_events_limit: int = int(os.getenv("RECENT_EVENTS_LIMIT", "15"))
    sweep_interval_seconds: int = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
    pending_link_ttl_days: int = int(os.getenv("PENDING_LINK_TTL_DAYS", "7"))
    default_challenge_hours: int = int(os.getenv("DEFAULT_CHALLENGE_HOURS", "2"))

settings = Settings()
