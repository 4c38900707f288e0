"""Runtime configuration resolved from environment variables."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclasses.dataclass(frozen=True)
class Settings:
    """Settings shared by the ingestion pipeline and its collaborators."""

    database_url: str | None = None
    gateway_api_url: str = "http://localhost:8080"
    gateway_api_key: str | None = None
    gateway_provider: str = "evolution"
    gateway_fallback_url: str | None = None
    gateway_timeout_seconds: float = 30.0
    gateway_webhook_token: str | None = None
    media_storage_dir: str = "storage"
    media_bucket: str | None = None
    media_endpoint_url: str | None = None
    webhook_dispatcher_url: str | None = None
    completion_base_url: str | None = None
    completion_timeout_seconds: float = 30.0
    default_conversation_mode: str = "ai"
    display_timezone: str = "America/Sao_Paulo"
    hybrid_sweep_enabled: bool = True
    hybrid_sweep_interval_seconds: float = 60.0
    hybrid_sweep_initial_delay_seconds: float = 5.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from the environment with development defaults."""

    return Settings(
        database_url=os.getenv("DATABASE_URL"),
        gateway_api_url=os.getenv("GATEWAY_API_URL", "http://localhost:8080").rstrip("/"),
        gateway_api_key=os.getenv("GATEWAY_API_KEY"),
        gateway_provider=os.getenv("GATEWAY_PROVIDER", "evolution").lower(),
        gateway_fallback_url=(os.getenv("GATEWAY_FALLBACK_URL") or "").rstrip("/") or None,
        gateway_timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "30")),
        gateway_webhook_token=os.getenv("GATEWAY_WEBHOOK_TOKEN") or None,
        media_storage_dir=os.getenv("MEDIA_STORAGE_DIR", "storage"),
        media_bucket=os.getenv("MEDIA_BUCKET") or None,
        media_endpoint_url=os.getenv("MEDIA_ENDPOINT_URL") or None,
        webhook_dispatcher_url=os.getenv("WEBHOOK_DISPATCHER_URL") or None,
        completion_base_url=os.getenv("COMPLETION_BASE_URL") or None,
        completion_timeout_seconds=float(os.getenv("COMPLETION_TIMEOUT_SECONDS", "30")),
        default_conversation_mode=os.getenv("DEFAULT_CONVERSATION_MODE", "ai").lower(),
        display_timezone=os.getenv("DISPLAY_TIMEZONE", "America/Sao_Paulo"),
        hybrid_sweep_enabled=_env_bool("HYBRID_SWEEP_ENABLED", "true"),
        hybrid_sweep_interval_seconds=float(
            os.getenv("HYBRID_SWEEP_INTERVAL_SECONDS", "60")
        ),
        hybrid_sweep_initial_delay_seconds=float(
            os.getenv("HYBRID_SWEEP_INITIAL_DELAY_SECONDS", "5")
        ),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()
