"""Core configuration for the OmniAudit engine."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="OMNIAUDIT_",
        case_sensitive=False,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "OmniAudit Engine"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # ── Platform detection ───────────────────────────────────────────────
    detection_confidence_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    detection_high_confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)

    # ── Scheduling ───────────────────────────────────────────────────────
    scheduler_backend: Literal["local", "celery"] = "local"
    max_concurrent_jobs: int = Field(default=2, ge=1)
    max_concurrent_platforms: int = Field(default=3, ge=1)

    # ── Redis / Celery ───────────────────────────────────────────────────
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str = "redis://localhost:6379/1"
    celery_result_backend: str = "redis://localhost:6379/2"
    progress_channel_prefix: str = "omniaudit:progress"
    job_ttl_seconds: int = Field(default=7 * 24 * 3600, ge=60)

    # ── Static analysis tools ────────────────────────────────────────────
    static_tool_timeout_seconds: int = 120
    health_check_timeout_seconds: int = 10
    max_file_size_bytes: int = 10 * 1024 * 1024
    slither_bin: str = "slither"
    cargo_bin: str = "cargo"
    hlint_bin: str = "hlint"
    aptos_bin: str = "aptos"
    sui_bin: str = "sui"

    # ── AI ensemble ──────────────────────────────────────────────────────
    anthropic_api_key: str = ""
    openrouter_api_key: str = ""
    ai_base_url: str = "https://openrouter.ai/api/v1"
    ai_models: list[str] = Field(
        default_factory=lambda: [
            "moonshotai/kimi-k2:free",
            "z-ai/glm-4.5-air:free",
        ]
    )
    ai_timeout_seconds: float = 120.0
    ai_max_tokens: int = 4000
    ai_temperature: float = 0.1
    ai_max_retries: int = 3
    ai_retry_base_delay: float = 1.0
    ensemble_line_tolerance: int = 2


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
