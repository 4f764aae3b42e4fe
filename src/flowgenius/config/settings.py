"""Application settings, loaded from environment variables.

Usage:
    from flowgenius.config.settings import settings
    print(settings.openai_model)
"""

from __future__ import annotations

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # All workflow configuration, loaded from .env or environment.

    # Vendor credentials are optional so the core can run against fake services:
    #    openai_api_key: needed for chat completion and speech-to-text.
    #    tavily_api_key: needed for market research web search.

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Chat completion / speech ──────────────────────────────────────────
    openai_api_key: SecretStr | None = Field(default=None, description="OpenAI API key")
    openai_model: str = Field(default="gpt-4o")
    openai_timeout_seconds: float = Field(default=45.0, gt=0)
    whisper_model: str = Field(default="whisper-1")
    speech_timeout_seconds: float = Field(default=60.0, gt=0)

    # ── Web search ─────────────────────────────────────────────────────────
    tavily_api_key: SecretStr | None = Field(default=None, description="Tavily API key")
    tavily_base_url: str = Field(default="https://api.tavily.com")
    search_timeout_seconds: float = Field(default=20.0, gt=0)
    search_min_interval_seconds: float = Field(default=0.5, ge=0)
    market_max_searches: int = Field(default=4, ge=1)
    market_results_per_search: int = Field(default=4, ge=1)

    # ── Resilience ─────────────────────────────────────────────────────────
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_initial_delay_seconds: float = Field(default=1.0, ge=0)
    retry_backoff_factor: float = Field(default=2.0, ge=1.0)
    retry_max_delay_seconds: float = Field(default=10.0, ge=0)
    retryable_errors: list[str] = Field(default=["NETWORK_ERROR", "TIMEOUT", "RATE_LIMIT"])
    summary_retry_max_attempts: int = Field(default=5, ge=1)
    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_reset_timeout_seconds: float = Field(default=60.0, ge=0)

    # ── Checklist ──────────────────────────────────────────────────────────
    checklist_completion_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    checklist_partial_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    checklist_fallback_completion_threshold: float = Field(default=0.4, ge=0.0, le=1.0)
    checklist_min_required: int = Field(default=8, ge=1)
    checklist_active_items: int = Field(default=2, ge=1)

    # ── Executor ───────────────────────────────────────────────────────────
    max_workflow_iterations: int = Field(default=25, ge=1)
    state_history_capacity: int = Field(default=100, ge=1)

    # ── App ────────────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")  # 'console' | 'json'
    log_file: str | None = Field(default=None)

    @field_validator("openai_model")
    @classmethod
    def validate_model(cls, v: str) -> str:
        """Ensure only supported chat models are configured."""
        allowed = {"gpt-4o-mini", "gpt-4o", "gpt-4-turbo", "gpt-4.1", "gpt-4.1-mini"}
        if v not in allowed:
            raise ValueError(f"Model {v!r} not in allowed set {allowed}")
        return v

    @field_validator("retryable_errors")
    @classmethod
    def normalise_retryable(cls, v: list[str]) -> list[str]:
        return [marker.strip().upper() for marker in v if marker.strip()]


settings = Settings()  # Module-level singleton
