"""athyr-agent process settings via environment / .env file."""

from __future__ import annotations

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- LLM ---
    ANTHROPIC_API_KEY: str = ""

    # --- Event pipeline ---
    ATHYR_EVENT_TIMEOUT: float = 60.0
    ATHYR_MAX_TOOL_ITERATIONS: int = 10
    ATHYR_EVENT_BUFFER: int = 1000

    # --- Plugin capabilities ---
    ATHYR_HTTP_TIMEOUT: float = 30.0

    # --- Observability ---
    OTEL_EXPORTER_ENDPOINT: str = ""
    ATHYR_SERVICE_NAME: str = "athyr-agent"

    @field_validator("ATHYR_MAX_TOOL_ITERATIONS", "ATHYR_EVENT_BUFFER")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("ATHYR_EVENT_TIMEOUT", "ATHYR_HTTP_TIMEOUT")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


settings = Settings()
