from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    upstream_chat_url: str = "https://chat.qwenlm.ai/api/chat/completions"
    upstream_models_url: str = "https://chat.qwenlm.ai/api/models"
    upstream_max_attempts: int = 3
    upstream_retry_delay_seconds: float = 1.0
    upstream_timeout_seconds: float = 30.0
    upstream_connect_timeout_seconds: float = 5.0
    models_cache_ttl_seconds: float = 3600.0
    cors_allow_origins: str = "*"
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "info"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def cors_allow_origins_list(self) -> list[str]:
        values = _split_csv(self.cors_allow_origins)
        return values or ["*"]

    @property
    def models_cache_ttl_ms(self) -> int:
        return int(max(0.0, self.models_cache_ttl_seconds) * 1000)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
