from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    service_config_path: str = "config.json"
    release_mode: bool = False
    plain_log: bool = False
    log_bodies: bool = False
    max_request_body_bytes: int = 32 * 1024 * 1024
    connect_timeout_seconds: float = 10.0
    retry_max_attempts: int = 3
    retry_initial_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 8.0
    metrics_enabled: bool = True

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def body_logging_enabled(self) -> bool:
        return self.log_bodies and not self.release_mode


@lru_cache
def get_settings() -> Settings:
    return Settings()
