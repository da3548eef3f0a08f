from __future__ import annotations

from functools import lru_cache

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    replicate_token: SecretStr | None = None
    replicate_base_url: str = "https://api.replicate.com/v1"
    stripe_secret_key: SecretStr | None = None
    stripe_base_url: str = "https://api.stripe.com/v1"
    upstream_connect_timeout_seconds: float = 5.0
    upstream_read_timeout_seconds: float = 120.0
    upstream_write_timeout_seconds: float = 30.0
    upstream_pool_timeout_seconds: float = 5.0
    audit_log_enabled: bool = False
    audit_log_path: str = "logs/prediction_audit.jsonl"
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def replicate_token_value(self) -> str | None:
        return _secret_or_none(self.replicate_token)

    @property
    def stripe_secret_key_value(self) -> str | None:
        return _secret_or_none(self.stripe_secret_key)


def _secret_or_none(value: SecretStr | None) -> str | None:
    if value is None:
        return None
    raw = value.get_secret_value().strip()
    return raw or None


@lru_cache
def get_settings() -> Settings:
    return Settings()
