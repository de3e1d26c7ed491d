from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    gateway_config_path: str = "gateway.yaml"
    relay_proxy_url: str | None = None
    relay_proxy_key: str | None = None
    upstream_connect_timeout_seconds: float | None = None
    upstream_read_timeout_seconds: float | None = None
    upstream_max_connections: int = 512
    upstream_max_keepalive_connections: int = 128
    channel_cache_ttl_seconds: float = 60.0
    channel_cache_max_keys: int = 1024
    selection_priority_tiers: bool = False
    prompt_quota_ratio: float = 1.0
    completion_quota_ratio: float = 3.0
    usage_log_enabled: bool = True
    usage_log_path: str = "logs/usage.jsonl"
    usage_record_buffer_size: int = 4096
    redis_url: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def forwarding_hop_configured(self) -> bool:
        return bool(self.relay_proxy_url and self.relay_proxy_url.strip())


@lru_cache
def get_settings() -> Settings:
    return Settings()
