"""
Application settings using Pydantic.

Provides environment-based configuration loading with CONVERGE_ prefix.
"""

from functools import lru_cache

from pydantic import SecretStr
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Readiness polling
    poll_interval: float = 10.0
    poll_timeout: float | None = 1800.0
    poll_max_attempts: int | None = None

    # HTTP client settings
    http_timeout: float = 30.0
    http_max_retries: int = 3
    check_timeout: float = 3.0

    # DigitalOcean
    digitalocean_token: SecretStr | None = None
    digitalocean_base_url: str = "https://api.digitalocean.com"

    # Kubernetes
    kube_namespace: str = "default"
    kube_context_name: str = "dev"
    min_ready_nodes: int = 2

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "CONVERGE_"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
