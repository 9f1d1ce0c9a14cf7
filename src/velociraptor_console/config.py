"""Client configuration using pydantic-settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Client settings loaded from environment variables.

    All settings can be configured via:
    1. Environment variables prefixed with VELOCIRAPTOR_ (e.g., VELOCIRAPTOR_MAX_RETRIES=5)
    2. .env file in the working directory

    Credentials are never read from here; they live in the secure credential store.
    """

    model_config = SettingsConfigDict(
        env_prefix="VELOCIRAPTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    debug: bool = False

    # Secure storage namespace
    keychain_service: str = "com.velociraptor.console.api"

    # Request dispatcher (seconds)
    request_timeout: float = 30.0
    connect_timeout: float = 10.0
    max_retries: int = 3
    retry_base_delay: float = 1.0

    # Event stream (seconds)
    events_path: str = "/api/v1/WatchEvents"
    heartbeat_interval: float = 30.0
    pong_timeout: float = 10.0
    max_reconnect_attempts: int = Field(default=5, ge=1)
    reconnect_base_delay: float = 2.0
    recent_events_limit: int = 100

    # Subprocess bridge
    binary_path: Path = Path("/usr/local/bin/velociraptor")
    config_path: str = ""
    gui_port: int = 8889
    process_terminate_timeout: float = 5.0
    read_chunk_size: int = 65536


@lru_cache
def get_settings() -> Settings:
    """Get the process-wide settings instance."""
    return Settings()
