from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Agent configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Monitor definitions (YAML or JSON)
    config_path: str = "monitors.yaml"

    # Status API
    api_host: str = "127.0.0.1"
    api_port: int = 8600

    # Scheduler
    max_concurrency: int = 8  # checks in flight across all monitors
    dispatch_queue_size: int = 32  # triggers waiting for a free slot
    shutdown_grace_seconds: float = 5.0

    # Result store
    history_size: int = 50  # results kept per monitor
    max_message_chars: int = 512

    # Logging
    log_level: str = "INFO"


settings = Settings()
