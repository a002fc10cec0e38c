"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # WhatsApp-Web bridge (the transport that actually delivers messages)
    bridge_url: str = "http://localhost:3001"
    bridge_api_key: Optional[str] = None
    send_timeout_seconds: float = 30.0

    # Server
    gateway_port: int = 8002

    # Bulk jobs
    default_delay_seconds: float = 3.0
    max_batch_size: int = 100
    job_retention_hours: int = 24
    cleanup_interval_seconds: int = 600

    # Scheduled messages
    default_timezone: str = "Asia/Jakarta"  # informational only
    shutdown_timeout_seconds: float = 10.0  # grace for in-flight sends on stop

    # Progress events
    progress_broadcast_interval: float = 1.5

    # Durable state (None keeps everything in memory)
    state_dir: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
