from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "STARTGATE_",
        "extra": "ignore",
    }

    # Service registry
    registry_path: str = "services.yaml"
    profile: str = ""  # empty = every service in the registry

    # Run-wide deadline, independent of per-service retry budgets (0 disables)
    startup_deadline_seconds: float = 120.0

    # Probe execution
    probe_workers: int = 8  # thread pool shared by all monitors
    history_limit: int = 20  # probe results kept per service for diagnostics

    # Status reporting
    subscriber_queue_size: int = 100
    transition_db_path: str = ""  # optional SQLite post-mortem log

    # Logging
    log_level: str = "INFO"

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8089


settings = Settings()
