"""Configuration management.

Reads settings from env vars (a .env file is picked up too).
"""
import os
from typing import List
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """App settings loaded from environment variables"""

    # API tokens - comma separated list
    api_tokens: List[str] = os.getenv(
        "API_TOKEN",
        "default-dev-token"
    ).split(",")

    # Persistence: which snapshot adapter to use (memory, json, sql)
    snapshot_backend: str = os.getenv("SNAPSHOT_BACKEND", "json")
    snapshot_path: str = os.getenv("SNAPSHOT_PATH", "./ab_snapshot.json")
    database_url: str = os.getenv(
        "DATABASE_URL",
        "sqlite:///./ab_testing.db"
    )
    deployment_name: str = os.getenv("DEPLOYMENT_NAME", "default")
    # seconds, handed to the storage adapter
    store_timeout: float = float(os.getenv("STORE_TIMEOUT", "5"))
    # Write-behind bounds for assignments/events: save after this many
    # writes, or once this many seconds have passed (0 = no time bound)
    flush_every: int = int(os.getenv("FLUSH_EVERY", "1"))
    flush_interval: float = float(os.getenv("FLUSH_INTERVAL", "0"))

    # Statistics
    baseline_conversion_rate: float = float(os.getenv("BASELINE_CONVERSION_RATE", "0.1"))
    exact_p_values: bool = _flag("EXACT_P_VALUES", "false")

    # Event names that count as an exposure
    exposure_events: List[str] = [
        name.strip()
        for name in os.getenv("EXPOSURE_EVENTS", "exposure,page_view").split(",")
        if name.strip()
    ]

    # Results cache settings
    cache_ttl: int = int(os.getenv("CACHE_TTL", "60"))
    cache_max_size: int = int(os.getenv("CACHE_MAX_SIZE", "1000"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Server
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8000"))


settings = Settings()
