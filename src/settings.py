"""Centralized settings for the approval engine.

Uses pydantic-settings to load from environment variables (prefixed
APPROVALS_) or a local .env file.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Approval engine settings loaded from environment variables."""

    # --- Database ---
    database_url: str = "sqlite:///approvals.db"
    use_database: bool = False  # False: in-memory store
    database_echo: bool = False

    # --- Engine ---
    lock_timeout_seconds: float = 10.0
    audit_hash_chain: bool = True
    publish_events: bool = True
    default_page_size: int = 50
    max_page_size: int = 500
    max_comment_length: int = 5000

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "json"
    service_name: str = "approvals"

    model_config = {
        "env_prefix": "APPROVALS_",
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton."""
    return Settings()
