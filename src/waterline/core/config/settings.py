"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Waterline server configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Default to loopback so a personal drink log is never exposed to the LAN
    # by accident. Opt into `0.0.0.0` explicitly when you intend remote access.
    waterline_host: str = "127.0.0.1"
    waterline_port: int = 8011
    waterline_log_level: str = "info"
    # Refuse non-loopback binds unless this is set true (there is no auth layer).
    waterline_allow_insecure_bind: bool = False

    # Storage (local event store)
    db_path: str = "~/.waterline/waterline.db"

    # Encryption of event payloads at rest (Fernet key; empty = plain JSON)
    encryption_key: str = ""

    # Remote store (MCP endpoint); empty = in-memory remote for offline development
    remote_store_url: str = ""

    # Identity of the single local user as known to the remote store
    user_key: str = "local-user"

    # Sync
    sync_retry_base_seconds: float = 5.0
    sync_retry_max_seconds: float = 300.0
    connectivity_probe_interval_seconds: float = 30.0


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
