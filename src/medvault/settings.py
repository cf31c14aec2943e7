"""Application settings via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["Settings"]

MAX_UPLOAD_BYTES = 100 * 1024 * 1024
MAX_DELETE_SCAN_PAGE = 1000


class Settings(BaseSettings):
    """Central configuration, all values from environment."""

    model_config = SettingsConfigDict(env_prefix="MEDVAULT_")

    # Target environment
    environment: str = "dev"

    # Pinning service (server-held credential, never sent to callers)
    pinata_jwt: str = ""
    pinata_api_url: str = "https://api.pinata.cloud"
    pinata_uploads_url: str = "https://uploads.pinata.cloud"
    pinata_gateway_url: str = "https://gateway.pinata.cloud"
    object_store_timeout: float = 60.0

    # Object store limits
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    delete_scan_page_size: int = 100

    # Hex-encoded AES key; empty means payloads are stored as given
    encryption_key: str = ""

    # PostgreSQL
    pg_dsn: str = ""

    # Redis (idempotency keys for access-request creation)
    # Empty means keys are held in process memory
    redis_url: str = ""
    idempotency_ttl_seconds: int = 86400

    # Sessions
    session_ttl_hours: int = 24
    logout_grace_seconds: float = 1.0

    # Periodic expiry / cleanup sweep; 0 disables it
    maintenance_interval_seconds: float = 300.0

    # Logging
    log_json: bool = True
    log_level: str = "INFO"
