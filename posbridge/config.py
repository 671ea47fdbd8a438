"""
Configuration management using Pydantic settings.
Loads environment variables for Lightspeed OAuth, token encryption, Supabase and worker tuning.
"""
import string

from pydantic_settings import BaseSettings

from posbridge.integrations.lightspeed.errors import ConfigurationError


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    # Lightspeed OAuth Configuration
    lightspeed_client_id: str = ""
    lightspeed_client_secret: str = ""
    lightspeed_redirect_uri: str = ""
    lightspeed_scope: str = "employee:all"
    lightspeed_authorize_url: str = "https://cloud.lightspeedapp.com/auth/oauth/authorize"
    lightspeed_token_url: str = "https://cloud.lightspeedapp.com/auth/oauth/token"
    lightspeed_api_base_url: str = "https://api.lightspeedapp.com/API/V3"

    # AES-256-GCM key for tokens at rest (64 hex characters = 32 bytes)
    token_encryption_key: str = ""

    # Supabase Configuration (optional for in-memory/local runs)
    supabase_url: str = ""
    supabase_service_key: str = ""

    # Application Configuration
    app_environment: str = "development"
    log_level: str = "INFO"
    app_base_url: str = ""  # Frontend URL the OAuth callback redirects back to

    # Token lifecycle
    token_refresh_buffer_seconds: int = 5 * 60
    oauth_state_ttl_seconds: int = 10 * 60
    token_refresh_interval_seconds: int = 30 * 60
    token_refresh_scheduler_threshold_seconds: int = 60 * 60

    # API client
    lightspeed_rate_limit_per_second: int = 3
    max_retry_attempts: int = 3
    retry_initial_delay_seconds: float = 1.0
    request_timeout_seconds: float = 30.0
    request_deadline_seconds: float = 60.0
    items_page_size: int = 100
    sync_sales_lookback_days: int = 30

    # Product matching
    match_auto_accept_confidence: float = 85.0
    match_review_confidence: float = 70.0
    match_candidate_limit: int = 5
    match_queue_batch_size: int = 10
    max_match_attempts: int = 3
    match_worker_interval_seconds: int = 30

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


def _is_valid_key(key: str) -> bool:
    return len(key) == 64 and all(c in string.hexdigits for c in key)


def ensure_lightspeed_configured(config: "Settings | None" = None) -> None:
    """
    Fail fast when the Lightspeed integration cannot run.

    Raises:
        ConfigurationError: If credentials are missing or the encryption key is malformed.
    """
    config = config or settings
    missing = [
        name
        for name in ("lightspeed_client_id", "lightspeed_client_secret", "lightspeed_redirect_uri")
        if not getattr(config, name).strip()
    ]
    if missing:
        raise ConfigurationError(f"Missing Lightspeed configuration: {', '.join(missing)}")
    if not _is_valid_key(config.token_encryption_key.strip()):
        raise ConfigurationError("token_encryption_key must be exactly 64 hex characters (32 bytes)")


# Global settings instance
settings = Settings()
