"""
Application settings loaded from environment variables.

Uses pydantic-settings for validation and type safety.
Every option the exchange endpoint reads lives here: credentials,
sync switches, price type, size limits and retention windows.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings.

    All values loaded from .env file or environment variables.
    Validation happens automatically on startup.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),  # Check current dir, then parent
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"  # Ignore extra env vars
    )

    # ===================
    # SUPABASE
    # ===================
    supabase_url: str = Field(
        ...,
        description="Supabase project URL"
    )
    supabase_key: str = Field(
        ...,
        description="Supabase anon/public key"
    )
    supabase_service_key: Optional[str] = Field(
        None,
        description="Supabase service role key, preferred for exchange writes when set"
    )

    # ===================
    # EXCHANGE ENDPOINT
    # ===================
    exchange_enabled: bool = Field(
        default=True,
        description="Accept exchange requests from the ERP"
    )
    exchange_path: str = Field(
        default="/1c-exchange",
        pattern="^/[A-Za-z0-9_./-]*$",
        description="URL path of the exchange endpoint"
    )
    exchange_username: str = Field(
        default="",
        description="HTTP Basic username expected from the ERP (empty = no auth)"
    )
    exchange_password: str = Field(
        default="",
        description="HTTP Basic password expected from the ERP"
    )
    exchange_dir: Path = Field(
        default=Path("exchange_files"),
        description="Directory where uploaded exchange files accumulate"
    )
    session_cookie_name: str = Field(
        default="PHPSESSID",
        min_length=1,
        description="Cookie name announced in the checkauth response"
    )
    require_session: bool = Field(
        default=False,
        description="Reject requests that do not carry a session cookie"
    )
    session_ttl_seconds: int = Field(
        default=3600,
        ge=60,
        le=86400,
        description="Lifetime of an exchange session"
    )
    file_retention_seconds: int = Field(
        default=3600,
        ge=60,
        le=604800,
        description="Files older than this are removed on init"
    )

    # ===================
    # SIZE LIMITS
    # ===================
    upload_max_filesize: str = Field(
        default="64M",
        pattern=r"^\d+[KMGkmg]?$",
        description="Largest single upload accepted (K/M/G suffix allowed)"
    )
    post_max_size: str = Field(
        default="64M",
        pattern=r"^\d+[KMGkmg]?$",
        description="Largest request body accepted (K/M/G suffix allowed)"
    )
    memory_limit: str = Field(
        default="512M",
        pattern=r"^\d+[KMGkmg]?$",
        description="Memory available to one request (K/M/G suffix allowed)"
    )

    # ===================
    # SYNC OPTIONS
    # ===================
    sync_categories: bool = Field(default=True, description="Import category tree")
    sync_attributes: bool = Field(default=True, description="Import product attributes")
    sync_images: bool = Field(default=True, description="Attach uploaded product images")
    sync_prices: bool = Field(default=True, description="Import prices from offers")
    sync_stock: bool = Field(default=True, description="Import stock from offers")
    price_type: str = Field(
        default="Розничная",
        description="Price type name to use; first price is used when it does not match"
    )
    warehouse: str = Field(
        default="",
        description="Warehouse ID to take stock from (empty = total over all warehouses)"
    )
    order_statuses: list[str] = Field(
        default=["processing", "completed"],
        description="Local order statuses exported to the ERP"
    )

    # ===================
    # APP SETTINGS
    # ===================
    environment: str = Field(
        default="development",
        pattern="^(development|staging|production)$",
        description="Application environment"
    )
    debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="API host"
    )
    api_port: int = Field(
        default=8000,
        ge=1000,
        le=65535,
        description="API port"
    )

    # ===================
    # COMPUTED PROPERTIES
    # ===================
    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def auth_configured(self) -> bool:
        """Check if exchange credentials are set."""
        return bool(self.exchange_username or self.exchange_password)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload.

    Returns:
        Settings: Application settings

    Raises:
        ValidationError: If required env vars are missing or invalid
    """
    return Settings()


# For convenient imports: from config.settings import settings
settings = get_settings()
