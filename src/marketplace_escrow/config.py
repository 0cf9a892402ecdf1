"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup — if a setting has the wrong type or range, the app fails fast
with a clear error message.

Usage:
    from marketplace_escrow.config import get_settings
    settings = get_settings()
    print(settings.buyer_fee_rate)
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Marketplace Escrow Engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://escrow:escrow_dev"
        "@localhost:5432/marketplace_escrow"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_idempotency_ttl_seconds: int = 86400  # 24 hours

    # --- Fees ---
    # Rates are fractions of the agreed price. The seller rate is the default
    # plan rate; a listing may carry its own override.
    buyer_fee_rate: Decimal = Field(default=Decimal("0.05"), ge=0, le=1)
    seller_fee_rate: Decimal = Field(default=Decimal("0.08"), ge=0, le=1)

    # --- Negotiation ---
    offer_ttl_hours: int = Field(default=48, gt=0)
    max_offer_ratio: Decimal = Field(default=Decimal("1.5"), gt=0)

    # --- Transaction deadlines ---
    payment_deadline_hours: int = Field(default=48, gt=0)
    escrow_release_days: int = Field(default=7, gt=0)

    # --- Identity / KYC gate (amounts in cents) ---
    kyc_default_level: Literal["none", "document", "full"] = "none"
    kyc_none_ceiling: int = 100_000  # R$ 1.000,00
    kyc_document_ceiling: int = 1_000_000  # R$ 10.000,00

    # --- Payment gateway ---
    payment_gateway_mode: Literal["simulated"] = "simulated"
    payment_gateway_fail_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    gateway_max_attempts: int = Field(default=3, ge=1)
    gateway_backoff_min_seconds: float = 0.5
    gateway_backoff_max_seconds: float = 8.0

    # --- Sweeps ---
    sweep_batch_size: int = Field(default=200, gt=0)

    # --- Admin ---
    admin_user_ids: str = ""

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def admin_user_id_set(self) -> frozenset[str]:
        """Parse comma-separated admin ids into a set."""
        if not self.admin_user_ids:
            return frozenset()
        return frozenset(u.strip() for u in self.admin_user_ids.split(",") if u.strip())

    @property
    def sync_database_url(self) -> str:
        """Synchronous database URL for Alembic migrations."""
        return self.database_url.replace("+asyncpg", "+psycopg2")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
