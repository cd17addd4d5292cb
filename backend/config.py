"""
Configuration management for the Beat Marketplace fulfillment service.

Loads settings from .env via pydantic-settings.

Security notes:
    - Webhooks are rejected when PAYSTACK_SECRET_KEY is unset (fail closed)
    - validate_production_settings() enforces strict CORS and secrets in production
"""
import logging

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ── Database ────────────────────────────────────────────────────
    database_url: str = "sqlite:///./data/marketplace.db"

    # ── Paystack (card / bank rail) ─────────────────────────────────
    paystack_secret_key: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    paystack_timeout_seconds: float = 15.0

    # ── Solana (USDC rail) ──────────────────────────────────────────
    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    solana_commitment: str = "confirmed"
    solana_poll_attempts: int = 20          # 20 x 3s ~= 60s of propagation lag
    solana_poll_interval_seconds: float = 3.0
    solana_timeout_seconds: float = 10.0    # per RPC request

    # ── Stuck order sweep ───────────────────────────────────────────
    sweep_enabled: bool = True
    sweep_interval_seconds: int = 60
    sweep_stuck_after_seconds: int = 120    # only orders older than 2 minutes
    sweep_batch_size: int = 20
    sweep_poll_attempts: int = 3
    sweep_order_timeout_seconds: float = 30.0
    cron_secret: str = ""

    # ── Webhook ─────────────────────────────────────────────────────
    webhook_scan_limit: int = 5

    # ── Application ─────────────────────────────────────────────────
    environment: str = "development"
    app_version: str = "1.0.0"

    # ── CORS ────────────────────────────────────────────────────────
    cors_origins: str = "http://localhost:5173,http://127.0.0.1:5173,http://localhost:8080,http://127.0.0.1:8080"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # allow unknown .env keys without crashing
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def validate_production_settings(self):
        """
        Validate settings for production safety.

        Called during app startup. Raises ValueError in production when a
        secret is missing; only warns in every other environment.
        """
        if self.is_production:
            if "*" in self.cors_origins:
                raise ValueError(
                    "CORS_ORIGINS must not contain '*' in production. "
                    "Set explicit allowed origins."
                )
            if not self.paystack_secret_key:
                raise ValueError(
                    "PAYSTACK_SECRET_KEY must be set in production. "
                    "It is used to verify charges and webhook signatures."
                )
            if not self.cron_secret:
                raise ValueError(
                    "CRON_SECRET must be set in production. "
                    "It protects the stuck order sweep endpoint."
                )
            if self.database_url.startswith("sqlite"):
                logger.warning("⚠️  SQLite in production: fulfillment serializes on a file lock")
            logger.info("✅ Production settings validated")
        else:
            warnings = []
            if not self.paystack_secret_key:
                warnings.append("PAYSTACK_SECRET_KEY not set (card verification and webhooks disabled)")
            if not self.cron_secret:
                warnings.append("CRON_SECRET not set (manual sweep endpoint is open)")
            if "*" in self.cors_origins:
                warnings.append("CORS_ORIGINS contains '*' (open access)")
            for w in warnings:
                logger.warning(f"⚠️  {w}")


# Global settings instance
settings = Settings()
