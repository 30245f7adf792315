"""Application configuration settings."""
from __future__ import annotations

import os
from functools import lru_cache

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "test" | "staging" | "prod"
ENV = os.getenv("ALIVEHOME_ENV", "dev").lower()

SUPPORTED_CURRENCIES = {"USD", "EUR", "GBP", "CAD", "AUD", "NGN", "INR", "GHS", "KES", "ZAR"}


class Settings(BaseSettings):
    """Environment configuration for the AliveHome payment core."""

    app_env: str = ENV
    database_url: str = "sqlite:///alivehome.db"
    LOG_LEVEL: str = "INFO"
    PAYMENT_CURRENCY: str = "USD"
    GATEWAY_TIMEOUT_SECONDS: float = 30.0

    # --- Stripe ------------------------------------------------------------
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # --- PayPal (OAuth client credentials) ----------------------------------
    PAYPAL_CLIENT_ID: str | None = None
    PAYPAL_CLIENT_SECRET: str | None = None
    PAYPAL_MODE: str = "sandbox"
    PAYPAL_WEBHOOK_ID: str | None = None

    # --- Razorpay ----------------------------------------------------------
    RAZORPAY_KEY_ID: str | None = None
    RAZORPAY_KEY_SECRET: str | None = None
    RAZORPAY_WEBHOOK_SECRET: str | None = None

    # --- Flutterwave -------------------------------------------------------
    FLUTTERWAVE_SECRET_KEY: str | None = None
    FLUTTERWAVE_SECRET_HASH: str | None = None

    # --- Paystack ----------------------------------------------------------
    PAYSTACK_SECRET_KEY: str | None = None

    # --- Manual providers (cash, bank transfer) -----------------------------
    CASH_PROCESSING_DELAY_SECONDS: float = 0.0

    # --- Recurring billing -------------------------------------------------
    SCHEDULER_ENABLED: bool = False
    BILLING_INTERVAL_MINUTES: int = 60
    BILLING_MAX_WORKERS: int = 4

    ALLOW_DB_CREATE_ALL: bool = False
    CORS_ALLOW_ORIGINS: list[str] = [
        "https://alivehome.com",
        "https://app.alivehome.com",
        "http://localhost:3000",
    ]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = False

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator(
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "PAYPAL_CLIENT_ID",
        "PAYPAL_CLIENT_SECRET",
        "PAYPAL_WEBHOOK_ID",
        "RAZORPAY_KEY_ID",
        "RAZORPAY_KEY_SECRET",
        "RAZORPAY_WEBHOOK_SECRET",
        "FLUTTERWAVE_SECRET_KEY",
        "FLUTTERWAVE_SECRET_HASH",
        "PAYSTACK_SECRET_KEY",
        "SENTRY_DSN",
    )
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty credentials to ``None`` so unconfigured providers stay unregistered."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("PAYMENT_CURRENCY")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        cleaned = value.strip().upper()
        if cleaned not in SUPPORTED_CURRENCIES:
            raise ValueError(f"Unsupported PAYMENT_CURRENCY {value!r}")
        return cleaned

    @property
    def paypal_base_url(self) -> str:
        if self.PAYPAL_MODE.lower() == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


class AppInfo(BaseModel):
    name: str = "alivehome-payments"
    version: str = "0.1.0"


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()


__all__ = [
    "ENV",
    "SUPPORTED_CURRENCIES",
    "Settings",
    "AppInfo",
    "get_settings",
]
