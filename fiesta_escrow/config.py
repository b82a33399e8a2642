"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables, with an optional .env file
as a fallback. This keeps provider credentials and signing keys out of source
code — the .env file is gitignored, and .env.example provides a safe template.

Pydantic Settings automatically:
  1. Reads from environment variables (highest priority)
  2. Falls back to .env file values
  3. Uses defaults defined here (lowest priority)

Usage:
    from fiesta_escrow.config import settings
    print(settings.PLATFORM_FEE_CENTS)
"""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the escrow service.

    Required fields (no defaults) MUST be set in .env or environment:
      - SECRET_KEY: Used to sign JWT tokens
      - SECRET_ENCRYPTION_KEY: Fernet key for encrypting provider client
        secrets at rest
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Application ---
    APP_NAME: str = "Fiesta Escrow API"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    # Render logs as JSON lines instead of the console renderer
    LOG_JSON: bool = False

    # --- Database ---
    # SQLite for development; swap to a PostgreSQL (asyncpg) URL for production
    DATABASE_URL: str = "sqlite+aiosqlite:///./escrow.db"

    # --- Authentication ---
    # REQUIRED: no default, must be set in the environment
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # --- Secret encryption ---
    # REQUIRED: Fernet key for encrypting provider client secrets at rest
    # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    SECRET_ENCRYPTION_KEY: str

    # --- Business model (all amounts in cents) ---
    CURRENCY: str = "EUR"
    # Fee per operation; also the threshold for the access gate
    PLATFORM_FEE_CENTS: int = 150
    # Minimum top-up covers three operations
    MIN_TOPUP_CENTS: int = 450
    # Credited to a referrer when the referred user completes a first match
    REFERRAL_CREDIT_CENTS: int = 500
    # A pending top-up intent younger than this is reused instead of re-created
    TOPUP_REUSE_MINUTES: int = 30
    # Policy applied to captured funds when an experience does not set one
    DEFAULT_CANCELLATION_POLICY: Literal[
        "flexible", "moderate", "strict", "non_refundable", "full"
    ] = "full"

    # --- Payment providers ---
    # Which provider backs match holds: "card" (payment intents) or "order"
    PAYMENT_PROVIDER: Literal["card", "order"] = "card"
    # Top-ups are always card payments with automatic capture

    CARD_PROVIDER_BASE_URL: str = "https://api.stripe.com"
    CARD_PROVIDER_SECRET_KEY: str | None = None

    ORDER_PROVIDER_SANDBOX: bool = True
    ORDER_PROVIDER_CLIENT_ID: str | None = None
    ORDER_PROVIDER_CLIENT_SECRET: str | None = None
    ORDER_PROVIDER_BRAND_NAME: str = "FiestApp"

    # Signing secret for card provider webhooks; unsigned events are rejected when set
    CARD_PROVIDER_WEBHOOK_SECRET: str | None = None
    # Tolerated clock skew for webhook signature timestamps
    WEBHOOK_TOLERANCE_SECONDS: int = 300

    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    # Retries for 429 and 5xx provider responses (requests carry idempotency keys)
    PROVIDER_MAX_RETRIES: int = 2

    # --- CORS ---
    # Origins allowed to make cross-origin requests (frontend URLs)
    ALLOWED_ORIGINS: list[str] = ["http://localhost:3000"]

    @property
    def order_provider_base_url(self) -> str:
        if self.ORDER_PROVIDER_SANDBOX:
            return "https://api-m.sandbox.paypal.com"
        return "https://api-m.paypal.com"


# Singleton: import this instance everywhere instead of creating new Settings()
settings = Settings()
