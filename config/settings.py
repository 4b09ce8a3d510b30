"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from decimal import Decimal
from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "SlotBook"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_CACHE_TTL: int = 300          # 5 minutes
    CALENDAR_CACHE_TTL: int = 30

    # ── JWT (issued by the identity provider) ────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # ── Razorpay ─────────────────────────────────────────────
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_WEBHOOK_SECRET: str = ""
    PAYMENT_CURRENCY: str = "INR"

    # ── CORS ─────────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:3001"

    # ── AWS / R2 Storage (completion evidence) ───────────────
    S3_ACCESS_KEY_ID: str = ""
    S3_SECRET_ACCESS_KEY: str = ""
    S3_BUCKET_PRIVATE: str = "slotbook-evidence"
    S3_ENDPOINT_URL: Optional[str] = None
    S3_REGION: str = "auto"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20

    # ── Slots & Holds ────────────────────────────────────────
    SLOT_HORIZON_DAYS: int = 90
    DEFAULT_SLOT_DURATION_MINUTES: int = 30
    HOLD_TTL_MINUTES: int = 10
    MAX_SLOTS_PER_HOLD: int = 16
    HOLD_SWEEP_INTERVAL_SECONDS: int = 60

    # ── Business Config ──────────────────────────────────────
    PLATFORM_FEE_RATE: Decimal = Decimal("0.15")
    CONFIRMATION_WINDOW_HOURS: int = 48
    AUTO_CONFIRM_INTERVAL_SECONDS: int = 300
    DISPUTE_REASON_MIN_LENGTH: int = 10
    RESOLUTION_MIN_LENGTH: int = 10
    RESCHEDULE_REASON_MAX_LENGTH: int = 500
    EVIDENCE_MAX_FILES: int = 10
    EVIDENCE_MAX_BYTES: int = 10 * 1024 * 1024
    EVIDENCE_ALLOWED_TYPES: str = "image/jpeg,image/png,image/webp,image/heic"

    # ── Payouts ──────────────────────────────────────────────
    MINIMUM_PAYOUT_AMOUNT: Decimal = Decimal("500.00")
    MAX_OPEN_PAYOUTS: int = 3

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def evidence_allowed_types_list(self) -> List[str]:
        return [t.strip() for t in self.EVIDENCE_ALLOWED_TYPES.split(",")]


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()


settings = get_settings()
