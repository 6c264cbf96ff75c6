# settings.py
from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    # -----------------------
    # DB
    # -----------------------
    DATABASE_URL: str = Field(...)
    DB_POOL_MAX: int = Field(default=10, ge=1)
    DB_STATEMENT_TIMEOUT_MS: int = Field(default=5000, ge=100)

    # -----------------------
    # JWT
    # -----------------------
    JWT_SECRET: str = Field(default="dev-secret-change-me", min_length=16)
    JWT_ALG: str = Field(default="HS256")
    JWT_ACCESS_MINUTES: int = Field(default=60, ge=1)

    # -----------------------
    # Public URLs (used in e-mailed links)
    # -----------------------
    FRONTEND_URL: str = "http://localhost:3000"
    BACKEND_URL: str = "http://localhost:8000"

    # -----------------------
    # Payment rail
    # -----------------------
    RAIL_MODE: Literal["mock", "campay"] = "mock"
    CAMPAY_BASE_URL: str = "https://demo.campay.net/api/"
    # Ordered "username:password" pairs, tried left to right
    CAMPAY_CREDENTIALS: str = ""
    CAMPAY_WEBHOOK_KEY: str = ""
    CAMPAY_HTTP_TIMEOUT_S: float = 20.0
    CURRENCY: str = "XAF"

    # -----------------------
    # Fees
    # -----------------------
    PLATFORM_FEE_RATE: float = Field(default=0.02, ge=0, lt=1)
    REFERRAL_FEE_RATE: float = Field(default=0.005, ge=0, lt=1)

    # -----------------------
    # Escrow rules
    # -----------------------
    DISPUTE_SELLER_WAIT_HOURS: int = 48
    MIN_REFERRAL_WITHDRAWAL: int = 1000

    # -----------------------
    # Scheduled jobs
    # -----------------------
    REMINDER_LEVEL_HOURS: str = "24,48,72"
    ESCALATION_LEVEL_HOURS: str = "72,168"
    JOBS_INTERVAL_SECONDS: int = 3600

    # -----------------------
    # Platform settings cache
    # -----------------------
    PLATFORM_SETTINGS_TTL_S: float = 10.0

    # -----------------------
    # E-mail (SMTP)
    # -----------------------
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_USE_TLS: bool = True
    SMTP_FROM_EMAIL: str = "no-reply@escrow.local"
    SMTP_FROM_NAME: str = "Escrow"
    ADMIN_EMAIL: str = ""


def parse_hours(raw: str) -> list[int]:
    out: list[int] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if part:
            out.append(int(part))
    return out


settings = Settings()
