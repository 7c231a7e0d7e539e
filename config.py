"""Configuration for the SponsorConnect API.

Environment variables are loaded from a ``.env`` file via python-dotenv and
exposed through a single ``settings`` instance.  Tests build their own
:class:`Settings` with keyword overrides.

Example ``.env``::

    DATABASE_URL=mongodb://localhost:27017
    DATABASE_NAME=sponsorconnect
    STORAGE_BACKEND=auto
    STRIPE_SECRET_KEY=sk_test_...
    SECRET_KEY=change-me
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


def _parse_origins() -> list[str]:
    raw = os.getenv("CORS_ORIGINS", "*").strip()
    return [part.strip() for part in raw.split(",") if part.strip()] or ["*"]


@dataclass
class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "sponsorconnect")
    # remote, local or auto (ping MongoDB once at startup, fall back to local)
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "auto")
    LOCAL_STORE_PATH: str = os.getenv("LOCAL_STORE_PATH", "sponsorconnect_demo.json")
    DB_TIMEOUT_MS: int = int(os.getenv("DB_TIMEOUT_MS", "5000"))

    STRIPE_SECRET_KEY: str = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_API_BASE: str = os.getenv("STRIPE_API_BASE", "https://api.stripe.com/v1")
    PAYMENT_TIMEOUT_SECONDS: float = float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "8"))
    # Authoritative platform fee; 5% is what the funding flow charges
    PLATFORM_FEE_RATE: Decimal = Decimal(os.getenv("PLATFORM_FEE_RATE", "0.05"))

    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev-secret-change-me")
    TOKEN_TTL_SECONDS: int = int(os.getenv("TOKEN_TTL_SECONDS", str(7 * 24 * 3600)))
    ADMIN_REGISTRATION_KEY: str = os.getenv("ADMIN_REGISTRATION_KEY", "")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    CORS_ORIGINS: list[str] = field(default_factory=_parse_origins)

    @property
    def stripe_configured(self) -> bool:
        return self.STRIPE_SECRET_KEY.startswith("sk_")


settings = Settings()
