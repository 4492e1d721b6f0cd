"""Configuration management for the shortlink service.

This module provides centralized configuration management using Pydantic BaseSettings
with environment variable support and caching for performance.

Flow Diagram — get_settings()
=============================
::
    ┌─────────────┐
    │  Call get_  │
    │  settings() │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Check cache │
    │ (lru_cache) │
    └──────┬──────┘
    HIT?   │
    ┌──────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Create  │  │ Return  │
│ Settings│  │ cached  │
│ instance│  │ value   │
└─────────┘  └─────────┘

How to Use
===========
**Step 1 — Import**::
    from shortlink.config import get_settings

**Step 2 — Read core tunables**::
    settings = get_settings()
    length = settings.LINK_LENGTH
    window = settings.NON_USER_COOLDOWN

Key Behaviours
===============
- Settings are cached after first access.
- Environment variables override defaults automatically.
- ``NON_USER_COOLDOWN`` is expressed in minutes, every other interval in seconds.

Classes:
    Settings:  Pydantic model for all configuration values.
"""

__all__ = ["Settings", "get_settings"]

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "shortlink"
    APP_ENV: str = "development"
    BASE_URL: str = "http://localhost:8080"

    # Host the service itself answers on; any other host is a custom domain.
    DEFAULT_DOMAIN: str = "localhost:8080"
    CUSTOM_DOMAIN_USE_HTTPS: bool = False

    # PostgreSQL
    DATABASE_URL: str = "postgresql+asyncpg://shortlink:shortlink@db:5432/shortlink"

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"
    # Optional read replica for cache GETs; empty means read from the primary.
    REDIS_REPLICA_URL: str = ""

    # Short code generation
    LINK_LENGTH: int = 6
    LINK_GENERATION_MAX_RETRIES: int = 5

    # Link cache
    LINK_CACHE_TTL_SECONDS: int = 300

    # Anonymous rate limiting
    NON_USER_COOLDOWN: int = 10
    COOLDOWN_SWEEP_INTERVAL_SECONDS: int = 60
    DISALLOW_ANONYMOUS_LINKS: bool = False
    ALLOW_ANONYMOUS_PASSWORDS: bool = False
    USER_LIMIT_PER_DAY: int = 50

    # Banned-host strikes before the submitting user is banned
    USER_COOLDOWN_LIMIT: int = 3
    USER_COOLDOWN_WINDOW_HOURS: int = 12

    # Visit statistics
    MAX_STATS_KEYS_PER_LINK: int = 100

    # Geolocation collaborator
    GEOIP_SERVICE_URL: str = ""
    GEOIP_COUNTRY_HEADER: str = "cf-ipcountry"
    GEOIP_TIMEOUT_SECONDS: float = 0.5

    # Comma separated list of admin e-mail addresses
    ADMIN_EMAILS: str = ""

    RECAPTCHA_SECRET_KEY: str = ""
    RECAPTCHA_VERIFY_URL: str = "https://www.google.com/recaptcha/api/siteverify"

    # Malware lookup on submitted targets; empty key disables it.
    GOOGLE_SAFE_BROWSING_KEY: str = ""
    SAFE_BROWSING_URL: str = "https://safebrowsing.googleapis.com/v4/threatMatches:find"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    @property
    def admin_emails(self) -> set[str]:
        return {email.strip().lower() for email in self.ADMIN_EMAILS.split(",") if email.strip()}


@lru_cache()
def get_settings() -> Settings:
    return Settings()
