import logging
from functools import lru_cache

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://postgres:postgres@db:5432/medrefill"
    # Alembic only; derived from DATABASE_URL when empty
    DATABASE_URL_SYNC: str = ""
    JWT_SECRET: str = "change-me-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_MINUTES: int = 60
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"
    APP_ENV: str = "development"

    # Calendar used for "today" (fill dates, reminder dates, scheduler trigger)
    APP_TIMEZONE: str = "Asia/Kolkata"

    # Notifications: "log" writes the rendered message to the log, "twilio" sends SMS
    NOTIFY_BACKEND: str = "log"
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM_NUMBER: str = ""
    SMS_COUNTRY_CODE: str = "+91"

    # Refill reminders
    REMINDER_LOOP_ENABLED: bool = True
    REMINDER_RUN_HOUR: int = 9
    REMINDER_RUN_MINUTE: int = 0
    REMINDER_LEAD_DAYS: int = 3
    REMINDER_MIN_DAYS: int = 7

    # Live tracking feed
    LIVE_FEED_QUEUE_SIZE: int = 100
    LIVE_FEED_KEEPALIVE_SECONDS: int = 15

    # Database connection pool (tune per environment via env vars)
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30

    model_config = {"env_file": "../.env", "env_file_encoding": "utf-8", "extra": "ignore"}


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()

    # Fail loudly if JWT_SECRET is the insecure default in production
    if settings.APP_ENV == "production" and settings.JWT_SECRET == "change-me-in-production":
        raise RuntimeError(
            "FATAL: JWT_SECRET is still the default value. "
            "Set a strong random secret via environment variable before running in production. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )

    if settings.APP_ENV == "production":
        origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
        if "*" in origins:
            raise RuntimeError(
                "FATAL: CORS_ORIGINS contains '*' which is not allowed in production. "
                "Set explicit allowed origins, e.g. CORS_ORIGINS=https://pharmacy.example.com"
            )

    if settings.NOTIFY_BACKEND not in ("log", "twilio"):
        raise RuntimeError(
            f"FATAL: NOTIFY_BACKEND must be 'log' or 'twilio', got {settings.NOTIFY_BACKEND!r}"
        )

    if settings.NOTIFY_BACKEND == "twilio":
        if not settings.TWILIO_ACCOUNT_SID or not settings.TWILIO_AUTH_TOKEN or not settings.TWILIO_FROM_NUMBER:
            logger.warning(
                "NOTIFY_BACKEND=twilio but TWILIO_ACCOUNT_SID/TWILIO_AUTH_TOKEN/TWILIO_FROM_NUMBER "
                "are not all set; patient notifications will fail and reminders stay unsent."
            )
    elif settings.APP_ENV == "production":
        logger.warning(
            "NOTIFY_BACKEND=log in production; patient notifications are only written to the log."
        )

    if settings.REMINDER_LEAD_DAYS >= settings.REMINDER_MIN_DAYS:
        raise RuntimeError(
            "FATAL: REMINDER_LEAD_DAYS must be smaller than REMINDER_MIN_DAYS, "
            "otherwise reminders would be dated on or before the fill date."
        )

    return settings


def clear_settings_cache() -> None:
    """Clear the cached Settings so the next call to ``get_settings()``
    re-reads environment variables.
    """
    get_settings.cache_clear()
