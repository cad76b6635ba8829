"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

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
    APP_NAME: str = "Mentor Marketplace"
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
    REDIS_SLOT_LOCK_TTL: int = 30       # held only while book_slot runs

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    JWT_REFRESH_TOKEN_EXPIRE_DAYS: int = 30
    RESET_TOKEN_EXPIRE_MINUTES: int = 60
    INVITE_TOKEN_EXPIRE_DAYS: int = 7
    EMAIL_CONFIRM_EXPIRE_HOURS: int = 48

    # ── Microsoft Graph mail ─────────────────────────────────
    TENANT_ID: str = ""
    CLIENT_ID: str = ""
    CLIENT_SECRET: str = ""
    SENDER_EMAIL: str = ""
    GRAPH_TOKEN_URL: str = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
    GRAPH_BASE_URL: str = "https://graph.microsoft.com/v1.0"
    GRAPH_TIMEOUT_SECONDS: float = 10.0

    # ── Frontend ─────────────────────────────────────────────
    FRONTEND_URL: str = "http://localhost:3000"
    MENTOR_DASHBOARD_URL: str = "http://localhost:3000/mentor/dashboard"
    SET_PASSWORD_URL: str = "http://localhost:3000/set-password"
    RESET_PASSWORD_URL: str = "http://localhost:3000/reset-password"
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_PER_MINUTE: int = 100
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20

    # ── Business Config ──────────────────────────────────────
    SLOT_HORIZON_DAYS: int = 30
    DEFAULT_SLOT_MINUTES: int = 60
    BOOKING_WIDGET_DAYS: int = 7
    LOGOUT_TIMEOUT_SECONDS: float = 0.6

    # ── Development seed ─────────────────────────────────────
    SEED_ADMIN_EMAIL: Optional[str] = None
    SEED_ADMIN_PASSWORD: Optional[str] = None

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def mail_configured(self) -> bool:
        return all((self.TENANT_ID, self.CLIENT_ID, self.CLIENT_SECRET, self.SENDER_EMAIL))


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance, call this everywhere."""
    return Settings()


settings = get_settings()
