import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict, Field
from typing import List, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Canonical public origin of the site (Origin/Referer checks)
    SITE_URL: str = "http://localhost:3000"
    CORS_ORIGINS: str = ""  # comma-separated, empty = SITE_URL only

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Storage backends
    STORE_BACKEND: str = "memory"  # memory | sql
    DB_AUTO_CREATE: bool = False  # create missing tables at startup (sql store)
    RATE_LIMIT_BACKEND: str = "memory"  # memory | redis

    # Rate limiting (fixed window)
    ACCESS_CHECK_RATE_LIMIT_MAX: int = 60
    ACCESS_CHECK_RATE_LIMIT_WINDOW_MS: int = 60_000
    FREE_SLOT_RATE_LIMIT_MAX: int = 10
    FREE_SLOT_RATE_LIMIT_WINDOW_MS: int = 60_000
    STATS_RATE_LIMIT_MAX: int = 60
    STATS_RATE_LIMIT_WINDOW_MS: int = 60_000
    TRUST_FORWARDED_FOR: bool = False

    # Session auth
    SESSION_SECRET: Optional[str] = None
    SESSION_COOKIE_NAME: str = "sa_session"
    ALLOW_USER_ID_HEADER: bool = False  # dev/test only

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None

    # Stats
    SCORE_HALF_LIFE_DAYS: float = Field(default=14.0, gt=0)

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def cors_origins_list(self) -> List[str]:
        origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        return origins or [self.SITE_URL.rstrip("/")]


settings = Settings()


def required_keys(cfg: Settings) -> List[str]:
    """Keys the configured features cannot run without."""
    keys = ["SESSION_SECRET"]
    if cfg.STORE_BACKEND == "sql":
        keys.append("DATABASE_URL")
    if cfg.RATE_LIMIT_BACKEND == "redis":
        keys.append("REDIS_URL")
    if cfg.STRIPE_SECRET_KEY:
        keys.append("STRIPE_WEBHOOK_SECRET")
    return keys


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """
    Report missing configuration by key name (values are never logged).

    Warns by default; raises RuntimeError when strict (or CONFIG_STRICT) is set.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("sceneaccess")
    missing = [key for key in required_keys(cfg) if not getattr(cfg, key, None)]
    if not missing:
        return True

    message = f"Missing required configuration: {', '.join(missing)}"
    if cfg.CONFIG_STRICT if strict is None else strict:
        raise RuntimeError(message)
    log.warning(message)
    return True
