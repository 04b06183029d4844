import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Operator access (X-Admin-Key)
    ADMIN_KEY: Optional[str] = None

    # Scoring
    POINTS_PER_TASK: int = 10
    DAY_COMPLETION_RATIO: float = 1.0  # share of applicable tasks needed for a day to count
    WEEKLY_BONUS_POINTS: int = 50
    MILESTONE_BONUSES_ENABLED: bool = True

    # Outreach reconciliation
    OUTREACH_LOOKBACK_DAYS: int = 1

    # Audit & backfill
    ZERO_POINTS_GRACE_DAYS: int = 2
    BACKFILL_FROM_JOIN_DAY: bool = False
    AUDIT_MAX_WORKERS: int = 4
    AUDIT_SAMPLE_LIMIT: int = 25

    # Store retry policy
    STORE_RETRY_ATTEMPTS: int = 3
    STORE_RETRY_BASE_DELAY_SECONDS: float = 0.2
    STORE_RETRY_MAX_DELAY_SECONDS: float = 5.0

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("challenge")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if not 0 < cfg.DAY_COMPLETION_RATIO <= 1:
        message = f"DAY_COMPLETION_RATIO must be in (0, 1], got {cfg.DAY_COMPLETION_RATIO}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
