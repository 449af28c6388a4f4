from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"

DEFAULT_PRIORITY_SCORES = {
    "EMERGENCY": 1000,
    "EXPECTANT": 800,
    "SENIOR": 600,
    "VIP": 400,
    "NORMAL": 0,
}


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Storage: "memory" keeps everything in-process, "postgres" uses DATABASE_URL
    STORAGE_BACKEND: str = "memory"
    DATABASE_URL: str | None = None

    # Redis settings (only needed for the redis notification sink)
    REDIS_URL: str | None = None

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # Notifications
    EMAIL_ENABLED: bool = True
    NOTIFICATION_SINK: str = "log"  # log, redis
    NOTIFICATION_REDIS_KEY: str = "queue:notifications"
    NOTIFIER_SETTLING_DELAY_MS: int = 500
    NOTIFIER_SEND_TIMEOUT_S: float = 10.0

    # Queue rules
    PRIORITY_SCORES: dict[str, int] = dict(DEFAULT_PRIORITY_SCORES)
    DEFAULT_SERVICE_DURATION_MINUTES: int = 15
    AVERAGE_WINDOW_DAYS: int = 30
    SENIOR_AGE_THRESHOLD: int = 60
    SITE_TIMEZONE: str = "UTC"

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("PRIORITY_SCORES")
    @classmethod
    def _require_every_priority(cls, value: dict[str, int]) -> dict[str, int]:
        normalized = {name.upper(): int(score) for name, score in value.items()}
        missing = set(DEFAULT_PRIORITY_SCORES) - set(normalized)
        if missing:
            raise ValueError(f"PRIORITY_SCORES is missing: {', '.join(sorted(missing))}")
        return normalized

    @field_validator("STORAGE_BACKEND", "NOTIFICATION_SINK")
    @classmethod
    def _lowercase(cls, value: str) -> str:
        return value.strip().lower()

    def settling_delay_seconds(self) -> float:
        return max(self.NOTIFIER_SETTLING_DELAY_MS, 0) / 1000.0

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update(
                {
                    "min_size": 1,
                    "max_size": 4,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
