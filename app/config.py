from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False

    # Database settings
    DATABASE_URL: str = "postgresql://localhost:5432/academy"

    # Frontend origin allowed to open realtime connections
    FRONTEND_URL: str = "http://localhost:5173"

    # =================================================================
    # SCHEDULER SETTINGS
    # =================================================================
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "Asia/Riyadh"
    SCHEDULER_DAILY_TIME: str = "09:00"  # coarse cadence, local time
    SCHEDULER_FINE_INTERVAL_SECONDS: int = 60
    SCHEDULER_MAX_CONCURRENT_RULES: int = 5

    # =================================================================
    # SMS SETTINGS
    # =================================================================
    SMS_PROVIDER: str = "mock"
    SMS_FALLBACK_PROVIDER: str | None = None
    SMS_SENDER_NAME: str = "AcademySMS"
    SMS_COUNTRY_CODE: str = "966"
    SMS_WEBHOOK_SECRET: str | None = None

    TAQNYAT_BASE_URL: str = "https://api.taqnyat.sa"
    TAQNYAT_BEARER_TOKEN: str | None = None
    TAQNYAT_SENDER_NAME: str | None = None

    PLIVO_BASE_URL: str = "https://api.plivo.com/v1"
    PLIVO_AUTH_ID: str | None = None
    PLIVO_AUTH_TOKEN: str | None = None
    PLIVO_SENDER_ID: str | None = None

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def fallback_provider(self) -> str | None:
        """Fallback provider id, or None when unset or equal to the primary."""
        fallback = (self.SMS_FALLBACK_PROVIDER or "").strip().lower()
        if not fallback or fallback == self.SMS_PROVIDER.strip().lower():
            return None
        return fallback

    def allowed_origins(self) -> list[str]:
        return [origin.strip() for origin in self.FRONTEND_URL.split(",") if origin.strip()]

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
            config.update({"min_size": 1, "max_size": 4, "timeout": 15.0})

        return config


settings = Settings()
