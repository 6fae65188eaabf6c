"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Campaign Execution Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./campaigns.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Redis Settings (Celery broker/backend, notification pub/sub)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Worker Settings
    WORKER_CONCURRENCY: int = 5
    JOB_MAX_ATTEMPTS: int = 3
    JOB_BACKOFF_SECONDS: int = 5
    JOB_BACKOFF_MAX_SECONDS: int = 600

    # Engine Settings
    MAX_STEPS_PER_JOB: int = 100
    CONDITION_LOOKBACK_DAYS: int = 30

    # Job queue: "celery" dispatches to workers, "inline" runs jobs in the API process
    JOB_QUEUE_BACKEND: str = "celery"

    # Scheduler Settings
    SCHEDULER_INTERVAL_SECONDS: int = 30
    SCHEDULER_IN_PROCESS: bool = False  # run the polling loop inside the API process
    SCHEDULER_BATCH_SIZE: int = 100
    DEFERRED_MAX_RETRIES: int = 3
    DEFERRED_RETRY_BASE_SECONDS: float = 120.0
    RETENTION_DAYS: int = 30

    # Delivery collaborator
    DELIVERY_BACKEND: str = "log"  # log or http
    DELIVERY_SERVICE_URL: str = ""
    DELIVERY_API_KEY: str = ""
    DELIVERY_TIMEOUT: float = 15.0

    # Notification channel
    NOTIFICATION_BACKEND: str = "websocket"  # websocket, redis or none
    NOTIFICATION_CHANNEL_PREFIX: str = "campaign"

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:8080"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse ALLOWED_ORIGINS string into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    def validate_delivery(self) -> None:
        """Validate that the configured delivery backend is usable.

        Raises:
            RuntimeError: If the HTTP backend is selected without a service URL
        """
        if self.DELIVERY_BACKEND == "http" and not self.DELIVERY_SERVICE_URL:
            raise RuntimeError(
                "DELIVERY_SERVICE_URL must be set when DELIVERY_BACKEND=http."
            )

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
