import logging
import os

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    PROJECT_NAME: str = "CMMS Approval"
    SECRET_KEY: str = "secret"
    DATABASE_URL: str = "sqlite+aiosqlite:///./cmms.db"
    BACKEND_CORS_ORIGINS: list[str] = ["*"]
    ENVIRONMENT: str = "development"
    DEFAULT_COMPANY_ID: str = "C0001"
    DB_AUTO_INIT_ON_STARTUP: bool | None = None

    WEBHOOK_CALLBACK_BASE: str = "http://localhost:8000"
    WEBHOOK_SECRET_KEY: str = "cmms_dev_secret_key"
    WEBHOOK_MAX_ATTEMPTS: int = 5
    WEBHOOK_BACKOFF_MILLIS: int = 5000
    WEBHOOK_DISPATCH_DELAY_MILLIS: int = 5000
    WEBHOOK_BATCH_SIZE: int = 50
    WEBHOOK_HTTP_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_DISPATCHER_ENABLED: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore"
    )

    @model_validator(mode='after')
    def check_database_url_in_production(self):
        if self.ENVIRONMENT == "production":
            if "sqlite" in self.DATABASE_URL:
                raise ValueError(
                    "Production environment detected but DATABASE_URL points at SQLite. "
                    "Set DATABASE_URL to a PostgreSQL connection string."
                )

            # SQLAlchemy async needs the asyncpg driver in the scheme.
            if self.DATABASE_URL.startswith("postgres://"):
                logger.info("Rewriting postgres:// DATABASE_URL to postgresql+asyncpg://")
                self.DATABASE_URL = self.DATABASE_URL.replace("postgres://", "postgresql+asyncpg://", 1)
            elif self.DATABASE_URL.startswith("postgresql://") and "+asyncpg" not in self.DATABASE_URL:
                logger.info("Rewriting postgresql:// DATABASE_URL to postgresql+asyncpg://")
                self.DATABASE_URL = self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)

            if self.WEBHOOK_SECRET_KEY == "cmms_dev_secret_key" and not os.environ.get("ALLOW_DEV_WEBHOOK_SECRET"):
                raise ValueError("WEBHOOK_SECRET_KEY must be configured in production.")

        if self.WEBHOOK_MAX_ATTEMPTS < 1:
            raise ValueError("WEBHOOK_MAX_ATTEMPTS must be at least 1")
        if self.WEBHOOK_BACKOFF_MILLIS < 0:
            raise ValueError("WEBHOOK_BACKOFF_MILLIS must not be negative")

        # - development/test: create tables on startup
        # - production: schema is managed out of band
        if self.DB_AUTO_INIT_ON_STARTUP is None:
            self.DB_AUTO_INIT_ON_STARTUP = self.ENVIRONMENT != "production"

        return self

settings = Settings()
