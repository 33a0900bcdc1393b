from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "Studio Analytics"
    ENVIRONMENT: str = "development"
    API_PREFIX: str = "/api"

    # Frontend URL for CORS (dashboard)
    FRONTEND_URL: str = "http://localhost:3000"

    # Site host used to decide whether a referrer is internal
    SITE_HOST: str = ""

    # Database
    DATABASE_URL: str = "sqlite:///./studio_analytics.db"
    DB_POOL_SIZE: int = 5
    DB_POOL_TIMEOUT: int = 30  # Wait up to 30s for a pooled connection
    DB_POOL_RECYCLE: int = 300
    DB_MAX_RETRIES: int = 5
    DB_RETRY_BASE_DELAY: float = 0.5  # Doubles per attempt
    DB_RETRY_MAX_DELAY: float = 30.0
    DB_CONNECTION_WATCHDOG_SECONDS: int = 120  # Connections held longer are reclaimed
    DB_WATCHDOG_INTERVAL_SECONDS: int = 60
    REPORT_TIMEOUT_SECONDS: float = 15.0

    # Tracking
    ANALYTICS_ENABLE_TRACKING: bool = True
    ANALYTICS_SAMPLE_RATE: float = 1.0  # 0.0-1.0
    ANALYTICS_RETENTION_DAYS: int = 90

    # Real-time aggregation
    REALTIME_AGGREGATION_INTERVAL_SECONDS: int = 60
    REALTIME_PERSIST_INTERVAL_SECONDS: int = 300
    REALTIME_MAX_PENDING_WINDOWS: int = 12  # ~1h of 5 min windows kept after failed flushes

    # Attribution models applied automatically when a conversion is tracked
    ATTRIBUTION_AUTO_MODELS: list[str] = ["first", "last", "linear", "position"]

    # Privileged endpoints (reset, cleanup, manual attribution)
    ADMIN_API_KEY: str = ""

    # Process roles
    RUN_SCHEDULER: bool = True

    # Observability
    SENTRY_DSN: str = ""
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()
