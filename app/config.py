from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Supabase settings
    SUPABASE_URL: str
    SUPABASE_JWKS_URL: str | None = None
    SUPABASE_DB_URL: str

    # Redis settings
    UPSTASH_REDIS_REST_URL: str
    UPSTASH_REDIS_REST_TOKEN: str

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    # =================================================================
    # FOLLOW-UP CALCULATION SETTINGS
    # =================================================================
    # Contacts with this status never appear in a follow-up bucket
    FOLLOW_UP_TERMINAL_STATUS: str = "Paid"
    # Contacts without created_at pass the creation-age gate when True
    FOLLOW_UP_MISSING_CREATED_AT_IS_OLD: bool = True

    ACTIVITY_LOOKUP_BATCH_SIZE: int = 50
    ACTIVITY_SNAPSHOT_TTL_SECONDS: int = 120  # 2 minutes

    CALCULATION_CACHE_TTL_SECONDS: int = 300  # 5 minutes
    CALCULATION_IDLE_THRESHOLD_SECONDS: int = 3600  # 1 hour
    CALCULATION_FRESH_WINDOW_SECONDS: int = 300  # 5 minutes

    # Bump to drop every persisted follow-up cache row
    FOLLOW_UP_CACHE_VERSION: int = 1
    PERSISTED_CACHE_TTL_SECONDS: int = 3600  # 1 hour
    CACHE_CLEANUP_INTERVAL_MINUTES: int = 60

    OPTIMISTIC_GRACE_SECONDS: float = 1.0
    OPTIMISTIC_EXPIRY_SECONDS: float = 30.0

    BACKGROUND_CALCULATION_THRESHOLD: int = 200
    BACKGROUND_CALCULATION_WORKERS: int = 2
    CALCULATION_PROGRESS_INTERVAL: int = 10

    FOLLOW_UP_PAGE_SIZE: int = 50

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # derive sensible defaults if not provided
    def jwks_url(self) -> str:
        if self.SUPABASE_JWKS_URL:
            return self.SUPABASE_JWKS_URL
        base = self.SUPABASE_URL.rstrip("/")
        return f"{base}/auth/v1/.well-known/jwks.json"

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
            # More conservative for local development
            config.update(
                {
                    "min_size": 2,
                    "max_size": 6,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
