from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Primary relational store: catalogue tables + non-analytical queries
    DATABASE_URL: str
    # Relational fallback for analytical queries (defaults to DATABASE_URL)
    ANALYTICS_DATABASE_URL: Optional[str] = None
    # Warehouse is only used when this is set
    WAREHOUSE_DATABASE_URL: Optional[str] = None
    WAREHOUSE_SCHEMA: str = "public"
    WAREHOUSE_TABLES: List[str] = ["deliveries", "businesses"]
    WAREHOUSE_MARKERS: List[str] = ["TO_CHAR", "::numeric", "${schema}"]
    WAREHOUSE_MAX_ATTEMPTS: int = 2
    WAREHOUSE_BACKOFF_SECONDS: float = 2.0

    REDIS_URL: Optional[str] = None

    # Cache TTLs in seconds
    QUERY_CACHE_TTL: int = 24 * 60 * 60
    FILTER_CACHE_TTL: int = 12 * 60 * 60
    FILTER_CACHE_REFRESH_SECONDS: int = 6 * 60 * 60

    TEST_QUERY_ROW_LIMIT: int = 100
    DEFAULT_DATE_WINDOW_DAYS: int = 30

    DB_POOL_SIZE: int = 10
    DB_POOL_TIMEOUT: int = 60
    DB_POOL_RECYCLE: int = 60

    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    LOG_LEVEL: str = "INFO"
    ECHO_SQL: bool = False

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Create a single instance of the settings to use everywhere
settings = Settings()
