from typing import Optional
from urllib.parse import quote_plus
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # --- Basic configuration ---
    APP_NAME: str = "QueryLayer"
    APP_DESCRIPTION: str = "Repository layer over SQLModel with caching, soft deletes and pagination"
    APP_VERSION: str = "1.0.0"
    APP_ENV: str = "development"  # development, production, testing
    DEBUG: bool = True

    # --- Database (SQLModel) ---
    # Full URL wins over the DB_* parts (e.g. sqlite+aiosqlite:///./app.db)
    DB_URL: Optional[str] = None
    DB_HOST: str = "localhost"
    DB_PORT: int = 3306
    DB_USER: str = "root"
    DB_PASSWORD: str = "root"
    DB_NAME: str = "app_db"
    DB_ECHO: bool = False

    @property
    def DATABASE_URL(self) -> str:
        if self.DB_URL:
            return self.DB_URL
        # Build async MySQL connection URL
        safe_password = quote_plus(self.DB_PASSWORD)
        return f"mysql+aiomysql://{self.DB_USER}:{safe_password}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # --- Cache (Redis or in-process) ---
    CACHE_DRIVER: str = "memory"  # memory, redis
    CACHE_PREFIX: str = "querylayer:"
    CACHE_TTL: int = 3600  # seconds, used when cache() is chained without a ttl

    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    @property
    def REDIS_URL(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # --- Pagination ---
    QUERYLAYER_PAGINATION_DEFAULT: int = 15

    # --- Logging ---
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"

    # --- API route prefixes (demo app) ---
    API_V1_BLOG_PREFIX: str = "/api/v1/blog"

    # --- Pydantic ---
    # Load env from project root .env; priority: env vars > .env > defaults
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
    )


# Default settings instance; tests and embedders build their own Settings(...)
settings = Settings()
