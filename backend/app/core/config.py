from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Application
    PROJECT_NAME: str = "Chat Sync Core"
    VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Database (authoritative message log)
    DATABASE_URL: str = "sqlite:///./data/chatsync.db"

    # Redis/Celery
    REDIS_URL: str = "redis://localhost:6379/0"
    COORDINATION_BACKEND: str = "redis"  # redis, memory

    # Logging
    LOG_LEVEL: str = "INFO"

    # Delta sync
    SYNC_BATCH_SIZE: int = 100
    METRICS_TTL_SECONDS: int = 3600

    # Offline queue
    QUEUE_TTL_SECONDS: int = 86400 * 3  # 3 days
    QUEUE_MAX_ATTEMPTS: int = 5
    QUEUE_RETRY_DELAYS: List[int] = [1, 2, 5, 10, 30]  # seconds
    QUEUE_PRIORITY_OFFSET_MS: int = 1_000_000
    QUEUE_CLAIM_SCAN_LIMIT: int = 50
    COMPLETED_RETENTION_SECONDS: int = 3600
    FAILED_RETENTION_SECONDS: int = 86400
    PROCESSING_VISIBILITY_TIMEOUT_SECONDS: int = 300

    # Client state
    STATE_TTL_SECONDS: int = 86400 * 7
    STATE_RETENTION_DAYS: int = 7

    # Conflicts
    CONFLICT_TTL_SECONDS: int = 86400
    CONFLICT_HISTORY_LIMIT: int = 100

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()


# Module-level settings instance for convenience
settings = get_settings()
