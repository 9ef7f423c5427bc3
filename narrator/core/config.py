from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "narrator"
    APP_ENV: str = "local"
    LOG_LEVEL: str = "INFO"

    # In unit tests / CI we avoid long startup retries against external deps.
    ENSURE_EXTERNAL_DEPS_ON_STARTUP: bool = True

    DATABASE_URL: str

    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/0"
    CELERY_TASK_ALWAYS_EAGER: bool = False

    MINIO_ENDPOINT: str = "localhost:9000"
    MINIO_ACCESS_KEY: str = "minioadmin"
    MINIO_SECRET_KEY: str = "minioadmin"
    MINIO_BUCKET: str = "narrator"
    MINIO_SECURE: bool = False
    LOCAL_OBJECT_STORE_DIR: str = "./data/objects"

    # Durable storage for the offline buffer.
    OFFLINE_STORAGE_BACKEND: Literal["redis", "local"] = "redis"
    OFFLINE_STORAGE_DIR: str = "./data/kv"
    OFFLINE_KEY_PREFIX: str = "narrator:"
    # Expiry of the Redis lock held for one replay pass.
    OFFLINE_LOCK_TIMEOUT_S: float = 300.0
    START_ONLINE: bool = True

    # Capture scheduler
    CAPTURE_ENABLED: bool = True
    CAPTURE_INTERVAL_SECONDS: float = 5.0
    CAPTURE_COUNT: int = 10

    # Description queue
    DESCRIBE_MAX_CONCURRENT: int = 1
    DESCRIBE_RETRY_LIMIT: int = 3
    DESCRIBE_RATE_LIMIT_DELAY_MS: int = 1000
    DESCRIBE_PROMPT: str = (
        "Describe what you see in this image in detail. "
        "Include any text you can read and objects you can identify."
    )
    # Consecutive quota errors before a record is failed instead of retried (unset = never).
    DESCRIBE_QUOTA_ESCALATE_AFTER: int | None = None
    DESCRIBE_FALLBACK_ENABLED: bool = False

    # Description service (STUB by default)
    DESCRIBER_KIND: Literal["stub", "http_vision"] = "stub"
    VISION_API_BASE: str = "https://api.openai.com/v1"
    VISION_API_KEY: str | None = None
    VISION_MODEL: str = "gpt-4o-mini"
    VISION_MAX_TOKENS: int = 300
    VISION_TIMEOUT_S: float = 30.0

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
