"""
Scheduler configuration using Pydantic BaseSettings.
Loads from .env and provides typed access to all scheduler settings.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Database ─────────────────────────────────────────
    DATABASE_URL: str = "sqlite+aiosqlite:///./mediaqueue.db"
    DATABASE_ECHO: bool = False

    # ── Redis ────────────────────────────────────────────
    REDIS_URL: str = ""

    # ── Scheduling ───────────────────────────────────────
    JOB_DEFAULT_PRIORITY: int = 5
    JOB_DEFAULT_MAX_RETRIES: int = 3
    CLAIM_BATCH_SIZE: int = 10
    CLAIM_MAX_ATTEMPTS: int = 5

    # ── Retry / backoff ──────────────────────────────────
    RETRY_BACKOFF_BASE_SECONDS: float = 5.0
    RETRY_BACKOFF_MAX_SECONDS: float = 900.0
    RETRYABLE_ERROR_PATTERNS: list[str] = []
    TERMINAL_ERROR_PATTERNS: list[str] = []

    # ── Workers ──────────────────────────────────────────
    WORKER_POLL_INTERVAL_SECONDS: float = 1.0
    WORKER_POLL_MAX_INTERVAL_SECONDS: float = 30.0
    MAX_CONCURRENT_JOBS: int = 3
    MAX_JOB_RUNTIME_SECONDS: int = 3600
    STAGE_REGISTRY: str = ""  # "package.module:attribute" of an ExecutorRegistry

    # ── Server ───────────────────────────────────────────
    BACKEND_HOST: str = "0.0.0.0"
    BACKEND_PORT: int = 8000
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
